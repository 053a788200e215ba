"""Shared value types: mining states, miner descriptions and query parameters."""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar

from sophonminer.address import Address


class StateMining(enum.IntEnum):
    """Lifecycle state of a block the miner attempted to produce."""

    MINING = 0
    SUCCESS = 1
    TIMEOUT = 2
    CHAIN_FORKED = 3
    ERROR = 4

    def __str__(self) -> str:
        return _STATE_NAMES[self]


_STATE_NAMES = {
    StateMining.MINING: "Mining",
    StateMining.SUCCESS: "Success",
    StateMining.TIMEOUT: "TimeOut",
    StateMining.CHAIN_FORKED: "ChainForked",
    StateMining.ERROR: "Error",
}


class ErrorCode(enum.IntEnum):
    """Categories of failures reported while mining."""

    CONNECT_GATEWAY_ERROR = 0
    CALL_NODE_RPC_ERROR = 1
    WALLET_SIGN_ERROR = 2

    def __str__(self) -> str:
        return _ERROR_CODE_NAMES[self]


_ERROR_CODE_NAMES = {
    ErrorCode.CONNECT_GATEWAY_ERROR: "ConnectGatewayError",
    ErrorCode.CALL_NODE_RPC_ERROR: "CallNodeRPCError",
    ErrorCode.WALLET_SIGN_ERROR: "WalletSignError",
}


@dataclass
class MinerInfo:
    """A miner known to the auth service."""

    addr: Address
    id: str = ""
    name: str = ""
    open_mining: bool = False


@dataclass
class MinerState:
    """Whether a miner is currently mining, with any errors seen."""

    addr: Address
    is_mining: bool = False
    err: list[str] = field(default_factory=list)


@dataclass
class SimpleWinInfo:
    epoch: int
    win_count: int
    msg: str = ""


@dataclass
class CountWinners:
    miner: Address
    total_win_count: int = 0
    msg: str = ""
    win_epoch_list: list[SimpleWinInfo] = field(default_factory=list)


@dataclass
class MinedBlock:
    """A row of the mined-blocks table."""

    table_name: ClassVar[str] = "miner_blocks"

    epoch: int
    miner: str
    parent_epoch: int = 0
    parent_key: str = ""
    cid: str = ""
    winning_at: datetime | None = None
    mine_state: StateMining = StateMining.MINING
    consuming: int = 0


@dataclass
class BlocksQueryParams:
    miners: list[Address] = field(default_factory=list)
    limit: int = 0
    offset: int = 0


@dataclass
class QueryRecordParams:
    miner: Address
    epoch: int = 0
    limit: int = 0


def format_cids(cids: Iterable[object]) -> list[str]:
    """Render a sequence of content identifiers as strings for logging."""
    return [str(c) for c in cids]