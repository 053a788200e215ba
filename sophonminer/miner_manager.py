"""Tracks the miners registered with the auth service and their mining switch."""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass, field

from sophonminer.address import Address
from sophonminer.types import MinerInfo

log = logging.getLogger(__name__)

CO_MINERS_LIMIT = 20000


class MinerNotFoundError(LookupError):
    """Raised when a miner is not known to the manager."""

    def __init__(self) -> None:
        super().__init__("not found")


@dataclass
class AuthMiner:
    """A miner as listed by the auth service."""

    miner: Address
    user: str
    open_mining: bool = False


@dataclass
class AuthUser:
    """A user of the auth service with its miners; state 1 means enabled."""

    id: str
    name: str
    state: int
    miners: list[AuthMiner] = field(default_factory=list)


class AuthClient(abc.ABC):
    """The calls the manager makes to the auth service."""

    @abc.abstractmethod
    def upsert_miner(self, user: str, miner: str, open_mining: bool) -> bool:
        """Create or update a miner under ``user``."""

    @abc.abstractmethod
    def list_users_with_miners(self, skip: int, limit: int, state: int) -> list[AuthUser]:
        """List users together with their miners."""


class MinerManager:
    """Cache of miners from the auth service, refreshed by ``update``."""

    def __init__(self, auth_client: AuthClient) -> None:
        self._auth_client = auth_client
        self._miners: dict[Address, MinerInfo] = {}
        self._lock = threading.Lock()
        self.update(0, 0)

    def has(self, addr: Address) -> bool:
        with self._lock:
            return addr in self._miners

    def get(self, addr: Address) -> MinerInfo:
        with self._lock:
            try:
                return self._miners[addr]
            except KeyError:
                raise MinerNotFoundError() from None

    def is_open_mining(self, addr: Address) -> bool:
        with self._lock:
            info = self._miners.get(addr)
            return info.open_mining if info is not None else False

    def open_mining(self, addr: Address) -> MinerInfo:
        """Switch mining on for ``addr`` in the auth service and locally."""
        with self._lock:
            info = self._miners.get(addr)
            if info is None:
                raise MinerNotFoundError()
            self._auth_client.upsert_miner(info.name, str(info.addr), True)
            info.open_mining = True
            return info

    def close_mining(self, addr: Address) -> None:
        """Switch mining off for ``addr`` in the auth service and locally."""
        with self._lock:
            info = self._miners.get(addr)
            if info is None:
                raise MinerNotFoundError()
            self._auth_client.upsert_miner(info.name, str(info.addr), False)
            info.open_mining = False

    def list(self) -> dict[Address, MinerInfo]:
        with self._lock:
            return dict(self._miners)

    def update(self, skip: int, limit: int) -> dict[Address, MinerInfo]:
        """Reload the miners of every enabled user from the auth service."""
        with self._lock:
            if limit == 0:
                limit = CO_MINERS_LIMIT
            users = self._auth_client.list_users_with_miners(skip, limit, 0)
            miners: dict[Address, MinerInfo] = {}
            for user in users:
                if user.state != 1:
                    log.warning("user: %s state is disabled, it's miners won't be updated", user.name)
                    continue
                for miner in user.miners:
                    miners[miner.miner] = MinerInfo(
                        addr=miner.miner,
                        id=user.id,
                        name=miner.user,
                        open_mining=miner.open_mining,
                    )
            self._miners = miners
            return dict(miners)