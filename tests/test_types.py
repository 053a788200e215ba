import pytest

from sophonminer.address import new_id_address
from sophonminer.types import (
    BlocksQueryParams,
    ErrorCode,
    MinedBlock,
    MinerInfo,
    MinerState,
    StateMining,
    format_cids,
)


@pytest.mark.parametrize(
    "state, text",
    [
        (StateMining.MINING, "Mining"),
        (StateMining.SUCCESS, "Success"),
        (StateMining.TIMEOUT, "TimeOut"),
        (StateMining.CHAIN_FORKED, "ChainForked"),
        (StateMining.ERROR, "Error"),
    ],
)
def test_state_mining_names(state, text):
    assert str(state) == text


@pytest.mark.parametrize(
    "value, state",
    [
        (0, StateMining.MINING),
        (1, StateMining.SUCCESS),
        (2, StateMining.TIMEOUT),
        (3, StateMining.CHAIN_FORKED),
        (4, StateMining.ERROR),
    ],
)
def test_state_mining_from_stored_value(value, state):
    assert StateMining(value) is state


@pytest.mark.parametrize(
    "code, text",
    [
        (ErrorCode.CONNECT_GATEWAY_ERROR, "ConnectGatewayError"),
        (ErrorCode.CALL_NODE_RPC_ERROR, "CallNodeRPCError"),
        (ErrorCode.WALLET_SIGN_ERROR, "WalletSignError"),
    ],
)
def test_error_code_names(code, text):
    assert str(code) == text


def test_mined_block_defaults():
    blk = MinedBlock(epoch=100, miner="f021344")
    assert blk.mine_state is StateMining.MINING
    assert blk.cid == ""
    assert blk.parent_key == ""
    assert blk.winning_at is None
    assert MinedBlock.table_name == "miner_blocks"


def test_miner_info_and_state_defaults():
    addr = new_id_address(7)
    info = MinerInfo(addr=addr)
    assert info.open_mining is False
    state = MinerState(addr=addr)
    assert state.err == []
    assert state.is_mining is False


def test_blocks_query_params_lists_are_independent():
    a = BlocksQueryParams()
    b = BlocksQueryParams()
    a.miners.append(new_id_address(1))
    assert b.miners == []


def test_format_cids_uses_string_form():
    addrs = [new_id_address(1), new_id_address(2)]
    assert format_cids(addrs) == ["f01", "f02"]
    assert format_cids([]) == []