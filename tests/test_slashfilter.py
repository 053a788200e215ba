import dataclasses
from datetime import datetime

import pytest

from sophonminer.address import Address
from sophonminer.chain import BlockHeader, Cid, Ticket, cid_of
from sophonminer.config import ConfigError, SlashFilterConfig
from sophonminer.datastore import MapDatastore
from sophonminer.slashfilter import (
    BlockStoreType,
    ConsensusFaultError,
    LocalSlashFilter,
    SqlSlashFilter,
    _mysql_url,
    new_local_mock,
    new_slash_filter,
    new_sql_mock,
)
from sophonminer.types import BlocksQueryParams, StateMining

MINER = Address.from_string("f021344")
MOCK_CID = Cid.decode("bafkqaaa")


def _parents(tag):
    return [cid_of(f"{tag}-0".encode()), cid_of(f"{tag}-1".encode())]


def _sql():
    return new_sql_mock()[0]


def _local():
    return new_local_mock()[0]


@pytest.fixture(params=["sql", "local"])
def sf(request):
    return _sql() if request.param == "sql" else _local()


def _ticketed(height=100, parents=None):
    return BlockHeader(
        miner=MINER,
        height=height,
        parents=parents if parents is not None else _parents("p"),
        ticket=Ticket(b"====1====="),
        parent_state_root=MOCK_CID,
        parent_message_receipts=MOCK_CID,
        messages=MOCK_CID,
    )


def test_put_block_new_then_update(sf):
    parents = _parents("p")
    first = BlockHeader(miner=MINER, height=100, parents=parents, ticket=None)
    assert sf.has_block(first) is False
    sf.put_block(first, 99, datetime.now(), StateMining.MINING)
    assert sf.has_block(first) is False

    second = _ticketed(parents=parents)
    sf.put_block(second, 99, None, StateMining.SUCCESS)
    assert sf.has_block(second) is True


def test_mined_block_general(sf):
    assert sf.mined_block(_ticketed(), 99) is None
    assert sf.has_block(_ticketed()) is False


def test_time_offset_fault(sf):
    bh = _ticketed()
    sf.put_block(bh, 99, datetime.now(), StateMining.SUCCESS)
    bh.messages = cid_of(b"other messages")
    with pytest.raises(ConsensusFaultError) as info:
        sf.mined_block(bh, 99)
    assert str(info.value).index("time-offset") > 0


def test_same_block_again_is_not_a_fault(sf):
    bh = _ticketed()
    sf.put_block(bh, 99, datetime.now(), StateMining.SUCCESS)
    sf.mined_block(bh, 99)
    assert sf.has_block(bh) is True


def test_parent_grinding_fault(sf):
    bh = _ticketed()
    sf.put_block(bh, 99, datetime.now(), StateMining.SUCCESS)
    block_id = bh.cid()

    bh.parents = _parents("q")
    bh.height += 1
    with pytest.raises(ConsensusFaultError) as info:
        sf.mined_block(bh, 100)
    assert str(info.value).index("parent-grinding fault") > 0

    bh.parents.append(block_id)
    sf.mined_block(bh, 100)
    assert block_id in bh.parents


def test_local_stores_only_success():
    sf = _local()
    bh = _ticketed()
    sf.put_block(bh, 99, None, StateMining.TIMEOUT)
    assert sf.has_block(bh) is False
    sf.put_block(bh, 99, None, StateMining.SUCCESS)
    assert sf.has_block(bh) is True


def test_local_list_block_unsupported():
    with pytest.raises(RuntimeError, match="not supported"):
        _local().list_block(BlocksQueryParams())


def test_sql_timeout_without_record_raises():
    sf = _sql()
    with pytest.raises(LookupError, match="query record failed"):
        sf.put_block(_ticketed(), 99, None, StateMining.TIMEOUT)


def test_sql_list_block_ordering_and_filters():
    sf = _sql()
    other = Address.from_string("f01000")
    for height in (10, 30, 20):
        sf.put_block(_ticketed(height=height, parents=_parents(height)), height - 1, None, StateMining.SUCCESS)
    sf.put_block(
        dataclasses.replace(_ticketed(height=40, parents=_parents(40)), miner=other),
        39,
        None,
        StateMining.MINING,
    )

    all_blocks = sf.list_block(BlocksQueryParams())
    assert [b.epoch for b in all_blocks] == [40, 30, 20, 10]

    mine = sf.list_block(BlocksQueryParams(miners=[MINER]))
    assert [b.epoch for b in mine] == [30, 20, 10]
    assert all(b.miner == str(MINER) for b in mine)
    assert mine[0].mine_state == StateMining.SUCCESS

    page = sf.list_block(BlocksQueryParams(miners=[MINER], limit=1, offset=1))
    assert [b.epoch for b in page] == [20]


def test_sql_update_keeps_row_and_sets_state():
    sf = _sql()
    parents = _parents("p")
    sf.put_block(BlockHeader(miner=MINER, height=5, parents=parents), 4, None, StateMining.MINING)
    sf.put_block(_ticketed(height=5, parents=parents), 4, None, StateMining.CHAIN_FORKED)
    blocks = sf.list_block(BlocksQueryParams())
    assert len(blocks) == 1
    assert blocks[0].mine_state == StateMining.CHAIN_FORKED
    assert blocks[0].cid == str(_ticketed(height=5, parents=parents).cid())


def test_new_slash_filter_selects_backend():
    local = new_slash_filter(SlashFilterConfig(type=BlockStoreType.LOCAL.value), MapDatastore())
    assert isinstance(local, LocalSlashFilter)
    assert isinstance(_sql(), SqlSlashFilter)
    with pytest.raises(ConfigError, match="not support slash filter"):
        new_slash_filter(SlashFilterConfig(type="badger"), MapDatastore())


def test_mysql_url_from_dsn():
    url = _mysql_url("user:password@tcp(localhost:3306)/miner?parseTime=true&loc=Local")
    assert url.host == "localhost"
    assert url.port == 3306
    assert url.database == "miner"
    assert url.username == "user"
    assert url.drivername == "mysql+pymysql"


def test_mysql_url_invalid():
    with pytest.raises(ConfigError):
        _mysql_url("no database here")