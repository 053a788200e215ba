from datetime import timedelta

import pytest

from sophonminer.config import GatewayNode, default_miner_config
from sophonminer.multiaddr import parse_multiaddr
from sophonminer.repo import (
    VERSION,
    ClosedRepoError,
    FsRepo,
    NoAPIEndpointError,
    RepoAlreadyLockedError,
    RepoError,
)


@pytest.fixture
def repo(tmp_path):
    r = FsRepo(tmp_path / "repo")
    r.init()
    return r


def test_fs_basic_exists_and_update(repo):
    assert repo.exists() is True
    repo.update(default_miner_config())
    assert repo.config() == default_miner_config()


def test_basic_flow(repo):
    with pytest.raises(NoAPIEndpointError):
        repo.api_endpoint()

    lrepo = repo.lock()
    with pytest.raises(RepoAlreadyLockedError):
        repo.lock()
    lrepo.close()

    lrepo = repo.lock()
    ma = parse_multiaddr("/ip4/127.0.0.1/tcp/43244")
    lrepo.set_api_endpoint(ma)
    assert repo.api_endpoint() == ma

    lrepo.set_api_token(b"token")
    assert repo.api_token() == b"token"

    assert lrepo.config() == default_miner_config()
    lrepo.close()

    assert repo.api_endpoint() == ma

    lrepo = repo.lock()
    assert lrepo.path == repo.path
    lrepo.close()


def test_exists_false_before_init(tmp_path):
    assert FsRepo(tmp_path / "none").exists() is False


def test_init_is_idempotent(repo):
    with open(repo.config_path, "a", encoding="utf-8") as handle:
        handle.write("\n# extra\n")
    repo.init()
    with open(repo.config_path, encoding="utf-8") as handle:
        assert handle.read().endswith("# extra\n")


def test_init_writes_commented_default(repo):
    with open(repo.config_path, encoding="utf-8") as handle:
        text = handle.read()
    assert text.startswith("# Default config:\n")
    assert "[FullNode]" in text


def test_api_token_missing_returns_none(repo):
    assert repo.api_token() is None


def test_set_config_roundtrip(repo):
    with repo.lock() as lrepo:
        def mutate(cfg):
            cfg.propagation_delay_secs = 30
            cfg.miner_once_timeout = timedelta(seconds=5)

        lrepo.set_config(mutate)
        cfg = lrepo.config()
    assert cfg.propagation_delay_secs == 30
    assert cfg.miner_once_timeout == timedelta(seconds=5)
    assert repo.config().propagation_delay_secs == 30


def test_closed_repo_rejects_writes(repo):
    lrepo = repo.lock()
    lrepo.close()
    with pytest.raises(ClosedRepoError):
        lrepo.set_version("1")
    with pytest.raises(ClosedRepoError):
        lrepo.set_api_token(b"token")
    with pytest.raises(ClosedRepoError):
        lrepo.set_config(lambda cfg: None)


def test_datastore_metadata(repo):
    with repo.lock() as lrepo:
        ds = lrepo.datastore("/metadata")
        ds.put("/a", b"value")
        assert ds.get("/a") == b"value"
        assert lrepo.datastore("/metadata") is ds
        with pytest.raises(RepoError, match="no such datastore"):
            lrepo.datastore("/other")


def test_set_config_path(repo, tmp_path):
    other = tmp_path / "other.toml"
    other.write_text("PropagationDelaySecs = 7\n", encoding="utf-8")
    repo.set_config_path(other)
    assert repo.config().propagation_delay_secs == 7


LEGACY = """
[FullNode]
Addr = "/ip4/127.0.0.1/tcp/1234"
Token = "token"

[SlashFilter]
Type = "mysql"

[SlashFilter.MySQL]
Conn = "user:password@tcp(localhost:3306)/miner"
MaxOpenConn = 5
ConnMaxLifeTime = "30s"
"""


def test_migrate_upgrades_legacy_config(repo):
    with open(repo.config_path, "w", encoding="utf-8") as handle:
        handle.write(LEGACY)
    with repo.lock() as lrepo:
        lrepo.migrate()
        with open(lrepo._join("version"), encoding="utf-8") as handle:
            assert handle.read() == VERSION
    cfg = repo.config()
    assert cfg.gateway is None
    assert cfg.full_node.addr == "/ip4/127.0.0.1/tcp/1234"
    assert cfg.slash_filter.type == "mysql"
    assert cfg.slash_filter.mysql.max_open_conn == 5
    assert cfg.slash_filter.mysql.max_idle_conn == 0
    assert cfg.slash_filter.mysql.conn_max_life_time == timedelta(seconds=30)


def test_migrate_skips_when_version_is_newer(repo):
    with open(repo.config_path, "w", encoding="utf-8") as handle:
        handle.write(LEGACY)
    with repo.lock() as lrepo:
        lrepo.set_version("200")
        lrepo.migrate()
        with open(lrepo._join("version"), encoding="utf-8") as handle:
            assert handle.read() == VERSION
    cfg = repo.config()
    assert cfg.gateway == GatewayNode([], "")
    assert cfg.slash_filter.mysql.max_idle_conn == 10