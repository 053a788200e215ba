"""Guards against producing blocks that would be punished as consensus faults."""

from __future__ import annotations

import abc
import enum
import logging
import re
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.engine import URL, Engine
from sqlalchemy.pool import StaticPool

from sophonminer.chain import BlockHeader, Cid, TipSetKey
from sophonminer.config import ConfigError, MySQLConfig, SlashFilterConfig
from sophonminer.datastore import Datastore, Key, MapDatastore, NamespaceDatastore
from sophonminer.types import BlocksQueryParams, MinedBlock, StateMining

log = logging.getLogger(__name__)


class ConsensusFaultError(Exception):
    """Raised when mining a block would trigger a consensus fault."""


class BlockStoreType(str, enum.Enum):
    LOCAL = "local"
    MYSQL = "mysql"


class SlashFilter(abc.ABC):
    """Records mined blocks and checks new ones against them."""

    @abc.abstractmethod
    def has_block(self, header: BlockHeader) -> bool:
        """Whether a block was already produced by this miner at this height."""

    @abc.abstractmethod
    def mined_block(self, header: BlockHeader, parent_epoch: int) -> None:
        """Raise ConsensusFaultError if producing ``header`` would be a fault."""

    @abc.abstractmethod
    def put_block(
        self,
        header: BlockHeader,
        parent_epoch: int,
        winning_at: datetime | None,
        state: StateMining,
    ) -> None:
        """Record the outcome of a mining attempt."""

    @abc.abstractmethod
    def list_block(self, params: BlocksQueryParams) -> list[MinedBlock]:
        """List recorded blocks, newest first."""


def _parent_grinding(header: BlockHeader, parent: Cid) -> ConsensusFaultError:
    return ConsensusFaultError(
        "produced block would trigger 'parent-grinding fault' consensus fault; "
        f"miner: {header.miner}; bh: {header.cid()}, expected parent: {parent}"
    )


def _fault(kind: str, header: BlockHeader, other: Cid) -> ConsensusFaultError:
    return ConsensusFaultError(
        f"produced block would trigger {kind} consensus fault; "
        f"miner: {header.miner}; bh: {header.cid()}, other: {other}"
    )


class LocalSlashFilter(SlashFilter):
    """Slash filter kept in a key-value datastore; only successful blocks are stored."""

    def __init__(self, ds: Datastore) -> None:
        self._by_epoch = NamespaceDatastore(ds, Key("/slashfilter/epoch"))
        self._by_parents = NamespaceDatastore(ds, Key("/slashfilter/parents"))

    @staticmethod
    def _epoch_key(header: BlockHeader, epoch: int) -> Key:
        return Key(f"/{header.miner}/{epoch}")

    @staticmethod
    def _parents_key(header: BlockHeader) -> Key:
        return Key(f"/{header.miner}/{TipSetKey(tuple(header.parents)).to_bytes().hex()}")

    def has_block(self, header: BlockHeader) -> bool:
        return self._by_epoch.has(self._epoch_key(header, header.height))

    def put_block(
        self,
        header: BlockHeader,
        parent_epoch: int,
        winning_at: datetime | None,
        state: StateMining,
    ) -> None:
        if state != StateMining.SUCCESS:
            return
        block_cid = header.cid().to_bytes()
        self._by_parents.put(self._parents_key(header), block_cid)
        self._by_epoch.put(self._epoch_key(header, header.height), block_cid)

    def mined_block(self, header: BlockHeader, parent_epoch: int) -> None:
        parents_key = self._parents_key(header)
        if self._by_parents.has(parents_key):
            other = Cid.from_bytes(self._by_parents.get(parents_key))
            if other != header.cid():
                raise _fault("'time-offset mining faults'", header, other)

        parent_key = self._epoch_key(header, parent_epoch)
        if self._by_epoch.has(parent_key):
            parent = Cid.from_bytes(self._by_epoch.get(parent_key))
            if parent not in header.parents:
                raise _parent_grinding(header, parent)

    def list_block(self, params: BlocksQueryParams) -> list[MinedBlock]:
        raise RuntimeError("you are using levelDB, List Block is not supported")


_metadata = sa.MetaData()
_blocks = sa.Table(
    MinedBlock.table_name,
    _metadata,
    sa.Column("parent_epoch", sa.BigInteger, nullable=False, default=0),
    sa.Column("parent_key", sa.String(2048), nullable=False, default=""),
    sa.Column("epoch", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("miner", sa.String(256), primary_key=True),
    sa.Column("cid", sa.String(256), default=""),
    sa.Column("winning_at", sa.DateTime, nullable=True),
    sa.Column("mine_state", sa.SmallInteger, nullable=False, default=0),
    sa.Column("consuming", sa.BigInteger, nullable=False, default=0),
    mysql_charset="utf8mb4",
)


def _row_to_block(row: sa.Row) -> MinedBlock:
    return MinedBlock(
        epoch=row.epoch,
        miner=row.miner,
        parent_epoch=row.parent_epoch,
        parent_key=row.parent_key,
        cid=row.cid or "",
        winning_at=row.winning_at,
        mine_state=StateMining(row.mine_state),
        consuming=row.consuming,
    )


class SqlSlashFilter(SlashFilter):
    """Slash filter backed by an SQL table of every mining attempt."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        _metadata.create_all(engine)

    def _take(self, conn: sa.Connection, **where: object) -> sa.Row | None:
        stmt = sa.select(_blocks)
        for name, value in where.items():
            stmt = stmt.where(_blocks.c[name] == value)
        return conn.execute(stmt.limit(1)).first()

    def has_block(self, header: BlockHeader) -> bool:
        with self._engine.connect() as conn:
            row = self._take(conn, miner=str(header.miner), epoch=header.height)
        return row is not None and bool(row.cid)

    def put_block(
        self,
        header: BlockHeader,
        parent_epoch: int,
        winning_at: datetime | None,
        state: StateMining,
    ) -> None:
        miner = str(header.miner)
        with self._engine.begin() as conn:
            row = self._take(conn, miner=miner, epoch=header.height)
            if row is None:
                # A timeout may not have been a win, but a win must always be recorded.
                if state == StateMining.TIMEOUT:
                    raise LookupError("query record failed: record not found")
                conn.execute(
                    _blocks.insert().values(
                        parent_epoch=parent_epoch,
                        parent_key=str(header.tipset_key()),
                        epoch=header.height,
                        miner=miner,
                        cid=str(header.cid()) if header.ticket is not None else "",
                        winning_at=winning_at,
                        mine_state=int(state),
                        consuming=0,
                    )
                )
                return

            values: dict[str, object] = {"parent_epoch": parent_epoch, "mine_state": int(state)}
            if header.parents:
                values["parent_key"] = str(header.tipset_key())
            if header.ticket is not None:
                values["cid"] = str(header.cid())
            conn.execute(
                _blocks.update()
                .where(_blocks.c.miner == miner, _blocks.c.epoch == header.height)
                .values(**values)
            )

    def mined_block(self, header: BlockHeader, parent_epoch: int) -> None:
        miner = str(header.miner)
        with self._engine.connect() as conn:
            same_parent = self._take(conn, miner=miner, parent_key=str(header.tipset_key()))
            parent_row = self._take(conn, miner=miner, epoch=parent_epoch)

        if same_parent is not None and same_parent.cid:
            other = Cid.decode(same_parent.cid)
            if other != header.cid():
                raise _fault("time-offset mining faults", header, other)

        if parent_row is not None and parent_row.cid:
            parent = Cid.decode(parent_row.cid)
            if parent not in header.parents:
                raise _parent_grinding(header, parent)

    def list_block(self, params: BlocksQueryParams) -> list[MinedBlock]:
        stmt = sa.select(_blocks).order_by(_blocks.c.epoch.desc())
        if params.miners:
            stmt = stmt.where(_blocks.c.miner.in_([str(m) for m in params.miners]))
        if params.limit > 0:
            stmt = stmt.limit(params.limit)
        if params.offset > 0:
            stmt = stmt.offset(params.offset)
        with self._engine.connect() as conn:
            return [_row_to_block(row) for row in conn.execute(stmt)]


_GO_DSN = re.compile(
    r"^(?:(?P<user>[^:@]*)(?::(?P<password>.*))?@)?"
    r"(?:(?P<net>[^(/]*)(?:\((?P<addr>[^)]*)\))?)?"
    r"/(?P<db>[^?]*)(?:\?(?P<params>.*))?$"
)


def _mysql_url(dsn: str) -> URL | str:
    """Turn a MySQL DSN (``user:pass@tcp(host:port)/db?...`` or a URL) into an engine URL."""
    if "://" in dsn:
        scheme, rest = dsn.split("://", 1)
        return ("mysql+pymysql://" + rest) if scheme == "mysql" else dsn
    match = _GO_DSN.match(dsn)
    if match is None:
        raise ConfigError(f"invalid mysql dsn {dsn!r}")
    query: dict[str, str] = {}
    for pair in filter(None, (match.group("params") or "").split("&")):
        name, _, value = pair.partition("=")
        if name == "charset":
            query["charset"] = value.split(",")[0]
    host: str | None = None
    port: int | None = None
    addr = match.group("addr") or ""
    if match.group("net") == "unix":
        query["unix_socket"] = addr
    elif addr:
        host, sep, port_text = addr.rpartition(":")
        if not sep:
            host, port_text = addr, ""
        if port_text:
            if not port_text.isdigit():
                raise ConfigError(f"invalid port in mysql dsn {dsn!r}")
            port = int(port_text)
        host = host.strip("[]")
    return URL.create(
        "mysql+pymysql",
        username=match.group("user") or None,
        password=match.group("password"),
        host=host,
        port=port,
        database=match.group("db") or None,
        query=query,
    )


def new_mysql(cfg: MySQLConfig) -> SqlSlashFilter:
    """Open the MySQL-backed slash filter described by ``cfg``."""
    try:
        url = _mysql_url(cfg.conn)
        lifetime = int(cfg.conn_max_life_time.total_seconds())
        engine = sa.create_engine(
            url,
            echo=cfg.debug,
            pool_size=max(cfg.max_idle_conn, 1),
            max_overflow=max(cfg.max_open_conn - cfg.max_idle_conn, 0),
            pool_recycle=lifetime if lifetime > 0 else -1,
        )
    except (ConfigError, sa.exc.ArgumentError) as exc:
        raise ConfigError(f"mysql open {cfg.conn}: {exc}") from exc
    sf = SqlSlashFilter(engine)
    log.info("init mysql success for mysqlSlashFilter!")
    return sf


def new_sql_mock() -> tuple[SqlSlashFilter, Engine]:
    """An SQL slash filter over a private in-memory SQLite database."""
    engine = sa.create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    return SqlSlashFilter(engine), engine


def new_local_mock() -> tuple[LocalSlashFilter, MapDatastore]:
    """A datastore slash filter over a fresh in-memory datastore."""
    ds = MapDatastore()
    return LocalSlashFilter(ds), ds


def new_slash_filter(cfg: SlashFilterConfig, ds: Datastore) -> SlashFilter:
    """Build the slash filter selected by ``cfg.type``."""
    if cfg.type == BlockStoreType.LOCAL.value:
        return LocalSlashFilter(ds)
    if cfg.type == BlockStoreType.MYSQL.value:
        return new_mysql(cfg.mysql)
    raise ConfigError(f"not support slash filter {cfg.type}")