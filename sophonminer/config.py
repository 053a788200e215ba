"""Miner configuration: defaults, validation and TOML loading and saving."""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import IO, Any, Callable
from urllib.parse import urlsplit

import tomli_w

from sophonminer.multiaddr import MultiaddrError, parse_multiaddr

log = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised for invalid or unreadable configuration."""


_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_PART = re.compile(r"(\d*\.?\d*)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``15s``, ``1m30s`` or ``300ms``."""
    rest = text
    sign = 1
    if rest[:1] in "+-" and rest:
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ConfigError(f"invalid duration {text!r}")
    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _PART.match(rest, pos)
        if not match or match.group(1) in ("", "."):
            raise ConfigError(f"invalid duration {text!r}")
        try:
            total += Decimal(match.group(1)) * _UNITS[match.group(2)]
        except InvalidOperation as exc:
            raise ConfigError(f"invalid duration {text!r}") from exc
        pos = match.end()
    return timedelta(microseconds=sign * int(total) // 1000)


def _fraction(value: int, unit: int) -> str:
    whole, rem = divmod(value, unit)
    if not rem:
        return str(whole)
    digits = str(rem).rjust(len(str(unit)) - 1, "0").rstrip("0")
    return f"{whole}.{digits}"


def format_duration(value: timedelta) -> str:
    """Render a duration the way the configuration file writes it, e.g. ``1m0s``."""
    ns = (value.days * 86_400 + value.seconds) * 1_000_000_000 + value.microseconds * 1000
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns == 0:
        return "0s"
    if ns < 1_000:
        return f"{sign}{ns}ns"
    if ns < 1_000_000:
        return f"{sign}{_fraction(ns, 1_000)}µs"
    if ns < 1_000_000_000:
        return f"{sign}{_fraction(ns, 1_000_000)}ms"
    out = _fraction(ns % 60_000_000_000, 1_000_000_000) + "s"
    minutes = ns // 60_000_000_000
    if minutes:
        hours, minutes = divmod(minutes, 60)
        out = (f"{hours}h" if hours else "") + f"{minutes}m" + out
    return sign + out


def _opt(name: str, *, default: Any = MISSING, factory: Callable[[], Any] | Any = MISSING,
         kind: Any = None) -> Any:
    meta = {"toml": name, "kind": kind}
    if factory is not MISSING:
        return field(default_factory=factory, metadata=meta)
    return field(default=default, metadata=meta)


def _decode(obj: Any, table: dict[str, Any]) -> Any:
    by_name = {f.metadata["toml"]: f for f in fields(obj)}
    for key, value in table.items():
        f = by_name.get(key)
        if f is None:
            continue
        kind = f.metadata["kind"]
        current = getattr(obj, f.name)
        if isinstance(kind, type) and is_dataclass(kind):
            if not isinstance(value, dict):
                raise ConfigError(f"{key}: expected a table")
            new = _decode(current if current is not None else kind(), value)
        elif isinstance(kind, tuple):
            if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
                raise ConfigError(f"{key}: expected an array of tables")
            new = [_decode(kind[1](), v) for v in value]
        elif kind == "duration":
            if not isinstance(value, str):
                raise ConfigError(f"{key}: expected a duration string")
            new = parse_duration(value)
        elif kind == "legacy_duration":
            if isinstance(value, bool) or not isinstance(value, (int, str)):
                raise ConfigError(f"{key}: expected a duration")
            new = timedelta(microseconds=value // 1000) if isinstance(value, int) else parse_duration(value)
        elif kind == "raw":
            if not isinstance(value, dict):
                raise ConfigError(f"{key}: expected a table")
            new = dict(value)
        elif kind == "strlist":
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ConfigError(f"{key}: expected a list of strings")
            new = list(value)
        else:
            expected = type(current)
            ok = isinstance(value, expected) and (expected is bool) == isinstance(value, bool)
            if expected is int and not isinstance(value, bool) and isinstance(value, int):
                ok = True
            if not ok:
                raise ConfigError(f"{key}: expected {expected.__name__}")
            new = value
        setattr(obj, f.name, new)
    return obj


def _encode(obj: Any) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        kind = f.metadata["kind"]
        name = f.metadata["toml"]
        if isinstance(kind, type) and is_dataclass(kind):
            out[name] = _encode(value)
        elif isinstance(kind, tuple):
            if value:
                out[name] = [_encode(v) for v in value]
        elif kind == "duration":
            out[name] = format_duration(value)
        elif kind == "legacy_duration":
            out[name] = value // timedelta(microseconds=1) * 1000
        elif kind == "strlist":
            out[name] = list(value)
        else:
            out[name] = value
    return out


@dataclass
class APIInfo:
    """Address and token of a remote API."""

    addr: str = _opt("Addr", default="")
    token: str = _opt("Token", default="")

    def dial_args(self, version: str) -> str:
        """URL to dial for the RPC endpoint of the given API version."""
        try:
            ma = parse_multiaddr(self.addr)
        except MultiaddrError:
            pass
        else:
            _, addr = ma.dial_args()
            return "ws://" + addr + "/rpc/" + version
        try:
            urlsplit(self.addr)
        except ValueError as exc:
            raise ConfigError(f"invalid api address {self.addr!r}") from exc
        return self.addr + "/rpc/" + version

    def host(self) -> str:
        """``host:port`` of the API."""
        try:
            ma = parse_multiaddr(self.addr)
        except MultiaddrError:
            pass
        else:
            return ma.dial_args()[1]
        try:
            return urlsplit(self.addr).netloc
        except ValueError as exc:
            raise ConfigError(f"invalid api address {self.addr!r}") from exc

    def auth_header(self) -> dict[str, str] | None:
        if self.token:
            return {"Authorization": "Bearer " + self.token}
        log.warning("Sealer API Token not set and requested, capabilities might be limited.")
        return None


def _default_api_info() -> APIInfo:
    return APIInfo("/ip4/0.0.0.0/tcp/12308/http", "")


@dataclass
class GatewayNode:
    listen_api: list[str] = _opt("ListenAPI", factory=list, kind="strlist")
    token: str = _opt("Token", default="")

    def dial_args(self) -> list[str]:
        """Dial URLs of every gateway; unusable addresses are logged and skipped."""
        urls = []
        for addr in self.listen_api:
            try:
                urls.append(APIInfo(addr, self.token).dial_args("v2"))
            except (ConfigError, MultiaddrError) as exc:
                log.error("dial ma err: %s", exc)
        return urls

    def auth_header(self) -> dict[str, str] | None:
        if self.token:
            return {"Authorization": "Bearer " + self.token}
        log.warning("Sealer API Token not set and requested, capabilities might be limited.")
        return None


@dataclass
class MySQLConfig:
    conn: str = _opt("Conn", default="")
    max_open_conn: int = _opt("MaxOpenConn", default=100)
    max_idle_conn: int = _opt("MaxIdleConn", default=10)
    conn_max_life_time: timedelta = _opt("ConnMaxLifeTime", default=timedelta(seconds=60), kind="duration")
    debug: bool = _opt("Debug", default=False)


@dataclass
class SlashFilterConfig:
    type: str = _opt("Type", default="local")
    mysql: MySQLConfig = _opt("MySQL", factory=MySQLConfig, kind=MySQLConfig)


@dataclass
class RecorderConfig:
    enable: bool = _opt("Enable", default=False)
    expire_epoch: int = _opt("ExpireEpoch", default=0)
    max_record_per_query: int = _opt("MaxRecordPerQuery", default=0)


@dataclass
class APIConfig:
    listen_address: str = _opt("ListenAddress", default="")


@dataclass
class MinerConfig:
    api: APIConfig = _opt("API", factory=APIConfig, kind=APIConfig)
    full_node: APIInfo | None = _opt("FullNode", default=None, kind=APIInfo)
    gateway: GatewayNode | None = _opt("Gateway", default=None, kind=GatewayNode)
    auth: APIInfo | None = _opt("Auth", default=None, kind=APIInfo)
    submit_nodes: list[APIInfo] = _opt("SubmitNodes", factory=list, kind=("list", APIInfo))
    f3_node: APIInfo | None = _opt("F3Node", default=None, kind=APIInfo)
    propagation_delay_secs: int = _opt("PropagationDelaySecs", default=0)
    mpool_select_delay_secs: int = _opt("MpoolSelectDelaySecs", default=0)
    miner_once_timeout: timedelta = _opt("MinerOnceTimeout", default=timedelta(0), kind="duration")
    slash_filter: SlashFilterConfig | None = _opt("SlashFilter", default=None, kind=SlashFilterConfig)
    recorder: RecorderConfig | None = _opt("Recorder", default=None, kind=RecorderConfig)
    tracing: dict[str, Any] | None = _opt("Tracing", default=None, kind="raw")
    metrics: dict[str, Any] | None = _opt("Metrics", default=None, kind="raw")


def default_miner_config() -> MinerConfig:
    return MinerConfig(
        api=APIConfig("/ip4/127.0.0.1/tcp/12308"),
        full_node=_default_api_info(),
        gateway=GatewayNode([], ""),
        auth=_default_api_info(),
        propagation_delay_secs=12,
        mpool_select_delay_secs=0,
        miner_once_timeout=timedelta(seconds=15),
        slash_filter=SlashFilterConfig(),
    )


def check(cfg: MinerConfig) -> None:
    """Raise ConfigError if the configuration cannot be used to run the miner."""
    if not cfg.api.listen_address:
        raise ConfigError("must config listen address")
    if cfg.full_node is None or not cfg.full_node.addr or not cfg.full_node.token:
        raise ConfigError("must config full node url and token")
    auth_addr = cfg.auth.addr if cfg.auth is not None else ""
    try:
        urlsplit(auth_addr)
    except ValueError as exc:
        raise ConfigError(f"auth url format not correct {auth_addr} {exc}") from exc
    if cfg.gateway is None or not cfg.gateway.listen_api:
        raise ConfigError("config at lease one gateway url")
    sf = cfg.slash_filter or SlashFilterConfig()
    if sf.type == "mysql":
        if not sf.mysql.conn:
            raise ConfigError("mysql dsn must set when slash filter is mysql")
    elif sf.type != "local":
        raise ConfigError(f"not support slash filter {sf.type}")


def from_reader(reader: IO[str] | IO[bytes], default: Any) -> Any:
    """Apply the TOML read from ``reader`` onto ``default`` and return it."""
    data = reader.read()
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        table = tomllib.loads(data)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(str(exc)) from exc
    return _decode(default, table)


def from_file(path: str | os.PathLike[str], default: Any) -> Any:
    """Load config from ``path`` over ``default``; a missing file yields ``default``."""
    try:
        handle = open(path, "rb")
    except FileNotFoundError:
        return default
    with handle:
        return from_reader(handle, default)


def encode_config(cfg: Any) -> str:
    """Encode a configuration object as TOML."""
    return tomli_w.dumps(_encode(cfg))


def config_comment(cfg: Any) -> str:
    """The TOML of ``cfg`` with every key commented out, sections left visible."""
    text = "# Default config:\n" + encode_config(cfg)
    return text.replace("\n", "\n#").replace("#[", "[")


@dataclass
class LegacyMySQLConfig:
    conn: str = _opt("Conn", default="")
    max_open_conn: int = _opt("MaxOpenConn", default=0)
    max_idle_conn: int = _opt("MaxIdleConn", default=0)
    conn_max_life_time: timedelta = _opt("ConnMaxLifeTime", default=timedelta(0), kind="legacy_duration")
    debug: bool = _opt("Debug", default=False)


@dataclass
class LegacySlashFilterConfig:
    type: str = _opt("Type", default="")
    mysql: LegacyMySQLConfig = _opt("MySQL", factory=LegacyMySQLConfig, kind=LegacyMySQLConfig)


@dataclass
class LegacyMinerConfig:
    """Configuration layout used before version 1.8.0."""

    full_node: APIInfo | None = _opt("FullNode", default=None, kind=APIInfo)
    gateway: GatewayNode | None = _opt("Gateway", default=None, kind=GatewayNode)
    auth: APIInfo | None = _opt("Auth", default=None, kind=APIInfo)
    slash_filter: LegacySlashFilterConfig | None = _opt(
        "SlashFilter", default=None, kind=LegacySlashFilterConfig
    )
    tracing: dict[str, Any] | None = _opt("Tracing", default=None, kind="raw")
    metrics: dict[str, Any] | None = _opt("Metrics", default=None, kind="raw")

    def to_miner_config(self, cfg: MinerConfig) -> None:
        """Copy these settings into ``cfg``."""
        if self.slash_filter is None:
            raise ConfigError("legacy config has no slash filter section")
        cfg.full_node = self.full_node
        cfg.gateway = self.gateway
        cfg.auth = self.auth
        if cfg.slash_filter is None:
            cfg.slash_filter = SlashFilterConfig()
        old = self.slash_filter.mysql
        cfg.slash_filter.type = self.slash_filter.type
        cfg.slash_filter.mysql.conn = old.conn
        cfg.slash_filter.mysql.max_open_conn = old.max_open_conn
        cfg.slash_filter.mysql.max_idle_conn = old.max_idle_conn
        cfg.slash_filter.mysql.conn_max_life_time = old.conn_max_life_time
        cfg.slash_filter.mysql.debug = old.debug
        cfg.tracing = self.tracing
        cfg.metrics = self.metrics