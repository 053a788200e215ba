"""On-disk miner repository: configuration, API endpoint, token, lock and datastores."""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Callable
from typing import IO, Any

from sophonminer.config import (
    LegacyMinerConfig,
    MinerConfig,
    config_comment,
    default_miner_config,
    encode_config,
    from_file,
)
from sophonminer.datastore import Datastore, SqliteDatastore
from sophonminer.multiaddr import Multiaddr, parse_multiaddr

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms
    fcntl = None  # type: ignore[assignment]
    import msvcrt

log = logging.getLogger(__name__)

FS_API = "api"
FS_API_TOKEN = "token"
FS_CONFIG = "config.toml"
FS_DATASTORE = "datastore"
FS_VERSION = "version"
FS_LOCK = "repo.lock"

VERSION = "1.18.0"

_DATASTORES: dict[str, Callable[[str, bool], Datastore]] = {
    "metadata": lambda path, readonly: SqliteDatastore(path, readonly=readonly),
}


class RepoError(Exception):
    """Base class for repository errors."""


class NoAPIEndpointError(RepoError):
    def __init__(self) -> None:
        super().__init__("API not running (no endpoint)")


class RepoAlreadyLockedError(RepoError):
    def __init__(self) -> None:
        super().__init__("repo is already locked")


class ClosedRepoError(RepoError):
    def __init__(self) -> None:
        super().__init__("repo is no longer open")


class _FileLock:
    """An exclusive, non-blocking lock on a file, held until released."""

    def __init__(self, handle: IO[bytes]) -> None:
        self._handle = handle

    @classmethod
    def try_acquire(cls, path: str) -> _FileLock | None:
        handle = open(path, "a+b")
        try:
            if fcntl is not None:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            else:  # pragma: no cover
                handle.seek(0)
                msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            handle.close()
            return None
        return cls(handle)

    def release(self) -> None:
        try:
            if fcntl is not None:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            else:  # pragma: no cover
                self._handle.seek(0)
                msvcrt.locking(self._handle.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            self._handle.close()


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


class FsRepo:
    """A repository rooted at a directory on the file system."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.path.expanduser(os.fspath(path))
        self.config_path = os.path.join(self.path, FS_CONFIG)

    def set_config_path(self, path: str | os.PathLike[str]) -> None:
        self.config_path = os.fspath(path)

    def exists(self) -> bool:
        return os.path.exists(os.path.join(self.path, FS_CONFIG))

    def init(self) -> None:
        """Create the repository directory and a default config if absent."""
        if self.exists():
            return
        log.info("Initializing repo at '%s'", self.path)
        os.makedirs(self.path, mode=0o755, exist_ok=True)
        try:
            self._init_config()
        except OSError as exc:
            raise RepoError(f"init config: {exc}") from exc

    def _init_config(self) -> None:
        if os.path.exists(self.config_path):
            return
        text = config_comment(default_miner_config())
        with open(self.config_path, "w", encoding="utf-8") as handle:
            handle.write(text)

    def update(self, cfg: MinerConfig) -> None:
        """Write ``cfg`` over the existing config file, keys commented out."""
        with open(self.config_path, "r+b") as handle:
            handle.write(config_comment(cfg).encode("utf-8"))

    def api_endpoint(self) -> Multiaddr:
        path = os.path.join(self.path, FS_API)
        try:
            with open(path, encoding="utf-8") as handle:
                data = handle.read()
        except FileNotFoundError:
            raise NoAPIEndpointError() from None
        return parse_multiaddr(data.strip())

    def api_token(self) -> bytes | None:
        path = os.path.join(self.path, FS_API_TOKEN)
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except FileNotFoundError:
            log.warning("api token not exit , wont use token auth")
            return None
        return data.strip()

    def config(self) -> Any:
        return from_file(self.config_path, default_miner_config())

    def lock(self) -> LockedRepo:
        """Acquire the exclusive lock on this repository."""
        try:
            held = _FileLock.try_acquire(os.path.join(self.path, FS_LOCK))
        except OSError as exc:
            raise RepoError(f"could not lock the repo: {exc}") from exc
        if held is None:
            raise RepoAlreadyLockedError()
        return LockedRepo(self.path, self.config_path, held)


class LockedRepo:
    """A repository held under its exclusive lock."""

    def __init__(self, path: str, config_path: str, closer: _FileLock, readonly: bool = False) -> None:
        self.path = path
        self.config_path = config_path
        self.readonly = readonly
        self._closer: _FileLock | None = closer
        self._datastores: dict[str, Datastore] | None = None
        self._ds_error: Exception | None = None
        self._ds_lock = threading.Lock()
        self._config_lock = threading.Lock()

    def __enter__(self) -> LockedRepo:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _join(self, *parts: str) -> str:
        return os.path.join(self.path, *parts)

    def _still_valid(self) -> None:
        if self._closer is None:
            raise ClosedRepoError()

    def close(self) -> None:
        """Close open datastores and release the lock."""
        if self._datastores is not None:
            for ds in self._datastores.values():
                try:
                    ds.close()
                except Exception as exc:
                    raise RepoError(f"could not close datastore: {exc}") from exc
            self._datastores = None
        if self._closer is not None:
            closer, self._closer = self._closer, None
            closer.release()

    def config(self) -> Any:
        with self._config_lock:
            return from_file(self.config_path, default_miner_config())

    def set_config(self, mutate: Callable[[Any], None]) -> None:
        """Load the config, apply ``mutate`` to it and write it back."""
        self._still_valid()
        with self._config_lock:
            cfg = from_file(self.config_path, default_miner_config())
            mutate(cfg)
            _write_file(self.config_path, encode_config(cfg).encode("utf-8"), 0o644)

    def set_api_endpoint(self, addr: Multiaddr) -> None:
        self._still_valid()
        _write_file(self._join(FS_API), str(addr).encode("utf-8"), 0o644)

    def set_version(self, version: str) -> None:
        self._still_valid()
        _write_file(self._join(FS_VERSION), version.encode("utf-8"), 0o644)

    def set_api_token(self, token: bytes) -> None:
        self._still_valid()
        _write_file(self._join(FS_API_TOKEN), bytes(token), 0o600)

    def _open_datastores(self) -> dict[str, Datastore]:
        root = self._join(FS_DATASTORE)
        try:
            os.makedirs(root, mode=0o755, exist_ok=True)
        except OSError as exc:
            raise RepoError(f"mkdir {root}: {exc}") from exc
        out: dict[str, Datastore] = {}
        for name, ctor in _DATASTORES.items():
            try:
                out["/" + name] = ctor(os.path.join(root, name), self.readonly)
            except Exception as exc:
                raise RepoError(f"opening datastore /{name}: {exc}") from exc
        return out

    def datastore(self, namespace: str) -> Datastore:
        """Return the datastore registered under ``namespace``, e.g. ``/metadata``."""
        with self._ds_lock:
            if self._datastores is None and self._ds_error is None:
                try:
                    self._datastores = self._open_datastores()
                except RepoError as exc:
                    self._ds_error = exc
        if self._ds_error is not None:
            raise self._ds_error
        assert self._datastores is not None
        try:
            return self._datastores[namespace]
        except KeyError:
            raise RepoError(f"no such datastore: {namespace}") from None

    def migrate(self) -> None:
        """Run every upgrade newer than the recorded version, then record the current one."""
        try:
            with open(self._join(FS_VERSION), encoding="utf-8") as handle:
                text = handle.read()
        except FileNotFoundError:
            text = "0"
        current = int(text) if re.fullmatch(r"[+-]?[0-9]+", text) else 0

        for version, upgrade in _UPGRADES:
            if version > current:
                try:
                    upgrade(self)
                except Exception as exc:
                    raise RepoError(f"upgrade version to {version}: {exc}") from exc
                log.info("success to upgrade version %d to %d", current, version)
                current = version

        try:
            self.set_version(VERSION)
        except RepoError as exc:
            raise RepoError(f"modify version failed: {exc}") from exc


def version180_upgrade(repo: LockedRepo) -> None:
    """Convert a config written in the pre-1.8.0 layout to the current one."""
    legacy = from_file(repo.config_path, LegacyMinerConfig())
    try:
        repo.set_config(legacy.to_miner_config)
    except Exception as exc:
        raise RepoError(f"modify config failed: {exc}") from exc


_UPGRADES: list[tuple[int, Callable[[LockedRepo], None]]] = [
    (180, version180_upgrade),
]