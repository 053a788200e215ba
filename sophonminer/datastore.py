"""Key-value datastores with hierarchical keys."""

from __future__ import annotations

import abc
import posixpath
import sqlite3
import threading
from dataclasses import dataclass
from os import PathLike


class NotFoundError(LookupError):
    """Raised when a key is absent from a datastore."""

    def __init__(self, message: str = "datastore: key not found") -> None:
        super().__init__(message)


def _clean(path: str) -> str:
    return posixpath.normpath("/" + path.lstrip("/"))


@dataclass(frozen=True, order=True)
class Key:
    """A slash-separated, normalised datastore key."""

    path: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", _clean(self.path))

    def __str__(self) -> str:
        return self.path

    def child(self, other: Key | str) -> Key:
        """Return this key with ``other`` appended."""
        return Key(self.path + "/" + str(other))


def _key(value: Key | str) -> str:
    return value.path if isinstance(value, Key) else _clean(value)


Entries = list[tuple[str, bytes | None]]


class Datastore(abc.ABC):
    """Interface shared by all datastores."""

    @abc.abstractmethod
    def get(self, key: Key | str) -> bytes:
        """Return the value stored under ``key`` or raise NotFoundError."""

    @abc.abstractmethod
    def put(self, key: Key | str, value: bytes) -> None:
        """Store ``value`` under ``key``."""

    def has(self, key: Key | str) -> bool:
        try:
            self.get(key)
        except NotFoundError:
            return False
        return True

    @abc.abstractmethod
    def delete(self, key: Key | str) -> None:
        """Remove ``key``; absent keys are ignored."""

    @abc.abstractmethod
    def query(self, prefix: Key | str = "/", keys_only: bool = False) -> Entries:
        """Return (key, value) pairs under ``prefix`` in key order."""

    def close(self) -> None:
        """Release resources held by the store."""

    def __enter__(self) -> Datastore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MapDatastore(Datastore):
    """An in-memory datastore."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: Key | str) -> bytes:
        try:
            return self._data[_key(key)]
        except KeyError:
            raise NotFoundError() from None

    def put(self, key: Key | str, value: bytes) -> None:
        self._data[_key(key)] = bytes(value)

    def delete(self, key: Key | str) -> None:
        self._data.pop(_key(key), None)

    def query(self, prefix: Key | str = "/", keys_only: bool = False) -> Entries:
        wanted = _key(prefix)
        return [
            (k, None if keys_only else v)
            for k, v in sorted(self._data.items())
            if wanted == "/" or k.startswith(wanted + "/")
        ]


class NamespaceDatastore(Datastore):
    """A view of another datastore with every key placed under a prefix."""

    def __init__(self, child: Datastore, prefix: Key | str) -> None:
        self._child = child
        self._prefix = Key(_key(prefix))

    def _wrap(self, key: Key | str) -> Key:
        return self._prefix.child(_key(key))

    def get(self, key: Key | str) -> bytes:
        return self._child.get(self._wrap(key))

    def put(self, key: Key | str, value: bytes) -> None:
        self._child.put(self._wrap(key), value)

    def has(self, key: Key | str) -> bool:
        return self._child.has(self._wrap(key))

    def delete(self, key: Key | str) -> None:
        self._child.delete(self._wrap(key))

    def query(self, prefix: Key | str = "/", keys_only: bool = False) -> Entries:
        cut = 0 if self._prefix.path == "/" else len(self._prefix.path)
        return [
            (k[cut:] or "/", v) for k, v in self._child.query(self._wrap(prefix), keys_only)
        ]

    def close(self) -> None:
        self._child.close()


class SqliteDatastore(Datastore):
    """A persistent datastore kept in an SQLite file."""

    def __init__(self, path: str | PathLike[str], readonly: bool = False) -> None:
        self._readonly = readonly
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        with self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value BLOB NOT NULL)"
            )

    def _execute(self, sql: str, params: tuple = (), write: bool = False) -> list:
        if write and self._readonly:
            raise PermissionError("datastore is read-only")
        with self._lock, self._conn:
            return self._conn.execute(sql, params).fetchall()

    def get(self, key: Key | str) -> bytes:
        rows = self._execute("SELECT value FROM kv WHERE key = ?", (_key(key),))
        if not rows:
            raise NotFoundError()
        return bytes(rows[0][0])

    def put(self, key: Key | str, value: bytes) -> None:
        self._execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
            (_key(key), bytes(value)),
            write=True,
        )

    def delete(self, key: Key | str) -> None:
        self._execute("DELETE FROM kv WHERE key = ?", (_key(key),), write=True)

    def query(self, prefix: Key | str = "/", keys_only: bool = False) -> Entries:
        wanted = _key(prefix)
        column = "NULL" if keys_only else "value"
        if wanted == "/":
            rows = self._execute(f"SELECT key, {column} FROM kv ORDER BY key")
        else:
            # Keys strictly under "prefix/" sort between "prefix/" and "prefix0".
            rows = self._execute(
                f"SELECT key, {column} FROM kv WHERE key > ? AND key < ? ORDER BY key",
                (wanted + "/", wanted + "0"),
            )
        return [(k, None if v is None else bytes(v)) for k, v in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()