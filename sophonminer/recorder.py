"""Per-miner, per-epoch mining records kept in a datastore with automatic expiry."""

from __future__ import annotations

import json
import logging
import struct
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TypeVar

from sophonminer.address import Address
from sophonminer.datastore import Datastore, Key, NamespaceDatastore, NotFoundError

log = logging.getLogger(__name__)

# Largest number of epochs one query may cover.
MAX_RECORD_PER_QUERY = 288
# Records older than this many epochs are removed; 7 * 2880 epochs is about 7 days.
EXPIRE_EPOCH = 7 * 2880

DATASTORE_NAMESPACE = Key("/mine-record")
_MIN_EPOCH_KEY = Key("/index/min-epoch")

Records = dict[str, str]

K = TypeVar("K")
V = TypeVar("V")


class RecorderDisabledError(RuntimeError):
    """Raised when the shared recorder has not been given a datastore."""

    def __init__(self) -> None:
        super().__init__("recorder disabled")


class RecordNotFoundError(NotFoundError):
    """Raised when no record exists for a miner at an epoch."""


class ExceedMaxRecordPerQueryError(ValueError):
    """Raised when a query asks for more epochs than allowed."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"query exceed MaxRecordPerQuery({limit})")


def cover_map(before: Mapping[K, V], after: Mapping[K, V]) -> dict[K, V]:
    """Merge two mappings into a new one; keys in ``after`` win."""
    return {**before, **after}


def _record_key(miner: Address, epoch: int) -> Key:
    return Key(f"/{epoch}/{miner}")


def _epoch_to_bytes(epoch: int) -> bytes:
    return struct.pack(">q", epoch)


def _epoch_from_bytes(data: bytes) -> int:
    if len(data) < 8:
        return 0
    return struct.unpack(">q", data[:8])[0]


class DefaultRecorder:
    """Stores records as JSON under ``/<epoch>/<miner>`` and drops expired epochs."""

    def __init__(
        self,
        ds: Datastore,
        *,
        max_record_per_query: int | None = None,
        expire_epoch: int | None = None,
    ) -> None:
        self._ds = NamespaceDatastore(ds, DATASTORE_NAMESPACE)
        self.max_record_per_query = (
            MAX_RECORD_PER_QUERY if max_record_per_query is None else max_record_per_query
        )
        self.expire_epoch = EXPIRE_EPOCH if expire_epoch is None else expire_epoch
        self._lock = threading.Lock()
        self._latest_record_epoch = 0

    def record(self, miner: Address, epoch: int, records: Mapping[str, str]) -> None:
        """Merge ``records`` into whatever is stored for the miner at ``epoch``."""
        try:
            before = self.get(miner, epoch)
        except RecordNotFoundError:
            before = {}
        self._put(miner, epoch, cover_map(before, records))
        self._clean_expire(epoch)

    def get(self, miner: Address, epoch: int) -> Records:
        """Return the record for the miner at ``epoch`` or raise RecordNotFoundError."""
        key = _record_key(miner, epoch)
        try:
            raw = self._ds.get(key)
        except NotFoundError as exc:
            raise RecordNotFoundError(f"get record ({key}) fail: {exc}") from exc
        return dict(json.loads(raw) or {})

    def _put(self, miner: Address, epoch: int, records: Mapping[str, str]) -> None:
        self._ds.put(_record_key(miner, epoch), json.dumps(dict(records)).encode("utf-8"))

    def query(self, miner: Address, start: int, limit: int) -> list[Records]:
        """Records for ``limit`` epochs from ``start``; missing epochs are skipped."""
        if limit < 0:
            raise ValueError("limit must not be negative")
        if limit > self.max_record_per_query:
            raise ExceedMaxRecordPerQueryError(self.max_record_per_query)
        if limit == 0:
            limit = 1
        end = start + limit
        found: list[Records] = []
        for epoch in range(start, end):
            try:
                stored = self.get(miner, epoch)
            except RecordNotFoundError as exc:
                log.warning("query record: %s on %d : %s", miner, epoch, exc)
                continue
            found.append(cover_map(stored, {"miner": str(miner), "epoch": str(epoch)}))

        if len(found) != limit:
            log.info("query record: %s from %d to %d ,found %d ", miner, start, end, len(found))
        else:
            log.debug("query record: %s from %d to %d ,found %d ", miner, start, end, len(found))
        return found

    def _clean_expire(self, epoch: int) -> None:
        with self._lock:
            if epoch <= self._latest_record_epoch:
                return
            self._latest_record_epoch = epoch
        self._clean_before(epoch - self.expire_epoch)

    def _clean_before(self, deadline: int) -> None:
        try:
            raw = self._ds.get(_MIN_EPOCH_KEY)
        except NotFoundError:
            self._ds.put(_MIN_EPOCH_KEY, _epoch_to_bytes(deadline))
            return

        min_epoch = _epoch_from_bytes(raw)
        if deadline <= min_epoch:
            return
        for epoch in range(min_epoch, deadline):
            for key, _ in self._ds.query(f"/{epoch}", keys_only=True):
                self._ds.delete(key)
        self._ds.put(_MIN_EPOCH_KEY, _epoch_to_bytes(deadline))


_inner: DefaultRecorder | None = None


def set_datastore(ds: Datastore) -> None:
    """Enable the shared recorder, storing records in ``ds``."""
    global _inner
    _inner = DefaultRecorder(ds)


def _available() -> DefaultRecorder:
    if _inner is None:
        raise RecorderDisabledError()
    return _inner


def record(miner: Address, epoch: int, records: Mapping[str, str]) -> None:
    """Record through the shared recorder."""
    _available().record(miner, epoch, records)


def query(miner: Address, epoch: int, limit: int) -> list[Records]:
    """Query the shared recorder."""
    return _available().query(miner, epoch, limit)


@dataclass(frozen=True)
class SubRecorder:
    """Records for one miner at one epoch; failures are logged, never raised."""

    miner: Address
    epoch: int

    def record(self, records: Mapping[str, str]) -> None:
        try:
            recorder = _available()
        except RecorderDisabledError:
            log.debug("recorder disabled, skip record")
            return
        try:
            recorder.record(self.miner, self.epoch, records)
        except Exception as exc:
            log.warning("record failed: %s", exc)


def sub(miner: Address, epoch: int) -> SubRecorder:
    """A recorder bound to a miner and an epoch."""
    return SubRecorder(miner, epoch)