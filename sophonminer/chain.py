"""Content identifiers, tipset keys and block headers used by the slash filter."""

from __future__ import annotations

import base64
import binascii
import hashlib
import struct
from dataclasses import dataclass, field

from sophonminer.address import Address

DAG_CBOR = 0x71
BLAKE2B_256 = 0xB220


class CidError(ValueError):
    """Raised for malformed content identifiers."""


def _uvarint(value: int) -> bytes:
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _read_uvarint(data: bytes, pos: int) -> tuple[int, int]:
    value = 0
    for shift in range(0, 64, 7):
        if pos >= len(data):
            break
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
    raise CidError("invalid varint in cid")


@dataclass(frozen=True)
class Cid:
    """A version 1 content identifier: codec and multihash."""

    version: int
    codec: int
    multihash: bytes

    @classmethod
    def from_bytes(cls, data: bytes) -> Cid:
        """Parse the binary form of a CID."""
        data = bytes(data)
        version, pos = _read_uvarint(data, 0)
        if version != 1:
            raise CidError(f"unsupported cid version {version}")
        codec, start = _read_uvarint(data, pos)
        _, pos = _read_uvarint(data, start)
        length, pos = _read_uvarint(data, pos)
        if pos + length != len(data):
            raise CidError("multihash length does not match cid")
        return cls(1, codec, data[start:])

    @classmethod
    def decode(cls, text: str) -> Cid:
        """Parse the base32 string form of a CID."""
        body = text[1:]
        if not text.startswith("b") or body != body.lower():
            raise CidError(f"unsupported cid encoding {text!r}")
        try:
            raw = base64.b32decode(body.upper() + "=" * (-len(body) % 8))
        except (binascii.Error, ValueError) as exc:
            raise CidError(f"invalid base32 cid {text!r}") from exc
        return cls.from_bytes(raw)

    def to_bytes(self) -> bytes:
        return _uvarint(self.version) + _uvarint(self.codec) + self.multihash

    def __str__(self) -> str:
        return "b" + base64.b32encode(self.to_bytes()).decode("ascii").rstrip("=").lower()


def cid_of(data: bytes) -> Cid:
    """CID of ``data`` hashed with blake2b-256 under the dag-cbor codec."""
    digest = hashlib.blake2b(bytes(data), digest_size=32).digest()
    return Cid(1, DAG_CBOR, _uvarint(BLAKE2B_256) + _uvarint(len(digest)) + digest)


@dataclass(frozen=True)
class Ticket:
    vrf_proof: bytes = b""


@dataclass(frozen=True)
class TipSetKey:
    """The ordered set of block CIDs that identifies a tipset."""

    cids: tuple[Cid, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "cids", tuple(self.cids))

    def to_bytes(self) -> bytes:
        return b"".join(c.to_bytes() for c in self.cids)

    def __str__(self) -> str:
        return "{" + ",".join(str(c) for c in self.cids) + "}"


def _blob(data: bytes | None) -> bytes:
    return b"\0" if data is None else _uvarint(len(data)) + data


@dataclass
class BlockHeader:
    """The parts of a block header the slash filter inspects."""

    miner: Address
    height: int = 0
    parents: list[Cid] = field(default_factory=list)
    ticket: Ticket | None = None
    parent_state_root: Cid | None = None
    parent_message_receipts: Cid | None = None
    messages: Cid | None = None

    def tipset_key(self) -> TipSetKey:
        return TipSetKey(tuple(self.parents))

    def cid(self) -> Cid:
        """Content identifier of the serialised header."""
        links = (self.parent_state_root, self.parent_message_receipts, self.messages)
        parts = [
            _blob(self.miner.to_bytes()),
            struct.pack(">q", self.height),
            _uvarint(len(self.parents)),
            *(_blob(p.to_bytes()) for p in self.parents),
            _blob(self.ticket.vrf_proof if self.ticket is not None else None),
            *(_blob(c.to_bytes() if c is not None else None) for c in links),
        ]
        return cid_of(b"".join(parts))