"""Filecoin actor addresses in their string and binary forms."""

from __future__ import annotations

import base64
import binascii
import enum
import hashlib
from dataclasses import dataclass

_CHECKSUM_LEN = 4
_MAX_ID = 2**63 - 1


class AddressError(ValueError):
    """Raised for malformed addresses."""


class Protocol(enum.IntEnum):
    ID = 0
    SECP256K1 = 1
    ACTOR = 2
    BLS = 3


_PAYLOAD_LEN = {Protocol.SECP256K1: 20, Protocol.ACTOR: 20, Protocol.BLS: 48}


def _uvarint_encode(value: int) -> bytes:
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _uvarint_decode(data: bytes) -> int:
    value = 0
    for pos, byte in enumerate(data):
        value |= (byte & 0x7F) << (7 * pos)
        if not byte & 0x80:
            if pos + 1 != len(data):
                break
            return value
    raise AddressError("invalid ID address payload")


def _checksum(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=_CHECKSUM_LEN).digest()


@dataclass(frozen=True)
class Address:
    """An address: a protocol and its payload bytes."""

    protocol: Protocol
    payload: bytes

    def __post_init__(self) -> None:
        try:
            protocol = Protocol(self.protocol)
        except ValueError as exc:
            raise AddressError(f"unknown address protocol {self.protocol}") from exc
        object.__setattr__(self, "protocol", protocol)
        object.__setattr__(self, "payload", bytes(self.payload))
        if protocol is Protocol.ID:
            if _uvarint_decode(self.payload) > _MAX_ID:
                raise AddressError("ID out of range")
        elif len(self.payload) != _PAYLOAD_LEN[protocol]:
            raise AddressError("invalid payload length")

    @classmethod
    def from_string(cls, text: str) -> Address:
        """Parse the textual form, e.g. ``f021344``."""
        if len(text) < 3 or text[0] not in "ft" or text[1] not in "0123":
            raise AddressError(f"invalid address {text!r}")
        protocol = Protocol(int(text[1]))
        raw = text[2:]
        if protocol is Protocol.ID:
            if not (raw.isascii() and raw.isdigit()) or len(raw) > 19:
                raise AddressError(f"invalid ID address {text!r}")
            return new_id_address(int(raw))
        if raw != raw.lower():
            raise AddressError(f"invalid address encoding {text!r}")
        try:
            decoded = base64.b32decode(raw.upper() + "=" * (-len(raw) % 8))
        except (binascii.Error, ValueError) as exc:
            raise AddressError(f"invalid address encoding {text!r}") from exc
        addr = cls(protocol, decoded[:-_CHECKSUM_LEN])
        if _checksum(addr.to_bytes()) != decoded[-_CHECKSUM_LEN:]:
            raise AddressError(f"invalid checksum in address {text!r}")
        return addr

    def to_bytes(self) -> bytes:
        """Binary form: the protocol byte followed by the payload."""
        return bytes([self.protocol]) + self.payload

    def __str__(self) -> str:
        if self.protocol is Protocol.ID:
            return f"f0{_uvarint_decode(self.payload)}"
        body = self.payload + _checksum(self.to_bytes())
        encoded = base64.b32encode(body).decode("ascii").rstrip("=").lower()
        return f"f{int(self.protocol)}{encoded}"


def new_id_address(actor_id: int) -> Address:
    """Build an ID-protocol address for the given actor id."""
    if not 0 <= actor_id <= _MAX_ID:
        raise AddressError(f"actor id {actor_id} out of range")
    return Address(Protocol.ID, _uvarint_encode(actor_id))