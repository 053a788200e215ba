"""A small multiaddr parser covering the address forms the miner uses."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass


class MultiaddrError(ValueError):
    """Raised for malformed or undialable multiaddrs."""


_HOSTS = {"ip4": "4", "ip6": "6", "dns4": "4", "dns6": "6", "dns": ""}
_PORTS = frozenset({"tcp", "udp"})
_FLAGS = frozenset({"http", "https", "ws", "wss", "tls"})


def _check_value(proto: str, value: str) -> str:
    if proto in ("ip4", "ip6"):
        try:
            return str(ipaddress.ip_address(value))
        except ValueError as exc:
            raise MultiaddrError(f"invalid {proto} address {value!r}") from exc
    if proto in _PORTS:
        if not (value.isascii() and value.isdigit()) or int(value) > 65535:
            raise MultiaddrError(f"invalid {proto} port {value!r}")
        return str(int(value))
    if not value:
        raise MultiaddrError(f"empty value for {proto}")
    return value


@dataclass(frozen=True)
class Multiaddr:
    """A parsed multiaddr: a sequence of (protocol, value) components."""

    components: tuple[tuple[str, str | None], ...]

    def __str__(self) -> str:
        return "".join(
            f"/{proto}" if value is None else f"/{proto}/{value}"
            for proto, value in self.components
        )

    def dial_args(self) -> tuple[str, str]:
        """Return the network name and ``host:port`` to dial."""
        if len(self.components) < 2 or self.components[0][0] not in _HOSTS:
            raise MultiaddrError(f"{self} is not a dialable address")
        (kind, host), (transport, port) = self.components[:2]
        if transport not in _PORTS:
            raise MultiaddrError(f"{self} has no tcp or udp transport")
        if ":" in host:
            host = f"[{host}]"
        return transport + _HOSTS[kind], f"{host}:{port}"


def parse_multiaddr(text: str) -> Multiaddr:
    """Parse a textual multiaddr such as ``/ip4/127.0.0.1/tcp/12308``."""
    if not text.startswith("/"):
        raise MultiaddrError(f"multiaddr {text!r} must begin with /")
    parts = iter(text.rstrip("/").split("/")[1:])
    components: list[tuple[str, str | None]] = []
    for proto in parts:
        if proto in _FLAGS:
            components.append((proto, None))
        elif proto in _HOSTS or proto in _PORTS:
            value = next(parts, None)
            if value is None:
                raise MultiaddrError(f"protocol {proto} needs a value")
            components.append((proto, _check_value(proto, value)))
        else:
            raise MultiaddrError(f"unknown protocol {proto!r}")
    if not components:
        raise MultiaddrError("empty multiaddr")
    return Multiaddr(tuple(components))