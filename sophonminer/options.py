"""Composable options that fill in the constructors and start-up hooks of a node."""

from __future__ import annotations

import enum
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from typing import Any


class Invoke(enum.IntEnum):
    """Start-up hooks, run in the order defined here."""

    INIT_JOURNAL = 0
    EXTRACT_API = 1
    SET_API_ENDPOINT = 2
    SET_RECORDER_DATASTORE = 3
    LAUNCH_METRICS_SAMPLE_THREAD = 4
    F3_PARTICIPANT = 5


def _empty_invokes() -> list[Callable[..., Any] | None]:
    return [None] * len(Invoke)


@dataclass
class Settings:
    """Constructors keyed by what they provide, plus one slot per start-up hook."""

    modules: dict[Hashable, Callable[..., Any]] = field(default_factory=dict)
    invokes: list[Callable[..., Any] | None] = field(default_factory=_empty_invokes)


Option = Callable[[Settings], None]


def options(*args: Option) -> Option:
    """Group options into one that applies them in order, stopping at the first error."""

    def apply(settings: Settings) -> None:
        for opt in args:
            opt(settings)

    return apply


def error(err: BaseException) -> Option:
    """An option that raises ``err`` when applied."""

    def apply(settings: Settings) -> None:
        raise err

    return apply


def apply_if(check: Callable[[Settings], bool], *args: Option) -> Option:
    """Apply ``args`` only when ``check`` approves the settings at that moment."""

    def apply(settings: Settings) -> None:
        if check(settings):
            options(*args)(settings)

    return apply


def if_(condition: bool, *args: Option) -> Option:
    """Apply ``args`` only when ``condition`` is true."""
    return apply_if(lambda _settings: condition, *args)


def _as_constructor(value: Any) -> Callable[..., Any]:
    if callable(value):
        return value
    return lambda: value


def override(key: Hashable, constructor: Any) -> Option:
    """Set the constructor for ``key``; a plain value is wrapped into one."""

    def apply(settings: Settings) -> None:
        if isinstance(key, Invoke):
            settings.invokes[key] = constructor
        else:
            settings.modules[key] = _as_constructor(constructor)

    return apply


def unset(key: Hashable) -> Option:
    """Remove whatever was set for ``key``."""

    def apply(settings: Settings) -> None:
        if isinstance(key, Invoke):
            settings.invokes[key] = None
        else:
            settings.modules.pop(key, None)

    return apply