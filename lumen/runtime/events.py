"""Normalised runtime events."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class EventType(str, Enum):
    """Kinds of events flowing from the driver to the dispatcher."""

    KEY = "key"
    MOUSE = "mouse"
    TEXT = "text"
    RESIZE = "resize"
    FOCUS = "focus"
    QUIT = "quit"
    ERROR = "error"
    SYSTEM = "system"


SYSTEM_EVENT_TYPES = frozenset(
    {EventType.RESIZE, EventType.QUIT, EventType.FOCUS, EventType.ERROR, EventType.SYSTEM}
)

SHIFT = 1
CTRL = 2
ALT = 4
META = 8


@dataclass(frozen=True)
class KeyModifiers:
    shift: bool = False
    ctrl: bool = False
    alt: bool = False
    meta: bool = False

    @classmethod
    def from_bitmask(cls, mask: int) -> "KeyModifiers":
        return cls(
            shift=bool(mask & SHIFT),
            ctrl=bool(mask & CTRL),
            alt=bool(mask & ALT),
            meta=bool(mask & META),
        )

    @property
    def none(self) -> bool:
        return not (self.shift or self.ctrl or self.alt or self.meta)


NO_MODIFIERS = KeyModifiers()


@dataclass(frozen=True)
class Event:
    """An immutable input or system notification.

    ``data`` is stored as a read-only mapping; the payload keys depend on
    ``type`` (``key``/``modifiers`` for keys, ``x``/``y``/``button`` for the
    mouse, ``width``/``height`` for resizes and so on).
    """

    type: EventType
    data: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.monotonic, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", EventType(self.type))
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def is_system(self) -> bool:
        return self.type in SYSTEM_EVENT_TYPES

    @classmethod
    def key(
        cls,
        key: str,
        modifiers: KeyModifiers = NO_MODIFIERS,
        *,
        char: Optional[str] = None,
    ) -> "Event":
        return cls(EventType.KEY, {"key": key, "char": char, "modifiers": modifiers})

    @classmethod
    def mouse(cls, x: int, y: int, button: str, *, action: str = "press") -> "Event":
        return cls(EventType.MOUSE, {"action": action, "x": x, "y": y, "button": button})

    @classmethod
    def text(cls, text: str) -> "Event":
        return cls(EventType.TEXT, {"text": text})

    @classmethod
    def resize(cls, width: int, height: int) -> "Event":
        return cls(EventType.RESIZE, {"width": width, "height": height})

    @classmethod
    def focus(cls, focused: bool) -> "Event":
        return cls(EventType.FOCUS, {"focused": focused})

    @classmethod
    def quit(cls) -> "Event":
        return cls(EventType.QUIT)

    @classmethod
    def error(cls, error: Any) -> "Event":
        return cls(EventType.ERROR, {"error": error})

    @classmethod
    def system(cls, **data: Any) -> "Event":
        return cls(EventType.SYSTEM, data)


__all__ = [
    "Event",
    "EventType",
    "KeyModifiers",
    "NO_MODIFIERS",
    "SYSTEM_EVENT_TYPES",
]
