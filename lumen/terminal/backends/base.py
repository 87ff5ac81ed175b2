"""Backend interface shared by the native and fallback terminal backends.

Backends report input as plain dictionaries so the driver can translate
both implementations with one set of rules:

* ``{"type": "key", "key": int, "char": int, "mod": int}``
* ``{"type": "mouse", "x": int, "y": int, "button": int, "action": str}``
* ``{"type": "resize", "width": int, "height": int}``
* ``{"type": "error", "reason": Any}``

``char`` is a Unicode code point (0 when the key is not printable) and
``key`` one of the codes in :data:`KEY_NAMES`.
"""
from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Dict

RawEvent = Dict[str, Any]

KEY_TAB = 9
KEY_ENTER = 13
KEY_ESC = 27
KEY_BACKSPACE = 127
KEY_UP = 65
KEY_DOWN = 66
KEY_RIGHT = 67
KEY_LEFT = 68
KEY_HOME = 262
KEY_DELETE = 330
KEY_INSERT = 331
KEY_PAGE_DOWN = 338
KEY_PAGE_UP = 339
KEY_END = 360
KEY_F1 = 265

KEY_NAMES: Dict[int, str] = {
    KEY_TAB: "tab",
    KEY_ENTER: "enter",
    KEY_ESC: "escape",
    KEY_BACKSPACE: "backspace",
    KEY_UP: "up",
    KEY_DOWN: "down",
    KEY_RIGHT: "right",
    KEY_LEFT: "left",
    KEY_HOME: "home",
    KEY_END: "end",
    KEY_PAGE_UP: "page_up",
    KEY_PAGE_DOWN: "page_down",
    KEY_DELETE: "delete",
    KEY_INSERT: "insert",
    **{KEY_F1 + index: f"f{index + 1}" for index in range(12)},
}

MOUSE_BUTTONS: Dict[int, str] = {
    0: "left",
    1: "right",
    2: "middle",
    3: "wheel_up",
    4: "wheel_down",
}


class TerminalBackend(abc.ABC):
    """Raw terminal I/O."""

    name: str = "abstract"

    @abc.abstractmethod
    def init(self) -> None:
        """Take over the terminal; raise :class:`BackendError` on failure."""

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Restore the terminal. Safe to call more than once."""

    @abc.abstractmethod
    def width(self) -> int: ...

    @abc.abstractmethod
    def height(self) -> int: ...

    @abc.abstractmethod
    def events(self) -> AsyncIterator[RawEvent]:
        """Yield raw notifications until the backend is shut down."""

    def set_title(self, title: str) -> None:
        """Set the terminal window title when supported."""

    def set_position(self, x: int, y: int) -> None:
        """Move the terminal window when supported."""


__all__ = ["TerminalBackend", "RawEvent", "KEY_NAMES", "MOUSE_BUTTONS"]
