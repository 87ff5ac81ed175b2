"""Native backend over ``libtermbox2``.

The shared library is reached through :mod:`ctypes`. termbox2 owns the
terminal while initialised (raw mode, alternate buffer, mouse reporting);
input is polled with ``tb_peek_event`` on a worker thread so the event loop
never blocks.
"""
from __future__ import annotations

import asyncio
import ctypes
import ctypes.util
import os
import threading
from typing import Any, AsyncIterator, Dict, Optional

from lumen.terminal.backends.base import (
    KEY_BACKSPACE,
    KEY_DELETE,
    KEY_DOWN,
    KEY_END,
    KEY_ENTER,
    KEY_ESC,
    KEY_F1,
    KEY_HOME,
    KEY_INSERT,
    KEY_LEFT,
    KEY_PAGE_DOWN,
    KEY_PAGE_UP,
    KEY_RIGHT,
    KEY_TAB,
    KEY_UP,
    RawEvent,
    TerminalBackend,
)
from lumen.utils.errors import BackendError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)

LIBRARY_ENV = "LUMEN_TERMBOX_LIB"

TB_OK = 0
TB_ERR_NO_EVENT = -6
TB_ERR_POLL = -14

TB_EVENT_KEY = 1
TB_EVENT_RESIZE = 2
TB_EVENT_MOUSE = 3

TB_MOD_ALT = 1
TB_MOD_CTRL = 2
TB_MOD_SHIFT = 4
TB_MOD_MOTION = 8

TB_INPUT_ESC = 1
TB_INPUT_MOUSE = 4

_KEY_BASE = 0xFFFF
TB_KEY_MOUSE_LEFT = _KEY_BASE - 22
TB_KEY_MOUSE_RIGHT = _KEY_BASE - 23
TB_KEY_MOUSE_MIDDLE = _KEY_BASE - 24
TB_KEY_MOUSE_RELEASE = _KEY_BASE - 25
TB_KEY_MOUSE_WHEEL_UP = _KEY_BASE - 26
TB_KEY_MOUSE_WHEEL_DOWN = _KEY_BASE - 27

KEY_CODES: Dict[int, int] = {
    **{_KEY_BASE - index: KEY_F1 + index for index in range(12)},
    _KEY_BASE - 12: KEY_INSERT,
    _KEY_BASE - 13: KEY_DELETE,
    _KEY_BASE - 14: KEY_HOME,
    _KEY_BASE - 15: KEY_END,
    _KEY_BASE - 16: KEY_PAGE_UP,
    _KEY_BASE - 17: KEY_PAGE_DOWN,
    _KEY_BASE - 18: KEY_UP,
    _KEY_BASE - 19: KEY_DOWN,
    _KEY_BASE - 20: KEY_LEFT,
    _KEY_BASE - 21: KEY_RIGHT,
    0x09: KEY_TAB,
    0x0D: KEY_ENTER,
    0x1B: KEY_ESC,
    0x08: KEY_BACKSPACE,
    0x7F: KEY_BACKSPACE,
}

MOUSE_CODES: Dict[int, int] = {
    TB_KEY_MOUSE_LEFT: 0,
    TB_KEY_MOUSE_RIGHT: 1,
    TB_KEY_MOUSE_MIDDLE: 2,
    TB_KEY_MOUSE_WHEEL_UP: 3,
    TB_KEY_MOUSE_WHEEL_DOWN: 4,
}


class TbEvent(ctypes.Structure):
    _fields_ = [
        ("type", ctypes.c_uint8),
        ("mod", ctypes.c_uint8),
        ("key", ctypes.c_uint16),
        ("ch", ctypes.c_uint32),
        ("w", ctypes.c_int32),
        ("h", ctypes.c_int32),
        ("x", ctypes.c_int32),
        ("y", ctypes.c_int32),
    ]


def find_library() -> Optional[str]:
    return os.environ.get(LIBRARY_ENV) or ctypes.util.find_library("termbox2")


def load_library(path: Optional[str] = None) -> Optional[ctypes.CDLL]:
    """Load libtermbox2, returning ``None`` when it is not installed."""

    path = path or find_library()
    if not path:
        return None
    try:
        lib = ctypes.CDLL(path)
    except OSError as exc:
        logger.debug("cannot load %s: %s", path, exc)
        return None
    for symbol in ("tb_init", "tb_shutdown", "tb_width", "tb_height", "tb_peek_event", "tb_set_input_mode"):
        if not hasattr(lib, symbol):
            logger.debug("%s lacks %s", path, symbol)
            return None
    lib.tb_peek_event.argtypes = [ctypes.POINTER(TbEvent), ctypes.c_int]
    lib.tb_set_input_mode.argtypes = [ctypes.c_int]
    return lib


def _modifiers(mod: int) -> int:
    result = 0
    if mod & TB_MOD_SHIFT:
        result |= 1
    if mod & TB_MOD_CTRL:
        result |= 2
    if mod & TB_MOD_ALT:
        result |= 4
    return result


def convert_event(event: TbEvent) -> Optional[RawEvent]:
    """Map a termbox event onto the backend-neutral raw notification."""

    if event.type == TB_EVENT_KEY:
        if event.ch:
            return {"type": "key", "key": 0, "char": int(event.ch), "mod": _modifiers(event.mod)}
        if 0x01 <= event.key <= 0x1A and event.key not in KEY_CODES:
            return {"type": "key", "key": 0, "char": ord("a") + event.key - 1, "mod": _modifiers(event.mod) | 2}
        return {"type": "key", "key": KEY_CODES.get(event.key, -1), "char": 0, "mod": _modifiers(event.mod)}
    if event.type == TB_EVENT_RESIZE:
        return {"type": "resize", "width": int(event.w), "height": int(event.h)}
    if event.type == TB_EVENT_MOUSE:
        if event.key == TB_KEY_MOUSE_RELEASE:
            button, action = 0, "release"
        else:
            button = MOUSE_CODES.get(event.key, 5)
            action = "drag" if event.mod & TB_MOD_MOTION else "press"
        return {"type": "mouse", "x": int(event.x), "y": int(event.y), "button": button, "action": action}
    return None


class TermboxBackend(TerminalBackend):
    """Backend driving the terminal through termbox2."""

    name = "termbox2"

    def __init__(self, library: Optional[Any] = None, *, poll_timeout_ms: int = 50) -> None:
        self._lib = library
        self._poll_timeout_ms = poll_timeout_ms
        self._active = False
        # held around every native call so a peek still running on a worker
        # thread never overlaps tb_shutdown or tb_init
        self._lock = threading.Lock()

    def init(self) -> None:
        with self._lock:
            if self._active:
                return
            if self._lib is None:
                self._lib = load_library()
            if self._lib is None:
                raise BackendError("libtermbox2 is not available")
            rc = self._lib.tb_init()
            if rc != TB_OK:
                raise BackendError(f"tb_init failed with code {rc}")
            self._lib.tb_set_input_mode(TB_INPUT_ESC | TB_INPUT_MOUSE)
            self._active = True

    def shutdown(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
            rc = self._lib.tb_shutdown()
        if rc != TB_OK:
            logger.debug("tb_shutdown returned %s", rc)

    def width(self) -> int:
        with self._lock:
            return int(self._lib.tb_width()) if self._active else 0

    def height(self) -> int:
        with self._lock:
            return int(self._lib.tb_height()) if self._active else 0

    def set_title(self, title: str) -> None:
        self._optional_call("tb_set_title", title.encode("utf-8"))

    def set_position(self, x: int, y: int) -> None:
        self._optional_call("tb_set_position", int(x), int(y))

    def _optional_call(self, symbol: str, *args: Any) -> None:
        with self._lock:
            if not self._active:
                return
            func = getattr(self._lib, symbol, None)
            if func is None:
                logger.debug("%s not provided by this libtermbox2 build", symbol)
                return
            rc = func(*args)
        if rc != TB_OK:
            logger.debug("%s returned %s", symbol, rc)

    def _peek(self, event: TbEvent) -> Optional[int]:
        """Poll once; ``None`` means the backend was shut down meanwhile."""

        with self._lock:
            if not self._active:
                return None
            return int(self._lib.tb_peek_event(ctypes.byref(event), self._poll_timeout_ms))

    async def events(self) -> AsyncIterator[RawEvent]:
        while self._active:
            event = TbEvent()
            rc = await asyncio.to_thread(self._peek, event)
            if rc is None:
                return
            if rc == TB_ERR_NO_EVENT:
                continue
            if rc == TB_ERR_POLL:
                # interrupted system call, typically SIGWINCH
                continue
            if rc != TB_OK:
                yield {"type": "error", "reason": f"tb_peek_event failed with code {rc}"}
                continue
            raw = convert_event(event)
            if raw is not None:
                yield raw


__all__ = ["TermboxBackend", "TbEvent", "convert_event", "load_library", "find_library"]
