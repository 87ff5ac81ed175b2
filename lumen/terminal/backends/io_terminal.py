"""Pure-Python terminal backend.

Used wherever the native termbox2 library is unavailable. Input is read
from stdin in cbreak mode through the event loop's reader callbacks and
decoded with :class:`InputDecoder`; resizes arrive via ``SIGWINCH``. The
application is drawn on the alternate screen so the user's scrollback is
restored on shutdown.
"""
from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import re
import signal
import sys
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

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
from lumen.terminal.utils import detect_dimensions
from lumen.utils.errors import BackendError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)

MOD_SHIFT = 1
MOD_CTRL = 2
MOD_ALT = 4
MOD_META = 8

ENTER_SEQUENCE = "\x1b[?1049h\x1b[?25l\x1b[?1000h\x1b[?1002h\x1b[?1006h"
EXIT_SEQUENCE = "\x1b[?1006l\x1b[?1002l\x1b[?1000l\x1b[?25h\x1b[?1049l"

SEQUENCES: Dict[str, Tuple[int, int]] = {
    "\x1b[A": (KEY_UP, 0),
    "\x1b[B": (KEY_DOWN, 0),
    "\x1b[C": (KEY_RIGHT, 0),
    "\x1b[D": (KEY_LEFT, 0),
    "\x1bOA": (KEY_UP, 0),
    "\x1bOB": (KEY_DOWN, 0),
    "\x1bOC": (KEY_RIGHT, 0),
    "\x1bOD": (KEY_LEFT, 0),
    "\x1b[H": (KEY_HOME, 0),
    "\x1b[F": (KEY_END, 0),
    "\x1bOH": (KEY_HOME, 0),
    "\x1bOF": (KEY_END, 0),
    "\x1b[1~": (KEY_HOME, 0),
    "\x1b[2~": (KEY_INSERT, 0),
    "\x1b[3~": (KEY_DELETE, 0),
    "\x1b[4~": (KEY_END, 0),
    "\x1b[5~": (KEY_PAGE_UP, 0),
    "\x1b[6~": (KEY_PAGE_DOWN, 0),
    "\x1b[Z": (KEY_TAB, MOD_SHIFT),
    "\x1bOP": (KEY_F1, 0),
    "\x1bOQ": (KEY_F1 + 1, 0),
    "\x1bOR": (KEY_F1 + 2, 0),
    "\x1bOS": (KEY_F1 + 3, 0),
    "\x1b[15~": (KEY_F1 + 4, 0),
    "\x1b[17~": (KEY_F1 + 5, 0),
    "\x1b[18~": (KEY_F1 + 6, 0),
    "\x1b[19~": (KEY_F1 + 7, 0),
    "\x1b[20~": (KEY_F1 + 8, 0),
    "\x1b[21~": (KEY_F1 + 9, 0),
    "\x1b[23~": (KEY_F1 + 10, 0),
    "\x1b[24~": (KEY_F1 + 11, 0),
}

_LETTER_KEYS = {"A": KEY_UP, "B": KEY_DOWN, "C": KEY_RIGHT, "D": KEY_LEFT, "H": KEY_HOME, "F": KEY_END}
_LETTER_KEYS.update({letter: KEY_F1 + index for index, letter in enumerate("PQRS")})
_TILDE_KEYS = {
    1: KEY_HOME,
    2: KEY_INSERT,
    3: KEY_DELETE,
    4: KEY_END,
    5: KEY_PAGE_UP,
    6: KEY_PAGE_DOWN,
    15: KEY_F1 + 4,
    17: KEY_F1 + 5,
    18: KEY_F1 + 6,
    19: KEY_F1 + 7,
    20: KEY_F1 + 8,
    21: KEY_F1 + 9,
    23: KEY_F1 + 10,
    24: KEY_F1 + 11,
}

_SGR_MOUSE = re.compile(r"\x1b\[<(\d+);(\d+);(\d+)([Mm])")
_SGR_MOUSE_PARTIAL = re.compile(r"\x1b\[<[\d;]*\Z")
_MODIFIED_LETTER = re.compile(r"\x1b\[1;(\d+)([ABCDHFPQRS])")
_MODIFIED_TILDE = re.compile(r"\x1b\[(\d+);(\d+)~")
_CSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")


def _build_trie(sequences: Dict[str, Tuple[int, int]]) -> Dict[Any, Any]:
    root: Dict[Any, Any] = {}
    for sequence, value in sequences.items():
        node = root
        for char in sequence:
            node = node.setdefault(char, {})
        node[None] = value
    return root


_TRIE = _build_trie(SEQUENCES)


def _xterm_modifiers(param: int) -> int:
    """Convert an xterm modifier parameter (1 + bits) to the runtime bitmask."""

    bits = max(param - 1, 0)
    mod = 0
    if bits & 1:
        mod |= MOD_SHIFT
    if bits & 2:
        mod |= MOD_ALT
    if bits & 4:
        mod |= MOD_CTRL
    if bits & 8:
        mod |= MOD_META
    return mod


def _key(code: int = 0, char: int = 0, mod: int = 0) -> RawEvent:
    return {"type": "key", "key": code, "char": char, "mod": mod}


class InputDecoder:
    """Incremental decoder from terminal input bytes to raw notifications.

    Fixed escape sequences are matched with a prefix trie; parameterised CSI
    sequences (modifier reports, SGR mouse) are matched with regular
    expressions. Incomplete sequences at the end of a chunk are held back
    until more input arrives, except a lone ``ESC`` which is reported as the
    escape key.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: Any) -> List[RawEvent]:
        if isinstance(data, (bytes, bytearray)):
            data = self._utf8.decode(bytes(data))
        text = self._pending + data
        self._pending = ""
        events: List[RawEvent] = []
        pos = 0
        while pos < len(text):
            char = text[pos]
            if char == "\x1b":
                consumed = self._escape(text, pos, events)
                if consumed == 0:
                    self._pending = text[pos:]
                    break
                pos += consumed
                continue
            events.append(self._plain(char))
            pos += 1
        return events

    def _escape(self, text: str, pos: int, events: List[RawEvent]) -> int:
        rest = text[pos:]
        if rest == "\x1b":
            events.append(_key(KEY_ESC))
            return 1
        match = _SGR_MOUSE.match(rest)
        if match:
            events.append(self._mouse(match))
            return match.end()
        if _SGR_MOUSE_PARTIAL.match(rest):
            return 0
        match = _MODIFIED_LETTER.match(rest)
        if match:
            events.append(_key(_LETTER_KEYS[match.group(2)], mod=_xterm_modifiers(int(match.group(1)))))
            return match.end()
        match = _MODIFIED_TILDE.match(rest)
        if match:
            code = _TILDE_KEYS.get(int(match.group(1)), 0)
            events.append(_key(code, mod=_xterm_modifiers(int(match.group(2)))))
            return match.end()

        node = _TRIE
        best: Optional[Tuple[int, int]] = None
        best_len = 0
        index = 0
        while index < len(rest) and rest[index] in node:
            node = node[rest[index]]
            index += 1
            if None in node:
                best, best_len = node[None], index
        if best is not None:
            events.append(_key(best[0], mod=best[1]))
            return best_len
        if index == len(rest) and len(node) > 0:
            return 0

        match = _CSI.match(rest)
        if match:
            logger.debug("ignoring escape sequence %r", match.group(0))
            return match.end()
        if rest.startswith("\x1b[") and len(rest) < 16 and all(c in "0123456789;?" for c in rest[2:]):
            return 0
        alt = self._plain(rest[1])
        alt["mod"] |= MOD_ALT
        events.append(alt)
        return 2

    @staticmethod
    def _plain(char: str) -> RawEvent:
        code = ord(char)
        if char in "\r\n":
            return _key(KEY_ENTER)
        if char == "\t":
            return _key(KEY_TAB)
        if char in "\x7f\x08":
            return _key(KEY_BACKSPACE)
        if char == "\x1b":
            return _key(KEY_ESC)
        if code == 0:
            return _key(char=ord(" "), mod=MOD_CTRL)
        if code < 32:
            return _key(char=ord("a") + code - 1, mod=MOD_CTRL)
        return _key(char=code)

    @staticmethod
    def _mouse(match: "re.Match[str]") -> RawEvent:
        code = int(match.group(1))
        x = int(match.group(2)) - 1
        y = int(match.group(3)) - 1
        if code & 64:
            button = 3 if code & 1 == 0 else 4
        else:
            button = {0: 0, 1: 2, 2: 1}.get(code & 3, 5)
        if match.group(4) == "m":
            action = "release"
        elif code & 32:
            action = "drag"
        else:
            action = "press"
        mod = 0
        if code & 4:
            mod |= MOD_SHIFT
        if code & 8:
            mod |= MOD_ALT
        if code & 16:
            mod |= MOD_CTRL
        return {"type": "mouse", "x": x, "y": y, "button": button, "action": action, "mod": mod}


class IOTerminalBackend(TerminalBackend):
    """Fallback backend built on ``termios`` and the asyncio event loop."""

    name = "io_terminal"

    def __init__(self, stdin: Optional[Any] = None, stdout: Optional[Any] = None) -> None:
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._fd: Optional[int] = None
        self._saved_attrs: Optional[List[Any]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[Optional[RawEvent]]] = None
        self._decoder = InputDecoder()
        self._size = (80, 24)
        self._active = False

    def init(self) -> None:
        if self._active:
            return
        try:
            import termios
            import tty
        except ImportError as exc:
            raise BackendError("termios is not available on this platform") from exc
        try:
            self._loop = asyncio.get_running_loop()
            fd = self._stdin.fileno()
            if not os.isatty(fd):
                raise BackendError("stdin is not a terminal")
            self._saved_attrs = termios.tcgetattr(fd)
            tty.setcbreak(fd)
            self._fd = fd
            self._queue = asyncio.Queue()
            self._decoder = InputDecoder()
            self._loop.add_reader(fd, self._on_readable)
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                self._loop.add_signal_handler(signal.SIGWINCH, self._on_resize)
            self._write(ENTER_SEQUENCE)
        except BackendError:
            self._restore()
            raise
        except (OSError, RuntimeError, ValueError, termios.error) as exc:
            self._restore()
            raise BackendError(f"cannot initialise terminal: {exc}") from exc
        self._size = detect_dimensions()
        self._active = True
        logger.debug("io terminal initialised", extra={"actor": self.name})

    def shutdown(self) -> None:
        if not self._active:
            return
        self._active = False
        with contextlib.suppress(OSError, ValueError):
            self._write(EXIT_SEQUENCE)
        self._restore()
        if self._queue is not None:
            self._queue.put_nowait(None)

    def width(self) -> int:
        return self._size[0]

    def height(self) -> int:
        return self._size[1]

    async def events(self) -> AsyncIterator[RawEvent]:
        queue = self._queue
        if queue is None:
            return
        while True:
            item = await queue.get()
            if item is None:
                return
            yield item

    def set_title(self, title: str) -> None:
        if self._active:
            self._write(f"\x1b]0;{title}\x07")

    def set_position(self, x: int, y: int) -> None:
        if self._active:
            self._write(f"\x1b[3;{int(x)};{int(y)}t")

    def _on_readable(self) -> None:
        if self._fd is None or self._queue is None:
            logger.debug("input ready after the backend was shut down")
            return
        try:
            data = os.read(self._fd, 4096)
        except OSError as exc:
            self._queue.put_nowait({"type": "error", "reason": exc})
            return
        if not data:
            self._queue.put_nowait({"type": "error", "reason": "stdin closed"})
            if self._loop is not None:
                self._loop.remove_reader(self._fd)
            return
        for event in self._decoder.feed(data):
            self._queue.put_nowait(event)

    def _on_resize(self) -> None:
        self._size = detect_dimensions()
        if self._queue is not None:
            self._queue.put_nowait({"type": "resize", "width": self._size[0], "height": self._size[1]})

    def _restore(self) -> None:
        if self._loop is not None:
            if self._fd is not None:
                self._loop.remove_reader(self._fd)
            with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                self._loop.remove_signal_handler(signal.SIGWINCH)
        if self._fd is not None and self._saved_attrs is not None:
            import termios

            with contextlib.suppress(termios.error, OSError):
                termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
        self._fd = None
        self._saved_attrs = None

    def _write(self, data: str) -> None:
        self._stdout.write(data)
        self._stdout.flush()


__all__ = ["IOTerminalBackend", "InputDecoder", "SEQUENCES"]
