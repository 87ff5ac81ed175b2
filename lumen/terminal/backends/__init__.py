"""Terminal backend selection.

The backend is chosen once, when this package is imported: termbox2 when
its shared library can be loaded on this platform, the pure-Python
``io_terminal`` backend otherwise.
"""
from __future__ import annotations

from lumen.terminal.backends.base import KEY_NAMES, MOUSE_BUTTONS, RawEvent, TerminalBackend
from lumen.terminal.backends.io_terminal import IOTerminalBackend
from lumen.terminal.backends.termbox import TermboxBackend, load_library

_LIBRARY = load_library()

BACKEND = TermboxBackend.name if _LIBRARY is not None else IOTerminalBackend.name


def backend() -> str:
    """Name of the backend selected for this platform."""

    return BACKEND


def create_backend(*, poll_interval: float = 0.05) -> TerminalBackend:
    """Instantiate the selected backend; ``poll_interval`` applies to termbox2 polling."""

    if BACKEND == TermboxBackend.name:
        return TermboxBackend(_LIBRARY, poll_timeout_ms=max(int(poll_interval * 1000), 1))
    return IOTerminalBackend()


__all__ = [
    "BACKEND",
    "backend",
    "create_backend",
    "TerminalBackend",
    "TermboxBackend",
    "IOTerminalBackend",
    "RawEvent",
    "KEY_NAMES",
    "MOUSE_BUTTONS",
]
