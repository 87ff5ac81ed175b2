"""Terminal access: backends, the driver actor and inspection helpers."""

from lumen.terminal.backends import BACKEND, backend, create_backend
from lumen.terminal.driver import BackendState, TerminalDriver, translate
from lumen.terminal.utils import detect_dimensions, real_tty, stty_size

__all__ = [
    "BACKEND",
    "backend",
    "create_backend",
    "BackendState",
    "TerminalDriver",
    "translate",
    "detect_dimensions",
    "real_tty",
    "stty_size",
]
