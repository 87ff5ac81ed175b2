"""Terminal inspection helpers."""
from __future__ import annotations

import os
import shutil
import subprocess
import sys
from typing import Optional, TextIO, Tuple

from lumen.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WIDTH = 80
DEFAULT_HEIGHT = 24


def real_tty(stream: Optional[TextIO] = None) -> bool:
    """Return whether ``stream`` (stdin by default) is an interactive terminal."""

    stream = stream if stream is not None else sys.stdin
    try:
        return bool(stream.isatty()) and os.environ.get("TERM") != "dumb"
    except (AttributeError, ValueError, OSError):
        return False


def stty_size() -> Optional[Tuple[int, int]]:
    """Ask ``stty size`` for ``(width, height)``; ``None`` when unavailable."""

    try:
        result = subprocess.run(
            ["stty", "size"],
            stdin=sys.stdin,
            capture_output=True,
            text=True,
            timeout=1.0,
            check=False,
        )
    except (OSError, ValueError, subprocess.SubprocessError) as exc:
        logger.debug("stty size failed: %s", exc)
        return None
    if result.returncode != 0:
        logger.debug("stty exited with code %s", result.returncode)
        return None
    parts = result.stdout.split()
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        logger.debug("unexpected stty output %r", result.stdout)
        return None
    rows, cols = (int(part) for part in parts)
    return cols, rows


def detect_dimensions(
    default_width: int = DEFAULT_WIDTH,
    default_height: int = DEFAULT_HEIGHT,
) -> Tuple[int, int]:
    """Best effort ``(width, height)`` of the controlling terminal.

    Tries the OS query first, then ``stty size``; non-positive values are
    replaced by the defaults.
    """

    size: Optional[Tuple[int, int]] = None
    try:
        columns, lines = os.get_terminal_size(sys.__stdout__.fileno())
        size = (columns, lines)
    except (AttributeError, ValueError, OSError):
        size = stty_size()
    if size is None:
        fallback = shutil.get_terminal_size((default_width, default_height))
        size = (fallback.columns, fallback.lines)
    width, height = size
    return (width if width > 0 else default_width, height if height > 0 else default_height)


__all__ = ["real_tty", "stty_size", "detect_dimensions", "DEFAULT_WIDTH", "DEFAULT_HEIGHT"]
