"""Shared helpers: logging configuration and the exception hierarchy."""

from __future__ import annotations

from lumen.utils.errors import LumenError
from lumen.utils.logging import configure_logging, get_logger

__all__ = ["LumenError", "configure_logging", "get_logger"]
