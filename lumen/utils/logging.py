"""Lumen logging utilities.

Runtime components log through the standard :mod:`logging` module. The
configuration writes JSON documents to a rotating file so a running terminal
application is never disturbed by log output. A Rich console handler can be
switched on for debugging sessions, in which case records go to stderr.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

CONTEXT_KEYS = ("app", "actor", "event_type", "topic", "command")


class JsonFormatter(logging.Formatter):
    """Format log records as JSON documents.

    The formatter keeps the record lean while exposing the timestamp, level,
    logger name and message. Runtime context passed through ``extra`` is
    copied for the keys listed in :data:`CONTEXT_KEYS`.
    """

    default_time_format = "%Y-%m-%dT%H:%M:%S"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
                self.default_time_format
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        for key in CONTEXT_KEYS:
            if key in record.__dict__:
                payload[key] = record.__dict__[key]
        return json.dumps(payload, ensure_ascii=False, default=repr)


def _build_handlers(log_dir: Path, console: bool) -> Dict[str, Dict[str, Any]]:
    handlers: Dict[str, Dict[str, Any]] = {
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "json",
            "filename": str(log_dir / "lumen.log"),
            "maxBytes": 5 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }
    }
    if not console:
        return handlers
    if os.environ.get("LUMEN_RICH", "1") != "0":
        handlers["console"] = {
            "class": "rich.logging.RichHandler",
            "formatter": "rich",
            "level": "DEBUG",
            "rich_tracebacks": True,
            "show_path": False,
        }
    else:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": "json",
        }
    return handlers


def configure_logging(
    *, level: str = "INFO", log_dir: Optional[Path] = None, console: bool = False
) -> None:
    """Configure global logging for the runtime.

    Parameters
    ----------
    level:
        Minimum severity that should be emitted. Accepts standard logging level
        names.
    log_dir:
        Directory where persistent logs are written. When omitted the function
        falls back to ``$LUMEN_LOG_DIR`` or ``.lumen/logs`` within the user's
        home directory.
    console:
        Also emit records on stderr. Only useful when the application is not
        drawing to the same terminal, e.g. during debugging.

    The function is idempotent and safe to call multiple times.
    """

    log_dir = log_dir or Path(os.environ.get("LUMEN_LOG_DIR", Path.home() / ".lumen" / "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    handlers = _build_handlers(log_dir, console)
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "lumen.utils.logging.JsonFormatter",
            },
            "rich": {
                "format": "%(message)s",
                "datefmt": "%H:%M:%S",
            },
        },
        "handlers": handlers,
        "root": {
            "level": level,
            "handlers": list(handlers.keys()),
        },
    }

    logging.config.dictConfig(config)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for ``name``."""

    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "JsonFormatter", "CONTEXT_KEYS"]
