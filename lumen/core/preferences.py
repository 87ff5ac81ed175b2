"""Persisted user preferences.

Preferences live in a small TOML (or YAML) document under ``~/.lumen``. Keys
are addressed with dots, so ``theme.active_id`` is stored as ``active_id`` in
the ``[theme]`` table. Reads are cached after the first load; writes replace
the cached document and persist it immediately.
"""
from __future__ import annotations

import asyncio
import copy
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from lumen.utils.errors import PreferencesError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_THEME_ID = "default"
THEME_KEY = "theme.active_id"


class UserPreferences:
    """Load and persist preference values."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or Path.home() / ".lumen" / "preferences.toml"
        self._data: Optional[Dict[str, Any]] = None
        self._lock = asyncio.Lock()

    async def load(self) -> Dict[str, Any]:
        async with self._lock:
            if self._data is None:
                self._data = self._read(self.path)
            return copy.deepcopy(self._data)

    async def reload(self) -> Dict[str, Any]:
        async with self._lock:
            self._data = None
        return await self.load()

    async def get(self, key: str, default: Any = None) -> Any:
        data = await self.load()
        node: Any = data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            if self._data is None:
                self._data = self._read(self.path)
            updated = copy.deepcopy(self._data)
            parts = key.split(".")
            node = updated
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = value
            self._write(self.path, updated)
            self._data = updated
        logger.debug("preference updated", extra={"key": key})

    async def get_theme_id(self) -> str:
        value = await self.get(THEME_KEY, DEFAULT_THEME_ID)
        return str(value) if value else DEFAULT_THEME_ID

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            if path.suffix in {".yaml", ".yml"}:
                return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            if path.suffix == ".toml":
                with path.open("rb") as handle:
                    return tomllib.load(handle)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise PreferencesError(f"Cannot read preferences from {path}: {exc}") from exc
        raise PreferencesError(f"Unsupported preferences format: {path.suffix}")

    @staticmethod
    def _write(path: Path, payload: Dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.suffix in {".yaml", ".yml"}:
                path.write_text(yaml.safe_dump(payload, sort_keys=True), encoding="utf-8")
                return
            path.write_text(_dump_toml(payload), encoding="utf-8")
        except OSError as exc:
            raise PreferencesError(f"Cannot write preferences to {path}: {exc}") from exc


def _dump_toml(payload: Dict[str, Any]) -> str:
    """Serialize the TOML subset used by the preferences file."""

    def render(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if value is None:
            return '""'
        if isinstance(value, (list, tuple)):
            return "[" + ", ".join(render(item) for item in value) + "]"
        escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'

    def emit_table(prefix: str, values: Dict[str, Any], lines: list[str]) -> None:
        simple_items = [(k, v) for k, v in values.items() if not isinstance(v, dict)]
        nested_items = [(k, v) for k, v in values.items() if isinstance(v, dict)]
        if prefix:
            lines.append("")
            lines.append(f"[{prefix}]")
        for key, value in simple_items:
            lines.append(f"{key} = {render(value)}")
        for key, value in nested_items:
            emit_table(f"{prefix}.{key}" if prefix else key, value, lines)

    lines: list[str] = []
    emit_table("", payload, lines)
    return "\n".join(lines).lstrip("\n") + "\n"


_default_preferences: Optional[UserPreferences] = None


def get_preferences() -> UserPreferences:
    """Return the process-wide preferences store."""

    global _default_preferences
    if _default_preferences is None:
        _default_preferences = UserPreferences()
    return _default_preferences


def set_preferences(store: Optional[UserPreferences]) -> None:
    """Replace the process-wide preferences store (``None`` resets it)."""

    global _default_preferences
    _default_preferences = store


__all__ = [
    "UserPreferences",
    "get_preferences",
    "set_preferences",
    "DEFAULT_THEME_ID",
    "THEME_KEY",
]
