"""Configuration management for the Lumen runtime.

Runtime defaults (terminal size, driver retry policy, call timeouts, plugin
search paths) are expressed as YAML or TOML and validated with Pydantic
models. Options passed to :func:`lumen.start_application` are layered on top
of the loaded settings through :class:`StartOptions`.
"""
from __future__ import annotations

import asyncio
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from lumen.utils.errors import ConfigurationError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)


class DriverSettings(BaseModel):
    """Retry and recovery policy for the terminal driver."""

    max_init_retries: int = Field(default=3, ge=1, description="Total backend init attempts")
    init_retry_delay: float = Field(default=1.0, ge=0.0, description="Seconds between attempts")
    recovery_attempts: int = Field(default=1, ge=1)
    poll_interval: float = Field(default=0.05, gt=0.0)


class TimeoutSettings(BaseModel):
    """Bounds for synchronous calls between components."""

    render_context: float = Field(default=1.0, gt=0.0)
    plugin_filter: float = Field(default=1.0, gt=0.0)
    shutdown: float = Field(default=5.0, gt=0.0)


class PluginSettings(BaseModel):
    """Where plugins are discovered and which ones are loaded."""

    paths: List[Path] = Field(default_factory=lambda: [Path("plugins"), Path.home() / ".lumen" / "plugins"])
    enabled: List[str] = Field(default_factory=list, description="Empty means every discovered plugin")


class PreferencesSettings(BaseModel):
    path: Path = Field(default_factory=lambda: Path.home() / ".lumen" / "preferences.toml")


class LoggingSettings(BaseModel):
    level: str = "INFO"
    log_dir: Optional[Path] = None
    console: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {value}")
        return value


class RuntimeSettings(BaseModel):
    """Root configuration schema."""

    width: int = Field(default=80, gt=0)
    height: int = Field(default=24, gt=0)
    debug: bool = False
    terminal_driver: bool = True
    app_name: Optional[str] = None
    driver: DriverSettings = Field(default_factory=DriverSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    plugins: PluginSettings = Field(default_factory=PluginSettings)
    preferences: PreferencesSettings = Field(default_factory=PreferencesSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class StartOptions(BaseModel):
    """Options recognised when starting an application.

    Unknown keys are kept and handed to the application's ``init`` untouched.
    """

    model_config = ConfigDict(extra="allow", arbitrary_types_allowed=True)

    width: int = Field(default=80, gt=0)
    height: int = Field(default=24, gt=0)
    debug: bool = False
    terminal_driver: bool = True
    initial_commands: List[Any] = Field(default_factory=list)
    plugin_manager_opts: Dict[str, Any] = Field(default_factory=dict)
    app_name: Optional[str] = None
    settings: RuntimeSettings = Field(default_factory=RuntimeSettings)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, **overrides: Any) -> "StartOptions":
        base: Dict[str, Any] = {
            "width": settings.width,
            "height": settings.height,
            "debug": settings.debug,
            "terminal_driver": settings.terminal_driver,
            "app_name": settings.app_name,
            "settings": settings,
        }
        base.update({key: value for key, value in overrides.items() if value is not None})
        try:
            return cls(**base)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc

    def passthrough(self) -> Dict[str, Any]:
        """Return every option, including the unrecognised ones, as a dict."""

        data = {name: getattr(self, name) for name in type(self).model_fields if name != "settings"}
        data.update(self.model_extra or {})
        return data


class ConfigManager:
    """Load runtime settings from disk.

    The file is taken from ``config_path`` or ``$LUMEN_CONFIG``. When neither is
    set the built-in defaults are used; a path that was asked for explicitly
    but does not exist is an error.
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        env_path = os.environ.get("LUMEN_CONFIG")
        self.config_path = config_path or (Path(env_path) if env_path else None)
        self._settings: Optional[RuntimeSettings] = None
        self._lock = asyncio.Lock()

    async def load(self) -> RuntimeSettings:
        """Load configuration from disk and validate it."""

        async with self._lock:
            if self.config_path is None:
                self._settings = RuntimeSettings()
                return self._settings
            logger.debug("loading configuration", extra={"path": str(self.config_path)})
            data = self._read_file(self.config_path)
            try:
                settings = RuntimeSettings(**data)
            except ValidationError as exc:
                raise ConfigurationError(str(exc)) from exc
            self._settings = settings
            return settings

    async def get_settings(self) -> RuntimeSettings:
        """Return the last loaded settings, loading them if necessary."""

        if self._settings is None:
            return await self.load()
        return self._settings

    @staticmethod
    def _read_file(path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigurationError(f"Configuration file {path} does not exist")
        if path.suffix in {".yml", ".yaml"}:
            with path.open("r", encoding="utf-8") as handle:
                return yaml.safe_load(handle) or {}
        if path.suffix == ".toml":
            with path.open("rb") as handle:
                return tomllib.load(handle)
        raise ConfigurationError(f"Unsupported configuration format: {path.suffix}")


__all__ = [
    "ConfigManager",
    "RuntimeSettings",
    "StartOptions",
    "DriverSettings",
    "TimeoutSettings",
    "PluginSettings",
    "PreferencesSettings",
    "LoggingSettings",
]
