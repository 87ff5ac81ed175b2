"""Dynamic plugin management.

Plugins are small objects that can inspect or rewrite application events
before they reach ``update`` and contribute named handlers to the running
application's command table. The :class:`PluginManager` owns them and is
driven entirely through its mailbox.
"""
from __future__ import annotations

import importlib.util
import inspect
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, Iterable, List, Optional, Type

from lumen.runtime.actor import Actor
from lumen.runtime.events import Event
from lumen.runtime.registry import CommandTable
from lumen.utils.errors import PluginError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)

HALT = "halt"


class BasePlugin:
    """Plugins extend a running application with filters and commands."""

    name: str = "unnamed"

    async def setup(self) -> None:
        """Initialise the plugin."""

    async def teardown(self) -> None:
        """Release resources when unloading."""

    def filter_event(self, event: Event) -> Optional[Event]:
        """Return the event (possibly rewritten) or ``None`` to veto it.

        May also be declared ``async``.
        """

        return event

    def commands(self) -> Dict[str, Any]:
        """Handlers to register in the application's command table."""

        return {}


@dataclass
class PluginState:
    name: str
    instance: BasePlugin
    module: Optional[ModuleType] = None
    path: Optional[Path] = None
    commands: List[str] = field(default_factory=list)
    loaded_at: float = field(default_factory=time.time)


class PluginManager(Actor):
    """Locate, load and consult plugins.

    Recognised options: ``paths`` (directories scanned for ``*.py`` modules),
    ``enabled`` (names to load at start; empty loads every discovered
    plugin), ``plugins`` (ready-made instances or classes) and
    ``command_table``.

    Calls answered: ``("filter_event", event)``, ``("list_plugins",)``,
    ``("get_plugin_state", name)``, ``("load_plugin", name)`` and
    ``("unload_plugin", name)``.
    """

    def __init__(self, options: Optional[Dict[str, Any]] = None, *, name: Optional[str] = None) -> None:
        super().__init__(name=name)
        options = dict(options or {})
        self.plugin_paths = [Path(path) for path in options.get("paths", [])]
        self.enabled = list(options.get("enabled", []))
        self._initial: List[Any] = list(options.get("plugins", []))
        self.command_table: Optional[CommandTable] = options.get("command_table")
        self._plugins: Dict[str, PluginState] = {}

    # ------------------------------------------------------------------
    # Actor hooks
    # ------------------------------------------------------------------
    async def on_start(self) -> None:
        for candidate in self._initial:
            instance = candidate() if isinstance(candidate, type) else candidate
            try:
                await self._activate(PluginState(name=_plugin_name(instance), instance=instance))
            except PluginError as exc:
                logger.error("plugin failed to start: %s", exc, extra={"actor": self.name})
        discovered = self.discover()
        wanted = self.enabled or sorted(discovered)
        for plugin_name in wanted:
            if plugin_name in self._plugins:
                continue
            try:
                await self.load(plugin_name)
            except PluginError as exc:
                logger.error("plugin failed to load: %s", exc, extra={"actor": self.name})
        logger.info("plugin manager started with %d plugin(s)", len(self._plugins), extra={"actor": self.name})

    async def on_stop(self, reason: Any) -> None:
        for plugin_name in reversed(list(self._plugins)):
            await self.unload(plugin_name)

    async def handle_call(self, message: Any) -> Any:
        request = message[0] if isinstance(message, tuple) and message else message
        if request == "filter_event":
            return await self.filter_event(message[1])
        if request == "list_plugins":
            return self.list_plugins()
        if request == "get_plugin_state":
            return self._plugins.get(message[1])
        if request == "load_plugin":
            try:
                await self.load(message[1])
            except PluginError as exc:
                return ("error", str(exc))
            return ("ok", message[1])
        if request == "unload_plugin":
            return ("ok", message[1]) if await self.unload(message[1]) else ("error", "not_loaded")
        return await super().handle_call(message)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def discover(self) -> Dict[str, Path]:
        """Return a mapping of plugin name to module path."""

        discovered: Dict[str, Path] = {}
        for path in self.plugin_paths:
            if not path.is_dir():
                continue
            for file in sorted(path.glob("*.py")):
                if file.stem.startswith("_"):
                    continue
                discovered.setdefault(file.stem, file)
        return discovered

    def list_plugins(self) -> List[str]:
        return list(self._plugins)

    async def filter_event(self, event: Event) -> Any:
        """Chain ``event`` through every plugin in load order."""

        current = event
        for state in list(self._plugins.values()):
            try:
                result = state.instance.filter_event(current)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                logger.warning(
                    "plugin filter raised: %s",
                    exc,
                    extra={"actor": self.name, "event_type": current.type.value},
                )
                return ("error", f"{state.name}: {exc}")
            if result is None:
                logger.debug(
                    "event vetoed by %s", state.name, extra={"actor": self.name, "event_type": current.type.value}
                )
                return HALT
            if not isinstance(result, Event):
                return ("error", f"{state.name}: filter returned {type(result).__name__}")
            current = result
        return ("ok", current)

    async def load(self, plugin_name: str) -> BasePlugin:
        """Load a discovered plugin by name."""

        if plugin_name in self._plugins:
            return self._plugins[plugin_name].instance
        discovered = self.discover()
        if plugin_name not in discovered:
            raise PluginError(f"Plugin {plugin_name} not found")
        path = discovered[plugin_name]
        module = self._import(plugin_name, path)
        plugin_cls = self._resolve_plugin(module)
        instance = plugin_cls()
        state = PluginState(name=plugin_name, instance=instance, module=module, path=path)
        try:
            await self._activate(state)
        except PluginError:
            self._unimport(module)
            raise
        return instance

    async def unload(self, plugin_name: str) -> bool:
        state = self._plugins.pop(plugin_name, None)
        if not state:
            return False
        if self.command_table is not None:
            for command in state.commands:
                self.command_table.unregister(command)
        try:
            await state.instance.teardown()
        except Exception:
            logger.exception("plugin teardown failed", extra={"actor": self.name})
        if state.module is not None:
            self._unimport(state.module)
        logger.debug("plugin %s unloaded", plugin_name, extra={"actor": self.name})
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _activate(self, state: PluginState) -> None:
        try:
            await state.instance.setup()
        except Exception as exc:
            raise PluginError(f"Plugin {state.name} failed during setup: {exc}") from exc
        if self.command_table is not None:
            for command, handler in (state.instance.commands() or {}).items():
                self.command_table.register(command, handler)
                state.commands.append(command)
        self._plugins[state.name] = state
        logger.debug("plugin %s loaded", state.name, extra={"actor": self.name})

    def _import(self, plugin_name: str, path: Path) -> ModuleType:
        module_name = f"lumen_plugin_{plugin_name}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise PluginError(f"Cannot import plugin {plugin_name} from {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            sys.modules.pop(module_name, None)
            raise PluginError(f"Failed to import plugin {plugin_name}: {exc}") from exc
        return module

    def _unimport(self, module: ModuleType) -> None:
        sys.modules.pop(module.__name__, None)

    def _resolve_plugin(self, module: ModuleType) -> Type[BasePlugin]:
        for _, obj in inspect.getmembers(module, inspect.isclass):
            if issubclass(obj, BasePlugin) and obj is not BasePlugin and obj.__module__ == module.__name__:
                return obj
        raise PluginError(f"No plugin class found in {module.__name__}")


def _plugin_name(instance: Any) -> str:
    name = getattr(instance, "name", None)
    if name and name != BasePlugin.name:
        return str(name)
    return type(instance).__name__


def discover_plugins(paths: Iterable[Path]) -> Dict[str, Path]:
    """Discover plugins without starting a manager."""

    return PluginManager({"paths": list(paths)}).discover()


__all__ = ["BasePlugin", "PluginManager", "PluginState", "HALT", "discover_plugins"]
