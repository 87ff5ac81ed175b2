"""Event dispatcher: owner of the application model.

The dispatcher receives normalised :class:`~lumen.runtime.events.Event`
values from the terminal driver, arbitrary messages forwarded by the
lifecycle and results produced by commands. Everything that reaches the
application goes through one update path::

    message -> update(message, model) -> (new_model, commands)

A well-formed result replaces the model, synchronises the theme preference,
hands each command to the executor and asks the lifecycle for a render.
Anything else leaves the model untouched. Nothing that happens during a
single dispatch is allowed to take the dispatcher down; only a ``quit``
event stops it.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Hashable, Optional, Tuple

from lumen.core.config import TimeoutSettings
from lumen.core.plugin import HALT
from lumen.core.preferences import DEFAULT_THEME_ID, THEME_KEY, UserPreferences, get_preferences
from lumen.runtime.actor import NORMAL, Actor, StopActor
from lumen.runtime.application import ApplicationSpec, is_command_list, model_value
from lumen.runtime.command import CommandContext, CommandExecutor
from lumen.runtime.events import Event, EventType
from lumen.runtime.registry import CommandTable, publish, topics
from lumen.utils.errors import ActorError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)

THEME_FIELD = "current_theme_id"


@dataclass(frozen=True)
class RenderContext:
    model: Any
    theme_id: str
    width: int
    height: int


def event_to_message(event: Event) -> Tuple[Any, ...]:
    """Convert an application event into the message handed to ``update``."""

    data = event.data
    if event.type is EventType.KEY:
        key = data.get("key") or data.get("char")
        return ("key_press", key, data.get("modifiers"))
    if event.type is EventType.MOUSE:
        return ("mouse_event", data.get("action", "press"), data.get("x"), data.get("y"), data.get("button"))
    if event.type is EventType.TEXT:
        return ("text_input", data.get("text", ""))
    return ("event", event)


class Dispatcher(Actor):
    """Run the update loop for one application."""

    def __init__(
        self,
        lifecycle: Any,
        app: ApplicationSpec,
        model: Any,
        *,
        width: int = 80,
        height: int = 24,
        debug: bool = False,
        plugin_manager: Optional[Actor] = None,
        command_table: Optional[CommandTable] = None,
        executor: Optional[CommandExecutor] = None,
        preferences: Optional[UserPreferences] = None,
        timeouts: Optional[TimeoutSettings] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(name=name)
        self.lifecycle = lifecycle
        self.app = app
        self.model = model
        self.width = width
        self.height = height
        self.debug = debug
        self.focused = True
        self.plugin_manager = plugin_manager
        self.command_table = command_table
        self.executor = executor or CommandExecutor()
        self.preferences = preferences
        self.timeouts = timeouts or TimeoutSettings()
        self.theme_id = DEFAULT_THEME_ID

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def dispatch(self, event: Event) -> bool:
        """Queue ``event`` for processing."""

        return self.cast(("dispatch", event))

    async def get_model(self, *, timeout: float = 5.0) -> Any:
        return await self.call(("get_model",), timeout=timeout)

    async def get_render_context(self, *, timeout: float = 5.0) -> RenderContext:
        return await self.call(("get_render_context",), timeout=timeout)

    @staticmethod
    def subscribe(topic: Hashable, subscriber: Any) -> None:
        topics.subscribe(topic, subscriber)

    @staticmethod
    def unsubscribe(topic: Hashable, subscriber: Any) -> bool:
        return topics.unsubscribe(topic, subscriber)

    @staticmethod
    def broadcast(topic: Hashable, payload: Any) -> int:
        return publish(topic, payload)

    # ------------------------------------------------------------------
    # Actor hooks
    # ------------------------------------------------------------------
    async def on_start(self) -> None:
        self.theme_id = await self._read_theme_id()
        self.lifecycle.send(("runtime_initialized", self))
        self.lifecycle.send(("plugin_manager_ready", self.plugin_manager))
        logger.debug(
            "dispatcher ready (%dx%d, theme %s)",
            self.width,
            self.height,
            self.theme_id,
            extra={"actor": self.name},
        )

    async def handle_cast(self, message: Any) -> None:
        if isinstance(message, tuple) and len(message) == 2 and message[0] == "dispatch":
            await self._dispatch(message[1])
            return
        await super().handle_cast(message)

    async def handle_call(self, message: Any) -> Any:
        request = message[0] if isinstance(message, tuple) and message else message
        if request == "get_model":
            return self.model
        if request == "get_render_context":
            return RenderContext(model=self.model, theme_id=self.theme_id, width=self.width, height=self.height)
        return await super().handle_call(message)

    async def handle_info(self, message: Any) -> None:
        if isinstance(message, tuple) and len(message) == 2:
            tag, payload = message
            if tag == "external_info":
                await self._apply_update(("info", payload))
                return
            if tag == "command_result":
                await self._apply_update(("command_result", payload))
                return
            if tag == "register_dispatcher":
                logger.debug("dispatcher registration acknowledged", extra={"actor": self.name})
                return
        if isinstance(message, Event):
            await self._dispatch(message)
            return
        await super().handle_info(message)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def _dispatch(self, event: Any) -> None:
        if not isinstance(event, Event):
            logger.warning("ignoring non-event %r", event, extra={"actor": self.name})
            return
        if event.is_system:
            if self._handle_system_event(event):
                self._broadcast_event(event)
            return
        filtered = await self._filter(event)
        if filtered is None:
            return
        if await self._apply_update(event_to_message(filtered)):
            self._broadcast_event(event)

    def _handle_system_event(self, event: Event) -> bool:
        """Handle a system event; return whether it counts as dispatched."""

        data = event.data
        if event.type is EventType.RESIZE:
            try:
                width = int(data.get("width", self.width))
                height = int(data.get("height", self.height))
            except (TypeError, ValueError):
                logger.warning("ignoring malformed resize %s", dict(data), extra={"actor": self.name})
                return False
            if width <= 0 or height <= 0:
                logger.warning("ignoring non-positive resize %dx%d", width, height, extra={"actor": self.name})
                return False
            self.width, self.height = width, height
            logger.debug("resized to %dx%d", self.width, self.height, extra={"actor": self.name})
            self.lifecycle.send(("render_needed",))
            return True
        if event.type is EventType.FOCUS:
            self.focused = bool(data.get("focused", True))
            return True
        if event.type is EventType.QUIT:
            logger.info("quit event received", extra={"actor": self.name})
            raise StopActor(NORMAL)
        if event.type is EventType.ERROR:
            logger.error(
                "error event: %r",
                data.get("error"),
                extra={"actor": self.name, "event_type": event.type.value},
            )
            return False
        logger.debug("system event %s", dict(data), extra={"actor": self.name, "event_type": event.type.value})
        return True

    async def _filter(self, event: Event) -> Optional[Event]:
        manager = self.plugin_manager
        if manager is None:
            return event
        extra = {"actor": self.name, "event_type": event.type.value}
        try:
            result = await manager.call(("filter_event", event), timeout=self.timeouts.plugin_filter)
        except ActorError as exc:
            logger.warning("plugin filter unavailable: %s", exc, extra=extra)
            return None
        if result == HALT:
            logger.debug("event vetoed by plugin", extra=extra)
            return None
        if isinstance(result, tuple) and len(result) == 2 and result[0] == "ok" and isinstance(result[1], Event):
            return result[1]
        if isinstance(result, tuple) and len(result) == 2 and result[0] == "error":
            logger.warning("plugin filter error: %r", result[1], extra=extra)
        else:
            logger.warning("unexpected plugin filter result %r", result, extra=extra)
        return None

    async def _apply_update(self, message: Tuple[Any, ...]) -> bool:
        """Run ``update`` and commit a well-formed result."""

        extra = {"actor": self.name, "app": self.lifecycle_name}
        try:
            result = self.app.update(message, self.model)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            logger.exception("update raised for %r", message[0], extra=extra)
            return False
        if isinstance(result, tuple) and len(result) == 2 and result[0] == "error":
            logger.error("update returned an error for %r: %r", message[0], result[1], extra=extra)
            return False
        if not (isinstance(result, tuple) and len(result) == 2 and is_command_list(result[1])):
            logger.warning("unexpected update return for %r: %r", message[0], result, extra=extra)
            return False

        self.model, commands = result
        await self._sync_theme()
        self._execute_commands(commands)
        self.lifecycle.send(("render_needed",))
        return True

    def _execute_commands(self, commands: Any) -> None:
        context = CommandContext(dispatcher=self, command_registry=self.command_table, lifecycle=self.lifecycle)
        for command in commands:
            try:
                self.executor.execute(command, context)
            except Exception:
                logger.exception("command execution failed", extra={"actor": self.name})

    def _broadcast_event(self, event: Event) -> None:
        try:
            publish(event.type.value, dict(event.data))
        except Exception:
            logger.exception("broadcast failed", extra={"actor": self.name, "topic": event.type.value})

    # ------------------------------------------------------------------
    # Theme
    # ------------------------------------------------------------------
    async def _read_theme_id(self) -> str:
        store = self.preferences or get_preferences()
        try:
            return await store.get_theme_id()
        except Exception as exc:
            logger.warning("theme preference unavailable, using default: %s", exc, extra={"actor": self.name})
            return DEFAULT_THEME_ID

    async def _sync_theme(self) -> None:
        new_id = model_value(self.model, THEME_FIELD)
        if new_id is None or new_id == self.theme_id:
            return
        store = self.preferences or get_preferences()
        try:
            await store.set(THEME_KEY, new_id)
        except Exception as exc:
            logger.warning("could not persist theme %r: %s", new_id, exc, extra={"actor": self.name})
        self.theme_id = new_id

    @property
    def lifecycle_name(self) -> str:
        return str(getattr(self.lifecycle, "app_name", "") or "")


__all__ = ["Dispatcher", "RenderContext", "event_to_message"]
