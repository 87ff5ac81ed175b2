"""Application lifecycle: startup ordering, readiness gating and rendering.

:class:`Lifecycle` is the root of a running application. Starting it brings
up, in order, the command table, the plugin manager, the application model,
the dispatcher and (optionally) the terminal driver. Commands requested at
startup are held back until both the dispatcher and the plugin manager have
reported ready, then executed exactly once.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from lumen.core.config import ConfigManager, RuntimeSettings, StartOptions
from lumen.core.plugin import PluginManager
from lumen.core.preferences import UserPreferences
from lumen.runtime.actor import NORMAL, Actor, StopActor, is_normal_exit
from lumen.runtime.application import ApplicationSpec, normalize_init_result
from lumen.runtime.command import CommandContext, CommandExecutor
from lumen.runtime.dispatcher import Dispatcher
from lumen.runtime.registry import CommandRegistry, CommandTable, command_registry
from lumen.runtime.renderer import compose_frame, render_to_lines
from lumen.terminal.backends.base import TerminalBackend
from lumen.terminal.driver import TerminalDriver
from lumen.utils.errors import ActorError, ConfigurationError, StartupError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LifecycleSnapshot:
    app_name: str
    registry_table: Optional[str]
    dispatcher_ready: bool
    plugin_manager_ready: bool
    pending_commands: int
    dispatcher_alive: bool
    plugin_manager_alive: bool
    driver_alive: bool
    width: int
    height: int


class Lifecycle(Actor):
    """Root actor of one running application."""

    def __init__(
        self,
        app: Any,
        options: Optional[StartOptions] = None,
        *,
        output: Optional[TextIO] = None,
        preferences: Optional[UserPreferences] = None,
        registry: Optional[CommandRegistry] = None,
        executor: Optional[CommandExecutor] = None,
        backend_factory: Optional[Callable[[], TerminalBackend]] = None,
        tty_check: Optional[Callable[[], bool]] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(name=name)
        try:
            self.spec = ApplicationSpec.from_object(app)
        except ConfigurationError as exc:
            raise StartupError("application", exc) from exc
        self.options = options or StartOptions()
        self.settings: RuntimeSettings = self.options.settings
        self.app_name = self.options.app_name or self.spec.default_name
        self.output = output
        self.preferences = preferences or UserPreferences(self.settings.preferences.path)
        self.registry = registry or command_registry
        self.executor = executor or CommandExecutor()
        self._backend_factory = backend_factory
        self._tty_check = tty_check

        self.table_name: Optional[str] = None
        self.command_table: Optional[CommandTable] = None
        self.plugin_manager: Optional[PluginManager] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.driver: Optional[TerminalDriver] = None

        self.dispatcher_ready = False
        self.plugin_manager_ready = False
        self._startup_commands: List[Any] = list(self.options.initial_commands)
        self._pending_logged: Optional[Tuple[bool, bool]] = None
        self._first_render_done = False
        self._cleaned_up = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def submit_command(self, command: Any) -> bool:
        """Execute ``command`` once the runtime is ready (immediately if it is)."""

        return self.cast(("submit_command", command))

    def shutdown(self) -> bool:
        return self.cast(("shutdown",))

    async def get_full_state(self, *, timeout: float = 5.0) -> LifecycleSnapshot:
        return await self.call(("get_full_state",), timeout=timeout)

    @property
    def ready(self) -> bool:
        return self.dispatcher_ready and self.plugin_manager_ready

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    async def on_start(self) -> None:
        logger.info("starting application", extra={"app": self.app_name, "actor": self.name})
        stage = "registry"
        try:
            self.table_name = f"{self.app_name}/{self.name}"
            self.command_table = self.registry.ensure_table(self.table_name)

            stage = "plugin_manager"
            plugin_opts: Dict[str, Any] = {
                "paths": list(self.settings.plugins.paths),
                "enabled": list(self.settings.plugins.enabled),
            }
            plugin_opts.update(self.options.plugin_manager_opts)
            plugin_opts["command_table"] = self.command_table
            self.plugin_manager = PluginManager(plugin_opts, name=f"{self.app_name}-plugins")
            await self.plugin_manager.start()
            self.plugin_manager.add_exit_listener(self._child_exited("plugin_manager"))

            stage = "init"
            model = self._initial_model()

            stage = "dispatcher"
            self.dispatcher = Dispatcher(
                self,
                self.spec,
                model,
                width=self.options.width,
                height=self.options.height,
                debug=self.options.debug,
                plugin_manager=self.plugin_manager,
                command_table=self.command_table,
                executor=self.executor,
                preferences=self.preferences,
                timeouts=self.settings.timeouts,
                name=f"{self.app_name}-dispatcher",
            )
            await self.dispatcher.start()
            self.dispatcher.add_exit_listener(self._child_exited("dispatcher"))
        except Exception as exc:
            logger.error(
                "startup failed at %s: %s",
                stage,
                exc,
                extra={"app": self.app_name, "actor": self.name},
            )
            await self._cleanup()
            raise StartupError(stage, exc) from exc

        if self.options.terminal_driver:
            await self._start_driver()
        logger.info("application started", extra={"app": self.app_name, "actor": self.name})

    def _initial_model(self) -> Any:
        if not self.spec.has_init:
            return {}
        args = {
            "width": self.options.width,
            "height": self.options.height,
            "options": self.options.passthrough(),
        }
        normalized = normalize_init_result(self.spec.init(args))
        if normalized is None:
            logger.warning(
                "init returned an unrecognised value; starting with an empty model",
                extra={"app": self.app_name},
            )
            return {}
        model, commands = normalized
        self._startup_commands.extend(commands)
        return model

    async def _start_driver(self) -> None:
        driver = TerminalDriver(
            self.dispatcher,
            settings=self.settings.driver,
            width=self.options.width,
            height=self.options.height,
            backend_factory=self._backend_factory,
            tty_check=self._tty_check,
            name=f"{self.app_name}-driver",
        )
        try:
            await driver.start()
        except Exception as exc:
            logger.error(
                "terminal driver failed to start, running headless: %s",
                exc,
                extra={"app": self.app_name, "actor": self.name},
            )
            return
        self.driver = driver
        driver.add_exit_listener(self._child_exited("driver"))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def handle_cast(self, message: Any) -> None:
        tag = message[0] if isinstance(message, tuple) and message else message
        if tag == "submit_command":
            self._submit(message[1])
        elif tag == "shutdown":
            logger.info("shutdown requested", extra={"app": self.app_name, "actor": self.name})
            raise StopActor(NORMAL)
        else:
            await super().handle_cast(message)

    async def handle_call(self, message: Any) -> Any:
        if message == ("get_full_state",):
            return self._snapshot()
        return await super().handle_call(message)

    async def handle_info(self, message: Any) -> None:
        tag = message[0] if isinstance(message, tuple) and message else message
        if tag == "runtime_initialized":
            if not self.dispatcher_ready:
                logger.info("dispatcher ready", extra={"app": self.app_name, "actor": self.name})
            self.dispatcher_ready = True
            self._check_readiness()
            if not self._first_render_done:
                self._first_render_done = True
                await self._render()
        elif tag == "plugin_manager_ready":
            if not self.plugin_manager_ready:
                logger.info("plugin manager ready", extra={"app": self.app_name, "actor": self.name})
            self.plugin_manager_ready = True
            self._check_readiness()
        elif tag == "render_needed":
            await self._render()
        elif tag == "shutdown":
            raise StopActor(NORMAL)
        elif tag == "child_exit":
            self._on_child_exit(message[1], message[2])
        elif self.dispatcher is not None and self.dispatcher.alive:
            self.dispatcher.send(("external_info", message))
        else:
            logger.warning(
                "dropping message %r, dispatcher is not running",
                message,
                extra={"app": self.app_name, "actor": self.name},
            )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------
    def _submit(self, command: Any) -> None:
        if self.ready:
            self._execute(command)
            return
        self._startup_commands.append(command)
        self._log_pending()

    def _check_readiness(self) -> None:
        if not self.ready:
            self._log_pending()
            return
        commands, self._startup_commands = self._startup_commands, []
        if commands:
            logger.info(
                "runtime ready, executing %d startup command(s)",
                len(commands),
                extra={"app": self.app_name, "actor": self.name},
            )
        for command in commands:
            self._execute(command)

    def _log_pending(self) -> None:
        if not self._startup_commands:
            return
        flags = (self.dispatcher_ready, self.plugin_manager_ready)
        if flags == self._pending_logged:
            return
        self._pending_logged = flags
        pending = [
            label
            for label, ready in (("dispatcher", flags[0]), ("plugin manager", flags[1]))
            if not ready
        ]
        logger.info(
            "waiting for %s before executing startup commands",
            " and ".join(pending),
            extra={"app": self.app_name, "actor": self.name},
        )

    def _execute(self, command: Any) -> None:
        context = CommandContext(dispatcher=self.dispatcher, command_registry=self.command_table, lifecycle=self)
        self.executor.execute(command, context)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    async def _render(self) -> None:
        if not self.spec.has_view or self.dispatcher is None or not self.dispatcher.alive:
            return
        try:
            context = await self.dispatcher.call(
                ("get_render_context",),
                timeout=self.settings.timeouts.render_context,
            )
        except ActorError as exc:
            logger.warning("skipping render: %s", exc, extra={"app": self.app_name, "actor": self.name})
            return
        try:
            tree = self.spec.view(context.model)
            lines = render_to_lines(tree, context.width)
        except Exception:
            logger.exception("view failed", extra={"app": self.app_name, "actor": self.name})
            return
        stream = self.output or sys.stdout
        stream.write(compose_frame(lines))
        stream.flush()

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------
    def _child_exited(self, role: str) -> Callable[[Actor, Any], None]:
        def listener(actor: Actor, reason: Any) -> None:
            self.send(("child_exit", role, reason))

        return listener

    def _on_child_exit(self, role: str, reason: Any) -> None:
        extra = {"app": self.app_name, "actor": self.name}
        if role == "dispatcher":
            if is_normal_exit(reason):
                logger.info("dispatcher stopped, shutting down", extra=extra)
                raise StopActor(NORMAL)
            logger.error("dispatcher crashed: %r", reason, extra=extra)
            raise StopActor(reason)
        if role == "driver":
            if is_normal_exit(reason):
                logger.info("terminal driver stopped", extra=extra)
                return
            logger.error("terminal driver failed permanently: %s", reason, extra=extra)
            raise StopActor(reason)
        logger.warning("%s exited: %r", role, reason, extra=extra)

    async def on_stop(self, reason: Any) -> None:
        await self._cleanup()
        logger.info(
            "application stopped (%s)",
            "normal" if is_normal_exit(reason) else repr(reason),
            extra={"app": self.app_name, "actor": self.name},
        )

    async def _cleanup(self) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        timeout = self.settings.timeouts.shutdown
        for child in (self.dispatcher, self.plugin_manager, self.driver):
            if child is not None and child.alive:
                await child.stop(timeout=timeout)
        await self.executor.shutdown()
        if self.table_name is not None:
            self.registry.delete_table(self.table_name)

    def _snapshot(self) -> LifecycleSnapshot:
        return LifecycleSnapshot(
            app_name=self.app_name,
            registry_table=self.table_name,
            dispatcher_ready=self.dispatcher_ready,
            plugin_manager_ready=self.plugin_manager_ready,
            pending_commands=len(self._startup_commands),
            dispatcher_alive=bool(self.dispatcher and self.dispatcher.alive),
            plugin_manager_alive=bool(self.plugin_manager and self.plugin_manager.alive),
            driver_alive=bool(self.driver and self.driver.alive),
            width=self.options.width,
            height=self.options.height,
        )


async def start_application(
    app: Any,
    *,
    settings: Optional[RuntimeSettings] = None,
    output: Optional[TextIO] = None,
    preferences: Optional[UserPreferences] = None,
    backend_factory: Optional[Callable[[], TerminalBackend]] = None,
    tty_check: Optional[Callable[[], bool]] = None,
    **options: Any,
) -> Lifecycle:
    """Start ``app`` and return its running :class:`Lifecycle`.

    ``options`` are the start options (``width``, ``height``, ``debug``,
    ``terminal_driver``, ``initial_commands``, ``plugin_manager_opts``,
    ``app_name``); unknown keys are passed to the application's ``init``.
    Raises :class:`StartupError` when the application cannot be started.
    """

    if settings is None:
        settings = await ConfigManager().get_settings()
    start_options = StartOptions.from_settings(settings, **options)
    lifecycle = Lifecycle(
        app,
        start_options,
        output=output,
        preferences=preferences,
        backend_factory=backend_factory,
        tty_check=tty_check,
    )
    await lifecycle.start()
    return lifecycle


async def run_application(app: Any, **options: Any) -> Any:
    """Start ``app`` and wait until it shuts down; return the exit reason."""

    lifecycle = await start_application(app, **options)
    try:
        return await lifecycle.wait()
    except asyncio.CancelledError:
        await lifecycle.stop()
        raise


def run(app: Any, **options: Any) -> Any:
    """Blocking entry point: run ``app`` on a fresh event loop."""

    return asyncio.run(run_application(app, **options))


__all__ = ["Lifecycle", "LifecycleSnapshot", "start_application", "run_application", "run"]
