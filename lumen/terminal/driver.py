"""Terminal driver: owns the backend and feeds normalised events onward.

Backend initialisation is a small state machine::

    uninitialized --init ok--> initialized
    uninitialized --init error--> failed --retry_init--> ...

Failed attempts schedule a ``("retry_init",)`` message to the driver itself
until ``max_init_retries`` attempts have been made; after that the driver
keeps running with terminal features disabled. A backend error while
initialised triggers a shutdown + init recovery. When recovery fails too,
the driver terminates with a :class:`BackendError` describing the error that
triggered recovery.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple

from lumen.core.config import DriverSettings
from lumen.runtime.actor import Actor, StopActor
from lumen.runtime.events import Event, KeyModifiers
from lumen.terminal.backends import create_backend
from lumen.terminal.backends.base import KEY_NAMES, MOUSE_BUTTONS, TerminalBackend
from lumen.terminal.backends.io_terminal import InputDecoder
from lumen.terminal.utils import detect_dimensions, real_tty
from lumen.utils.errors import BackendError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)


class BackendState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    FAILED = "failed"


@dataclass(frozen=True)
class DriverStatus:
    state: BackendState
    init_attempts: int
    terminal_features: bool
    backend: Optional[str]
    width: int
    height: int
    has_dispatcher: bool


def translate(raw: Any) -> Optional[Event]:
    """Turn a raw backend notification into an :class:`Event`.

    Returns ``None`` for notification shapes the runtime does not use.
    """

    if not isinstance(raw, Mapping):
        return None
    try:
        return _translate(raw)
    except (KeyError, TypeError, ValueError, OverflowError):
        logger.debug("ignoring malformed backend notification %r", raw)
        return None


def _translate(raw: Mapping[str, Any]) -> Optional[Event]:
    kind = raw.get("type")
    if kind == "key":
        modifiers = KeyModifiers.from_bitmask(int(raw.get("mod") or 0))
        char = raw.get("char") or 0
        if isinstance(char, int):
            char = chr(char) if char > 0 else ""
        if char:
            return Event.key(char, modifiers, char=char)
        return Event.key(KEY_NAMES.get(raw.get("key"), "unknown"), modifiers)
    if kind == "mouse":
        return Event.mouse(
            int(raw.get("x", 0)),
            int(raw.get("y", 0)),
            MOUSE_BUTTONS.get(raw.get("button"), "unknown"),
            action=str(raw.get("action") or "press"),
        )
    if kind == "resize":
        width, height = int(raw["width"]), int(raw["height"])
        if width <= 0 or height <= 0:
            return None
        return Event.resize(width, height)
    return None


class TerminalDriver(Actor):
    """Bridge between a terminal backend and the dispatcher."""

    def __init__(
        self,
        dispatcher: Optional[Actor] = None,
        *,
        settings: Optional[DriverSettings] = None,
        width: int = 80,
        height: int = 24,
        backend_factory: Optional[Callable[[], TerminalBackend]] = None,
        tty_check: Optional[Callable[[], bool]] = None,
        size_probe: Optional[Callable[[int, int], Tuple[int, int]]] = None,
        name: Optional[str] = None,
    ) -> None:
        super().__init__(name=name)
        self.dispatcher = dispatcher
        self.settings = settings or DriverSettings()
        self.width = width
        self.height = height
        self.state = BackendState.UNINITIALIZED
        self.init_attempts = 0
        self.terminal_features = True
        self.backend: Optional[TerminalBackend] = None
        self._backend_factory = backend_factory or (
            lambda: create_backend(poll_interval=self.settings.poll_interval)
        )
        self._tty_check = tty_check or real_tty
        self._size_probe = size_probe or detect_dimensions
        self._reader: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def register_dispatcher(self, dispatcher: Actor) -> bool:
        return self.send(("register_dispatcher", dispatcher))

    def simulate_input(self, data: Any) -> bool:
        """Decode ``data`` as keystrokes and dispatch them as if typed."""

        return self.send(("simulate_input", data))

    def set_title(self, title: str) -> bool:
        return self.send(("set_title", title))

    def set_position(self, x: int, y: int) -> bool:
        return self.send(("set_position", x, y))

    async def get_status(self, *, timeout: float = 5.0) -> DriverStatus:
        return await self.call(("get_status",), timeout=timeout)

    # ------------------------------------------------------------------
    # Actor hooks
    # ------------------------------------------------------------------
    async def on_start(self) -> None:
        self.width, self.height = self._size_probe(self.width, self.height)
        if self._tty_check():
            await self._attempt_init()
        else:
            self.terminal_features = False
            logger.warning(
                "not attached to a terminal; terminal features disabled",
                extra={"actor": self.name},
            )
        if self.dispatcher is not None:
            self._send_initial_resize()

    async def on_stop(self, reason: Any) -> None:
        await self._stop_reader()
        if self.state is BackendState.INITIALIZED and self.backend is not None:
            try:
                self.backend.shutdown()
            except Exception:
                logger.exception("backend shutdown failed", extra={"actor": self.name})
        logger.info("terminal driver stopped", extra={"actor": self.name})

    async def handle_info(self, message: Any) -> None:
        tag = message[0] if isinstance(message, tuple) and message else message
        if tag == "retry_init":
            if self.state is not BackendState.INITIALIZED:
                await self._attempt_init()
        elif tag == "backend_event":
            await self._on_backend_event(message[1])
        elif tag == "backend_error":
            await self._on_backend_error(message[1])
        elif tag == "register_dispatcher":
            self.dispatcher = message[1]
            logger.info("dispatcher registered", extra={"actor": self.name})
            self.dispatcher.send(("register_dispatcher", self))
            self._send_initial_resize()
        elif tag == "simulate_input":
            self._simulate(message[1])
        elif tag == "set_title":
            if self.state is BackendState.INITIALIZED and self.backend is not None:
                self.backend.set_title(str(message[1]))
        elif tag == "set_position":
            if self.state is BackendState.INITIALIZED and self.backend is not None:
                try:
                    self.backend.set_position(int(message[1]), int(message[2]))
                except (TypeError, ValueError) as exc:
                    logger.warning("ignoring bad window position: %s", exc, extra={"actor": self.name})
        else:
            await super().handle_info(message)

    async def handle_call(self, message: Any) -> Any:
        if message == ("get_status",):
            return DriverStatus(
                state=self.state,
                init_attempts=self.init_attempts,
                terminal_features=self.terminal_features,
                backend=getattr(self.backend, "name", None),
                width=self.width,
                height=self.height,
                has_dispatcher=self.dispatcher is not None,
            )
        return await super().handle_call(message)

    # ------------------------------------------------------------------
    # Backend lifecycle
    # ------------------------------------------------------------------
    async def _attempt_init(self) -> bool:
        self.init_attempts += 1
        try:
            if self.backend is None:
                self.backend = self._backend_factory()
            self.backend.init()
        except Exception as exc:
            self.state = BackendState.FAILED
            if self.init_attempts < self.settings.max_init_retries:
                logger.warning(
                    "backend init attempt %d/%d failed: %s",
                    self.init_attempts,
                    self.settings.max_init_retries,
                    exc,
                    extra={"actor": self.name},
                )
                self.send_after(("retry_init",), self.settings.init_retry_delay)
            else:
                self.terminal_features = False
                logger.error(
                    "backend init failed after %d attempts; terminal features disabled: %s",
                    self.init_attempts,
                    exc,
                    extra={"actor": self.name},
                )
            return False
        self.state = BackendState.INITIALIZED
        self.terminal_features = True
        self._refresh_size()
        self._start_reader()
        logger.info(
            "terminal backend %s initialised",
            getattr(self.backend, "name", "?"),
            extra={"actor": self.name},
        )
        if self.init_attempts > 1 and self.dispatcher is not None:
            self._send_initial_resize()
        return True

    async def _on_backend_event(self, raw: Any) -> None:
        if self.state is not BackendState.INITIALIZED:
            return
        if isinstance(raw, Mapping) and raw.get("type") == "error":
            await self._on_backend_error(raw.get("reason"))
            return
        event = translate(raw)
        if event is None:
            return
        if event.type.value == "resize":
            self.width = event.data["width"]
            self.height = event.data["height"]
        self._forward(event)

    async def _on_backend_error(self, reason: Any) -> None:
        logger.error("backend error: %s", reason, extra={"actor": self.name})
        if self.state is not BackendState.INITIALIZED or self.backend is None:
            raise StopActor(BackendError(f"backend error while {self.state.value}: {reason}"))
        await self._stop_reader()
        for attempt in range(1, self.settings.recovery_attempts + 1):
            try:
                self.backend.shutdown()
            except Exception as exc:
                logger.warning("backend shutdown during recovery failed: %s", exc, extra={"actor": self.name})
            try:
                self.backend.init()
            except Exception as exc:
                logger.warning("recovery attempt %d failed: %s", attempt, exc, extra={"actor": self.name})
                continue
            self._refresh_size()
            self._start_reader()
            logger.info("recovered from backend error", extra={"actor": self.name})
            return
        self.state = BackendState.FAILED
        self.terminal_features = False
        raise StopActor(BackendError(f"terminal backend failed: {reason}"))

    def _start_reader(self) -> None:
        if self.backend is None:
            raise BackendError("cannot read input without a backend")
        self._reader = asyncio.create_task(self._pump(self.backend), name=f"{self.name}-reader")

    async def _stop_reader(self) -> None:
        reader, self._reader = self._reader, None
        if reader is None or reader.done():
            return
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader

    async def _pump(self, backend: TerminalBackend) -> None:
        try:
            async for raw in backend.events():
                self.send(("backend_event", raw))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.send(("backend_error", exc))

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def _refresh_size(self) -> None:
        if self.backend is None:
            return
        width, height = self.backend.width(), self.backend.height()
        if width > 0 and height > 0:
            self.width, self.height = width, height

    def _send_initial_resize(self) -> None:
        if self.state is BackendState.INITIALIZED:
            self._refresh_size()
        self._forward(Event.resize(self.width, self.height))

    def _forward(self, event: Event) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.cast(("dispatch", event))

    def _simulate(self, data: Any) -> None:
        if self.dispatcher is None:
            logger.warning("input simulated before a dispatcher was registered", extra={"actor": self.name})
            return
        for raw in InputDecoder().feed(data):
            event = translate(raw)
            if event is not None:
                self._forward(event)


__all__ = ["TerminalDriver", "BackendState", "DriverStatus", "translate"]
