"""Mailbox-driven components.

Each runtime component owns an :class:`asyncio.Queue` and a single consumer
task, so its state is only ever touched by one coroutine and messages are
handled strictly in arrival order. Components talk to each other with
:meth:`Actor.cast`/:meth:`Actor.send` (fire-and-forget) and
:meth:`Actor.call` (request/response with a timeout).
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

from lumen.utils.errors import ActorNotRunning, CallTimeout
from lumen.utils.logging import get_logger

logger = get_logger(__name__)

NORMAL = "normal"
SHUTDOWN = "shutdown"

_ids = itertools.count(1)

ExitCallback = Callable[["Actor", Any], Any]


class ActorStatus(str, enum.Enum):
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class StopActor(Exception):
    """Raised from a handler to terminate the actor after the current message."""

    def __init__(self, reason: Any = NORMAL, reply: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.reply = reply


@dataclass
class _Envelope:
    kind: str
    message: Any
    reply_to: Optional[asyncio.Future[Any]] = None
    reason: Any = None



def is_normal_exit(reason: Any) -> bool:
    return reason in (NORMAL, SHUTDOWN, None)


class Actor:
    """Base class for mailbox-driven components.

    Subclasses override :meth:`handle_cast`, :meth:`handle_call` and
    :meth:`handle_info`, plus the :meth:`on_start`/:meth:`on_stop` hooks.
    """

    def __init__(self, *, name: Optional[str] = None) -> None:
        self.name = name or f"{type(self).__name__}-{next(_ids)}"
        self.status = ActorStatus.CREATED
        self.exit_reason: Any = None
        self._mailbox: asyncio.Queue[_Envelope] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None
        self._done: Optional[asyncio.Future[Any]] = None
        self._exit_listeners: List[ExitCallback] = []
        self._listener_tasks: Set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> "Actor":
        """Run :meth:`on_start` and begin consuming the mailbox.

        Exceptions raised by :meth:`on_start` propagate to the caller and the
        actor is left stopped.
        """

        if self.status is not ActorStatus.CREATED:
            return self
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()
        self.status = ActorStatus.STARTING
        try:
            await self.on_start()
        except BaseException as exc:
            self.status = ActorStatus.STOPPED
            self.exit_reason = exc
            self._drain(exc)
            if not self._done.done():
                self._done.set_result(exc)
            raise
        self.status = ActorStatus.RUNNING
        self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    @property
    def alive(self) -> bool:
        return self.status in (ActorStatus.STARTING, ActorStatus.RUNNING)

    async def stop(self, reason: Any = NORMAL, *, timeout: Optional[float] = 5.0) -> Any:
        """Ask the actor to stop and wait (bounded) for it to finish.

        The stop request is queued behind pending messages. Stopping an actor
        that already terminated is a no-op returning its exit reason.
        """

        if not self.alive:
            return self.exit_reason
        if self._task is None:
            # Still inside on_start; nothing is consuming the mailbox yet.
            await self._terminate(reason)
            return self.exit_reason
        if self._task is asyncio.current_task():
            raise RuntimeError("an actor cannot wait for its own termination; raise StopActor instead")
        self._mailbox.put_nowait(_Envelope("stop", None, reason=reason))
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.warning("actor did not stop in time, cancelling", extra={"actor": self.name})
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        return self.exit_reason

    async def wait(self) -> Any:
        """Wait until the actor terminates and return the exit reason."""

        if self._done is None:
            return self.exit_reason
        return await asyncio.shield(self._done)

    def add_exit_listener(self, callback: ExitCallback) -> None:
        """Invoke ``callback(actor, reason)`` once the actor terminates.

        Coroutine callbacks are scheduled as tasks. If the actor is already
        dead the callback fires on the next loop iteration.
        """

        if self.status is ActorStatus.STOPPED:
            asyncio.get_running_loop().call_soon(self._fire_listener, callback, self.exit_reason)
            return
        self._exit_listeners.append(callback)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    def cast(self, message: Any) -> bool:
        """Queue an asynchronous request."""

        return self._post(_Envelope("cast", message))

    def send(self, message: Any) -> bool:
        """Queue a plain notification."""

        return self._post(_Envelope("info", message))

    async def call(self, message: Any, *, timeout: Optional[float] = 5.0) -> Any:
        """Send a request and wait for the reply.

        Raises :class:`ActorNotRunning` when the actor is (or becomes) dead
        and :class:`CallTimeout` when no reply arrives within ``timeout``.
        """

        if not self.alive:
            raise ActorNotRunning(f"{self.name} is not running")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait(_Envelope("call", message, reply_to=future))
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as exc:
            raise CallTimeout(f"{self.name} did not answer {_describe(message)} within {timeout}s") from exc

    def send_after(self, message: Any, delay: float) -> asyncio.TimerHandle:
        """Deliver ``message`` via :meth:`send` after ``delay`` seconds.

        The timer is harmless once the actor has stopped: :meth:`send` then
        drops the message.
        """

        return asyncio.get_running_loop().call_later(delay, self.send, message)

    def _post(self, envelope: _Envelope) -> bool:
        if not self.alive:
            logger.debug(
                "dropping message for stopped actor",
                extra={"actor": self.name, "request": _describe(envelope.message)},
            )
            return False
        self._mailbox.put_nowait(envelope)
        return True

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    async def on_start(self) -> None:
        """Initialise state before the first message is processed."""

    async def on_stop(self, reason: Any) -> None:
        """Release resources; runs exactly once."""

    async def handle_cast(self, message: Any) -> None:
        logger.warning("unhandled cast", extra={"actor": self.name, "request": _describe(message)})

    async def handle_call(self, message: Any) -> Any:
        logger.warning("unhandled call", extra={"actor": self.name, "request": _describe(message)})
        return ("error", "unknown_call")

    async def handle_info(self, message: Any) -> None:
        logger.warning("unhandled message", extra={"actor": self.name, "request": _describe(message)})

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        reason: Any = NORMAL
        try:
            while True:
                envelope = await self._mailbox.get()
                if envelope.kind == "stop":
                    reason = envelope.reason
                    break
                try:
                    await self._handle(envelope)
                except StopActor as stop:
                    if envelope.reply_to is not None and not envelope.reply_to.done():
                        envelope.reply_to.set_result(stop.reply)
                    reason = stop.reason
                    break
                except Exception as exc:
                    logger.exception(
                        "actor crashed",
                        extra={"actor": self.name, "request": _describe(envelope.message)},
                    )
                    if envelope.reply_to is not None and not envelope.reply_to.done():
                        failure = ActorNotRunning(f"{self.name} crashed: {exc!r}")
                        failure.__cause__ = exc
                        envelope.reply_to.set_exception(failure)
                    reason = exc
                    break
        except asyncio.CancelledError:
            reason = SHUTDOWN
            raise
        finally:
            await self._terminate(reason)

    async def _handle(self, envelope: _Envelope) -> None:
        if envelope.kind == "cast":
            await self.handle_cast(envelope.message)
        elif envelope.kind == "call":
            reply = await self.handle_call(envelope.message)
            if envelope.reply_to is not None and not envelope.reply_to.done():
                envelope.reply_to.set_result(reply)
        else:
            await self.handle_info(envelope.message)

    async def _terminate(self, reason: Any) -> None:
        if self.status is ActorStatus.STOPPED:
            return
        self.status = ActorStatus.STOPPED
        self.exit_reason = reason
        try:
            await self.on_stop(reason)
        except Exception:
            logger.exception("on_stop failed", extra={"actor": self.name})
        self._drain(reason)
        if self._done is not None and not self._done.done():
            self._done.set_result(reason)
        for listener in self._exit_listeners:
            self._fire_listener(listener, reason)
        self._exit_listeners.clear()
        if is_normal_exit(reason):
            logger.debug("actor stopped", extra={"actor": self.name})
        else:
            logger.error("actor terminated: %r", reason, extra={"actor": self.name})

    def _fire_listener(self, listener: ExitCallback, reason: Any) -> None:
        try:
            result = listener(self, reason)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_tasks.discard)
        except Exception:
            logger.exception("exit listener failed", extra={"actor": self.name})

    def _drain(self, reason: Any) -> None:
        while True:
            try:
                envelope = self._mailbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            if envelope.reply_to is not None and not envelope.reply_to.done():
                envelope.reply_to.set_exception(ActorNotRunning(f"{self.name} stopped: {reason!r}"))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self.status.value}>"


def _describe(message: Any) -> str:
    if isinstance(message, tuple) and message:
        return str(message[0])
    return type(message).__name__ if not isinstance(message, str) else message


__all__ = ["Actor", "ActorStatus", "StopActor", "NORMAL", "SHUTDOWN", "is_normal_exit"]
