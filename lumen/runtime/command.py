"""Side-effect descriptions and their executor.

``update`` never performs I/O itself; it returns :class:`Command` values that
the :class:`CommandExecutor` runs in background tasks. Whatever a command
produces travels back to the dispatcher as ``("command_result", value)``.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from lumen.runtime.registry import CommandTable, publish
from lumen.utils.errors import CommandError
from lumen.utils.logging import get_logger

logger = get_logger(__name__)

NONE = "none"
TASK = "task"
BATCH = "batch"
SEQUENCE = "sequence"
DELAY = "delay"
BROADCAST = "broadcast"
CALL = "call"
QUIT = "quit"

KINDS = frozenset({NONE, TASK, BATCH, SEQUENCE, DELAY, BROADCAST, CALL, QUIT})


@dataclass(frozen=True)
class Command:
    """A declarative side effect returned from ``init`` or ``update``."""

    kind: str
    target: Any = None
    args: Tuple[Any, ...] = ()
    kwargs: Dict[str, Any] = field(default_factory=dict, compare=False)
    children: Tuple["Command", ...] = ()
    delay: float = 0.0

    def __post_init__(self) -> None:
        if self.kind not in KINDS:
            raise CommandError(f"Unknown command kind {self.kind!r}")

    @classmethod
    def none(cls) -> "Command":
        return cls(NONE)

    @classmethod
    def task(cls, func: Callable[..., Any], *args: Any, **kwargs: Any) -> "Command":
        """Run ``func`` in the background and deliver its return value.

        Coroutine functions are awaited; plain callables run in a worker
        thread. A ``None`` result is not delivered.
        """

        if not callable(func):
            raise CommandError(f"{func!r} is not callable")
        return cls(TASK, target=func, args=args, kwargs=kwargs)

    @classmethod
    def batch(cls, commands: Iterable["Command"]) -> "Command":
        return cls(BATCH, children=tuple(commands))

    @classmethod
    def sequence(cls, commands: Iterable["Command"]) -> "Command":
        return cls(SEQUENCE, children=tuple(commands))

    @classmethod
    def after(cls, seconds: float, message: Any) -> "Command":
        """Deliver ``message`` as a command result after ``seconds``."""

        return cls(DELAY, target=message, delay=max(0.0, float(seconds)))

    @classmethod
    def broadcast(cls, topic: str, payload: Any = None) -> "Command":
        return cls(BROADCAST, target=topic, args=(payload,))

    @classmethod
    def call(cls, name: str, *args: Any, **kwargs: Any) -> "Command":
        """Invoke the handler registered as ``name`` in the command table."""

        return cls(CALL, target=name, args=args, kwargs=kwargs)

    @classmethod
    def quit(cls) -> "Command":
        return cls(QUIT)


@dataclass(frozen=True)
class CommandContext:
    """Handles a running command may talk to."""

    dispatcher: Any
    command_registry: Optional[CommandTable]
    lifecycle: Any


class CommandExecutor:
    """Run commands as background tasks and feed results to the dispatcher."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def execute(self, command: Any, context: CommandContext) -> Optional[asyncio.Task[Any]]:
        """Schedule ``command``; never raises and never waits for it."""

        if self._closed:
            logger.debug("executor closed, dropping command", extra={"command": _kind(command)})
            return None
        if not isinstance(command, Command):
            logger.warning("ignoring invalid command %r", command, extra={"command": _kind(command)})
            return None
        if command.kind == NONE:
            return None
        task = asyncio.get_running_loop().create_task(self._perform(command, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel every outstanding command and wait for the cancellations."""

        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def _perform(self, command: Command, context: CommandContext) -> bool:
        try:
            await self._run(command, context)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, CommandError) else CommandError(f"{command.kind} command failed: {exc}")
            logger.error("command failed: %s", error, exc_info=exc, extra={"command": command.kind})
            return False
        return True

    async def _run(self, command: Command, context: CommandContext) -> None:
        kind = command.kind
        if kind == NONE:
            return
        if kind == TASK:
            self._deliver(await _invoke(command.target, command.args, command.kwargs), context)
        elif kind == BATCH:
            await asyncio.gather(*(self._perform(child, context) for child in command.children))
        elif kind == SEQUENCE:
            for child in command.children:
                if not await self._perform(child, context):
                    break
        elif kind == DELAY:
            await asyncio.sleep(command.delay)
            self._deliver(command.target, context)
        elif kind == BROADCAST:
            publish(command.target, command.args[0] if command.args else None)
        elif kind == CALL:
            table = context.command_registry
            handler = table.lookup(command.target) if table is not None else None
            if handler is None:
                raise CommandError(f"No command registered as {command.target!r}")
            self._deliver(await _invoke(handler, command.args, command.kwargs), context)
        elif kind == QUIT:
            if context.lifecycle is None or not context.lifecycle.send(("shutdown",)):
                raise CommandError("Lifecycle is not running")

    @staticmethod
    def _deliver(value: Any, context: CommandContext) -> None:
        if value is None or context.dispatcher is None:
            return
        if not context.dispatcher.send(("command_result", value)):
            logger.debug("dispatcher gone, dropping command result")


async def _invoke(func: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
    if inspect.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    result = await asyncio.to_thread(func, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


def _kind(command: Any) -> str:
    return command.kind if isinstance(command, Command) else type(command).__name__


__all__ = ["Command", "CommandContext", "CommandExecutor", "KINDS"]
