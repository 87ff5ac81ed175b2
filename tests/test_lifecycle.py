import asyncio
import io
from pathlib import Path
from typing import Any, AsyncIterator, Callable, List

import pytest

from lumen.core.config import DriverSettings, PluginSettings, RuntimeSettings
from lumen.core.preferences import UserPreferences
from lumen.runtime import lifecycle as lifecycle_module
from lumen.runtime import view
from lumen.runtime.actor import NORMAL
from lumen.runtime.command import Command
from lumen.runtime.dispatcher import Dispatcher
from lumen.runtime.events import Event
from lumen.runtime.lifecycle import Lifecycle, run_application, start_application
from lumen.runtime.registry import command_registry
from lumen.terminal.backends.base import TerminalBackend
from lumen.utils.errors import BackendError, StartupError


def make_settings(**driver: Any) -> RuntimeSettings:
    return RuntimeSettings(plugins=PluginSettings(paths=[]), driver=DriverSettings(**driver))


async def eventually(predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class Counter:
    def __init__(self, init_commands: Any = ()) -> None:
        self.init_commands = list(init_commands)
        self.messages: List[Any] = []

    def init(self, args: Any) -> Any:
        return ({"count": args["options"].get("start", 0)}, self.init_commands)

    def update(self, message: Any, model: Any) -> Any:
        self.messages.append(message)
        if message[0] == "key_press" and message[1] == "+":
            return ({"count": model["count"] + 1}, [])
        if message[0] == "key_press" and message[1] == "q":
            return (model, [Command.quit()])
        if message[0] == "command_result":
            return ({"count": message[1]}, [])
        return (model, [])

    def view(self, model: Any) -> Any:
        return view.text(f"count {model['count']}")


class RecordingExecutor:
    def __init__(self) -> None:
        self.executed: List[Any] = []

    def execute(self, command: Any, context: Any) -> None:
        self.executed.append(command)

    async def shutdown(self) -> None:
        pass


async def start(app: Any, tmp_path: Path, **options: Any) -> Lifecycle:
    options.setdefault("terminal_driver", False)
    options.setdefault("settings", make_settings())
    options.setdefault("output", io.StringIO())
    return await start_application(app, preferences=UserPreferences(tmp_path / "prefs.toml"), **options)


@pytest.mark.parametrize(
    "order",
    [
        ("runtime_initialized", "plugin_manager_ready"),
        ("plugin_manager_ready", "runtime_initialized"),
    ],
)
@pytest.mark.asyncio
async def test_startup_commands_wait_for_both_flags(order: Any) -> None:
    executor = RecordingExecutor()
    first, second, late = Command.after(0, 1), Command.after(0, 2), Command.after(0, 3)
    lifecycle = Lifecycle(Counter(), executor=executor)

    await lifecycle.handle_cast(("submit_command", first))
    await lifecycle.handle_cast(("submit_command", second))
    await lifecycle.handle_info((order[0], None))
    assert executor.executed == []

    await lifecycle.handle_info((order[1], None))
    assert executor.executed == [first, second]

    # Repeated readiness signals must not execute anything twice.
    await lifecycle.handle_info((order[0], None))
    await lifecycle.handle_cast(("submit_command", late))
    assert executor.executed == [first, second, late]
    assert lifecycle._startup_commands == []


@pytest.mark.asyncio
async def test_key_press_then_quit_shuts_everything_down(tmp_path: Path) -> None:
    app = Counter()
    lifecycle = await start(app, tmp_path)
    table_name = lifecycle.table_name
    assert command_registry.lookup_table(table_name) is not None
    dispatcher, plugin_manager = lifecycle.dispatcher, lifecycle.plugin_manager

    dispatcher.dispatch(Event.key("+"))
    assert await dispatcher.get_model() == {"count": 1}
    dispatcher.dispatch(Event.key("q"))

    assert await asyncio.wait_for(lifecycle.wait(), 2) == NORMAL
    assert not dispatcher.alive
    assert not plugin_manager.alive
    assert command_registry.lookup_table(table_name) is None


@pytest.mark.asyncio
async def test_quit_event_after_update_stops_dispatcher_and_lifecycle(tmp_path: Path) -> None:
    class QuitFlag(Counter):
        def update(self, message: Any, model: Any) -> Any:
            self.messages.append(message)
            if message[0] == "key_press" and message[1] == "q":
                return ({"quit": True}, [])
            return (model, [])

    lifecycle = await start(QuitFlag(), tmp_path)
    dispatcher, plugin_manager = lifecycle.dispatcher, lifecycle.plugin_manager
    table_name = lifecycle.table_name
    assert await dispatcher.get_model() == {"count": 0}

    dispatcher.dispatch(Event.key("q"))
    assert await dispatcher.get_model() == {"quit": True}
    assert lifecycle.alive

    dispatcher.dispatch(Event.quit())
    assert await asyncio.wait_for(dispatcher.wait(), 2) == NORMAL
    assert await asyncio.wait_for(lifecycle.wait(), 2) == NORMAL
    assert not plugin_manager.alive
    assert command_registry.lookup_table(table_name) is None


@pytest.mark.asyncio
async def test_init_commands_run_after_readiness_and_render(tmp_path: Path) -> None:
    output = io.StringIO()
    app = Counter(init_commands=[Command.task(lambda: 5)])
    lifecycle = await start(app, tmp_path, output=output, start=2)

    await eventually(lambda: ("command_result", 5) in app.messages)
    assert await lifecycle.dispatcher.get_model() == {"count": 5}
    await eventually(lambda: "count 5" in output.getvalue())
    assert output.getvalue().startswith("\x1b[2J\x1b[H")
    assert "count 2" in output.getvalue()
    await lifecycle.stop()


@pytest.mark.asyncio
async def test_full_state_reports_readiness(tmp_path: Path) -> None:
    lifecycle = await start(Counter(), tmp_path, width=100, height=30)
    state = await lifecycle.get_full_state()
    assert state.dispatcher_ready and state.plugin_manager_ready
    assert state.pending_commands == 0
    assert state.dispatcher_alive and state.plugin_manager_alive
    assert not state.driver_alive
    assert (state.width, state.height) == (100, 30)
    assert state.registry_table == lifecycle.table_name
    await lifecycle.stop()


@pytest.mark.asyncio
async def test_submit_after_ready_executes_immediately(tmp_path: Path) -> None:
    app = Counter()
    lifecycle = await start(app, tmp_path)
    await lifecycle.get_full_state()
    lifecycle.submit_command(Command.task(lambda: 9))
    await eventually(lambda: ("command_result", 9) in app.messages)
    await lifecycle.stop()


@pytest.mark.asyncio
async def test_unknown_messages_are_forwarded_to_update(tmp_path: Path) -> None:
    app = Counter()
    lifecycle = await start(app, tmp_path)
    lifecycle.send(("ping", 1))
    await eventually(lambda: ("info", ("ping", 1)) in app.messages)
    await lifecycle.stop()


@pytest.mark.asyncio
async def test_init_failure_aborts_startup(tmp_path: Path) -> None:
    class Broken(Counter):
        def init(self, args: Any) -> Any:
            raise RuntimeError("cannot init")

    before = set(command_registry.names())
    with pytest.raises(StartupError) as excinfo:
        await start(Broken(), tmp_path)
    assert excinfo.value.stage == "init"
    assert set(command_registry.names()) == before


@pytest.mark.asyncio
async def test_application_without_update_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(StartupError) as excinfo:
        await start(object(), tmp_path)
    assert excinfo.value.stage == "application"


@pytest.mark.asyncio
async def test_unrecognised_init_result_starts_with_empty_model(tmp_path: Path) -> None:
    class Odd(Counter):
        def init(self, args: Any) -> Any:
            return "nonsense"

    lifecycle = await start(Odd(), tmp_path)
    assert await lifecycle.dispatcher.get_model() == {}
    await lifecycle.stop()


@pytest.mark.asyncio
async def test_driver_start_failure_leaves_app_headless(tmp_path: Path) -> None:
    def tty_check() -> bool:
        raise OSError("no terminal here")

    lifecycle = await start(Counter(), tmp_path, terminal_driver=True, tty_check=tty_check)
    state = await lifecycle.get_full_state()
    assert lifecycle.driver is None
    assert not state.driver_alive
    assert state.dispatcher_alive
    await lifecycle.stop()


class FlakyBackend(TerminalBackend):
    name = "flaky"

    def __init__(self) -> None:
        self.inits = 0

    def init(self) -> None:
        self.inits += 1
        if self.inits > 1:
            raise BackendError("terminal vanished")

    def shutdown(self) -> None:
        pass

    def width(self) -> int:
        return 90

    def height(self) -> int:
        return 30

    async def events(self) -> AsyncIterator[Any]:
        raise OSError("read failed")
        yield  # pragma: no cover


@pytest.mark.asyncio
async def test_permanent_driver_failure_terminates_application(tmp_path: Path) -> None:
    lifecycle = await start(
        Counter(),
        tmp_path,
        terminal_driver=True,
        tty_check=lambda: True,
        backend_factory=FlakyBackend,
    )
    reason = await asyncio.wait_for(lifecycle.wait(), 2)
    assert isinstance(reason, BackendError)
    assert "read failed" in str(reason)
    assert not lifecycle.dispatcher.alive


@pytest.mark.asyncio
async def test_run_application_returns_exit_reason(tmp_path: Path) -> None:
    app = Counter(init_commands=[Command.quit()])
    reason = await asyncio.wait_for(
        run_application(
            app,
            settings=make_settings(),
            preferences=UserPreferences(tmp_path / "prefs.toml"),
            output=io.StringIO(),
            terminal_driver=False,
        ),
        2,
    )
    assert reason == NORMAL


@pytest.mark.asyncio
async def test_dispatcher_failure_unwinds_started_components(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    managers: List[Any] = []

    class RefusingDispatcher(Dispatcher):
        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, **kwargs)
            managers.append(kwargs["plugin_manager"])

        async def on_start(self) -> None:
            raise RuntimeError("dispatcher refused")

    monkeypatch.setattr(lifecycle_module, "Dispatcher", RefusingDispatcher)
    before = set(command_registry.names())
    with pytest.raises(StartupError) as excinfo:
        await start(Counter(), tmp_path)
    assert excinfo.value.stage == "dispatcher"
    assert len(managers) == 1
    assert not managers[0].alive
    assert set(command_registry.names()) == before
