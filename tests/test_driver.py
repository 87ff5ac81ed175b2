import asyncio
from typing import Any, AsyncIterator, Callable, List

import pytest

from lumen.core.config import DriverSettings
from lumen.runtime.events import Event, EventType, KeyModifiers
from lumen.terminal.backends.base import KEY_UP, TerminalBackend
from lumen.terminal.driver import BackendState, TerminalDriver, translate
from lumen.utils.errors import BackendError


class FakeBackend(TerminalBackend):
    name = "fake"

    def __init__(self, fail_times: int = 0, fail_after: int = 0) -> None:
        self.fail_times = fail_times
        self.fail_after = fail_after
        self.init_calls = 0
        self.shutdown_calls = 0
        self.titles: List[str] = []
        self.positions: List[Any] = []
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue()

    def init(self) -> None:
        self.init_calls += 1
        if self.init_calls <= self.fail_times:
            raise BackendError("no terminal")
        if self.fail_after and self.init_calls > self.fail_after:
            raise BackendError("terminal gone for good")

    def shutdown(self) -> None:
        self.shutdown_calls += 1

    def width(self) -> int:
        return 100

    def height(self) -> int:
        return 40

    async def events(self) -> AsyncIterator[Any]:
        while True:
            item = await self.queue.get()
            if isinstance(item, Exception):
                raise item
            yield item

    def set_title(self, title: str) -> None:
        self.titles.append(title)

    def set_position(self, x: int, y: int) -> None:
        self.positions.append((x, y))


class Sink:
    def __init__(self) -> None:
        self.casts: List[Any] = []
        self.infos: List[Any] = []

    def cast(self, message: Any) -> bool:
        self.casts.append(message)
        return True

    def send(self, message: Any) -> bool:
        self.infos.append(message)
        return True

    @property
    def events(self) -> List[Event]:
        return [message[1] for message in self.casts]


async def eventually(predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def make_driver(backend: FakeBackend, sink: Any = None, *, tty: bool = True, **settings: Any) -> TerminalDriver:
    settings.setdefault("init_retry_delay", 0.01)
    return TerminalDriver(
        sink,
        settings=DriverSettings(**settings),
        backend_factory=lambda: backend,
        tty_check=lambda: tty,
        size_probe=lambda width, height: (width, height),
    )


def test_translate_keys_mouse_and_resize() -> None:
    ctrl = KeyModifiers(ctrl=True)
    assert translate({"type": "key", "key": 0, "char": ord("a"), "mod": 2}) == Event.key("a", ctrl, char="a")
    assert translate({"type": "key", "key": KEY_UP, "char": 0, "mod": 0}) == Event.key("up")
    assert translate({"type": "key", "key": 9999, "char": 0}) == Event.key("unknown")
    assert translate({"type": "mouse", "x": 1, "y": 2, "button": 0}) == Event.mouse(1, 2, "left")
    assert translate({"type": "mouse", "x": 1, "y": 2, "button": 42, "action": "release"}) == Event.mouse(
        1, 2, "unknown", action="release"
    )
    assert translate({"type": "resize", "width": 10, "height": 5}) == Event.resize(10, 5)
    assert translate({"type": "weird"}) is None
    assert translate("not a mapping") is None


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "resize"},
        {"type": "resize", "width": None, "height": 10},
        {"type": "resize", "width": 0, "height": 10},
        {"type": "key", "mod": "shift", "char": 0},
        {"type": "key", "char": 10**12},
        {"type": "mouse", "x": None, "y": 2},
        {"type": "mouse", "x": "left", "y": 2},
    ],
)
def test_translate_ignores_malformed_notifications(raw: Any) -> None:
    assert translate(raw) is None


@pytest.mark.asyncio
async def test_init_retries_are_bounded() -> None:
    backend = FakeBackend(fail_times=10)
    sink = Sink()
    driver = await make_driver(backend, sink, max_init_retries=3).start()
    await eventually(lambda: backend.init_calls == 3)
    await asyncio.sleep(0.05)
    assert backend.init_calls == 3
    status = await driver.get_status()
    assert status.state is BackendState.FAILED
    assert status.terminal_features is False
    assert driver.alive
    assert sink.events == [Event.resize(80, 24)]
    await driver.stop()
    assert backend.shutdown_calls == 0


@pytest.mark.asyncio
async def test_retry_can_succeed_and_resends_size() -> None:
    backend = FakeBackend(fail_times=1)
    sink = Sink()
    driver = await make_driver(backend, sink).start()
    await eventually(lambda: backend.init_calls == 2)
    status = await driver.get_status()
    assert status.state is BackendState.INITIALIZED
    assert status.terminal_features is True
    assert sink.events == [Event.resize(80, 24), Event.resize(100, 40)]
    await driver.stop()
    assert backend.shutdown_calls == 1


@pytest.mark.asyncio
async def test_no_terminal_runs_degraded() -> None:
    def factory() -> TerminalBackend:
        raise AssertionError("backend must not be created without a terminal")

    sink = Sink()
    driver = TerminalDriver(
        sink,
        backend_factory=factory,
        tty_check=lambda: False,
        size_probe=lambda width, height: (120, 50),
    )
    await driver.start()
    status = await driver.get_status()
    assert status.state is BackendState.UNINITIALIZED
    assert status.terminal_features is False
    assert sink.events == [Event.resize(120, 50)]
    await driver.stop()


@pytest.mark.asyncio
async def test_backend_events_are_translated_and_forwarded() -> None:
    backend = FakeBackend()
    sink = Sink()
    driver = await make_driver(backend, sink).start()
    assert sink.events == [Event.resize(100, 40)]

    backend.queue.put_nowait({"type": "key", "key": 0, "char": ord("x"), "mod": 0})
    backend.queue.put_nowait({"type": "unknown-kind"})
    backend.queue.put_nowait({"type": "resize", "width": 132, "height": 43})
    await eventually(lambda: len(sink.events) == 3)
    assert sink.events[1:] == [Event.key("x", char="x"), Event.resize(132, 43)]
    status = await driver.get_status()
    assert (status.width, status.height) == (132, 43)
    assert all(message[0] == "dispatch" for message in sink.casts)
    await driver.stop()


@pytest.mark.asyncio
async def test_register_dispatcher_later() -> None:
    backend = FakeBackend()
    driver = await make_driver(backend).start()
    assert (await driver.get_status()).has_dispatcher is False

    sink = Sink()
    driver.register_dispatcher(sink)
    await eventually(lambda: sink.casts)
    assert sink.infos == [("register_dispatcher", driver)]
    assert sink.events == [Event.resize(100, 40)]
    assert (await driver.get_status()).has_dispatcher is True
    await driver.stop()


@pytest.mark.asyncio
async def test_backend_error_is_recovered() -> None:
    backend = FakeBackend()
    sink = Sink()
    driver = await make_driver(backend, sink).start()
    backend.queue.put_nowait(OSError("hiccup"))
    await eventually(lambda: backend.init_calls == 2)
    status = await driver.get_status()
    assert status.state is BackendState.INITIALIZED
    assert backend.shutdown_calls == 1

    backend.queue.put_nowait({"type": "key", "key": 0, "char": ord("k"), "mod": 0})
    await eventually(lambda: Event.key("k", char="k") in sink.events)
    await driver.stop()


@pytest.mark.asyncio
async def test_failed_recovery_terminates_with_backend_error() -> None:
    backend = FakeBackend(fail_after=1)
    driver = await make_driver(backend, Sink(), recovery_attempts=2).start()
    backend.queue.put_nowait({"type": "error", "reason": "stdin closed"})
    reason = await asyncio.wait_for(driver.wait(), 1)
    assert isinstance(reason, BackendError)
    assert "stdin closed" in str(reason)
    assert backend.init_calls == 3


@pytest.mark.asyncio
async def test_simulated_input_is_dispatched() -> None:
    sink = Sink()
    driver = await make_driver(FakeBackend(), sink, tty=False).start()
    driver.simulate_input("hi")
    driver.simulate_input(b"\x11")
    await eventually(lambda: len(sink.events) == 4)
    keys = [event for event in sink.events if event.type is EventType.KEY]
    assert keys == [
        Event.key("h", char="h"),
        Event.key("i", char="i"),
        Event.key("q", KeyModifiers(ctrl=True), char="q"),
    ]
    await driver.stop()


@pytest.mark.asyncio
async def test_set_title_reaches_initialised_backend() -> None:
    backend = FakeBackend()
    driver = await make_driver(backend, Sink()).start()
    driver.set_title("lumen")
    await driver.get_status()
    assert backend.titles == ["lumen"]
    await driver.stop()


@pytest.mark.asyncio
async def test_malformed_backend_events_do_not_stop_the_driver() -> None:
    backend = FakeBackend()
    sink = Sink()
    driver = await make_driver(backend, sink).start()
    backend.queue.put_nowait({"type": "resize"})
    backend.queue.put_nowait({"type": "mouse", "x": None, "y": 1})
    backend.queue.put_nowait({"type": "key", "key": 0, "char": ord("m"), "mod": 0})
    await eventually(lambda: Event.key("m", char="m") in sink.events)
    assert driver.alive
    assert sink.events == [Event.resize(100, 40), Event.key("m", char="m")]
    await driver.stop()


@pytest.mark.asyncio
async def test_set_position_reaches_initialised_backend_only() -> None:
    backend = FakeBackend()
    driver = await make_driver(backend, Sink()).start()
    driver.set_position(10, 20)
    driver.set_position("left", 20)
    await driver.get_status()
    assert backend.positions == [(10, 20)]
    assert driver.alive
    await driver.stop()

    offline = FakeBackend()
    driver = await make_driver(offline, Sink(), tty=False).start()
    driver.set_position(1, 1)
    await driver.get_status()
    assert offline.positions == []
    await driver.stop()
