from pathlib import Path
from typing import Optional

import pytest

from lumen.core.plugin import HALT, BasePlugin, PluginManager, PluginState, discover_plugins
from lumen.runtime.events import Event
from lumen.runtime.registry import CommandRegistry

PLUGIN_SOURCE = '''
from lumen.core.plugin import BasePlugin


class GreeterPlugin(BasePlugin):
    name = "greeter"

    def __init__(self):
        self.torn_down = False

    def commands(self):
        return {"greet": lambda who: f"hello {who}"}

    async def teardown(self):
        self.torn_down = True
'''


class UpperPlugin(BasePlugin):
    name = "upper"

    def filter_event(self, event: Event) -> Optional[Event]:
        if event.type.value == "text":
            return Event.text(event.data["text"].upper())
        return event


class VetoPlugin(BasePlugin):
    name = "veto"

    async def filter_event(self, event: Event) -> Optional[Event]:
        return None


class BrokenPlugin(BasePlugin):
    name = "broken"

    def filter_event(self, event: Event) -> Optional[Event]:
        raise RuntimeError("filter crashed")


@pytest.mark.asyncio
async def test_filters_are_chained_in_load_order() -> None:
    manager = await PluginManager({"plugins": [UpperPlugin()]}).start()
    result = await manager.call(("filter_event", Event.text("hi")))
    assert result[0] == "ok"
    assert result[1].data["text"] == "HI"
    assert await manager.call(("list_plugins",)) == ["upper"]
    await manager.stop()


@pytest.mark.asyncio
async def test_veto_and_errors() -> None:
    manager = await PluginManager({"plugins": [VetoPlugin]}).start()
    assert await manager.call(("filter_event", Event.text("x"))) == HALT
    await manager.stop()

    manager = await PluginManager({"plugins": [BrokenPlugin()]}).start()
    status, reason = await manager.call(("filter_event", Event.text("x")))
    assert status == "error"
    assert "filter crashed" in reason
    await manager.stop()


@pytest.mark.asyncio
async def test_no_plugins_passes_events_through() -> None:
    manager = await PluginManager().start()
    event = Event.key("a")
    assert await manager.call(("filter_event", event)) == ("ok", event)
    await manager.stop()


@pytest.mark.asyncio
async def test_discovered_plugin_registers_commands(tmp_path: Path) -> None:
    (tmp_path / "greeter.py").write_text(PLUGIN_SOURCE, encoding="utf-8")
    (tmp_path / "_private.py").write_text("", encoding="utf-8")
    table = CommandRegistry().ensure_table("app")
    manager = await PluginManager({"paths": [tmp_path], "command_table": table}).start()

    assert await manager.call(("list_plugins",)) == ["greeter"]
    assert table.lookup("greet")("world") == "hello world"
    state = await manager.call(("get_plugin_state", "greeter"))
    assert isinstance(state, PluginState)
    assert state.path == tmp_path / "greeter.py"
    assert await manager.call(("get_plugin_state", "missing")) is None

    instance = state.instance
    assert await manager.call(("unload_plugin", "greeter")) == ("ok", "greeter")
    assert instance.torn_down is True
    assert table.lookup("greet") is None
    assert await manager.call(("unload_plugin", "greeter")) == ("error", "not_loaded")

    assert await manager.call(("load_plugin", "greeter")) == ("ok", "greeter")
    status, _ = await manager.call(("load_plugin", "nope"))
    assert status == "error"
    await manager.stop()
    assert table.lookup("greet") is None


@pytest.mark.asyncio
async def test_enabled_list_restricts_startup_loading(tmp_path: Path) -> None:
    (tmp_path / "greeter.py").write_text(PLUGIN_SOURCE, encoding="utf-8")
    (tmp_path / "other.py").write_text(PLUGIN_SOURCE.replace("greeter", "other"), encoding="utf-8")
    manager = await PluginManager({"paths": [tmp_path], "enabled": ["other"]}).start()
    assert await manager.call(("list_plugins",)) == ["other"]
    await manager.stop()


@pytest.mark.asyncio
async def test_broken_plugin_module_does_not_stop_the_manager(tmp_path: Path) -> None:
    (tmp_path / "bad.py").write_text("raise ImportError('broken plugin')\n", encoding="utf-8")
    (tmp_path / "empty.py").write_text("VALUE = 1\n", encoding="utf-8")
    manager = await PluginManager({"paths": [tmp_path]}).start()
    assert manager.alive
    assert await manager.call(("list_plugins",)) == []
    await manager.stop()


def test_discover_plugins(tmp_path: Path) -> None:
    (tmp_path / "alpha.py").write_text(PLUGIN_SOURCE, encoding="utf-8")
    assert discover_plugins([tmp_path, tmp_path / "missing"]) == {"alpha": tmp_path / "alpha.py"}
