import asyncio
import tomllib
from pathlib import Path

import pytest

from lumen.core.preferences import (
    DEFAULT_THEME_ID,
    THEME_KEY,
    UserPreferences,
    get_preferences,
    set_preferences,
)
from lumen.utils.errors import PreferencesError


def test_missing_file_yields_default_theme(tmp_path: Path) -> None:
    prefs = UserPreferences(tmp_path / "prefs.toml")
    assert asyncio.run(prefs.get_theme_id()) == DEFAULT_THEME_ID
    assert asyncio.run(prefs.get("nothing.here", 5)) == 5


def test_set_persists_nested_keys_as_toml(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "prefs.toml"
    prefs = UserPreferences(path)

    async def scenario() -> None:
        await prefs.set(THEME_KEY, "dark")
        await prefs.set("editor.tab_width", 4)
        await prefs.set("editor.wrap", True)

    asyncio.run(scenario())
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    assert data == {"theme": {"active_id": "dark"}, "editor": {"tab_width": 4, "wrap": True}}
    assert asyncio.run(UserPreferences(path).get_theme_id()) == "dark"


def test_yaml_preferences_and_reload(tmp_path: Path) -> None:
    path = tmp_path / "prefs.yaml"
    path.write_text("theme:\n  active_id: solar\n", encoding="utf-8")
    prefs = UserPreferences(path)
    assert asyncio.run(prefs.get_theme_id()) == "solar"

    path.write_text("theme:\n  active_id: night\n", encoding="utf-8")
    assert asyncio.run(prefs.get_theme_id()) == "solar"
    asyncio.run(prefs.reload())
    assert asyncio.run(prefs.get_theme_id()) == "night"


def test_load_returns_a_copy(tmp_path: Path) -> None:
    prefs = UserPreferences(tmp_path / "prefs.toml")
    data = asyncio.run(prefs.load())
    data["theme"] = {"active_id": "mutated"}
    assert asyncio.run(prefs.get_theme_id()) == DEFAULT_THEME_ID


def test_unreadable_preferences_raise(tmp_path: Path) -> None:
    path = tmp_path / "prefs.toml"
    path.write_text("theme = [unterminated\n", encoding="utf-8")
    with pytest.raises(PreferencesError):
        asyncio.run(UserPreferences(path).get_theme_id())

    other = tmp_path / "prefs.json"
    other.write_text("{}", encoding="utf-8")
    with pytest.raises(PreferencesError):
        asyncio.run(UserPreferences(other).load())


def test_process_wide_store_can_be_replaced(tmp_path: Path) -> None:
    store = UserPreferences(tmp_path / "prefs.toml")
    set_preferences(store)
    try:
        assert get_preferences() is store
    finally:
        set_preferences(None)
    assert get_preferences() is not store
    set_preferences(None)
