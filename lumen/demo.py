"""Bundled counter application used by ``lumen demo``."""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, List, Mapping, Tuple

from lumen.runtime import view
from lumen.runtime.command import Command

THEMES = ("default", "dark")


@dataclass(frozen=True)
class CounterModel:
    count: int = 0
    current_theme_id: str = "default"


class CounterApp:
    """``+``/``-`` change the counter, ``t`` toggles the theme, ``q`` quits."""

    def app_name(self) -> str:
        return "counter"

    def init(self, args: Mapping[str, Any]) -> CounterModel:
        start = args.get("options", {}).get("start", 0)
        return CounterModel(count=int(start))

    def update(self, message: Any, model: CounterModel) -> Tuple[CounterModel, List[Command]]:
        if not isinstance(message, tuple) or not message:
            return model, []
        if message[0] == "key_press":
            key = message[1]
            if key in ("+", "=", "up"):
                return replace(model, count=model.count + 1), []
            if key in ("-", "_", "down"):
                return replace(model, count=model.count - 1), []
            if key == "t":
                index = THEMES.index(model.current_theme_id) if model.current_theme_id in THEMES else 0
                return replace(model, current_theme_id=THEMES[(index + 1) % len(THEMES)]), []
            if key in ("q", "escape"):
                return model, [Command.quit()]
        if message[0] == "command_result" and isinstance(message[1], int):
            return replace(model, count=message[1]), []
        return model, []

    def view(self, model: CounterModel) -> Any:
        accent = "cyan" if model.current_theme_id == "dark" else "green"
        return view.box(
            view.row(
                view.text("Lumen counter", style=["bold"]),
                view.text(f"theme: {model.current_theme_id}"),
                justify="space_between",
            ),
            view.text(f"Count: {model.count}", fg=accent),
            view.text("+/- change  t theme  q quit", fg="light_black"),
            border="rounded",
        )


__all__ = ["CounterApp", "CounterModel"]
