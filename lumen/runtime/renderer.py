"""Flatten a view tree into terminal lines.

View trees are nested dictionaries (see :mod:`lumen.runtime.view`). The
compositor is deliberately small: text nodes become one line, boxes may draw
a border, rows join their children on one line and columns stack them.
Unknown nodes render nothing.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from rich.cells import cell_len

CLEAR_SCREEN = "\x1b[2J\x1b[H"
RESET = "\x1b[0m"

_SGR = re.compile(r"\x1b\[[0-9;]*m")

BORDERS: Dict[str, Tuple[str, str, str, str, str, str]] = {
    "single": ("┌", "┐", "└", "┘", "─", "│"),
    "double": ("╔", "╗", "╚", "╝", "═", "║"),
    "rounded": ("╭", "╮", "╰", "╯", "─", "│"),
    "bold": ("┏", "┓", "┗", "┛", "━", "┃"),
}

COLORS = {
    "black": "30",
    "red": "31",
    "green": "32",
    "yellow": "33",
    "blue": "34",
    "magenta": "35",
    "cyan": "36",
    "white": "37",
    "light_black": "90",
}

STYLES = {"bold": "1", "italic": "3", "underline": "4"}


def render_to_lines(tree: Any, width: int) -> List[str]:
    """Return the lines that represent ``tree`` inside ``width`` columns."""

    return _flatten(tree, max(int(width), 0))


def compose_frame(lines: Iterable[str]) -> str:
    """Full-screen frame: clear, home, then the lines."""

    return CLEAR_SCREEN + "\n".join(lines) + "\n"


def visible_len(line: str) -> int:
    """Terminal cells occupied by ``line`` ignoring SGR sequences."""

    return cell_len(_SGR.sub("", line))


def pad_line(line: str, width: int) -> str:
    return line + " " * max(width - visible_len(line), 0)


def _flatten(node: Any, width: int) -> List[str]:
    if isinstance(node, (list, tuple)):
        lines: List[str] = []
        for child in node:
            lines.extend(_flatten(child, width))
        return lines
    if not isinstance(node, Mapping):
        return []
    kind = node.get("type")
    if kind == "text":
        content = node.get("content")
        return [_wrap("" if content is None else str(content), node.get("fg"), _style_list(node.get("style")))]
    if kind == "box":
        border = node.get("border")
        if border and border != "none":
            return _bordered(node, str(border), width)
        return _flatten(list(node.get("children") or []), width)
    if kind == "flex":
        if node.get("direction", "column") == "row":
            return _row(node, width)
        return _flatten(list(node.get("children") or []), width)
    return []


def _bordered(node: Mapping[str, Any], border: str, width: int) -> List[str]:
    tl, tr, bl, br, horizontal, vertical = BORDERS.get(border, BORDERS["single"])
    inner_width = max(width - 2, 0)
    fg = node.get("fg")
    inner = [pad_line(line, inner_width) for line in _flatten(list(node.get("children") or []), inner_width)]
    side = _wrap(vertical, fg, [])
    top = _wrap(tl + horizontal * inner_width + tr, fg, [])
    bottom = _wrap(bl + horizontal * inner_width + br, fg, [])
    return [top, *(side + line + side for line in inner), bottom]


def _row(node: Mapping[str, Any], width: int) -> List[str]:
    texts = [" ".join(_flatten(child, width)) for child in node.get("children") or []]
    if node.get("justify") == "space_between" and len(texts) == 2:
        left, right = texts
        gap = max(width - visible_len(left) - visible_len(right), 1)
        return [left + " " * gap + right]
    return [" ".join(texts)]


def _style_list(style: Any) -> List[str]:
    if isinstance(style, Mapping):
        return [str(key) for key, enabled in style.items() if enabled is True]
    if isinstance(style, (list, tuple, set, frozenset)):
        return [str(item) for item in style]
    if isinstance(style, str):
        return [style]
    return []


def _wrap(text: str, fg: Optional[str], styles: List[str]) -> str:
    codes = []
    if fg:
        codes.append(COLORS.get(str(fg), "37"))
    codes.extend(STYLES[item] for item in styles if item in STYLES)
    if not codes:
        return text
    return f"\x1b[{';'.join(codes)}m{text}{RESET}"


__all__ = ["render_to_lines", "compose_frame", "visible_len", "pad_line", "CLEAR_SCREEN", "BORDERS"]
