"""Helpers for building view trees consumed by :mod:`lumen.runtime.renderer`."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Union

Style = Union[Iterable[str], Dict[str, bool], None]


def text(content: Any, *, fg: Optional[str] = None, style: Style = None) -> Dict[str, Any]:
    node: Dict[str, Any] = {"type": "text", "content": content}
    if fg:
        node["fg"] = fg
    if style:
        node["style"] = style if isinstance(style, dict) else list(style)
    return node


def box(*children: Any, border: Optional[str] = None, fg: Optional[str] = None) -> Dict[str, Any]:
    node: Dict[str, Any] = {"type": "box", "children": list(children)}
    if border:
        node["border"] = border
    if fg:
        node["fg"] = fg
    return node


def row(*children: Any, justify: Optional[str] = None) -> Dict[str, Any]:
    node: Dict[str, Any] = {"type": "flex", "direction": "row", "children": list(children)}
    if justify:
        node["justify"] = justify
    return node


def column(*children: Any) -> Dict[str, Any]:
    return {"type": "flex", "direction": "column", "children": list(children)}


__all__ = ["text", "box", "row", "column"]
