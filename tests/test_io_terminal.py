import io

import pytest

from lumen.terminal.backends.base import (
    KEY_BACKSPACE,
    KEY_DELETE,
    KEY_ENTER,
    KEY_ESC,
    KEY_F1,
    KEY_PAGE_UP,
    KEY_TAB,
    KEY_UP,
)
from lumen.terminal.backends.io_terminal import MOD_ALT, MOD_CTRL, MOD_SHIFT, InputDecoder, IOTerminalBackend


def key(code: int = 0, char: int = 0, mod: int = 0) -> dict:
    return {"type": "key", "key": code, "char": char, "mod": mod}


@pytest.mark.parametrize(
    "data, expected",
    [
        ("a", [key(char=ord("a"))]),
        ("\r", [key(KEY_ENTER)]),
        ("\t", [key(KEY_TAB)]),
        ("\x7f", [key(KEY_BACKSPACE)]),
        ("\x03", [key(char=ord("c"), mod=MOD_CTRL)]),
        ("\x00", [key(char=ord(" "), mod=MOD_CTRL)]),
        ("\x1b[A", [key(KEY_UP)]),
        ("\x1bOP", [key(KEY_F1)]),
        ("\x1b[3~", [key(KEY_DELETE)]),
        ("\x1b[Z", [key(KEY_TAB, mod=MOD_SHIFT)]),
        ("\x1b[1;5A", [key(KEY_UP, mod=MOD_CTRL)]),
        ("\x1b[5;3~", [key(KEY_PAGE_UP, mod=MOD_ALT)]),
        ("\x1bx", [key(char=ord("x"), mod=MOD_ALT)]),
        ("\x1b", [key(KEY_ESC)]),
        ("é", [key(char=ord("é"))]),
    ],
)
def test_decode_single_inputs(data: str, expected: list) -> None:
    assert InputDecoder().feed(data) == expected


def test_sgr_mouse_reports() -> None:
    decoder = InputDecoder()
    press, release, wheel = decoder.feed("\x1b[<0;10;5M\x1b[<0;10;5m\x1b[<65;1;1M")
    assert press == {"type": "mouse", "x": 9, "y": 4, "button": 0, "action": "press", "mod": 0}
    assert release["action"] == "release"
    assert wheel["button"] == 4


def test_incomplete_sequences_are_held_back() -> None:
    decoder = InputDecoder()
    assert decoder.feed("\x1b[") == []
    assert decoder.feed("1;5") == []
    assert decoder.feed("Bz") == [key(66, mod=MOD_CTRL), key(char=ord("z"))]

    assert decoder.feed("\x1b[<0;3") == []
    assert decoder.feed(";4M")[0]["type"] == "mouse"


def test_split_utf8_bytes() -> None:
    decoder = InputDecoder()
    encoded = "ü".encode("utf-8")
    assert decoder.feed(encoded[:1]) == []
    assert decoder.feed(encoded[1:]) == [key(char=ord("ü"))]


def test_unknown_csi_is_dropped() -> None:
    assert InputDecoder().feed("\x1b[200~a") == [key(char=ord("a"))]


def test_inactive_backend_ignores_late_input_callbacks() -> None:
    stdout = io.StringIO()
    backend = IOTerminalBackend(stdout=stdout)
    backend._on_readable()
    backend.set_title("ignored")
    backend.set_position(1, 2)
    assert stdout.getvalue() == ""
    assert (backend.width(), backend.height()) == (80, 24)
