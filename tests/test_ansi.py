"""Escape-sequence stripping for terminal output."""

from __future__ import annotations

import pytest

from remotectl.terminal.ansi import AnsiStripper, strip_ansi


@pytest.mark.parametrize("raw,clean", [
    ("\x1b[31mred\x1b[0m", "red"),
    ("\x1b[2J\x1b[H$ ls", "$ ls"),
    ("\x1b[?25lhidden cursor\x1b[?25h", "hidden cursor"),
    ("\x1b]0;title\x07prompt", "prompt"),
    ("\x1b]8;;https://x.dev\x1b\\link\x1b]8;;\x1b\\", "link"),
    ("a\x1bMb", "ab"),
    ("tab\tand\nnewline", "tab\tand\nnewline"),
    ("bell\x07 and\rcarriage", "bell andcarriage"),
])
def test_strip_ansi(raw, clean):
    assert strip_ansi(raw) == clean


def test_stripper_holds_back_split_escape():
    stripper = AnsiStripper()
    assert stripper.feed("plain \x1b[3") == "plain "
    assert stripper.feed("2mgreen\x1b[0m") == "green"
    assert stripper.flush() == ""


def test_stripper_holds_back_unterminated_osc():
    stripper = AnsiStripper()
    assert stripper.feed("x\x1b]0;ti") == "x"
    assert stripper.feed("tle\x07y") == "y"


def test_stripper_flush_drops_dangling_escape():
    stripper = AnsiStripper()
    assert stripper.feed("done\x1b[") == "done"
    assert stripper.flush() == "["


def test_stripper_gives_up_on_runaway_escape():
    stripper = AnsiStripper()
    text = "\x1b]" + "a" * 300
    assert stripper.feed(text).endswith("a" * 300)
