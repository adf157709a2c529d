"""Strip terminal escape sequences from pty output."""
from __future__ import annotations

import re

ANSI_ESCAPE_RE = re.compile(
    r"\x1B(?:"
    r"[@-OQ-Z\\^_]"
    r"|\[[0-?]*[ -/]*[@-~]"
    r"|\][^\x1B\x07]*(?:\x07|\x1B\\)"
    r"|P[^\x1B\x07]*(?:\x07|\x1B\\)"
    r")"
)
TERMINAL_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")

# Longest escape we are willing to hold back waiting for its terminator.
_MAX_PENDING_ESCAPE = 256


def strip_ansi(text: str) -> str:
    """Remove escape sequences and control characters other than \\n and \\t."""
    return TERMINAL_CONTROL_CHAR_RE.sub("", ANSI_ESCAPE_RE.sub("", text))


class AnsiStripper:
    """Incremental ``strip_ansi`` that is safe across chunk boundaries.

    A trailing escape sequence without its terminator is held back
    until the next chunk completes it.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> str:
        text = self._pending + chunk
        self._pending = ""
        idx = text.rfind("\x1b")
        if idx >= 0:
            tail = text[idx:]
            if not ANSI_ESCAPE_RE.match(tail) and len(tail) < _MAX_PENDING_ESCAPE:
                self._pending = tail
                text = text[:idx]
        return strip_ansi(text)

    def flush(self) -> str:
        text, self._pending = self._pending, ""
        return strip_ansi(text)
