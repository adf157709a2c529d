"""Async wrappers over the tmux command-line control surface."""
from __future__ import annotations

import asyncio
import logging

from ..engine.errors import TransportFailureError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


async def _run_tmux(
    args: list[str],
    *,
    tmux: str = "tmux",
    timeout_s: float = DEFAULT_TIMEOUT,
) -> tuple[int, str, str]:
    """Run one tmux command. Never raises; failures map to non-zero codes."""
    try:
        proc = await asyncio.create_subprocess_exec(
            tmux, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return 127, "", str(exc)
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return 124, "", "tmux timeout"
    return (
        int(proc.returncode or 0),
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )


async def has_session(name: str, *, tmux: str = "tmux") -> bool:
    code, _, _ = await _run_tmux(["has-session", "-t", name], tmux=tmux)
    return code == 0


async def kill_session(name: str, *, tmux: str = "tmux") -> bool:
    code, _, err = await _run_tmux(["kill-session", "-t", name], tmux=tmux)
    if code != 0:
        logger.debug("tmux kill-session %s: %s", name, err.strip())
    return code == 0


async def set_option(name: str, option: str, value: str, *, tmux: str = "tmux") -> bool:
    code, _, err = await _run_tmux(["set-option", "-t", name, option, value], tmux=tmux)
    if code != 0:
        logger.debug("tmux set-option %s %s failed: %s", name, option, err.strip())
    return code == 0


async def capture_pane(name: str, lines: int = 10000, *, tmux: str = "tmux") -> str:
    """Return up to *lines* of scrollback for *name*.

    Raises TransportFailureError when tmux reports an error.
    """
    code, out, err = await _run_tmux(
        ["capture-pane", "-t", name, "-p", "-S", f"-{int(lines)}", "-J"],
        tmux=tmux,
    )
    if code != 0:
        raise TransportFailureError("capture-pane", err.strip() or f"exit code {code}")
    return out


def client_argv(
    name: str,
    *,
    cwd: str,
    attach: bool,
    command: str | None = None,
    tmux: str = "tmux",
) -> list[str]:
    """argv for the tmux client that the pty runs.

    Existing sessions use ``attach-session``; new ones use
    ``new-session -A`` so a race with another creator still attaches.
    """
    if attach:
        return [tmux, "attach-session", "-t", name]
    argv = [tmux, "new-session", "-A", "-s", name, "-c", cwd]
    if command:
        argv.append(command)
    return argv
