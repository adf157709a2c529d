"""Terminal sessions backed by tmux and a pseudo-terminal.

A ``TerminalSession`` runs a tmux client (``attach-session`` for an
existing session, ``new-session -A`` otherwise) on the slave side of
a pty and reads the master side from the event loop with
``loop.add_reader``. Output is fanned out to ``on_data`` handlers and
kept in a bounded backlog for late subscribers.

Readiness:
    existing session or direct command  -> ready as soon as the client runs
    new interactive session             -> ready when the bootstrap script
                                           prints its marker, or after
                                           ``settle_delay`` at the latest
"""
from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import shlex
import signal
import struct
import termios
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from ..engine.errors import SpawnFailureError, TransportFailureError
from ..engine.models import SessionReadiness
from . import tmux
from .ansi import strip_ansi
from .init_script import (
    InitScriptConfig,
    build_init_script,
    cleanup_init_script,
    detect_user_shell,
    filter_env,
    new_ready_token,
    ready_marker,
    write_init_script,
)

logger = logging.getLogger(__name__)

DataHandler = Callable[[str], None]
ExitHandler = Callable[[int | None], None]
ReadyHandler = Callable[[], None]

_READ_SIZE = 65536
_DEBUG_WINDOW_SECONDS = 2.0
_DEBUG_LOG_LIMIT = 500
_MARKER_TAIL = 4096


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except OSError:
        logger.debug("TIOCSWINSZ failed on fd %d", fd, exc_info=True)


def _preexec() -> None:
    os.setsid()
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


@dataclass
class SessionOptions:
    """How to create or attach a session."""
    env: dict[str, str] = field(default_factory=dict)
    command: str | None = None
    attach_existing: bool = True
    project_name: str | None = None
    shell: str | None = None
    planning_prompt: str | None = None
    issue_plan: str | None = None
    issue_title: str | None = None
    cols: int = 120
    rows: int = 30
    settle_delay: float = 5.0
    history_lines: int = 10000
    backlog_chars: int = 200_000
    tmux_command: str = "tmux"


class TerminalSession:
    """One tmux session reached through a pty-attached client."""

    def __init__(
        self,
        name: str,
        cwd: str,
        options: SessionOptions,
        *,
        existing: bool,
    ) -> None:
        self.name = name
        self.cwd = cwd
        self._options = options
        self._existing = existing
        self._tmux = options.tmux_command
        self._readiness = (
            SessionReadiness.ATTACHING if existing else SessionReadiness.NEW_INITIALIZING
        )
        self._ready_token: str | None = None
        if not existing and not options.command:
            self._ready_token = new_ready_token()

        self._data_handlers: list[DataHandler] = []
        self._exit_handlers: list[ExitHandler] = []
        self._ready_callbacks: list[ReadyHandler] = []
        self._backlog: deque[str] = deque()
        self._backlog_size = 0
        self._marker_tail = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        self._master_fd: int | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._exit_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._settle_handle: asyncio.TimerHandle | None = None
        self._exited = False
        self._exit_code: int | None = None

    # ── Introspection ──

    def is_existing_session(self) -> bool:
        return self._existing

    @property
    def readiness(self) -> SessionReadiness:
        return self._readiness

    @property
    def is_ready(self) -> bool:
        return self._readiness == SessionReadiness.READY

    @property
    def exited(self) -> bool:
        return self._exited

    @property
    def ready_token(self) -> str | None:
        return self._ready_token

    def backlog(self) -> str:
        return "".join(self._backlog)

    # ── Startup ──

    def render_init_script(self) -> str:
        """Bootstrap script a new interactive session runs."""
        opts = self._options
        return build_init_script(InitScriptConfig(
            session_name=self.name,
            project_name=opts.project_name or os.path.basename(self.cwd.rstrip("/")) or self.name,
            shell=opts.shell or detect_user_shell(),
            env=opts.env,
            planning_prompt=opts.planning_prompt,
            issue_plan=opts.issue_plan,
            issue_title=opts.issue_title,
            ready_token=self._ready_token,
        ))

    def _client_command(self) -> str | None:
        """Command for a new tmux session: the caller's, or the bootstrap script."""
        if self._existing:
            return None
        if self._options.command:
            return self._options.command
        shell = self._options.shell or detect_user_shell()
        path = write_init_script(self.name, self.render_init_script())
        return f"{shell} {shlex.quote(str(path))}"

    def _client_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["TERM"] = "xterm-256color"
        env["CLAUDE_TMUX_SESSION"] = self.name
        if self._options.command:
            env.update(filter_env(self._options.env))
        return env

    async def start(self) -> None:
        """Spawn the tmux client. Raises SpawnFailureError."""
        argv = tmux.client_argv(
            self.name,
            cwd=self.cwd,
            attach=self._existing,
            command=self._client_command(),
            tmux=self._tmux,
        )
        logger.info("Spawning: %s", " ".join(argv[:6]))

        master_fd, slave_fd = pty.openpty()
        _set_winsize(master_fd, cols=self._options.cols, rows=self._options.rows)
        os.set_blocking(master_fd, False)
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=self._client_env(),
                preexec_fn=_preexec,
            )
        except OSError as exc:
            os.close(master_fd)
            os.close(slave_fd)
            cleanup_init_script(self.name)
            raise SpawnFailureError(argv[0], str(exc)) from exc
        os.close(slave_fd)
        self._master_fd = master_fd

        loop = asyncio.get_running_loop()
        loop.add_reader(master_fd, self._on_readable)
        self._exit_task = asyncio.create_task(self._watch_exit())
        self._install_debug_handler(loop)

        if self._existing:
            task = asyncio.create_task(
                tmux.set_option(self.name, "mouse", "on", tmux=self._tmux),
            )
            self._background.add(task)
            task.add_done_callback(self._background_done)
            self._mark_ready()
        elif self._options.command:
            self._mark_ready()
        else:
            self._settle_handle = loop.call_later(
                self._options.settle_delay, self._on_settle_timeout,
            )

    def _install_debug_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        seen = [0]

        def _debug(data: str) -> None:
            if seen[0] < _DEBUG_LOG_LIMIT:
                logger.debug("[%s] initial output: %r", self.name, data[:100])
            seen[0] += len(data)

        self.on_data(_debug)
        loop.call_later(_DEBUG_WINDOW_SECONDS, self.off_data, _debug)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Background tmux call for %s failed: %s", self.name, task.exception())

    def off_data(self, handler: DataHandler) -> None:
        try:
            self._data_handlers.remove(handler)
        except ValueError:
            pass

    def _on_settle_timeout(self) -> None:
        self._settle_handle = None
        if not self.is_ready:
            logger.info(
                "Session %s: no ready marker after %.1fs, assuming ready",
                self.name, self._options.settle_delay,
            )
            self._mark_ready()

    def _mark_ready(self) -> None:
        if self.is_ready:
            return
        self._readiness = SessionReadiness.READY
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("on_ready callback failed for %s", self.name)

    # ── Reading ──

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            raw = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            raw = b""  # EIO once the client side is gone
        if not raw:
            self._stop_reading()
            return
        self._handle_output(self._decoder.decode(raw))

    def _drain(self) -> None:
        """Read whatever the client wrote before it exited."""
        while self._master_fd is not None:
            try:
                raw = os.read(self._master_fd, _READ_SIZE)
            except OSError:
                break
            if not raw:
                break
            self._handle_output(self._decoder.decode(raw))
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._handle_output(tail)

    def _handle_output(self, text: str) -> None:
        if not text:
            return
        self._append_backlog(text)
        if self._ready_token and not self.is_ready:
            self._marker_tail = (self._marker_tail + text)[-_MARKER_TAIL:]
            if ready_marker(self._ready_token) in strip_ansi(self._marker_tail):
                logger.debug("Session %s printed its ready marker", self.name)
                self._marker_tail = ""
                self._mark_ready()
        for handler in list(self._data_handlers):
            try:
                handler(text)
            except Exception:
                logger.exception("on_data handler failed for %s", self.name)

    def _append_backlog(self, text: str) -> None:
        self._backlog.append(text)
        self._backlog_size += len(text)
        limit = self._options.backlog_chars
        while self._backlog_size > limit and len(self._backlog) > 1:
            dropped = self._backlog.popleft()
            self._backlog_size -= len(dropped)

    def _stop_reading(self) -> None:
        if self._master_fd is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        except RuntimeError:
            pass
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = None

    async def _watch_exit(self) -> None:
        assert self._proc is not None
        code = await self._proc.wait()
        self._drain()
        self._exited = True
        self._exit_code = code
        self._stop_reading()
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None
        logger.info("Session %s client exited: code=%s", self.name, code)
        handlers, self._exit_handlers = self._exit_handlers, []
        for handler in handlers:
            try:
                handler(code)
            except Exception:
                logger.exception("on_exit handler failed for %s", self.name)

    # ── Callbacks ──

    def on_data(self, handler: DataHandler) -> None:
        self._data_handlers.append(handler)

    def on_exit(self, handler: ExitHandler) -> None:
        if self._exited:
            handler(self._exit_code)
            return
        self._exit_handlers.append(handler)

    def on_ready(self, callback: ReadyHandler) -> None:
        """Run *callback* once the session is ready.

        Runs synchronously when already ready; otherwise queued and
        run exactly once, in registration order.
        """
        if self.is_ready:
            callback()
            return
        self._ready_callbacks.append(callback)

    def off_exit(self, handler: ExitHandler) -> None:
        try:
            self._exit_handlers.remove(handler)
        except ValueError:
            pass

    def off_ready(self, callback: ReadyHandler) -> None:
        try:
            self._ready_callbacks.remove(callback)
        except ValueError:
            pass

    # ── Control ──

    def write(self, data: str | bytes) -> None:
        if self._master_fd is None:
            logger.warning("Write to closed session %s dropped", self.name)
            return
        payload = data.encode("utf-8") if isinstance(data, str) else data
        try:
            written = os.write(self._master_fd, payload)
        except BlockingIOError:
            logger.warning("Session %s pty is full, dropped %d bytes", self.name, len(payload))
            return
        except OSError as exc:
            logger.warning("Write to session %s failed: %s", self.name, exc)
            return
        if written < len(payload):
            logger.warning(
                "Session %s short write: %d of %d bytes", self.name, written, len(payload),
            )

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0 or self._master_fd is None:
            return
        _set_winsize(self._master_fd, cols=cols, rows=rows)
        if self._proc is not None and self._proc.returncode is None:
            try:
                os.killpg(self._proc.pid, signal.SIGWINCH)
            except OSError:
                logger.debug("SIGWINCH to %s failed", self.name, exc_info=True)

    def detach(self) -> None:
        """Detach the client (prefix + d); the tmux session keeps running."""
        self.write("\x02d")

    async def capture_history(self, lines: int | None = None) -> str:
        """Scrollback of the tmux session, or "" if it cannot be read."""
        try:
            count = int(lines) if lines is not None else self._options.history_lines
            if count <= 0:
                raise ValueError(f"line count must be positive, got {count}")
        except (TypeError, ValueError) as exc:
            logger.debug("capture_history for %s: bad line count %r: %s", self.name, lines, exc)
            return ""
        try:
            return await tmux.capture_pane(self.name, count, tmux=self._tmux)
        except TransportFailureError as exc:
            logger.debug("capture_history for %s failed: %s", self.name, exc)
            return ""

    async def kill(self) -> None:
        """Destroy the tmux session and stop the attached client."""
        await tmux.kill_session(self.name, tmux=self._tmux)
        if self._proc is not None and self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass
        cleanup_init_script(self.name)


async def create_session(
    cwd: str,
    name: str,
    options: SessionOptions | None = None,
) -> TerminalSession:
    """Create or attach the tmux session *name* in *cwd*.

    Probes ``tmux has-session`` once to decide between attaching and
    creating. With ``attach_existing=False`` an existing session is
    killed first so a fresh one is created.
    """
    options = options or SessionOptions()
    existing = await tmux.has_session(name, tmux=options.tmux_command)
    if existing and not options.attach_existing:
        logger.info("Session %s exists, replacing it", name)
        await tmux.kill_session(name, tmux=options.tmux_command)
        existing = False
    logger.info(
        "Session %s %s", name, "exists, will attach" if existing else "does not exist, will create",
    )
    if options.env:
        logger.info("Custom env vars for %s: %s", name, ", ".join(sorted(options.env)))
    session = TerminalSession(name, cwd, options, existing=existing)
    await session.start()
    return session
