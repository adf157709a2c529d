"""Runner backed by the ``claude`` CLI in stream-json mode.

Spawns ``claude -p <task> --output-format stream-json`` with
asyncio.create_subprocess_exec (array-based, no shell), decodes
stdout incrementally and adapts each record into stream events.
ANTHROPIC_API_KEY is removed from the child environment so the CLI
uses the logged-in subscription instead of API billing.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from typing import AsyncIterator

from ..errors import SpawnFailureError
from ..stream_events import StreamEvent, adapt_cli_message
from ..stream_parser import LineDelimitedParser
from .base import RunningTask, RunRequest, TaskRunner

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536


class CliRunningTask(RunningTask):
    """A running ``claude`` CLI process."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        delegation_tools: list[str],
    ) -> None:
        self._proc = proc
        self._delegation_tools = list(delegation_tools)
        self._parser = LineDelimitedParser()
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._cancelled = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    async def _drain_stderr(self) -> None:
        if self._proc.stderr is None:
            return
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("claude[%d] stderr: %s", self._proc.pid, text)

    async def events(self) -> AsyncIterator[StreamEvent]:
        stdout = self._proc.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(_READ_CHUNK)
            if not chunk:
                break
            for record in self._parser.feed(chunk):
                for event in adapt_cli_message(record, self._delegation_tools):
                    yield event
        for record in self._parser.flush():
            for event in adapt_cli_message(record, self._delegation_tools):
                yield event
        if self._parser.skipped:
            logger.debug(
                "claude[%d]: skipped %d non-event lines",
                self._proc.pid, self._parser.skipped,
            )

    async def wait(self) -> int | None:
        code = await self._proc.wait()
        try:
            await self._stderr_task
        except Exception:
            logger.debug("stderr drain for claude[%d] failed", self._proc.pid, exc_info=True)
        return code

    def cancel(self) -> None:
        if self._cancelled or self._proc.returncode is not None:
            return
        self._cancelled = True
        try:
            self._proc.send_signal(signal.SIGTERM)
            logger.info("Sent SIGTERM to claude[%d]", self._proc.pid)
        except ProcessLookupError:
            logger.debug("claude[%d] already exited", self._proc.pid)


class CliRunner(TaskRunner):
    """Spawns the claude CLI with stream-json output."""

    def __init__(self, command: str = "claude") -> None:
        self._command = command

    @property
    def name(self) -> str:
        return "cli"

    def _build_argv(self, request: RunRequest) -> list[str]:
        argv = [
            self._command,
            "-p", request.prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--max-turns", str(request.max_turns),
            "--permission-mode", request.permission_mode,
        ]
        if request.allowed_tools:
            argv.extend(["--allowedTools", ",".join(request.allowed_tools)])
        if request.subagents:
            agents = {a.name: a.to_cli_dict() for a in request.subagents}
            argv.extend(["--agents", json.dumps(agents)])
        if request.system_prompt:
            argv.extend(["--append-system-prompt", request.system_prompt])
        if request.resume_token:
            argv.extend(["--resume", request.resume_token])
        return argv

    @staticmethod
    def _build_env() -> dict[str, str]:
        env = os.environ.copy()
        env.pop("ANTHROPIC_API_KEY", None)
        return env

    async def spawn(self, request: RunRequest) -> CliRunningTask:
        argv = self._build_argv(request)
        logger.info(
            "Spawning %s in %s (resume=%s)",
            argv[0], request.cwd, bool(request.resume_token),
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=request.cwd,
            )
        except FileNotFoundError as exc:
            missing = exc.filename or argv[0]
            raise SpawnFailureError(argv[0], f"not found: {missing}") from exc
        except PermissionError as exc:
            raise SpawnFailureError(argv[0], f"permission denied: {exc}") from exc
        except OSError as exc:
            raise SpawnFailureError(argv[0], str(exc)) from exc
        logger.debug("claude[%d] started", proc.pid)
        return CliRunningTask(proc, request.delegation_tools)
