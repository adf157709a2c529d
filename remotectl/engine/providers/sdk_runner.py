"""Runner backed by the Claude Agent SDK.

Wraps ``claude_agent_sdk.query()``. The first message is awaited in
``spawn`` so any startup failure surfaces as SpawnFailureError instead of
a mid-stream failure. Cancellation is a flag checked between
messages; the query generator is closed once the flag is seen.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from ..errors import SpawnFailureError
from ..stream_events import StreamEvent, adapt_sdk_message
from .base import RunningTask, RunRequest, TaskRunner

logger = logging.getLogger(__name__)


class SdkRunningTask(RunningTask):
    """A running SDK query stream."""

    def __init__(
        self,
        stream: AsyncIterator[Any],
        first: Any | None,
        delegation_tools: list[str],
    ) -> None:
        self._stream = stream
        self._first = first
        self._delegation_tools = list(delegation_tools)
        self._cancelled = False
        self._done = asyncio.Event()
        self._exit_code: int | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def events(self) -> AsyncIterator[StreamEvent]:
        try:
            if self._first is not None:
                for event in adapt_sdk_message(self._first, self._delegation_tools):
                    yield event
                self._first = None
            async for message in self._stream:
                if self._cancelled:
                    break
                for event in adapt_sdk_message(message, self._delegation_tools):
                    yield event
            self._exit_code = 0
        except Exception:
            self._exit_code = 1
            raise
        finally:
            if self._cancelled:
                self._exit_code = None
            await _close_quietly(self._stream)
            self._done.set()

    async def wait(self) -> int | None:
        await self._done.wait()
        return self._exit_code

    def cancel(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            logger.info("SDK run cancellation requested")


class SdkRunner(TaskRunner):
    """Drives claude_agent_sdk.query()."""

    @property
    def name(self) -> str:
        return "sdk"

    def _build_options(self, request: RunRequest) -> Any:
        from claude_agent_sdk import AgentDefinition, ClaudeAgentOptions

        agents = {
            a.name: AgentDefinition(
                description=a.description,
                prompt=a.prompt,
                tools=list(a.tools) or None,
                model=a.model,
            )
            for a in request.subagents
        }
        return ClaudeAgentOptions(
            cwd=request.cwd,
            system_prompt=request.system_prompt,
            agents=agents or None,
            allowed_tools=list(request.allowed_tools),
            permission_mode=request.permission_mode,
            max_turns=request.max_turns,
            resume=request.resume_token,
        )

    async def spawn(self, request: RunRequest) -> SdkRunningTask:
        try:
            import claude_agent_sdk
        except ImportError as exc:
            raise SpawnFailureError("claude_agent_sdk", f"not installed: {exc}") from exc

        logger.info(
            "Starting SDK query in %s (resume=%s)",
            request.cwd, bool(request.resume_token),
        )
        stream = None
        try:
            options = self._build_options(request)
            stream = claude_agent_sdk.query(prompt=request.prompt, options=options)
            first = await stream.__anext__()
        except StopAsyncIteration:
            first = None
        except Exception as exc:
            if stream is not None:
                await _close_quietly(stream)
            raise SpawnFailureError("claude", str(exc) or type(exc).__name__) from exc
        return SdkRunningTask(stream, first, request.delegation_tools)


async def _close_quietly(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Closing SDK query stream failed", exc_info=True)
