"""Abstract base for task runners.

A runner starts one external task-execution process (the ``claude``
CLI or the Claude Agent SDK) and exposes its output as normalized
stream events. The orchestration engine only talks to this
interface.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from ..stream_events import StreamEvent
from ..subagents import SubagentDefinition

logger = logging.getLogger(__name__)


@dataclass
class RunRequest:
    """Everything a runner needs to start one process."""
    prompt: str
    cwd: str
    resume_token: str | None = None
    system_prompt: str | None = None
    subagents: list[SubagentDefinition] = field(default_factory=list)
    allowed_tools: list[str] = field(default_factory=list)
    delegation_tools: list[str] = field(default_factory=lambda: ["Task"])
    max_turns: int = 100
    permission_mode: str = "bypassPermissions"


class RunningTask(abc.ABC):
    """Handle to one started process."""

    @abc.abstractmethod
    def events(self) -> AsyncIterator[StreamEvent]:
        """Yield stream events in emission order until the process ends."""

    @abc.abstractmethod
    async def wait(self) -> int | None:
        """Wait for the process to finish and return its exit code."""

    @abc.abstractmethod
    def cancel(self) -> None:
        """Ask the process to stop. Never blocks, safe to call twice."""


class TaskRunner(abc.ABC):
    """Starts external task-execution processes."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short runner name ('cli' or 'sdk')."""

    @abc.abstractmethod
    async def spawn(self, request: RunRequest) -> RunningTask:
        """Start a process for *request*.

        Raises SpawnFailureError if it cannot be started.
        """

    async def shutdown(self) -> None:
        """Release runner-wide resources. Default no-op."""
        return None
