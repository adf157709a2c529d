"""Normalized stream events shared by both runner paths.

The CLI runner decodes ``stream-json`` records into plain dicts; the
SDK runner yields ``claude_agent_sdk`` message objects. Both are
adapted here into the same small set of event dataclasses so the
orchestration engine never sees runner-specific shapes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InitEvent:
    """Process reported the session token used for resumption."""
    session_id: str


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class TaskStarted:
    """A delegation tool call started a sub-agent."""
    tool_use_id: str
    agent_type: str
    description: str


@dataclass(frozen=True)
class TaskResult:
    tool_use_id: str
    is_error: bool = False


@dataclass(frozen=True)
class ResultEvent:
    """Final outcome of one run."""
    is_error: bool
    total_cost_usd: float = 0.0
    result: str = ""
    duration_ms: int | None = None
    num_turns: int | None = None


StreamEvent = Union[InitEvent, AssistantText, TaskStarted, TaskResult, ResultEvent]


def _task_started(
    tool_use_id: str, name: str, tool_input: Any, delegation_tools: Iterable[str],
) -> TaskStarted | None:
    if name not in delegation_tools:
        return None
    data = tool_input if isinstance(tool_input, dict) else {}
    return TaskStarted(
        tool_use_id=str(tool_use_id),
        agent_type=str(data.get("subagent_type") or "unknown"),
        description=str(data.get("description") or data.get("prompt") or name)[:200],
    )


def adapt_cli_message(
    record: dict[str, Any],
    delegation_tools: Iterable[str] = ("Task",),
) -> list[StreamEvent]:
    """Translate one decoded ``stream-json`` record into stream events.

    Unknown record types and content blocks yield nothing.
    """
    kind = record.get("type")
    events: list[StreamEvent] = []

    if kind == "system":
        if record.get("subtype") == "init" and record.get("session_id"):
            events.append(InitEvent(session_id=str(record["session_id"])))

    elif kind == "assistant":
        content = (record.get("message") or {}).get("content") or []
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(AssistantText(text=block["text"]))
            elif block.get("type") == "tool_use":
                started = _task_started(
                    block.get("id", ""), block.get("name", ""),
                    block.get("input"), delegation_tools,
                )
                if started is not None:
                    events.append(started)

    elif kind == "user":
        content = (record.get("message") or {}).get("content") or []
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    events.append(TaskResult(
                        tool_use_id=str(block.get("tool_use_id", "")),
                        is_error=bool(block.get("is_error")),
                    ))

    elif kind == "result":
        events.append(ResultEvent(
            is_error=bool(record.get("is_error")),
            total_cost_usd=float(record.get("total_cost_usd") or 0.0),
            result=str(record.get("result") or ""),
            duration_ms=record.get("duration_ms"),
            num_turns=record.get("num_turns"),
        ))

    else:
        logger.debug("Ignoring stream record of type %r", kind)

    return events


def adapt_sdk_message(
    message: Any,
    delegation_tools: Iterable[str] = ("Task",),
) -> list[StreamEvent]:
    """Translate one ``claude_agent_sdk`` message into stream events."""
    from claude_agent_sdk import (
        AssistantMessage,
        ResultMessage,
        SystemMessage,
        TextBlock,
        ToolResultBlock,
        ToolUseBlock,
        UserMessage,
    )

    events: list[StreamEvent] = []
    if isinstance(message, SystemMessage):
        data = message.data if isinstance(message.data, dict) else {}
        if message.subtype == "init" and data.get("session_id"):
            events.append(InitEvent(session_id=str(data["session_id"])))

    elif isinstance(message, AssistantMessage):
        for block in message.content:
            if isinstance(block, TextBlock) and block.text:
                events.append(AssistantText(text=block.text))
            elif isinstance(block, ToolUseBlock):
                started = _task_started(
                    block.id, block.name, block.input, delegation_tools,
                )
                if started is not None:
                    events.append(started)

    elif isinstance(message, UserMessage):
        if isinstance(message.content, list):
            for block in message.content:
                if isinstance(block, ToolResultBlock):
                    events.append(TaskResult(
                        tool_use_id=block.tool_use_id,
                        is_error=bool(block.is_error),
                    ))

    elif isinstance(message, ResultMessage):
        events.append(ResultEvent(
            is_error=bool(message.is_error),
            total_cost_usd=float(message.total_cost_usd or 0.0),
            result=message.result or "",
            duration_ms=message.duration_ms,
            num_turns=message.num_turns,
        ))

    return events
