"""SDK runner path, driven by a patched ``claude_agent_sdk.query``."""

from __future__ import annotations

import asyncio

import claude_agent_sdk
import pytest
from claude_agent_sdk import (
    AssistantMessage,
    CLIConnectionError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from remotectl.engine.config import EngineConfig
from remotectl.engine.errors import SpawnFailureError
from remotectl.engine.models import OrchestrationStatus, SubtaskStatus
from remotectl.engine.orchestrator import OrchestrationEngine, RunConfig
from remotectl.engine.providers.sdk_runner import SdkRunner
from remotectl.engine.store import InMemoryStore
from remotectl.engine.stream_events import (
    AssistantText,
    InitEvent,
    ResultEvent,
    TaskResult,
    TaskStarted,
    adapt_sdk_message,
)


RUN = RunConfig(project="api", runner="sdk")


def _init(session_id="sess-1"):
    return SystemMessage(subtype="init", data={"session_id": session_id})


def _result(cost=0.25, is_error=False):
    return ResultMessage(
        subtype="success",
        duration_ms=10,
        duration_api_ms=8,
        is_error=is_error,
        num_turns=2,
        session_id="sess-1",
        total_cost_usd=cost,
        result="done",
    )


def _assistant(*blocks):
    return AssistantMessage(content=list(blocks), model="claude-sonnet")


def _engine():
    return OrchestrationEngine(
        EngineConfig(projects_base_path="/tmp/projects"),
        store=InMemoryStore(),
        runners={"sdk": SdkRunner()},
    )


def _patch_query(monkeypatch, gen_factory):
    calls = []

    def fake_query(*, prompt, options=None, **kwargs):
        calls.append((prompt, options))
        return gen_factory()

    monkeypatch.setattr(claude_agent_sdk, "query", fake_query)
    return calls


# ── adapt_sdk_message ──


def test_adapt_sdk_messages():
    assert adapt_sdk_message(_init()) == [InitEvent(session_id="sess-1")]
    assert adapt_sdk_message(SystemMessage(subtype="other", data={})) == []

    message = _assistant(
        TextBlock(text="Delegating"),
        ToolUseBlock(id="t1", name="Task", input={"subagent_type": "code-agent", "description": "Add route"}),
        ToolUseBlock(id="t2", name="Bash", input={"command": "ls"}),
    )
    assert adapt_sdk_message(message) == [
        AssistantText(text="Delegating"),
        TaskStarted(tool_use_id="t1", agent_type="code-agent", description="Add route"),
    ]

    user = UserMessage(content=[ToolResultBlock(tool_use_id="t1", is_error=True)])
    assert adapt_sdk_message(user) == [TaskResult(tool_use_id="t1", is_error=True)]
    assert adapt_sdk_message(UserMessage(content="plain text")) == []

    [result] = adapt_sdk_message(_result(cost=0.5))
    assert result == ResultEvent(
        is_error=False, total_cost_usd=0.5, result="done", duration_ms=10, num_turns=2,
    )


# ── Engine over the SDK runner ──


@pytest.mark.asyncio
async def test_sdk_run_completes_with_session_and_cost(monkeypatch):
    async def stream():
        yield _init("sess-42")
        yield _assistant(
            TextBlock(text="Working"),
            ToolUseBlock(id="t1", name="Task", input={"subagent_type": "test-agent", "description": "Write tests"}),
        )
        yield UserMessage(content=[ToolResultBlock(tool_use_id="t1")])
        yield _result(cost=0.25)

    calls = _patch_query(monkeypatch, stream)
    engine = _engine()
    oid = await engine.run("Add a health endpoint", RUN)
    orch = await engine.wait(oid)

    assert orch.status is OrchestrationStatus.COMPLETED
    assert orch.session_id == "sess-42"
    assert orch.total_cost_usd == pytest.approx(0.25)
    assert [m.content for m in engine.list_messages(oid)] == ["Add a health endpoint", "Working"]
    [subtask] = engine.list_subtasks(oid)
    assert subtask.status is SubtaskStatus.COMPLETED

    prompt, options = calls[0]
    assert prompt == "Add a health endpoint"
    assert options.cwd == "/tmp/projects/api"
    assert options.resume is None
    assert set(options.agents) >= {"code-agent", "test-agent"}


@pytest.mark.asyncio
async def test_sdk_resume_passes_session_token(monkeypatch):
    async def stream():
        yield _init("sess-7")
        yield _result()

    calls = _patch_query(monkeypatch, stream)
    engine = _engine()
    oid = await engine.run("first", RUN)
    await engine.wait(oid)
    await engine.resume(oid, "second", RUN)
    orch = await engine.wait(oid)

    assert calls[1][0] == "second"
    assert calls[1][1].resume == "sess-7"
    assert orch.status is OrchestrationStatus.COMPLETED


@pytest.mark.asyncio
async def test_sdk_cancel_stops_iteration(monkeypatch):
    gate = asyncio.Event()
    pulled = []
    closed = asyncio.Event()

    async def stream():
        try:
            pulled.append("init")
            yield _init()
            await gate.wait()
            pulled.append("text")
            yield _assistant(TextBlock(text="late"))
            pulled.append("result")
            yield _result()
        finally:
            closed.set()

    _patch_query(monkeypatch, stream)
    engine = _engine()
    oid = await engine.run("task", RUN)
    await asyncio.sleep(0.01)

    assert engine.cancel(oid) is True
    gate.set()
    orch = await engine.wait(oid)

    assert orch.status is OrchestrationStatus.CANCELLED
    assert pulled == ["init", "text"]
    assert closed.is_set()
    assert [m.content for m in engine.list_messages(oid)] == ["task"]


@pytest.mark.asyncio
async def test_sdk_empty_stream_completes(monkeypatch):
    async def stream():
        return
        yield

    _patch_query(monkeypatch, stream)
    engine = _engine()
    oid = await engine.run("task", RUN)
    assert (await engine.wait(oid)).status is OrchestrationStatus.COMPLETED


@pytest.mark.asyncio
async def test_sdk_connection_error_is_a_spawn_failure(monkeypatch):
    async def stream():
        raise CLIConnectionError("Working directory does not exist")
        yield

    _patch_query(monkeypatch, stream)
    engine = _engine()
    with pytest.raises(SpawnFailureError) as info:
        await engine.run("hi", RunConfig(project="p", cwd="/nonexistent/dir", runner="sdk"))

    assert isinstance(info.value.__cause__, CLIConnectionError)
    [orch] = engine.list("p")
    assert orch.status is OrchestrationStatus.FAILED
    assert "Working directory does not exist" in orch.error
    assert not engine.is_active(orch.id)


@pytest.mark.asyncio
async def test_sdk_query_raising_immediately_is_a_spawn_failure(monkeypatch):
    def broken_query(*, prompt, options=None, **kwargs):
        raise ValueError("bad options")

    monkeypatch.setattr(claude_agent_sdk, "query", broken_query)
    engine = _engine()
    with pytest.raises(SpawnFailureError, match="bad options"):
        await engine.run("hi", RUN)
    [orch] = engine.list("api")
    assert orch.status is OrchestrationStatus.FAILED


@pytest.mark.asyncio
async def test_sdk_mid_stream_error_fails_run(monkeypatch):
    async def stream():
        yield _init()
        raise CLIConnectionError("connection lost")

    _patch_query(monkeypatch, stream)
    engine = _engine()
    oid = await engine.run("task", RUN)
    orch = await engine.wait(oid)
    assert orch.status is OrchestrationStatus.FAILED
    assert "connection lost" in orch.error
