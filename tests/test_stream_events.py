"""Adapting runner output records into stream events."""

from __future__ import annotations

from remotectl.engine.stream_events import (
    AssistantText,
    InitEvent,
    ResultEvent,
    TaskResult,
    TaskStarted,
    adapt_cli_message,
)


def test_system_init_yields_session_token():
    events = adapt_cli_message({"type": "system", "subtype": "init", "session_id": "abc"})
    assert events == [InitEvent(session_id="abc")]


def test_system_without_session_is_ignored():
    assert adapt_cli_message({"type": "system", "subtype": "init"}) == []
    assert adapt_cli_message({"type": "system", "subtype": "other", "session_id": "x"}) == []


def test_assistant_text_and_delegation_blocks():
    record = {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Planning the work"},
                {
                    "type": "tool_use",
                    "id": "toolu_1",
                    "name": "Task",
                    "input": {"subagent_type": "code-agent", "description": "Add endpoint"},
                },
                {"type": "tool_use", "id": "toolu_2", "name": "Bash", "input": {"command": "ls"}},
                {"type": "text", "text": ""},
            ],
        },
    }
    assert adapt_cli_message(record) == [
        AssistantText(text="Planning the work"),
        TaskStarted(tool_use_id="toolu_1", agent_type="code-agent", description="Add endpoint"),
    ]


def test_custom_delegation_tool_names():
    record = {
        "type": "assistant",
        "message": {"content": [
            {"type": "tool_use", "id": "t1", "name": "Agent", "input": {"prompt": "p" * 300}},
        ]},
    }
    assert adapt_cli_message(record) == []
    [started] = adapt_cli_message(record, delegation_tools=("Agent",))
    assert started.agent_type == "unknown"
    assert len(started.description) == 200


def test_user_tool_results():
    record = {
        "type": "user",
        "message": {"content": [
            {"type": "tool_result", "tool_use_id": "toolu_1", "content": "done"},
            {"type": "tool_result", "tool_use_id": "toolu_2", "is_error": True},
        ]},
    }
    assert adapt_cli_message(record) == [
        TaskResult(tool_use_id="toolu_1", is_error=False),
        TaskResult(tool_use_id="toolu_2", is_error=True),
    ]


def test_user_string_content_is_ignored():
    assert adapt_cli_message({"type": "user", "message": {"content": "hello"}}) == []


def test_result_record():
    [event] = adapt_cli_message({
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "total_cost_usd": 0.42,
        "result": "All done",
        "duration_ms": 1200,
        "num_turns": 3,
    })
    assert event == ResultEvent(
        is_error=False, total_cost_usd=0.42, result="All done",
        duration_ms=1200, num_turns=3,
    )


def test_result_without_cost_defaults_to_zero():
    [event] = adapt_cli_message({"type": "result"})
    assert event.total_cost_usd == 0.0
    assert event.is_error is False


def test_unknown_record_type_yields_nothing():
    assert adapt_cli_message({"type": "stream_event", "event": {}}) == []
    assert adapt_cli_message({}) == []


def test_assistant_plain_string_content():
    record = {"type": "assistant", "message": {"content": "All done"}}
    assert adapt_cli_message(record) == [AssistantText(text="All done")]
