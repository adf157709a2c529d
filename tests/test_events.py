"""Wire format of broadcast events."""

from __future__ import annotations

from remotectl.adapters.events import (
    OrchestrationCompleted,
    PlanReady,
    PlanningQuestionAsked,
    RemoteEvent,
    StatusChange,
    SubtaskStarted,
    dict_to_event,
    event_to_dict,
)


def test_event_to_dict_uses_type_and_camel_case():
    event = SubtaskStarted(
        project_id="api",
        orchestration_id="o1",
        subtask_id="toolu_1",
        agent_type="code-agent",
        agent_name="Add endpoint",
    )
    assert event_to_dict(event) == {
        "type": "subtask-started",
        "projectId": "api",
        "orchestrationId": "o1",
        "subtaskId": "toolu_1",
        "agentType": "code-agent",
        "agentName": "Add endpoint",
    }


def test_event_to_dict_omits_none():
    d = event_to_dict(StatusChange(orchestration_id="o1", status="executing"))
    assert "projectId" not in d
    assert d["type"] == "status-change"


def test_completed_carries_total_cost():
    d = event_to_dict(OrchestrationCompleted(
        project_id="api", orchestration_id="o1", status="completed", total_cost_usd=0.42,
    ))
    assert d["type"] == "completed"
    assert d["totalCostUsd"] == 0.42


def test_planning_events_carry_session_id():
    d = event_to_dict(PlanReady(
        project_id="p1", session_id="planning-p1-1", plan="Summary",
        issues=[{"title": "t"}], estimated_complexity="high",
    ))
    assert d["sessionId"] == "planning-p1-1"
    assert d["estimatedComplexity"] == "high"
    assert d["risks"] == []


def test_dict_to_event_reverses_event_to_dict():
    event = PlanningQuestionAsked(
        project_id="p1", session_id="s1", question={"id": "q1", "question": "?"},
    )
    back = dict_to_event(event_to_dict(event))
    assert isinstance(back, PlanningQuestionAsked)
    assert back == event


def test_dict_to_event_unknown_type_falls_back_to_base():
    back = dict_to_event({"type": "something-new", "projectId": "p", "extra": 1})
    assert type(back) is RemoteEvent
    assert back.event_type == "something-new"
    assert back.project_id == "p"
