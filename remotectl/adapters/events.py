"""Event types published to subscribers.

Each event is a typed dataclass on the Python side and a flat JSON
object on the wire. Field names are snake_case here and camelCase on
the wire; the ``type`` key carries the event name.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any


@dataclass
class RemoteEvent:
    """Base event."""
    event_type: str = ""
    project_id: str | None = None


# ── Orchestration events ──


@dataclass
class OrchestrationEvent(RemoteEvent):
    orchestration_id: str = ""


@dataclass
class StatusChange(OrchestrationEvent):
    event_type: str = "status-change"
    status: str = ""


@dataclass
class MessageEvent(OrchestrationEvent):
    event_type: str = "message"
    role: str = ""
    content: str = ""


@dataclass
class SubtaskStarted(OrchestrationEvent):
    event_type: str = "subtask-started"
    subtask_id: str = ""
    agent_type: str = ""
    agent_name: str = ""


@dataclass
class SubtaskCompleted(OrchestrationEvent):
    event_type: str = "subtask-completed"
    subtask_id: str = ""
    status: str = "completed"


@dataclass
class OrchestrationCompleted(OrchestrationEvent):
    event_type: str = "completed"
    status: str = "completed"
    total_cost_usd: float = 0.0


@dataclass
class OrchestrationError(OrchestrationEvent):
    event_type: str = "error"
    error: str = ""


# ── Planning events ──


@dataclass
class PlanningEvent(RemoteEvent):
    session_id: str = ""


@dataclass
class PlanningProgress(PlanningEvent):
    event_type: str = "planning-progress"
    phase: str = ""
    message: str = ""


@dataclass
class PlanningQuestionAsked(PlanningEvent):
    event_type: str = "planning-question"
    question: dict[str, Any] = field(default_factory=dict)


@dataclass
class PlanReady(PlanningEvent):
    event_type: str = "plan-ready"
    plan: str = ""
    issues: list[dict[str, Any]] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    estimated_complexity: str = "medium"


@dataclass
class PlanApproved(PlanningEvent):
    event_type: str = "plan-approved"
    issues: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class PlanningFailed(PlanningEvent):
    event_type: str = "planning-error"
    error: str = ""


@dataclass
class PlanningOutput(PlanningEvent):
    event_type: str = "planning-output"
    output: str = ""


_EVENT_MAP: dict[str, type[RemoteEvent]] = {
    "status-change": StatusChange,
    "message": MessageEvent,
    "subtask-started": SubtaskStarted,
    "subtask-completed": SubtaskCompleted,
    "completed": OrchestrationCompleted,
    "error": OrchestrationError,
    "planning-progress": PlanningProgress,
    "planning-question": PlanningQuestionAsked,
    "plan-ready": PlanReady,
    "plan-approved": PlanApproved,
    "planning-error": PlanningFailed,
    "planning-output": PlanningOutput,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def event_to_dict(event: RemoteEvent) -> dict[str, Any]:
    """Convert a typed event to its wire dict. None values are omitted."""
    d: dict[str, Any] = {}
    for f in fields(event):
        val = getattr(event, f.name)
        if val is None:
            continue
        if f.name == "event_type":
            d["type"] = val
        else:
            d[_camel(f.name)] = val
    return d


def dict_to_event(data: dict[str, Any]) -> RemoteEvent:
    """Convert a wire dict back to a typed event. Unknown keys are dropped."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, RemoteEvent)
    by_wire = {_camel(f.name): f.name for f in fields(cls)}
    kwargs = {
        by_wire[k]: v for k, v in data.items()
        if k in by_wire and k != "eventType"
    }
    kwargs["event_type"] = event_type
    return cls(**kwargs)
