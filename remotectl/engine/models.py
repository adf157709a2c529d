"""Core data models for sessions, orchestrations and planning.

All dataclasses and enums. Single source of truth to avoid
circular imports. Enum values are the wire strings published to
subscribers and written by the store.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class OrchestrationStatus(str, Enum):
    """Orchestration lifecycle states. See lifecycle.py for transitions."""
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SubtaskStatus(str, Enum):
    """Delegated sub-agent states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionReadiness(str, Enum):
    """Readiness of a terminal session."""
    ATTACHING = "attaching"
    NEW_INITIALIZING = "new-initializing"
    READY = "ready"


class PlanningPhase(str, Enum):
    GATHERING = "gathering"
    REVIEW = "review"
    COMPLETE = "complete"
    ERROR = "error"


def _make_id() -> str:
    return str(uuid.uuid4())


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class OrchestrationMessage:
    """One transcript entry."""
    orchestration_id: str
    role: MessageRole
    content: str
    created_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationMessage:
        return cls(
            orchestration_id=data["orchestration_id"],
            role=MessageRole(data["role"]),
            content=data.get("content", ""),
            created_at=int(data.get("created_at") or 0),
        )


@dataclass
class Subtask:
    """A delegated unit of work inside an orchestration.

    The id is the tool-invocation id reported by the external process
    when one is available.
    """
    orchestration_id: str
    name: str
    type: str = "unknown"
    id: str = field(default_factory=_make_id)
    status: SubtaskStatus = SubtaskStatus.PENDING
    started_at: int | None = None
    completed_at: int | None = None
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subtask:
        return cls(
            id=data["id"],
            orchestration_id=data["orchestration_id"],
            name=data.get("name", ""),
            type=data.get("type", "unknown"),
            status=SubtaskStatus(data.get("status", "pending")),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            cost_usd=float(data.get("cost_usd") or 0.0),
        )


@dataclass
class Orchestration:
    """One task-execution run and its accumulated state."""
    project: str
    name: str
    original_task: str
    id: str = field(default_factory=_make_id)
    status: OrchestrationStatus = OrchestrationStatus.PLANNING
    session_id: str | None = None
    total_cost_usd: float = 0.0
    error: str | None = None
    created_at: int = field(default_factory=_now_ms)
    completed_at: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Orchestration:
        return cls(
            id=data["id"],
            project=data.get("project", ""),
            name=data.get("name", ""),
            original_task=data.get("original_task", ""),
            status=OrchestrationStatus(data.get("status", "planning")),
            session_id=data.get("session_id"),
            total_cost_usd=float(data.get("total_cost_usd") or 0.0),
            error=data.get("error"),
            created_at=int(data.get("created_at") or 0),
            completed_at=data.get("completed_at"),
        )


TERMINAL_STATUSES = frozenset({
    OrchestrationStatus.COMPLETED,
    OrchestrationStatus.FAILED,
    OrchestrationStatus.CANCELLED,
})

TERMINAL_SUBTASK_STATUSES = frozenset({
    SubtaskStatus.COMPLETED,
    SubtaskStatus.FAILED,
})


@dataclass
class PlanningQuestion:
    """A clarifying question emitted between question sentinels."""
    id: str
    question: str
    type: str = "text"
    context: str = ""
    options: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanningQuestion:
        qid = data.get("id")
        text = data.get("question")
        if not isinstance(qid, str) or not qid:
            raise ValueError("question is missing an id")
        if not isinstance(text, str) or not text:
            raise ValueError("question is missing its text")
        options = data.get("options") or []
        return cls(
            id=qid,
            question=text,
            type=str(data.get("type") or "text"),
            context=str(data.get("context") or ""),
            options=[str(o) for o in options] if isinstance(options, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class IssueSpec:
    """An issue proposed by a generated plan."""
    title: str
    description: str = ""
    priority: int = 0
    plan: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueSpec:
        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            raise ValueError("issue is missing a title")
        try:
            priority = int(data.get("priority") or 0)
        except (TypeError, ValueError):
            priority = 0
        return cls(
            title=title,
            description=str(data.get("description") or ""),
            priority=min(max(priority, 0), 4),
            plan=str(data.get("plan") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_COMPLEXITIES = ("low", "medium", "high")


@dataclass
class GeneratedPlan:
    """A structured plan parsed from the planning session transcript."""
    summary: str
    issues: list[IssueSpec] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    estimated_complexity: str = "medium"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GeneratedPlan:
        """Validate a decoded plan block. Raises ValueError if malformed."""
        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            raise ValueError("plan is missing a summary")
        raw_issues = data.get("issues")
        if not isinstance(raw_issues, list):
            raise ValueError("plan issues must be a list")
        issues = [IssueSpec.from_dict(i) for i in raw_issues if isinstance(i, dict)]
        risks = data.get("risks") or []
        complexity = str(data.get("estimatedComplexity") or "medium").lower()
        if complexity not in _COMPLEXITIES:
            complexity = "medium"
        return cls(
            summary=summary,
            issues=issues,
            risks=[str(r) for r in risks] if isinstance(risks, list) else [],
            estimated_complexity=complexity,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "issues": [i.to_dict() for i in self.issues],
            "risks": list(self.risks),
            "estimatedComplexity": self.estimated_complexity,
        }


@dataclass
class PlanningSession:
    """State of one interactive planning run."""
    project_id: str
    id: str = ""
    phase: PlanningPhase = PlanningPhase.GATHERING
    started_at: int = field(default_factory=_now_ms)
    questions: list[PlanningQuestion] = field(default_factory=list)
    answers: dict[str, str] = field(default_factory=dict)
    generated_plan: GeneratedPlan | None = None
    trust_mode: bool = False

    @property
    def pending_question(self) -> PlanningQuestion | None:
        """The last asked question if it has not been answered yet."""
        if not self.questions:
            return None
        last = self.questions[-1]
        if last.id in self.answers:
            return None
        return last

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "phase": self.phase.value,
            "started_at": self.started_at,
            "trust_mode": self.trust_mode,
            "questions": [q.to_dict() for q in self.questions],
            "answers": dict(self.answers),
            "generated_plan": (
                self.generated_plan.to_dict() if self.generated_plan else None
            ),
        }
