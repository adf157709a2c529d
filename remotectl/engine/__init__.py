"""Orchestration engine: run, resume and cancel external task processes."""
from .models import (
    GeneratedPlan,
    IssueSpec,
    MessageRole,
    Orchestration,
    OrchestrationMessage,
    OrchestrationStatus,
    PlanningPhase,
    PlanningQuestion,
    PlanningSession,
    SessionReadiness,
    Subtask,
    SubtaskStatus,
)
from .config import EngineConfig
from .errors import (
    AbnormalExitError,
    NotFoundError,
    NotResumableError,
    PlanningError,
    ProcessAlreadyActiveError,
    ProtocolDecodeError,
    RemoteControlError,
    SpawnFailureError,
    TransportFailureError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "OrchestrationEngine",
    "RunConfig",
    # Models
    "GeneratedPlan",
    "IssueSpec",
    "MessageRole",
    "Orchestration",
    "OrchestrationMessage",
    "OrchestrationStatus",
    "PlanningPhase",
    "PlanningQuestion",
    "PlanningSession",
    "SessionReadiness",
    "Subtask",
    "SubtaskStatus",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "RemoteConfig",
    "load_yaml_config",
    # Storage (lazy import)
    "InMemoryStore",
    "JsonFileStore",
    # Errors
    "AbnormalExitError",
    "NotFoundError",
    "NotResumableError",
    "PlanningError",
    "ProcessAlreadyActiveError",
    "ProtocolDecodeError",
    "RemoteControlError",
    "SpawnFailureError",
    "TransportFailureError",
]


def __getattr__(name: str):
    if name in ("OrchestrationEngine", "RunConfig"):
        from . import orchestrator
        return getattr(orchestrator, name)
    if name in ("RemoteConfig", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    if name in ("InMemoryStore", "JsonFileStore"):
        from . import store
        return getattr(store, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
