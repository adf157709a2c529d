"""remotectl: drive Claude Code terminals and orchestrations remotely."""
from __future__ import annotations

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "EventBroadcaster",
    "OrchestrationEngine",
    "PlannerService",
    "RunConfig",
    "SessionRegistry",
    "create_session",
]


def __getattr__(name: str):
    if name in ("OrchestrationEngine", "RunConfig"):
        from .engine import orchestrator
        return getattr(orchestrator, name)
    if name == "EngineConfig":
        from .engine.config import EngineConfig
        return EngineConfig
    if name == "EventBroadcaster":
        from .adapters.broadcaster import EventBroadcaster
        return EventBroadcaster
    if name == "PlannerService":
        from .planning.planner import PlannerService
        return PlannerService
    if name in ("SessionRegistry", "create_session"):
        from . import terminal
        return getattr(terminal, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
