"""Orchestration and subtask state machines.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

Orchestration:

    PLANNING ──> EXECUTING ──┬──> COMPLETED
        │                    ├──> FAILED
        │                    └──> CANCELLED
        └──> FAILED | CANCELLED

    Terminal states accept no transitions. ``resume`` is the only way
    out of a terminal state and goes through ``reopen_status``.

Subtask:

    PENDING ──> RUNNING ──┬──> COMPLETED
        │                 └──> FAILED
        └──> FAILED
"""
from __future__ import annotations

from .models import (
    OrchestrationStatus,
    SubtaskStatus,
    TERMINAL_STATUSES,
)

VALID_TRANSITIONS: dict[OrchestrationStatus, set[OrchestrationStatus]] = {
    OrchestrationStatus.PLANNING: {
        OrchestrationStatus.EXECUTING,
        OrchestrationStatus.FAILED,
        OrchestrationStatus.CANCELLED,
    },
    OrchestrationStatus.EXECUTING: {
        OrchestrationStatus.COMPLETED,
        OrchestrationStatus.FAILED,
        OrchestrationStatus.CANCELLED,
    },
    OrchestrationStatus.COMPLETED: set(),
    OrchestrationStatus.FAILED: set(),
    OrchestrationStatus.CANCELLED: set(),
}

VALID_SUBTASK_TRANSITIONS: dict[SubtaskStatus, set[SubtaskStatus]] = {
    SubtaskStatus.PENDING: {SubtaskStatus.RUNNING, SubtaskStatus.FAILED},
    SubtaskStatus.RUNNING: {SubtaskStatus.COMPLETED, SubtaskStatus.FAILED},
    SubtaskStatus.COMPLETED: set(),
    SubtaskStatus.FAILED: set(),
}


def can_transition(
    current: OrchestrationStatus, target: OrchestrationStatus,
) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(
    current: OrchestrationStatus, target: OrchestrationStatus,
) -> None:
    """Validate an orchestration transition. Raises ValueError if invalid."""
    if not can_transition(current, target):
        allowed = VALID_TRANSITIONS.get(current, set())
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def can_transition_subtask(
    current: SubtaskStatus, target: SubtaskStatus,
) -> bool:
    return target in VALID_SUBTASK_TRANSITIONS.get(current, set())


def validate_subtask_transition(
    current: SubtaskStatus, target: SubtaskStatus,
) -> None:
    """Validate a subtask transition. Raises ValueError if invalid."""
    if not can_transition_subtask(current, target):
        allowed = VALID_SUBTASK_TRANSITIONS.get(current, set())
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid subtask transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def reopen_status(current: OrchestrationStatus) -> OrchestrationStatus:
    """Status an orchestration takes when a follow-up message resumes it."""
    if current in TERMINAL_STATUSES or current == OrchestrationStatus.PLANNING:
        return OrchestrationStatus.EXECUTING
    return current
