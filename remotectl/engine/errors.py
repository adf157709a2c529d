"""Exception hierarchy for sessions and orchestrations.

Specific exceptions for each failure mode. Structural errors
(spawn, resume, lookup) are raised to the caller; streaming-time
errors are captured into orchestration state and emitted as
``error`` events instead of crossing the driver boundary.
"""
from __future__ import annotations


class RemoteControlError(Exception):
    """Base exception for all remotectl errors."""


class SpawnFailureError(RemoteControlError):
    """An external process could not be started."""
    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to spawn {target}: {reason}")


class NotResumableError(RemoteControlError):
    """Resume requested for an orchestration without a session token."""
    def __init__(self, orchestration_id: str):
        self.orchestration_id = orchestration_id
        super().__init__(
            f"Orchestration {orchestration_id} has no session token "
            f"and cannot be resumed"
        )


class NotFoundError(RemoteControlError):
    """Referenced orchestration, session or planning session is unknown."""
    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ProcessAlreadyActiveError(RemoteControlError):
    """A second external process was requested for the same orchestration."""
    def __init__(self, orchestration_id: str):
        self.orchestration_id = orchestration_id
        super().__init__(
            f"Orchestration {orchestration_id} already has an active process"
        )


class ProtocolDecodeError(RemoteControlError):
    """A stream fragment could not be decoded as a structured record."""
    def __init__(self, fragment: str, reason: str):
        self.fragment = fragment
        self.reason = reason
        preview = fragment if len(fragment) <= 80 else fragment[:77] + "..."
        super().__init__(f"Cannot decode {preview!r}: {reason}")


class AbnormalExitError(RemoteControlError):
    """The external process exited non-zero without a result event."""
    def __init__(self, exit_code: int | None):
        self.exit_code = exit_code
        super().__init__(
            f"Process exited abnormally (exit code {exit_code})"
        )


class TransportFailureError(RemoteControlError):
    """Scrollback capture or a downstream delivery failed."""
    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"{operation} failed: {reason}")


class PlanningError(RemoteControlError):
    """A planning session operation was invalid for its current state."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Planning session {session_id}: {reason}")
