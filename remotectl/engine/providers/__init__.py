"""Task runners that start the external task-execution process."""
from .base import RunningTask, RunRequest, TaskRunner
from .cli_runner import CliRunner
from .sdk_runner import SdkRunner

__all__ = [
    "RunningTask",
    "RunRequest",
    "TaskRunner",
    "CliRunner",
    "SdkRunner",
    "build_runners",
]


def build_runners(claude_command: str = "claude") -> dict[str, TaskRunner]:
    """Default runner map keyed by runner name."""
    return {
        "cli": CliRunner(claude_command),
        "sdk": SdkRunner(),
    }
