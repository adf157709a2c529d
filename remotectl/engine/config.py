"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via REMOTECTL_* env vars.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


DEFAULT_ALLOWED_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep", "Task"]


def _default_state_dir() -> str:
    return str(Path.home() / ".remotectl")


def _env_list(name: str) -> list[str] | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class EngineConfig:
    """Coordinator configuration shared by sessions and orchestrations."""

    # External binaries
    claude_command: str = "claude"
    tmux_command: str = "tmux"

    # Orchestration runner: "cli" spawns the claude CLI with stream-json
    # output, "sdk" drives claude_agent_sdk.query().
    runner: str = "cli"
    max_turns: int = 100
    permission_mode: str = "bypassPermissions"
    allowed_tools: list[str] = field(
        default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS)
    )
    # Tool names that mark a delegated sub-agent invocation.
    delegation_tools: list[str] = field(default_factory=lambda: ["Task"])

    # Terminal sessions
    # Upper bound for the readiness handshake of a fresh interactive
    # session. The bootstrap sentinel normally arrives much sooner.
    settle_delay_seconds: float = 5.0
    history_lines: int = 10000
    terminal_cols: int = 120
    terminal_rows: int = 30

    # Storage and projects
    state_dir: str = field(default_factory=_default_state_dir)
    projects_base_path: str = "~/Dev"

    # HTTP/WebSocket surface
    host: str = "127.0.0.1"
    port: int = 4678

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from REMOTECTL_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("REMOTECTL_")
        }
        if overrides:
            logger.info(
                "EngineConfig.from_env: REMOTECTL_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no REMOTECTL_* env vars set, using defaults")

        config = cls(
            claude_command=os.getenv(
                "REMOTECTL_CLAUDE_COMMAND", cls.claude_command
            ),
            tmux_command=os.getenv(
                "REMOTECTL_TMUX_COMMAND", cls.tmux_command
            ),
            runner=os.getenv("REMOTECTL_RUNNER", cls.runner).lower(),
            max_turns=int(os.getenv(
                "REMOTECTL_MAX_TURNS", str(cls.max_turns)
            )),
            permission_mode=os.getenv(
                "REMOTECTL_PERMISSION_MODE", cls.permission_mode
            ),
            settle_delay_seconds=float(os.getenv(
                "REMOTECTL_SETTLE_DELAY", str(cls.settle_delay_seconds)
            )),
            history_lines=int(os.getenv(
                "REMOTECTL_HISTORY_LINES", str(cls.history_lines)
            )),
            state_dir=os.getenv("REMOTECTL_STATE_DIR") or _default_state_dir(),
            projects_base_path=os.getenv(
                "REMOTECTL_PROJECTS_BASE_PATH", cls.projects_base_path
            ),
            host=os.getenv("REMOTECTL_HOST", cls.host),
            port=int(os.getenv("REMOTECTL_PORT", str(cls.port))),
            log_level=os.getenv("REMOTECTL_LOG_LEVEL", cls.log_level),
        )
        tools = _env_list("REMOTECTL_ALLOWED_TOOLS")
        if tools is not None:
            config.allowed_tools = tools
        if config.runner not in {"cli", "sdk"}:
            logger.warning(
                "EngineConfig.from_env: unknown runner %r, falling back to 'cli'",
                config.runner,
            )
            config.runner = "cli"
        logger.info(
            "EngineConfig.from_env: runner=%s claude=%s max_turns=%d log_level=%s",
            config.runner, config.claude_command,
            config.max_turns, config.log_level,
        )
        return config

    def project_path(self, project: str) -> Path:
        """Resolve a project name to a directory under projects_base_path."""
        return Path(self.projects_base_path).expanduser() / project
