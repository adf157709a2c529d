"""Default sub-agent roster and orchestrator system prompt.

The orchestrator delegates through the assistant's Task tool. Each
definition is passed to the CLI as ``--agents`` JSON and to the SDK
as ``AgentDefinition`` objects.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ORCHESTRATOR_SYSTEM_PROMPT = """\
You coordinate a team of specialised sub-agents to solve complex
software development tasks.

## Available sub-agents
Delegate with the Task tool:
- **code-agent**: writes and modifies code (features, refactors).
- **test-agent**: writes and runs unit and integration tests.
- **review-agent**: reviews code quality and spots bugs.
- **fix-agent**: fixes bugs and failing tests.

## Principles
1. Clarify the task if it is ambiguous.
2. Break it into subtasks and delegate to the right agents.
3. If a test fails, use fix-agent and then re-test.
4. Escalate important decisions to the user.
"""


@dataclass
class SubagentDefinition:
    """One delegatable sub-agent."""
    name: str
    description: str
    prompt: str
    tools: list[str] = field(default_factory=list)
    model: str | None = None

    def to_cli_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "description": self.description,
            "prompt": self.prompt,
        }
        if self.tools:
            data["tools"] = list(self.tools)
        if self.model:
            data["model"] = self.model
        return data


_EDIT_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]


def default_subagents() -> list[SubagentDefinition]:
    return [
        SubagentDefinition(
            name="code-agent",
            description="Writes and modifies code. Use for implementing and refactoring.",
            prompt="You are an expert developer. Write clean, maintainable code.",
            tools=list(_EDIT_TOOLS),
            model="sonnet",
        ),
        SubagentDefinition(
            name="test-agent",
            description="Testing expert. Use to write and run tests.",
            prompt="You are a testing expert. Write thorough tests covering edge cases.",
            tools=list(_EDIT_TOOLS),
            model="sonnet",
        ),
        SubagentDefinition(
            name="review-agent",
            description="Code review expert. Use to analyse code quality.",
            prompt="You are a senior reviewer. Find bugs and check best practices.",
            tools=["Read", "Glob", "Grep"],
            model="haiku",
        ),
        SubagentDefinition(
            name="fix-agent",
            description="Bug fixing expert. Use when tests fail.",
            prompt="You are a debugging expert. Fix the root cause without breaking anything else.",
            tools=list(_EDIT_TOOLS),
            model="sonnet",
        ),
    ]
