"""Prompts that start a planning session.

Both variants ask the assistant to emit machine-readable blocks
between sentinel markers; the planner parses them out of the terminal
output. The markers are only named in prose here, never around an
example payload, so an echoed prompt cannot produce a record.
"""
from __future__ import annotations

from ..engine.stream_parser import PLAN_SPEC, QUESTION_SPEC

_PLAN_EXAMPLE = """\
{
  "summary": "...",
  "issues": [
    {
      "title": "...",
      "description": "...",
      "priority": 2,
      "plan": "Step 1: ...\\nStep 2: ..."
    }
  ],
  "risks": ["..."],
  "estimatedComplexity": "low|medium|high"
}"""

_QUESTION_EXAMPLE = """\
{
  "id": "q1",
  "question": "Your question here?",
  "type": "text",
  "context": "Why you are asking this"
}"""

_PLAN_FORMAT = (
    f"Write the plan as a single JSON object on the lines between a line "
    f"containing only {PLAN_SPEC.start} and a line containing only "
    f"{PLAN_SPEC.end}. The object looks like this:\n{_PLAN_EXAMPLE}"
)

_QUESTION_FORMAT = (
    f"Write each question as a single JSON object on the lines between a "
    f"line containing only {QUESTION_SPEC.start} and a line containing only "
    f"{QUESTION_SPEC.end}. The object looks like this:\n{_QUESTION_EXAMPLE}"
)


def _header(project_name: str, description: str | None) -> str:
    lines = [f"Project: {project_name}"]
    if description and description.strip():
        lines.append(f"Description: {description.strip()}")
    return "\n".join(lines)


def generate_planning_prompt(
    project_name: str,
    description: str | None = None,
    trust_mode: bool = False,
) -> str:
    """Initial prompt for a planning session.

    In trust mode the assistant writes the plan straight away;
    otherwise it asks clarifying questions one at a time first.
    """
    header = _header(project_name, description)
    if trust_mode:
        return f"""\
You are a project planning assistant. Create a detailed implementation plan for the following project:

{header}

Explore the codebase first, then generate a comprehensive plan with:
1. A summary of the approach
2. A list of 3-8 concrete issues to implement it
3. For each issue:
   - A clear title
   - A detailed description
   - Priority (0=none, 1=low, 2=medium, 3=high, 4=urgent)
   - An execution plan with specific steps

{_PLAN_FORMAT}"""

    return f"""\
You are a project planning assistant. I need help planning the following project:

{header}

Explore the codebase, then ask me clarifying questions ONE AT A TIME to understand:
- The scope and requirements
- Technical constraints or preferences
- Priority and timeline

Wait for my answer before asking the next question.
{_QUESTION_FORMAT}

After gathering enough information (3-5 questions), generate the plan.
{_PLAN_FORMAT}"""
