"""Interactive project planning in a dedicated terminal session."""
from .planner import PlannerService
from .prompts import generate_planning_prompt

__all__ = ["PlannerService", "generate_planning_prompt"]
