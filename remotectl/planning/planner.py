"""Planning sessions.

A planning session runs the assistant interactively in a dedicated
terminal session. The assistant's output is mirrored to subscribers
as ``planning-output`` events and scanned for sentinel-delimited
question and plan blocks, which become ``planning-question`` and
``plan-ready`` events. Answers are typed back into the terminal.

Usage:
    planner = PlannerService(config, broadcaster)
    sid = await planner.start_planning("p1", "api", "/home/me/Dev/api")
    planner.answer_question(sid, "q1", "REST, not GraphQL")
    issues = planner.approve_plan(sid)
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from ..adapters.broadcaster import EventBroadcaster, planning_key
from ..adapters.events import (
    PlanApproved,
    PlanningEvent,
    PlanningFailed,
    PlanningOutput,
    PlanningProgress,
    PlanningQuestionAsked,
    PlanReady,
)
from ..engine.config import EngineConfig
from ..engine.errors import NotFoundError, PlanningError
from ..engine.models import (
    GeneratedPlan,
    IssueSpec,
    PlanningPhase,
    PlanningQuestion,
    PlanningSession,
    _now_ms,
)
from ..engine.stream_parser import PLAN_SPEC, QUESTION_SPEC, SentinelParser, SentinelRecord
from ..terminal.ansi import AnsiStripper
from ..terminal.registry import SessionFactory
from ..terminal.session import SessionOptions, TerminalSession, create_session
from .prompts import generate_planning_prompt

logger = logging.getLogger(__name__)

CTRL_C = "\x03"
# Time the assistant gets to exit on Ctrl+C before the session is killed.
KILL_DELAY_SECONDS = 0.5


@dataclass
class _ActivePlanning:
    state: PlanningSession
    terminal: TerminalSession
    parser: SentinelParser = field(
        default_factory=lambda: SentinelParser([QUESTION_SPEC, PLAN_SPEC])
    )
    stripper: AnsiStripper = field(default_factory=AnsiStripper)


class PlannerService:
    """Owns the live planning sessions of this process."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        broadcaster: EventBroadcaster | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._broadcaster = broadcaster if broadcaster is not None else EventBroadcaster()
        self._factory = session_factory or create_session
        self._sessions: dict[str, _ActivePlanning] = {}
        self._kill_tasks: set[asyncio.Task] = set()

    # ── Public operations ──

    async def start_planning(
        self,
        project_id: str,
        project_name: str,
        project_path: str,
        description: str | None = None,
        trust_mode: bool = False,
    ) -> str:
        """Open a planning terminal for *project_id* and return its session id."""
        previous = self.get_session_by_project(project_id)
        if previous is not None:
            logger.info("Replacing planning session %s for project %s", previous.id, project_id)
            self.cancel_planning(previous.id)
        if self._kill_tasks:
            await asyncio.gather(*self._kill_tasks, return_exceptions=True)

        session_id = f"planning-{project_id}-{_now_ms()}"
        state = PlanningSession(project_id=project_id, id=session_id, trust_mode=trust_mode)
        prompt = generate_planning_prompt(project_name, description, trust_mode)
        options = SessionOptions(
            env={
                "CLAUDE_PLANNING_SESSION": session_id,
                "CLAUDE_PLANNING_MODE": "trust" if trust_mode else "interactive",
            },
            attach_existing=False,
            project_name=project_name,
            planning_prompt=prompt,
            cols=self._config.terminal_cols,
            rows=self._config.terminal_rows,
            settle_delay=self._config.settle_delay_seconds,
            history_lines=self._config.history_lines,
            tmux_command=self._config.tmux_command,
        )
        terminal = await self._factory(project_path, f"planning-{project_id}", options)
        active = _ActivePlanning(state=state, terminal=terminal)
        self._sessions[session_id] = active

        terminal.on_data(lambda data, a=active: self._on_output(a, data))
        terminal.on_exit(lambda code, a=active: self._on_terminal_exit(a, code))
        terminal.on_ready(
            lambda: logger.info("Planning terminal ready for session %s", session_id)
        )

        logger.info(
            "Planning session %s started for project %s (%s mode)",
            session_id, project_id, "trust" if trust_mode else "interactive",
        )
        self._progress(state, "Starting planning session...")
        return session_id

    def answer_question(self, session_id: str, question_id: str, answer: str) -> None:
        """Record *answer* and type it into the planning terminal."""
        active = self._require(session_id)
        state = active.state
        if state.phase is not PlanningPhase.GATHERING:
            raise PlanningError(session_id, f"not gathering answers (phase {state.phase.value})")
        if not any(q.id == question_id for q in state.questions):
            raise PlanningError(session_id, f"unknown question {question_id}")
        state.answers[question_id] = answer
        active.terminal.write(f"{answer}\n")
        self._progress(state, "Processing your answer...")
        self._release_questions(active)

    def approve_plan(self, session_id: str) -> list[IssueSpec]:
        """Accept the generated plan and close the planning terminal."""
        active = self._require(session_id)
        state = active.state
        plan = state.generated_plan
        if plan is None:
            raise PlanningError(session_id, "no plan to approve")
        state.phase = PlanningPhase.COMPLETE
        self._publish(state, PlanApproved(issues=[i.to_dict() for i in plan.issues]))
        self._progress(state, f"Approved {len(plan.issues)} issues")
        self._shutdown_terminal(active.terminal, delay=KILL_DELAY_SECONDS)
        logger.info("Plan for session %s approved with %d issues", session_id, len(plan.issues))
        return list(plan.issues)

    def cancel_planning(self, session_id: str) -> None:
        """Stop the planning terminal and forget the session. Unknown ids are ignored."""
        active = self._sessions.pop(session_id, None)
        if active is None:
            return
        self._shutdown_terminal(active.terminal, delay=0)
        self._publish(active.state, PlanningProgress(
            phase=active.state.phase.value, message="Planning cancelled",
        ))
        logger.info("Planning session %s cancelled", session_id)

    def send_input(self, session_id: str, text: str) -> None:
        """Write raw *text* to the planning terminal."""
        self._require(session_id).terminal.write(text)

    def get_session(self, session_id: str) -> PlanningSession | None:
        active = self._sessions.get(session_id)
        return active.state if active is not None else None

    def get_session_by_project(self, project_id: str) -> PlanningSession | None:
        for active in self._sessions.values():
            if active.state.project_id == project_id:
                return active.state
        return None

    def get_terminal(self, session_id: str) -> TerminalSession:
        return self._require(session_id).terminal

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            self.cancel_planning(session_id)
        if self._kill_tasks:
            await asyncio.gather(*self._kill_tasks, return_exceptions=True)

    # ── Terminal callbacks ──

    def _on_output(self, active: _ActivePlanning, data: str) -> None:
        self._publish(active.state, PlanningOutput(output=data))
        text = active.stripper.feed(data)
        if not text:
            return
        for record in active.parser.feed(text):
            self._handle_record(active, record)

    def _on_terminal_exit(self, active: _ActivePlanning, code: int | None) -> None:
        state = active.state
        logger.info("Planning terminal for %s exited (code %s)", state.id, code)
        for record in active.parser.feed(active.stripper.flush()) + active.parser.flush():
            self._handle_record(active, record)
        if state.phase in (PlanningPhase.COMPLETE, PlanningPhase.ERROR):
            return
        if self._sessions.get(state.id) is not active:
            return
        state.phase = PlanningPhase.ERROR
        self._publish(state, PlanningFailed(error="Planning session terminated unexpectedly"))

    def _handle_record(self, active: _ActivePlanning, record: SentinelRecord) -> None:
        state = active.state
        if state.phase in (PlanningPhase.COMPLETE, PlanningPhase.ERROR):
            return
        if record.kind == QUESTION_SPEC.kind:
            self._on_question(active, record.payload)
        elif record.kind == PLAN_SPEC.kind:
            self._on_plan(active, record.payload)

    def _on_question(self, active: _ActivePlanning, payload: dict[str, Any]) -> None:
        state = active.state
        try:
            question = PlanningQuestion.from_dict(payload)
        except ValueError as exc:
            logger.warning("Ignoring malformed question in %s: %s", state.id, exc)
            self._release_questions(active)
            return
        if any(q.id == question.id for q in state.questions):
            logger.debug("Question %s repeated in %s, ignoring", question.id, state.id)
            if question.id in state.answers:
                self._release_questions(active)
            return
        state.questions.append(question)
        state.phase = PlanningPhase.GATHERING
        self._publish(state, PlanningQuestionAsked(question=question.to_dict()))
        self._progress(state, "Waiting for your answer")

    def _on_plan(self, active: _ActivePlanning, payload: dict[str, Any]) -> None:
        state = active.state
        try:
            plan = GeneratedPlan.from_dict(payload)
        except ValueError as exc:
            logger.warning("Malformed plan in %s: %s", state.id, exc)
            self._publish(state, PlanningFailed(error=f"Failed to parse plan: {exc}"))
            return
        state.generated_plan = plan
        state.phase = PlanningPhase.REVIEW
        self._publish(state, PlanReady(
            plan=plan.summary,
            issues=[i.to_dict() for i in plan.issues],
            risks=list(plan.risks),
            estimated_complexity=plan.estimated_complexity,
        ))
        self._progress(state, "Plan ready for review")
        logger.info("Plan ready for %s (%d issues)", state.id, len(plan.issues))

    # ── Helpers ──

    def _release_questions(self, active: _ActivePlanning) -> None:
        for record in active.parser.resolve(QUESTION_SPEC.kind):
            self._handle_record(active, record)

    def _require(self, session_id: str) -> _ActivePlanning:
        active = self._sessions.get(session_id)
        if active is None:
            raise NotFoundError("Planning session", session_id)
        return active

    def _shutdown_terminal(self, terminal: TerminalSession, delay: float) -> None:
        terminal.write(CTRL_C)

        async def _kill() -> None:
            if delay:
                await asyncio.sleep(delay)
            await terminal.kill()

        task = asyncio.create_task(_kill(), name=f"kill-{terminal.name}")
        self._kill_tasks.add(task)
        task.add_done_callback(self._kill_done)

    def _kill_done(self, task: asyncio.Task) -> None:
        self._kill_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Killing planning terminal failed: %s", task.exception())

    def _progress(self, state: PlanningSession, message: str) -> None:
        self._publish(state, PlanningProgress(phase=state.phase.value, message=message))

    def _publish(self, state: PlanningSession, event: PlanningEvent) -> None:
        event.project_id = state.project_id
        event.session_id = state.id
        try:
            self._broadcaster.publish_many(
                [state.project_id, planning_key(state.id)], event,
            )
        except Exception:
            logger.exception("Publishing %s for %s failed", event.event_type, state.id)
