"""Orchestration engine.

Starts one external task-execution process per run, applies its
stream events to the orchestration record, the transcript and the
subtask registry, and publishes every state change through the
event broadcaster.

Usage:
    engine = OrchestrationEngine(config, store=JsonFileStore(config.state_dir))
    oid = await engine.run("Add a health endpoint", RunConfig(project="api"))
    await engine.wait(oid)

Each run is driven by its own asyncio task. Runs are numbered per
orchestration; when a run is cancelled or superseded its number is
retired and any events it still produces are dropped. Once an
orchestration is terminal, events for it are ignored until
``resume`` reopens it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from ..adapters.broadcaster import EventBroadcaster, orchestration_key
from ..adapters.events import (
    MessageEvent,
    OrchestrationCompleted,
    OrchestrationError,
    RemoteEvent,
    StatusChange,
    SubtaskCompleted,
    SubtaskStarted,
)
from .config import EngineConfig
from .errors import (
    AbnormalExitError,
    NotFoundError,
    NotResumableError,
    ProcessAlreadyActiveError,
    SpawnFailureError,
)
from .lifecycle import (
    can_transition_subtask,
    reopen_status,
    validate_subtask_transition,
    validate_transition,
)
from .models import (
    MessageRole,
    Orchestration,
    OrchestrationMessage,
    OrchestrationStatus,
    Subtask,
    SubtaskStatus,
    _make_id,
    _now_ms,
)
from .providers import RunningTask, RunRequest, TaskRunner, build_runners
from .store import InMemoryStore, OrchestrationStore
from .stream_events import (
    AssistantText,
    InitEvent,
    ResultEvent,
    StreamEvent,
    TaskResult,
    TaskStarted,
)
from .subagents import ORCHESTRATOR_SYSTEM_PROMPT, SubagentDefinition, default_subagents

logger = logging.getLogger(__name__)

_NAME_LIMIT = 100


@dataclass
class RunConfig:
    """Per-call options for ``run`` and ``resume``.

    Unset values fall back to the engine's EngineConfig.
    """
    project: str
    cwd: str | None = None
    runner: str | None = None
    system_prompt: str | None = None
    max_turns: int | None = None
    permission_mode: str | None = None
    allowed_tools: list[str] | None = None
    subagents: list[SubagentDefinition] | None = None


@dataclass
class _ActiveRun:
    generation: int
    running: RunningTask
    runner: str
    started_at: int = field(default_factory=_now_ms)


class OrchestrationEngine:
    """Runs, resumes and cancels orchestrations."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        store: OrchestrationStore | None = None,
        broadcaster: EventBroadcaster | None = None,
        runners: dict[str, TaskRunner] | None = None,
        subagents: list[SubagentDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._store = store if store is not None else InMemoryStore()
        self._broadcaster = broadcaster if broadcaster is not None else EventBroadcaster()
        self._runners = runners if runners is not None else build_runners(
            self._config.claude_command
        )
        self._subagents = subagents if subagents is not None else default_subagents()
        self._system_prompt = (
            system_prompt if system_prompt is not None else ORCHESTRATOR_SYSTEM_PROMPT
        )
        self._active: dict[str, _ActiveRun] = {}
        self._starting: set[str] = set()
        self._generations: dict[str, int] = {}
        self._drivers: dict[str, asyncio.Task] = {}

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def broadcaster(self) -> EventBroadcaster:
        return self._broadcaster

    # ── Public operations ──

    async def run(self, task: str, config: RunConfig) -> str:
        """Create an orchestration for *task* and start it.

        Returns the orchestration id without waiting for the run to
        finish. Raises SpawnFailureError if the process cannot start;
        the orchestration is then already marked failed.
        """
        orch = Orchestration(
            project=config.project,
            name=task[:_NAME_LIMIT],
            original_task=task,
        )
        self._store.create(orch)
        logger.info("Orchestration %s created for project %s", orch.id, orch.project)
        self._add_message(orch, MessageRole.USER, task)
        self._transition(orch, OrchestrationStatus.EXECUTING)
        await self._start(orch, task, None, config)
        return orch.id

    async def resume(
        self, orchestration_id: str, message: str, config: RunConfig | None = None,
    ) -> None:
        """Send a follow-up *message* by resuming the recorded session."""
        orch = self._require(orchestration_id)
        if not orch.session_id:
            raise NotResumableError(orchestration_id)
        if self.is_active(orchestration_id):
            raise ProcessAlreadyActiveError(orchestration_id)

        self._add_message(orch, MessageRole.USER, message)
        reopened = reopen_status(orch.status)
        if reopened != orch.status:
            orch.status = reopened
            orch.completed_at = None
            orch.error = None
            self._store.update(orch)
            self._publish(orch, StatusChange(status=reopened.value))
        logger.info("Resuming orchestration %s (session %s)", orch.id, orch.session_id)
        await self._start(
            orch, message, orch.session_id, config or RunConfig(project=orch.project),
        )

    def cancel(self, orchestration_id: str) -> bool:
        """Signal the active process and mark the orchestration cancelled.

        Returns False without side effects when nothing is running or
        the orchestration is already terminal.
        """
        orch = self._require(orchestration_id)
        if orch.is_terminal:
            return False
        active = self._active.pop(orchestration_id, None)
        if active is None:
            return False
        self._retire(orchestration_id)
        active.running.cancel()
        self._transition(orch, OrchestrationStatus.CANCELLED)
        logger.info("Orchestration %s cancelled", orchestration_id)
        return True

    def recover_interrupted(self) -> list[str]:
        """Fail stored records left planning or executing by an earlier process.

        Their runs died with that process, so nothing else would move
        them to a terminal status. Call once, before serving, from the
        process that owns the store. Returns the ids that were failed.
        """
        recovered: list[str] = []
        for orch in self._store.list():
            if orch.is_terminal or self.is_active(orch.id):
                continue
            logger.warning(
                "Orchestration %s was left %s with no process; marking failed",
                orch.id, orch.status.value,
            )
            self._fail(orch, str(AbnormalExitError(None)))
            recovered.append(orch.id)
        return recovered

    def is_active(self, orchestration_id: str) -> bool:
        return orchestration_id in self._active or orchestration_id in self._starting

    def get_orchestration(self, orchestration_id: str) -> Orchestration:
        return self._require(orchestration_id)

    def list_messages(self, orchestration_id: str) -> list[OrchestrationMessage]:
        self._require(orchestration_id)
        return self._store.messages(orchestration_id)

    def list_subtasks(self, orchestration_id: str) -> list[Subtask]:
        self._require(orchestration_id)
        return self._store.subtasks(orchestration_id)

    def list(self, project: str | None = None) -> list[Orchestration]:
        return self._store.list(project)

    async def wait(self, orchestration_id: str) -> Orchestration:
        """Wait for the current run's driver to finish."""
        driver = self._drivers.get(orchestration_id)
        if driver is not None and not driver.done():
            await asyncio.shield(driver)
        return self._require(orchestration_id)

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        """Cancel every active run and wait for the drivers to stop."""
        for orchestration_id in list(self._active):
            self.cancel(orchestration_id)
        drivers = [d for d in self._drivers.values() if not d.done()]
        if not drivers:
            return
        _, pending = await asyncio.wait(drivers, timeout=grace_seconds)
        for driver in pending:
            driver.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for runner in self._runners.values():
            await runner.shutdown()

    # ── Spawning ──

    def _build_request(
        self, prompt: str, resume_token: str | None, config: RunConfig,
    ) -> RunRequest:
        cfg = self._config
        cwd = config.cwd or str(cfg.project_path(config.project))
        return RunRequest(
            prompt=prompt,
            cwd=cwd,
            resume_token=resume_token,
            system_prompt=config.system_prompt or self._system_prompt,
            subagents=list(config.subagents if config.subagents is not None else self._subagents),
            allowed_tools=list(config.allowed_tools or cfg.allowed_tools),
            delegation_tools=list(cfg.delegation_tools),
            max_turns=config.max_turns or cfg.max_turns,
            permission_mode=config.permission_mode or cfg.permission_mode,
        )

    async def _start(
        self,
        orch: Orchestration,
        prompt: str,
        resume_token: str | None,
        config: RunConfig,
    ) -> None:
        runner_name = config.runner or self._config.runner
        runner = self._runners.get(runner_name)
        request = self._build_request(prompt, resume_token, config)

        self._starting.add(orch.id)
        try:
            if runner is None:
                raise SpawnFailureError(runner_name, "unknown runner")
            running = await runner.spawn(request)
        except SpawnFailureError as exc:
            logger.error("Orchestration %s failed to start: %s", orch.id, exc)
            self._fail(orch, str(exc))
            raise
        except Exception as exc:
            logger.exception("Orchestration %s failed to start", orch.id)
            error = SpawnFailureError(runner_name, str(exc) or type(exc).__name__)
            self._fail(orch, str(error))
            raise error from exc
        finally:
            self._starting.discard(orch.id)

        generation = self._generations.get(orch.id, 0) + 1
        self._generations[orch.id] = generation
        self._active[orch.id] = _ActiveRun(generation, running, runner_name)
        self._drivers[orch.id] = asyncio.create_task(
            self._drive(orch.id, generation, running),
            name=f"orchestration-{orch.id}-{generation}",
        )
        logger.debug(
            "Orchestration %s run %d started via %s", orch.id, generation, runner_name,
        )

    def _retire(self, orchestration_id: str) -> None:
        self._generations[orchestration_id] = self._generations.get(orchestration_id, 0) + 1

    def _is_current(self, orchestration_id: str, generation: int) -> bool:
        return self._generations.get(orchestration_id) == generation

    # ── Driver ──

    async def _drive(
        self, orchestration_id: str, generation: int, running: RunningTask,
    ) -> None:
        saw_result = False
        stream_error: str | None = None
        try:
            async for event in running.events():
                if not self._is_current(orchestration_id, generation):
                    continue
                if isinstance(event, ResultEvent):
                    saw_result = True
                self._apply(orchestration_id, event)
        except Exception as exc:
            logger.exception("Stream for orchestration %s failed", orchestration_id)
            stream_error = str(exc) or type(exc).__name__

        exit_code = await running.wait()
        self._on_exit(orchestration_id, generation, exit_code, saw_result, stream_error)

    def _on_exit(
        self,
        orchestration_id: str,
        generation: int,
        exit_code: int | None,
        saw_result: bool,
        stream_error: str | None,
    ) -> None:
        if not self._is_current(orchestration_id, generation):
            logger.debug(
                "Superseded run %d of %s exited (code %s)",
                generation, orchestration_id, exit_code,
            )
            return
        self._active.pop(orchestration_id, None)
        orch = self._store.get(orchestration_id)
        if orch is None or orch.is_terminal:
            return
        if stream_error is not None:
            self._fail(orch, stream_error)
        elif exit_code == 0 or saw_result:
            self._transition(orch, OrchestrationStatus.COMPLETED)
            self._publish(orch, OrchestrationCompleted(
                status=orch.status.value, total_cost_usd=orch.total_cost_usd,
            ))
        else:
            self._fail(orch, str(AbnormalExitError(exit_code)))
        logger.info(
            "Orchestration %s run %d exited (code %s) -> %s",
            orchestration_id, generation, exit_code, orch.status.value,
        )

    def _apply(self, orchestration_id: str, event: StreamEvent) -> None:
        orch = self._store.get(orchestration_id)
        if orch is None or orch.is_terminal:
            logger.debug("Ignoring %s for %s", type(event).__name__, orchestration_id)
            return

        if isinstance(event, InitEvent):
            orch.session_id = event.session_id
            self._store.update(orch)
            logger.debug("Orchestration %s session=%s", orch.id, event.session_id)

        elif isinstance(event, AssistantText):
            self._add_message(orch, MessageRole.ASSISTANT, event.text)

        elif isinstance(event, TaskStarted):
            self._start_subtask(orch, event)

        elif isinstance(event, TaskResult):
            self._finish_subtask(orch, event)

        elif isinstance(event, ResultEvent):
            orch.total_cost_usd += event.total_cost_usd
            if event.is_error:
                self._fail(orch, event.result or "Run reported an error")
            else:
                self._transition(orch, OrchestrationStatus.COMPLETED)
                self._publish(orch, OrchestrationCompleted(
                    status=orch.status.value, total_cost_usd=orch.total_cost_usd,
                ))

    def _start_subtask(self, orch: Orchestration, event: TaskStarted) -> None:
        subtask_id = event.tool_use_id or _make_id()
        if self._store.get_subtask(orch.id, subtask_id) is not None:
            logger.debug("Duplicate start for subtask %s ignored", subtask_id)
            return
        subtask = Subtask(
            orchestration_id=orch.id,
            id=subtask_id,
            name=event.description or event.agent_type,
            type=event.agent_type,
        )
        validate_subtask_transition(subtask.status, SubtaskStatus.RUNNING)
        subtask.status = SubtaskStatus.RUNNING
        subtask.started_at = _now_ms()
        self._store.save_subtask(subtask)
        self._publish(orch, SubtaskStarted(
            subtask_id=subtask.id,
            agent_type=subtask.type,
            agent_name=subtask.name,
        ))

    def _finish_subtask(self, orch: Orchestration, event: TaskResult) -> None:
        subtask = self._store.get_subtask(orch.id, event.tool_use_id)
        if subtask is None:
            return  # result for a tool that was not a delegation
        target = SubtaskStatus.FAILED if event.is_error else SubtaskStatus.COMPLETED
        if not can_transition_subtask(subtask.status, target):
            logger.debug(
                "Subtask %s already %s, ignoring %s",
                subtask.id, subtask.status.value, target.value,
            )
            return
        subtask.status = target
        subtask.completed_at = _now_ms()
        self._store.save_subtask(subtask)
        self._publish(orch, SubtaskCompleted(subtask_id=subtask.id, status=target.value))

    # ── State helpers ──

    def _require(self, orchestration_id: str) -> Orchestration:
        orch = self._store.get(orchestration_id)
        if orch is None:
            raise NotFoundError("Orchestration", orchestration_id)
        return orch

    def _add_message(self, orch: Orchestration, role: MessageRole, content: str) -> None:
        self._store.append_message(OrchestrationMessage(
            orchestration_id=orch.id, role=role, content=content,
        ))
        self._publish(orch, MessageEvent(role=role.value, content=content))

    def _transition(self, orch: Orchestration, target: OrchestrationStatus) -> None:
        validate_transition(orch.status, target)
        orch.status = target
        if orch.is_terminal:
            orch.completed_at = _now_ms()
        self._store.update(orch)
        self._publish(orch, StatusChange(status=target.value))

    def _fail(self, orch: Orchestration, error: str) -> None:
        orch.error = error
        self._transition(orch, OrchestrationStatus.FAILED)
        self._publish(orch, OrchestrationError(error=error))
        self._publish(orch, OrchestrationCompleted(
            status=orch.status.value, total_cost_usd=orch.total_cost_usd,
        ))

    def _publish(self, orch: Orchestration, event: RemoteEvent) -> None:
        event.project_id = orch.project
        if hasattr(event, "orchestration_id"):
            event.orchestration_id = orch.id
        try:
            self._broadcaster.publish_many(
                [orch.project, orchestration_key(orch.id)], event,
            )
        except Exception:
            logger.exception("Publishing %s for %s failed", event.event_type, orch.id)
