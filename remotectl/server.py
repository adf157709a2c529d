"""HTTP + WebSocket server for remote control.

Exposes orchestration and planning over a small REST API, fans
engine and planner events out to subscriber WebSockets, and relays
terminal sessions over a second WebSocket.

Usage:
    remotectl serve [--host HOST] [--port PORT]

Routes:
    GET  /health
    GET  /orchestrations?project=P
    POST /orchestrations                      {"task", "project", "runner"?, "cwd"?}
    GET  /orchestrations/{id}
    POST /orchestrations/{id}/messages        {"message"}
    POST /orchestrations/{id}/cancel
    POST /projects/{project_id}/planning      {"projectName"?, "description"?, "trustMode"?, "path"?}
    GET  /planning/{id}
    POST /planning/{id}/answers               {"questionId", "answer"}
    POST /planning/{id}/approve
    POST /planning/{id}/cancel
    POST /planning/{id}/input                 {"data"}
    GET  /ws/events?project=P&orchestration=O&planning=S
    GET  /ws/terminal?project=P&session=NAME&cols=C&rows=R
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
import time
import uuid
from typing import Any

from aiohttp import WSMsgType, web

from .adapters.broadcaster import (
    EventBroadcaster,
    QueueChannel,
    orchestration_key,
    planning_key,
)
from .engine.config import EngineConfig
from .engine.errors import (
    NotFoundError,
    NotResumableError,
    PlanningError,
    ProcessAlreadyActiveError,
    RemoteControlError,
    SpawnFailureError,
)
from .engine.orchestrator import OrchestrationEngine, RunConfig
from .engine.store import JsonFileStore
from .engine.yaml_config import RemoteConfig
from .planning.planner import PlannerService
from .terminal.registry import SessionRegistry
from .terminal.session import SessionOptions, TerminalSession

logger = logging.getLogger(__name__)

_TERMINAL_QUEUE_SIZE = 5000


def _error_status(exc: RemoteControlError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (NotResumableError, ProcessAlreadyActiveError, PlanningError)):
        return 409
    return 500


def _error_response(exc: RemoteControlError) -> web.Response:
    return web.json_response({"error": str(exc)}, status=_error_status(exc))


async def _read_json(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Body must be JSON"}),
            content_type="application/json",
        )
    return body if isinstance(body, dict) else {}


class RemoteControlServer:
    """HTTP routing and WebSocket fan-out.

    Orchestration state lives in the OrchestrationEngine, planning
    state in the PlannerService and terminal sessions in the
    SessionRegistry; this class only translates requests.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        engine: OrchestrationEngine | None = None,
        planner: PlannerService | None = None,
        registry: SessionRegistry | None = None,
        broadcaster: EventBroadcaster | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        if broadcaster is None:
            broadcaster = engine.broadcaster if engine is not None else EventBroadcaster()
        self._broadcaster = broadcaster
        self._registry = registry or SessionRegistry()
        self._engine = engine or OrchestrationEngine(
            self._config,
            store=JsonFileStore(self._config.state_dir),
            broadcaster=broadcaster,
        )
        self._planner = planner or PlannerService(self._config, broadcaster)
        self._host = self._config.host
        self._port = self._config.port
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except RemoteControlError as exc:
            logger.info("HTTP %s %s req=%s error=%s", request.method, request.path_qs, req_id, exc)
            return _error_response(exc)
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/orchestrations", self._handle_list_orchestrations)
        r.add_post("/orchestrations", self._handle_create_orchestration)
        r.add_get("/orchestrations/{id}", self._handle_get_orchestration)
        r.add_post("/orchestrations/{id}/messages", self._handle_send_message)
        r.add_post("/orchestrations/{id}/cancel", self._handle_cancel_orchestration)

        r.add_post("/projects/{project_id}/planning", self._handle_start_planning)
        r.add_get("/planning/{id}", self._handle_get_planning)
        r.add_post("/planning/{id}/answers", self._handle_answer_question)
        r.add_post("/planning/{id}/approve", self._handle_approve_plan)
        r.add_post("/planning/{id}/cancel", self._handle_cancel_planning)
        r.add_post("/planning/{id}/input", self._handle_planning_input)

        r.add_get("/ws/events", self._handle_events_ws)
        r.add_get("/ws/terminal", self._handle_terminal_ws)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then shut everything down."""
        recovered = self._engine.recover_interrupted()
        if recovered:
            logger.info("Marked %d interrupted orchestrations failed", len(recovered))
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is not None:
            self._port = actual_port
        sys.stdout.write(json.dumps({"port": self._port}) + "\n")
        sys.stdout.flush()
        logger.info("remotectl server listening on %s:%d", self._host, self._port)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.shutdown()
            await runner.cleanup()

    async def shutdown(self) -> None:
        await self._planner.shutdown()
        await self._engine.shutdown()
        self._registry.detach_all()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Orchestrations ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "runner": self._config.runner,
            "sessions": self._registry.names(),
        })

    async def _handle_list_orchestrations(self, request: web.Request) -> web.Response:
        project = request.query.get("project") or None
        return web.json_response({
            "orchestrations": [o.to_dict() for o in self._engine.list(project)],
        })

    async def _handle_create_orchestration(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        task = body.get("task")
        project = body.get("project")
        if not task or not isinstance(task, str):
            return web.json_response({"error": "task is required"}, status=400)
        if not project or not isinstance(project, str):
            return web.json_response({"error": "project is required"}, status=400)
        run_config = RunConfig(
            project=project,
            cwd=body.get("cwd") or None,
            runner=body.get("runner") or None,
        )
        try:
            orchestration_id = await self._engine.run(task, run_config)
        except SpawnFailureError as exc:
            return _error_response(exc)
        logger.info("Orchestration %s started for project %s", orchestration_id, project)
        return web.json_response({"id": orchestration_id, "status": "executing"})

    async def _handle_get_orchestration(self, request: web.Request) -> web.Response:
        orchestration_id = request.match_info["id"]
        orch = self._engine.get_orchestration(orchestration_id)
        return web.json_response({
            "orchestration": orch.to_dict(),
            "active": self._engine.is_active(orchestration_id),
            "messages": [m.to_dict() for m in self._engine.list_messages(orchestration_id)],
            "subtasks": [s.to_dict() for s in self._engine.list_subtasks(orchestration_id)],
        })

    async def _handle_send_message(self, request: web.Request) -> web.Response:
        orchestration_id = request.match_info["id"]
        body = await _read_json(request)
        message = body.get("message")
        if not message or not isinstance(message, str):
            return web.json_response({"error": "message is required"}, status=400)
        await self._engine.resume(orchestration_id, message)
        return web.json_response({"id": orchestration_id, "status": "executing"})

    async def _handle_cancel_orchestration(self, request: web.Request) -> web.Response:
        orchestration_id = request.match_info["id"]
        cancelled = self._engine.cancel(orchestration_id)
        return web.json_response({
            "cancelled": cancelled,
            "status": self._engine.get_orchestration(orchestration_id).status.value,
        })

    # ── Planning ──

    async def _handle_start_planning(self, request: web.Request) -> web.Response:
        project_id = request.match_info["project_id"]
        body = await _read_json(request)
        project_name = body.get("projectName") or project_id
        path = body.get("path") or str(self._config.project_path(project_name))
        session_id = await self._planner.start_planning(
            project_id,
            project_name,
            path,
            description=body.get("description"),
            trust_mode=bool(body.get("trustMode", False)),
        )
        return web.json_response({"sessionId": session_id})

    async def _handle_get_planning(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        state = self._planner.get_session(session_id)
        if state is None:
            raise NotFoundError("Planning session", session_id)
        return web.json_response(state.to_dict())

    async def _handle_answer_question(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        body = await _read_json(request)
        question_id = body.get("questionId")
        answer = body.get("answer")
        if not question_id or not isinstance(answer, str):
            return web.json_response({"error": "questionId and answer are required"}, status=400)
        self._planner.answer_question(session_id, str(question_id), answer)
        return web.json_response({"status": "answered"})

    async def _handle_approve_plan(self, request: web.Request) -> web.Response:
        issues = self._planner.approve_plan(request.match_info["id"])
        return web.json_response({"issues": [i.to_dict() for i in issues]})

    async def _handle_cancel_planning(self, request: web.Request) -> web.Response:
        self._planner.cancel_planning(request.match_info["id"])
        return web.json_response({"status": "cancelled"})

    async def _handle_planning_input(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        data = body.get("data")
        if not isinstance(data, str):
            return web.json_response({"error": "data is required"}, status=400)
        self._planner.send_input(request.match_info["id"], data)
        return web.json_response({"status": "sent"})

    # ── Event subscribers ──

    async def _handle_events_ws(self, request: web.Request) -> web.WebSocketResponse:
        keys = [request.query["project"]] if request.query.get("project") else []
        if request.query.get("orchestration"):
            keys.append(orchestration_key(request.query["orchestration"]))
        if request.query.get("planning"):
            keys.append(planning_key(request.query["planning"]))
        if not keys:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "project, orchestration or planning is required"}),
                content_type="application/json",
            )

        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        channel = QueueChannel()
        for key in keys:
            self._broadcaster.subscribe(key, channel)
        logger.info("Event subscriber connected req=%s keys=%s", request.get("req_id", "-"), keys)

        pump = asyncio.create_task(self._pump_events(ws, channel))
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT and msg.data == "ping":
                    await ws.send_str("pong")
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Event socket error: %s", ws.exception())
        finally:
            channel.close()
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            logger.info("Event subscriber disconnected req=%s", request.get("req_id", "-"))
        return ws

    async def _pump_events(self, ws: web.WebSocketResponse, channel: QueueChannel) -> None:
        async for payload in channel.consume():
            if ws.closed:
                break
            try:
                await ws.send_json(payload)
            except ConnectionResetError:
                break

    # ── Terminal relay ──

    async def _handle_terminal_ws(self, request: web.Request) -> web.WebSocketResponse:
        project = request.query.get("project")
        if not project:
            raise web.HTTPBadRequest(
                text=json.dumps({"error": "project is required"}),
                content_type="application/json",
            )
        name = request.query.get("session") or f"{project}--{uuid.uuid4().hex[:6]}"
        options = SessionOptions(
            project_name=project,
            cols=int(request.query.get("cols") or self._config.terminal_cols),
            rows=int(request.query.get("rows") or self._config.terminal_rows),
            settle_delay=self._config.settle_delay_seconds,
            history_lines=self._config.history_lines,
            tmux_command=self._config.tmux_command,
        )

        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)
        try:
            session = await self._registry.open(
                str(self._config.project_path(project)), name, options,
            )
        except RemoteControlError as exc:
            await ws.send_json({"type": "error", "error": str(exc)})
            await ws.close()
            return ws

        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=_TERMINAL_QUEUE_SIZE)

        def _on_data(data: str) -> None:
            try:
                queue.put_nowait(data)
            except asyncio.QueueFull:
                logger.warning("Terminal queue full for %s, dropping output", name)

        def _on_exit(_code: int | None) -> None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass

        await ws.send_json({
            "type": "session",
            "name": name,
            "existing": session.is_existing_session(),
        })
        def _on_ready() -> None:
            _on_ready_notice(queue)

        await self._replay(ws, session)
        session.on_data(_on_data)
        session.on_exit(_on_exit)
        session.on_ready(_on_ready)
        pump = asyncio.create_task(self._pump_terminal(ws, queue))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_terminal_message(ws, session, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    session.write(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("Terminal socket error for %s: %s", name, ws.exception())
        finally:
            session.off_data(_on_data)
            session.off_exit(_on_exit)
            session.off_ready(_on_ready)
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            logger.info("Terminal subscriber for %s disconnected", name)
        return ws

    async def _replay(self, ws: web.WebSocketResponse, session: TerminalSession) -> None:
        if session.is_existing_session():
            history = await session.capture_history()
        else:
            history = session.backlog()
        if history:
            await ws.send_json({"type": "history", "data": history})

    async def _handle_terminal_message(
        self, ws: web.WebSocketResponse, session: TerminalSession, raw: str,
    ) -> None:
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            session.write(raw)
            return
        if not isinstance(msg, dict):
            return
        kind = msg.get("type")
        if kind == "input":
            session.write(str(msg.get("data", "")))
        elif kind == "resize":
            try:
                session.resize(int(msg["cols"]), int(msg["rows"]))
            except (KeyError, TypeError, ValueError):
                logger.debug("Bad resize message for %s: %r", session.name, msg)
        elif kind == "detach":
            session.detach()
        elif kind == "request-history":
            history = await session.capture_history(_history_lines(msg.get("lines")))
            await ws.send_json({"type": "history", "data": history})
        elif kind == "ping":
            await ws.send_json({"type": "pong"})
        else:
            logger.debug("Unknown terminal message type %r", kind)

    async def _pump_terminal(self, ws: web.WebSocketResponse, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            if ws.closed:
                return
            if item is None:
                await ws.send_json({"type": "exit"})
                await ws.close()
                return
            if isinstance(item, dict):
                await ws.send_json(item)
            else:
                await ws.send_json({"type": "output", "data": item})


def _history_lines(value: Any) -> int | None:
    """Client-supplied scrollback size; None (the default) when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        lines = int(value)
    except (TypeError, ValueError):
        return None
    return lines if lines > 0 else None


def _on_ready_notice(queue: asyncio.Queue) -> None:
    try:
        queue.put_nowait({"type": "ready"})
    except asyncio.QueueFull:
        pass


async def run_server(remote: RemoteConfig) -> None:
    """Build the engine from *remote* and serve until cancelled."""
    config = remote.engine
    broadcaster = EventBroadcaster()
    engine = OrchestrationEngine(
        config,
        store=JsonFileStore(config.state_dir),
        broadcaster=broadcaster,
        subagents=remote.subagents,
        system_prompt=remote.system_prompt,
    )
    server = RemoteControlServer(config, engine=engine, broadcaster=broadcaster)
    await server.start()
