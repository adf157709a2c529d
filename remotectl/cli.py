"""CLI entry point.

Usage:
    remotectl run "Add a health endpoint" --project api
    remotectl run --task-file tasks/feature.md --project api --runner sdk
    remotectl serve --port 4678
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .adapters.broadcaster import EventBroadcaster, QueueChannel
from .engine.config import EngineConfig
from .engine.errors import SpawnFailureError
from .engine.models import OrchestrationStatus
from .engine.orchestrator import OrchestrationEngine, RunConfig
from .engine.store import JsonFileStore
from .engine.yaml_config import RemoteConfig, load_yaml_config

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remotectl",
        description="Remote control for Claude Code sessions and orchestrations",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (engine settings and sub-agents)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one orchestration and stream its events")
    run.add_argument("task", nargs="?", default=None, help="The task (inline string)")
    run.add_argument(
        "--task-file", "-f",
        default=None,
        help="Read task from a file (.md, .txt, etc.)",
    )
    run.add_argument("--project", "-p", required=True, help="Project name")
    run.add_argument(
        "--cwd",
        default=None,
        help="Working directory (default: <projects_base_path>/<project>)",
    )
    run.add_argument(
        "--runner",
        choices=["cli", "sdk"],
        default=None,
        help="Process runner (default: from config)",
    )
    run.add_argument("--max-turns", type=int, default=None)

    serve = sub.add_parser("serve", help="Start the HTTP/WebSocket server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    remote = _load_config(args.config)

    if args.command == "serve":
        from .server import run_server

        if args.host is not None:
            remote.engine.host = args.host
        if args.port is not None:
            remote.engine.port = args.port
        try:
            asyncio.run(run_server(remote))
        except KeyboardInterrupt:
            pass
        return

    task = _resolve_task(args.task, args.task_file)
    if args.runner is not None:
        remote.engine.runner = args.runner
    run_config = RunConfig(
        project=args.project,
        cwd=args.cwd,
        max_turns=args.max_turns,
    )
    try:
        status = asyncio.run(_run_once(remote, task, run_config))
    except SpawnFailureError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    sys.exit(0 if status is OrchestrationStatus.COMPLETED else 1)


def _load_config(path: str | None) -> RemoteConfig:
    if path:
        return load_yaml_config(path)
    return RemoteConfig(engine=EngineConfig.from_env())


async def _run_once(
    remote: RemoteConfig, task: str, run_config: RunConfig,
) -> OrchestrationStatus:
    """Run *task* to completion, printing each event as a JSON line."""
    broadcaster = EventBroadcaster()
    engine = OrchestrationEngine(
        remote.engine,
        store=JsonFileStore(remote.engine.state_dir),
        broadcaster=broadcaster,
        subagents=remote.subagents,
        system_prompt=remote.system_prompt,
    )
    channel = QueueChannel(maxsize=10000)
    # Subscribed by project so events emitted before run() returns are seen.
    broadcaster.subscribe(run_config.project, channel)
    orchestration_id: str | None = None

    async def _print_events() -> None:
        async for payload in channel.consume():
            if orchestration_id and payload.get("orchestrationId") not in (None, orchestration_id):
                continue
            sys.stdout.write(json.dumps(payload) + "\n")
            sys.stdout.flush()

    printer = asyncio.create_task(_print_events())
    try:
        orchestration_id = await engine.run(task, run_config)
        orch = await engine.wait(orchestration_id)
    except asyncio.CancelledError:
        await engine.shutdown()
        raise
    finally:
        channel.close()
        await printer
    logger.info(
        "Orchestration %s finished: %s (cost $%.4f)",
        orch.id, orch.status.value, orch.total_cost_usd,
    )
    return orch.status


def _resolve_task(inline: str | None, file_path: str | None) -> str:
    """Get task from inline arg or file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a task string or --task-file, not both.", file=sys.stderr)
        sys.exit(1)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Task file not found: {file_path}", file=sys.stderr)
            sys.exit(1)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a task string or --task-file.", file=sys.stderr)
    sys.exit(1)


if __name__ == "__main__":
    main()
