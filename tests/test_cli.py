"""Command-line entry point."""

from __future__ import annotations

import json
import sys
from unittest.mock import AsyncMock, patch

import pytest

from remotectl.cli import _build_parser, _resolve_task, _run_once, main
from remotectl.engine.config import EngineConfig
from remotectl.engine.errors import SpawnFailureError
from remotectl.engine.models import OrchestrationStatus
from remotectl.engine.orchestrator import RunConfig
from remotectl.engine.providers.cli_runner import CliRunner
from remotectl.engine.yaml_config import RemoteConfig


class TestResolveTask:
    def test_inline(self):
        assert _resolve_task("do it", None) == "do it"

    def test_from_file(self, tmp_path):
        f = tmp_path / "task.md"
        f.write_text("  Add a health endpoint\n\n")
        assert _resolve_task(None, str(f)) == "Add a health endpoint"

    def test_both_is_an_error(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as excinfo:
            _resolve_task("x", str(tmp_path / "t.md"))
        assert excinfo.value.code == 1
        assert "not both" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        with pytest.raises(SystemExit):
            _resolve_task(None, str(tmp_path / "nope.md"))
        assert "not found" in capsys.readouterr().err

    def test_neither(self):
        with pytest.raises(SystemExit):
            _resolve_task(None, None)


def test_parser_run_options():
    args = _build_parser().parse_args(
        ["-v", "run", "hello", "--project", "api", "--runner", "sdk", "--max-turns", "5"]
    )
    assert args.verbose is True
    assert args.command == "run"
    assert (args.task, args.project, args.runner, args.max_turns) == ("hello", "api", "sdk", 5)


def test_parser_run_requires_project():
    with pytest.raises(SystemExit):
        _build_parser().parse_args(["run", "hello"])


def test_parser_serve():
    args = _build_parser().parse_args(["serve", "--port", "9000"])
    assert args.command == "serve"
    assert args.port == 9000
    assert args.host is None


@pytest.mark.parametrize("status,code", [
    (OrchestrationStatus.COMPLETED, 0),
    (OrchestrationStatus.FAILED, 1),
    (OrchestrationStatus.CANCELLED, 1),
])
def test_main_exit_code_follows_status(status, code):
    with patch("remotectl.cli._run_once", new=AsyncMock(return_value=status)):
        with pytest.raises(SystemExit) as excinfo:
            main(["run", "task", "--project", "api"])
    assert excinfo.value.code == code


def test_main_spawn_failure_exits_2(capsys):
    failure = AsyncMock(side_effect=SpawnFailureError("claude", "not found"))
    with patch("remotectl.cli._run_once", new=failure):
        with pytest.raises(SystemExit) as excinfo:
            main(["run", "task", "--project", "api"])
    assert excinfo.value.code == 2
    assert "Failed to spawn claude" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_run_once_prints_events_as_json_lines(tmp_path, capsys):
    lines = [
        json.dumps({"type": "system", "subtype": "init", "session_id": "abc"}),
        json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "done"}]}}),
        json.dumps({"type": "result", "is_error": False, "total_cost_usd": 0.1}),
    ]
    body = "\n".join(f"print({line!r}, flush=True)" for line in lines)
    argv = [sys.executable, "-c", body]
    remote = RemoteConfig(engine=EngineConfig(state_dir=str(tmp_path / "state")))

    with patch.object(CliRunner, "_build_argv", return_value=argv):
        status = await _run_once(remote, "task", RunConfig(project="api", cwd=str(tmp_path)))

    assert status is OrchestrationStatus.COMPLETED
    printed = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    types = [p["type"] for p in printed]
    assert types[-1] == "completed"
    assert "message" in types
    assert printed[-1]["totalCostUsd"] == pytest.approx(0.1)
    assert list((tmp_path / "state" / "orchestrations").glob("*.json"))
