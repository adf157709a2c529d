"""Environment and YAML configuration."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from remotectl.engine.config import DEFAULT_ALLOWED_TOOLS, EngineConfig
from remotectl.engine.subagents import ORCHESTRATOR_SYSTEM_PROMPT
from remotectl.engine.yaml_config import load_yaml_config


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("REMOTECTL_"):
            monkeypatch.delenv(key)
    return monkeypatch


def test_defaults(clean_env):
    config = EngineConfig.from_env()
    assert config.runner == "cli"
    assert config.claude_command == "claude"
    assert config.port == 4678
    assert config.allowed_tools == DEFAULT_ALLOWED_TOOLS
    assert config.state_dir.endswith(".remotectl")


def test_env_overrides(clean_env):
    clean_env.setenv("REMOTECTL_RUNNER", "SDK")
    clean_env.setenv("REMOTECTL_MAX_TURNS", "12")
    clean_env.setenv("REMOTECTL_SETTLE_DELAY", "1.5")
    clean_env.setenv("REMOTECTL_ALLOWED_TOOLS", "Read, Task,,")
    clean_env.setenv("REMOTECTL_STATE_DIR", "/var/lib/remotectl")
    config = EngineConfig.from_env()
    assert config.runner == "sdk"
    assert config.max_turns == 12
    assert config.settle_delay_seconds == 1.5
    assert config.allowed_tools == ["Read", "Task"]
    assert config.state_dir == "/var/lib/remotectl"


def test_unknown_runner_falls_back_to_cli(clean_env):
    clean_env.setenv("REMOTECTL_RUNNER", "docker")
    assert EngineConfig.from_env().runner == "cli"


def test_allowed_tools_are_not_shared_between_instances():
    a, b = EngineConfig(), EngineConfig()
    a.allowed_tools.append("WebFetch")
    assert "WebFetch" not in b.allowed_tools


def test_project_path_expands_home(monkeypatch):
    monkeypatch.setenv("HOME", "/home/me")
    assert EngineConfig().project_path("api") == Path("/home/me/Dev/api")
    assert EngineConfig(projects_base_path="/srv").project_path("api") == Path("/srv/api")


def test_yaml_overrides_engine_and_agents(tmp_path):
    path = tmp_path / "remotectl.yaml"
    path.write_text(
        "engine:\n"
        "  runner: sdk\n"
        "  max_turns: 50\n"
        "  settle_delay_seconds: 3\n"
        "  allowed_tools: [Read, Task]\n"
        "  bogus: 1\n"
        "system_prompt: Coordinate carefully.\n"
        "agents:\n"
        "  docs-agent:\n"
        "    description: Writes documentation\n"
        "    prompt: You write clear docs.\n"
        "    tools: [Read, Write]\n"
        "    model: haiku\n"
        "  broken-agent:\n"
        "    description: Missing its prompt\n"
    )
    remote = load_yaml_config(path, base=EngineConfig())
    assert remote.engine.runner == "sdk"
    assert remote.engine.max_turns == 50
    assert remote.engine.settle_delay_seconds == 3.0
    assert remote.engine.allowed_tools == ["Read", "Task"]
    assert not hasattr(remote.engine, "bogus")
    assert remote.system_prompt == "Coordinate carefully."
    assert [a.name for a in remote.subagents] == ["docs-agent"]
    assert remote.subagents[0].tools == ["Read", "Write"]
    assert remote.subagents[0].model == "haiku"


def test_yaml_without_agents_keeps_defaults(tmp_path):
    path = tmp_path / "remotectl.yaml"
    path.write_text("engine:\n  port: 9000\n")
    remote = load_yaml_config(path, base=EngineConfig())
    assert remote.engine.port == 9000
    assert "code-agent" in [a.name for a in remote.subagents]
    assert remote.system_prompt == ORCHESTRATOR_SYSTEM_PROMPT


def test_yaml_list_field_type_mismatch_is_ignored(tmp_path):
    path = tmp_path / "remotectl.yaml"
    path.write_text("engine:\n  allowed_tools: Read\n")
    remote = load_yaml_config(path, base=EngineConfig())
    assert remote.engine.allowed_tools == DEFAULT_ALLOWED_TOOLS


def test_yaml_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")


def test_yaml_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ValueError):
        load_yaml_config(path, base=EngineConfig())
