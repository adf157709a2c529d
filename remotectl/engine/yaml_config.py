"""YAML configuration loader.

Loads a single YAML file that overrides the env-derived engine
settings and the sub-agent roster. When no YAML is provided,
``EngineConfig.from_env()`` and the default roster are used.

Example YAML:
    engine:
      runner: sdk
      max_turns: 50
      settle_delay_seconds: 3
      allowed_tools: [Read, Edit, Bash, Task]

    system_prompt: |
      You coordinate ...

    agents:
      code-agent:
        description: "Writes code"
        prompt: "You are an expert developer."
        tools: [Read, Write, Edit, Bash]
        model: sonnet
      docs-agent:
        description: "Writes documentation"
        prompt: "You write clear docs."
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .config import EngineConfig
from .subagents import (
    ORCHESTRATOR_SYSTEM_PROMPT,
    SubagentDefinition,
    default_subagents,
)

logger = logging.getLogger(__name__)


@dataclass
class RemoteConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    subagents: list[SubagentDefinition] = field(default_factory=default_subagents)
    system_prompt: str = ORCHESTRATOR_SYSTEM_PROMPT


def _apply_engine_section(config: EngineConfig, raw: dict) -> None:
    known = {f.name: f for f in fields(EngineConfig)}
    for key, value in raw.items():
        if key not in known:
            logger.warning("load_yaml_config: unknown engine key %r ignored", key)
            continue
        current = getattr(config, key)
        if isinstance(current, list):
            if not isinstance(value, list):
                logger.warning(
                    "load_yaml_config: engine.%s must be a list, got %r", key, value,
                )
                continue
            setattr(config, key, [str(v) for v in value])
        elif isinstance(current, bool):
            setattr(config, key, bool(value))
        elif isinstance(current, int):
            setattr(config, key, int(value))
        elif isinstance(current, float):
            setattr(config, key, float(value))
        else:
            setattr(config, key, str(value))


def _parse_agents(raw: dict) -> list[SubagentDefinition]:
    agents: list[SubagentDefinition] = []
    for name, spec in raw.items():
        if not isinstance(spec, dict):
            logger.warning("load_yaml_config: agent %r is not a mapping, skipped", name)
            continue
        description = spec.get("description")
        prompt = spec.get("prompt")
        if not description or not prompt:
            logger.warning(
                "load_yaml_config: agent %r needs description and prompt, skipped", name,
            )
            continue
        agents.append(SubagentDefinition(
            name=str(name),
            description=str(description),
            prompt=str(prompt),
            tools=[str(t) for t in spec.get("tools") or []],
            model=spec.get("model"),
        ))
    return agents


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> RemoteConfig:
    """Load and parse a YAML config file.

    Values in the file take precedence over *base* (defaults to
    ``EngineConfig.from_env()``).
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = base or EngineConfig.from_env()
    engine_raw = raw.get("engine") or {}
    if isinstance(engine_raw, dict):
        _apply_engine_section(engine, engine_raw)

    result = RemoteConfig(engine=engine)
    agents_raw = raw.get("agents")
    if isinstance(agents_raw, dict):
        result.subagents = _parse_agents(agents_raw)
    if raw.get("system_prompt"):
        result.system_prompt = str(raw["system_prompt"])
    return result
