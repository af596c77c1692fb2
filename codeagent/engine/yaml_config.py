"""Project YAML configuration loader.

Discovered at ``.codeagent/config.yaml`` in the project directory (then
the worktree root), or passed explicitly with ``--config`` /
``CODEAGENT_CONFIG``. Every section is optional.

Example YAML:
    model: local/qwen2.5-coder        # default provider/model (or alias)
    small_model: local/qwen2.5-0.5b   # used for titles

    providers:
      local:
        type: openai
        base_url: http://localhost:11434/v1
        api_key_env: OLLAMA_API_KEY

    models:
      qwen:
        provider: local
        model_id: qwen2.5-coder
        limit: {context: 32768, output: 4096}
        cost: {input: 0.0, output: 0.0, cache_read: 0.0, cache_write: 0.0}
        temperature: true

    agents:
      review:
        description: Reviews diffs
        mode: subagent
        prompt: |
          You review code changes...
        model: qwen
        temperature: 0.1
        tools: {bash: false}
        permission:
          edit: deny
          bash: {"git diff*": allow, "*": ask}

    commands:
      test:
        template: "Run the tests and fix failures: $ARGUMENTS"
        description: Run tests
        agent: build
        subtask: false

    plugins:
      - file:///home/me/plugins/notify.py
      - my_plugin_package

    snapshot: true
    instructions: [AGENTS.md]
    share_url: https://share.example.com
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIRNAME = ".codeagent"
CONFIG_FILENAME = "config.yaml"

_KNOWN_SECTIONS = {
    "model",
    "small_model",
    "providers",
    "models",
    "agents",
    "commands",
    "plugins",
    "snapshot",
    "instructions",
    "share_url",
}


@dataclass
class ProviderConfig:
    """Configuration for a single provider endpoint."""
    type: str = "openai"
    base_url: str | None = None
    api_key_env: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelLimit:
    context: int = 0
    output: int = 0


@dataclass
class ModelCost:
    """USD per million tokens."""
    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_write: float = 0.0


@dataclass
class ModelConfig:
    provider: str
    model_id: str
    name: str | None = None
    limit: ModelLimit = field(default_factory=ModelLimit)
    cost: ModelCost = field(default_factory=ModelCost)
    temperature: bool = True
    tool_call: bool = True
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentConfig:
    """Raw agent overrides from YAML (merged onto built-ins by agents.py)."""
    description: str | None = None
    mode: str | None = None
    prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    tools: dict[str, bool] = field(default_factory=dict)
    permission: dict[str, Any] = field(default_factory=dict)
    disable: bool = False


@dataclass
class CommandConfig:
    template: str
    description: str | None = None
    agent: str | None = None
    model: str | None = None
    subtask: bool = False


@dataclass
class ProjectConfig:
    """Complete parsed project configuration."""
    model: str | None = None
    small_model: str | None = None
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    models: dict[str, ModelConfig] = field(default_factory=dict)
    agents: dict[str, AgentConfig] = field(default_factory=dict)
    commands: dict[str, CommandConfig] = field(default_factory=dict)
    plugins: list[str] = field(default_factory=list)
    snapshot: bool = True
    instructions: list[str] = field(default_factory=list)
    share_url: str | None = None
    path: Path | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def find_config_file(directory: Path, worktree: Path | None = None) -> Path | None:
    """Locate ``.codeagent/config.yaml`` in *directory*, then *worktree*."""
    candidates = [Path(directory)]
    if worktree is not None and Path(worktree) != Path(directory):
        candidates.append(Path(worktree))
    for base in candidates:
        path = base / CONFIG_DIRNAME / CONFIG_FILENAME
        logger.debug("find_config_file: checking %s (exists=%s)", path, path.is_file())
        if path.is_file():
            return path
    return None


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping, got {type(value).__name__}")
    return value


def _parse_providers(raw: dict) -> dict[str, ProviderConfig]:
    result = {}
    for name, cfg in _section(raw, "providers").items():
        cfg = cfg or {}
        result[name] = ProviderConfig(
            type=cfg.get("type", "openai"),
            base_url=cfg.get("base_url"),
            api_key_env=cfg.get("api_key_env"),
            options=cfg.get("options") or {},
        )
    return result


def _parse_models(raw: dict) -> dict[str, ModelConfig]:
    result = {}
    for alias, cfg in _section(raw, "models").items():
        cfg = cfg or {}
        if "provider" not in cfg:
            raise ConfigError(f"model '{alias}' is missing 'provider'")
        limit = cfg.get("limit") or {}
        cost = cfg.get("cost") or {}
        result[alias] = ModelConfig(
            provider=cfg["provider"],
            model_id=cfg.get("model_id", alias),
            name=cfg.get("name"),
            limit=ModelLimit(
                context=int(limit.get("context", 0)),
                output=int(limit.get("output", 0)),
            ),
            cost=ModelCost(
                input=float(cost.get("input", 0.0)),
                output=float(cost.get("output", 0.0)),
                cache_read=float(cost.get("cache_read", 0.0)),
                cache_write=float(cost.get("cache_write", 0.0)),
            ),
            temperature=bool(cfg.get("temperature", True)),
            tool_call=bool(cfg.get("tool_call", True)),
            options=cfg.get("options") or {},
        )
    return result


def _parse_agents(raw: dict) -> dict[str, AgentConfig]:
    result = {}
    for name, cfg in _section(raw, "agents").items():
        cfg = cfg or {}
        result[name] = AgentConfig(
            description=cfg.get("description"),
            mode=cfg.get("mode"),
            prompt=cfg.get("prompt"),
            model=cfg.get("model"),
            temperature=cfg.get("temperature"),
            top_p=cfg.get("top_p"),
            tools=dict(cfg.get("tools") or {}),
            permission=dict(cfg.get("permission") or {}),
            disable=bool(cfg.get("disable", False)),
        )
    return result


def _parse_commands(raw: dict) -> dict[str, CommandConfig]:
    result = {}
    for name, cfg in _section(raw, "commands").items():
        if isinstance(cfg, str):
            cfg = {"template": cfg}
        cfg = cfg or {}
        if not cfg.get("template"):
            logger.warning("command '%s' has no template, skipping", name)
            continue
        result[name] = CommandConfig(
            template=cfg["template"],
            description=cfg.get("description"),
            agent=cfg.get("agent"),
            model=cfg.get("model"),
            subtask=bool(cfg.get("subtask", False)),
        )
    return result


def parse_config(raw: dict[str, Any], path: Path | None = None) -> ProjectConfig:
    unknown = sorted(set(raw) - _KNOWN_SECTIONS)
    if unknown:
        logger.warning("Unknown config keys ignored: %s", ", ".join(unknown))
    plugins = raw.get("plugins") or []
    if not isinstance(plugins, list):
        raise ConfigError("'plugins' must be a list")
    instructions = raw.get("instructions") or []
    if isinstance(instructions, str):
        instructions = [instructions]
    return ProjectConfig(
        model=raw.get("model"),
        small_model=raw.get("small_model"),
        providers=_parse_providers(raw),
        models=_parse_models(raw),
        agents=_parse_agents(raw),
        commands=_parse_commands(raw),
        plugins=[str(p) for p in plugins],
        snapshot=bool(raw.get("snapshot", True)),
        instructions=[str(i) for i in instructions],
        share_url=raw.get("share_url"),
        path=path,
        raw=raw,
    )


def load_project_config(path: str | Path | None) -> ProjectConfig:
    """Load and parse a YAML config file. ``None`` yields the defaults."""
    if path is None:
        logger.debug("load_project_config: no config file, using defaults")
        return ProjectConfig()
    path = Path(os.path.expanduser(str(path)))
    logger.info("load_project_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("load_project_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )
    return parse_config(raw, path)
