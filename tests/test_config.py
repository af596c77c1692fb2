"""Tests for env configuration, YAML project config and model resolution."""
from __future__ import annotations

from pathlib import Path

import pytest

from codeagent.engine.config import EngineConfig
from codeagent.engine.errors import ConfigError, ModelNotFoundError, ProviderNotAvailableError
from codeagent.engine.providers.registry import ProviderRegistry
from codeagent.engine.yaml_config import (
    ProjectConfig,
    find_config_file,
    load_project_config,
    parse_config,
)

SAMPLE = """\
model: local/coder
small_model: local/mini
providers:
  local:
    type: openai
    base_url: http://127.0.0.1:8080/v1
models:
  coder:
    provider: local
    model_id: qwen-coder
    limit: {context: 32000, output: 4096}
    cost: {input: 1.5, output: 3}
agents:
  reviewer:
    description: Reviews diffs
    mode: subagent
    tools: {bash: false}
commands:
  hello: "Say hello to $ARGUMENTS"
  review:
    template: Review $ARGUMENTS
    agent: reviewer
    subtask: true
  empty:
    description: nothing to run
plugins:
  - file:///tmp/plugin.py
share_url: https://share.example.com
"""


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def test_engine_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CODEAGENT_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("CODEAGENT_DISABLE_PRUNE", "true")
    monkeypatch.setenv("CODEAGENT_SHELL_TIMEOUT", "12.5")
    monkeypatch.delenv("CODEAGENT_DISABLE_AUTOCOMPACT", raising=False)

    config = EngineConfig.from_env()

    assert config.data_dir == tmp_path
    assert config.storage_dir == tmp_path / "storage"
    assert config.snapshot_dir == tmp_path / "snapshot"
    assert config.disable_prune is True
    assert config.disable_autocompact is False
    assert config.shell_timeout_seconds == 12.5


def test_load_project_config(tmp_path):
    path = _write(tmp_path / "config.yaml", SAMPLE)

    cfg = load_project_config(path)

    assert cfg.path == path
    assert cfg.model == "local/coder"
    assert cfg.providers["local"].base_url == "http://127.0.0.1:8080/v1"
    coder = cfg.models["coder"]
    assert coder.model_id == "qwen-coder"
    assert coder.limit.context == 32000
    assert coder.cost.output == 3.0
    assert cfg.agents["reviewer"].tools == {"bash": False}
    assert cfg.commands["hello"].template == "Say hello to $ARGUMENTS"
    assert cfg.commands["review"].subtask is True
    assert "empty" not in cfg.commands
    assert cfg.plugins == ["file:///tmp/plugin.py"]
    assert cfg.share_url == "https://share.example.com"


def test_missing_path_gives_defaults():
    cfg = load_project_config(None)
    assert cfg == ProjectConfig()
    assert cfg.snapshot is True


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"agents": ["build"]}, "'agents' must be a mapping"),
        ({"plugins": "file:///x.py"}, "'plugins' must be a list"),
        ({"models": {"m": {"model_id": "x"}}}, "missing 'provider'"),
    ],
)
def test_invalid_sections_raise(raw, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(raw)


def test_invalid_yaml_raises(tmp_path):
    path = _write(tmp_path / "config.yaml", "model: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_project_config(path)


def test_top_level_must_be_a_mapping(tmp_path):
    path = _write(tmp_path / "config.yaml", "- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_project_config(path)


def test_find_config_file_prefers_directory_over_worktree(tmp_path):
    worktree = tmp_path / "repo"
    sub = worktree / "pkg"
    sub.mkdir(parents=True)
    assert find_config_file(sub, worktree) is None

    outer = _write(worktree / ".codeagent" / "config.yaml", "model: a/b\n")
    assert find_config_file(sub, worktree) == outer

    inner = _write(sub / ".codeagent" / "config.yaml", "model: c/d\n")
    assert find_config_file(sub, worktree) == inner


def test_registry_from_config():
    cfg = parse_config({
        "model": "coder",
        "providers": {"local": {"type": "openai"}},
        "models": {
            "coder": {"provider": "local", "model_id": "qwen", "limit": {"context": 1000}},
        },
    })

    registry = ProviderRegistry.from_config(cfg)

    default = registry.default_model()
    assert default.ref == "local/qwen"
    assert default.limit.context == 1000
    assert registry.small_model().ref == "local/qwen"
    assert registry.resolve("local/qwen") is default
    unlisted = registry.resolve("local/other")
    assert unlisted.limit.context == 0
    with pytest.raises(ModelNotFoundError):
        registry.resolve("nowhere/model")


def test_registry_rejects_unknown_provider_types():
    cfg = parse_config({"providers": {"odd": {"type": "carrier-pigeon"}}})
    with pytest.raises(ProviderNotAvailableError):
        ProviderRegistry.from_config(cfg)
