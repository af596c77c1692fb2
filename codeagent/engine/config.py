"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CODEAGENT_* env vars.
Project-level settings (agents, models, commands, plugins) live in the
YAML file handled by codeagent.engine.yaml_config.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "CODEAGENT_"

# Hard ceiling on tokens reserved for a single model reply.
OUTPUT_TOKEN_MAX = 32_000
# Recent tool output kept in context before pruning starts.
PRUNE_PROTECT = 40_000
# Pruning is skipped unless at least this much can be reclaimed.
PRUNE_MINIMUM = 20_000


def _flag(name: str) -> bool:
    return os.getenv(ENV_PREFIX + name, "").lower() in {"1", "true", "yes"}


def default_data_dir() -> Path:
    return Path.home() / ".codeagent"


@dataclass
class EngineConfig:
    """Engine configuration."""

    data_dir: Path = None  # type: ignore[assignment]
    default_model: str | None = None
    small_model: str | None = None
    log_level: str = "INFO"
    config_path: str | None = None

    # Feature flags
    disable_autocompact: bool = False
    disable_prune: bool = False
    experimental_watcher: bool = False
    disable_default_plugins: bool = False

    # Seconds between file watcher scans
    watcher_interval_seconds: float = 1.0
    # Max wall-clock time for a user-issued shell command.
    # Set to 0 (or a negative value) to disable timeout.
    shell_timeout_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.data_dir is None:
            self.data_dir = default_data_dir()
        self.data_dir = Path(self.data_dir)

    @property
    def storage_dir(self) -> Path:
        return self.data_dir / "storage"

    @property
    def snapshot_dir(self) -> Path:
        return self.data_dir / "snapshot"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CODEAGENT_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith(ENV_PREFIX)
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no overrides, using defaults")

        data_dir = os.getenv(ENV_PREFIX + "DATA_DIR")
        return cls(
            data_dir=Path(data_dir).expanduser() if data_dir else None,
            default_model=os.getenv(ENV_PREFIX + "DEFAULT_MODEL") or None,
            small_model=os.getenv(ENV_PREFIX + "SMALL_MODEL") or None,
            log_level=os.getenv(ENV_PREFIX + "LOG_LEVEL", cls.log_level),
            config_path=os.getenv(ENV_PREFIX + "CONFIG") or None,
            disable_autocompact=_flag("DISABLE_AUTOCOMPACT"),
            disable_prune=_flag("DISABLE_PRUNE"),
            experimental_watcher=_flag("EXPERIMENTAL_WATCHER"),
            disable_default_plugins=_flag("DISABLE_DEFAULT_PLUGINS"),
            watcher_interval_seconds=float(os.getenv(
                ENV_PREFIX + "WATCHER_INTERVAL",
                str(cls.watcher_interval_seconds),
            )),
            shell_timeout_seconds=float(os.getenv(
                ENV_PREFIX + "SHELL_TIMEOUT",
                str(cls.shell_timeout_seconds),
            )),
        )
