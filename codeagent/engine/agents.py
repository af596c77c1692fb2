"""Agent catalog: built-in agents merged with YAML overrides."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from .errors import AgentNotFoundError
from .yaml_config import AgentConfig

logger = logging.getLogger(__name__)

ALLOW = "allow"
DENY = "deny"
ASK = "ask"
_ACTIONS = {ALLOW, DENY, ASK}

DEFAULT_AGENT = "build"


@dataclass
class AgentPermission:
    edit: str = ALLOW
    bash: dict[str, str] = field(default_factory=lambda: {"*": ALLOW})
    webfetch: str = ALLOW


@dataclass
class AgentInfo:
    name: str
    description: str = ""
    mode: str = "all"  # primary | subagent | all
    builtin: bool = False
    prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    tools: dict[str, bool] = field(default_factory=dict)
    permission: AgentPermission = field(default_factory=AgentPermission)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "mode": self.mode,
            "builtin": self.builtin,
            "prompt": self.prompt,
            "model": self.model,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "tools": dict(self.tools),
            "permission": {
                "edit": self.permission.edit,
                "bash": dict(self.permission.bash),
                "webfetch": self.permission.webfetch,
            },
        }


_PLAN_BASH = {
    "*": ASK,
    "ls*": ALLOW,
    "pwd": ALLOW,
    "cat *": ALLOW,
    "head *": ALLOW,
    "tail *": ALLOW,
    "grep *": ALLOW,
    "rg *": ALLOW,
    "find *": ALLOW,
    "tree*": ALLOW,
    "wc *": ALLOW,
    "git status*": ALLOW,
    "git diff*": ALLOW,
    "git log*": ALLOW,
    "git show*": ALLOW,
    "git branch": ALLOW,
}


def builtin_agents() -> dict[str, AgentInfo]:
    return {
        "build": AgentInfo(
            name="build",
            description="Default agent. Reads, edits and runs commands.",
            mode="primary",
            builtin=True,
        ),
        "plan": AgentInfo(
            name="plan",
            description="Read-only planning agent. Cannot edit files.",
            mode="primary",
            builtin=True,
            permission=AgentPermission(
                edit=DENY, bash=dict(_PLAN_BASH), webfetch=ALLOW
            ),
        ),
        "general": AgentInfo(
            name="general",
            description=(
                "General-purpose agent for researching complex questions and "
                "executing multi-step tasks."
            ),
            mode="subagent",
            builtin=True,
            tools={"todoread": False, "todowrite": False},
        ),
    }


def _check_action(agent: str, key: str, value: str) -> str:
    if value not in _ACTIONS:
        logger.warning(
            "agent '%s' permission %s=%r is not one of allow/deny/ask, using ask",
            agent, key, value,
        )
        return ASK
    return value


def _merge_permission(
    name: str, base: AgentPermission, raw: dict
) -> AgentPermission:
    result = replace(base, bash=dict(base.bash))
    if "edit" in raw:
        result.edit = _check_action(name, "edit", raw["edit"])
    if "webfetch" in raw:
        result.webfetch = _check_action(name, "webfetch", raw["webfetch"])
    if "bash" in raw:
        bash = raw["bash"]
        if isinstance(bash, str):
            result.bash = {"*": _check_action(name, "bash", bash)}
        else:
            result.bash = {
                pattern: _check_action(name, f"bash[{pattern}]", action)
                for pattern, action in bash.items()
            }
    return result


class AgentCatalog:
    """Named agents available to a project."""

    def __init__(self, overrides: dict[str, AgentConfig] | None = None) -> None:
        self._agents = builtin_agents()
        for name, cfg in (overrides or {}).items():
            if cfg.disable:
                self._agents.pop(name, None)
                continue
            base = self._agents.get(name) or AgentInfo(name=name)
            self._agents[name] = AgentInfo(
                name=name,
                description=cfg.description or base.description,
                mode=cfg.mode or base.mode,
                builtin=base.builtin,
                prompt=cfg.prompt if cfg.prompt is not None else base.prompt,
                model=cfg.model or base.model,
                temperature=cfg.temperature if cfg.temperature is not None else base.temperature,
                top_p=cfg.top_p if cfg.top_p is not None else base.top_p,
                tools={**base.tools, **cfg.tools},
                permission=_merge_permission(name, base.permission, cfg.permission),
            )

    def get(self, name: str) -> AgentInfo:
        agent = self._agents.get(name)
        if agent is None:
            raise AgentNotFoundError(name)
        return agent

    def find(self, name: str) -> AgentInfo | None:
        return self._agents.get(name)

    def list(self) -> list[AgentInfo]:
        return list(self._agents.values())
