"""Tool registry: built-in, in-process and HTTP-callback tools.

Registration replaces any earlier tool with the same id in the same
group. Lookup order is built-in, then in-process, then HTTP.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

from codeagent.engine.agents import DENY
from codeagent.engine.errors import HttpToolError, ToolNotFoundError
from codeagent.tools.base import ToolContext, ToolInfo, ToolResult, validate_args

if TYPE_CHECKING:
    from codeagent.engine.agents import AgentInfo

logger = logging.getLogger(__name__)

_HTTP_PARAM_TYPES = ("string", "number", "boolean", "array")
_HTTP_TIMEOUT = aiohttp.ClientTimeout(total=300)


@dataclass
class HttpParamSpec:
    type: str
    description: str | None = None
    optional: bool = False
    items: str | None = None


@dataclass
class HttpToolRegistration:
    id: str
    description: str
    properties: dict[str, HttpParamSpec]
    callback_url: str
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HttpToolRegistration:
        """Parse the ``POST /experimental/tool/register`` body."""
        for key in ("id", "description", "parameters", "callback_url"):
            if key not in data:
                raise ValueError(f"Missing field: {key}")
        params = data["parameters"] or {}
        properties = {}
        for name, spec in (params.get("properties") or {}).items():
            properties[name] = HttpParamSpec(
                type=spec.get("type", ""),
                description=spec.get("description"),
                optional=bool(spec.get("optional", False)),
                items=spec.get("items"),
            )
        return cls(
            id=data["id"],
            description=data["description"],
            properties=properties,
            callback_url=data["callback_url"],
            headers=dict(data.get("headers") or {}),
        )


def build_http_schema(properties: dict[str, HttpParamSpec]) -> dict[str, Any]:
    """JSON schema for an HTTP tool's flat parameter spec."""
    schema_props: dict[str, Any] = {}
    required: list[str] = []
    for name, spec in properties.items():
        if spec.type not in _HTTP_PARAM_TYPES:
            raise ValueError(f"Unsupported type {spec.type!r} for parameter {name}")
        prop: dict[str, Any] = {"type": spec.type}
        if spec.type == "array":
            if not spec.items:
                raise ValueError(f"array spec for {name} requires 'items'")
            prop["items"] = {"type": spec.items}
        if spec.description:
            prop["description"] = spec.description
        schema_props[name] = prop
        if not spec.optional:
            required.append(name)
    return {"type": "object", "properties": schema_props, "required": required}


def _http_tool(reg: HttpToolRegistration) -> ToolInfo:
    async def execute(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        headers = {"content-type": "application/json", **reg.headers}
        async with aiohttp.ClientSession(timeout=_HTTP_TIMEOUT) as session:
            async with session.post(
                reg.callback_url, json={"args": args}, headers=headers
            ) as resp:
                if resp.status >= 400:
                    raise HttpToolError(resp.status, await resp.text())
                data = await resp.json(content_type=None) or {}
        return ToolResult(
            title=data.get("title") or reg.id,
            output=data.get("output") or "",
            metadata=data.get("metadata") or {},
        )

    return ToolInfo(
        id=reg.id,
        description=reg.description,
        parameters=build_http_schema(reg.properties),
        execute=execute,
    )


def _replace(group: list[ToolInfo], tool: ToolInfo) -> None:
    for i, existing in enumerate(group):
        if existing.id == tool.id:
            group[i] = tool
            return
    group.append(tool)


class ToolRegistry:
    """All tools known to a project."""

    def __init__(self, builtin: list[ToolInfo] | None = None) -> None:
        self._builtin: list[ToolInfo] = list(builtin or [])
        self._extra: list[ToolInfo] = []
        self._http: list[ToolInfo] = []

    def register(self, tool: ToolInfo) -> None:
        logger.info("registered tool id=%s", tool.id)
        _replace(self._extra, tool)

    def register_http(self, reg: HttpToolRegistration) -> None:
        tool = _http_tool(reg)
        logger.info("registered http tool id=%s url=%s", reg.id, reg.callback_url)
        _replace(self._http, tool)

    def tools(self) -> list[ToolInfo]:
        return [*self._builtin, *self._extra, *self._http]

    def ids(self) -> list[str]:
        return [t.id for t in self.tools()]

    def get(self, tool_id: str) -> ToolInfo:
        for tool in self.tools():
            if tool.id == tool_id:
                return tool
        raise ToolNotFoundError(tool_id)

    def find(self, tool_id: str) -> ToolInfo | None:
        for tool in self.tools():
            if tool.id == tool_id:
                return tool
        return None

    @staticmethod
    def enabled(agent: AgentInfo) -> dict[str, bool]:
        """Tool toggles implied by the agent's permission config."""
        result = {"patch": False}
        if agent.permission.edit == DENY:
            result["edit"] = False
            result["patch"] = False
            result["write"] = False
        bash = agent.permission.bash
        if bash.get("*") == DENY and len(bash) == 1:
            result["bash"] = False
        if agent.permission.webfetch == DENY:
            result["webfetch"] = False
        return result

    @staticmethod
    def validate(tool: ToolInfo, args: dict[str, Any]) -> None:
        validate_args(tool.parameters, args)


def describe(tool: ToolInfo) -> dict[str, Any]:
    return {
        "id": tool.id,
        "description": tool.description,
        "parameters": tool.parameters,
    }
