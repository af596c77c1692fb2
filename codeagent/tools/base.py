"""Tool descriptor types shared by the registry, built-ins and plugins."""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from codeagent.engine.agents import AgentInfo
    from codeagent.engine.lock import AbortHandle
    from codeagent.engine.permission import PermissionManager


@dataclass
class ToolResult:
    title: str = ""
    output: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolContext:
    """Everything a running tool may need from the turn that invoked it."""
    session_id: str
    message_id: str
    call_id: str
    agent: AgentInfo | None = None
    abort: AbortHandle | None = None
    permissions: PermissionManager | None = None
    on_metadata: Callable[[str | None, dict[str, Any]], Awaitable[None] | None] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    async def metadata(
        self, title: str | None = None, metadata: dict[str, Any] | None = None
    ) -> None:
        """Live-update the running tool part."""
        if self.on_metadata is None:
            return
        result = self.on_metadata(title, metadata or {})
        if result is not None:
            await result


Execute = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]


@dataclass
class ToolInfo:
    id: str
    description: str
    parameters: dict[str, Any]
    execute: Execute = field(repr=False)


_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def _type_ok(value: Any, expected: str | None) -> bool:
    if expected is None or expected not in _JSON_TYPES:
        return True
    if expected in ("number", "integer") and isinstance(value, bool):
        return False
    return isinstance(value, _JSON_TYPES[expected])


def validate_args(schema: dict[str, Any], args: dict[str, Any]) -> None:
    """Check *args* against a flat JSON object schema.

    Raises ValueError naming the first offending property.
    """
    if not isinstance(args, dict):
        raise ValueError("Tool arguments must be an object")
    properties = schema.get("properties") or {}
    for name in schema.get("required") or []:
        if name not in args:
            raise ValueError(f"Missing required parameter: {name}")
    for name, value in args.items():
        spec = properties.get(name)
        if spec is None:
            continue
        if not _type_ok(value, spec.get("type")):
            raise ValueError(
                f"Invalid type for parameter {name}: expected {spec.get('type')}"
            )
        items = spec.get("items")
        if spec.get("type") == "array" and isinstance(items, dict):
            for item in value:
                if not _type_ok(item, items.get("type")):
                    raise ValueError(
                        f"Invalid item in parameter {name}: expected {items.get('type')}"
                    )
