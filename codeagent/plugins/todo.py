"""Session todo list exposed as the ``todowrite`` / ``todoread`` tools.

Loaded by default; set CODEAGENT_DISABLE_DEFAULT_PLUGINS to skip it.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from codeagent.engine.plugins import Hooks, PluginInput
from codeagent.tools.base import ToolContext, ToolInfo, ToolResult

logger = logging.getLogger(__name__)

__all__ = ["todo_plugin"]

_TODO_ITEM = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "content": {"type": "string"},
        "status": {"type": "string", "enum": ["pending", "in_progress", "completed", "cancelled"]},
        "priority": {"type": "string", "enum": ["high", "medium", "low"]},
    },
    "required": ["id", "content", "status"],
}


class TodoHooks(Hooks):
    def __init__(self) -> None:
        self.todos: dict[str, list[dict[str, Any]]] = {}

    def _title(self, session_id: str) -> str:
        open_items = [t for t in self.todos.get(session_id, []) if t.get("status") != "completed"]
        return f"{len(open_items)} todos"

    async def _write(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        todos = list(args["todos"])
        self.todos[ctx.session_id] = todos
        logger.debug("todos updated session=%s count=%d", ctx.session_id, len(todos))
        return ToolResult(
            title=self._title(ctx.session_id),
            output=json.dumps(todos, indent=2),
            metadata={"todos": todos},
        )

    async def _read(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        todos = self.todos.get(ctx.session_id, [])
        return ToolResult(
            title=self._title(ctx.session_id),
            output=json.dumps(todos, indent=2),
            metadata={"todos": todos},
        )

    async def tool_register(self, input, output) -> None:
        output.register(
            ToolInfo(
                id="todowrite",
                description="Replace the todo list for the current session.",
                parameters={
                    "type": "object",
                    "properties": {"todos": {"type": "array", "items": _TODO_ITEM}},
                    "required": ["todos"],
                },
                execute=self._write,
            )
        )
        output.register(
            ToolInfo(
                id="todoread",
                description="Read the todo list of the current session.",
                parameters={"type": "object", "properties": {}},
                execute=self._read,
            )
        )


def todo_plugin(input: PluginInput) -> TodoHooks:
    return TodoHooks()
