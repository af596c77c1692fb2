"""Built-in tools: ``invalid``, ``bash`` and ``task``."""
from __future__ import annotations

import asyncio
import logging
import re
import shlex
from typing import TYPE_CHECKING, Any

from codeagent.engine.agents import ALLOW, ASK, DENY
from codeagent.engine.errors import PermissionRejectedError
from codeagent.shared.models.message import TextPart, ToolPart
from codeagent.shared.services.process import run_shell
from codeagent.tools import wildcard
from codeagent.tools.base import ToolContext, ToolInfo, ToolResult

if TYPE_CHECKING:
    from codeagent.engine.instance import ProjectContext

logger = logging.getLogger(__name__)

MAX_OUTPUT_LENGTH = 30_000
DEFAULT_TIMEOUT_MS = 2 * 60 * 1000
MAX_TIMEOUT_MS = 10 * 60 * 1000

_SEPARATORS = re.compile(r"\s*(?:&&|\|\||;|\||\n)\s*")


# ── invalid ──


async def _invalid(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    return ToolResult(
        title="Invalid Tool",
        output=f"The arguments provided to the tool are invalid: {args.get('error', '')}",
    )


def invalid_tool() -> ToolInfo:
    return ToolInfo(
        id="invalid",
        description="Do not use",
        parameters={
            "type": "object",
            "properties": {
                "tool": {"type": "string"},
                "error": {"type": "string"},
            },
            "required": ["tool", "error"],
        },
        execute=_invalid,
    )


# ── bash ──

BASH_DESCRIPTION = """\
Executes a shell command in the project directory and returns its
combined stdout and stderr.

- The command runs in its own process group; aborting the session kills it.
- Output longer than 30000 characters is truncated.
- timeout is in milliseconds (default 120000, max 600000).
- Write a short description (5-10 words) of what the command does."""


def split_commands(command: str) -> list[str]:
    """Individual commands of a compound shell line (``&&``, ``;``, pipes)."""
    return [part for part in _SEPARATORS.split(command.strip()) if part]


def command_pattern(command: str) -> str:
    """Permission pattern remembered for an "always" approval."""
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()
    return " ".join(tokens[:2]) + " *" if tokens else "*"


def bash_permission(
    command: str, rules: dict[str, str]
) -> tuple[str, list[str]]:
    """Strictest action over all sub-commands, plus patterns to ask about."""
    action = ALLOW
    ask: list[str] = []
    for sub in split_commands(command):
        outcome = wildcard.resolve(sub, rules) or ALLOW
        if outcome == DENY:
            return DENY, []
        if outcome == ASK:
            action = ASK
            ask.append(command_pattern(sub))
    return action, ask


def bash_tool(project: ProjectContext) -> ToolInfo:
    async def execute(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        command = args["command"]
        description = args.get("description") or command
        timeout_ms = min(int(args.get("timeout") or DEFAULT_TIMEOUT_MS), MAX_TIMEOUT_MS)

        if ctx.agent is not None:
            action, patterns = bash_permission(command, ctx.agent.permission.bash)
            if action == DENY:
                raise PermissionRejectedError(
                    ctx.session_id, "bash", ctx.call_id, {"command": command}
                )
            if action == ASK and ctx.permissions is not None:
                await ctx.permissions.ask(
                    type="bash",
                    title=command,
                    session_id=ctx.session_id,
                    message_id=ctx.message_id,
                    call_id=ctx.call_id,
                    pattern=patterns,
                    metadata={"command": command, "patterns": patterns},
                )

        async def on_output(output: str) -> None:
            await ctx.metadata(
                metadata={"output": output[-MAX_OUTPUT_LENGTH:], "description": description}
            )

        result = await run_shell(
            command,
            cwd=project.directory,
            on_output=on_output,
            timeout=timeout_ms / 1000,
        )
        output = result.output
        if len(output) > MAX_OUTPUT_LENGTH:
            output = output[:MAX_OUTPUT_LENGTH] + "\n\n(Output was truncated)"
        if result.timed_out:
            output += f"\n\n<bash_metadata>\ncommand timed out after {timeout_ms} ms\n</bash_metadata>"
        return ToolResult(
            title=description,
            output=output,
            metadata={
                "output": output,
                "exit": result.exit_code,
                "description": description,
            },
        )

    return ToolInfo(
        id="bash",
        description=BASH_DESCRIPTION,
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to execute"},
                "timeout": {"type": "number", "description": "Optional timeout in milliseconds"},
                "description": {
                    "type": "string",
                    "description": "Clear, concise description of what this command does",
                },
            },
            "required": ["command", "description"],
        },
        execute=execute,
    )


# ── task ──

_SUBAGENT_TOOLS = {"todowrite": False, "todoread": False, "task": False}


def _task_description(project: ProjectContext) -> str:
    lines = [
        "Launch a sub-agent to handle a self-contained task in its own child session.",
        "The sub-agent cannot see this conversation; give it a complete prompt.",
        "",
        "Available agents:",
    ]
    for agent in project.agents.list():
        if agent.mode == "primary":
            continue
        lines.append(f"- {agent.name}: {agent.description or 'no description'}")
    return "\n".join(lines)


def task_tool(project: ProjectContext) -> ToolInfo:
    async def execute(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        from codeagent.engine.prompt import PromptInput

        agent = project.agents.get(args["subagent_type"])
        description = args["description"]
        child = project.store.create(
            parent_id=ctx.session_id,
            title=f"{description} (@{agent.name} subagent)",
        )
        parent = project.store.get_message(ctx.session_id, ctx.message_id).info
        model = agent.model or f"{parent.provider_id}/{parent.model_id}"
        await ctx.metadata(title=description, metadata={"session_id": child.id})

        remove = None
        if ctx.abort is not None:
            remove = ctx.abort.on_abort(lambda: project.locks.abort(child.id))
        try:
            result = await project.prompt.prompt(
                PromptInput(
                    session_id=child.id,
                    agent=agent.name,
                    model=model,
                    tools=dict(_SUBAGENT_TOOLS),
                    parts=[{"type": "text", "text": args["prompt"]}],
                )
            )
        finally:
            if remove is not None:
                remove()
        if ctx.abort is not None and ctx.abort.aborted:
            # The child turn consumed the cancellation it shares with this one.
            raise asyncio.CancelledError()

        summary = [
            {
                "id": part.id,
                "tool": part.tool,
                "status": part.state.status.value,
                "title": part.state.title,
            }
            for part in result.parts
            if isinstance(part, ToolPart)
        ]
        texts = [p.text for p in result.parts if isinstance(p, TextPart) and p.text]
        output = texts[-1] if texts else ""
        return ToolResult(
            title=description,
            output=output,
            metadata={"session_id": child.id, "summary": summary},
        )

    return ToolInfo(
        id="task",
        description=_task_description(project),
        parameters={
            "type": "object",
            "properties": {
                "description": {
                    "type": "string",
                    "description": "A short (3-5 words) description of the task",
                },
                "prompt": {"type": "string", "description": "The task for the agent to perform"},
                "subagent_type": {
                    "type": "string",
                    "description": "The type of specialized agent to use for this task",
                },
            },
            "required": ["description", "prompt", "subagent_type"],
        },
        execute=execute,
    )


def builtin_tools(project: ProjectContext) -> list[ToolInfo]:
    return [invalid_tool(), bash_tool(project), task_tool(project)]
