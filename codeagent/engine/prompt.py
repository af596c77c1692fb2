"""Prompt orchestration.

``SessionPrompt.prompt`` is the entry point for a user turn: it persists
the user message, admits or queues the turn, and then loops over model
steps until the model stops asking for tools. ``shell`` runs a
user-issued command as a synthetic bash tool call and ``command``
expands a named template before delegating to ``prompt``.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import mimetypes
import os
import re
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, unquote, unquote_to_bytes, urlparse

from codeagent.shared.models.message import (
    AgentPart,
    AssistantMessage,
    FilePart,
    MessagePath,
    MessageWithParts,
    Part,
    TextPart,
    ToolPart,
    ToolState,
    ToolStatus,
    ToolTime,
    UserMessage,
    now_ms,
)
from codeagent.shared.models.session import SessionInfo
from codeagent.shared.services.process import run_shell
from codeagent.tools import wildcard
from codeagent.tools.base import ToolContext, ToolInfo
from codeagent.tools.registry import ToolRegistry

from . import identifier, system_prompt
from .agents import DEFAULT_AGENT, AgentInfo
from .config import OUTPUT_TOKEN_MAX
from .errors import CommandNotFoundError, SessionNotFoundError
from .history import filter_summarized, last_assistant, to_model_messages
from .llm import INVALID_TOOL, stream_step
from .processor import ABORTED_TOOL_MESSAGE, SessionProcessor
from .providers.base import ModelInfo, ModelRequest, ToolSpec
from .stream_events import ToolCallEvent

if TYPE_CHECKING:
    from .instance import ProjectContext
    from .lock import SessionLock

logger = logging.getLogger(__name__)

BASH_REGEX = re.compile(r"!`([^`]+)`")
# @path references; not after word characters or backticks (emails, code).
FILE_REGEX = re.compile(r"(?<![\w`])@(\.?[^\s`,.]*(?:\.[^\s`,.]+)*)")

USER_SHELL_TEXT = "The following tool was executed by the user"
TITLE_MAX_LENGTH = 100
READ_DEFAULT_LIMIT = 2000
LIST_LIMIT = 100
_LIST_IGNORE = {".git", "node_modules", "__pycache__", ".venv", "dist", "build"}
_THINK_TAGS = re.compile(r"<think>[\s\S]*?</think>\s*")


@dataclass
class PromptInput:
    session_id: str
    parts: list[dict[str, Any]] = field(default_factory=list)
    message_id: str | None = None
    agent: str | None = None
    model: str | None = None
    system: str | None = None
    tools: dict[str, bool] | None = None

    @classmethod
    def from_dict(cls, session_id: str, data: dict[str, Any]) -> PromptInput:
        parts = data.get("parts")
        if not isinstance(parts, list) or not parts:
            raise ValueError("parts must be a non-empty list")
        for part in parts:
            if not isinstance(part, dict) or part.get("type") not in ("text", "file", "agent"):
                raise ValueError("each part needs type text, file or agent")
        return cls(
            session_id=session_id,
            parts=parts,
            message_id=data.get("message_id"),
            agent=data.get("agent"),
            model=_model_ref(data.get("model")),
            system=data.get("system"),
            tools=data.get("tools"),
        )


@dataclass
class ShellInput:
    session_id: str
    agent: str
    command: str


@dataclass
class CommandInput:
    session_id: str
    command: str
    arguments: str = ""
    message_id: str | None = None
    agent: str | None = None
    model: str | None = None


def _model_ref(value: Any) -> str | None:
    """Accept ``"provider/model"`` or ``{"provider_id", "model_id"}``."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        return f"{value['provider_id']}/{value['model_id']}"
    raise ValueError("model must be a string or {provider_id, model_id}")


# ── File expansion helpers ──


def read_file(path: str, offset: int = 0, limit: int | None = None) -> str:
    """Line-numbered file excerpt in the form the model sees tool reads."""
    try:
        lines = Path(path).read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as exc:
        return f"<file>\nError reading file: {exc}\n</file>"
    limit = limit or READ_DEFAULT_LIMIT
    window = lines[offset:offset + limit]
    body = "\n".join(
        f"{str(offset + i + 1).zfill(5)}| {line}" for i, line in enumerate(window)
    )
    tail = ""
    if offset + len(window) < len(lines):
        tail = f"\n\n(File has more lines. Use 'offset' to read beyond line {offset + len(window)})"
    return f"<file>\n{body}{tail}\n</file>"


def list_directory(path: str) -> str:
    root = Path(path)
    try:
        entries = sorted(root.iterdir(), key=lambda p: (not p.is_dir(), p.name))
    except OSError as exc:
        return f"Error listing directory: {exc}"
    lines = [f"{root}/"]
    for entry in entries:
        if entry.name in _LIST_IGNORE:
            continue
        if len(lines) > LIST_LIMIT:
            lines.append("  ...")
            break
        lines.append(f"  - {entry.name}{'/' if entry.is_dir() else ''}")
    return "\n".join(lines)


def decode_data_url(url: str) -> str:
    header, _, payload = url.partition(",")
    if header.endswith(";base64"):
        return base64.b64decode(payload + "=" * (-len(payload) % 4)).decode(
            "utf-8", errors="replace"
        )
    return unquote_to_bytes(payload).decode("utf-8", errors="replace")


class SessionPrompt:
    def __init__(self, ctx: ProjectContext) -> None:
        self._ctx = ctx
        self._background: set[asyncio.Task] = set()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── prompt ──

    async def prompt(self, input: PromptInput) -> MessageWithParts:
        ctx = self._ctx
        session_id = input.session_id
        logger.info("prompt session=%s", session_id)
        session = ctx.store.get(session_id)
        await ctx.revert.cleanup(session)

        user = await self.create_user_message(input)
        ctx.store.touch(session_id)

        if ctx.locks.is_busy(session_id):
            logger.info("session busy, queued message=%s", user.info.id)
            return await ctx.locks.enqueue(session_id, user.info.id, input)

        agent = ctx.agents.get(input.agent or DEFAULT_AGENT)
        model = self.resolve_model(input.model, agent)
        lock = ctx.locks.lock(session_id)
        try:
            return await self._run(input, session, user, agent, model, lock)
        except BaseException as exc:
            lock.fail_queue(exc)
            raise
        finally:
            lock.release()

    async def _run(
        self,
        input: PromptInput,
        session: SessionInfo,
        user: MessageWithParts,
        agent: AgentInfo,
        model: ModelInfo,
        lock: SessionLock,
    ) -> MessageWithParts:
        ctx = self._ctx
        session_id = session.id
        handle = lock.handle
        provider = ctx.providers.get_provider(model.provider_id)
        system = self.resolve_system_prompt(model, agent, input.system)
        output_limit = min(model.limit.output, OUTPUT_TOKEN_MAX) or OUTPUT_TOKEN_MAX
        params = await ctx.plugins.trigger(
            "chat.params",
            {"model": model, "provider": provider.name, "message": user},
            {
                "temperature": agent.temperature if model.temperature else None,
                "top_p": agent.top_p,
                "options": dict(model.options),
            },
        )

        step = 0
        while True:
            messages = self.insert_reminders(
                await self._get_messages(session_id, model), agent
            )
            if step == 0:
                self._spawn(self.ensure_title(session, user, messages, model))
            step += 1

            assistant = AssistantMessage(
                id=identifier.ascending("message"),
                session_id=session_id,
                system=system,
                mode=agent.name,
                path=MessagePath(cwd=ctx.directory, root=ctx.worktree),
                provider_id=model.provider_id,
                model_id=model.model_id,
            )
            ctx.store.update_message(assistant)
            processor = SessionProcessor(ctx, assistant, model, handle)
            tools = self.resolve_tools(agent, session_id, input.tools, processor)
            request = ModelRequest(
                model=model,
                system=system,
                messages=to_model_messages(messages),
                tools=[
                    ToolSpec(name=t.id, description=t.description, parameters=t.parameters)
                    for t in tools.values()
                    if t.id != INVALID_TOOL
                ] if model.tool_call else [],
                temperature=params["temperature"],
                top_p=params["top_p"],
                max_output_tokens=output_limit,
                options=params["options"],
            )

            def context_for(event: ToolCallEvent, processor=processor) -> ToolContext:
                return ToolContext(
                    session_id=session_id,
                    message_id=processor.message.id,
                    call_id=event.tool_call_id,
                    agent=agent,
                    abort=handle,
                    permissions=ctx.permissions,
                    on_metadata=lambda title, metadata: processor.update_tool_metadata(
                        event.tool_call_id, title, metadata
                    ),
                    extra={"directory": ctx.directory, "model": model.ref},
                )

            result = await processor.process(
                stream_step(provider, request, tools, context_for)
            )

            queued = lock.queued()
            if not result.blocked and result.error is None and not handle.aborted:
                if result.finish_reason == "tool-calls":
                    continue
                if any(item.message_id > result.info.id for item in queued):
                    logger.info("newer queued prompts, continuing session=%s", session_id)
                    continue

            final = MessageWithParts(
                info=result.info, parts=ctx.store.parts(result.info.id)
            )
            lock.resolve_queue(final)
            try:
                ctx.compaction.prune(session_id)
            except Exception:
                logger.exception("prune failed session=%s", session_id)
            logger.info(
                "prompt done session=%s steps=%d finish=%s", session_id, step, result.finish_reason
            )
            return final

    async def _get_messages(
        self, session_id: str, model: ModelInfo
    ) -> list[MessageWithParts]:
        ctx = self._ctx
        messages = filter_summarized(ctx.store.messages(session_id))
        last = last_assistant(messages)
        if last is not None and ctx.compaction.is_overflow(last.tokens, model):
            logger.info("context overflow, compacting session=%s", session_id)
            summary = await ctx.compaction.run(session_id, model.provider_id, model.model_id)
            messages = [summary]
        return messages

    def resolve_model(self, ref: str | None, agent: AgentInfo) -> ModelInfo:
        providers = self._ctx.providers
        ref = ref or agent.model
        if ref:
            return providers.resolve(ref)
        return providers.default_model()

    def resolve_system_prompt(
        self, model: ModelInfo, agent: AgentInfo, override: str | None = None
    ) -> list[str]:
        ctx = self._ctx
        segments = system_prompt.header(model.provider_id)
        if override:
            segments.append(override)
        elif agent.prompt:
            segments.append(agent.prompt)
        else:
            segments.extend(system_prompt.provider_default(model.model_id))
        segments.extend(
            system_prompt.environment(ctx.directory, ctx.worktree, ctx.project.is_git)
        )
        segments.extend(
            system_prompt.custom(ctx.directory, ctx.worktree, ctx.project_config.instructions)
        )
        return system_prompt.fold(segments)

    def resolve_tools(
        self,
        agent: AgentInfo,
        session_id: str,
        overrides: dict[str, bool] | None,
        processor: SessionProcessor,
    ) -> dict[str, ToolInfo]:
        """Enabled tools for this turn, wrapped with the execute hooks."""
        enabled = {**agent.tools, **ToolRegistry.enabled(agent), **(overrides or {})}
        plugins = self._ctx.plugins
        result: dict[str, ToolInfo] = {}
        for tool in self._ctx.tools.tools():
            if wildcard.resolve(tool.id, enabled) is False:
                continue

            async def execute(args, tool_ctx, tool=tool):
                hook_input = {
                    "tool": tool.id,
                    "session_id": session_id,
                    "call_id": tool_ctx.call_id,
                }
                hooked = await plugins.trigger("tool.execute.before", hook_input, {"args": args})
                output = await tool.execute(hooked["args"], tool_ctx)
                await plugins.trigger("tool.execute.after", hook_input, output)
                return output

            result[tool.id] = ToolInfo(
                id=tool.id,
                description=tool.description,
                parameters=tool.parameters,
                execute=execute,
            )
        return result

    def insert_reminders(
        self, messages: list[MessageWithParts], agent: AgentInfo
    ) -> list[MessageWithParts]:
        """Append mode reminders to the latest user message (not persisted)."""
        user = next(
            (m for m in reversed(messages) if isinstance(m.info, UserMessage)), None
        )
        if user is None:
            return messages
        if agent.name == "plan":
            user.parts.append(self._synthetic(user.info, system_prompt.PLAN_REMINDER))
        was_plan = any(
            isinstance(m.info, AssistantMessage) and m.info.mode == "plan"
            for m in messages
        )
        if was_plan and agent.name == "build":
            user.parts.append(
                self._synthetic(user.info, system_prompt.BUILD_SWITCH_REMINDER)
            )
        return messages

    @staticmethod
    def _synthetic(message, text: str) -> TextPart:
        return TextPart(
            id=identifier.ascending("part"),
            session_id=message.session_id,
            message_id=message.id,
            text=text,
            synthetic=True,
        )

    # ── User message materialization ──

    async def create_user_message(self, input: PromptInput) -> MessageWithParts:
        info = UserMessage(
            id=input.message_id or identifier.ascending("message"),
            session_id=input.session_id,
        )
        parts: list[Part] = []
        for raw in input.parts:
            parts.extend(self._expand_part(info, raw))

        await self._ctx.plugins.trigger(
            "chat.message", {}, {"message": info, "parts": parts}
        )
        self._ctx.store.update_message(info)
        for part in parts:
            self._ctx.store.update_part(part)
        return MessageWithParts(info=info, parts=parts)

    def _expand_part(self, info: UserMessage, raw: dict[str, Any]) -> list[Part]:
        kind = raw.get("type")
        if kind == "file":
            return self._expand_file(info, raw)
        if kind == "agent":
            return [
                AgentPart(
                    id=raw.get("id") or identifier.ascending("part"),
                    session_id=info.session_id,
                    message_id=info.id,
                    name=raw["name"],
                    source=raw.get("source"),
                ),
                self._synthetic(
                    info,
                    "Use the above message and context to generate a prompt and "
                    "call the task tool with subagent: " + raw["name"],
                ),
            ]
        return [
            TextPart(
                id=raw.get("id") or identifier.ascending("part"),
                session_id=info.session_id,
                message_id=info.id,
                text=raw.get("text", ""),
                synthetic=bool(raw.get("synthetic", False)),
            )
        ]

    def _file_part(self, info: UserMessage, raw: dict[str, Any], **overrides) -> FilePart:
        fields = {
            "mime": raw.get("mime", ""),
            "url": raw.get("url", ""),
            "filename": raw.get("filename"),
            "source": raw.get("source"),
            **overrides,
        }
        return FilePart(
            id=raw.get("id") or identifier.ascending("part"),
            session_id=info.session_id,
            message_id=info.id,
            **fields,
        )

    def _expand_file(self, info: UserMessage, raw: dict[str, Any]) -> list[Part]:
        url = raw.get("url", "")
        mime = raw.get("mime", "")
        parsed = urlparse(url)

        if parsed.scheme == "data" and mime == "text/plain":
            return [
                self._synthetic(
                    info,
                    "Called the Read tool with the following input: "
                    + json.dumps({"filePath": raw.get("filename")}),
                ),
                self._synthetic(info, decode_data_url(url)),
                self._file_part(info, raw),
            ]

        if parsed.scheme != "file":
            return [self._file_part(info, raw)]

        path = unquote(parsed.path)
        if mime == "text/plain":
            args: dict[str, Any] = {"filePath": path}
            query = parse_qs(parsed.query)
            offset = 0
            limit = None
            if "start" in query:
                start = int(query["start"][0])
                offset = max(start - 1, 0)
                args["offset"] = offset
                if "end" in query:
                    limit = int(query["end"][0]) - offset
                    args["limit"] = limit
            return [
                self._synthetic(
                    info, "Called the Read tool with the following input: " + json.dumps(args)
                ),
                self._synthetic(info, read_file(path, offset, limit)),
                self._file_part(info, raw),
            ]

        if mime == "application/x-directory":
            args = {"path": path}
            return [
                self._synthetic(
                    info, "Called the list tool with the following input: " + json.dumps(args)
                ),
                self._synthetic(info, list_directory(path)),
                self._file_part(info, raw),
            ]

        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            logger.warning("cannot attach file %s: %s", path, exc)
            return [self._synthetic(info, f"Could not read attached file {path}: {exc}")]
        mime = mime or mimetypes.guess_type(path)[0] or "application/octet-stream"
        return [
            self._synthetic(
                info,
                "Called the Read tool with the following input: "
                + json.dumps({"filePath": path}),
            ),
            self._file_part(
                info,
                raw,
                mime=mime,
                url=f"data:{mime};base64," + base64.b64encode(data).decode("ascii"),
                filename=raw.get("filename") or os.path.basename(path),
            ),
        ]

    # ── Title ──

    async def ensure_title(
        self,
        session: SessionInfo,
        user: MessageWithParts,
        history: list[MessageWithParts],
        model: ModelInfo,
    ) -> None:
        """Name a root session after its first real user message."""
        if session.parent_id is not None:
            return
        real = [
            m for m in history
            if isinstance(m.info, UserMessage)
            and not all(getattr(p, "synthetic", False) for p in m.parts)
        ]
        if len(real) != 1:
            return
        ctx = self._ctx
        try:
            small = ctx.providers.small_model(model.provider_id)
            provider = ctx.providers.get_provider(small.provider_id)
            sample = MessageWithParts(
                info=UserMessage(id=identifier.ascending("message"), session_id=session.id),
                parts=user.parts,
            )
            result = await provider.generate(
                ModelRequest(
                    model=small,
                    system=system_prompt.title(small.provider_id),
                    messages=to_model_messages([sample]),
                    max_output_tokens=64,
                )
            )
        except Exception:
            logger.exception("failed to generate title session=%s", session.id)
            return
        cleaned = _THINK_TAGS.sub("", result.text or "").strip()
        if not cleaned:
            return
        if len(cleaned) > TITLE_MAX_LENGTH:
            cleaned = cleaned[:TITLE_MAX_LENGTH - 3] + "..."

        def _edit(info: SessionInfo) -> None:
            info.title = cleaned.strip()

        try:
            ctx.store.update(session.id, _edit)
        except SessionNotFoundError:
            logger.info("session removed before titling session=%s", session.id)
            return
        logger.info("titled session=%s title=%s", session.id, cleaned)

    # ── shell ──

    def _bare_turn(
        self, session_id: str, agent: str, provider_id: str = "", model_id: str = ""
    ) -> AssistantMessage:
        """Synthetic user message plus an empty assistant message."""
        store = self._ctx.store
        user = UserMessage(id=identifier.ascending("message"), session_id=session_id)
        store.update_message(user)
        store.update_part(self._synthetic(user, USER_SHELL_TEXT))
        assistant = AssistantMessage(
            id=identifier.ascending("message"),
            session_id=session_id,
            mode=agent,
            path=MessagePath(cwd=self._ctx.directory, root=self._ctx.worktree),
            provider_id=provider_id,
            model_id=model_id,
        )
        store.update_message(assistant)
        return assistant

    async def _exclusive(
        self, session_id: str, turn: Callable[[SessionLock], Awaitable[MessageWithParts]]
    ) -> MessageWithParts:
        """Run a non-model turn under the session lock.

        Prompts that queued behind it get a model turn before the lock is
        released; the caller still receives the result of *turn*.
        """
        lock = self._ctx.locks.lock(session_id)
        try:
            result = await turn(lock)
            try:
                await self._serve_queue(lock, result)
            except Exception as exc:
                logger.warning("queued prompts failed session=%s: %s", session_id, exc)
                lock.fail_queue(exc)
            return result
        except BaseException as exc:
            lock.fail_queue(exc)
            raise
        finally:
            lock.release()

    async def _serve_queue(self, lock: SessionLock, fallback: MessageWithParts) -> None:
        queued = lock.queued()
        if not queued:
            return
        latest = queued[-1]
        if lock.handle.aborted or latest.input is None:
            lock.resolve_queue(fallback)
            return
        ctx = self._ctx
        input: PromptInput = latest.input
        session = ctx.store.get(lock.session_id)
        user = ctx.store.get_message(lock.session_id, latest.message_id)
        agent = ctx.agents.get(input.agent or DEFAULT_AGENT)
        model = self.resolve_model(input.model, agent)
        logger.info(
            "running %d queued prompt(s) session=%s", len(queued), lock.session_id
        )
        await self._run(input, session, user, agent, model, lock)

    async def shell(self, input: ShellInput) -> MessageWithParts:
        return await self._exclusive(
            input.session_id, lambda lock: self._shell(input, lock)
        )

    async def _shell(self, input: ShellInput, lock: SessionLock) -> MessageWithParts:
        ctx = self._ctx
        store = ctx.store
        session = store.get(input.session_id)
        if session.revert is not None:
            await ctx.revert.cleanup(session)
        assistant = self._bare_turn(input.session_id, input.agent)
        part = ToolPart(
            id=identifier.ascending("part"),
            session_id=input.session_id,
            message_id=assistant.id,
            tool="bash",
            call_id=uuid.uuid4().hex,
            state=ToolState(
                status=ToolStatus.RUNNING,
                input={"command": input.command},
                time=ToolTime(),
            ),
        )
        store.update_part(part)
        captured = {"output": ""}

        def on_output(output: str) -> None:
            captured["output"] = output
            if part.state.status == ToolStatus.RUNNING:
                part.state.metadata = {"output": output, "description": ""}
                store.update_part(part)

        logger.info("user shell session=%s command=%s", input.session_id, input.command[:180])
        try:
            result = await run_shell(
                input.command,
                cwd=ctx.directory,
                on_output=on_output,
                timeout=ctx.config.shell_timeout_seconds or None,
            )
        except asyncio.CancelledError:
            if not lock.handle.aborted:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            part.state = ToolState(
                status=ToolStatus.ERROR,
                input=part.state.input,
                error=ABORTED_TOOL_MESSAGE,
                metadata={"output": captured["output"], "description": ""},
                time=ToolTime(start=part.state.time.start, end=now_ms()),
            )
        else:
            part.state = ToolState(
                status=ToolStatus.COMPLETED,
                input=part.state.input,
                output=result.output,
                title="",
                metadata={
                    "output": result.output,
                    "description": "",
                    "exit": result.exit_code,
                },
                time=ToolTime(start=part.state.time.start, end=now_ms()),
            )
        assistant.time.completed = now_ms()
        store.update_message(assistant)
        store.update_part(part)
        return MessageWithParts(info=assistant, parts=[part])

    # ── command ──

    async def _command_output(self, command: str) -> str:
        try:
            result = await run_shell(command, cwd=self._ctx.directory)
        except OSError as exc:
            return f"Error executing command: {exc}"
        return result.output

    def _reference_parts(self, template: str) -> list[dict[str, Any]]:
        """File, directory or agent parts for ``@name`` references."""
        parts: list[dict[str, Any]] = []
        for match in FILE_REGEX.finditer(template):
            name = match.group(1)
            if not name:
                continue
            if name.startswith("~/"):
                path = Path.home() / name[2:]
            else:
                path = (Path(self._ctx.worktree) / name).resolve()
            if not path.exists():
                agent = self._ctx.agents.find(name)
                if agent is not None:
                    parts.append({"type": "agent", "name": agent.name})
                continue
            parts.append(
                {
                    "type": "file",
                    "url": path.as_uri(),
                    "filename": name,
                    "mime": "application/x-directory" if path.is_dir() else "text/plain",
                }
            )
        return parts

    async def command(self, input: CommandInput) -> MessageWithParts:
        ctx = self._ctx
        logger.info("command session=%s name=%s", input.session_id, input.command)
        cfg = ctx.project_config.commands.get(input.command)
        if cfg is None:
            raise CommandNotFoundError(input.command)
        agent_name = cfg.agent or input.agent or DEFAULT_AGENT

        template = cfg.template.replace("$ARGUMENTS", input.arguments)
        commands = BASH_REGEX.findall(template)
        if commands:
            outputs = iter(
                await asyncio.gather(*(self._command_output(c) for c in commands))
            )
            template = BASH_REGEX.sub(lambda _m: next(outputs), template)

        parts: list[dict[str, Any]] = [{"type": "text", "text": template}]
        parts.extend(self._reference_parts(template))

        if cfg.model:
            model_ref = cfg.model
        elif cfg.agent and ctx.agents.get(cfg.agent).model:
            model_ref = ctx.agents.get(cfg.agent).model
        elif input.model:
            model_ref = input.model
        else:
            model_ref = ctx.providers.default_model().ref

        agent = ctx.agents.get(agent_name)
        if agent.mode == "subagent" or cfg.subtask:
            return await self._subtask(input.session_id, agent, model_ref, template)

        return await self.prompt(
            PromptInput(
                session_id=input.session_id,
                message_id=input.message_id,
                model=model_ref,
                agent=agent_name,
                parts=parts,
            )
        )

    async def _subtask(
        self, session_id: str, agent: AgentInfo, model_ref: str, template: str
    ) -> MessageWithParts:
        """Run a command template through the task tool in a child session."""
        return await self._exclusive(
            session_id,
            lambda lock: self._subtask_turn(session_id, agent, model_ref, template, lock),
        )

    async def _subtask_turn(
        self,
        session_id: str,
        agent: AgentInfo,
        model_ref: str,
        template: str,
        lock: SessionLock,
    ) -> MessageWithParts:
        ctx = self._ctx
        store = ctx.store
        model = ctx.providers.resolve(model_ref)
        assistant = self._bare_turn(
            session_id, agent.name, model.provider_id, model.model_id
        )
        args = {
            "description": "Consulting " + agent.name,
            "subagent_type": agent.name,
            "prompt": template,
        }
        shown = template if len(template) <= 100 else template[:97] + "..."
        part = ToolPart(
            id=identifier.ascending("part"),
            session_id=session_id,
            message_id=assistant.id,
            tool="task",
            call_id=uuid.uuid4().hex,
            state=ToolState(
                status=ToolStatus.RUNNING,
                input={**args, "prompt": shown},
                time=ToolTime(),
            ),
        )
        store.update_part(part)

        def on_metadata(title: str | None, metadata: dict[str, Any]) -> None:
            if part.state.status == ToolStatus.RUNNING:
                part.state.title = title
                part.state.metadata = metadata
                store.update_part(part)

        tool_ctx = ToolContext(
            session_id=session_id,
            message_id=assistant.id,
            call_id=part.call_id,
            agent=agent,
            abort=lock.handle,
            permissions=ctx.permissions,
            on_metadata=on_metadata,
        )
        try:
            result = await ctx.tools.get("task").execute(args, tool_ctx)
        except asyncio.CancelledError:
            if not lock.handle.aborted:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            part.state = ToolState(
                status=ToolStatus.ERROR,
                input=part.state.input,
                error=ABORTED_TOOL_MESSAGE,
                metadata=part.state.metadata,
                time=ToolTime(start=part.state.time.start, end=now_ms()),
            )
        except Exception as exc:
            logger.warning("subtask failed session=%s: %s", session_id, exc)
            part.state = ToolState(
                status=ToolStatus.ERROR,
                input=part.state.input,
                error=str(exc),
                metadata=part.state.metadata,
                time=ToolTime(start=part.state.time.start, end=now_ms()),
            )
        else:
            part.state = ToolState(
                status=ToolStatus.COMPLETED,
                input=part.state.input,
                output=result.output,
                title="",
                metadata=result.metadata,
                time=ToolTime(start=part.state.time.start, end=now_ms()),
            )
        assistant.time.completed = now_ms()
        store.update_message(assistant)
        store.update_part(part)
        return MessageWithParts(info=assistant, parts=[part])

    # ── Summarize ──

    async def summarize(
        self, session_id: str, provider_id: str, model_id: str
    ) -> MessageWithParts:
        """Compact a session on request."""
        return await self._exclusive(
            session_id,
            lambda lock: self._ctx.compaction.run(session_id, provider_id, model_id),
        )

    async def dispose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
