"""Stream processor: turns one model step's events into persisted parts.

One processor handles one assistant message. ``process`` dispatches every
``StreamEvent`` to a handler, records a terminal error on the message
when the stream fails, and always leaves the message structurally
complete: no tool part stays pending or running, and ``time.completed``
is set.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from codeagent.adapters.events import SessionError
from codeagent.shared.models.message import (
    ABORTED_ERROR,
    AUTH_ERROR,
    OUTPUT_LENGTH_ERROR,
    UNKNOWN_ERROR,
    AssistantMessage,
    MessageError,
    PartTime,
    PatchPart,
    ReasoningPart,
    StepFinishPart,
    StepStartPart,
    TextPart,
    ToolPart,
    ToolState,
    ToolStatus,
    ToolTime,
    now_ms,
)

from . import identifier
from .errors import OutputLengthError, PermissionRejectedError, ProviderAuthError
from .history import get_usage
from .stream_events import StreamEvent

if TYPE_CHECKING:
    from .instance import ProjectContext
    from .lock import AbortHandle
    from .providers.base import ModelInfo

logger = logging.getLogger(__name__)

ABORTED_TOOL_MESSAGE = "Tool execution aborted"


def classify_error(exc: BaseException) -> MessageError:
    """Map an exception that ended a turn onto a stored MessageError."""
    if isinstance(exc, asyncio.CancelledError):
        return MessageError(ABORTED_ERROR, {"message": "The operation was aborted."})
    if isinstance(exc, OutputLengthError):
        return MessageError(OUTPUT_LENGTH_ERROR, {"message": str(exc)})
    if isinstance(exc, ProviderAuthError):
        return MessageError(
            AUTH_ERROR, {"provider_id": exc.provider_id, "message": str(exc)}
        )
    return MessageError(UNKNOWN_ERROR, {"message": str(exc)})


@dataclass
class StepOutcome:
    info: AssistantMessage
    finish_reason: str | None = None
    blocked: bool = False

    @property
    def error(self) -> MessageError | None:
        return self.info.error


class SessionProcessor:
    def __init__(
        self,
        ctx: ProjectContext,
        assistant: AssistantMessage,
        model: ModelInfo,
        abort: AbortHandle | None = None,
    ) -> None:
        self._ctx = ctx
        self.message = assistant
        self._model = model
        self._abort = abort
        self._toolcalls: dict[str, ToolPart] = {}
        self._texts: dict[str, TextPart] = {}
        self._reasoning: dict[str, ReasoningPart] = {}
        self._snapshot: str | None = None
        self._finish_reason: str | None = None
        self.blocked = False
        self._handlers = {
            "start": self._ignore,
            "finish": self._ignore,
            "tool-input-delta": self._ignore,
            "tool-input-end": self._ignore,
            "start-step": self._on_start_step,
            "finish-step": self._on_finish_step,
            "text-start": self._on_text_start,
            "text-delta": self._on_text_delta,
            "text-end": self._on_text_end,
            "reasoning-start": self._on_reasoning_start,
            "reasoning-delta": self._on_reasoning_delta,
            "reasoning-end": self._on_reasoning_end,
            "tool-input-start": self._on_tool_input_start,
            "tool-call": self._on_tool_call,
            "tool-result": self._on_tool_result,
            "tool-error": self._on_tool_error,
            "error": self._on_error,
        }

    def part_for_call(self, call_id: str) -> ToolPart | None:
        return self._toolcalls.get(call_id)

    async def update_tool_metadata(
        self, call_id: str, title: str | None, metadata: dict[str, Any]
    ) -> None:
        part = self._toolcalls.get(call_id)
        if part is None or part.state.status != ToolStatus.RUNNING:
            return
        if title is not None:
            part.state.title = title
        part.state.metadata = metadata
        self._ctx.store.update_part(part)

    async def process(self, events: AsyncIterator[StreamEvent]) -> StepOutcome:
        try:
            async with aclosing(events) as stream:
                async for event in stream:
                    handler = self._handlers.get(event.type)
                    if handler is None:
                        logger.warning("unhandled stream event type=%s", event.type)
                        continue
                    await handler(event)
        except asyncio.CancelledError as exc:
            if self._abort is None or not self._abort.aborted:
                self._close_dangling()
                self._complete()
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            self._fail(exc)
        except Exception as exc:
            logger.warning(
                "step failed session=%s message=%s: %s",
                self.message.session_id, self.message.id, exc, exc_info=True,
            )
            self._fail(exc)

        if self._snapshot:
            await self._record_patch()
        self._close_dangling()
        self._complete()
        logger.debug(
            "step done session=%s message=%s finish=%s blocked=%s",
            self.message.session_id, self.message.id, self._finish_reason, self.blocked,
        )
        return StepOutcome(
            info=self.message, finish_reason=self._finish_reason, blocked=self.blocked
        )

    # ── Terminal bookkeeping ──

    def _fail(self, exc: BaseException) -> None:
        error = classify_error(exc)
        self.message.error = error
        self._ctx.store.update_message(self.message)
        self._ctx.bus.publish(
            SessionError(
                session_id=self.message.session_id,
                error={"name": error.name, "data": error.data},
            )
        )

    def _close_dangling(self) -> None:
        for part in self._ctx.store.parts(self.message.id):
            if not isinstance(part, ToolPart):
                continue
            if part.state.finished:
                continue
            start = part.state.time.start if part.state.time else now_ms()
            part.state = ToolState(
                status=ToolStatus.ERROR,
                input=part.state.input,
                error=ABORTED_TOOL_MESSAGE,
                metadata=part.state.metadata,
                time=ToolTime(start=start, end=now_ms()),
            )
            self._ctx.store.update_part(part)
        self._toolcalls.clear()

    def _complete(self) -> None:
        self.message.time.completed = now_ms()
        self._ctx.store.update_message(self.message)

    async def _record_patch(self) -> None:
        patch = await self._ctx.snapshot.patch(self._snapshot)
        self._snapshot = None
        if not patch.files:
            return
        self._ctx.store.update_part(
            PatchPart(
                id=identifier.ascending("part"),
                session_id=self.message.session_id,
                message_id=self.message.id,
                hash=patch.hash,
                files=patch.files,
            )
        )

    def _new_id(self) -> str:
        return identifier.ascending("part")

    # ── Handlers ──

    async def _ignore(self, event: StreamEvent) -> None:
        return None

    async def _on_error(self, event) -> None:
        raise event.error or RuntimeError("provider stream error")

    async def _on_start_step(self, event) -> None:
        self._snapshot = await self._ctx.snapshot.track()
        self._ctx.store.update_part(
            StepStartPart(
                id=self._new_id(),
                session_id=self.message.session_id,
                message_id=self.message.id,
                snapshot=self._snapshot,
            )
        )

    async def _on_finish_step(self, event) -> None:
        cost, tokens = get_usage(self._model, event.usage)
        self.message.cost += cost
        self.message.tokens = tokens
        self._finish_reason = event.finish_reason
        self._ctx.store.update_part(
            StepFinishPart(
                id=self._new_id(),
                session_id=self.message.session_id,
                message_id=self.message.id,
                tokens=tokens,
                cost=cost,
                snapshot=self._snapshot,
            )
        )
        self._ctx.store.update_message(self.message)
        if self._snapshot:
            await self._record_patch()
        if event.finish_reason == "length":
            raise OutputLengthError("Model output exceeded its token limit")

    async def _on_text_start(self, event) -> None:
        part = TextPart(
            id=self._new_id(),
            session_id=self.message.session_id,
            message_id=self.message.id,
            time=PartTime(),
        )
        self._texts[event.id] = part
        self._ctx.store.update_part(part)

    async def _on_text_delta(self, event) -> None:
        part = self._texts.get(event.id)
        if part is None:
            await self._on_text_start(event)
            part = self._texts[event.id]
        part.text += event.text
        if part.text:
            self._ctx.store.update_part(part, delta=event.text)

    async def _on_text_end(self, event) -> None:
        part = self._texts.pop(event.id, None)
        if part is None:
            return
        part.text = part.text.rstrip()
        part.time.end = now_ms()
        self._ctx.store.update_part(part)

    async def _on_reasoning_start(self, event) -> None:
        part = ReasoningPart(
            id=self._new_id(),
            session_id=self.message.session_id,
            message_id=self.message.id,
            metadata=event.metadata,
            time=PartTime(),
        )
        self._reasoning[event.id] = part
        self._ctx.store.update_part(part)

    async def _on_reasoning_delta(self, event) -> None:
        part = self._reasoning.get(event.id)
        if part is None:
            await self._on_reasoning_start(event)
            part = self._reasoning[event.id]
        part.text += event.text
        if event.metadata:
            part.metadata = event.metadata
        self._ctx.store.update_part(part, delta=event.text)

    async def _on_reasoning_end(self, event) -> None:
        part = self._reasoning.pop(event.id, None)
        if part is None:
            return
        part.text = part.text.rstrip()
        part.time.end = now_ms()
        if event.metadata:
            part.metadata = event.metadata
        self._ctx.store.update_part(part)

    async def _on_tool_input_start(self, event) -> None:
        part = ToolPart(
            id=self._new_id(),
            session_id=self.message.session_id,
            message_id=self.message.id,
            tool=event.tool_name,
            call_id=event.id,
            state=ToolState(status=ToolStatus.PENDING),
        )
        self._toolcalls[event.id] = part
        self._ctx.store.update_part(part)

    async def _on_tool_call(self, event) -> None:
        part = self._toolcalls.get(event.tool_call_id)
        if part is None:
            part = ToolPart(
                id=self._new_id(),
                session_id=self.message.session_id,
                message_id=self.message.id,
                call_id=event.tool_call_id,
            )
            self._toolcalls[event.tool_call_id] = part
        part.tool = event.tool_name
        part.state = ToolState(
            status=ToolStatus.RUNNING,
            input=event.input,
            metadata=event.metadata,
            time=ToolTime(start=now_ms()),
        )
        self._ctx.store.update_part(part)

    async def _on_tool_result(self, event) -> None:
        part = self._toolcalls.pop(event.tool_call_id, None)
        if part is None or part.state.status != ToolStatus.RUNNING:
            logger.debug("tool result for unknown call=%s", event.tool_call_id)
            return
        part.state = ToolState(
            status=ToolStatus.COMPLETED,
            input=event.input,
            output=event.output,
            title=event.title,
            metadata=event.metadata,
            time=ToolTime(start=part.state.time.start, end=now_ms()),
        )
        self._ctx.store.update_part(part)

    async def _on_tool_error(self, event) -> None:
        part = self._toolcalls.pop(event.tool_call_id, None)
        if part is None or part.state.status != ToolStatus.RUNNING:
            logger.debug("tool error for unknown call=%s", event.tool_call_id)
            return
        part.state = ToolState(
            status=ToolStatus.ERROR,
            input=event.input,
            error=str(event.error),
            metadata=part.state.metadata,
            time=ToolTime(start=part.state.time.start, end=now_ms()),
        )
        self._ctx.store.update_part(part)
        if isinstance(event.error, PermissionRejectedError):
            self.blocked = True
