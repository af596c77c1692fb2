"""Context budget management: overflow detection, summarization, pruning.

Summarization replaces the visible history with one ``summary=True``
assistant message. Pruning keeps the newest PRUNE_PROTECT tokens of tool
output and marks older outputs as compacted, which hides them from the
model without deleting them from storage.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from codeagent.adapters.events import SessionCompacted
from codeagent.shared.models.message import (
    AssistantMessage,
    MessagePath,
    MessageWithParts,
    PartTime,
    TextPart,
    TokenUsage,
    ToolPart,
    ToolStatus,
    now_ms,
)

from . import identifier, system_prompt
from .config import OUTPUT_TOKEN_MAX, PRUNE_MINIMUM, PRUNE_PROTECT
from .history import filter_summarized, get_usage, to_model_messages
from .providers.base import ModelInfo, ModelRequest

if TYPE_CHECKING:
    from .instance import ProjectContext

logger = logging.getLogger(__name__)


def estimate_tokens(text: str | None) -> int:
    """Rough token count (four characters per token)."""
    return round(len(text or "") / 4)


class SessionCompaction:
    def __init__(self, ctx: ProjectContext) -> None:
        self._ctx = ctx

    def is_overflow(self, tokens: TokenUsage, model: ModelInfo) -> bool:
        if self._ctx.config.disable_autocompact:
            return False
        context = model.limit.context
        if context == 0:
            return False
        count = tokens.input + tokens.cache.read + tokens.output
        output = min(model.limit.output, OUTPUT_TOKEN_MAX) or OUTPUT_TOKEN_MAX
        return count > context - output

    async def run(
        self, session_id: str, provider_id: str, model_id: str
    ) -> MessageWithParts:
        """Summarize the session history into a new summary message."""
        ctx = self._ctx
        store = ctx.store

        def _start(info) -> None:
            info.time.compacting = now_ms()

        def _finish(info) -> None:
            info.time.compacting = None

        store.update(session_id, _start)
        try:
            history = filter_summarized(store.messages(session_id))
            model = ctx.providers.get_model(provider_id, model_id)
            provider = ctx.providers.get_provider(provider_id)
            system = [
                *system_prompt.summarize(provider_id),
                *system_prompt.environment(ctx.directory, ctx.worktree, ctx.project.is_git),
                *system_prompt.custom(
                    ctx.directory, ctx.worktree, ctx.project_config.instructions
                ),
            ]
            msg = AssistantMessage(
                id=identifier.ascending("message"),
                session_id=session_id,
                system=system,
                mode="build",
                path=MessagePath(cwd=ctx.directory, root=ctx.worktree),
                provider_id=provider_id,
                model_id=model_id,
            )
            store.update_message(msg)
            logger.info("compacting session=%s messages=%d", session_id, len(history))
            messages = to_model_messages(history)
            messages.append(
                {
                    "role": "user",
                    "content": [{"type": "text", "text": system_prompt.SUMMARY_INSTRUCTION}],
                }
            )
            generated = await provider.generate(
                ModelRequest(model=model, system=system, messages=messages)
            )
            cost, tokens = get_usage(model, generated.usage)
            msg.cost += cost
            msg.tokens = tokens
            msg.summary = True
            msg.time.completed = now_ms()
            store.update_message(msg)
            part = TextPart(
                id=identifier.ascending("part"),
                session_id=session_id,
                message_id=msg.id,
                text=generated.text,
                time=PartTime(start=now_ms(), end=now_ms()),
            )
            store.update_part(part)
            ctx.bus.publish(SessionCompacted(session_id=session_id))
            return MessageWithParts(info=msg, parts=[part])
        finally:
            store.update(session_id, _finish)

    def prune(self, session_id: str) -> int:
        """Mark old tool outputs as compacted. Returns how many were pruned."""
        if self._ctx.config.disable_prune:
            return 0
        messages = self._ctx.store.messages(session_id)
        total = 0
        pruned = 0
        to_prune: list[ToolPart] = []
        done = False
        for index in range(len(messages) - 2, -1, -1):
            item = messages[index]
            if isinstance(item.info, AssistantMessage) and item.info.summary:
                break
            for part in reversed(item.parts):
                if not isinstance(part, ToolPart):
                    continue
                if part.state.status != ToolStatus.COMPLETED:
                    continue
                if part.state.time is not None and part.state.time.compacted:
                    done = True
                    break
                estimate = estimate_tokens(part.state.output)
                total += estimate
                if total > PRUNE_PROTECT:
                    pruned += estimate
                    to_prune.append(part)
            if done:
                break
        logger.info("prune scan session=%s total=%d prunable=%d", session_id, total, pruned)
        if pruned <= PRUNE_MINIMUM:
            return 0
        stamp = now_ms()
        for part in to_prune:
            part.state.time.compacted = stamp
            self._ctx.store.update_part(part)
        logger.info("pruned session=%s count=%d", session_id, len(to_prune))
        return len(to_prune)
