"""Abstract base for model providers.

A provider turns a ``ModelRequest`` into either a stream of
``StreamEvent``s (one model step, no tool execution) or a single
non-streaming completion. Messages use the OpenAI chat format
(``{"role", "content", "tool_calls", "tool_call_id"}``) as the
provider-neutral wire shape.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..stream_events import StreamEvent, Usage
from ..yaml_config import ModelCost, ModelLimit

logger = logging.getLogger(__name__)


@dataclass
class ModelInfo:
    """A concrete model on a provider, with its limits and pricing."""
    provider_id: str
    model_id: str
    name: str = ""
    limit: ModelLimit = field(default_factory=ModelLimit)
    cost: ModelCost = field(default_factory=ModelCost)
    temperature: bool = True
    tool_call: bool = True
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


@dataclass
class ToolSpec:
    """Tool as advertised to the model."""
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class ModelRequest:
    model: ModelInfo
    system: list[str] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    tools: list[ToolSpec] = field(default_factory=list)
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerateResult:
    """Result of a non-streaming completion."""
    text: str
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"
    metadata: dict[str, Any] = field(default_factory=dict)


class Provider(abc.ABC):
    """Abstract provider interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider id as used in ``provider/model`` references."""

    @abc.abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream one model step.

        Must yield ``start-step`` first and ``finish-step`` last; tool
        calls are reported with ``tool-call`` and never executed here.
        """

    @abc.abstractmethod
    async def generate(self, request: ModelRequest) -> GenerateResult:
        """Single completion without tools (titles, summaries)."""

    def is_available(self) -> bool:
        """Whether credentials/endpoint are configured."""
        return True

    def models(self) -> list[ModelInfo]:
        """Models this provider advertises (may be empty)."""
        return []
