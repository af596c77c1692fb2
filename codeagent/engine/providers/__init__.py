"""Model providers."""
from .base import GenerateResult, ModelInfo, ModelRequest, Provider, ToolSpec
from .openai_compat import OpenAICompatProvider
from .registry import ProviderRegistry, parse_model_ref

__all__ = [
    "GenerateResult",
    "ModelInfo",
    "ModelRequest",
    "OpenAICompatProvider",
    "Provider",
    "ProviderRegistry",
    "ToolSpec",
    "parse_model_ref",
]
