"""Provider registry: maps provider ids to Provider instances and
resolves ``provider/model`` references (or model aliases) to ModelInfo."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import ModelNotFoundError, ProviderNotAvailableError
from .base import ModelInfo, Provider
from .openai_compat import OpenAICompatProvider

if TYPE_CHECKING:
    from ..yaml_config import ModelConfig, ProjectConfig, ProviderConfig

logger = logging.getLogger(__name__)

PROVIDER_TYPES: dict[str, type] = {
    "openai": OpenAICompatProvider,
}


def parse_model_ref(ref: str) -> tuple[str, str]:
    """Split ``provider/model`` (model ids may contain further slashes)."""
    provider_id, sep, model_id = ref.partition("/")
    if not sep or not provider_id or not model_id:
        raise ValueError(f"Invalid model reference {ref!r}, expected provider/model")
    return provider_id, model_id


def _model_info(cfg: ModelConfig) -> ModelInfo:
    return ModelInfo(
        provider_id=cfg.provider,
        model_id=cfg.model_id,
        name=cfg.name or cfg.model_id,
        limit=cfg.limit,
        cost=cfg.cost,
        temperature=cfg.temperature,
        tool_call=cfg.tool_call,
        options=dict(cfg.options),
    )


class ProviderRegistry:
    """Registry of configured model providers and models."""

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}
        self._aliases: dict[str, ModelInfo] = {}
        self._models: dict[tuple[str, str], ModelInfo] = {}
        self.default_ref: str | None = None
        self.small_ref: str | None = None

    @classmethod
    def from_config(
        cls,
        config: ProjectConfig,
        default_model: str | None = None,
        small_model: str | None = None,
    ) -> ProviderRegistry:
        registry = cls()
        for provider_id, pcfg in config.providers.items():
            registry.register(provider_id, registry._build(provider_id, pcfg))
        for alias, mcfg in config.models.items():
            registry.add_model(_model_info(mcfg), alias=alias)
        registry.default_ref = config.model or default_model
        registry.small_ref = config.small_model or small_model
        return registry

    @staticmethod
    def _build(provider_id: str, pcfg: ProviderConfig) -> Provider:
        provider_cls = PROVIDER_TYPES.get(pcfg.type)
        if provider_cls is None:
            raise ProviderNotAvailableError(
                provider_id, f"unknown provider type {pcfg.type!r}"
            )
        return provider_cls(provider_id, pcfg)

    def register(self, provider_id: str, provider: Provider) -> None:
        """Register a provider by id."""
        self._providers[provider_id] = provider
        for model in provider.models():
            self.add_model(model)
        logger.info(
            "Provider registered: %s (available=%s)",
            provider_id,
            provider.is_available(),
        )

    def add_model(self, model: ModelInfo, alias: str | None = None) -> None:
        self._models[(model.provider_id, model.model_id)] = model
        if alias:
            self._aliases[alias] = model

    def get_provider(self, provider_id: str) -> Provider:
        provider = self._providers.get(provider_id)
        if provider is None:
            available = ", ".join(self._providers) or "none"
            raise ProviderNotAvailableError(
                provider_id, f"not configured (available: {available})"
            )
        return provider

    def get_model(self, provider_id: str, model_id: str) -> ModelInfo:
        if provider_id not in self._providers:
            raise ModelNotFoundError(provider_id, model_id)
        model = self._models.get((provider_id, model_id))
        if model is not None:
            return model
        # Unlisted models on a configured provider get zero limits
        # (context 0 disables overflow detection).
        return ModelInfo(provider_id=provider_id, model_id=model_id, name=model_id)

    def resolve(self, ref: str) -> ModelInfo:
        """Resolve an alias or ``provider/model`` reference."""
        if ref in self._aliases:
            return self._aliases[ref]
        provider_id, model_id = parse_model_ref(ref)
        return self.get_model(provider_id, model_id)

    def default_model(self) -> ModelInfo:
        if self.default_ref:
            return self.resolve(self.default_ref)
        if self._aliases:
            return next(iter(self._aliases.values()))
        if self._models:
            return next(iter(self._models.values()))
        raise ModelNotFoundError("", "no default model configured")

    def small_model(self, provider_id: str | None = None) -> ModelInfo:
        """Model for cheap auxiliary calls (titles); falls back to the default."""
        if self.small_ref:
            return self.resolve(self.small_ref)
        return self.default_model()

    def list_names(self) -> list[str]:
        return list(self._providers)

    def list_models(self) -> list[ModelInfo]:
        return list(self._models.values())
