"""
Known models and their providers.

Used to pick a backend adapter from a model id when the caller does not
name a provider explicitly, and to warn when tools are given to a model
that cannot call them.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ModelInfo:
    id: str
    provider: str  # "openai" or "anthropic"
    context_window: int
    supports_tools: bool = True
    supports_thinking: bool = False


def _models(*infos: ModelInfo) -> dict[str, ModelInfo]:
    return {info.id: info for info in infos}


SUPPORTED_MODELS: dict[str, ModelInfo] = _models(
    ModelInfo("gpt-4o", "openai", 128_000),
    ModelInfo("gpt-4o-mini", "openai", 128_000),
    ModelInfo("o3-mini", "openai", 200_000),
    ModelInfo("o1", "openai", 200_000, supports_tools=False),
    ModelInfo("claude-sonnet-4-5-20250929", "anthropic", 200_000, supports_thinking=True),
    ModelInfo("claude-opus-4-5-20251101", "anthropic", 200_000, supports_thinking=True),
    ModelInfo("claude-haiku-4-5-20251001", "anthropic", 200_000, supports_thinking=True),
    ModelInfo("claude-sonnet-4-20250514", "anthropic", 200_000, supports_thinking=True),
)

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

# Prefixes for ids not listed above
_PROVIDER_PREFIXES = (
    (("gpt-", "o1", "o3", "o4"), "openai"),
    (("claude",), "anthropic"),
)


def get_model_info(model_id: str) -> Optional[ModelInfo]:
    return SUPPORTED_MODELS.get(model_id)


def get_provider_for_model(model_id: str) -> Optional[str]:
    """Return "openai", "anthropic", or None if the id is not recognized."""
    info = get_model_info(model_id)
    if info is not None:
        return info.provider
    for prefixes, provider in _PROVIDER_PREFIXES:
        if model_id.startswith(prefixes):
            return provider
    return None


def model_supports_tools(model_id: str) -> bool:
    """Unknown models are assumed to support tools."""
    info = get_model_info(model_id)
    return info.supports_tools if info else True
