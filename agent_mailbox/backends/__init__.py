"""
Backend adapters.

Provides:
- Backend, BackendRequest, BackendStream and the stream event types
- AnthropicBackend, OpenAIBackend: adapters on the official SDKs
- get_backend: factory with provider auto-detection from the model id
"""

from typing import Optional

from agent_mailbox.backends.base import (
    Backend,
    BackendRequest,
    BackendStream,
    MessageStop,
    StreamError,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
    error_for_status,
)
from agent_mailbox.backends.models_config import (
    DEFAULT_MODEL,
    SUPPORTED_MODELS,
    ModelInfo,
    get_model_info,
    get_provider_for_model,
)
from agent_mailbox.errors import BackendConfigurationError

__all__ = [
    # Contract
    "Backend",
    "BackendRequest",
    "BackendStream",
    "StreamEvent",
    "TextDelta",
    "ThinkingDelta",
    "ToolUseStart",
    "ToolUseDelta",
    "ToolUseEnd",
    "MessageStop",
    "StreamError",
    "error_for_status",
    # Factory
    "get_backend",
    # Model config
    "ModelInfo",
    "SUPPORTED_MODELS",
    "DEFAULT_MODEL",
    "get_model_info",
    "get_provider_for_model",
]


def get_backend(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    **kwargs,
) -> Backend:
    """
    Factory function to get a backend adapter.

    Args:
        provider: "anthropic" or "openai" (optional if model provided)
        model: Model ID; used to auto-detect the provider
        **kwargs: Adapter configuration (e.g., api_key, client)

    Raises:
        BackendConfigurationError: Unknown provider, or missing API key

    Example:
        backend = get_backend(model="claude-sonnet-4-5-20250929")
        backend = get_backend(provider="openai", api_key="sk-...")
    """
    from agent_mailbox.config import get_config

    if provider is None and model:
        provider = get_provider_for_model(model)

    provider = provider or get_config().model_provider

    if provider == "anthropic":
        from agent_mailbox.backends.anthropic import AnthropicBackend
        return AnthropicBackend(**kwargs)

    if provider == "openai":
        from agent_mailbox.backends.openai import OpenAIBackend
        return OpenAIBackend(**kwargs)

    raise BackendConfigurationError(
        f"Unknown backend provider: {provider}\n\n"
        f"Supported providers: 'anthropic', 'openai'"
    )
