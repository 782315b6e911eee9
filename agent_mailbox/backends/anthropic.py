"""
Anthropic backend adapter.

Streams raw Messages API events from anthropic.AsyncAnthropic and
translates them into provider-neutral stream events.
"""

import json
import logging
from typing import Any, AsyncIterator, Optional

from anthropic import APIConnectionError, APIError, APIStatusError, APITimeoutError, AsyncAnthropic

from agent_mailbox.backends.base import (
    Backend,
    BackendRequest,
    BackendStream,
    MessageStop,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
    error_for_status,
)
from agent_mailbox.errors import (
    BackendConfigurationError,
    BackendError,
    ErrorKind,
    FatalBackendError,
    TransientBackendError,
)
from agent_mailbox.interfaces import (
    ImageBlock,
    Message,
    Role,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)


def classify_anthropic_error(error: Exception) -> BackendError:
    """Map an anthropic SDK exception to a transient or fatal BackendError."""
    if isinstance(error, APITimeoutError):
        return TransientBackendError(str(error), kind=ErrorKind.TIMEOUT)
    if isinstance(error, APIConnectionError):
        return TransientBackendError(str(error), kind=ErrorKind.CONNECTION)
    if isinstance(error, APIStatusError):
        return error_for_status(error.status_code, str(error))
    return FatalBackendError(str(error), kind=ErrorKind.UNKNOWN)


class AnthropicBackend(Backend):
    """
    Backend for Claude models.

    Example:
        backend = AnthropicBackend()  # key from config or ANTHROPIC_API_KEY
        handle = runtime.spawn_agent(backend, "claude-sonnet-4-5-20250929", config)
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
        **kwargs,
    ):
        if client is None:
            resolved_api_key = self._resolve_api_key(api_key)
            if not resolved_api_key:
                raise BackendConfigurationError(
                    "Anthropic API key is not configured.\n\n"
                    "Configure it using one of these methods:\n"
                    "  1. configure(anthropic_api_key='sk-ant-...')\n"
                    "  2. export ANTHROPIC_API_KEY='sk-ant-...'\n"
                    "  3. AnthropicBackend(api_key='sk-ant-...')"
                )
            client = AsyncAnthropic(api_key=resolved_api_key, **kwargs)
        self._client = client

    def _resolve_api_key(self, explicit_key: Optional[str]) -> Optional[str]:
        """
        Priority:
        1. Explicit api_key argument
        2. anthropic_api_key in config, then ANTHROPIC_API_KEY
        """
        if explicit_key:
            return explicit_key

        from agent_mailbox.config import get_config
        return get_config().get_anthropic_api_key()

    def stream(self, request: BackendRequest) -> BackendStream:
        return BackendStream(self._events(request))

    async def _events(self, request: BackendRequest) -> AsyncIterator[StreamEvent]:
        request_kwargs = self.build_request_kwargs(request)
        tool_indices: set[int] = set()
        stop_reason = None

        try:
            response = await self._client.messages.create(**request_kwargs, stream=True)
        except APIError as e:
            raise classify_anthropic_error(e) from e

        try:
            async for event in response:
                if event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        tool_indices.add(event.index)
                        yield ToolUseStart(index=event.index, id=block.id, name=block.name)
                    elif block.type == "text":
                        yield TextDelta(index=event.index, text=block.text or "")
                    elif block.type == "thinking":
                        yield ThinkingDelta(
                            index=event.index,
                            thinking=block.thinking or "",
                            signature=getattr(block, "signature", None) or None,
                        )
                    else:
                        logger.debug(f"Skipping unsupported content block type: {block.type}")

                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta":
                        yield TextDelta(index=event.index, text=delta.text)
                    elif delta.type == "input_json_delta":
                        yield ToolUseDelta(index=event.index, partial_json=delta.partial_json)
                    elif delta.type == "thinking_delta":
                        yield ThinkingDelta(index=event.index, thinking=delta.thinking)
                    elif delta.type == "signature_delta":
                        yield ThinkingDelta(index=event.index, signature=delta.signature)

                elif event.type == "content_block_stop":
                    if event.index in tool_indices:
                        yield ToolUseEnd(index=event.index)

                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason or stop_reason

                elif event.type == "message_stop":
                    yield MessageStop(stop_reason=stop_reason)
        except APIError as e:
            raise classify_anthropic_error(e) from e
        finally:
            await response.close()

    # =========================================================================
    # Request conversion
    # =========================================================================

    def build_request_kwargs(self, request: BackendRequest) -> dict:
        sampling = request.sampling
        converted = [self._convert_message(m) for m in request.conversation]
        request_kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self._merge_consecutive_messages([m for m in converted if m["content"]]),
            "max_tokens": sampling.max_tokens,
        }

        if request.system_prompt:
            request_kwargs["system"] = request.system_prompt
        if request.tools:
            request_kwargs["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema,
                }
                for tool in request.tools
            ]

        request_kwargs.update(sampling.extra)
        if "thinking" in request_kwargs:
            # Extended thinking requires temperature 1.0
            request_kwargs["temperature"] = 1.0
        elif sampling.temperature is not None:
            request_kwargs["temperature"] = sampling.temperature

        return request_kwargs

    def _convert_message(self, message: Message) -> dict:
        """
        Convert a Message to Anthropic format.

        Tool-role messages become user messages carrying tool_result blocks.
        Thinking blocks without a signature cannot be replayed and are dropped.
        """
        role = "assistant" if message.role == Role.ASSISTANT else "user"
        blocks = []
        for block in message.content:
            if isinstance(block, TextBlock):
                if block.text:
                    blocks.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                blocks.append({
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": block.media_type,
                        "data": block.base64_data,
                    },
                })
            elif isinstance(block, ToolUseBlock):
                blocks.append({
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.arguments,
                })
            elif isinstance(block, ToolResultBlock):
                result = {
                    "type": "tool_result",
                    "tool_use_id": block.tool_use_id,
                    "content": _result_content(block.content),
                }
                if block.is_error:
                    result["is_error"] = True
                blocks.append(result)
            elif isinstance(block, ThinkingBlock):
                if block.signature:
                    blocks.append({
                        "type": "thinking",
                        "thinking": block.thinking or "",
                        "signature": block.signature,
                    })
        return {"role": role, "content": blocks}

    def _merge_consecutive_messages(self, messages: list[dict]) -> list[dict]:
        """
        Merge consecutive messages with the same role.

        Anthropic requires alternating roles. A user message following a
        batch of tool results (both sent as role "user") gets folded into one.
        """
        merged: list[dict] = []
        for msg in messages:
            if merged and merged[-1]["role"] == msg["role"]:
                merged[-1]["content"] = merged[-1]["content"] + msg["content"]
            else:
                merged.append({"role": msg["role"], "content": list(msg["content"])})
        return merged


def _result_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)
