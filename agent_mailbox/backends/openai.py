"""
OpenAI backend adapter.

Streams chat-completion chunks from openai.AsyncOpenAI. Text is reported
on block index 0 and tool call i on block index 1 + i. Tool blocks are
closed when the provider reports a finish reason.
"""

import json
import logging
from typing import Any, AsyncIterator, Optional

from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, AsyncOpenAI

from agent_mailbox.backends.base import (
    Backend,
    BackendRequest,
    BackendStream,
    MessageStop,
    StreamEvent,
    TextDelta,
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
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)


def classify_openai_error(error: Exception) -> BackendError:
    """Map an openai SDK exception to a transient or fatal BackendError."""
    if isinstance(error, APITimeoutError):
        return TransientBackendError(str(error), kind=ErrorKind.TIMEOUT)
    if isinstance(error, APIConnectionError):
        return TransientBackendError(str(error), kind=ErrorKind.CONNECTION)
    if isinstance(error, APIStatusError):
        return error_for_status(error.status_code, str(error))
    return FatalBackendError(str(error), kind=ErrorKind.UNKNOWN)


class OpenAIBackend(Backend):
    """Backend for OpenAI chat-completion models."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
        **kwargs,
    ):
        if client is None:
            resolved_api_key = api_key or self._config_api_key()
            if not resolved_api_key:
                raise BackendConfigurationError(
                    "OpenAI API key is not configured.\n\n"
                    "Configure it using one of these methods:\n"
                    "  1. configure(openai_api_key='sk-...')\n"
                    "  2. export OPENAI_API_KEY='sk-...'\n"
                    "  3. OpenAIBackend(api_key='sk-...')"
                )
            client = AsyncOpenAI(api_key=resolved_api_key, **kwargs)
        self._client = client

    @staticmethod
    def _config_api_key() -> Optional[str]:
        from agent_mailbox.config import get_config
        return get_config().get_openai_api_key()

    def stream(self, request: BackendRequest) -> BackendStream:
        return BackendStream(self._events(request))

    async def _events(self, request: BackendRequest) -> AsyncIterator[StreamEvent]:
        request_kwargs = self.build_request_kwargs(request)
        started: list[int] = []
        finish_reason = None

        try:
            response = await self._client.chat.completions.create(**request_kwargs)
        except APIError as e:
            raise classify_openai_error(e) from e

        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                if delta is not None and delta.content:
                    yield TextDelta(index=0, text=delta.content)

                for call in (delta.tool_calls if delta is not None else None) or []:
                    index = 1 + call.index
                    if index not in started:
                        started.append(index)
                        name = call.function.name if call.function is not None else None
                        yield ToolUseStart(index=index, id=call.id or "", name=name or "")
                    if call.function is not None and call.function.arguments:
                        yield ToolUseDelta(index=index, partial_json=call.function.arguments)

                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except APIError as e:
            raise classify_openai_error(e) from e
        finally:
            await response.close()

        # No finish reason means the stream was cut short; leave it
        # unterminated so assembly rejects it.
        if finish_reason is None:
            logger.warning("OpenAI stream ended without a finish reason")
            return

        for index in started:
            yield ToolUseEnd(index=index)
        yield MessageStop(stop_reason=finish_reason)

    # =========================================================================
    # Request conversion
    # =========================================================================

    def build_request_kwargs(self, request: BackendRequest) -> dict:
        sampling = request.sampling
        messages: list[dict] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for message in request.conversation:
            messages.extend(self._convert_message(message))

        request_kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_completion_tokens": sampling.max_tokens,
            "stream": True,
        }
        if sampling.temperature is not None:
            request_kwargs["temperature"] = sampling.temperature
        if request.tools:
            request_kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
                for tool in request.tools
            ]
        request_kwargs.update(sampling.extra)
        return request_kwargs

    def _convert_message(self, message: Message) -> list[dict]:
        """
        Convert a Message to one or more OpenAI chat messages.

        Each tool result becomes its own "tool" message.
        """
        results = [
            {
                "role": "tool",
                "tool_call_id": block.tool_use_id,
                "content": _result_content(block),
            }
            for block in message.tool_results
        ]

        if message.role == Role.ASSISTANT:
            converted: dict[str, Any] = {"role": "assistant", "content": message.text or None}
            if message.tool_uses:
                converted["tool_calls"] = [
                    {
                        "id": block.id,
                        "type": "function",
                        "function": {"name": block.name, "arguments": json.dumps(block.arguments)},
                    }
                    for block in message.tool_uses
                ]
            return [converted]

        parts = []
        for block in message.content:
            if isinstance(block, TextBlock) and block.text:
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{block.media_type};base64,{block.base64_data}"},
                })
        if not parts:
            return results
        if all(p["type"] == "text" for p in parts):
            content: Any = "".join(p["text"] for p in parts)
        else:
            content = parts
        return results + [{"role": "user", "content": content}]


def _result_content(block: ToolResultBlock) -> str:
    content = block.content
    if content is None:
        text = ""
    elif isinstance(content, str):
        text = content
    else:
        text = json.dumps(content, default=str)
    return f"Error: {text}" if block.is_error else text
