"""
Backend adapter contract.

A backend turns a BackendRequest into a BackendStream: an async iterator of
provider-neutral stream events that can be cancelled mid-flight.

    stream = backend.stream(request)
    try:
        async for event in stream:
            ...
    finally:
        await stream.cancel()

Adapters raise BackendError subclasses (TransientBackendError for rate
limits, timeouts, 5xx and connection failures; FatalBackendError for
everything the caller has to fix). An adapter may also yield a StreamError
for failures reported in-band by the provider.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from agent_mailbox.errors import (
    BackendError,
    ErrorKind,
    FatalBackendError,
    TransientBackendError,
)
from agent_mailbox.interfaces import Message, SamplingConfig, ToolSpec

logger = logging.getLogger(__name__)


# =============================================================================
# Stream events
# =============================================================================


@dataclass
class StreamEvent:
    """Base class for events yielded by a BackendStream."""


@dataclass
class TextDelta(StreamEvent):
    index: int
    text: str


@dataclass
class ThinkingDelta(StreamEvent):
    index: int
    thinking: str = ""
    signature: Optional[str] = None


@dataclass
class ToolUseStart(StreamEvent):
    index: int
    id: str
    name: str


@dataclass
class ToolUseDelta(StreamEvent):
    index: int
    partial_json: str


@dataclass
class ToolUseEnd(StreamEvent):
    index: int


@dataclass
class MessageStop(StreamEvent):
    stop_reason: Optional[str] = None


@dataclass
class StreamError(StreamEvent):
    error: BackendError


# =============================================================================
# Requests and streams
# =============================================================================


@dataclass
class BackendRequest:
    """Everything a backend needs for one dispatch."""

    conversation: list[Message]
    system_prompt: str
    tools: list[ToolSpec] = field(default_factory=list)
    model: str = ""
    sampling: SamplingConfig = field(default_factory=SamplingConfig)


class BackendStream:
    """
    Cancellable async iterator over stream events.

    Wraps an async generator. Once cancel() returns, iteration stops and
    no further events are yielded.
    """

    def __init__(self, events: AsyncIterator[StreamEvent]):
        self._events = events
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __aiter__(self) -> "BackendStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._cancelled:
            raise StopAsyncIteration
        event = await self._events.__anext__()
        if self._cancelled:
            raise StopAsyncIteration
        return event

    async def cancel(self) -> None:
        """Stop the stream and release the underlying connection."""
        if self._cancelled:
            return
        self._cancelled = True
        aclose = getattr(self._events, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except RuntimeError:
            # The generator is suspended inside another task; the flag
            # above keeps it from yielding again.
            logger.debug("Stream generator busy during cancel; relying on cancel flag")


class Backend(ABC):
    """Abstract base for LLM provider adapters."""

    #: Provider name recorded in snapshots
    name: str = ""

    @abstractmethod
    def stream(self, request: BackendRequest) -> BackendStream:
        """Open a stream for the request. Must not block."""
        ...


def error_for_status(status_code: int, message: str) -> BackendError:
    """
    Classify an HTTP status from a provider into a transient or fatal error.

    Statuses below 400 come from errors reported inside an otherwise
    successful stream (e.g. an overloaded event) and count as transient.
    """
    if status_code == 429:
        return TransientBackendError(message, kind=ErrorKind.RATE_LIMIT)
    if status_code == 408:
        return TransientBackendError(message, kind=ErrorKind.TIMEOUT)
    if status_code == 409 or status_code >= 500 or status_code < 400:
        return TransientBackendError(message, kind=ErrorKind.SERVER_ERROR)
    if status_code == 401:
        return FatalBackendError(message, kind=ErrorKind.AUTHENTICATION)
    if status_code == 403:
        return FatalBackendError(message, kind=ErrorKind.PERMISSION)
    if status_code == 404:
        return FatalBackendError(message, kind=ErrorKind.NOT_FOUND)
    return FatalBackendError(message, kind=ErrorKind.INVALID_REQUEST)
