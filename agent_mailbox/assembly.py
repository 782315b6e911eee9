"""
Assembly of streamed events into an assistant Message.

Providers send tool arguments as JSON fragments. Each tool block gets an
explicit accumulator that is OPEN from ToolUseStart until ToolUseEnd, when
the buffered fragments are parsed. Text and thinking blocks accumulate
directly.

Anything out of order (a delta for an unknown index, a second start on the
same index, fragments after the end, an unterminated tool block, a missing
MessageStop) raises MalformedStreamEventError.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from agent_mailbox.backends.base import (
    MessageStop,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolUseDelta,
    ToolUseEnd,
    ToolUseStart,
)
from agent_mailbox.errors import MalformedStreamEventError
from agent_mailbox.interfaces import (
    ContentBlock,
    Message,
    Role,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
)


class AccumulatorState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class ToolUseAccumulator:
    """Buffers argument fragments for one tool block."""

    index: int
    id: str
    name: str
    fragments: list[str] = field(default_factory=list)
    state: AccumulatorState = AccumulatorState.OPEN
    arguments: Optional[dict] = None

    def push(self, fragment: str) -> None:
        if self.state is not AccumulatorState.OPEN:
            raise MalformedStreamEventError(
                f"Argument fragment for closed tool block {self.index} ({self.name})"
            )
        self.fragments.append(fragment)

    def close(self) -> dict:
        if self.state is not AccumulatorState.OPEN:
            raise MalformedStreamEventError(f"Tool block {self.index} closed twice")
        raw = "".join(self.fragments).strip()
        try:
            arguments = json.loads(raw) if raw else {}
        except json.JSONDecodeError as e:
            raise MalformedStreamEventError(
                f"Invalid JSON arguments for tool {self.name!r}: {e}"
            ) from e
        if not isinstance(arguments, dict):
            raise MalformedStreamEventError(
                f"Tool {self.name!r} arguments must be a JSON object, got {type(arguments).__name__}"
            )
        self.arguments = arguments
        self.state = AccumulatorState.CLOSED
        return arguments

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(id=self.id, name=self.name, arguments=self.arguments or {})


@dataclass
class _TextBuffer:
    parts: list[str] = field(default_factory=list)

    def to_block(self) -> Optional[TextBlock]:
        text = "".join(self.parts)
        return TextBlock(text=text) if text else None


@dataclass
class _ThinkingBuffer:
    parts: list[str] = field(default_factory=list)
    signature: Optional[str] = None

    def to_block(self) -> ThinkingBlock:
        return ThinkingBlock(thinking="".join(self.parts) or None, signature=self.signature)


_Buffer = Union[ToolUseAccumulator, _TextBuffer, _ThinkingBuffer]


class MessageAssembler:
    """
    Folds a sequence of stream events into one assistant Message.

    Example:
        assembler = MessageAssembler()
        async for event in stream:
            assembler.feed(event)
        message = assembler.finish()
    """

    def __init__(self):
        self._blocks: dict[int, _Buffer] = {}
        self._stopped = False
        self.stop_reason: Optional[str] = None

    @property
    def stopped(self) -> bool:
        return self._stopped

    def feed(self, event: StreamEvent) -> None:
        if self._stopped:
            raise MalformedStreamEventError(f"{type(event).__name__} after MessageStop")

        if isinstance(event, TextDelta):
            self._buffer(event.index, _TextBuffer).parts.append(event.text)
        elif isinstance(event, ThinkingDelta):
            buffer = self._buffer(event.index, _ThinkingBuffer)
            if event.thinking:
                buffer.parts.append(event.thinking)
            if event.signature:
                buffer.signature = event.signature
        elif isinstance(event, ToolUseStart):
            if event.index in self._blocks:
                raise MalformedStreamEventError(f"Duplicate start for block {event.index}")
            if not event.id or not event.name:
                raise MalformedStreamEventError(f"Tool block {event.index} is missing an id or name")
            self._blocks[event.index] = ToolUseAccumulator(event.index, event.id, event.name)
        elif isinstance(event, ToolUseDelta):
            self._tool(event.index).push(event.partial_json)
        elif isinstance(event, ToolUseEnd):
            self._tool(event.index).close()
        elif isinstance(event, MessageStop):
            self._stopped = True
            self.stop_reason = event.stop_reason
        else:
            raise MalformedStreamEventError(f"Unexpected stream event: {event!r}")

    def _buffer(self, index: int, kind: type) -> _Buffer:
        buffer = self._blocks.get(index)
        if buffer is None:
            buffer = kind()
            self._blocks[index] = buffer
        elif not isinstance(buffer, kind):
            raise MalformedStreamEventError(
                f"Block {index} received {kind.__name__.strip('_')} data but is a {type(buffer).__name__.strip('_')}"
            )
        return buffer

    def _tool(self, index: int) -> ToolUseAccumulator:
        buffer = self._blocks.get(index)
        if not isinstance(buffer, ToolUseAccumulator):
            raise MalformedStreamEventError(f"No tool block started at index {index}")
        return buffer

    def finish(self) -> Message:
        """Return the assembled assistant message."""
        if not self._stopped:
            raise MalformedStreamEventError("Stream ended without MessageStop")

        content: list[ContentBlock] = []
        for index in sorted(self._blocks):
            buffer = self._blocks[index]
            if isinstance(buffer, ToolUseAccumulator) and buffer.state is AccumulatorState.OPEN:
                raise MalformedStreamEventError(
                    f"Tool block {index} ({buffer.name}) never received ToolUseEnd"
                )
            block = buffer.to_block()
            if block is not None:
                content.append(block)
        return Message(role=Role.ASSISTANT, content=content)
