"""
Core data model for agent_mailbox.

Defines the framework-neutral types every other module speaks:
- AgentHandle: opaque identifier for a spawned agent
- ContentBlock variants and Message: the conversation format
- Conversation: append-only message history owned by one agent
- ToolSpec and SamplingConfig: what gets declared to a backend
- AgentState: the per-agent state machine tags
- AgentCommand variants: what callers put into a mailbox

All types round-trip through plain dicts (to_dict / from_dict) so they
can be persisted as JSON.
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Iterator, Optional, Union
from uuid import UUID, uuid4


# =============================================================================
# Handles
# =============================================================================


@dataclass(frozen=True)
class AgentHandle:
    """
    Opaque, unique identifier for an agent.

    The name is for humans; the id makes the handle unique. Handles are
    hashable and compare by value.
    """

    name: str
    id: UUID = field(default_factory=uuid4)

    def __str__(self) -> str:
        return f"{self.name}:{self.id}"

    @classmethod
    def parse(cls, value: str) -> "AgentHandle":
        """Parse the `name:uuid` string form produced by str()."""
        name, sep, raw_id = value.rpartition(":")
        if not sep:
            raise ValueError(f"Invalid agent handle: {value!r}")
        return cls(name=name, id=UUID(raw_id))


# =============================================================================
# Content blocks
# =============================================================================


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ContentBlock:
    """Base class for the atomic units of message content."""

    type: ClassVar[str] = ""

    def to_dict(self) -> dict:
        raise NotImplementedError

    @staticmethod
    def from_dict(data: dict) -> "ContentBlock":
        block_type = data.get("type")
        block_class = _BLOCK_TYPES.get(block_type)
        if block_class is None:
            raise ValueError(f"Unknown content block type: {block_type!r}")
        return block_class._from_dict(data)


@dataclass
class TextBlock(ContentBlock):
    text: str = ""

    type: ClassVar[str] = "text"

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text}

    @classmethod
    def _from_dict(cls, data: dict) -> "TextBlock":
        return cls(text=data.get("text", ""))


@dataclass
class ImageBlock(ContentBlock):
    data: bytes = b""
    media_type: str = "image/png"

    type: ClassVar[str] = "image"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "data": base64.b64encode(self.data).decode("ascii"),
            "media_type": self.media_type,
        }

    @classmethod
    def _from_dict(cls, data: dict) -> "ImageBlock":
        return cls(
            data=base64.b64decode(data.get("data", "")),
            media_type=data.get("media_type", "image/png"),
        )

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class ToolUseBlock(ContentBlock):
    id: str = ""
    name: str = ""
    arguments: dict = field(default_factory=dict)

    type: ClassVar[str] = "tool_use"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
        }

    @classmethod
    def _from_dict(cls, data: dict) -> "ToolUseBlock":
        return cls(
            id=data["id"],
            name=data["name"],
            arguments=data.get("arguments") or {},
        )


@dataclass
class ToolResultBlock(ContentBlock):
    tool_use_id: str = ""
    content: Any = None
    is_error: bool = False

    type: ClassVar[str] = "tool_result"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }

    @classmethod
    def _from_dict(cls, data: dict) -> "ToolResultBlock":
        return cls(
            tool_use_id=data["tool_use_id"],
            content=data.get("content"),
            is_error=data.get("is_error", False),
        )


@dataclass
class ThinkingBlock(ContentBlock):
    thinking: Optional[str] = None
    signature: Optional[str] = None

    type: ClassVar[str] = "thinking"

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "thinking": self.thinking,
            "signature": self.signature,
        }

    @classmethod
    def _from_dict(cls, data: dict) -> "ThinkingBlock":
        return cls(thinking=data.get("thinking"), signature=data.get("signature"))


_BLOCK_TYPES: dict[str, type] = {
    TextBlock.type: TextBlock,
    ImageBlock.type: ImageBlock,
    ToolUseBlock.type: ToolUseBlock,
    ToolResultBlock.type: ToolResultBlock,
    ThinkingBlock.type: ThinkingBlock,
}


# =============================================================================
# Messages and conversations
# =============================================================================


@dataclass
class Message:
    """A message: a role plus an ordered list of content blocks."""

    role: Role
    content: list[ContentBlock] = field(default_factory=list)

    @classmethod
    def user(cls, content: Union[str, list[ContentBlock]]) -> "Message":
        if isinstance(content, str):
            content = [TextBlock(text=content)]
        return cls(role=Role.USER, content=list(content))

    @property
    def text(self) -> str:
        """Concatenated text of all TextBlocks."""
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": [b.to_dict() for b in self.content],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=Role(data["role"]),
            content=[ContentBlock.from_dict(b) for b in data.get("content", [])],
        )


class Conversation:
    """
    Ordered, append-only message history.

    Owned by exactly one agent worker. Nothing removes or reorders
    messages; the whole conversation goes away when the agent is despawned.
    """

    def __init__(self, messages: Optional[list[Message]] = None):
        self._messages: list[Message] = list(messages or [])

    def append(self, message: Message) -> None:
        self._messages.append(message)

    @property
    def messages(self) -> list[Message]:
        """A copy of the messages, safe to hand to a backend."""
        return list(self._messages)

    @property
    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def unpaired_tool_uses(self) -> list[ToolUseBlock]:
        """
        ToolUse blocks in the last assistant message that have no ToolResult yet.

        Non-empty only when the conversation ends with an assistant message
        requesting tools (e.g. a snapshot taken mid-turn).
        """
        last = self.last
        if last is None or last.role != Role.ASSISTANT:
            return []
        return last.tool_uses

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Conversation):
            return NotImplemented
        return self._messages == other._messages

    def to_list(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]

    @classmethod
    def from_list(cls, data: list[dict]) -> "Conversation":
        return cls([Message.from_dict(m) for m in data])


# =============================================================================
# Backend request pieces
# =============================================================================


@dataclass
class ToolSpec:
    """A tool as declared to a backend: name, description, JSON schema."""

    name: str
    description: str = ""
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolSpec":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            input_schema=data.get("input_schema") or {"type": "object", "properties": {}},
        )


@dataclass
class SamplingConfig:
    """Sampling parameters passed through to the backend."""

    temperature: Optional[float] = None
    max_tokens: int = 4096
    extra: dict = field(default_factory=dict)


# =============================================================================
# Agent state
# =============================================================================


class AgentState(str, Enum):
    """States of the per-agent state machine."""

    IDLE = "idle"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    ERRORED = "errored"
    TERMINAL = "terminal"

    @property
    def is_mid_turn(self) -> bool:
        return self in (
            AgentState.DISPATCHING,
            AgentState.STREAMING,
            AgentState.TOOL_PENDING,
            AgentState.ERRORED,
        )


# =============================================================================
# Commands
# =============================================================================


@dataclass
class AgentCommand:
    """Base class for commands delivered through an agent's mailbox."""


@dataclass
class UserMessage(AgentCommand):
    """
    Append a user message and start a turn.

    correlation_id, if given, is echoed as reply_to on the MessageEvent that
    ends the turn this message starts.
    """

    content: Union[str, list[ContentBlock]] = ""
    correlation_id: Optional[str] = None

    def to_message(self) -> Message:
        return Message.user(self.content)


@dataclass
class ExternalToolResult(AgentCommand):
    """Supply the result of a caller-resolved tool call."""

    tool_use_id: str = ""
    payload: Any = None
    is_error: bool = False

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(
            tool_use_id=self.tool_use_id,
            content=self.payload,
            is_error=self.is_error,
        )


@dataclass
class Resume(AgentCommand):
    """Leave Terminal after a failure: reset attempts and re-dispatch."""


@dataclass
class Shutdown(AgentCommand):
    """Stop the agent after finishing nothing further."""


@dataclass
class Pause(AgentCommand):
    """Hold new user messages in the mailbox until Unpause."""


@dataclass
class Unpause(AgentCommand):
    """Release a Pause."""


@dataclass
class DumpState(AgentCommand):
    """Emit a StateDumpEvent carrying the agent's current snapshot."""
