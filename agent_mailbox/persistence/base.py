"""
Agent snapshots and the abstract snapshot store.

A snapshot captures everything needed to bring an agent back after a
crash: its handle, configuration, backend/model binding, conversation and
state-machine position. Snapshots are written after every completed turn,
every failure and on despawn.

Stores can be backed by anything (files, a database, object storage):

    class RedisSnapshotStore(SnapshotStore):
        async def save(self, snapshot: AgentSnapshot) -> None:
            await self.redis.set(str(snapshot.handle), json.dumps(snapshot.to_dict()))
        ...
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from agent_mailbox.agent_config import AgentConfig
from agent_mailbox.interfaces import AgentHandle, AgentState, Conversation

SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AgentSnapshot:
    """Durable image of one agent."""

    handle: AgentHandle
    config: AgentConfig
    backend: str
    model: str
    conversation: Conversation = field(default_factory=Conversation)
    state: AgentState = AgentState.IDLE
    attempt_count: int = 0
    tool_turns: int = 0
    paused: bool = False
    despawned: bool = False
    saved_at: datetime = field(default_factory=_utcnow)
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "handle": {"name": self.handle.name, "id": str(self.handle.id)},
            "config": self.config.to_dict(),
            "backend": self.backend,
            "model": self.model,
            "conversation": self.conversation.to_list(),
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "tool_turns": self.tool_turns,
            "paused": self.paused,
            "despawned": self.despawned,
            "saved_at": self.saved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentSnapshot":
        """Load a snapshot. Unknown fields are ignored; optional ones default."""
        handle_data = data["handle"]
        if isinstance(handle_data, str):
            handle = AgentHandle.parse(handle_data)
        else:
            handle = AgentHandle(name=handle_data["name"], id=UUID(handle_data["id"]))

        saved_at = data.get("saved_at")
        return cls(
            handle=handle,
            config=AgentConfig.from_dict(data.get("config") or {}),
            backend=data.get("backend", ""),
            model=data.get("model", ""),
            conversation=Conversation.from_list(data.get("conversation", [])),
            state=AgentState(data.get("state", AgentState.IDLE.value)),
            attempt_count=data.get("attempt_count", 0),
            tool_turns=data.get("tool_turns", 0),
            paused=data.get("paused", False),
            despawned=data.get("despawned", False),
            saved_at=datetime.fromisoformat(saved_at) if saved_at else _utcnow(),
            schema_version=data.get("schema_version", SCHEMA_VERSION),
        )


class SnapshotStore(ABC):
    """
    Abstract interface for snapshot storage, keyed by agent handle.

    A save must be durable by the time it returns, or by the next flush().
    """

    @abstractmethod
    async def save(self, snapshot: AgentSnapshot) -> None:
        """Create or replace the snapshot for snapshot.handle."""
        ...

    @abstractmethod
    async def load(self, handle: AgentHandle) -> Optional[AgentSnapshot]:
        ...

    @abstractmethod
    async def delete(self, handle: AgentHandle) -> bool:
        """Delete a snapshot. Returns True if it existed."""
        ...

    @abstractmethod
    async def list_handles(self) -> list[AgentHandle]:
        ...

    async def flush(self) -> None:
        """Make all saves durable."""
        pass

    async def close(self) -> None:
        """Release resources."""
        pass


class InMemorySnapshotStore(SnapshotStore):
    """
    Snapshot store that keeps serialized snapshots in a dict.

    Serializes on save so that later mutation of the agent cannot leak into
    a stored snapshot. Useful for tests.
    """

    def __init__(self):
        self._snapshots: dict[AgentHandle, dict[str, Any]] = {}

    async def save(self, snapshot: AgentSnapshot) -> None:
        self._snapshots[snapshot.handle] = snapshot.to_dict()

    async def load(self, handle: AgentHandle) -> Optional[AgentSnapshot]:
        data = self._snapshots.get(handle)
        return AgentSnapshot.from_dict(data) if data is not None else None

    async def delete(self, handle: AgentHandle) -> bool:
        return self._snapshots.pop(handle, None) is not None

    async def list_handles(self) -> list[AgentHandle]:
        return list(self._snapshots)
