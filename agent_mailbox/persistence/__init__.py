"""
Crash-recovery persistence for agents.

Provides:
- AgentSnapshot: durable image of one agent
- SnapshotStore: abstract store keyed by handle
- InMemorySnapshotStore, FileSnapshotStore: implementations
"""

from agent_mailbox.persistence.base import (
    SCHEMA_VERSION,
    AgentSnapshot,
    InMemorySnapshotStore,
    SnapshotStore,
)
from agent_mailbox.persistence.file import FileSnapshotStore

__all__ = [
    "SCHEMA_VERSION",
    "AgentSnapshot",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "FileSnapshotStore",
]
