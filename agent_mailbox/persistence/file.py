"""
File-based snapshot store.

One JSON file per agent under the snapshot directory (by default
./.agent_mailbox/snapshots/):

    {snapshot_dir}/{name}__{uuid}.json

Files are written to a temporary sibling and renamed into place, so a
crash mid-write leaves the previous snapshot intact.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from agent_mailbox.interfaces import AgentHandle
from agent_mailbox.persistence.base import AgentSnapshot, SnapshotStore

logger = logging.getLogger(__name__)


def _ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in name)


class FileSnapshotStore(SnapshotStore):
    """Stores snapshots as JSON files, one per handle."""

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        if directory is None:
            from agent_mailbox.config import get_config
            directory = get_config().snapshot_dir
        self.directory = Path(directory)

    def _get_path(self, handle: AgentHandle) -> Path:
        return self.directory / f"{_safe_name(handle.name)}__{handle.id}.json"

    async def save(self, snapshot: AgentSnapshot) -> None:
        path = self._get_path(snapshot.handle)
        _ensure_dir(path.parent)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    async def load(self, handle: AgentHandle) -> Optional[AgentSnapshot]:
        path = self._get_path(handle)
        if not path.exists():
            return None
        return self._read(path)

    def _read(self, path: Path) -> Optional[AgentSnapshot]:
        try:
            with open(path, "r") as f:
                return AgentSnapshot.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Ignoring unreadable snapshot {path}: {e}")
            return None

    async def delete(self, handle: AgentHandle) -> bool:
        path = self._get_path(handle)
        if path.exists():
            path.unlink()
            return True
        return False

    async def list_handles(self) -> list[AgentHandle]:
        if not self.directory.exists():
            return []
        handles = []
        for path in sorted(self.directory.glob("*.json")):
            snapshot = self._read(path)
            if snapshot is not None:
                handles.append(snapshot.handle)
        return handles
