"""
Agent events and the runtime's multiplexed event stream.

Every event carries the handle of the agent that produced it. Events from
one agent are delivered in production order; across agents the
EventMultiplexer serves ready agents round-robin so a chatty agent cannot
starve a quiet one.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from agent_mailbox.backends.base import StreamEvent, TextDelta, ThinkingDelta, ToolUseDelta
from agent_mailbox.errors import ErrorKind, NoRunningAgentsError
from agent_mailbox.interfaces import AgentHandle, AgentState, Message, ToolResultBlock

logger = logging.getLogger(__name__)


# =============================================================================
# Events
# =============================================================================


@dataclass
class AgentEvent:
    """Base class for events published by agents."""

    handle: AgentHandle


@dataclass
class ContentBlockDeltaEvent(AgentEvent):
    """A partial content fragment, forwarded as soon as the backend sends it."""

    index: int
    delta: StreamEvent

    @property
    def text(self) -> str:
        if isinstance(self.delta, TextDelta):
            return self.delta.text
        if isinstance(self.delta, ThinkingDelta):
            return self.delta.thinking
        if isinstance(self.delta, ToolUseDelta):
            return self.delta.partial_json
        return ""


@dataclass
class MessageEvent(AgentEvent):
    """The final assistant message of a turn."""

    message: Message
    #: correlation_id of the UserMessage that started the turn
    reply_to: Optional[str] = None

    @property
    def text(self) -> str:
        return self.message.text


@dataclass
class ToolInvokedEvent(AgentEvent):
    tool_use_id: str
    name: str
    arguments: dict = field(default_factory=dict)


@dataclass
class ToolCompletedEvent(AgentEvent):
    tool_use_id: str
    result: ToolResultBlock


@dataclass
class StateChangedEvent(AgentEvent):
    state: AgentState
    attempt_count: int = 0


@dataclass
class ErrorEvent(AgentEvent):
    kind: ErrorKind
    detail: str = ""


@dataclass
class StateDumpEvent(AgentEvent):
    """Reply to DumpState: the agent's snapshot as a JSON-compatible dict."""

    snapshot: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Multiplexer
# =============================================================================


class EventMultiplexer:
    """
    Fan-in of per-agent event queues with round-robin delivery.

    Each event is delivered to exactly one receiver. A receiver filtering
    on a handle claims that agent's events: unfiltered receivers skip the
    agent while the filtered one waits.

    Events published before an agent is unregistered stay deliverable
    afterwards.
    """

    def __init__(self):
        self._queues: dict[AgentHandle, deque[AgentEvent]] = {}
        self._ready: deque[AgentHandle] = deque()
        self._registered: set[AgentHandle] = set()
        self._claims: dict[AgentHandle, int] = {}
        self._condition = asyncio.Condition()

    def register(self, handle: AgentHandle) -> None:
        self._registered.add(handle)
        self._queues.setdefault(handle, deque())

    async def unregister(self, handle: AgentHandle) -> None:
        async with self._condition:
            self._registered.discard(handle)
            queue = self._queues.get(handle)
            if queue is not None and not queue:
                del self._queues[handle]
            # Receivers may now have nothing left to wait for
            self._condition.notify_all()

    def is_registered(self, handle: AgentHandle) -> bool:
        return handle in self._registered

    async def publish(self, event: AgentEvent) -> None:
        async with self._condition:
            queue = self._queues.setdefault(event.handle, deque())
            if not queue:
                self._ready.append(event.handle)
            queue.append(event)
            self._condition.notify_all()

    def pending(self, handle: Optional[AgentHandle] = None) -> int:
        """Number of undelivered events, for one agent or overall."""
        if handle is not None:
            return len(self._queues.get(handle, ()))
        return sum(len(q) for q in self._queues.values())

    async def recv(
        self,
        handle: Optional[AgentHandle] = None,
        timeout: Optional[float] = None,
    ) -> AgentEvent:
        """
        Wait for the next event.

        Raises:
            NoRunningAgentsError: nothing is pending and no agent (or, when
                filtering, not the given agent) is registered
            asyncio.TimeoutError: timeout elapsed first
        """
        if timeout is None:
            return await self._recv(handle)
        return await asyncio.wait_for(self._recv(handle), timeout)

    async def _recv(self, handle: Optional[AgentHandle]) -> AgentEvent:
        async with self._condition:
            if handle is not None:
                self._claims[handle] = self._claims.get(handle, 0) + 1
            try:
                while True:
                    event = self._pop(handle)
                    if event is not None:
                        if not self._registered:
                            self._condition.notify_all()
                        return event
                    if self._exhausted(handle):
                        raise NoRunningAgentsError(
                            "No running agents and no pending events",
                            handle=handle,
                        )
                    await self._condition.wait()
            finally:
                if handle is not None:
                    self._claims[handle] -= 1
                    if not self._claims[handle]:
                        del self._claims[handle]

    def _exhausted(self, handle: Optional[AgentHandle]) -> bool:
        if handle is not None:
            return handle not in self._registered and not self._queues.get(handle)
        return not self._registered and not any(self._queues.values())

    def _pop(self, handle: Optional[AgentHandle]) -> Optional[AgentEvent]:
        if handle is not None:
            queue = self._queues.get(handle)
            if not queue:
                return None
            event = queue.popleft()
            if not queue:
                self._ready.remove(handle)
                self._forget_if_retired(handle)
            return event

        for _ in range(len(self._ready)):
            candidate = self._ready.popleft()
            if self._claims.get(candidate):
                self._ready.append(candidate)
                continue
            queue = self._queues[candidate]
            event = queue.popleft()
            if queue:
                self._ready.append(candidate)
            else:
                self._forget_if_retired(candidate)
            return event
        return None

    def _forget_if_retired(self, handle: AgentHandle) -> None:
        if handle not in self._registered:
            self._queues.pop(handle, None)
