"""
Testing utilities.

ScriptedBackend replays pre-built turns instead of calling a provider, so
agent behavior can be tested deterministically:

    backend = ScriptedBackend([
        tool_use_turn(("calc", {"a": 2, "b": 2})),
        text_turn("2 + 2 = 4"),
    ])
    handle = runtime.spawn_agent(backend, "scripted", config)
    runtime.send(handle, UserMessage("2+2?"))
    events = await collect_until(runtime, MessageEvent, handle=handle)

A turn is a list of stream events, or an exception raised when the stream
opens. An exception inside the event list is raised at that point of the
stream.
"""

import asyncio
import json
from collections import deque
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Union
from uuid import uuid4

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
)
from agent_mailbox.errors import ErrorKind, FatalBackendError, TransientBackendError
from agent_mailbox.events import AgentEvent
from agent_mailbox.interfaces import AgentHandle

if TYPE_CHECKING:
    from agent_mailbox.runtime import Runtime

Turn = Union[list, Exception]


class ScriptedBackend(Backend):
    """Backend that plays back scripted turns and records every request."""

    name = "scripted"

    def __init__(self, turns: Iterable[Turn] = (), *, delay: float = 0.0):
        self.turns: deque[Turn] = deque(turns)
        self.requests: list[BackendRequest] = []
        self.delay = delay

    def add_turn(self, turn: Turn) -> None:
        self.turns.append(turn)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def stream(self, request: BackendRequest) -> BackendStream:
        self.requests.append(request)
        if self.turns:
            turn = self.turns.popleft()
        else:
            turn = FatalBackendError("ScriptedBackend has no more turns")
        return BackendStream(self._events(turn))

    async def _events(self, turn: Turn):
        if isinstance(turn, Exception):
            raise turn
        for item in turn:
            await asyncio.sleep(self.delay)
            if isinstance(item, Exception):
                raise item
            yield item


def text_turn(text: str, *, chunk_size: Optional[int] = None, stop_reason: str = "end_turn") -> list[StreamEvent]:
    """A turn answering with text, optionally split into several deltas."""
    chunk_size = chunk_size or max(len(text), 1)
    events: list[StreamEvent] = [
        TextDelta(index=0, text=text[i:i + chunk_size])
        for i in range(0, max(len(text), 1), chunk_size)
    ]
    events.append(MessageStop(stop_reason=stop_reason))
    return events


def tool_use_turn(*calls: tuple, text: Optional[str] = None) -> list[StreamEvent]:
    """
    A turn requesting tool calls.

    Each call is (name, arguments) or (name, arguments, call_id). Arguments
    are streamed in two fragments to exercise assembly.
    """
    events: list[StreamEvent] = []
    offset = 0
    if text:
        events.append(TextDelta(index=0, text=text))
        offset = 1
    for i, call in enumerate(calls):
        name, arguments = call[0], call[1]
        call_id = call[2] if len(call) > 2 else f"toolu_{uuid4().hex[:12]}"
        index = offset + i
        raw = json.dumps(arguments)
        middle = len(raw) // 2
        events.extend([
            ToolUseStart(index=index, id=call_id, name=name),
            ToolUseDelta(index=index, partial_json=raw[:middle]),
            ToolUseDelta(index=index, partial_json=raw[middle:]),
            ToolUseEnd(index=index),
        ])
    events.append(MessageStop(stop_reason="tool_use"))
    return events


def failing_turn(
    kind: Union[ErrorKind, str] = ErrorKind.RATE_LIMIT,
    *,
    transient: bool = True,
    message: str = "scripted failure",
) -> Exception:
    """An error to put in place of a turn."""
    kind = ErrorKind(kind)
    if transient:
        return TransientBackendError(message, kind=kind)
    return FatalBackendError(message, kind=kind)


async def collect_until(
    runtime: "Runtime",
    until: Union[type, Callable[[AgentEvent], bool]],
    *,
    handle: Optional[AgentHandle] = None,
    timeout: float = 5.0,
) -> list[AgentEvent]:
    """
    Receive events until one matches `until` (an event class or predicate).

    Returns every event received, the matching one last. Raises
    asyncio.TimeoutError if nothing matches within `timeout` seconds.
    """
    if isinstance(until, type):
        event_type = until
        until = lambda event: isinstance(event, event_type)  # noqa: E731

    async def collect() -> list[AgentEvent]:
        events = []
        while True:
            event = await runtime.recv(handle)
            events.append(event)
            if until(event):
                return events

    return await asyncio.wait_for(collect(), timeout)
