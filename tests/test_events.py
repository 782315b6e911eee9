"""
Tests for the event multiplexer.
"""

import asyncio

import pytest

from agent_mailbox.backends.base import TextDelta, ToolUseDelta
from agent_mailbox.errors import ErrorKind, NoRunningAgentsError
from agent_mailbox.events import (
    ContentBlockDeltaEvent,
    ErrorEvent,
    EventMultiplexer,
    MessageEvent,
    StateChangedEvent,
)
from agent_mailbox.interfaces import AgentHandle, AgentState, Message, Role, TextBlock


def state_event(handle, n):
    """A distinguishable event: attempt_count carries a sequence number."""
    return StateChangedEvent(handle, state=AgentState.IDLE, attempt_count=n)


@pytest.fixture
def handles():
    return AgentHandle("a"), AgentHandle("b")


@pytest.fixture
def mux(handles):
    mux = EventMultiplexer()
    for handle in handles:
        mux.register(handle)
    return mux


class TestEvents:
    """Tests for event helpers."""

    def test_delta_text(self):
        """Delta events expose their fragment as text."""
        handle = AgentHandle("a")
        assert ContentBlockDeltaEvent(handle, 0, TextDelta(index=0, text="hi")).text == "hi"
        assert ContentBlockDeltaEvent(handle, 1, ToolUseDelta(index=1, partial_json="{")).text == "{"

    def test_message_text(self):
        """Message events expose the message text."""
        message = Message(role=Role.ASSISTANT, content=[TextBlock("4")])
        assert MessageEvent(AgentHandle("a"), message=message).text == "4"


class TestEventMultiplexer:
    """Tests for EventMultiplexer."""

    async def test_fifo_per_agent(self, mux, handles):
        """One agent's events arrive in publish order."""
        a, _ = handles
        for n in range(5):
            await mux.publish(state_event(a, n))
        received = [(await mux.recv()).attempt_count for _ in range(5)]
        assert received == [0, 1, 2, 3, 4]

    async def test_round_robin(self, mux, handles):
        """A chatty agent does not starve a quiet one."""
        a, b = handles
        for n in range(3):
            await mux.publish(state_event(a, n))
        await mux.publish(state_event(b, 0))

        received = [await mux.recv() for _ in range(4)]
        assert [(e.handle.name, e.attempt_count) for e in received] == [
            ("a", 0), ("b", 0), ("a", 1), ("a", 2),
        ]

    async def test_filtered_recv(self, mux, handles):
        """A filtered recv only returns the given agent's events."""
        a, b = handles
        await mux.publish(state_event(a, 0))
        await mux.publish(state_event(b, 0))

        event = await mux.recv(b)
        assert event.handle == b
        assert mux.pending(a) == 1
        assert mux.pending() == 1

    async def test_filtered_receiver_claims_agent(self, mux, handles):
        """While a filtered receiver waits, unfiltered receivers skip that agent."""
        a, b = handles
        filtered = asyncio.create_task(mux.recv(a))
        unfiltered = asyncio.create_task(mux.recv())
        await asyncio.sleep(0)

        await mux.publish(state_event(a, 1))
        await mux.publish(state_event(b, 2))

        assert (await filtered).handle == a
        assert (await unfiltered).handle == b

    async def test_each_event_delivered_once(self, mux, handles):
        """Concurrent receivers never see the same event twice."""
        a, b = handles
        receivers = [asyncio.create_task(mux.recv()) for _ in range(6)]
        for n in range(3):
            await mux.publish(state_event(a, n))
            await mux.publish(state_event(b, n))

        received = await asyncio.gather(*receivers)
        assert sorted((e.handle.name, e.attempt_count) for e in received) == [
            ("a", 0), ("a", 1), ("a", 2), ("b", 0), ("b", 1), ("b", 2),
        ]

    async def test_no_running_agents(self):
        """recv on an empty multiplexer raises immediately."""
        with pytest.raises(NoRunningAgentsError):
            await EventMultiplexer().recv()

    async def test_events_survive_unregister(self, mux, handles):
        """Events published before unregister are still delivered."""
        a, b = handles
        await mux.publish(ErrorEvent(a, kind=ErrorKind.TIMEOUT, detail="slow"))
        await mux.unregister(a)
        await mux.unregister(b)

        event = await mux.recv(a)
        assert isinstance(event, ErrorEvent)
        assert not mux.is_registered(a)
        with pytest.raises(NoRunningAgentsError):
            await mux.recv()

    async def test_unregister_wakes_waiters(self, mux, handles):
        """A receiver waiting on an agent is released when it goes away."""
        a, b = handles
        waiter = asyncio.create_task(mux.recv(a))
        await asyncio.sleep(0)

        await mux.unregister(a)

        with pytest.raises(NoRunningAgentsError):
            await waiter

    async def test_timeout(self, mux):
        """recv gives up after the timeout."""
        with pytest.raises(asyncio.TimeoutError):
            await mux.recv(timeout=0.01)
