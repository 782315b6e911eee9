"""
Tests for snapshots, snapshot stores and rehydration.
"""

import json

import pytest

from agent_mailbox.agent_config import AgentConfig
from agent_mailbox.errors import AgentRuntimeError, AgentTerminalError, UnknownHandleError
from agent_mailbox.events import MessageEvent, StateChangedEvent, ToolCompletedEvent
from agent_mailbox.interfaces import (
    AgentHandle,
    AgentState,
    Conversation,
    ImageBlock,
    Message,
    Resume,
    Role,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from agent_mailbox.persistence import AgentSnapshot, FileSnapshotStore, InMemorySnapshotStore
from agent_mailbox.runtime import Runtime
from agent_mailbox.testing import ScriptedBackend, collect_until, text_turn


def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


def make_snapshot(name="agent", state=AgentState.IDLE, messages=(), **kwargs) -> AgentSnapshot:
    return AgentSnapshot(
        handle=AgentHandle(name),
        config=kwargs.pop("config", AgentConfig(name=name)),
        backend="scripted",
        model="scripted",
        conversation=Conversation(list(messages)),
        state=state,
        **kwargs,
    )


def full_conversation() -> list[Message]:
    return [
        Message(role=Role.USER, content=[
            TextBlock("What is in this picture, and what is 2+2?"),
            ImageBlock(data=b"\x89PNG", media_type="image/png"),
        ]),
        Message(role=Role.ASSISTANT, content=[
            ThinkingBlock(thinking="Add them.", signature="sig-1"),
            TextBlock("Let me check."),
            ToolUseBlock(id="c1", name="calc", arguments={"a": 2, "b": 2}),
        ]),
        Message(role=Role.TOOL, content=[ToolResultBlock(tool_use_id="c1", content=4)]),
        Message(role=Role.ASSISTANT, content=[TextBlock("A cat, and 4.")]),
    ]


class TestAgentSnapshot:
    """Tests for AgentSnapshot serialization."""

    def test_round_trip(self):
        """Every block type survives a trip through JSON."""
        snapshot = make_snapshot(
            messages=full_conversation(),
            config=AgentConfig(name="agent", system_prompt="be brief", tools=["calc"]),
            attempt_count=2,
            tool_turns=1,
            paused=True,
        )
        data = json.loads(json.dumps(snapshot.to_dict()))
        restored = AgentSnapshot.from_dict(data)

        assert restored == snapshot
        assert restored.conversation.messages[0].content[1].data == b"\x89PNG"

    def test_unknown_fields_ignored(self):
        """Fields from a newer writer are skipped."""
        data = make_snapshot().to_dict()
        data["future_field"] = {"nested": True}
        restored = AgentSnapshot.from_dict(data)
        assert restored.handle.name == "agent"

    def test_optional_fields_default(self):
        """A minimal record loads with defaults."""
        handle = AgentHandle("minimal")
        restored = AgentSnapshot.from_dict({"handle": str(handle)})

        assert restored.handle == handle
        assert restored.state == AgentState.IDLE
        assert len(restored.conversation) == 0
        assert not restored.despawned


class TestInMemorySnapshotStore:
    """Tests for InMemorySnapshotStore."""

    async def test_crud(self):
        """Save, load, list and delete."""
        store = InMemorySnapshotStore()
        snapshot = make_snapshot(messages=[Message.user("hi")])

        assert await store.load(snapshot.handle) is None
        await store.save(snapshot)
        assert await store.load(snapshot.handle) == snapshot
        assert await store.list_handles() == [snapshot.handle]

        assert await store.delete(snapshot.handle)
        assert not await store.delete(snapshot.handle)
        assert await store.list_handles() == []

    async def test_save_copies(self):
        """Later changes to the snapshot do not leak into the store."""
        store = InMemorySnapshotStore()
        snapshot = make_snapshot(messages=[Message.user("hi")])
        await store.save(snapshot)

        snapshot.conversation.append(Message.user("again"))

        assert len((await store.load(snapshot.handle)).conversation) == 1


class TestFileSnapshotStore:
    """Tests for FileSnapshotStore."""

    async def test_save_and_load(self, tmp_path):
        """Snapshots land in one JSON file per handle."""
        store = FileSnapshotStore(tmp_path / "snapshots")
        snapshot = make_snapshot(name="my agent", messages=full_conversation())

        await store.save(snapshot)

        files = list((tmp_path / "snapshots").iterdir())
        assert [f.name for f in files] == [f"my_agent__{snapshot.handle.id}.json"]
        assert await store.load(snapshot.handle) == snapshot
        assert await store.list_handles() == [snapshot.handle]

    async def test_overwrite_leaves_no_temp_files(self, tmp_path):
        """Replacing a snapshot leaves only the final file behind."""
        store = FileSnapshotStore(tmp_path)
        snapshot = make_snapshot()
        await store.save(snapshot)
        snapshot.state = AgentState.TERMINAL
        await store.save(snapshot)

        assert len(list(tmp_path.iterdir())) == 1
        assert (await store.load(snapshot.handle)).state == AgentState.TERMINAL

    async def test_corrupt_file_is_skipped(self, tmp_path):
        """Unreadable files load as None and are left out of listings."""
        store = FileSnapshotStore(tmp_path)
        good = make_snapshot(name="good")
        bad_handle = AgentHandle("bad")
        await store.save(good)
        (tmp_path / f"bad__{bad_handle.id}.json").write_text("{not json")

        assert await store.load(bad_handle) is None
        assert await store.list_handles() == [good.handle]

    async def test_missing_directory(self, tmp_path):
        """A store whose directory does not exist yet is empty."""
        store = FileSnapshotStore(tmp_path / "nowhere")
        assert await store.list_handles() == []
        assert await store.load(AgentHandle("x")) is None

    async def test_delete(self, tmp_path):
        """delete removes the file."""
        store = FileSnapshotStore(tmp_path)
        snapshot = make_snapshot()
        await store.save(snapshot)

        assert await store.delete(snapshot.handle)
        assert not await store.delete(snapshot.handle)
        assert list(tmp_path.iterdir()) == []


class TestRehydrate:
    """Tests for bringing agents back from snapshots."""

    async def test_idle_agent_continues_conversation(self, runtime, runtime_config, store):
        """A rehydrated agent keeps its history and answers the next message."""
        handle = runtime.spawn_agent(ScriptedBackend([text_turn("4")]), "scripted")
        runtime.send(handle, UserMessage("2+2?"))
        await collect_until(runtime, MessageEvent, handle=handle)
        conversation = runtime.snapshot(handle).conversation

        async with Runtime(config=runtime_config, store=store) as recovered:
            backend = ScriptedBackend([text_turn("8")])
            assert await recovered.rehydrate(handle, backend) == handle
            assert recovered.state(handle) == AgentState.IDLE
            assert recovered.snapshot(handle).conversation == conversation
            assert recovered.snapshot(handle).model == "scripted"

            recovered.send(handle, UserMessage("and doubled?"))
            events = await collect_until(recovered, MessageEvent, handle=handle)

        assert events[-1].text == "8"
        assert [m.text for m in backend.requests[0].conversation] == ["2+2?", "4", "and doubled?"]

    async def test_mid_turn_agent_redispatches(self, runtime, store):
        """An agent saved while dispatching repeats the dispatch on its own."""
        snapshot = make_snapshot(state=AgentState.DISPATCHING, messages=[Message.user("2+2?")])
        await store.save(snapshot)

        backend = ScriptedBackend([text_turn("4")])
        await runtime.rehydrate(snapshot.handle, backend)
        events = await collect_until(runtime, MessageEvent, handle=snapshot.handle)

        assert events[-1].text == "4"
        assert backend.call_count == 1

    async def test_pending_tools_rerun(self, runtime, store):
        """Unanswered tool uses are executed again after a crash."""
        runtime.register_tool("calc", add)
        snapshot = make_snapshot(
            state=AgentState.TOOL_PENDING,
            config=AgentConfig(name="agent", tools=["calc"]),
            messages=[
                Message.user("2+2?"),
                Message(role=Role.ASSISTANT, content=[
                    ToolUseBlock(id="c1", name="calc", arguments={"a": 2, "b": 2}),
                ]),
            ],
        )
        await store.save(snapshot)

        backend = ScriptedBackend([text_turn("4")])
        await runtime.rehydrate(snapshot.handle, backend)
        events = await collect_until(runtime, MessageEvent, handle=snapshot.handle)

        completed = [e for e in events if isinstance(e, ToolCompletedEvent)]
        assert [(c.tool_use_id, c.result.content) for c in completed] == [("c1", 4)]
        assert backend.requests[0].conversation[-1].role == Role.TOOL

    async def test_terminal_agent_waits_for_resume(self, runtime, store):
        """A failed agent comes back Terminal and only Resume moves it."""
        snapshot = make_snapshot(
            state=AgentState.TERMINAL,
            attempt_count=3,
            messages=[Message.user("2+2?")],
        )
        await store.save(snapshot)

        backend = ScriptedBackend([text_turn("4")])
        handle = await runtime.rehydrate(snapshot.handle, backend)

        assert runtime.state(handle) == AgentState.TERMINAL
        assert backend.call_count == 0
        with pytest.raises(AgentTerminalError):
            runtime.send(handle, UserMessage("hello?"))

        runtime.send(handle, Resume())
        events = await collect_until(runtime, MessageEvent, handle=handle)
        assert events[-1].text == "4"
        states = [e.state for e in events if isinstance(e, StateChangedEvent)]
        assert states[0] == AgentState.DISPATCHING

    async def test_despawned_agent_cannot_return(self, runtime, runtime_config, store):
        """A despawned agent stays gone, here and in a fresh runtime."""
        handle = runtime.spawn_agent(ScriptedBackend(), "scripted")
        await runtime.despawn(handle)

        with pytest.raises(AgentTerminalError):
            await runtime.rehydrate(handle, ScriptedBackend())

        async with Runtime(config=runtime_config, store=store) as recovered:
            with pytest.raises(AgentTerminalError):
                await recovered.rehydrate(handle, ScriptedBackend())
            assert await recovered.rehydrate_all(lambda snapshot: ScriptedBackend()) == []

    async def test_missing_snapshot(self, runtime):
        """Rehydrating an unknown agent fails."""
        with pytest.raises(UnknownHandleError):
            await runtime.rehydrate(AgentHandle("ghost"), ScriptedBackend())

    async def test_already_running(self, runtime):
        """A running agent cannot be rehydrated over itself."""
        handle = runtime.spawn_agent(ScriptedBackend(), "scripted")
        with pytest.raises(AgentRuntimeError, match="already running"):
            await runtime.rehydrate(handle, ScriptedBackend())

    async def test_rehydrate_all(self, runtime, store):
        """Every live snapshot is rehydrated with a backend picked per snapshot."""
        alive = [make_snapshot(name="one"), make_snapshot(name="two", state=AgentState.TERMINAL)]
        gone = make_snapshot(name="three", state=AgentState.TERMINAL, despawned=True)
        for snapshot in (*alive, gone):
            await store.save(snapshot)

        resolved = []

        def resolve(snapshot: AgentSnapshot) -> ScriptedBackend:
            resolved.append(snapshot.handle.name)
            return ScriptedBackend()

        handles = await runtime.rehydrate_all(resolve)

        assert set(handles) == {s.handle for s in alive}
        assert sorted(resolved) == ["one", "two"]
        assert runtime.state(alive[1].handle) == AgentState.TERMINAL
