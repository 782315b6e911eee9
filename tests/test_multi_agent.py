"""
Tests for agents messaging other agents through tools.
"""

import pytest

from agent_mailbox.agent_config import AgentConfig
from agent_mailbox.errors import AgentTerminalError, ErrorKind, ToolExecutionError, UnknownHandleError
from agent_mailbox.events import MessageEvent, ToolCompletedEvent
from agent_mailbox.interfaces import AgentHandle, UserMessage
from agent_mailbox.multi_agent import (
    AgentMessageTool,
    InvocationMode,
    create_agent_message_tool,
    register_agent_tools,
)
from agent_mailbox.runtime import Runtime
from agent_mailbox.testing import ScriptedBackend, collect_until, failing_turn, text_turn, tool_use_turn
from agent_mailbox.tools import ToolContext


async def run_caller(runtime, tool, arguments, answer="done"):
    """Spawn an agent that calls `tool` once; return the tool result and the caller's backend."""
    backend = ScriptedBackend([tool_use_turn((tool.name, arguments)), text_turn(answer)])
    caller = runtime.spawn_agent(backend, "scripted", AgentConfig(name="caller"), tools=[tool])
    runtime.send(caller, UserMessage("go"))
    events = await collect_until(runtime, MessageEvent, handle=caller)
    completed = [e for e in events if isinstance(e, ToolCompletedEvent)]
    assert len(completed) == 1
    assert all(e.handle == caller for e in events)
    return completed[0].result, backend


class TestAgentMessageTool:
    """Tests for the agent message tool."""

    async def test_notify(self, runtime):
        """NOTIFY returns at once; the target handles the message on its own."""
        target_backend = ScriptedBackend([text_turn("got it")])
        target = runtime.spawn_agent(target_backend, "scripted", AgentConfig(name="b"))
        tool = create_agent_message_tool(runtime, target, mode=InvocationMode.NOTIFY)

        result, _ = await run_caller(runtime, tool, {"message": "hi"})

        assert result.content == {"status": "sent", "agent": "b"}
        events = await collect_until(runtime, MessageEvent, handle=target)
        assert events[-1].text == "got it"
        assert target_backend.requests[0].conversation[0].text == "hi"

    async def test_context_is_prepended(self, runtime):
        """The optional context argument goes before the message."""
        target_backend = ScriptedBackend([text_turn("ok")])
        target = runtime.spawn_agent(target_backend, "scripted", AgentConfig(name="b"))
        tool = create_agent_message_tool(runtime, target, mode=InvocationMode.NOTIFY)

        await run_caller(runtime, tool, {"message": "summarize", "context": "ticket #12"})
        await collect_until(runtime, MessageEvent, handle=target)

        assert target_backend.requests[0].conversation[0].text == "ticket #12\n\nsummarize"

    async def test_delegate(self, runtime):
        """DELEGATE waits for the target's answer and returns it."""
        target = runtime.spawn_agent(ScriptedBackend([text_turn("42")]), "scripted", AgentConfig(name="b"))
        tool = create_agent_message_tool(runtime, target)

        result, backend = await run_caller(runtime, tool, {"message": "what is 6*7?"}, answer="b says 42")

        assert not result.is_error
        assert result.content == {"agent": "b", "response": "42"}
        assert backend.requests[1].conversation[-1].tool_results[0].content == result.content

    async def test_delegate_with_one_concurrency_slot(self, runtime_config, store):
        """The delegating call gives up its slot so the target can answer."""
        config = runtime_config.with_overrides(max_concurrent_calls=1)
        async with Runtime(config=config, store=store) as runtime:
            target = runtime.spawn_agent(ScriptedBackend([text_turn("4")]), "scripted", AgentConfig(name="b"))
            tool = create_agent_message_tool(runtime, target, timeout_seconds=5)

            result, _ = await run_caller(runtime, tool, {"message": "2+2?"})

            assert not result.is_error
            assert result.content == {"agent": "b", "response": "4"}
            assert not runtime.semaphore.locked()

    async def test_delegate_skips_earlier_reply(self, runtime):
        """A busy target's answer to an earlier message is not returned as the reply."""
        target_backend = ScriptedBackend([text_turn("reply to earlier"), text_turn("reply to a")])
        target = runtime.spawn_agent(target_backend, "scripted", AgentConfig(name="b"))
        runtime.send(target, UserMessage("earlier question"))
        tool = create_agent_message_tool(runtime, target)

        result, _ = await run_caller(runtime, tool, {"message": "question from a"})

        assert result.content == {"agent": "b", "response": "reply to a"}
        assert [r.conversation[-1].text for r in target_backend.requests] == [
            "earlier question", "question from a",
        ]

    async def test_delegate_target_fails(self, runtime):
        """A target that fails turns into an error result for the caller."""
        failing = ScriptedBackend([failing_turn(ErrorKind.AUTHENTICATION, transient=False)])
        target = runtime.spawn_agent(failing, "scripted", AgentConfig(name="b"))
        tool = create_agent_message_tool(runtime, target)

        result, _ = await run_caller(runtime, tool, {"message": "hello"}, answer="b is broken")

        assert result.is_error
        assert "authentication" in result.content["error"]

    async def test_cannot_message_self(self, runtime):
        """An agent calling a tool aimed at itself gets an error."""
        me = runtime.spawn_agent(ScriptedBackend(), "scripted", AgentConfig(name="me"))
        tool = AgentMessageTool(
            target=me, name="message_me", description="Talk to myself", mode=InvocationMode.NOTIFY,
        ).to_builtin()

        with pytest.raises(ToolExecutionError, match="cannot message itself"):
            await tool.invoke({"message": "hi"}, ToolContext(runtime=runtime, handle=me, tool_use_id="t1"))

    async def test_target_despawned_later(self, runtime):
        """Messaging a target that has since been despawned fails cleanly."""
        caller = runtime.spawn_agent(ScriptedBackend(), "scripted", AgentConfig(name="a"))
        target = runtime.spawn_agent(ScriptedBackend(), "scripted", AgentConfig(name="b"))
        tool = create_agent_message_tool(runtime, target, mode=InvocationMode.NOTIFY)
        await runtime.despawn(target)

        with pytest.raises(ToolExecutionError, match="Cannot reach"):
            await tool.invoke({"message": "hi"}, ToolContext(runtime=runtime, handle=caller, tool_use_id="t1"))


class TestCreateAgentMessageTool:
    """Tests for create_agent_message_tool and register_agent_tools."""

    async def test_unknown_target(self, runtime):
        """The target must be an agent of this runtime."""
        with pytest.raises(UnknownHandleError):
            create_agent_message_tool(runtime, AgentHandle("ghost"))

    async def test_despawned_target(self, runtime):
        """Despawned agents cannot be targeted."""
        target = runtime.spawn_agent(ScriptedBackend(), "scripted")
        await runtime.despawn(target)
        with pytest.raises(AgentTerminalError):
            create_agent_message_tool(runtime, target)

    async def test_default_name_and_description(self, runtime):
        """Defaults derive from the target's name."""
        target = runtime.spawn_agent(ScriptedBackend(), "scripted", AgentConfig(name="b-agent"))
        tool = create_agent_message_tool(runtime, target)

        assert tool.name == "message_b_agent"
        assert "b-agent" in tool.description
        assert tool.takes_context
        assert tool.input_schema["required"] == ["message"]

    async def test_register_agent_tools(self, runtime):
        """Registered agent tools can be named in an agent's config."""
        target = runtime.spawn_agent(ScriptedBackend(), "scripted", AgentConfig(name="b"))
        register_agent_tools(runtime, [
            AgentMessageTool(target=target, name="ask_b", description="Ask b"),
        ])

        assert "ask_b" in runtime.tools
        runtime.spawn_agent(ScriptedBackend(), "scripted", AgentConfig(name="a", tools=["ask_b"]))
