"""
Tests for external tool servers: restart policy, the server manager and a
real MCP stdio server.
"""

import sys
import textwrap

import pytest

from agent_mailbox.agent_config import AgentConfig, LocalServerConfig, RemoteServerConfig
from agent_mailbox.config import RuntimeConfig
from agent_mailbox.errors import ToolExecutionError, ToolServerUnavailableError
from agent_mailbox.events import MessageEvent, ToolCompletedEvent
from agent_mailbox.interfaces import UserMessage
from agent_mailbox.testing import ScriptedBackend, collect_until, text_turn, tool_use_turn
from agent_mailbox.tools.servers import LocalToolServer, RemoteToolServer, RestartPolicy, ToolServerManager

from tests.fakes import FakeToolServer

LOCAL = LocalServerConfig(command="fake")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestRestartPolicy:
    """Tests for RestartPolicy."""

    def test_limit_within_window(self):
        """Restarts are refused once the window is full."""
        policy = RestartPolicy(max_restarts=2, window_seconds=60, clock=FakeClock())
        assert policy.allow_restart()
        policy.record_restart()
        policy.record_restart()
        assert not policy.allow_restart()

    def test_window_slides(self):
        """Old restarts fall out of the window."""
        clock = FakeClock()
        policy = RestartPolicy(max_restarts=1, window_seconds=60, clock=clock)
        policy.record_restart()
        assert not policy.allow_restart()
        clock.now = 61
        assert policy.recent_restarts == 0
        assert policy.allow_restart()


class TestToolServerManager:
    """Tests for ToolServerManager."""

    async def test_lazy_start_and_sharing(self):
        """Servers start on first use and are shared by id."""
        created = []

        def factory(server_id, config):
            server = FakeToolServer(server_id, results={"ping": "pong"})
            created.append(server)
            return server

        manager = ToolServerManager(server_factory=factory)
        assert manager.get("s") is None

        assert await manager.call_tool("s", LOCAL, "ping", {}) == "pong"
        assert await manager.call_tool("s", LOCAL, "ping", {}) == "pong"

        assert len(created) == 1
        assert created[0].starts == 1

    async def test_restart_once_on_transport_failure(self):
        """A broken transport is restarted and the call retried once."""
        server = FakeToolServer("s", results={"ping": "pong"}, transport_failures=1)
        manager = ToolServerManager(server_factory=lambda server_id, config: server)

        assert await manager.call_tool("s", LOCAL, "ping", {}) == "pong"
        assert server.starts == 2
        assert len(server.calls) == 2
        assert manager.restart_policy("s").recent_restarts == 1

    async def test_repeated_transport_failure(self):
        """A second failure after the restart surfaces as unavailable."""
        server = FakeToolServer("s", results={"ping": "pong"}, transport_failures=2)
        manager = ToolServerManager(server_factory=lambda server_id, config: server)

        with pytest.raises(ToolServerUnavailableError):
            await manager.call_tool("s", LOCAL, "ping", {})

    async def test_restart_policy_exhausted(self):
        """Once the policy is exhausted no further restarts happen."""
        server = FakeToolServer("s", results={"ping": "pong"}, transport_failures=10)
        manager = ToolServerManager(
            RuntimeConfig(server_max_restarts=1),
            server_factory=lambda server_id, config: server,
        )

        with pytest.raises(ToolServerUnavailableError):
            await manager.call_tool("s", LOCAL, "ping", {})
        with pytest.raises(ToolServerUnavailableError, match="exceeded 1 restarts"):
            await manager.call_tool("s", LOCAL, "ping", {})
        assert server.starts == 2

    async def test_stop_all(self):
        """stop_all stops and forgets every server."""
        server = FakeToolServer("s", results={"ping": "pong"})
        manager = ToolServerManager(server_factory=lambda server_id, config: server)
        await manager.call_tool("s", LOCAL, "ping", {})

        await manager.stop_all()

        assert server.stops == 1
        assert manager.get("s") is None

    async def test_remote_servers_are_unavailable(self):
        """Remote server configs resolve to an always-unavailable server."""
        manager = ToolServerManager()
        remote = RemoteServerConfig(url="https://tools.example")

        with pytest.raises(ToolServerUnavailableError, match="not supported"):
            await manager.call_tool("r", remote, "ping", {})
        assert isinstance(manager.get("r"), RemoteToolServer)


MCP_SERVER = textwrap.dedent('''
    from mcp.server.fastmcp import FastMCP

    mcp = FastMCP("arith")


    @mcp.tool()
    def add(a: int, b: int) -> int:
        """Add two integers."""
        return a + b


    @mcp.tool()
    def divide(a: float, b: float) -> float:
        """Divide a by b."""
        if b == 0:
            raise ValueError("division by zero")
        return a / b


    if __name__ == "__main__":
        mcp.run()
''')


@pytest.fixture
def mcp_server_config(tmp_path):
    script = tmp_path / "arith_server.py"
    script.write_text(MCP_SERVER)
    return LocalServerConfig(command=sys.executable, args=[str(script)])


def sum_of(payload) -> int:
    """FastMCP returns structured content on newer SDKs and text on older ones."""
    if isinstance(payload, dict):
        return int(payload["result"])
    return int(payload)


class TestLocalToolServer:
    """Integration tests against a FastMCP server over stdio."""

    async def test_lifecycle(self, mcp_server_config):
        """Start, list, call and stop a real server."""
        server = LocalToolServer("arith", mcp_server_config, start_timeout=30)
        await server.start()
        try:
            assert server.running
            assert server.generation == 1

            tools = {t.name: t for t in await server.list_tools()}
            assert set(tools) == {"add", "divide"}
            assert tools["add"].description == "Add two integers."
            assert "a" in tools["add"].input_schema["properties"]

            assert sum_of(await server.call_tool("add", {"a": 2, "b": 3}, timeout=10)) == 5

            with pytest.raises(ToolExecutionError, match="division by zero"):
                await server.call_tool("divide", {"a": 1, "b": 0}, timeout=10)
        finally:
            await server.stop()
        assert not server.running

    async def test_failed_launch(self, tmp_path):
        """A command that exits immediately is reported as unavailable."""
        script = tmp_path / "broken.py"
        script.write_text("raise SystemExit(1)\n")
        server = LocalToolServer("broken", LocalServerConfig(command=sys.executable, args=[str(script)]),
                                 start_timeout=5)
        with pytest.raises(ToolServerUnavailableError):
            await server.start()
        assert not server.running

    async def test_agent_uses_server_tool(self, runtime, mcp_server_config):
        """An agent calls an external tool exposed as <server>_<tool>."""
        config = AgentConfig(tools=["@arith/add"], servers={"arith": mcp_server_config})
        backend = ScriptedBackend([
            tool_use_turn(("arith_add", {"a": 20, "b": 22})),
            text_turn("20 + 22 = 42"),
        ])

        handle = runtime.spawn_agent(backend, "scripted", config)
        runtime.send(handle, UserMessage("What is 20 + 22?"))
        events = await collect_until(runtime, MessageEvent, handle=handle, timeout=60)

        completed = [e for e in events if isinstance(e, ToolCompletedEvent)]
        assert len(completed) == 1
        assert not completed[0].result.is_error
        assert sum_of(completed[0].result.content) == 42
        assert backend.requests[0].tools[0].name == "arith_add"
