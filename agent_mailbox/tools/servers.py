"""
External tool servers.

A LocalToolServer launches the configured command as a subprocess and
speaks MCP to it over stdio through the official `mcp` SDK. The session
lives inside a dedicated owner task so that the SDK's context managers are
entered and exited by the same task, whichever agent triggered the launch.

ToolServerManager owns every server of a runtime, keyed by server id, and
restarts a server whose transport fails, within its RestartPolicy. When
the policy is exhausted calls fail with ToolServerUnavailableError; the
agent sees an error tool result and carries on.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Optional

import anyio
from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.stdio import get_default_environment, stdio_client
from mcp.types import CONNECTION_CLOSED

from agent_mailbox.agent_config import ExternalServerConfig, LocalServerConfig, RemoteServerConfig
from agent_mailbox.config import RuntimeConfig
from agent_mailbox.errors import ToolExecutionError, ToolServerUnavailableError, ToolTimeoutError
from agent_mailbox.interfaces import ToolSpec

logger = logging.getLogger(__name__)


class ServerTransportError(ToolServerUnavailableError):
    """The connection to a server broke; a restart may help."""


class RestartPolicy:
    """Allows at most `max_restarts` restarts within a sliding time window."""

    def __init__(
        self,
        max_restarts: int = 3,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_restarts = max_restarts
        self.window_seconds = window_seconds
        self._clock = clock
        self._restarts: deque[float] = deque()

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._restarts and self._restarts[0] <= cutoff:
            self._restarts.popleft()

    @property
    def recent_restarts(self) -> int:
        self._prune()
        return len(self._restarts)

    def allow_restart(self) -> bool:
        return self.recent_restarts < self.max_restarts

    def record_restart(self) -> None:
        self._restarts.append(self._clock())


class ToolServer(ABC):
    """A running (or startable) external tool server."""

    def __init__(self, server_id: str):
        self.server_id = server_id
        #: Incremented on every successful start
        self.generation = 0

    @property
    @abstractmethod
    def running(self) -> bool:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def list_tools(self) -> list[ToolSpec]:
        ...

    @abstractmethod
    async def call_tool(self, name: str, arguments: dict, timeout: Optional[float] = None) -> Any:
        """
        Call a tool and return its payload.

        Raises:
            ToolTimeoutError: the call exceeded `timeout`
            ToolExecutionError: the server reported an error result
            ServerTransportError: the connection broke
        """
        ...

    async def restart(self) -> None:
        await self.stop()
        await self.start()


class LocalToolServer(ToolServer):
    """MCP server launched as a subprocess, spoken to over stdio."""

    def __init__(
        self,
        server_id: str,
        config: LocalServerConfig,
        *,
        start_timeout: float = 30.0,
        stop_timeout: float = 5.0,
    ):
        super().__init__(server_id)
        self.config = config
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self._session: Optional[ClientSession] = None
        self._owner: Optional[asyncio.Task] = None
        self._stop_requested: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._session is not None and self._owner is not None and not self._owner.done()

    def _parameters(self) -> StdioServerParameters:
        env = None
        if self.config.env:
            env = {**get_default_environment(), **self.config.env}
        return StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=env,
            cwd=self.config.cwd,
        )

    async def start(self) -> None:
        if self.running:
            return

        ready = asyncio.Event()
        self._stop_requested = asyncio.Event()
        self._owner = asyncio.create_task(
            self._own_session(ready, self._stop_requested),
            name=f"tool-server:{self.server_id}",
        )
        ready_waiter = asyncio.create_task(ready.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_waiter, self._owner},
                timeout=self.start_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready_waiter.cancel()

        if ready.is_set() and not self._owner.done():
            self.generation += 1
            logger.info(f"Started tool server {self.server_id!r}: {self.config.command}")
            return

        if self._owner.done():
            cause = self._owner.exception() if not self._owner.cancelled() else None
            raise ToolServerUnavailableError(
                f"Tool server {self.server_id!r} failed to start: {cause}",
            ) from cause

        self._owner.cancel()
        raise ToolServerUnavailableError(
            f"Tool server {self.server_id!r} did not start within {self.start_timeout}s",
        )

    async def _own_session(self, ready: asyncio.Event, stop_requested: asyncio.Event) -> None:
        async with stdio_client(self._parameters()) as (read_stream, write_stream):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                self._session = session
                ready.set()
                try:
                    await stop_requested.wait()
                finally:
                    self._session = None

    async def stop(self) -> None:
        owner = self._owner
        if owner is None:
            return
        self._owner = None
        self._session = None
        if self._stop_requested is not None:
            self._stop_requested.set()
        if owner.done():
            if not owner.cancelled() and owner.exception() is not None:
                logger.debug(f"Tool server {self.server_id!r} had exited: {owner.exception()}")
            return
        try:
            await asyncio.wait_for(owner, self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Tool server {self.server_id!r} did not stop in time; cancelled")
        except Exception:
            logger.exception(f"Error while stopping tool server {self.server_id!r}")
        logger.info(f"Stopped tool server {self.server_id!r}")

    def _require_session(self) -> ClientSession:
        session = self._session
        if session is None or not self.running:
            raise ServerTransportError(
                f"Tool server {self.server_id!r} is not running",
                tool_name=self.server_id,
            )
        return session

    async def list_tools(self) -> list[ToolSpec]:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(session.list_tools(), self.start_timeout)
        except asyncio.TimeoutError as e:
            raise ServerTransportError(f"Listing tools on {self.server_id!r} timed out") from e
        except (McpError, anyio.ClosedResourceError, anyio.BrokenResourceError, OSError) as e:
            raise ServerTransportError(f"Listing tools on {self.server_id!r} failed: {e}") from e
        return [
            ToolSpec(
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema or {"type": "object", "properties": {}},
            )
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: dict, timeout: Optional[float] = None) -> Any:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(session.call_tool(name, arguments), timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(
                f"Tool {name!r} on {self.server_id!r} timed out after {timeout}s",
                tool_name=name,
            ) from e
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                raise ServerTransportError(str(e), tool_name=name) from e
            raise ToolExecutionError(e.error.message, tool_name=name) from e
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream, OSError) as e:
            raise ServerTransportError(
                f"Connection to {self.server_id!r} failed: {e!r}", tool_name=name
            ) from e

        payload = _result_payload(result)
        if result.isError:
            raise ToolExecutionError(
                payload if isinstance(payload, str) else str(payload),
                tool_name=name,
            )
        return payload


def _result_payload(result) -> Any:
    """Structured content when the server provides it, otherwise the text content."""
    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return structured
    texts = [item.text for item in result.content if getattr(item, "type", None) == "text"]
    if len(texts) == len(result.content):
        return "\n".join(texts)
    return [item.model_dump(mode="json") for item in result.content]


class RemoteToolServer(ToolServer):
    """
    Remote servers are accepted in configuration but have no transport.
    Every operation reports the server as unavailable.
    """

    def __init__(self, server_id: str, config: RemoteServerConfig):
        super().__init__(server_id)
        self.config = config

    @property
    def running(self) -> bool:
        return False

    def _unavailable(self) -> ToolServerUnavailableError:
        return ToolServerUnavailableError(
            f"Remote tool server {self.server_id!r} ({self.config.url}) is not supported",
            tool_name=self.server_id,
        )

    async def start(self) -> None:
        raise self._unavailable()

    async def stop(self) -> None:
        return None

    async def list_tools(self) -> list[ToolSpec]:
        raise self._unavailable()

    async def call_tool(self, name: str, arguments: dict, timeout: Optional[float] = None) -> Any:
        raise self._unavailable()


ServerFactory = Callable[[str, ExternalServerConfig], ToolServer]


class ToolServerManager:
    """
    Owns the external tool servers of one runtime, keyed by server id.

    Servers start lazily on first use. Agents declaring the same server id
    share one server; the first configuration seen wins.
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        server_factory: Optional[ServerFactory] = None,
    ):
        self.config = config or RuntimeConfig()
        self._server_factory = server_factory or self._default_factory
        self._servers: dict[str, ToolServer] = {}
        self._policies: dict[str, RestartPolicy] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _default_factory(self, server_id: str, server_config: ExternalServerConfig) -> ToolServer:
        if isinstance(server_config, LocalServerConfig):
            return LocalToolServer(
                server_id,
                server_config,
                start_timeout=self.config.server_start_timeout_seconds,
                stop_timeout=self.config.cancel_grace_seconds,
            )
        return RemoteToolServer(server_id, server_config)

    def get(self, server_id: str) -> Optional[ToolServer]:
        return self._servers.get(server_id)

    def restart_policy(self, server_id: str) -> RestartPolicy:
        policy = self._policies.get(server_id)
        if policy is None:
            policy = RestartPolicy(
                max_restarts=self.config.server_max_restarts,
                window_seconds=self.config.server_restart_window_seconds,
            )
            self._policies[server_id] = policy
        return policy

    def _lock(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    async def ensure_started(self, server_id: str, server_config: ExternalServerConfig) -> ToolServer:
        async with self._lock(server_id):
            server = self._servers.get(server_id)
            if server is None:
                server = self._server_factory(server_id, server_config)
                self._servers[server_id] = server
                await server.start()
            elif not server.running:
                await self._restart(server)
            return server

    async def _restart(self, server: ToolServer) -> None:
        policy = self.restart_policy(server.server_id)
        if not policy.allow_restart():
            raise ToolServerUnavailableError(
                f"Tool server {server.server_id!r} exceeded {policy.max_restarts} restarts "
                f"in {policy.window_seconds}s",
                tool_name=server.server_id,
            )
        policy.record_restart()
        logger.warning(
            f"Restarting tool server {server.server_id!r} "
            f"({policy.recent_restarts}/{policy.max_restarts} in window)"
        )
        await server.restart()

    async def list_tools(self, server_id: str, server_config: ExternalServerConfig) -> list[ToolSpec]:
        server = await self.ensure_started(server_id, server_config)
        return await server.list_tools()

    async def call_tool(
        self,
        server_id: str,
        server_config: ExternalServerConfig,
        name: str,
        arguments: dict,
        timeout: Optional[float] = None,
    ) -> Any:
        """Call a tool, restarting the server once if its transport has failed."""
        server = await self.ensure_started(server_id, server_config)
        generation = server.generation
        try:
            return await server.call_tool(name, arguments, timeout)
        except ServerTransportError as e:
            logger.warning(f"Transport failure calling {name!r} on {server_id!r}: {e}")

        async with self._lock(server_id):
            # Another caller may have restarted it already
            if server.generation == generation:
                await self._restart(server)

        try:
            return await server.call_tool(name, arguments, timeout)
        except ServerTransportError as e:
            raise ToolServerUnavailableError(
                f"Tool server {server_id!r} unavailable: {e}", tool_name=name
            ) from e

    async def stop_all(self) -> None:
        for server_id, server in list(self._servers.items()):
            try:
                await server.stop()
            except Exception:
                logger.exception(f"Failed to stop tool server {server_id!r}")
        self._servers.clear()
