"""
Runtime - spawns agents, routes commands and multiplexes their events.

A Runtime owns every piece of shared state: the agent registry, the
builtin tool registry, the external tool servers, the snapshot store and
the event stream. Nothing is global; two runtimes in one process do not
see each other's agents.

Example:
    async with Runtime(store=InMemorySnapshotStore()) as runtime:
        runtime.register_tool("calc", add, description="Add two integers")
        handle = runtime.spawn_agent(backend, "claude-sonnet-4-5-20250929", config)
        runtime.send(handle, UserMessage("What is 2+2?"))

        while True:
            event = await runtime.recv(handle)
            if isinstance(event, MessageEvent):
                print(event.text)
                break
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Union

from agent_mailbox.agent import AgentWorker
from agent_mailbox.agent_config import AgentConfig
from agent_mailbox.backends.base import Backend
from agent_mailbox.backends.models_config import model_supports_tools
from agent_mailbox.config import RuntimeConfig, get_config
from agent_mailbox.errors import (
    AgentRuntimeError,
    AgentTerminalError,
    MailboxFullError,
    RuntimeClosedError,
    UnknownHandleError,
)
from agent_mailbox.events import AgentEvent, EventMultiplexer
from agent_mailbox.interfaces import AgentCommand, AgentHandle, AgentState, UserMessage
from agent_mailbox.persistence.base import AgentSnapshot, SnapshotStore
from agent_mailbox.persistence.file import FileSnapshotStore
from agent_mailbox.tools.executor import ToolExecutor
from agent_mailbox.tools.registry import AgentToolSet, BuiltinTool, ToolRegistry
from agent_mailbox.tools.servers import ServerFactory, ToolServerManager

logger = logging.getLogger(__name__)


class Runtime:
    """
    Hosts many concurrently running agents.

    spawn_agent and send are synchronous and never wait on a backend; they
    must be called from inside a running event loop. recv, despawn and
    shutdown are coroutines.
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        store: Optional[SnapshotStore] = None,
        *,
        server_factory: Optional[ServerFactory] = None,
    ):
        self.config = config or get_config()
        self.store = store if store is not None else FileSnapshotStore(self.config.snapshot_dir)
        self.tools = ToolRegistry()
        self.events = EventMultiplexer()
        self.semaphore = asyncio.Semaphore(self.config.max_concurrent_calls)
        self.servers = ToolServerManager(self.config, server_factory)
        self.executor = ToolExecutor(self.servers, self.semaphore, self.config)

        self._workers: dict[AgentHandle, AgentWorker] = {}
        self._retired: set[AgentHandle] = set()
        self._closed = False

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeClosedError("Runtime has been shut down")

    def _get_worker(self, handle: AgentHandle) -> AgentWorker:
        worker = self._workers.get(handle)
        if worker is not None:
            return worker
        if handle in self._retired:
            raise AgentTerminalError(f"Agent {handle} has been despawned", handle=handle)
        raise UnknownHandleError(f"Unknown agent handle: {handle}", handle=handle)

    # =========================================================================
    # Tools
    # =========================================================================

    def register_tool(self, name: str, handler: Optional[Callable[..., Any]] = None, **kwargs):
        """Register a builtin tool on this runtime. See ToolRegistry.register."""
        return self.tools.register(name, handler, **kwargs)

    # =========================================================================
    # Agents
    # =========================================================================

    def spawn_agent(
        self,
        backend: Backend,
        model: str,
        config: Optional[AgentConfig] = None,
        *,
        tools: Optional[list[BuiltinTool]] = None,
        handle: Optional[AgentHandle] = None,
    ) -> AgentHandle:
        """
        Create an agent in Idle and start its worker.

        Args:
            backend: Backend adapter the agent dispatches to
            model: Model identifier passed to the backend
            config: Agent definition (defaults to AgentConfig())
            tools: Extra builtin tools for this agent only
            handle: Explicit handle, e.g. one allocated ahead of time

        Raises:
            RuntimeClosedError: the runtime has been shut down
            UnknownToolError: config names a builtin tool that isn't registered
            AgentRuntimeError: the handle is already in use or was retired
        """
        self._check_open()
        config = config or AgentConfig()
        if handle is None:
            handle = AgentHandle(name=config.name)
        elif handle in self._workers or handle in self._retired:
            raise AgentRuntimeError(f"Agent handle {handle} is already in use", handle=handle)

        tool_set = AgentToolSet.from_config(config, self.tools, tools)
        if len(tool_set) and not model_supports_tools(model):
            logger.warning(f"Model {model} does not support tool use; agent {handle} has {len(tool_set)} tools")
        worker = AgentWorker(self, handle, backend, model, config, tool_set)
        self._start(worker)
        logger.info(f"Spawned agent {handle} ({model}, {len(tool_set)} tools)")
        return handle

    def _start(self, worker: AgentWorker) -> None:
        self._workers[worker.handle] = worker
        self.events.register(worker.handle)
        worker.start()

    def send(self, handle: AgentHandle, command: Union[AgentCommand, str]) -> None:
        """
        Enqueue a command into the agent's mailbox. A plain string is sent
        as a UserMessage.

        Raises:
            UnknownHandleError, AgentTerminalError, MailboxFullError,
            RuntimeClosedError
        """
        self._check_open()
        if isinstance(command, str):
            command = UserMessage(command)
        worker = self._get_worker(handle)
        if not worker.accepts(command):
            raise AgentTerminalError(
                f"Agent {handle} is terminal and does not accept {type(command).__name__}",
                handle=handle,
            )
        try:
            worker.mailbox.put_nowait(command)
        except asyncio.QueueFull:
            raise MailboxFullError(
                f"Mailbox for agent {handle} is full ({worker.mailbox.maxsize} commands)",
                handle=handle,
            ) from None

    async def recv(
        self,
        handle: Optional[AgentHandle] = None,
        timeout: Optional[float] = None,
    ) -> AgentEvent:
        """
        Wait for the next event, from any agent or only from `handle`.

        Raises:
            UnknownHandleError: `handle` was never issued by this runtime
            NoRunningAgentsError: nothing left to wait for
            asyncio.TimeoutError: `timeout` elapsed first
        """
        if handle is not None and handle not in self._workers and handle not in self._retired:
            raise UnknownHandleError(f"Unknown agent handle: {handle}", handle=handle)
        return await self.events.recv(handle, timeout)

    async def despawn(self, handle: AgentHandle) -> None:
        """
        Stop an agent for good: cancel its in-flight work, persist a final
        snapshot and retire the handle.

        An agent already stopped by a Shutdown command is retired without
        touching its snapshot or publishing anything, and AgentTerminalError
        is raised.

        Raises:
            AgentTerminalError: the agent was already despawned or shut down
            UnknownHandleError: the handle was never issued
        """
        worker = self._get_worker(handle)
        del self._workers[handle]
        self._retired.add(handle)

        if worker.stopped:
            # Let the Shutdown transition that stopped it finish
            if worker.task is not None:
                await asyncio.wait({worker.task}, timeout=self.config.cancel_grace_seconds)
            await self._stop_task(worker)
            await self.events.unregister(handle)
            raise AgentTerminalError(f"Agent {handle} was already shut down", handle=handle)

        worker.stopped = True
        await self._stop_task(worker)
        await worker.mark_despawned()
        await self.events.unregister(handle)
        logger.info(f"Despawned agent {handle}")

    async def _stop_task(self, worker: AgentWorker) -> None:
        task = worker.task
        if task is None or task.done():
            return
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.config.cancel_grace_seconds)
        if not done:
            logger.warning(
                f"Agent {worker.handle} did not stop within "
                f"{self.config.cancel_grace_seconds}s; abandoning it"
            )
        elif not task.cancelled() and task.exception() is not None:
            logger.error(f"Agent {worker.handle} worker had crashed: {task.exception()!r}")

    async def shutdown(self) -> None:
        """
        Despawn every agent, flush persistence and stop tool servers.
        Idempotent. Persistence and servers are released even if some
        agent fails to despawn.
        """
        if self._closed:
            return
        self._closed = True
        handles = list(self._workers)
        logger.info(f"Shutting down runtime ({len(handles)} agents)")

        try:
            results = await asyncio.gather(*(self.despawn(h) for h in handles), return_exceptions=True)
            for handle, result in zip(handles, results):
                if isinstance(result, AgentTerminalError):
                    logger.debug(f"Agent {handle} was already stopped: {result}")
                elif isinstance(result, BaseException):
                    logger.error(f"Failed to despawn agent {handle}: {result!r}")
        finally:
            await self._release_resources()

    async def _release_resources(self) -> None:
        for step in (self.store.flush, self.servers.stop_all, self.store.close):
            try:
                await step()
            except Exception:
                logger.exception(f"Runtime shutdown step {step.__name__} failed")

    # =========================================================================
    # Recovery and inspection
    # =========================================================================

    async def rehydrate(
        self,
        handle: AgentHandle,
        backend: Backend,
        model: Optional[str] = None,
        *,
        tools: Optional[list[BuiltinTool]] = None,
    ) -> AgentHandle:
        """
        Bring an agent back from its last snapshot.

        Idle agents come back Idle, Terminal ones wait for Resume, and
        agents caught mid-turn re-run their last step (at-least-once).

        Raises:
            UnknownHandleError: no snapshot for this handle
            AgentTerminalError: the agent was despawned
            AgentRuntimeError: the agent is already running here
        """
        self._check_open()
        if handle in self._workers:
            raise AgentRuntimeError(f"Agent {handle} is already running", handle=handle)
        if handle in self._retired:
            raise AgentTerminalError(f"Agent {handle} has been despawned", handle=handle)

        snapshot = await self.store.load(handle)
        if snapshot is None:
            raise UnknownHandleError(f"No snapshot for agent {handle}", handle=handle)
        if snapshot.despawned:
            raise AgentTerminalError(f"Agent {handle} has been despawned", handle=handle)

        tool_set = AgentToolSet.from_config(snapshot.config, self.tools, tools)
        worker = AgentWorker(
            self,
            handle,
            backend,
            model or snapshot.model,
            snapshot.config,
            tool_set,
            conversation=snapshot.conversation,
            state=snapshot.state,
            attempt_count=snapshot.attempt_count,
            tool_turns=snapshot.tool_turns,
            paused=snapshot.paused,
        )
        self._start(worker)
        logger.info(f"Rehydrated agent {handle} in {snapshot.state.value}")
        return handle

    async def rehydrate_all(
        self,
        resolve_backend: Callable[[AgentSnapshot], Backend],
    ) -> list[AgentHandle]:
        """Rehydrate every stored agent that was not despawned."""
        handles = []
        for handle in await self.store.list_handles():
            if handle in self._workers or handle in self._retired:
                continue
            snapshot = await self.store.load(handle)
            if snapshot is None or snapshot.despawned:
                continue
            handles.append(await self.rehydrate(handle, resolve_backend(snapshot)))
        return handles

    def snapshot(self, handle: AgentHandle) -> AgentSnapshot:
        """The agent's current snapshot, without persisting it."""
        return self._get_worker(handle).snapshot()

    def state(self, handle: AgentHandle) -> AgentState:
        return self._get_worker(handle).state

    def handles(self) -> list[AgentHandle]:
        return list(self._workers)
