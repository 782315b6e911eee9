"""
Builtin tool registry and per-agent tool resolution.

Builtin tools are plain callables registered on the runtime:

    runtime.tools.register(
        "calc",
        calc,
        description="Evaluate an arithmetic expression",
        input_schema={"type": "object", "properties": {"expr": {"type": "string"}}},
    )

Or as a decorator:

    @runtime.tools.register("lookup", timeout_seconds=5)
    async def lookup(key: str) -> dict:
        ...

A handler receives the model's arguments as keyword arguments and returns a
JSON-compatible result, or raises to report a failure. Handlers registered
with takes_context=True receive a ToolContext as their first argument.

Each agent gets an AgentToolSet mapping the names exposed to its model to
tool references: builtin, external (server tool) or caller-resolved.
"""

import asyncio
import functools
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from agent_mailbox.errors import ToolServerUnavailableError, UnknownToolError
from agent_mailbox.interfaces import AgentHandle, ToolSpec

if TYPE_CHECKING:
    from agent_mailbox.agent_config import AgentConfig
    from agent_mailbox.runtime import Runtime
    from agent_mailbox.tools.servers import ToolServerManager

logger = logging.getLogger(__name__)


class CallSlot:
    """
    One unit of the runtime-wide concurrency bound, held for the length of
    a tool call.

    Tracks whether it is currently held so a release never returns a slot
    that was not acquired, even if re-acquiring was cancelled.
    """

    def __init__(self, semaphore: asyncio.Semaphore):
        self._semaphore = semaphore
        self.held = False

    async def acquire(self) -> None:
        if not self.held:
            await self._semaphore.acquire()
            self.held = True

    def release(self) -> None:
        if self.held:
            self.held = False
            self._semaphore.release()


@dataclass
class ToolContext:
    """What a context-aware builtin tool knows about its caller."""

    runtime: "Runtime"
    handle: AgentHandle
    tool_use_id: str
    #: Set by the executor while the call holds a concurrency slot
    slot: Optional[CallSlot] = None

    @asynccontextmanager
    async def released_slot(self):
        """
        Give the call's concurrency slot back while waiting on work that
        needs a slot of its own, such as another agent's turn.
        """
        if self.slot is None:
            yield
            return
        self.slot.release()
        try:
            yield
        finally:
            await self.slot.acquire()


@dataclass
class BuiltinTool:
    """A callable exposed to models as a tool."""

    name: str
    handler: Callable[..., Any]
    description: str = ""
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    timeout_seconds: Optional[float] = None
    takes_context: bool = False

    @property
    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )

    async def invoke(self, arguments: dict, context: Optional[ToolContext] = None) -> Any:
        """Call the handler. Sync handlers run in the default executor."""
        args = (context,) if self.takes_context else ()

        if inspect.iscoroutinefunction(self.handler):
            return await self.handler(*args, **arguments)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            None, functools.partial(self.handler, *args, **arguments)
        )
        if inspect.isawaitable(result):
            result = await result
        return result


class ToolRegistry:
    """Builtin tools by name. Owned by a Runtime."""

    def __init__(self):
        self._tools: dict[str, BuiltinTool] = {}

    def register(
        self,
        name: str,
        handler: Optional[Callable[..., Any]] = None,
        *,
        description: Optional[str] = None,
        input_schema: Optional[dict] = None,
        timeout_seconds: Optional[float] = None,
        takes_context: bool = False,
    ):
        """
        Register a builtin tool. Without a handler, returns a decorator.

        The description defaults to the first line of the handler's docstring.
        Registering an existing name replaces it.
        """
        if handler is None:
            def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
                self.register(
                    name,
                    func,
                    description=description,
                    input_schema=input_schema,
                    timeout_seconds=timeout_seconds,
                    takes_context=takes_context,
                )
                return func
            return decorator

        if description is None:
            doc = inspect.getdoc(handler) or ""
            description = doc.splitlines()[0] if doc else ""

        tool = BuiltinTool(
            name=name,
            handler=handler,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
            timeout_seconds=timeout_seconds,
            takes_context=takes_context,
        )
        self.add(tool)
        return tool

    def add(self, tool: BuiltinTool) -> None:
        if tool.name in self._tools:
            logger.info(f"Replacing builtin tool: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Optional[BuiltinTool]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


# =============================================================================
# Tool references
# =============================================================================


@dataclass(frozen=True)
class BuiltinToolRef:
    handler_id: str


@dataclass(frozen=True)
class ExternalToolRef:
    server_id: str
    remote_name: str


@dataclass(frozen=True)
class CallerToolRef:
    """A tool whose result the caller supplies with ExternalToolResult."""

    name: str


ToolRef = Union[BuiltinToolRef, ExternalToolRef, CallerToolRef]


def external_tool_name(server_id: str, remote_name: str) -> str:
    """Name an external tool is exposed under."""
    return f"{server_id}_{remote_name}"


class AgentToolSet:
    """
    The tools one agent can call, keyed by the name exposed to its model.

    Builtin and caller tools resolve synchronously at spawn. External
    tools need their servers' schemas and are loaded by the agent worker.
    """

    def __init__(self):
        self._specs: dict[str, ToolSpec] = {}
        self._refs: dict[str, ToolRef] = {}
        self._builtins: dict[str, BuiltinTool] = {}

    @classmethod
    def from_config(
        cls,
        config: "AgentConfig",
        registry: ToolRegistry,
        extra_tools: Optional[list[BuiltinTool]] = None,
    ) -> "AgentToolSet":
        """
        Resolve builtin and caller tools.

        Raises:
            UnknownToolError: a builtin tool name is not registered
        """
        tool_set = cls()
        for tool_name in config.tool_names:
            if not tool_name.is_builtin:
                continue
            tool = registry.get(tool_name.name)
            if tool is None:
                raise UnknownToolError(
                    f"Builtin tool {tool_name.name!r} is not registered",
                    tool_name=tool_name.name,
                )
            tool_set.add_builtin(tool)
        for tool in extra_tools or []:
            tool_set.add_builtin(tool)
        for spec in config.client_tools:
            tool_set._add(spec, CallerToolRef(spec.name))
        return tool_set

    async def load_external(self, config: "AgentConfig", servers: "ToolServerManager") -> None:
        """
        Resolve "@server/tool" names against the servers' tool listings.

        A server that cannot be reached still gets its tools declared, with
        an open schema; calling them yields ServerUnavailable results.
        """
        listings: dict[str, dict[str, ToolSpec]] = {}
        for tool_name in config.tool_names:
            if tool_name.is_builtin:
                continue
            server_id = tool_name.namespace
            if server_id not in listings:
                try:
                    specs = await servers.list_tools(server_id, config.servers[server_id])
                    listings[server_id] = {s.name: s for s in specs}
                except ToolServerUnavailableError as e:
                    logger.warning(f"Tool server {server_id!r} unavailable while resolving tools: {e}")
                    listings[server_id] = {}

            remote = listings[server_id].get(tool_name.name)
            exposed = external_tool_name(server_id, tool_name.name)
            if remote is None:
                spec = ToolSpec(name=exposed, description=f"{tool_name} (unavailable)")
            else:
                spec = ToolSpec(name=exposed, description=remote.description, input_schema=remote.input_schema)
            self._add(spec, ExternalToolRef(server_id, tool_name.name))

    def add_builtin(self, tool: BuiltinTool) -> None:
        self._builtins[tool.name] = tool
        self._add(tool.spec, BuiltinToolRef(tool.name))

    def _add(self, spec: ToolSpec, ref: ToolRef) -> None:
        if spec.name in self._refs:
            logger.warning(f"Tool name {spec.name!r} declared twice; keeping the last one")
        self._specs[spec.name] = spec
        self._refs[spec.name] = ref

    def resolve(self, name: str) -> Optional[ToolRef]:
        return self._refs.get(name)

    def builtin(self, handler_id: str) -> Optional[BuiltinTool]:
        return self._builtins.get(handler_id)

    def specs(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def names(self) -> list[str]:
        return list(self._refs)

    def __len__(self) -> int:
        return len(self._refs)
