"""
Tool call execution.

Runs the builtin and external calls of one batch concurrently, bounded by
the runtime-wide semaphore, and returns results in call order. Failures of
any kind come back as error ToolResultBlocks; only cancellation propagates.

A context-aware builtin can hand its slot back while it waits on another
agent (ToolContext.released_slot); otherwise a delegation chain longer than
max_concurrent_calls would starve.
"""

import asyncio
import dataclasses
import logging
from typing import Any, Optional

from agent_mailbox.agent_config import AgentConfig
from agent_mailbox.config import RuntimeConfig
from agent_mailbox.errors import (
    ToolError,
    ToolExecutionError,
    ToolServerUnavailableError,
    ToolTimeoutError,
    UnknownToolError,
)
from agent_mailbox.interfaces import ToolResultBlock, ToolUseBlock
from agent_mailbox.tools.registry import (
    AgentToolSet,
    BuiltinToolRef,
    CallSlot,
    CallerToolRef,
    ExternalToolRef,
    ToolContext,
)
from agent_mailbox.tools.servers import ToolServerManager

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Executes tool calls for every agent of a runtime."""

    def __init__(
        self,
        servers: ToolServerManager,
        semaphore: asyncio.Semaphore,
        config: Optional[RuntimeConfig] = None,
    ):
        self.servers = servers
        self.semaphore = semaphore
        self.config = config or RuntimeConfig()

    async def execute(
        self,
        call: ToolUseBlock,
        tool_set: AgentToolSet,
        agent_config: AgentConfig,
        context: Optional[ToolContext] = None,
    ) -> ToolResultBlock:
        """Run one call. Never raises except on cancellation."""
        try:
            payload = await self._invoke(call, tool_set, agent_config, context)
        except ToolError as e:
            logger.info(f"Tool {call.name!r} ({call.id}) failed: {e}")
            return ToolResultBlock(tool_use_id=call.id, content=e.to_payload(), is_error=True)
        except Exception as e:
            logger.info(f"Tool {call.name!r} ({call.id}) raised {type(e).__name__}: {e}")
            error = ToolExecutionError(f"{type(e).__name__}: {e}", tool_name=call.name)
            return ToolResultBlock(tool_use_id=call.id, content=error.to_payload(), is_error=True)

        logger.debug(f"Tool {call.name!r} ({call.id}) completed")
        return ToolResultBlock(tool_use_id=call.id, content=payload, is_error=False)

    async def execute_batch(
        self,
        calls: list[ToolUseBlock],
        tool_set: AgentToolSet,
        agent_config: AgentConfig,
        contexts: Optional[list[ToolContext]] = None,
    ) -> list[ToolResultBlock]:
        """Run calls concurrently; results come back in call order."""
        contexts = contexts or [None] * len(calls)
        return list(await asyncio.gather(*(
            self.execute(call, tool_set, agent_config, context)
            for call, context in zip(calls, contexts)
        )))

    async def _invoke(
        self,
        call: ToolUseBlock,
        tool_set: AgentToolSet,
        agent_config: AgentConfig,
        context: Optional[ToolContext],
    ) -> Any:
        ref = tool_set.resolve(call.name)
        if ref is None:
            raise UnknownToolError(f"Unknown tool: {call.name}", tool_name=call.name)
        if isinstance(ref, CallerToolRef):
            raise ToolExecutionError(
                f"Tool {call.name!r} is resolved by the caller, not the runtime",
                tool_name=call.name,
            )

        logger.debug(f"Invoking tool {call.name!r} ({call.id}) with {call.arguments}")

        slot = CallSlot(self.semaphore)
        await slot.acquire()
        try:
            if isinstance(ref, BuiltinToolRef):
                if context is not None:
                    context = dataclasses.replace(context, slot=slot)
                return await self._invoke_builtin(call, ref, tool_set, context)
            if isinstance(ref, ExternalToolRef):
                return await self._invoke_external(call, ref, agent_config)
        finally:
            slot.release()

        raise UnknownToolError(f"Unsupported tool reference for {call.name!r}", tool_name=call.name)

    async def _invoke_builtin(
        self,
        call: ToolUseBlock,
        ref: BuiltinToolRef,
        tool_set: AgentToolSet,
        context: Optional[ToolContext],
    ) -> Any:
        tool = tool_set.builtin(ref.handler_id)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {call.name}", tool_name=call.name)

        timeout = tool.timeout_seconds or self.config.tool_timeout_seconds
        try:
            return await asyncio.wait_for(tool.invoke(call.arguments, context), timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(
                f"Tool {call.name!r} timed out after {timeout}s", tool_name=call.name
            ) from e

    async def _invoke_external(self, call: ToolUseBlock, ref: ExternalToolRef, agent_config: AgentConfig) -> Any:
        server_config = agent_config.servers.get(ref.server_id)
        if server_config is None:
            raise ToolServerUnavailableError(
                f"Server {ref.server_id!r} is not configured", tool_name=call.name
            )
        return await self.servers.call_tool(
            ref.server_id,
            server_config,
            ref.remote_name,
            call.arguments,
            timeout=self.config.tool_timeout_seconds,
        )
