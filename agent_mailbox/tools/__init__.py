"""
Tool invocation subsystem: builtin registry, schema helpers, external
servers and batch execution.
"""

from agent_mailbox.tools.executor import ToolExecutor
from agent_mailbox.tools.registry import (
    AgentToolSet,
    BuiltinTool,
    BuiltinToolRef,
    CallSlot,
    CallerToolRef,
    ExternalToolRef,
    ToolContext,
    ToolRef,
    ToolRegistry,
    external_tool_name,
)
from agent_mailbox.tools.schema import ToolParameter, ToolSchema, ToolSchemaBuilder
from agent_mailbox.tools.servers import (
    LocalToolServer,
    RemoteToolServer,
    RestartPolicy,
    ServerTransportError,
    ToolServer,
    ToolServerManager,
)

__all__ = [
    # Registry
    "ToolRegistry",
    "BuiltinTool",
    "ToolContext",
    "CallSlot",
    "AgentToolSet",
    "ToolRef",
    "BuiltinToolRef",
    "ExternalToolRef",
    "CallerToolRef",
    "external_tool_name",
    # Schema
    "ToolParameter",
    "ToolSchema",
    "ToolSchemaBuilder",
    # Servers
    "ToolServer",
    "LocalToolServer",
    "RemoteToolServer",
    "RestartPolicy",
    "ServerTransportError",
    "ToolServerManager",
    # Execution
    "ToolExecutor",
]
