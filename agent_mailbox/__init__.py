"""
agent_mailbox - a runtime for stateful, tool-using LLM agents.

Each agent has a mailbox of commands and a single worker that drains it:
dispatching to a backend, streaming partial output, running tools and
snapshotting its state. Callers drain one multiplexed event stream.

Quick start:
    from agent_mailbox import AgentConfig, Runtime, UserMessage, MessageEvent
    from agent_mailbox.backends import get_backend

    async with Runtime() as runtime:
        backend = get_backend(model="claude-sonnet-4-5-20250929")
        handle = runtime.spawn_agent(backend, "claude-sonnet-4-5-20250929", AgentConfig())
        runtime.send(handle, UserMessage("Hello!"))
        while not isinstance(event := await runtime.recv(), MessageEvent):
            pass
        print(event.text)
"""

__version__ = "0.1.0"

from agent_mailbox.agent_config import (
    AgentConfig,
    LocalServerConfig,
    RemoteServerConfig,
    ToolName,
)
from agent_mailbox.backends import Backend, BackendRequest, BackendStream, get_backend
from agent_mailbox.config import RuntimeConfig, configure, get_config, reset_config
from agent_mailbox.errors import (
    AgentMailboxError,
    AgentRuntimeError,
    AgentTerminalError,
    BackendConfigurationError,
    BackendError,
    ErrorKind,
    FatalBackendError,
    MailboxFullError,
    MalformedStreamEventError,
    NoRunningAgentsError,
    ProtocolError,
    RuntimeClosedError,
    ToolError,
    ToolExecutionError,
    ToolServerUnavailableError,
    ToolTimeoutError,
    ToolTurnLimitError,
    TransientBackendError,
    UnknownHandleError,
    UnknownToolError,
)
from agent_mailbox.events import (
    AgentEvent,
    ContentBlockDeltaEvent,
    ErrorEvent,
    EventMultiplexer,
    MessageEvent,
    StateChangedEvent,
    StateDumpEvent,
    ToolCompletedEvent,
    ToolInvokedEvent,
)
from agent_mailbox.interfaces import (
    AgentCommand,
    AgentHandle,
    AgentState,
    ContentBlock,
    Conversation,
    DumpState,
    ExternalToolResult,
    ImageBlock,
    Message,
    Pause,
    Resume,
    Role,
    SamplingConfig,
    Shutdown,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
    Unpause,
    UserMessage,
)
from agent_mailbox.multi_agent import (
    AgentMessageTool,
    InvocationMode,
    create_agent_message_tool,
    register_agent_tools,
)
from agent_mailbox.persistence import (
    AgentSnapshot,
    FileSnapshotStore,
    InMemorySnapshotStore,
    SnapshotStore,
)
from agent_mailbox.runtime import Runtime
from agent_mailbox.tools import (
    BuiltinTool,
    ToolContext,
    ToolRegistry,
    ToolSchemaBuilder,
)

__all__ = [
    "__version__",
    # Runtime
    "Runtime",
    "RuntimeConfig",
    "configure",
    "get_config",
    "reset_config",
    # Data model
    "AgentHandle",
    "AgentState",
    "Role",
    "ContentBlock",
    "TextBlock",
    "ImageBlock",
    "ToolUseBlock",
    "ToolResultBlock",
    "ThinkingBlock",
    "Message",
    "Conversation",
    "ToolSpec",
    "SamplingConfig",
    # Agent configuration
    "AgentConfig",
    "LocalServerConfig",
    "RemoteServerConfig",
    "ToolName",
    # Commands
    "AgentCommand",
    "UserMessage",
    "ExternalToolResult",
    "Resume",
    "Shutdown",
    "Pause",
    "Unpause",
    "DumpState",
    # Events
    "AgentEvent",
    "ContentBlockDeltaEvent",
    "MessageEvent",
    "ToolInvokedEvent",
    "ToolCompletedEvent",
    "StateChangedEvent",
    "ErrorEvent",
    "StateDumpEvent",
    "EventMultiplexer",
    # Backends
    "Backend",
    "BackendRequest",
    "BackendStream",
    "get_backend",
    # Tools
    "ToolRegistry",
    "BuiltinTool",
    "ToolContext",
    "ToolSchemaBuilder",
    # Multi-agent
    "InvocationMode",
    "AgentMessageTool",
    "create_agent_message_tool",
    "register_agent_tools",
    # Persistence
    "AgentSnapshot",
    "SnapshotStore",
    "InMemorySnapshotStore",
    "FileSnapshotStore",
    # Errors
    "ErrorKind",
    "AgentMailboxError",
    "BackendError",
    "TransientBackendError",
    "FatalBackendError",
    "BackendConfigurationError",
    "ToolError",
    "ToolTimeoutError",
    "ToolExecutionError",
    "ToolServerUnavailableError",
    "UnknownToolError",
    "AgentRuntimeError",
    "UnknownHandleError",
    "AgentTerminalError",
    "MailboxFullError",
    "RuntimeClosedError",
    "NoRunningAgentsError",
    "ProtocolError",
    "MalformedStreamEventError",
    "ToolTurnLimitError",
]
