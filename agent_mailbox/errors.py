"""
Exception hierarchy for agent_mailbox.

Errors fall into four families:
- BackendError: provider failures, classified transient (retryable) or fatal
- ToolError: tool failures, always converted into ToolResult error payloads
- AgentRuntimeError: raised synchronously from the public Runtime API
- ProtocolError: malformed backend stream events

Plus BackendConfigurationError for adapters that cannot be constructed.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Classification carried by errors and ErrorEvents."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CONNECTION = "connection"
    INVALID_REQUEST = "invalid_request"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    MALFORMED_STREAM = "malformed_stream"
    TOOL_TURN_LIMIT = "tool_turn_limit"
    EXECUTION_FAILED = "execution_failed"
    SERVER_UNAVAILABLE = "server_unavailable"
    UNKNOWN_TOOL = "unknown_tool"
    UNKNOWN = "unknown"


class AgentMailboxError(Exception):
    """Base class for all agent_mailbox errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str = "", *, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def retriable(self) -> bool:
        return False


# =============================================================================
# Backend errors
# =============================================================================


class BackendError(AgentMailboxError):
    """A failure reported by (or while talking to) a backend adapter."""


class TransientBackendError(BackendError):
    """Rate limits, timeouts, server errors. Safe to retry."""

    kind = ErrorKind.SERVER_ERROR

    @property
    def retriable(self) -> bool:
        return True


class FatalBackendError(BackendError):
    """Invalid requests, authorization failures. Never retried."""

    kind = ErrorKind.INVALID_REQUEST


class BackendConfigurationError(AgentMailboxError):
    """Raised when a backend cannot be constructed (missing key, unknown provider)."""


# =============================================================================
# Tool errors
# =============================================================================


class ToolError(AgentMailboxError):
    """A tool call failed. Converted into an error ToolResult, never fatal to the agent."""

    kind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str = "", *, tool_name: Optional[str] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message, kind=kind)
        self.tool_name = tool_name

    def to_payload(self) -> dict[str, Any]:
        """Structured error payload fed back into the conversation."""
        payload = {"error": str(self), "kind": self.kind.value}
        if self.tool_name:
            payload["tool"] = self.tool_name
        return payload


class ToolTimeoutError(ToolError):
    kind = ErrorKind.TIMEOUT


class ToolExecutionError(ToolError):
    kind = ErrorKind.EXECUTION_FAILED


class ToolServerUnavailableError(ToolError):
    kind = ErrorKind.SERVER_UNAVAILABLE


class UnknownToolError(ToolError):
    kind = ErrorKind.UNKNOWN_TOOL


# =============================================================================
# Runtime errors (raised from the public API)
# =============================================================================


class AgentRuntimeError(AgentMailboxError):
    """Base class for errors returned synchronously by the Runtime API."""

    def __init__(self, message: str = "", *, handle: Any = None):
        super().__init__(message)
        self.handle = handle


class UnknownHandleError(AgentRuntimeError):
    """The handle was never issued by this runtime."""


class AgentTerminalError(AgentRuntimeError):
    """The agent is terminal (despawned, or failed and not resumable by this command)."""


class MailboxFullError(AgentRuntimeError):
    """The agent's mailbox is at capacity."""


class RuntimeClosedError(AgentRuntimeError):
    """The runtime has been shut down."""


class NoRunningAgentsError(AgentRuntimeError):
    """recv() was called with no registered agents and no pending events."""


# =============================================================================
# Protocol errors
# =============================================================================


class ProtocolError(AgentMailboxError):
    """The backend stream violated the adapter contract."""

    kind = ErrorKind.MALFORMED_STREAM

    @property
    def retriable(self) -> bool:
        return True


class MalformedStreamEventError(ProtocolError):
    """A stream event arrived out of order or carried invalid data."""


class ToolTurnLimitError(AgentMailboxError):
    """The agent exceeded its maximum number of consecutive tool turns."""

    kind = ErrorKind.TOOL_TURN_LIMIT
