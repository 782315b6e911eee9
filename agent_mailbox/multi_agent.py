"""
Multi-agent messaging.

Agents never touch each other's conversations. One agent talks to another
by calling a tool whose handler sends a UserMessage into the other agent's
mailbox through the runtime, and optionally waits for the reply on the
runtime's event stream filtered by the target's handle.

Invocation Modes:
    NOTIFY: Send the message and return immediately. The target works on
            it independently; its events go to whoever is receiving.

    DELEGATE: Send the message with a fresh correlation id, then wait for
              the MessageEvent replying to it and return its text as the
              tool result. Replies to messages queued earlier are skipped.
              While waiting, the tool consumes the target's events and
              gives up its concurrency slot.

Example:
    researcher = runtime.spawn_agent(backend, model, researcher_config)

    ask_researcher = create_agent_message_tool(
        runtime,
        researcher,
        name="ask_researcher",
        description="Ask the research agent a question and wait for the answer",
        mode=InvocationMode.DELEGATE,
        timeout_seconds=300,
    )
    triage = runtime.spawn_agent(backend, model, triage_config, tools=[ask_researcher])
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from agent_mailbox.errors import AgentRuntimeError, ToolExecutionError
from agent_mailbox.events import ErrorEvent, MessageEvent
from agent_mailbox.interfaces import AgentHandle, UserMessage
from agent_mailbox.tools.registry import BuiltinTool, ToolContext

if TYPE_CHECKING:
    from agent_mailbox.runtime import Runtime

logger = logging.getLogger(__name__)


class InvocationMode(str, Enum):
    """How the target agent is invoked. See the module docstring."""

    NOTIFY = "notify"
    DELEGATE = "delegate"


DEFAULT_INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "message": {
            "type": "string",
            "description": "The message or task to send to this agent",
        },
        "context": {
            "type": "string",
            "description": "Optional additional context to include",
        },
    },
    "required": ["message"],
}


@dataclass
class AgentMessageTool:
    """
    Describes a tool that messages another agent.

    Attributes:
        target: Handle of the agent to message
        name: Tool name (how the calling agent's model refers to it)
        description: When to use this agent (shown to the model)
        mode: NOTIFY or DELEGATE
        timeout_seconds: Bound on the whole call, including the wait in DELEGATE
        input_schema: Optional custom schema (defaults to message + context)
    """

    target: AgentHandle
    name: str
    description: str
    mode: InvocationMode = InvocationMode.DELEGATE
    timeout_seconds: Optional[float] = None
    input_schema: dict = field(default_factory=lambda: dict(DEFAULT_INPUT_SCHEMA))

    def to_builtin(self) -> BuiltinTool:
        return BuiltinTool(
            name=self.name,
            handler=self._handle,
            description=self.description,
            input_schema=self.input_schema,
            timeout_seconds=self.timeout_seconds,
            takes_context=True,
        )

    async def _handle(self, ctx: ToolContext, message: str, context: Optional[str] = None) -> dict:
        if ctx.handle == self.target:
            raise ToolExecutionError("An agent cannot message itself", tool_name=self.name)

        text = f"{context}\n\n{message}" if context else message
        correlation_id = uuid4().hex
        try:
            ctx.runtime.send(self.target, UserMessage(text, correlation_id=correlation_id))
        except AgentRuntimeError as e:
            raise ToolExecutionError(f"Cannot reach agent {self.target}: {e}", tool_name=self.name) from e

        logger.debug(f"Agent {ctx.handle} sent message to {self.target} ({self.mode.value})")
        if self.mode == InvocationMode.NOTIFY:
            return {"status": "sent", "agent": self.target.name}

        # The target needs a concurrency slot of its own to answer
        async with ctx.released_slot():
            reply = await self._await_reply(ctx.runtime, correlation_id)
        return {"agent": self.target.name, "response": reply}

    async def _await_reply(self, runtime: "Runtime", correlation_id: str) -> str:
        while True:
            try:
                event = await runtime.recv(handle=self.target)
            except AgentRuntimeError as e:
                raise ToolExecutionError(
                    f"Agent {self.target} stopped before replying: {e}", tool_name=self.name
                ) from e
            if isinstance(event, MessageEvent):
                if event.reply_to == correlation_id:
                    return event.text
                logger.debug(f"Skipping reply from {self.target} to an earlier message")
            if isinstance(event, ErrorEvent):
                raise ToolExecutionError(
                    f"Agent {self.target} failed ({event.kind.value}): {event.detail}",
                    tool_name=self.name,
                )


def create_agent_message_tool(
    runtime: "Runtime",
    target: AgentHandle,
    name: Optional[str] = None,
    description: Optional[str] = None,
    mode: InvocationMode = InvocationMode.DELEGATE,
    timeout_seconds: Optional[float] = None,
) -> BuiltinTool:
    """
    Build a builtin tool that messages `target`.

    The target must be a live agent of `runtime`. Pass the returned tool to
    spawn_agent(tools=[...]), or register it on the runtime.
    """
    runtime.state(target)  # raises for unknown or despawned handles
    return AgentMessageTool(
        target=target,
        name=name or f"message_{target.name}".replace("-", "_"),
        description=description or f"Send a message to the {target.name} agent",
        mode=mode,
        timeout_seconds=timeout_seconds,
    ).to_builtin()


def register_agent_tools(runtime: "Runtime", agent_tools: list[AgentMessageTool]) -> None:
    """Register several agent message tools on the runtime's builtin registry."""
    for agent_tool in agent_tools:
        runtime.tools.add(agent_tool.to_builtin())
