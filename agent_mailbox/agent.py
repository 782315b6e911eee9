"""
AgentWorker - the per-agent state machine.

Each spawned agent gets one worker task that drains the agent's mailbox
one command at a time. Only the worker touches the agent's conversation
and state, so no locking is needed around them.

A turn runs like this:

    Idle --UserMessage--> Dispatching --first event--> Streaming
        --stream end, no tool uses--> Idle (MessageEvent)
        --stream end, tool uses-----> ToolPending --results--> Dispatching ...

Backend failures move the agent to Errored. Retriable ones are retried
with exponential backoff until retry_limit attempts have failed; after
that, or on a fatal error, the agent emits an ErrorEvent and goes
Terminal. Terminal after a failure is left only through Resume.
"""

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Optional

from agent_mailbox.agent_config import AgentConfig
from agent_mailbox.assembly import MessageAssembler
from agent_mailbox.backends.base import (
    Backend,
    BackendRequest,
    StreamError,
    TextDelta,
    ThinkingDelta,
    ToolUseDelta,
)
from agent_mailbox.errors import (
    AgentMailboxError,
    ErrorKind,
    ToolTurnLimitError,
    TransientBackendError,
)
from agent_mailbox.events import (
    AgentEvent,
    ContentBlockDeltaEvent,
    ErrorEvent,
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
    Conversation,
    DumpState,
    ExternalToolResult,
    Message,
    Pause,
    Resume,
    Role,
    Shutdown,
    ToolResultBlock,
    ToolUseBlock,
    Unpause,
    UserMessage,
)
from agent_mailbox.persistence.base import AgentSnapshot
from agent_mailbox.tools.registry import AgentToolSet, CallerToolRef, ToolContext

if TYPE_CHECKING:
    from agent_mailbox.runtime import Runtime

logger = logging.getLogger(__name__)

# Commands a failed (Terminal) agent still accepts
TERMINAL_COMMANDS = (Resume, DumpState, Shutdown)

_SNAPSHOT_STATES = (AgentState.IDLE, AgentState.ERRORED, AgentState.TERMINAL)


class AgentWorker:
    """Owns one agent: its mailbox, conversation and state."""

    def __init__(
        self,
        runtime: "Runtime",
        handle: AgentHandle,
        backend: Backend,
        model: str,
        config: AgentConfig,
        tool_set: AgentToolSet,
        *,
        conversation: Optional[Conversation] = None,
        state: AgentState = AgentState.IDLE,
        attempt_count: int = 0,
        tool_turns: int = 0,
        paused: bool = False,
    ):
        self.runtime = runtime
        self.handle = handle
        self.backend = backend
        self.model = model
        self.config = config
        self.tool_set = tool_set
        self.conversation = conversation or Conversation()
        self.state = state
        self.attempt_count = attempt_count
        self.tool_turns = tool_turns
        self.paused = paused

        self.mailbox: asyncio.Queue[AgentCommand] = asyncio.Queue(
            maxsize=runtime.config.mailbox_capacity
        )
        # Commands that arrived while waiting for caller tool results
        self._deferred: deque[AgentCommand] = deque()
        # User messages held by Pause or by a failure
        self._held: deque[UserMessage] = deque()
        self.task: Optional[asyncio.Task] = None
        #: Set once Shutdown or despawn has stopped the worker for good
        self.stopped = False
        self.despawned = False
        # correlation_id of the UserMessage whose turn is running
        self._reply_to: Optional[str] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        self.task = asyncio.create_task(self.run(), name=f"agent:{self.handle}")

    def accepts(self, command: AgentCommand) -> bool:
        if self.stopped:
            return False
        if self.state == AgentState.TERMINAL:
            return isinstance(command, TERMINAL_COMMANDS)
        return True

    async def run(self) -> None:
        """Worker loop. Returns after Shutdown; despawn cancels it."""
        logger.debug(f"Agent {self.handle} worker started in {self.state.value}")
        try:
            await self.tool_set.load_external(self.config, self.runtime.servers)
            if self.state.is_mid_turn:
                logger.info(f"Agent {self.handle} recovering mid-turn from {self.state.value}")
                if not await self._guarded(self._continue_turn()):
                    return

            while True:
                command = await self._next_command()
                if not await self._guarded(self._handle(command)):
                    return
        finally:
            logger.debug(f"Agent {self.handle} worker exiting")

    async def _guarded(self, operation) -> bool:
        """Run a command handler; an unexpected exception fails the agent instead of the worker."""
        try:
            return await operation
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Agent {self.handle} failed unexpectedly")
            await self._fail(ErrorKind.UNKNOWN, f"{type(e).__name__}: {e}")
            return True

    async def _next_command(self) -> AgentCommand:
        if self._deferred:
            return self._deferred.popleft()
        return await self.mailbox.get()

    async def _handle(self, command: AgentCommand) -> bool:
        """Process one command. Returns False when the worker should stop."""
        logger.debug(f"Agent {self.handle} handling {type(command).__name__} in {self.state.value}")

        if isinstance(command, UserMessage):
            if self.paused or self.state == AgentState.TERMINAL:
                self._held.append(command)
                return True
            self.conversation.append(command.to_message())
            self._reply_to = command.correlation_id
            return await self._run_turn()

        if isinstance(command, ExternalToolResult):
            logger.warning(
                f"Agent {self.handle} ignoring result for unknown tool call {command.tool_use_id!r}"
            )
            return True

        if isinstance(command, Resume):
            if self.state != AgentState.TERMINAL:
                logger.debug(f"Agent {self.handle} ignoring Resume in {self.state.value}")
                return True
            logger.info(f"Agent {self.handle} resuming")
            self.attempt_count = 0
            self.tool_turns = 0
            if not await self._continue_turn():
                return False
            self._release_held()
            return True

        if isinstance(command, Shutdown):
            await self._shutdown()
            return False

        self._handle_control(command)
        if isinstance(command, DumpState):
            await self._publish(StateDumpEvent(self.handle, snapshot=self.snapshot().to_dict()))
        return True

    def _handle_control(self, command: AgentCommand) -> None:
        if isinstance(command, Pause):
            self.paused = True
        elif isinstance(command, Unpause):
            self.paused = False
            self._release_held()

    def _release_held(self) -> None:
        if self.paused or self.state == AgentState.TERMINAL:
            return
        self._deferred.extendleft(reversed(self._held))
        self._held.clear()

    async def _shutdown(self) -> None:
        self.stopped = True
        await self._set_state(AgentState.TERMINAL)
        logger.info(f"Agent {self.handle} shut down")

    # =========================================================================
    # Turns
    # =========================================================================

    async def _continue_turn(self) -> bool:
        """Pick an interrupted turn back up from the conversation's tail."""
        last = self.conversation.last
        if last is None:
            await self._set_state(AgentState.IDLE)
            return True
        if last.role == Role.ASSISTANT:
            pending = self.conversation.unpaired_tool_uses()
            if not pending:
                await self._set_state(AgentState.IDLE)
                return True
            await self._set_state(AgentState.TOOL_PENDING)
            return await self._run_turn(pending)
        return await self._run_turn()

    async def _run_turn(self, pending_calls: Optional[list[ToolUseBlock]] = None) -> bool:
        """
        Dispatch and run tools until the model answers without tool uses.

        Returns False if a Shutdown arrived mid-turn.
        """
        calls = pending_calls or []
        while True:
            if calls:
                if self.tool_turns >= self.runtime.config.max_tool_turns:
                    error = ToolTurnLimitError(
                        f"Exceeded {self.runtime.config.max_tool_turns} consecutive tool turns"
                    )
                    self.attempt_count += 1
                    await self._set_state(AgentState.ERRORED)
                    await self._fail(error.kind, str(error))
                    return True
                self.tool_turns += 1
                if not await self._run_tools(calls):
                    await self._shutdown()
                    return False

            message = await self._dispatch_with_retry()
            if message is None:
                return True
            self.conversation.append(message)

            calls = message.tool_uses
            if not calls:
                self.tool_turns = 0
                await self._publish(MessageEvent(self.handle, message=message, reply_to=self._reply_to))
                await self._set_state(AgentState.IDLE)
                return True
            await self._set_state(AgentState.TOOL_PENDING)

    async def _dispatch_with_retry(self) -> Optional[Message]:
        """One backend round trip with retries. None means the agent went Terminal."""
        config = self.runtime.config
        while True:
            await self._set_state(AgentState.DISPATCHING)
            try:
                message = await self._dispatch()
            except AgentMailboxError as e:
                self.attempt_count += 1
                await self._set_state(AgentState.ERRORED)
                if e.retriable and self.attempt_count < config.retry_limit:
                    delay = config.backoff_delay(self.attempt_count)
                    logger.warning(
                        f"Agent {self.handle} attempt {self.attempt_count} failed ({e.kind.value}): {e}; "
                        f"retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.warning(f"Agent {self.handle} giving up after {self.attempt_count} attempt(s): {e}")
                await self._fail(e.kind, str(e))
                return None

            self.attempt_count = 0
            return message

    async def _dispatch(self) -> Message:
        request = BackendRequest(
            conversation=self.conversation.messages,
            system_prompt=self.config.system_prompt,
            tools=self.tool_set.specs(),
            model=self.model,
            sampling=self.config.sampling(self.runtime.config.default_max_tokens),
        )
        timeout = self.runtime.config.call_timeout_seconds
        async with self.runtime.semaphore:
            stream = self.backend.stream(request)
            try:
                return await asyncio.wait_for(self._consume(stream), timeout)
            except asyncio.TimeoutError as e:
                raise TransientBackendError(
                    f"Backend call timed out after {timeout}s", kind=ErrorKind.TIMEOUT
                ) from e
            finally:
                await stream.cancel()

    async def _consume(self, stream) -> Message:
        assembler = MessageAssembler()
        async for event in stream:
            if self.state == AgentState.DISPATCHING:
                await self._set_state(AgentState.STREAMING)
            if isinstance(event, StreamError):
                raise event.error
            assembler.feed(event)
            if isinstance(event, (TextDelta, ThinkingDelta, ToolUseDelta)):
                await self._publish(ContentBlockDeltaEvent(self.handle, index=event.index, delta=event))
        return assembler.finish()

    # =========================================================================
    # Tools
    # =========================================================================

    async def _run_tools(self, calls: list[ToolUseBlock]) -> bool:
        """
        Resolve every call of a batch and append the tool-role message.

        Runtime-executed calls run concurrently while caller tools wait for
        ExternalToolResult commands. Returns False if Shutdown arrived first.
        """
        results: list[Optional[ToolResultBlock]] = [None] * len(calls)
        awaiting: dict[str, int] = {}
        executed = []

        for index, call in enumerate(calls):
            await self._publish(ToolInvokedEvent(self.handle, call.id, call.name, call.arguments))
            if isinstance(self.tool_set.resolve(call.name), CallerToolRef):
                awaiting[call.id] = index
            else:
                executed.append((index, call))

        async def execute(index: int, call: ToolUseBlock) -> None:
            context = ToolContext(runtime=self.runtime, handle=self.handle, tool_use_id=call.id)
            result = await self.runtime.executor.execute(call, self.tool_set, self.config, context)
            results[index] = result
            await self._publish(ToolCompletedEvent(self.handle, call.id, result))

        batch = asyncio.ensure_future(asyncio.gather(*(execute(i, c) for i, c in executed)))
        try:
            if awaiting and not await self._await_caller_results(awaiting, results):
                batch.cancel()
                return False
            await batch
        finally:
            if not batch.done():
                batch.cancel()

        self.conversation.append(Message(role=Role.TOOL, content=list(results)))
        return True

    async def _await_caller_results(
        self,
        awaiting: dict[str, int],
        results: list[Optional[ToolResultBlock]],
    ) -> bool:
        while awaiting:
            command = await self.mailbox.get()
            if isinstance(command, ExternalToolResult):
                index = awaiting.pop(command.tool_use_id, None)
                if index is None:
                    logger.warning(
                        f"Agent {self.handle} ignoring result for unknown tool call {command.tool_use_id!r}"
                    )
                    continue
                result = command.to_block()
                results[index] = result
                await self._publish(ToolCompletedEvent(self.handle, command.tool_use_id, result))
            elif isinstance(command, Shutdown):
                return False
            elif isinstance(command, DumpState):
                await self._publish(StateDumpEvent(self.handle, snapshot=self.snapshot().to_dict()))
            elif isinstance(command, (Pause, Unpause)):
                self._handle_control(command)
            else:
                self._deferred.append(command)
        return True

    # =========================================================================
    # State, events and snapshots
    # =========================================================================

    async def _fail(self, kind: ErrorKind, detail: str) -> None:
        await self._publish(ErrorEvent(self.handle, kind=kind, detail=detail))
        await self._set_state(AgentState.TERMINAL)

    async def _set_state(self, state: AgentState) -> None:
        self.state = state
        logger.debug(f"Agent {self.handle} -> {state.value} (attempt {self.attempt_count})")
        if state in _SNAPSHOT_STATES:
            await self.save_snapshot()
        await self._publish(StateChangedEvent(self.handle, state=state, attempt_count=self.attempt_count))

    async def _publish(self, event: AgentEvent) -> None:
        await self.runtime.events.publish(event)

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(
            handle=self.handle,
            config=self.config,
            backend=self.backend.name or type(self.backend).__name__,
            model=self.model,
            conversation=Conversation(self.conversation.messages),
            state=self.state,
            attempt_count=self.attempt_count,
            tool_turns=self.tool_turns,
            paused=self.paused,
            despawned=self.despawned,
        )

    async def save_snapshot(self) -> None:
        try:
            await self.runtime.store.save(self.snapshot())
        except Exception:
            logger.exception(f"Failed to save snapshot for agent {self.handle}")

    async def mark_despawned(self) -> None:
        """Final transition after the runtime has stopped the worker task."""
        self.stopped = True
        self.despawned = True
        await self._set_state(AgentState.TERMINAL)
