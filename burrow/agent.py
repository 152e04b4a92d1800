"""Agent orchestration for Burrow.

One turn alternates generation and tool execution:

    IDLE -> AWAITING_GENERATION -> EXECUTING_TOOLS -> AWAITING_GENERATION -> ... -> TERMINATED

The loop ends when a reply carries no tool calls, when the step bound is hit,
on cancellation, or when the generation port breaks its contract by raising.
Nothing raised inside a turn escapes ``Agent.submit``.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Sequence

from burrow.config import Config
from burrow.exceptions import SessionNotFoundError
from burrow.instructions import InstructionLoader
from burrow.llm import GenerationPort, create_provider, error_fragment
from burrow.logging import get_logger
from burrow.session import Message, Role, Session, SessionManager
from burrow.store import SandboxStore
from burrow.tools import ToolCall, ToolCallParser, ToolRegistry, ToolStatus, create_default_registry

log = get_logger(__name__)

STEP_LIMIT_WARNING = (
    "Agent loop reached safety step limit ({max_steps} steps). "
    "Further tool calls were not executed."
)
CANCELLED_BEFORE_EXECUTION = "Error: Cancelled before execution"
NOT_EXECUTED_STEP_LIMIT = "Error: Not executed (step limit reached)"
NOT_EXECUTED_GENERATION_FAILED = "Error: Not executed (generation failed)"
INTERRUPTED_DURING_EXECUTION = "Error: Interrupted during execution"


async def _next_fragment(stream: AsyncIterator[str]) -> str:
    return await anext(stream)


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


class AgentState(str, Enum):
    IDLE = "idle"
    AWAITING_GENERATION = "awaiting_generation"
    EXECUTING_TOOLS = "executing_tools"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    NO_MORE_TOOL_CALLS = "no_more_tool_calls"
    STEP_LIMIT_REACHED = "step_limit_reached"
    CANCELLED = "cancelled"
    GENERATION_FAILED = "generation_failed"


@dataclass
class TurnResult:
    """Outcome of one user turn."""

    reason: TerminationReason
    steps: int
    session_id: str


class Agent:
    """Drives conversational turns against a generation port and a sandboxed store."""

    def __init__(
        self,
        port: GenerationPort,
        store: SandboxStore,
        session_manager: SessionManager | None = None,
        tools: ToolRegistry | None = None,
        system_prompt: str | None = None,
        max_steps: int = 4,
        context_max_messages: int = 24,
        context_max_chars: int = 24000,
        auto_save: bool = True,
        on_fragment: Callable[[Message, str], None] | None = None,
        on_state: Callable[[AgentState], None] | None = None,
        on_tool_result: Callable[[ToolCall], None] | None = None,
        stop_timeout: float = 5.0,
    ):
        """Initialize the agent.

        Args:
            port: Generation port producing text fragments
            store: Sandboxed store the tools act on
            session_manager: Session persistence (defaults to JSON files in the store)
            tools: Tool registry (defaults to every built-in tool bound to ``store``)
            system_prompt: System prompt override (defaults to the rendered template)
            max_steps: Maximum tool-execution steps per turn
            context_max_messages: Most recent messages sent to the port
            context_max_chars: Character budget for the sent messages
            auto_save: Persist the session after every step
            on_fragment: Called with the streaming message and its display text
            on_state: Called on every state change
            on_tool_result: Called after each tool call finishes
            stop_timeout: Seconds ``stop`` waits for the turn to wind down before
                cancelling it outright
        """
        self.port = port
        self.store = store
        self.session_manager = session_manager or SessionManager(store)
        self.tools = tools or create_default_registry(store)
        self.parser = ToolCallParser(self.tools.specs())
        self.system_prompt = (
            system_prompt
            if system_prompt is not None
            else InstructionLoader().system_prompt(self.tools.specs())
        )
        self.max_steps = max(0, int(max_steps))
        self.context_max_messages = max(1, int(context_max_messages))
        self.context_max_chars = max(1, int(context_max_chars))
        self.auto_save = auto_save
        self.on_fragment = on_fragment
        self.on_state = on_state
        self.on_tool_result = on_tool_result
        self.stop_timeout = max(0.0, float(stop_timeout))

        self.session: Session | None = None
        self.state = AgentState.IDLE
        self.last_result: TurnResult | None = None
        self._turn_task: asyncio.Task[TurnResult] | None = None
        self._cancel_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: Config, port: GenerationPort | None = None, **kwargs: Any) -> "Agent":
        """Build an agent and its collaborators from configuration."""
        store = SandboxStore(
            config.resolved_sandbox_path(),
            search_max_results=config.sandbox.search_max_results,
            search_line_chars=config.sandbox.search_line_chars,
        )
        return cls(
            port=port or create_provider(config.model),
            store=store,
            session_manager=SessionManager(store, default_name=config.session.default_name),
            max_steps=config.agent.max_steps,
            context_max_messages=config.agent.context_max_messages,
            context_max_chars=config.agent.context_max_chars,
            auto_save=config.session.auto_save,
            **kwargs,
        )

    # Callbacks

    def _set_state(self, state: AgentState) -> None:
        self.state = state
        if self.on_state:
            try:
                self.on_state(state)
            except Exception as e:
                log.debug("State callback failed", error=str(e))

    def _emit_fragment(self, message: Message) -> None:
        if not self.on_fragment:
            return
        try:
            self.on_fragment(message, self.parser.display_prefix(message.content))
        except Exception as e:
            log.debug("Fragment callback failed", error=str(e))

    def _emit_tool_result(self, call: ToolCall) -> None:
        if not self.on_tool_result:
            return
        try:
            self.on_tool_result(call)
        except Exception as e:
            log.debug("Tool result callback failed", error=str(e))

    # Sessions

    async def initialize(self) -> None:
        """Resume the most recently updated session, if any."""
        if self.session is not None:
            return
        recent = await self.session_manager.list_sessions(limit=1)
        self.session = recent[0] if recent else None
        log.info("Agent initialized", session_id=self.session.id if self.session else None)

    async def new_session(self, name: str | None = None) -> Session:
        await self.stop()
        self.session = await self.session_manager.create_session(name=name)
        return self.session

    async def switch_session(self, session_id: str) -> Session:
        await self.stop()
        session = await self.session_manager.load_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self.session = session
        return session

    async def rename_session(self, session_id: str, name: str) -> Session:
        if self.session is not None and self.session.id == session_id:
            self.session.name = name
            self.session.touch()
            await self.session_manager.save_session(self.session)
            return self.session
        return await self.session_manager.rename_session(session_id, name)

    async def set_pinned(self, session_id: str, pinned: bool) -> Session:
        if self.session is not None and self.session.id == session_id:
            self.session.pinned = pinned
            await self.session_manager.save_session(self.session)
            return self.session
        return await self.session_manager.set_pinned(session_id, pinned)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session; deleting the current one falls back to the most recent."""
        is_current = self.session is not None and self.session.id == session_id
        if is_current:
            await self.stop()
        deleted = await self.session_manager.delete_session(session_id)
        if is_current:
            remaining = await self.session_manager.list_sessions(limit=1)
            self.session = remaining[0] if remaining else None
        return deleted

    async def _persist(self, session: Session) -> None:
        """Best-effort save; the in-memory session stays authoritative."""
        if not self.auto_save:
            return
        try:
            await self.session_manager.save_session(session)
        except Exception as e:
            log.error("Failed to persist session", session_id=session.id, error=str(e))

    # Context

    def build_context(self, messages: Sequence[Message]) -> list[Message]:
        """Most recent messages that fit the message cap and character budget."""
        recent = [message for message in messages if not message.is_streaming]
        recent = recent[-self.context_max_messages:]
        total = sum(len(message.content) for message in recent)
        while len(recent) > 1 and total >= self.context_max_chars:
            total -= len(recent.pop(0).content)
        return recent

    # Turn control

    async def stop(self) -> None:
        """Stop the in-flight turn, keeping whatever it already produced.

        The turn sees the cancel event at its next fragment or tool boundary
        and winds down on its own. It is cancelled outright only if it has not
        finished within ``stop_timeout`` seconds.
        """
        task = self._turn_task
        if task is None or task.done():
            return
        self._cancel_event.set()
        done, _ = await asyncio.wait({task}, timeout=self.stop_timeout)
        if task in done:
            return
        log.warning("Turn did not stop in time, cancelling", timeout=self.stop_timeout)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def submit(self, user_input: str) -> TurnResult:
        """Run one turn for ``user_input``, cancelling any turn still in flight."""
        await self.stop()
        if self.session is None:
            await self.initialize()
        if self.session is None:
            self.session = await self.session_manager.create_session()

        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        task = asyncio.create_task(self._run_turn(self.session, user_input, cancel_event))
        self._turn_task = task
        try:
            result = await task
        finally:
            if self._turn_task is task:
                self._turn_task = None
        self.last_result = result
        return result

    async def stream(self, user_input: str) -> AsyncIterator[str]:
        """Run a turn and yield display text as it becomes final."""
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        shown: dict[str, int] = {}
        previous = self.on_fragment

        def _forward(message: Message, display: str) -> None:
            if previous:
                previous(message, display)
            offset = shown.get(message.id, 0)
            if len(display) > offset:
                queue.put_nowait(display[offset:])
                shown[message.id] = len(display)

        self.on_fragment = _forward
        turn = asyncio.create_task(self.submit(user_input))
        turn.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (chunk := await queue.get()) is not None:
                yield chunk
            await turn
        finally:
            self.on_fragment = previous
            if not turn.done():
                await self.stop()
                turn.cancel()
                try:
                    await turn
                except asyncio.CancelledError:
                    pass

    # Turn loop

    async def _run_turn(self, session: Session, user_input: str, cancel_event: asyncio.Event) -> TurnResult:
        session.add_message(Role.USER, user_input)
        steps = 0
        provisional: Message | None = None
        reason = TerminationReason.NO_MORE_TOOL_CALLS

        try:
            while True:
                if cancel_event.is_set():
                    reason = TerminationReason.CANCELLED
                    break

                context = self.build_context(session.messages)
                self._set_state(AgentState.AWAITING_GENERATION)
                provisional = session.add_message(Role.ASSISTANT, "", is_streaming=True)
                failed = await self._stream_into(session, provisional, context, cancel_event)
                message, provisional = provisional, None

                if cancel_event.is_set():
                    self._finalize_partial(session, message)
                    reason = TerminationReason.CANCELLED
                    break

                calls = self._finalize_assistant(session, message)
                if failed:
                    self._skip_calls(calls, NOT_EXECUTED_GENERATION_FAILED)
                    reason = TerminationReason.GENERATION_FAILED
                    break
                if not calls:
                    reason = TerminationReason.NO_MORE_TOOL_CALLS
                    break
                if steps >= self.max_steps:
                    log.warning("Agent step limit reached", session_id=session.id, max_steps=self.max_steps)
                    self._skip_calls(calls, NOT_EXECUTED_STEP_LIMIT)
                    session.add_message(Role.SYSTEM, STEP_LIMIT_WARNING.format(max_steps=self.max_steps))
                    reason = TerminationReason.STEP_LIMIT_REACHED
                    break

                self._set_state(AgentState.EXECUTING_TOOLS)
                feedback = await self._execute_tool_calls(calls, cancel_event)
                session.add_message(Role.TOOL, feedback, tool_calls=calls)
                steps += 1
                await self._persist(session)
        except asyncio.CancelledError:
            if provisional is not None:
                self._finalize_partial(session, provisional)
            self._fail_unfinished_calls(session)
            self._set_state(AgentState.TERMINATED)
            await self._persist(session)
            if not cancel_event.is_set():
                raise
            reason = TerminationReason.CANCELLED
            log.info("Turn cancelled", session_id=session.id, steps=steps)
            return TurnResult(reason=reason, steps=steps, session_id=session.id)

        self._set_state(AgentState.TERMINATED)
        await self._persist(session)
        log.info("Turn finished", session_id=session.id, reason=reason.value, steps=steps)
        return TurnResult(reason=reason, steps=steps, session_id=session.id)

    async def _stream_into(
        self,
        session: Session,
        message: Message,
        context: list[Message],
        cancel_event: asyncio.Event,
    ) -> bool:
        """Accumulate the port's fragments into ``message``; True if the port raised.

        Each wait for the next fragment races the cancel event, so a stalled
        stream still stops promptly.
        """
        accumulated = ""
        stream = self.port.generate(context, self.system_prompt)
        cancel_wait = asyncio.create_task(cancel_event.wait())
        next_fragment: asyncio.Task[str] | None = None
        try:
            while True:
                next_fragment = asyncio.create_task(_next_fragment(stream))
                done, _ = await asyncio.wait(
                    {next_fragment, cancel_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_fragment not in done:
                    break
                try:
                    fragment = next_fragment.result()
                except StopAsyncIteration:
                    break
                accumulated += fragment
                session.update_last_assistant_message(accumulated)
                self._emit_fragment(message)
                if cancel_event.is_set():
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Generation port raised", error=str(e))
            session.update_last_assistant_message(accumulated + error_fragment(e))
            self._emit_fragment(message)
            return True
        finally:
            await _cancel_task(next_fragment)
            await _cancel_task(cancel_wait)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    log.debug("Closing generation stream failed", error=str(e))
        return False

    def _finalize_partial(self, session: Session, message: Message) -> None:
        """Keep a cancelled stream's content as-is, dropping it only if empty."""
        message.is_streaming = False
        if not message.content.strip():
            session.remove_message(message.id)

    def _finalize_assistant(self, session: Session, message: Message) -> list[ToolCall]:
        """Parse tool calls and replace the content with display text."""
        message.is_streaming = False
        text = message.content
        if not text.strip():
            session.remove_message(message.id)
            return []

        if self.parser.has_unterminated_directive(text):
            log.warning("Reply ended inside a tool directive", session_id=session.id)
        calls = self.parser.parse(text)
        message.content = self.parser.strip(text)
        if calls:
            message.tool_calls = calls
        return calls

    def _skip_calls(self, calls: list[ToolCall], reason: str) -> None:
        """Settle calls that will never run as failed."""
        for call in calls:
            call.status = ToolStatus.FAILED
            call.result = reason
            self._emit_tool_result(call)

    def _fail_unfinished_calls(self, session: Session) -> None:
        """After a hard cancel, no call in the ledger may stay pending or executing."""
        for message in session.messages:
            for call in message.tool_calls or ():
                if call.status is ToolStatus.EXECUTING:
                    call.status = ToolStatus.FAILED
                    call.result = INTERRUPTED_DURING_EXECUTION
                elif call.status is ToolStatus.PENDING:
                    call.status = ToolStatus.FAILED
                    call.result = CANCELLED_BEFORE_EXECUTION

    async def _execute_tool_calls(self, calls: list[ToolCall], cancel_event: asyncio.Event) -> str:
        """Run calls in order and join their results into one feedback block."""
        blocks: list[str] = []
        for call in calls:
            if cancel_event.is_set():
                call.status = ToolStatus.FAILED
                call.result = CANCELLED_BEFORE_EXECUTION
            else:
                call.status = ToolStatus.EXECUTING
                try:
                    result = await self.tools.execute(call.name, call.parameters, abort_event=cancel_event)
                    call.result = result.as_feedback()
                    call.status = ToolStatus.SUCCESS if result.success else ToolStatus.FAILED
                except Exception as e:
                    log.error("Tool execution failed", tool=call.name, call_id=call.id, error=str(e))
                    call.result = f"Error: {e}"
                    call.status = ToolStatus.FAILED
            self._emit_tool_result(call)
            blocks.append(f"<result>\n{call.result}\n</result>")
        return "\n".join(blocks)
