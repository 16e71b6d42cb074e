"""Conversation loop: model call, sequential tool execution, compression, abort."""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, List, Optional, TYPE_CHECKING

from .cancellation import CancellationToken
from .compression import CompressionController
from .config import DEFAULT_MAX_ITERATIONS, DEFAULT_TOKEN_LIMIT
from .errors import AbortError, ModelCallError, OrchestratorBusyError
from .llm import ModelResponse
from .logger import get_logger
from .messages import Message, Role, Session, TextBlock, ToolCall, ToolCallBlock, ToolResult
from .tools.registry import ToolExecutor
from .wire import to_wire_format

if TYPE_CHECKING:
    from .llm import LLMAdapter
    from .session import SessionStore

_log = get_logger(__name__)

__all__ = ["ConversationOrchestrator", "AgentEvent", "EventKind", "LoopState", "TurnStream"]


class EventKind(str, Enum):
    THINKING_STARTED = "thinking-started"
    THINKING_ENDED = "thinking-ended"
    TOOL_STARTED = "tool-started"
    TOOL_FINISHED = "tool-finished"
    FINAL_TEXT = "final-text"
    ABORTED = "aborted"
    ERROR = "error"


class LoopState(Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    ABORTED = "aborted"


_FINISHED_STATES = frozenset({LoopState.DONE, LoopState.ABORTED})


@dataclass
class AgentEvent:
    kind: EventKind
    text: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    result: Optional[ToolResult] = None
    error: Optional[str] = None
    # Set on error events that end the turn.
    fatal: bool = False


class TurnStream:
    """Event stream of one submitted turn.

    Closing the stream, or dropping it, before the first event releases the
    orchestrator; a started turn releases it when its loop finishes.
    """

    def __init__(self, events: Iterator[AgentEvent], release: Callable[[], None]):
        self._events = events
        self._release = release
        self._started = False

    def __iter__(self) -> "TurnStream":
        return self

    def __next__(self) -> AgentEvent:
        self._started = True
        return next(self._events)

    def close(self) -> None:
        if self._started:
            self._events.close()
        else:
            self._release()

    def __del__(self):
        self.close()


class ConversationOrchestrator:
    """Drives one session: each :meth:`submit` runs a user turn to completion.

    The turn alternates between AWAITING_MODEL and EXECUTING_TOOLS until the
    model answers without tool calls (DONE) or the turn is cancelled
    (ABORTED). Tool calls run one at a time in the order the model listed
    them, and every tool call gets exactly one tool message, an aborted
    result if the turn was cancelled before it ran.
    """

    def __init__(self, llm: "LLMAdapter", executor: ToolExecutor, session: Session,
                 compression: Optional[CompressionController] = None,
                 session_store: Optional["SessionStore"] = None,
                 max_iterations: int = DEFAULT_MAX_ITERATIONS,
                 token_limit: int = DEFAULT_TOKEN_LIMIT,
                 system_prompt: Optional[str] = None):
        self.llm = llm
        self.executor = executor
        self.session = session
        self.compression = compression or CompressionController(llm.compress_messages, token_limit)
        self.session_store = session_store
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt
        self._lock = threading.Lock()
        self._busy = False
        self._token: Optional[CancellationToken] = None

    @property
    def busy(self) -> bool:
        return self._busy

    def submit(self, text: str, images: Optional[List[str]] = None) -> TurnStream:
        """Start a user turn and return its event stream.

        Raises :class:`OrchestratorBusyError` immediately when a turn is
        already running. The turn only progresses while the returned
        stream is consumed; closing or dropping it unconsumed frees the
        orchestrator for the next turn.
        """
        with self._lock:
            if self._busy:
                raise OrchestratorBusyError()
            self._busy = True
            token = self._token = CancellationToken()
        return TurnStream(self._run_turn(text, images, token), lambda: self._release(token))

    def abort(self) -> bool:
        """Cancel the running turn. Returns False when nothing is running."""
        with self._lock:
            token = self._token if self._busy else None
        if token is None:
            return False
        _log.info("Abort requested")
        token.cancel()
        return True

    def clear(self) -> None:
        if self._busy:
            raise OrchestratorBusyError()
        self.session.clear()

    # ── Turn loop ─────────────────────────────────────────────

    def _run_turn(self, text: str, images: Optional[List[str]],
                  token: CancellationToken) -> Iterator[AgentEvent]:
        try:
            self.session.append(Message.user(text, images))
            self.session.add_to_input_history(text)

            state = LoopState.AWAITING_MODEL
            pending: List[ToolCall] = []
            iterations = 0

            while state not in _FINISHED_STATES:
                if state is LoopState.AWAITING_MODEL:
                    if token.cancelled:
                        state = LoopState.ABORTED
                        continue
                    if iterations >= self.max_iterations:
                        _log.warning("Reached max iterations (%d)", self.max_iterations)
                        yield AgentEvent(EventKind.ERROR, fatal=True,
                                         error=f"Reached max iterations ({self.max_iterations})")
                        state = LoopState.DONE
                        continue
                    iterations += 1

                    yield AgentEvent(EventKind.THINKING_STARTED)
                    try:
                        response = self._call_model(token)
                    except AbortError:
                        yield AgentEvent(EventKind.THINKING_ENDED)
                        state = LoopState.ABORTED
                        continue
                    except ModelCallError as e:
                        _log.error("Model call failed: %s", e)
                        yield AgentEvent(EventKind.THINKING_ENDED)
                        yield AgentEvent(EventKind.ERROR, error=str(e), fatal=True)
                        state = LoopState.DONE
                        continue
                    yield AgentEvent(EventKind.THINKING_ENDED, text=response.content)

                    self.session.append(self._assistant_message(response))
                    if response.usage is not None:
                        self.session.total_tokens = response.usage.total_tokens
                        self.compression.maybe_compress(self.session, response.usage, token)

                    if response.has_tool_calls():
                        pending = list(response.tool_calls)
                        state = LoopState.EXECUTING_TOOLS
                    else:
                        yield AgentEvent(EventKind.FINAL_TEXT, text=response.content or "")
                        state = LoopState.DONE

                elif state is LoopState.EXECUTING_TOOLS:
                    yield from self._execute_tools(pending, token)
                    pending = []
                    state = LoopState.ABORTED if token.cancelled else LoopState.AWAITING_MODEL

            if state is LoopState.ABORTED:
                _log.info("Turn aborted")
                yield AgentEvent(EventKind.ABORTED)
        finally:
            self._save_session()
            self._release(token)

    def _release(self, token: CancellationToken) -> None:
        with self._lock:
            if self._token is token:
                self._busy = False
                self._token = None

    def _call_model(self, token: CancellationToken) -> ModelResponse:
        return self.llm.call_agent(
            to_wire_format(self.session.messages),
            self.executor.registry.get_tool_schemas(),
            token,
            self.system_prompt,
        )

    @staticmethod
    def _assistant_message(response: ModelResponse) -> Message:
        blocks = []
        if response.content:
            blocks.append(TextBlock(content=response.content))
        for call in response.tool_calls or []:
            blocks.append(ToolCallBlock(id=call.id, name=call.name, arguments=dict(call.arguments)))
        return Message(Role.ASSISTANT, blocks)

    def _execute_tools(self, calls: List[ToolCall], token: CancellationToken) -> Iterator[AgentEvent]:
        for index, call in enumerate(calls):
            if token.cancelled:
                for skipped in calls[index:]:
                    result = ToolResult.aborted()
                    self.session.append(Message.tool(result.to_block(skipped.id)))
                    yield AgentEvent(EventKind.TOOL_FINISHED, tool_call=skipped, result=result)
                return

            yield AgentEvent(EventKind.TOOL_STARTED, tool_call=call)
            if not call.arguments_valid:
                yield AgentEvent(EventKind.ERROR, tool_call=call,
                                 error=f"Could not parse arguments for tool '{call.name}'")
            result = self.executor.run(call, token)
            self.session.append(Message.tool(result.to_block(call.id)))
            yield AgentEvent(EventKind.TOOL_FINISHED, tool_call=call, result=result)

    def _save_session(self) -> None:
        if self.session_store is None:
            return
        try:
            self.session_store.save(self.session)
        except OSError as e:
            _log.error("Failed to save session %s: %s", self.session.id, e)
