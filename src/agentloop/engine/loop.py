"""SessionEngine: the turn loop of an autonomous coding agent.

Each cycle walks the states

    AWAITING_PROVIDER -> STREAMING_RESPONSE -> DISPATCHING_TOOLS
    -> APPENDING_RESULTS -> (AWAITING_PROVIDER | TERMINATED)

and consists of:

a. enforcing the context budget;
b. opening the provider stream through the RetryController (the first
   chunk is primed inside the retry so lazy-stream failures are retried);
c. parsing the stream, pushing AgentText for narration;
d. dispatching completed tool calls;
e. appending results as tool messages;
f. deciding whether to continue.

Anything the model can act on (tool failures, malformed calls) stays in
the conversation as data. Anything it cannot act on terminates the
session with a reason; the last good state stays persisted.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentloop.classify import ErrorKind, classify_error
from agentloop.engine.context import ContextWindowManager
from agentloop.engine.dispatcher import ToolDispatcher
from agentloop.engine.execution import CancellationToken
from agentloop.engine.parser import StreamingToolParser
from agentloop.engine.text import (
    APPROVAL_MARKER,
    extract_last_block,
    format_duration,
    is_empty_response,
)
from agentloop.engine.tokens import CharRatioEstimator
from agentloop.exceptions import ContextOverflowError, RetryExhaustedError
from agentloop.models.config import EngineConfig
from agentloop.models.events import (
    AgentText,
    Completed,
    SessionTerminated,
    StreamError,
    StreamErrorKind,
    TextDelta,
    ToolCallEnd,
    ToolCompleted,
    ToolInvoked,
    TurnError,
    Usage,
)
from agentloop.models.messages import Message, MessageKind
from agentloop.models.results import TaskResult
from agentloop.models.session import Session
from agentloop.prompts.continuation import (
    CONTINUE_PROMPT,
    INCOMPLETE_TOOL_CALL_PROMPT,
    TRUNCATED_RESPONSE_PROMPT,
    UNEXECUTED_TOOL_CALL_PROMPT,
    build_malformed_tool_call_prompt,
)
from agentloop.retry import RetryController
from agentloop.sinks import NullUiSink

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from agentloop.models.events import ProviderChunk, UiEvent
    from agentloop.models.messages import ToolCall
    from agentloop.protocols import Provider, SessionStore, Summarizer, TokenEstimator, UiSink
    from agentloop.toolkit.registry import ToolRegistry

logger = logging.getLogger(__name__)

_TRUNCATION_REASONS = frozenset({"max_tokens", "length"})

DUP_IN_CHUNK = "DUP IN CHUNK"
DUP_IN_MSG = "DUP IN MSG"


class EngineState(str, enum.Enum):
    """Where the engine is within a cycle."""

    IDLE = "idle"
    AWAITING_PROVIDER = "awaiting_provider"
    STREAMING_RESPONSE = "streaming_response"
    DISPATCHING_TOOLS = "dispatching_tools"
    APPENDING_RESULTS = "appending_results"
    TERMINATED = "terminated"


class TerminationReason(str, enum.Enum):
    """Why a session stopped."""

    COMPLETED = "completed"
    PROVIDER_ERROR = "provider_error"
    STREAM_FAILED = "stream_failed"
    CONTEXT_OVERFLOW = "context_overflow"
    MAX_TURNS = "max_turns"
    CANCELLED = "cancelled"
    EMPTY_RESPONSE = "empty_response"
    MALFORMED_TOOL_CALLS = "malformed_tool_calls"


class AutoContinueReason(str, enum.Enum):
    """Why an autonomous session was nudged instead of stopping."""

    TOOLS_EXECUTED = "tools_executed"
    INCOMPLETE_TOOL_CALL = "incomplete_tool_call"
    UNEXECUTED_TOOL_CALL = "unexecuted_tool_call"
    MAX_TOKENS_TRUNCATION = "max_tokens_truncation"


_CONTINUE_PROMPTS: dict[AutoContinueReason, str] = {
    AutoContinueReason.TOOLS_EXECUTED: CONTINUE_PROMPT,
    AutoContinueReason.INCOMPLETE_TOOL_CALL: INCOMPLETE_TOOL_CALL_PROMPT,
    AutoContinueReason.UNEXECUTED_TOOL_CALL: UNEXECUTED_TOOL_CALL_PROMPT,
    AutoContinueReason.MAX_TOKENS_TRUNCATION: TRUNCATED_RESPONSE_PROMPT,
}


# ---------------------------------------------------------------------------
# Turn-level helpers
# ---------------------------------------------------------------------------


def should_auto_continue(
    autonomous: bool,
    tools_executed: bool,
    incomplete_tool_call: bool,
    unexecuted_tool_call: bool,
    truncated: bool,
) -> AutoContinueReason | None:
    """Decide whether a turn without tool calls should be continued.

    Only autonomous sessions continue. When several conditions hold the
    first in this order wins: tools executed, incomplete tool call,
    unexecuted tool call, max-tokens truncation.
    """
    if not autonomous:
        return None
    if tools_executed:
        return AutoContinueReason.TOOLS_EXECUTED
    if incomplete_tool_call:
        return AutoContinueReason.INCOMPLETE_TOOL_CALL
    if unexecuted_tool_call:
        return AutoContinueReason.UNEXECUTED_TOOL_CALL
    if truncated:
        return AutoContinueReason.MAX_TOKENS_TRUNCATION
    return None


def deduplicate_tool_calls(
    tool_calls: Sequence[ToolCall],
    previous: ToolCall | None = None,
) -> list[tuple[ToolCall, str | None]]:
    """Mark repeated calls so they are not executed twice.

    A call identical to the one just before it in the same turn is
    tagged ``DUP IN CHUNK``. The first call of the turn is tagged
    ``DUP IN MSG`` when it repeats *previous*, the last call of the
    previous turn. Later calls are only compared within the turn.

    Returns:
        ``(call, tag)`` pairs in emission order; ``tag`` is None for
        calls that should run.
    """
    marked: list[tuple[ToolCall, str | None]] = []
    for index, call in enumerate(tool_calls):
        tag: str | None = None
        if index == 0:
            if previous is not None and previous.signature() == call.signature():
                tag = DUP_IN_MSG
        elif tool_calls[index - 1].signature() == call.signature():
            tag = DUP_IN_CHUNK
        marked.append((call, tag))
    return marked


@dataclass(frozen=True)
class SessionResult:
    """Outcome of ``SessionEngine.run``.

    Attributes:
        session: The session, terminated.
        reason: Why it stopped.
        response: Text of the final assistant response.
        duration_ms: Wall-clock time of the run.
    """

    session: Session
    reason: TerminationReason
    response: str = ""
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.reason == TerminationReason.COMPLETED

    @property
    def duration(self) -> str:
        return format_duration(self.duration_ms)

    def extract_last_block(self) -> str:
        """Last non-empty paragraph of the response, timing removed."""
        return extract_last_block(self.response)

    def is_approved(self) -> bool:
        """Whether the final block carries the approval marker."""
        return APPROVAL_MARKER in self.extract_last_block()


@dataclass
class _TurnOutput:
    """What one streamed response produced."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    malformed: list[StreamError] = field(default_factory=list)
    stream_error: StreamError | None = None
    finish_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    incomplete_tool_call: bool = False
    unexecuted_tool_call: bool = False


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SessionEngine:
    """Drives one Session to termination.

    Usage::

        engine = SessionEngine(provider, registry, EngineConfig(model="m"),
                               sink=RecordingUiSink(), store=store)
        result = engine.run("List the files in src/")
        print(result.reason, result.response)

    Args:
        provider: Streaming completion capability.
        tools: Registry of tools the model may call.
        config: Engine configuration.
        sink: Receives UiEvents. Defaults to NullUiSink.
        store: Persists the session after every cycle, if given.
        estimator: Token estimator. Defaults to CharRatioEstimator.
        summarizer: Summarizer used by compaction.
        session: Existing session to resume.
        token: Cancellation token; ``cancel()`` sets it.
        dispatcher: Tool dispatcher. Defaults to one using
            ``config.tool_timeout``.
        retry: Retry controller. Defaults to one using ``config.retry``.
    """

    def __init__(
        self,
        provider: Provider,
        tools: ToolRegistry,
        config: EngineConfig | None = None,
        *,
        sink: UiSink | None = None,
        store: SessionStore | None = None,
        estimator: TokenEstimator | None = None,
        summarizer: Summarizer | None = None,
        session: Session | None = None,
        token: CancellationToken | None = None,
        dispatcher: ToolDispatcher | None = None,
        retry: RetryController | None = None,
    ) -> None:
        self._provider = provider
        self._tools = tools
        self._config = config or EngineConfig()
        self._sink: UiSink = sink or NullUiSink()
        self._store = store
        self._estimator: TokenEstimator = estimator or CharRatioEstimator()
        self._session = session or Session()
        self._token = token or CancellationToken()
        self._dispatcher = dispatcher or ToolDispatcher(timeout=self._config.tool_timeout)
        self._retry = retry or RetryController(self._config.retry)
        self._context = ContextWindowManager(
            self._config.context,
            self._config.compaction,
            self._estimator,
            summarizer,
        )
        self._state = EngineState.IDLE
        self._auto_continues = 0
        self._malformed_turns = 0
        self._tools_executed = False
        self._context_retry_used = False
        self._last_call: ToolCall | None = None
        self._last_response = ""

    @classmethod
    def resume(
        cls,
        store: SessionStore,
        session_id: str,
        provider: Provider,
        tools: ToolRegistry,
        config: EngineConfig | None = None,
        **kwargs: Any,
    ) -> SessionEngine:
        """Build an engine around a stored session.

        Raises:
            SessionError: If the snapshot is missing or corrupt.
        """
        session = store.load(session_id)
        return cls(provider, tools, config, store=store, session=session, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def context(self) -> ContextWindowManager:
        return self._context

    @property
    def token(self) -> CancellationToken:
        return self._token

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation.

        Running tools are cancelled and their processes killed; the
        session terminates with reason ``cancelled`` at the next
        suspension point.
        """
        self._token.cancel(reason)

    def run(self, task: str | None = None) -> SessionResult:
        """Run the session until it terminates.

        Args:
            task: User message to start (or continue) the session with.

        Returns:
            SessionResult with the termination reason and final response.
        """
        started = time.monotonic()
        if not self._session.messages and self._config.system_prompt:
            self._append(Message.system(self._config.system_prompt))
        if task is not None:
            self._append(Message.user(task))
            if self._session.terminated:
                # A new task reopens a finished session.
                self._session.terminated = False
                self._session.termination_reason = None

        try:
            while not self._session.terminated:
                self._cycle()
                self._persist()
        finally:
            self._state = EngineState.TERMINATED
            self._persist()

        reason = TerminationReason(self._session.termination_reason or TerminationReason.COMPLETED.value)
        return SessionResult(
            session=self._session,
            reason=reason,
            response=self._last_response,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _cycle(self) -> None:
        if self._token.is_cancelled:
            self._terminate(TerminationReason.CANCELLED)
            return
        if self._session.turn >= self._config.max_turns:
            self._terminate(TerminationReason.MAX_TURNS)
            return

        turn = self._session.next_turn()
        logger.debug("Turn %d of session %s", turn, self._session.session_id)

        # (a) budget
        if not self._enforce_budget():
            return

        # (b) provider
        self._state = EngineState.AWAITING_PROVIDER
        stream = self._open_stream()
        if stream is None:
            return

        # (c) parse
        self._state = EngineState.STREAMING_RESPONSE
        output = self._consume(stream, turn)
        self._session.record_usage(output.input_tokens, output.output_tokens)

        calls = output.tool_calls
        if output.text or calls:
            self._append(Message.assistant(output.text, calls))
        if output.text.strip():
            self._last_response = output.text

        if output.stream_error is not None:
            self._emit(TurnError(ErrorKind.NETWORK.value, output.stream_error.message))
            self._terminate(TerminationReason.STREAM_FAILED)
            return
        if self._token.is_cancelled and not calls:
            self._terminate(TerminationReason.CANCELLED)
            return

        # (d, e) tools
        if calls:
            self._dispatch(calls)
            self._tools_executed = True
            if output.malformed:
                self._correct_malformed(output)
            return

        # (f) continuation
        self._continue_or_finish(output)

    def _enforce_budget(self) -> bool:
        usage = self._context.usage(self._session)
        if usage.should_compact:
            logger.debug("Context at %.1f%% of window", usage.percentage)
        try:
            self._context.ensure_within_budget(self._session)
            return True
        except ContextOverflowError as exc:
            logger.warning("Context overflow (%s); retrying enforcement once", exc)
        try:
            self._context.thin(self._session)
            self._context.ensure_within_budget(self._session)
            return True
        except ContextOverflowError as exc:
            self._emit(TurnError(ErrorKind.CONTEXT_LENGTH_EXCEEDED.value, str(exc)))
            self._terminate(TerminationReason.CONTEXT_OVERFLOW)
            return False

    def _open_stream(self) -> Iterator[ProviderChunk] | None:
        history = list(self._session.messages)
        schemas = self._tools.to_openai()
        request: dict[str, Any] = {"max_tokens": self._config.context.reserved_output_tokens}
        if self._config.model:
            request["model"] = self._config.model

        def prime() -> Iterator[ProviderChunk]:
            iterator = iter(self._provider.stream_completion(history, schemas, request))
            try:
                first = next(iterator)
            except StopIteration:
                return _primed(None, iterator)
            return _primed(first, iterator)

        try:
            return self._retry.call(prime)
        except RetryExhaustedError as exc:
            self._emit(TurnError(exc.last_error.kind.value, str(exc)))
            self._terminate(TerminationReason.PROVIDER_ERROR)
            return None
        except Exception as exc:
            classified = classify_error(exc)
            if classified.kind == ErrorKind.CONTEXT_LENGTH_EXCEEDED and not self._context_retry_used:
                self._context_retry_used = True
                logger.warning("Provider rejected context length; thinning history and retrying")
                self._context.thin(self._session)
                self._context.compact(self._session)
                return None
            logger.warning("Provider call failed (%s): %s", classified.kind.value, classified.message)
            self._emit(TurnError(classified.kind.value, classified.message))
            self._terminate(TerminationReason.PROVIDER_ERROR)
            return None

    def _consume(self, stream: Iterator[ProviderChunk], turn: int) -> _TurnOutput:
        parser = StreamingToolParser(id_prefix=f"t{turn}_")
        output = _TurnOutput()
        events = parser.parse(stream)
        try:
            for event in events:
                if isinstance(event, TextDelta):
                    self._emit(AgentText(event.text))
                elif isinstance(event, ToolCallEnd):
                    output.tool_calls.append(event.tool_call)
                elif isinstance(event, Usage):
                    output.input_tokens += event.input_tokens
                    output.output_tokens += event.output_tokens
                elif isinstance(event, StreamError):
                    if event.kind == StreamErrorKind.CONNECTION:
                        output.stream_error = event
                    else:
                        output.malformed.append(event)
                elif isinstance(event, Completed):
                    output.finish_reason = event.reason
                if self._token.is_cancelled:
                    logger.debug("Cancelled mid-stream")
                    break
        finally:
            events.close()
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        output.text = parser.text_content
        output.incomplete_tool_call = parser.has_incomplete_tool_call()
        output.unexecuted_tool_call = parser.has_unexecuted_tool_call()
        return output

    def _dispatch(self, calls: list[ToolCall]) -> None:
        self._state = EngineState.DISPATCHING_TOOLS
        self._malformed_turns = 0
        marked = deduplicate_tool_calls(calls, self._last_call)
        self._last_call = calls[-1]

        runnable = [call for call, tag in marked if tag is None]
        executed = self._dispatcher.dispatch_batch(
            runnable,
            self._tools,
            self._token,
            parallel=self._config.parallel_tool_calls,
            max_workers=self._config.max_tool_workers,
            on_start=lambda call: self._emit(ToolInvoked(call.id, call.name, dict(call.arguments))),
        )
        by_id = {result.call_id: result for result in executed}

        self._state = EngineState.APPENDING_RESULTS
        for call, tag in marked:
            if tag is not None:
                logger.debug("Suppressed duplicate call %s (%s)", call.id, tag)
                result = TaskResult(
                    call_id=call.id,
                    tool_name=call.name,
                    success=False,
                    output=f"{tag}: identical to the previous {call.name} call; not executed again",
                )
            else:
                result = by_id[call.id]
            self._emit(ToolCompleted(result))
            self._append(Message.tool_result(result))

    def _continue_or_finish(self, output: _TurnOutput) -> None:
        autonomous = self._config.autonomous
        can_continue = self._auto_continues < self._config.max_auto_continues

        if output.malformed:
            # Consecutive turns of nothing but malformed calls share the
            # auto-continue limit.
            self._malformed_turns += 1
            if self._malformed_turns > self._config.max_auto_continues:
                logger.warning(
                    "Giving up after %d consecutive turns of malformed tool calls",
                    self._malformed_turns,
                )
                self._terminate(TerminationReason.MALFORMED_TOOL_CALLS)
                return
            self._correct_malformed(output)
            return
        self._malformed_turns = 0

        if is_empty_response(output.text):
            if autonomous and can_continue:
                self._auto_continues += 1
                logger.warning(
                    "Empty response; auto-continuing (%d/%d)",
                    self._auto_continues,
                    self._config.max_auto_continues,
                )
                self._append(Message.user(CONTINUE_PROMPT, kind=MessageKind.CORRECTIVE))
                return
            self._terminate(TerminationReason.EMPTY_RESPONSE)
            return

        reason = should_auto_continue(
            autonomous,
            self._tools_executed,
            output.incomplete_tool_call,
            output.unexecuted_tool_call,
            output.finish_reason in _TRUNCATION_REASONS,
        )
        if reason is not None and can_continue:
            self._auto_continues += 1
            self._tools_executed = False
            logger.warning(
                "Auto-continuing (%s, %d/%d)",
                reason.value,
                self._auto_continues,
                self._config.max_auto_continues,
            )
            self._append(Message.user(_CONTINUE_PROMPTS[reason], kind=MessageKind.CORRECTIVE))
            return

        self._terminate(TerminationReason.COMPLETED)

    def _correct_malformed(self, output: _TurnOutput) -> None:
        detail = "; ".join(e.message for e in output.malformed)
        if self._config.autonomous and output.incomplete_tool_call:
            prompt = INCOMPLETE_TOOL_CALL_PROMPT
        else:
            prompt = build_malformed_tool_call_prompt(detail)
        self._append(Message.user(prompt, kind=MessageKind.CORRECTIVE))

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _append(self, message: Message) -> Message:
        return self._session.append(message, self._estimator)

    def _emit(self, event: UiEvent) -> None:
        try:
            self._sink.emit(event)
        except Exception:
            logger.debug("UI sink error", exc_info=True)

    def _terminate(self, reason: TerminationReason) -> None:
        self._session.terminate(reason.value)
        self._state = EngineState.TERMINATED
        if not self._last_response:
            last = self._session.last_assistant()
            if last is not None:
                self._last_response = last.text
        logger.debug("Session %s terminated: %s", self._session.session_id, reason.value)
        self._emit(SessionTerminated(reason.value))

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._session)


def _primed(first: ProviderChunk | None, iterator: Iterator[ProviderChunk]) -> Iterator[ProviderChunk]:
    """Re-attach a primed first chunk; closing the result closes *iterator*."""
    try:
        if first is not None:
            yield first
        yield from iterator
    finally:
        close = getattr(iterator, "close", None)
        if close is not None:
            close()
