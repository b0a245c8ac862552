"""Tests for SessionEngine: the turn loop, auto-continue and termination."""

from __future__ import annotations

import pytest

from agentloop.engine.loop import (
    DUP_IN_CHUNK,
    DUP_IN_MSG,
    AutoContinueReason,
    EngineState,
    SessionEngine,
    SessionResult,
    TerminationReason,
    deduplicate_tool_calls,
    should_auto_continue,
)
from agentloop.engine.summarizers import ProviderSummarizer
from agentloop.engine.tokens import CharRatioEstimator
from agentloop.exceptions import ProviderError, ProviderErrorKind, SessionError
from agentloop.models.config import ContextBudget, EngineConfig
from agentloop.models.events import (
    AgentText,
    ProviderChunk,
    SessionTerminated,
    ToolCompleted,
    ToolInvoked,
    TurnError,
)
from agentloop.models.messages import Message, MessageKind, Role, ToolCall
from agentloop.models.results import TaskResult, ToolErrorKind
from agentloop.models.session import Session
from agentloop.prompts.continuation import CONTINUE_PROMPT, TRUNCATED_RESPONSE_PROMPT
from agentloop.sinks import RecordingUiSink

from tests.conftest import (
    ScriptedProvider,
    inline_call,
    make_engine,
    make_registry,
    make_retry,
    native_call,
    text_response,
    tool_response,
)


def roles(messages) -> list[str]:
    return [m.role.value for m in messages]


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


class TestToolRoundTrip:
    """A tool call is executed and its result fed back to the provider."""

    def test_list_files_end_to_end(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "list_files", {"path": "."}), text="Checking files..."),
            text_response("The directory holds README.md and src."),
        )
        sink = RecordingUiSink()
        result = make_engine(provider, sink=sink).run("What is in this directory?")

        assert result.reason == TerminationReason.COMPLETED
        assert result.succeeded
        assert result.response == "The directory holds README.md and src."

        events = sink.events
        assert events[0] == AgentText("Checking files...")
        invoked = sink.of_type(ToolInvoked)
        assert invoked == [ToolInvoked("c1", "list_files", {"path": "."})]
        completed = sink.of_type(ToolCompleted)
        assert len(completed) == 1
        assert completed[0].result.success
        assert completed[0].result.output == "README.md\nsrc"
        assert events.index(invoked[0]) < events.index(completed[0])
        assert events[-1] == SessionTerminated("completed")

        # Second provider call sees the tool result.
        history = provider.calls[1]["history"]
        assert roles(history) == ["user", "assistant", "tool"]
        assert history[1].tool_calls == [ToolCall("c1", "list_files", {"path": "."})]
        assert history[2].tool_results[0].call_id == "c1"
        assert history[2].tool_results[0].output == "README.md\nsrc"

    def test_inline_call_executed(self) -> None:
        provider = ScriptedProvider(
            ["Let me look.\n", inline_call("read_file", {"path": "a.py"}), ProviderChunk(finish_reason="stop")],
            text_response("Done."),
        )
        result = make_engine(provider).run("read a.py")

        assert result.reason == TerminationReason.COMPLETED
        tool_message = result.session.messages[2]
        assert tool_message.role == Role.TOOL
        assert tool_message.tool_results[0].call_id == "t1_0"
        assert tool_message.tool_results[0].output == "contents of a.py"

    def test_unknown_tool_fed_back_and_session_continues(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "delete_everything")),
            text_response("That tool does not exist; stopping."),
        )
        sink = RecordingUiSink()
        result = make_engine(provider, sink=sink).run("clean up")

        assert result.reason == TerminationReason.COMPLETED
        assert len(provider.calls) == 2
        failed = sink.of_type(ToolCompleted)[0].result
        assert not failed.success
        assert failed.error_kind == ToolErrorKind.NOT_FOUND
        assert failed.output == "unknown tool: delete_everything"
        assert provider.calls[1]["history"][-1].tool_results[0].success is False

    def test_tool_exception_fed_back(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "explode")),
            text_response("It failed."),
        )
        result = make_engine(provider).run("go")

        block = result.session.messages[2].tool_results[0]
        assert not block.success
        assert block.output == "RuntimeError: boom"
        assert result.reason == TerminationReason.COMPLETED

    def test_multiple_calls_answered_in_order(self) -> None:
        provider = ScriptedProvider(
            tool_response(
                native_call("c1", "read_file", {"path": "a"}),
                native_call("c2", "read_file", {"path": "b"}),
            ),
            text_response("ok"),
        )
        result = make_engine(provider, parallel_tool_calls=True).run("read both")

        tool_messages = [m for m in result.session.messages if m.role == Role.TOOL]
        assert [m.tool_results[0].call_id for m in tool_messages] == ["c1", "c2"]
        assert [m.tool_results[0].output for m in tool_messages] == ["contents of a", "contents of b"]

    def test_request_carries_schemas_and_limits(self) -> None:
        provider = ScriptedProvider(text_response("hi"))
        make_engine(provider, model="test-model").run("hello")

        call = provider.calls[0]
        names = [schema["function"]["name"] for schema in call["tool_schemas"]]
        assert names == ["list_files", "read_file", "explode"]
        assert call["config"] == {"max_tokens": 16_000, "model": "test-model"}

    def test_system_prompt_first_and_pinned(self) -> None:
        provider = ScriptedProvider(text_response("hi"))
        result = make_engine(provider, system_prompt="You are a careful engineer.").run("hello")

        first = result.session.messages[0]
        assert first.role == Role.SYSTEM
        assert first.pinned
        assert provider.calls[0]["history"][0].text == "You are a careful engineer."

    def test_usage_recorded(self) -> None:
        provider = ScriptedProvider(
            [ProviderChunk(text="hi"), ProviderChunk(input_tokens=120, output_tokens=7, finish_reason="stop")]
        )
        result = make_engine(provider).run("hello")
        assert result.session.input_tokens == 120
        assert result.session.output_tokens == 7


# ---------------------------------------------------------------------------
# Duplicate suppression
# ---------------------------------------------------------------------------


class TestDuplicates:
    """Repeated identical calls are answered without executing."""

    def test_dup_in_chunk(self) -> None:
        provider = ScriptedProvider(
            tool_response(
                native_call("c1", "read_file", {"path": "a"}),
                native_call("c2", "read_file", {"path": "a"}),
            ),
            text_response("ok"),
        )
        sink = RecordingUiSink()
        result = make_engine(provider, sink=sink).run("read")

        assert [e.call_id for e in sink.of_type(ToolInvoked)] == ["c1"]
        results = [e.result for e in sink.of_type(ToolCompleted)]
        assert [r.call_id for r in results] == ["c1", "c2"]
        assert results[1].success is False
        assert results[1].output.startswith(DUP_IN_CHUNK)
        assert result.reason == TerminationReason.COMPLETED

    def test_dup_in_msg(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "read_file", {"path": "a"})),
            tool_response(native_call("c2", "read_file", {"path": "a"})),
            text_response("ok"),
        )
        sink = RecordingUiSink()
        make_engine(provider, sink=sink).run("read")

        assert [e.call_id for e in sink.of_type(ToolInvoked)] == ["c1"]
        second = sink.of_type(ToolCompleted)[1].result
        assert second.call_id == "c2"
        assert second.output.startswith(DUP_IN_MSG)

    def test_deduplicate_helper(self) -> None:
        a = ToolCall("1", "read_file", {"path": "a"})
        a_again = ToolCall("2", "read_file", {"path": "a"})
        b = ToolCall("3", "read_file", {"path": "b"})
        marked = deduplicate_tool_calls([a_again, b, b], previous=a)
        assert [tag for _, tag in marked] == [DUP_IN_MSG, None, DUP_IN_CHUNK]

    def test_non_adjacent_repeat_runs(self) -> None:
        a = ToolCall("1", "read_file", {"path": "a"})
        b = ToolCall("2", "read_file", {"path": "b"})
        marked = deduplicate_tool_calls([a, b, a])
        assert [tag for _, tag in marked] == [None, None, None]


# ---------------------------------------------------------------------------
# Auto-continue
# ---------------------------------------------------------------------------


class TestAutoContinue:
    """Autonomous sessions are nudged instead of stopping early."""

    def test_continues_after_tools(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "list_files", {"path": "."})),
            text_response("Looked around."),
            text_response("All done."),
        )
        result = make_engine(provider, autonomous=True).run("explore")

        assert result.reason == TerminationReason.COMPLETED
        assert len(provider.calls) == 3
        nudge = provider.calls[2]["history"][-1]
        assert nudge.role == Role.USER
        assert nudge.kind == MessageKind.CORRECTIVE
        assert nudge.text == CONTINUE_PROMPT
        assert result.response == "All done."

    def test_interactive_stops_after_text(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "list_files", {"path": "."})),
            text_response("Looked around."),
        )
        result = make_engine(provider).run("explore")
        assert result.reason == TerminationReason.COMPLETED
        assert len(provider.calls) == 2

    def test_truncated_response_continued(self) -> None:
        provider = ScriptedProvider(
            text_response("The answer is", finish_reason="length"),
            text_response("forty-two."),
        )
        result = make_engine(provider, autonomous=True).run("answer")

        assert len(provider.calls) == 2
        assert provider.calls[1]["history"][-1].text == TRUNCATED_RESPONSE_PROMPT
        assert result.reason == TerminationReason.COMPLETED

    def test_empty_response_nudged_until_cap(self) -> None:
        provider = ScriptedProvider(text_response(""), text_response(""), text_response(""))
        result = make_engine(provider, autonomous=True, max_auto_continues=2).run("go")

        assert len(provider.calls) == 3
        assert result.reason == TerminationReason.EMPTY_RESPONSE

    def test_should_auto_continue_priority(self) -> None:
        assert should_auto_continue(False, True, True, True, True) is None
        assert should_auto_continue(True, True, True, True, True) == AutoContinueReason.TOOLS_EXECUTED
        assert should_auto_continue(True, False, True, True, True) == AutoContinueReason.INCOMPLETE_TOOL_CALL
        assert should_auto_continue(True, False, False, True, True) == AutoContinueReason.UNEXECUTED_TOOL_CALL
        assert should_auto_continue(True, False, False, False, True) == AutoContinueReason.MAX_TOKENS_TRUNCATION
        assert should_auto_continue(True, False, False, False, False) is None


# ---------------------------------------------------------------------------
# Malformed tool calls
# ---------------------------------------------------------------------------


class TestMalformedToolCalls:
    """Unparseable calls become corrective messages, not crashes."""

    def test_corrective_message_then_recovery(self) -> None:
        provider = ScriptedProvider(
            ['{"tool": "read_file", "args": [1]}\n', ProviderChunk(finish_reason="stop")],
            text_response("Sorry, fixed."),
        )
        result = make_engine(provider).run("read")

        assert result.reason == TerminationReason.COMPLETED
        corrective = provider.calls[1]["history"][-1]
        assert corrective.kind == MessageKind.CORRECTIVE
        assert "could not be parsed" in corrective.text

    def test_repeated_malformed_turns_capped(self) -> None:
        def malformed() -> list:
            return ['{"tool": "read_file", "args": [1]}\n', ProviderChunk(finish_reason="stop")]

        provider = ScriptedProvider(*(malformed() for _ in range(4)))
        result = make_engine(provider, max_auto_continues=2).run("read")

        assert result.reason == TerminationReason.MALFORMED_TOOL_CALLS
        assert len(provider.calls) == 3
        correctives = [m for m in result.session.messages if m.kind == MessageKind.CORRECTIVE]
        assert len(correctives) == 2

    def test_malformed_streak_reset_by_valid_call(self) -> None:
        bad = ['{"tool": "read_file", "args": [1]}\n', ProviderChunk(finish_reason="stop")]
        provider = ScriptedProvider(
            list(bad),
            tool_response(native_call("c1", "read_file", {"path": "a"})),
            list(bad),
            text_response("done"),
        )
        result = make_engine(provider, max_auto_continues=1).run("read")

        assert result.reason == TerminationReason.COMPLETED
        assert len(provider.calls) == 4

    def test_malformed_alongside_valid_call(self) -> None:
        provider = ScriptedProvider(
            [
                inline_call("read_file", {"path": "a"}),
                '{"tool": "read_file", "args": {"path": }\n',
                ProviderChunk(finish_reason="stop"),
            ],
            text_response("ok"),
        )
        sink = RecordingUiSink()
        make_engine(provider, sink=sink).run("read")

        assert len(sink.of_type(ToolInvoked)) == 1
        history = provider.calls[1]["history"]
        assert roles(history[-2:]) == ["tool", "user"]
        assert history[-1].kind == MessageKind.CORRECTIVE


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


class TestTermination:
    """Every stop has a reason and leaves the session consistent."""

    def test_fatal_provider_error_not_retried(self) -> None:
        provider = ScriptedProvider(ProviderError(ProviderErrorKind.AUTH, "bad key"))
        sink = RecordingUiSink()
        result = make_engine(provider, sink=sink).run("hello")

        assert result.reason == TerminationReason.PROVIDER_ERROR
        assert len(provider.calls) == 1
        errors = sink.of_type(TurnError)
        assert errors and errors[0].kind == "auth"

    def test_retryable_error_exhausts(self) -> None:
        provider = ScriptedProvider(
            *(ProviderError(ProviderErrorKind.RATE_LIMITED) for _ in range(3))
        )
        result = make_engine(provider).run("hello")

        assert result.reason == TerminationReason.PROVIDER_ERROR
        assert len(provider.calls) == 3

    def test_retry_then_success(self) -> None:
        provider = ScriptedProvider(
            ProviderError(ProviderErrorKind.SERVER_ERROR, "upstream 503"),
            text_response("recovered"),
        )
        result = make_engine(provider).run("hello")

        assert result.reason == TerminationReason.COMPLETED
        assert result.response == "recovered"

    def test_failure_before_first_chunk_is_retried(self) -> None:
        provider = ScriptedProvider(
            [ProviderError(ProviderErrorKind.NETWORK, "reset")],
            text_response("recovered"),
        )
        result = make_engine(provider).run("hello")
        assert result.reason == TerminationReason.COMPLETED
        assert len(provider.calls) == 2

    def test_mid_stream_failure(self) -> None:
        provider = ScriptedProvider(
            ["Partial answer\n", ProviderError(ProviderErrorKind.NETWORK, "connection reset")],
        )
        sink = RecordingUiSink()
        result = make_engine(provider, sink=sink).run("hello")

        assert result.reason == TerminationReason.STREAM_FAILED
        assert len(provider.calls) == 1
        assert result.session.messages[-1].role == Role.ASSISTANT
        assert result.session.messages[-1].text == "Partial answer\n"
        assert any("connection reset" in e.message for e in sink.of_type(TurnError))

    def test_cancel_before_run(self) -> None:
        provider = ScriptedProvider(text_response("never"))
        engine = make_engine(provider)
        engine.cancel("user abort")
        result = engine.run("hello")

        assert result.reason == TerminationReason.CANCELLED
        assert provider.calls == []
        assert engine.state == EngineState.TERMINATED

    def test_cancel_from_tool(self) -> None:
        registry = make_registry()
        holder: dict[str, SessionEngine] = {}

        @registry.tool(description="Stop the session")
        def stop() -> str:
            holder["engine"].cancel("stop requested")
            return "stopping"

        provider = ScriptedProvider(
            tool_response(native_call("c1", "stop")),
            text_response("never"),
        )
        engine = make_engine(provider, registry)
        holder["engine"] = engine
        result = engine.run("go")

        assert result.reason == TerminationReason.CANCELLED
        assert len(provider.calls) == 1
        assert engine.token.reason == "stop requested"

    def test_max_turns(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "read_file", {"path": "a"})),
            tool_response(native_call("c2", "read_file", {"path": "b"})),
            tool_response(native_call("c3", "read_file", {"path": "c"})),
        )
        result = make_engine(provider, max_turns=2).run("loop")

        assert result.reason == TerminationReason.MAX_TURNS
        assert len(provider.calls) == 2
        assert result.session.turn == 2

    def test_empty_response_interactive(self) -> None:
        provider = ScriptedProvider(text_response("   "))
        result = make_engine(provider).run("hello")
        assert result.reason == TerminationReason.EMPTY_RESPONSE

    def test_context_overflow(self) -> None:
        provider = ScriptedProvider(text_response("never"))
        sink = RecordingUiSink()
        engine = make_engine(
            provider,
            sink=sink,
            context=ContextBudget(max_tokens=600, reserved_output_tokens=100),
        )
        result = engine.run("z" * 8000)

        assert result.reason == TerminationReason.CONTEXT_OVERFLOW
        assert provider.calls == []
        assert sink.of_type(TurnError)

    def test_context_compacted_before_call(self) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "read_file", {"path": "a"})),
            text_response("done"),
        )
        engine = make_engine(
            provider,
            context=ContextBudget(max_tokens=400, reserved_output_tokens=100),
        )
        engine.session.append(Message.user("x" * 2000), CharRatioEstimator())
        result = engine.run("read a")

        assert result.reason == TerminationReason.COMPLETED
        for call in provider.calls:
            assert engine.context.budget.holds(sum(m.token_cost for m in call["history"]))

    def test_summarizer_connection_failure_does_not_crash(self) -> None:
        class Unreachable:
            def stream_completion(self, history, tool_schemas, config):
                raise ConnectionError("summarizer connection refused")

        estimator = CharRatioEstimator()
        session = Session()
        session.turn = 1
        call = ToolCall("c1", "read_file", {"path": "build.log"})
        for message in (
            Message.user("Read the build log."),
            Message.assistant("", [call]),
            Message.tool_result(TaskResult.ok("c1", "read_file", "x" * 4000)),
        ):
            session.append(message, estimator)
        for turn in (2, 3, 4):
            session.turn = turn
            session.append(Message.user(f"note {turn}"), estimator)

        provider = ScriptedProvider(text_response("done"))
        engine = SessionEngine(
            provider,
            make_registry(),
            EngineConfig(context=ContextBudget(max_tokens=800, reserved_output_tokens=100)),
            sink=RecordingUiSink(),
            estimator=estimator,
            summarizer=ProviderSummarizer(Unreachable()),
            session=session,
            retry=make_retry(),
        )
        result = engine.run("go on")

        assert result.reason == TerminationReason.COMPLETED
        assert any(m.kind == MessageKind.SUMMARY for m in engine.session.messages)
        assert engine.context.budget.holds(sum(m.token_cost for m in provider.calls[0]["history"]))

    def test_sink_errors_ignored(self) -> None:
        class BrokenSink:
            def emit(self, event) -> None:
                raise RuntimeError("display gone")

        provider = ScriptedProvider(text_response("fine"))
        result = make_engine(provider, sink=BrokenSink()).run("hello")
        assert result.reason == TerminationReason.COMPLETED


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    """Sessions are saved each cycle and can be resumed."""

    def test_saved_after_run(self, store) -> None:
        provider = ScriptedProvider(
            tool_response(native_call("c1", "read_file", {"path": "a"})),
            text_response("done"),
        )
        result = make_engine(provider, store=store).run("read a")

        restored = store.load(result.session.session_id)
        assert restored.terminated
        assert restored.termination_reason == "completed"
        assert roles(restored.messages) == roles(result.session.messages)
        assert restored.turn == 2

    def test_resume_continues_turns(self, store) -> None:
        first = make_engine(ScriptedProvider(text_response("first answer")), store=store).run("one")
        session_id = first.session.session_id

        provider = ScriptedProvider(text_response("second answer"))
        engine = SessionEngine.resume(
            store,
            session_id,
            provider,
            make_registry(),
            EngineConfig(),
            retry=make_retry(),
        )
        result = engine.run("two")

        assert result.reason == TerminationReason.COMPLETED
        assert result.session.session_id == session_id
        assert result.session.turn == 2
        assert roles(provider.calls[0]["history"]) == ["user", "assistant", "user"]
        assert store.load(session_id).messages[-1].text == "second answer"

    def test_resume_missing_session(self, store) -> None:
        with pytest.raises(SessionError):
            SessionEngine.resume(store, "nope", ScriptedProvider(), make_registry())

    def test_existing_session_used(self) -> None:
        session = Session(session_id="abc")
        provider = ScriptedProvider(text_response("hi"))
        engine = SessionEngine(provider, make_registry(), session=session, retry=make_retry())
        result = engine.run("hello")
        assert result.session is session


# ---------------------------------------------------------------------------
# SessionResult
# ---------------------------------------------------------------------------


class TestSessionResult:
    """Helpers on the run outcome."""

    def test_last_block_and_approval(self) -> None:
        result = SessionResult(
            session=Session(),
            reason=TerminationReason.COMPLETED,
            response="Review notes.\n\nIMPLEMENTATION_APPROVED\n⏱️ 3.2s",
        )
        assert result.extract_last_block() == "IMPLEMENTATION_APPROVED"
        assert result.is_approved()

    def test_not_approved(self) -> None:
        result = SessionResult(session=Session(), reason=TerminationReason.COMPLETED, response="Needs work.")
        assert not result.is_approved()

    def test_duration(self) -> None:
        result = SessionResult(session=Session(), reason=TerminationReason.MAX_TURNS, duration_ms=1500)
        assert result.duration == "1.5s"
        assert not result.succeeded
