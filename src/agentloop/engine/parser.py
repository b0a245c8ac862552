"""Streaming response parser.

Turns a stream of raw provider chunks into an ordered, lazy sequence of
stream events: narration (``TextDelta``), tool calls
(``ToolCallStart`` / ``ToolCallArgDelta`` / ``ToolCallEnd``), ``Usage``,
``Completed`` and ``StreamError``.

Two tool-call encodings are understood:

- **Inline**: a JSON object ``{"tool": "<name>", "args": {...}}`` written
  in the text stream. It only counts as a call when it starts a line
  (whitespace before it is allowed). The same pattern in the middle of a
  line is narration, which keeps prose like ``use {"tool": ...}`` from
  being executed.
- **Native**: provider-structured ``ToolCallDelta`` fragments keyed by
  call id. Several native calls may be open at once; each has its own
  buffer and they close in whatever order their payloads complete.

The emitted event sequence does not depend on how the stream was sliced
into chunks. Text is only released at content-defined points (a
complete line, the tail before a tool-call event, end of stream), and
argument payloads are released as one fragment once complete.
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from agentloop.models.events import (
    Completed,
    ProviderChunk,
    StreamError,
    StreamErrorKind,
    TextDelta,
    ToolCallArgDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    Usage,
)
from agentloop.exceptions import MalformedToolCallError
from agentloop.models.messages import ToolCall

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from agentloop.models.events import StreamEvent

logger = logging.getLogger(__name__)

# A line that opens an inline tool call, up to and including the name.
_INLINE_OPEN_RE = re.compile(r'[ \t]*(\{[ \t]*"tool"[ \t]*:[ \t]*"(?P<name>[^"\\\n]*)")')
# The same opening without requiring the name to be complete.
_INLINE_PREFIX_RE = re.compile(r'[ \t]*\{[ \t]*"tool"[ \t]*:')
# Any inline-call marker, wherever it sits on a line.
_MARKER_RE = re.compile(r'\{(?=\s*"tool"\s*:)')

LBRACE_HOMOGLYPH = "｛"

_LLM_SPECIAL_TOKENS = ("<|im_end|>", "<|im_start|>", "<|endoftext|>", "</s>", "[/INST]", "<</SYS>>")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def clean_llm_tokens(text: str) -> str:
    """Strip stray chat-template tokens some models leak into output."""
    for token in _LLM_SPECIAL_TOKENS:
        if token in text:
            text = text.replace(token, "")
    return text


def sanitize_inline_tool_patterns(text: str) -> str:
    """Neutralize tool-call patterns that appear mid-line.

    A ``{"tool":`` pattern preceded by non-whitespace on the same line is
    prose (an example, a quote, inline code), not a call. Its opening
    brace is swapped for a look-alike character so that text echoed back
    to the model cannot be re-parsed as a call. Patterns that start a
    line, optionally indented, are left alone.
    """
    out_lines: list[str] = []
    for line in text.split("\n"):
        indent = len(line) - len(line.lstrip(" \t"))

        def _swap(match: re.Match[str], _indent: int = indent) -> str:
            return "{" if match.start() == _indent else LBRACE_HOMOGLYPH

        out_lines.append(_MARKER_RE.sub(_swap, line))
    return "\n".join(out_lines)


def find_json_object_end(text: str) -> int | None:
    """Return the index of the brace closing the first JSON object in *text*.

    Braces inside string literals (including escaped quotes) are ignored.
    Returns None if the object is not yet complete.
    """
    scanner = _ObjectScanner()
    end = scanner.scan(text)
    if scanner.invalid:
        return None
    return end


def decode_arguments(payload: str, call_id: str | None = None) -> dict:
    """Decode a tool-call argument payload into a dict.

    Raises:
        MalformedToolCallError: If the payload is not a JSON object.
    """
    try:
        args = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise MalformedToolCallError(f"invalid tool call JSON: {exc.msg}", call_id=call_id, raw=payload) from exc
    if not isinstance(args, dict):
        raise MalformedToolCallError("tool call arguments must be a JSON object", call_id=call_id, raw=payload)
    return args


def parse_inline_call(raw: str, call_id: str) -> ToolCall:
    """Build a ToolCall from an inline ``{"tool": ..., "args": {...}}`` envelope.

    Raises:
        MalformedToolCallError: If the envelope is not valid JSON or
            lacks a string ``tool`` and an object ``args``.
    """
    obj = decode_arguments(raw, call_id)
    args = obj.get("args", {})
    if not isinstance(obj.get("tool"), str) or not isinstance(args, dict):
        raise MalformedToolCallError("tool call must be an object with 'tool' and 'args'", call_id=call_id, raw=raw)
    return ToolCall(
        id=call_id,
        name=obj["tool"],
        arguments=args,
        sequential=bool(obj.get("sequential", False)),
    )


class _ObjectScanner:
    """Incremental, string-aware brace matcher for one JSON object."""

    __slots__ = ("depth", "in_string", "escape", "started", "invalid", "pos")

    def __init__(self) -> None:
        self.depth = 0
        self.in_string = False
        self.escape = False
        self.started = False
        self.invalid = False
        self.pos = 0

    def scan(self, text: str) -> int | None:
        """Continue scanning *text* from where the last call stopped."""
        i = self.pos
        n = len(text)
        while i < n:
            ch = text[i]
            if not self.started:
                if ch == "{":
                    self.started = True
                    self.depth = 1
                elif not ch.isspace():
                    self.invalid = True
                    self.pos = i
                    return None
            elif self.in_string:
                if self.escape:
                    self.escape = False
                elif ch == "\\":
                    self.escape = True
                elif ch == '"':
                    self.in_string = False
            elif ch == '"':
                self.in_string = True
            elif ch == "{":
                self.depth += 1
            elif ch == "}":
                self.depth -= 1
                if self.depth == 0:
                    self.pos = i + 1
                    return i
            i += 1
        self.pos = i
        return None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class ParserState(str, enum.Enum):
    """States of the streaming parser."""

    SCANNING = "scanning"
    IN_TOOL_CALL = "in_tool_call"
    TERMINATED = "terminated"


@dataclass
class _OpenCall:
    call_id: str
    name: str
    buffer: str = ""
    started: bool = False
    scanner: _ObjectScanner = field(default_factory=_ObjectScanner)


class StreamingToolParser:
    """Incremental parser for one assistant response.

    Feed chunks with :meth:`feed` and close with :meth:`finish`, or hand
    a whole chunk iterator to :meth:`parse` to get a lazy event stream.

    Usage::

        parser = StreamingToolParser(id_prefix="t3_")
        for event in parser.parse(provider.stream_completion(...)):
            ...

    Args:
        id_prefix: Prefix for ids assigned to inline tool calls
            (``<prefix>0``, ``<prefix>1``, ...). Native calls keep the
            provider's ids.
    """

    def __init__(self, *, id_prefix: str = "call_") -> None:
        self._id_prefix = id_prefix
        self.reset()

    def reset(self) -> None:
        """Discard all state so the parser can be reused."""
        self._state = ParserState.SCANNING
        self._pending = ""
        self._swallow_ws = False
        self._inline: _OpenCall | None = None
        self._native: dict[str, _OpenCall] = {}
        self._closed_native: set[str] = set()
        self._next_id = 0
        self._text_parts: list[str] = []
        self._completed_calls: list[ToolCall] = []
        self._consumed = 0
        self._truncated = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ParserState:
        if self._state == ParserState.TERMINATED:
            return self._state
        if self._inline is not None or self._native:
            return ParserState.IN_TOOL_CALL
        return ParserState.SCANNING

    @property
    def text_content(self) -> str:
        """All narration emitted so far."""
        return "".join(self._text_parts)

    @property
    def tool_calls(self) -> list[ToolCall]:
        """Every tool call completed so far, in closing order."""
        return list(self._completed_calls)

    def has_incomplete_tool_call(self) -> bool:
        """True if a tool call was opened but never closed.

        Stays True after ``finish`` when the stream ended inside a call.
        """
        if self._truncated or self._inline is not None or self._native:
            return True
        return _INLINE_PREFIX_RE.match(self._pending) is not None

    def has_unexecuted_tool_call(self) -> bool:
        """True if completed tool calls have not been marked consumed."""
        return self._consumed < len(self._completed_calls)

    def mark_tool_calls_consumed(self) -> None:
        self._consumed = len(self._completed_calls)

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def parse(self, chunks: Iterable[ProviderChunk | str]) -> Iterator[StreamEvent]:
        """Lazily parse a whole chunk stream.

        A failure raised by the chunk iterator itself is reported as a
        ``StreamError(CONNECTION)`` and terminates the parser; no
        ``Completed`` event follows it.
        """
        iterator = iter(chunks)
        while True:
            try:
                chunk = next(iterator)
            except StopIteration:
                break
            except Exception as exc:
                logger.warning("Provider stream failed mid-response: %s", exc)
                yield from self._fail(exc)
                return
            yield from self.feed(chunk)
            if self._state == ParserState.TERMINATED:
                return
        yield from self.finish()

    def feed(self, chunk: ProviderChunk | str) -> list[StreamEvent]:
        """Consume one chunk and return the events it completes."""
        if self._state == ParserState.TERMINATED:
            logger.debug("Ignoring chunk fed to a terminated parser")
            return []
        if isinstance(chunk, str):
            chunk = ProviderChunk(text=chunk)

        events: list[StreamEvent] = []
        if chunk.text:
            self._consume_text(chunk.text, events)
        for delta in chunk.tool_calls:
            self._consume_native(delta, events)
        if chunk.input_tokens is not None or chunk.output_tokens is not None:
            events.append(Usage(chunk.input_tokens or 0, chunk.output_tokens or 0))
        if chunk.finish_reason is not None:
            events.extend(self.finish(chunk.finish_reason))
        return events

    def finish(self, reason: str = "end_of_stream") -> list[StreamEvent]:
        """Close the stream: flush text, fail open calls, emit Completed."""
        if self._state == ParserState.TERMINATED:
            return []
        events: list[StreamEvent] = []

        if self._inline is not None:
            call = self._inline
            self._truncated = True
            self._inline = None
            events.append(self._malformed(call.call_id, f"stream ended inside tool call '{call.name}'"))
        elif _INLINE_PREFIX_RE.match(self._pending):
            self._truncated = True
            events.append(self._malformed(None, "stream ended inside a tool call"))
            self._pending = ""
        else:
            self._flush_pending(events)

        for call_id in list(self._native):
            call = self._native.pop(call_id)
            self._closed_native.add(call_id)
            if call.name and not call.buffer.strip():
                # A native call with no argument text is a no-argument call.
                self._close_native(call, "{}", events)
            else:
                self._truncated = True
                events.append(self._malformed(call_id, f"stream ended inside tool call '{call.name}'"))

        events.append(Completed(reason))
        self._state = ParserState.TERMINATED
        return events

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def _consume_text(self, text: str, events: list[StreamEvent]) -> None:
        self._pending += text
        while True:
            if self._inline is not None:
                if not self._advance_inline(events):
                    return
                continue

            if self._swallow_ws:
                stripped = self._pending.lstrip()
                if not stripped:
                    self._pending = ""
                    return
                self._pending = stripped
                self._swallow_ws = False

            newline = self._pending.find("\n")
            line = self._pending if newline < 0 else self._pending[: newline + 1]
            match = _INLINE_OPEN_RE.match(line)
            if match is not None:
                self._open_inline(match.group("name"), self._pending[match.start(1):], events)
                continue
            if newline < 0:
                return
            self._pending = self._pending[newline + 1:]
            self._emit_text(line, events)

    def _flush_pending(self, events: list[StreamEvent]) -> None:
        if self._inline is not None or not self._pending:
            return
        text, self._pending = self._pending, ""
        if self._swallow_ws:
            text = text.lstrip()
            if not text:
                return
            self._swallow_ws = False
        self._emit_text(text, events)

    def _emit_text(self, text: str, events: list[StreamEvent]) -> None:
        text = clean_llm_tokens(text)
        if text:
            self._text_parts.append(text)
            events.append(TextDelta(text))

    # ------------------------------------------------------------------
    # Inline calls
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        call_id = f"{self._id_prefix}{self._next_id}"
        self._next_id += 1
        return call_id

    def _open_inline(self, name: str, payload: str, events: list[StreamEvent]) -> None:
        call = _OpenCall(call_id=self._new_id(), name=name, started=True)
        self._inline = call
        self._pending = payload
        logger.debug("Inline tool call %s (%s) opened", call.call_id, name)
        events.append(ToolCallStart(call.call_id, name))

    def _advance_inline(self, events: list[StreamEvent]) -> bool:
        """Move pending text into the open inline call.

        Returns True if the call closed (and scanning should resume on
        the remaining text), False if more input is needed.
        """
        call = self._inline
        assert call is not None
        call.buffer += self._pending
        self._pending = ""
        end = call.scanner.scan(call.buffer)
        if end is None:
            return False

        raw = call.buffer[: end + 1]
        self._pending = call.buffer[end + 1:]
        self._inline = None
        self._swallow_ws = True

        try:
            tool_call = parse_inline_call(raw, call.call_id)
        except MalformedToolCallError as exc:
            events.append(self._malformed(call.call_id, str(exc)))
            return True
        events.append(ToolCallArgDelta(call.call_id, json.dumps(tool_call.arguments)))
        self._complete(tool_call, events)
        return True

    # ------------------------------------------------------------------
    # Native calls
    # ------------------------------------------------------------------

    def _consume_native(self, delta: ToolCallDelta, events: list[StreamEvent]) -> None:
        if delta.call_id in self._closed_native:
            logger.debug("Ignoring delta for closed tool call %s", delta.call_id)
            return
        # Text that arrived before this delta is emitted first.
        if self._inline is None:
            self._flush_pending(events)

        call = self._native.get(delta.call_id)
        if call is None:
            call = _OpenCall(call_id=delta.call_id, name=delta.name)
            self._native[delta.call_id] = call
        elif delta.name and not call.name:
            call.name = delta.name

        if call.name and not call.started:
            call.started = True
            logger.debug("Native tool call %s (%s) opened", call.call_id, call.name)
            events.append(ToolCallStart(call.call_id, call.name))

        if not delta.arguments:
            return
        call.buffer += delta.arguments
        end = call.scanner.scan(call.buffer)
        if call.scanner.invalid:
            self._native.pop(call.call_id)
            self._closed_native.add(call.call_id)
            events.append(self._malformed(call.call_id, "tool call arguments must be a JSON object"))
        elif end is not None:
            self._native.pop(call.call_id)
            self._closed_native.add(call.call_id)
            if not call.started:
                events.append(self._malformed(call.call_id, "tool call has no name"))
                return
            self._close_native(call, call.buffer[: end + 1].strip(), events)

    def _close_native(self, call: _OpenCall, payload: str, events: list[StreamEvent]) -> None:
        try:
            args = decode_arguments(payload, call.call_id)
        except MalformedToolCallError as exc:
            events.append(self._malformed(call.call_id, str(exc)))
            return
        events.append(ToolCallArgDelta(call.call_id, payload))
        self._complete(ToolCall(id=call.call_id, name=call.name, arguments=args), events)

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _complete(self, tool_call: ToolCall, events: list[StreamEvent]) -> None:
        self._completed_calls.append(tool_call)
        logger.debug("Tool call %s (%s) complete", tool_call.id, tool_call.name)
        events.append(ToolCallEnd(tool_call.id, tool_call))

    def _malformed(self, call_id: str | None, message: str) -> StreamError:
        logger.warning("Malformed tool call%s: %s", f" {call_id}" if call_id else "", message)
        return StreamError(StreamErrorKind.MALFORMED_TOOL_CALL, message, call_id)

    def _fail(self, exc: BaseException) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        self._flush_pending(events)
        self._inline = None
        self._native.clear()
        events.append(StreamError(StreamErrorKind.CONNECTION, str(exc) or type(exc).__name__))
        self._state = ParserState.TERMINATED
        return events
