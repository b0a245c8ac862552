"""Event types.

Two families live here:

- **Stream events** are produced by the streaming parser from raw
  provider chunks and consumed by the session engine.
- **UI events** are pushed by the session engine to a UiSink as one-way
  presentation notifications.

Both are frozen dataclasses and compare by value, which is what the
chunk-boundary tests rely on.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Union

if TYPE_CHECKING:
    from agentloop.models.messages import ToolCall
    from agentloop.models.results import TaskResult


# ---------------------------------------------------------------------------
# Raw provider input
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCallDelta:
    """A native (provider-structured) tool-call fragment.

    The first delta for a ``call_id`` should carry ``name``; later ones
    may only carry more ``arguments`` text.
    """

    call_id: str
    name: str = ""
    arguments: str = ""


@dataclass(frozen=True)
class ProviderChunk:
    """One raw chunk from a provider stream.

    Fields are consumed in declaration order: text first, then native
    tool-call deltas, then usage, then the finish reason.
    """

    text: str = ""
    tool_calls: tuple[ToolCallDelta, ...] = ()
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    finish_reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


class StreamErrorKind(str, enum.Enum):
    """Stream-level failures the parser reports instead of raising."""

    MALFORMED_TOOL_CALL = "malformed_tool_call"
    CONNECTION = "connection"


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    call_id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgDelta:
    call_id: str
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    call_id: str
    tool_call: ToolCall


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class Completed:
    reason: str


@dataclass(frozen=True)
class StreamError:
    kind: StreamErrorKind
    message: str = ""
    call_id: Optional[str] = None


StreamEvent = Union[
    TextDelta, ToolCallStart, ToolCallArgDelta, ToolCallEnd, Usage, Completed, StreamError
]


# ---------------------------------------------------------------------------
# UI events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentText:
    text: str


@dataclass(frozen=True)
class ToolInvoked:
    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCompleted:
    result: TaskResult


@dataclass(frozen=True)
class TurnError:
    kind: str
    message: str


@dataclass(frozen=True)
class SessionTerminated:
    reason: str


UiEvent = Union[AgentText, ToolInvoked, ToolCompleted, TurnError, SessionTerminated]
