"""Protocol definitions for agentloop.

Defines the capabilities the session engine consumes: Provider,
ToolLookup, TokenEstimator, UiSink, SessionStore and Summarizer.
Concrete implementations live elsewhere; the engine only ever sees
these narrow interfaces, passed in explicitly.

No SQLAlchemy imports allowed in this module -- pure domain protocols.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from agentloop.models.events import ProviderChunk, UiEvent
    from agentloop.models.messages import Message
    from agentloop.models.session import Session
    from agentloop.toolkit.models import ToolSpec


@runtime_checkable
class Provider(Protocol):
    """Streaming LLM completion capability.

    ``stream_completion`` returns a lazy iterator of raw chunks. It may
    raise ``ProviderError`` (or any transport error the classifier
    understands) either when called or while being iterated.
    """

    def stream_completion(
        self,
        history: Sequence[Message],
        tool_schemas: list[dict[str, Any]],
        config: dict[str, Any],
    ) -> Iterator[ProviderChunk]: ...


@runtime_checkable
class ToolLookup(Protocol):
    """Resolves tool names to ToolSpecs."""

    def lookup(self, name: str) -> ToolSpec | None: ...


@runtime_checkable
class TokenEstimator(Protocol):
    """Estimates the token cost of one message.

    Must be deterministic and monotonic: identical messages cost the
    same, and adding content never lowers the cost.
    """

    def estimate_tokens(self, message: Message) -> int: ...


@runtime_checkable
class UiSink(Protocol):
    """One-way receiver of presentation events."""

    def emit(self, event: UiEvent) -> None: ...


@runtime_checkable
class SessionStore(Protocol):
    """Persists Session snapshots.

    ``save`` must be atomic. ``load`` returns a valid Session or raises
    ``SessionError``.
    """

    def load(self, session_id: str) -> Session: ...

    def save(self, session: Session) -> None: ...


@runtime_checkable
class Summarizer(Protocol):
    """Produces a summary text for a run of messages being compacted."""

    def summarize(self, messages: Sequence[Message], *, max_tokens: int) -> str: ...
