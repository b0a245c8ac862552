"""Session aggregate.

A Session is the mutable state of one task: an index-addressable list of
Messages, cumulative token accounting, a monotonically increasing turn
counter and a termination flag. Exactly one SessionEngine owns and
mutates a given Session.

The model doubles as the persistence snapshot: ``to_snapshot`` and
``from_snapshot`` round-trip through JSON.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field, ValidationError

from agentloop.exceptions import SessionError
from agentloop.models.messages import Message, Role

if TYPE_CHECKING:
    from agentloop.protocols import TokenEstimator

SNAPSHOT_VERSION = 1


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Session(BaseModel):
    """Conversation state for one task."""

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    messages: list[Message] = Field(default_factory=list)
    turn: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    terminated: bool = False
    termination_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @property
    def history_tokens(self) -> int:
        """Sum of cached per-message token costs."""
        return sum(m.token_cost for m in self.messages)

    def append(self, message: Message, estimator: TokenEstimator) -> Message:
        """Append a message, stamping its turn and cached token cost.

        Returns:
            The stored (stamped) message.
        """
        stamped = message.model_copy(update={"turn": self.turn})
        stamped = stamped.with_cost(estimator.estimate_tokens(stamped))
        self.messages.append(stamped)
        self.updated_at = _now()
        return stamped

    def replace_range(self, start: int, end: int, replacement: list[Message]) -> None:
        """Replace ``messages[start:end]`` with *replacement*."""
        if not 0 <= start <= end <= len(self.messages):
            raise IndexError(f"Invalid history range [{start}, {end})")
        self.messages[start:end] = replacement
        self.updated_at = _now()

    def last_assistant(self) -> Message | None:
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return message
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def next_turn(self) -> int:
        self.turn += 1
        self.updated_at = _now()
        return self.turn

    def record_usage(self, input_tokens: int, output_tokens: int) -> None:
        self.input_tokens += input_tokens
        self.output_tokens += output_tokens

    def terminate(self, reason: str) -> None:
        self.terminated = True
        self.termination_reason = reason
        self.updated_at = _now()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def to_snapshot(self) -> str:
        """Serialize to an opaque JSON snapshot."""
        return self.model_dump_json()

    @classmethod
    def from_snapshot(cls, session_id: str, snapshot: str) -> Session:
        """Restore a Session from a snapshot produced by ``to_snapshot``.

        Raises:
            SessionError: If the snapshot is corrupt.
        """
        try:
            session = cls.model_validate_json(snapshot)
        except ValidationError as exc:
            raise SessionError(session_id, f"corrupt snapshot ({exc.error_count()} error(s))") from exc
        if session.session_id != session_id:
            raise SessionError(
                session_id,
                f"snapshot belongs to session {session.session_id!r}",
            )
        return session
