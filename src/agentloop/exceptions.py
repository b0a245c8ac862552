"""agentloop exception hierarchy.

All agentloop-specific exceptions inherit from AgentLoopError.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentloop.classify import ClassifiedError
    from agentloop.models.results import ToolErrorKind


class AgentLoopError(Exception):
    """Base exception for all agentloop errors."""


class ConfigError(AgentLoopError):
    """Missing or invalid engine configuration."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderErrorKind(str, enum.Enum):
    """Failure categories a Provider capability may report."""

    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"


class ProviderError(AgentLoopError):
    """Raised by a Provider when a completion request fails.

    Attributes:
        kind: Failure category.
        status_code: HTTP status code, if the failure came from a response.
        retry_after: Seconds the provider asked us to wait, if known.
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str = "",
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.kind = ProviderErrorKind(kind)
        self.status_code = status_code
        self.retry_after = retry_after
        text = message or self.kind.value.replace("_", " ")
        if retry_after is not None:
            text = f"{text} (retry after {retry_after}s)"
        super().__init__(text)


# ---------------------------------------------------------------------------
# Parse errors
# ---------------------------------------------------------------------------


class ParseError(AgentLoopError):
    """Base for errors raised while parsing a provider stream."""


class MalformedToolCallError(ParseError):
    """A tool call could not be materialized from the stream.

    Attributes:
        call_id: Identifier of the offending call, if one was assigned.
        raw: The raw payload text that failed to parse.
    """

    def __init__(self, message: str, *, call_id: str | None = None, raw: str = "") -> None:
        self.call_id = call_id
        self.raw = raw
        super().__init__(message)


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class ToolExecutionError(AgentLoopError):
    """Raised inside a tool to report a classified failure.

    The dispatcher converts it into a failed TaskResult; it never
    escapes ``ToolDispatcher.dispatch``.
    """

    def __init__(self, kind: ToolErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


# ---------------------------------------------------------------------------
# Context errors
# ---------------------------------------------------------------------------


class ContextOverflowError(AgentLoopError):
    """Raised when history cannot be brought within the token budget.

    Attributes:
        message_index: Index in history of the message that alone
            exceeds the budget (or the largest remaining message).
        tokens: Token cost of that message.
        budget: Tokens available for history.
    """

    def __init__(self, message_index: int, tokens: int, budget: int) -> None:
        self.message_index = message_index
        self.tokens = tokens
        self.budget = budget
        super().__init__(
            f"Context overflow: message {message_index} costs {tokens} tokens "
            f"(history budget: {budget})"
        )


class CompactionError(AgentLoopError):
    """Raised when a summarizer cannot produce a usable summary."""


# ---------------------------------------------------------------------------
# Session errors
# ---------------------------------------------------------------------------


class SessionError(AgentLoopError):
    """Raised when a session snapshot is missing or corrupt."""

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id!r}: {reason}")


# ---------------------------------------------------------------------------
# Retry errors
# ---------------------------------------------------------------------------


class RetryExhaustedError(AgentLoopError):
    """Raised when a retryable operation fails on every attempt.

    Attributes:
        attempts: Number of attempts made.
        last_error: Classification of the final failure.
    """

    def __init__(self, attempts: int, last_error: ClassifiedError, cause: Any = None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.cause = cause
        super().__init__(
            f"Retries exhausted after {attempts} attempt(s). "
            f"Last error ({last_error.kind.value}): {last_error.message}"
        )
