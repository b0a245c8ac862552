"""Result types for tool execution and context management.

Frozen dataclasses, following the same pattern as the other result
types in this package.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Union


class ToolErrorKind(str, enum.Enum):
    """Why a tool call failed."""

    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    SCHEMA_VIOLATION = "schema_violation"
    RUNTIME_FAILURE = "runtime_failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TaskResult:
    """Outcome of executing one ToolCall.

    Attributes:
        call_id: Id of the ToolCall this result answers.
        tool_name: Name of the tool that was (or would have been) run.
        success: Whether execution succeeded.
        output: Text or structured output. On failure, a description of
            the failure suitable for the model to act on.
        error_kind: Failure category, None on success.
        duration_ms: Wall-clock execution time.
        exit_status: Exit status of the underlying process, if any.
    """

    call_id: str
    tool_name: str
    success: bool
    output: Union[str, dict, list] = ""
    error_kind: ToolErrorKind | None = None
    duration_ms: float | None = None
    exit_status: int | None = None

    @classmethod
    def ok(cls, call_id: str, tool_name: str, output: Any = "", **kwargs: Any) -> TaskResult:
        return cls(call_id=call_id, tool_name=tool_name, success=True, output=output, **kwargs)

    @classmethod
    def failed(
        cls,
        call_id: str,
        tool_name: str,
        output: str,
        error_kind: ToolErrorKind,
        **kwargs: Any,
    ) -> TaskResult:
        return cls(
            call_id=call_id,
            tool_name=tool_name,
            success=False,
            output=output,
            error_kind=error_kind,
            **kwargs,
        )


class CompactionAction(str, enum.Enum):
    """What ``ensure_within_budget`` had to do."""

    NOOP = "noop"
    COMPACTED = "compacted"
    DEHYDRATED = "dehydrated"


@dataclass(frozen=True)
class CompactionOutcome:
    """Result of a budget enforcement pass.

    Attributes:
        action: Most destructive strategy that was applied.
        tokens_before: History cost before the pass.
        tokens_after: History cost after the pass.
        messages_removed: Messages replaced by a summary or dropped.
        messages_truncated: Messages whose content was truncated.
        summary_index: Index of the synthesized summary message, if any.
    """

    action: CompactionAction
    tokens_before: int
    tokens_after: int
    messages_removed: int = 0
    messages_truncated: int = 0
    summary_index: int | None = None

    @property
    def tokens_saved(self) -> int:
        return self.tokens_before - self.tokens_after


@dataclass(frozen=True)
class ContextUsage:
    """Snapshot of context window utilization."""

    used: int
    reserved: int
    max_tokens: int
    should_compact: bool = field(default=False)

    @property
    def available(self) -> int:
        return self.max_tokens - self.reserved - self.used

    @property
    def percentage(self) -> float:
        if self.max_tokens <= 0:
            return 100.0
        return 100.0 * (self.used + self.reserved) / self.max_tokens
