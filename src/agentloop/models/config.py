"""Configuration models for agentloop.

EngineConfig holds per-session engine settings.
ContextBudget describes the provider's context window.
CompactionPolicy decides what history is low-value and how much to keep.
RetryConfig controls backoff for provider calls.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from agentloop.exceptions import ConfigError

_ENV_PREFIX = "AGENTLOOP_"


class ContextBudget(BaseModel):
    """Provider context window.

    The budget invariant is
    ``history_tokens + reserved_output_tokens <= max_tokens``.
    """

    max_tokens: int = Field(default=200_000, gt=0)
    reserved_output_tokens: int = Field(default=16_000, ge=0)

    @property
    def history_budget(self) -> int:
        """Tokens available to history."""
        return self.max_tokens - self.reserved_output_tokens

    def available(self, history_tokens: int) -> int:
        return self.history_budget - history_tokens

    def holds(self, history_tokens: int) -> bool:
        return history_tokens + self.reserved_output_tokens <= self.max_tokens


class CompactionPolicy(BaseModel):
    """Selection policy for compaction and dehydration.

    Attributes:
        preserve_recent_turns: Number of most recent turns kept verbatim
            by compaction and spared from dehydration until last.
        tool_output_threshold: A tool-result message costing more than
            this many tokens is low-value once outside the preserved
            window.
        warn_threshold: Fraction at which ``ContextUsage.should_compact``
            starts reporting True.
        dehydrate_stub_tokens: Approximate size, in tokens, of what is
            kept from a truncated tool output.
        summary_max_tokens: Target length handed to the summarizer.
    """

    preserve_recent_turns: int = Field(default=3, ge=0)
    tool_output_threshold: int = Field(default=500, ge=0)
    warn_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    dehydrate_stub_tokens: int = Field(default=64, ge=0)
    summary_max_tokens: int = Field(default=2_000, gt=0)


class RetryConfig(BaseModel):
    """Backoff configuration for provider-facing operations.

    Delays grow as ``base_delay * 2 ** (attempt - 1)`` (capped at
    ``max_delay``) times a jitter factor in ``[1, 1 + jitter)``.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=15.0, ge=0.0)
    jitter: float = Field(default=0.5, ge=0.0, lt=1.0)
    max_elapsed: Optional[float] = Field(default=120.0, gt=0.0)
    hard_cap: float = Field(default=300.0, gt=0.0)

    @classmethod
    def default(cls) -> RetryConfig:
        return cls()

    @classmethod
    def autonomous(cls) -> RetryConfig:
        """Long, patient delays for unattended runs."""
        return cls(
            max_attempts=6,
            base_delay=10.0,
            max_delay=200.0,
            jitter=0.5,
            max_elapsed=1_800.0,
        )

    def with_max_attempts(self, max_attempts: int) -> RetryConfig:
        return self.model_copy(update={"max_attempts": max_attempts})


class EngineConfig(BaseModel):
    """Per-session engine configuration."""

    model: Optional[str] = None
    system_prompt: Optional[str] = None
    max_turns: int = Field(default=400, ge=1)
    max_auto_continues: int = Field(default=5, ge=0)
    autonomous: bool = False
    tool_timeout: float = Field(default=480.0, gt=0.0)
    parallel_tool_calls: bool = False
    max_tool_workers: int = Field(default=4, ge=1)
    context: ContextBudget = Field(default_factory=ContextBudget)
    compaction: CompactionPolicy = Field(default_factory=CompactionPolicy)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: object) -> EngineConfig:
        """Build a config from ``AGENTLOOP_*`` environment variables.

        Recognized variables: ``AGENTLOOP_MODEL``, ``AGENTLOOP_MAX_TURNS``,
        ``AGENTLOOP_AUTONOMOUS``, ``AGENTLOOP_TOOL_TIMEOUT``,
        ``AGENTLOOP_MAX_TOKENS``, ``AGENTLOOP_RESERVED_OUTPUT_TOKENS``.
        Explicit keyword overrides win over the environment.

        Raises:
            ConfigError: If a variable holds an invalid value.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(_ENV_PREFIX + name)
            return value if value not in (None, "") else None

        data: dict[str, object] = {}
        if (model := get("MODEL")) is not None:
            data["model"] = model
        if (max_turns := get("MAX_TURNS")) is not None:
            data["max_turns"] = max_turns
        if (autonomous := get("AUTONOMOUS")) is not None:
            data["autonomous"] = autonomous.lower() in ("1", "true", "yes", "on")
        if (timeout := get("TOOL_TIMEOUT")) is not None:
            data["tool_timeout"] = timeout

        context: dict[str, object] = {}
        if (max_tokens := get("MAX_TOKENS")) is not None:
            context["max_tokens"] = max_tokens
        if (reserved := get("RESERVED_OUTPUT_TOKENS")) is not None:
            context["reserved_output_tokens"] = reserved
        if context:
            data["context"] = context

        data.update(overrides)
        if data.get("autonomous") and "retry" not in data:
            data["retry"] = RetryConfig.autonomous()
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid engine configuration: {exc}") from exc
