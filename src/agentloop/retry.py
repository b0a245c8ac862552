"""Retry controller for provider-facing operations.

Wraps an operation in ``tenacity.Retrying`` (used programmatically, not
as a decorator, so limits are configurable per engine). Every failure is
run through ``classify_error``:

- FATAL failures propagate immediately, with zero retries.
- RETRYABLE failures back off exponentially with bounded jitter, honoring
  any provider backoff hint, until ``max_attempts`` or ``max_elapsed``.
- Exhaustion raises RetryExhaustedError carrying the last classified
  failure with disposition RETRYABLE_EXHAUSTED.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, TypeVar

import tenacity
from tenacity.wait import wait_base

from agentloop.classify import ClassifiedError, classify_error
from agentloop.exceptions import RetryExhaustedError
from agentloop.models.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    config: RetryConfig,
    *,
    hint: float | None = None,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number *attempt* (1-based).

    ``min(max_delay, base_delay * 2 ** (attempt - 1))`` scaled by a
    jitter factor in ``[1, 1 + jitter)``. Because ``jitter < 1`` the
    delays strictly increase until ``max_delay`` is reached. A provider
    hint raises the delay to at least the hint; ``hard_cap`` bounds the
    result.
    """
    exponential = min(config.max_delay, config.base_delay * (2 ** (attempt - 1)))
    delay = exponential * (1.0 + config.jitter * rand())
    if hint is not None:
        delay = max(delay, hint)
    return min(delay, config.hard_cap)


class _ClassifiedWait(wait_base):
    """tenacity wait strategy driven by ``backoff_delay``."""

    def __init__(self, config: RetryConfig, rand: Callable[[], float]) -> None:
        self._config = config
        self._rand = rand

    def __call__(self, retry_state: tenacity.RetryCallState) -> float:
        hint = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            hint = classify_error(retry_state.outcome.exception()).backoff_hint
        return backoff_delay(retry_state.attempt_number, self._config, hint=hint, rand=self._rand)


class RetryController:
    """Retries an operation according to a RetryConfig.

    Usage::

        controller = RetryController(RetryConfig.default())
        stream = controller.call(open_stream)

    Args:
        config: Backoff limits.
        sleep: Sleep function, injectable for tests.
        rand: Source of jitter in ``[0, 1)``.
        on_retry: Optional callback ``(attempt, classified, delay)``
            invoked before each backoff sleep.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
        on_retry: Callable[[int, ClassifiedError, float], None] | None = None,
    ) -> None:
        self.config = config or RetryConfig.default()
        self._sleep = sleep
        self._rand = rand
        self._on_retry = on_retry
        self.attempts = 0
        self.delays: list[float] = []
        self.last_error: ClassifiedError | None = None

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Invoke *fn* with retries.

        Raises:
            RetryExhaustedError: When every attempt failed with a
                retryable error.
            Exception: The original exception, for FATAL failures.
        """
        self.attempts = 0
        self.delays = []
        self.last_error = None

        stop = tenacity.stop_after_attempt(self.config.max_attempts)
        if self.config.max_elapsed is not None:
            stop = stop | tenacity.stop_after_delay(self.config.max_elapsed)

        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception(lambda exc: classify_error(exc).is_retryable),
            wait=_ClassifiedWait(self.config, self._rand),
            stop=stop,
            before_sleep=self._before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        def attempt() -> T:
            self.attempts += 1
            return fn(*args, **kwargs)

        try:
            return retryer(attempt)
        except Exception as exc:
            classified = classify_error(exc)
            if not classified.is_retryable:
                self.last_error = classified
                raise
            self.last_error = classified.exhausted()
            raise RetryExhaustedError(self.attempts, self.last_error, exc) from exc

    def _before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        classified = classify_error(exc) if exc is not None else None
        self.last_error = classified
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self.delays.append(delay)
        kind = classified.kind.value if classified else "unknown"
        logger.warning(
            "Provider call failed (attempt %d/%d, %s); retrying in %.1fs: %s",
            retry_state.attempt_number,
            self.config.max_attempts,
            kind,
            delay,
            classified.message if classified else "",
        )
        if self._on_retry is not None and classified is not None:
            self._on_retry(retry_state.attempt_number, classified, delay)
