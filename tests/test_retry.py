"""Tests for the RetryController and backoff_delay.

Sleeps are injected and recorded; no test waits on a real clock.
"""

from __future__ import annotations

import logging

import pytest
from hypothesis import given
from hypothesis import strategies as st

from agentloop.classify import Disposition, ErrorKind
from agentloop.exceptions import ProviderError, ProviderErrorKind, RetryExhaustedError
from agentloop.models.config import RetryConfig
from agentloop.retry import RetryController, backoff_delay


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FlakyCall:
    """Raises the scripted errors in order, then returns ``result``."""

    def __init__(self, errors: list[BaseException], result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _rate_limited() -> ProviderError:
    return ProviderError(ProviderErrorKind.RATE_LIMITED, "429 Too Many Requests")


def _controller(config: RetryConfig, sleeps: list[float], **kwargs) -> RetryController:
    return RetryController(config, sleep=sleeps.append, **kwargs)


_CONFIG = RetryConfig(max_attempts=5, base_delay=1.0, max_delay=100.0, jitter=0.5, max_elapsed=None)


# ---------------------------------------------------------------------------
# backoff_delay
# ---------------------------------------------------------------------------


class TestBackoffDelay:
    """Exponential backoff with bounded jitter."""

    def test_no_jitter_is_exponential(self) -> None:
        delays = [backoff_delay(n, _CONFIG, rand=lambda: 0.0) for n in range(1, 5)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped_by_max_delay(self) -> None:
        config = RetryConfig(base_delay=10.0, max_delay=15.0, jitter=0.0)
        assert backoff_delay(5, config) == 15.0

    def test_hint_raises_delay(self) -> None:
        assert backoff_delay(1, _CONFIG, hint=30.0, rand=lambda: 0.0) == 30.0

    def test_hard_cap(self) -> None:
        config = RetryConfig(hard_cap=5.0)
        assert backoff_delay(1, config, hint=600.0) == 5.0

    @given(rands=st.lists(st.floats(min_value=0.0, max_value=0.999999), min_size=4, max_size=4))
    def test_strictly_increasing_below_cap(self, rands: list[float]) -> None:
        values = iter(rands)
        delays = [backoff_delay(n, _CONFIG, rand=lambda: next(values)) for n in range(1, 5)]
        assert all(a < b for a, b in zip(delays, delays[1:]))


# ---------------------------------------------------------------------------
# RetryController
# ---------------------------------------------------------------------------


class TestRetryController:
    """Classification-driven retries on top of tenacity."""

    def test_success_first_try(self) -> None:
        sleeps: list[float] = []
        controller = _controller(_CONFIG, sleeps)
        assert controller.call(FlakyCall([])) == "ok"
        assert controller.attempts == 1
        assert sleeps == []

    def test_rate_limit_retried_with_increasing_delays(self) -> None:
        sleeps: list[float] = []
        controller = _controller(_CONFIG, sleeps)
        fn = FlakyCall([_rate_limited() for _ in range(4)])
        assert controller.call(fn) == "ok"
        assert fn.calls == 5
        assert len(sleeps) == 4
        assert all(a < b for a, b in zip(sleeps, sleeps[1:]))
        assert controller.delays == sleeps

    def test_auth_is_fatal_with_zero_retries(self) -> None:
        sleeps: list[float] = []
        controller = _controller(_CONFIG, sleeps)
        fn = FlakyCall([ProviderError(ProviderErrorKind.AUTH, "bad key")])
        with pytest.raises(ProviderError) as exc_info:
            controller.call(fn)
        assert exc_info.value.kind == ProviderErrorKind.AUTH
        assert fn.calls == 1
        assert sleeps == []

    def test_exhaustion(self) -> None:
        sleeps: list[float] = []
        config = _CONFIG.with_max_attempts(3)
        controller = _controller(config, sleeps)
        fn = FlakyCall([_rate_limited() for _ in range(10)])
        with pytest.raises(RetryExhaustedError) as exc_info:
            controller.call(fn)
        err = exc_info.value
        assert err.attempts == 3
        assert err.last_error.kind == ErrorKind.RATE_LIMIT
        assert err.last_error.disposition == Disposition.RETRYABLE_EXHAUSTED
        assert isinstance(err.cause, ProviderError)
        assert fn.calls == 3
        assert len(sleeps) == 2
        assert controller.last_error is err.last_error

    def test_retry_after_honored(self) -> None:
        sleeps: list[float] = []
        controller = _controller(_CONFIG, sleeps, rand=lambda: 0.0)
        fn = FlakyCall([ProviderError(ProviderErrorKind.RATE_LIMITED, "wait", retry_after=42.0)])
        controller.call(fn)
        assert sleeps == [42.0]

    def test_on_retry_callback(self) -> None:
        seen: list[tuple[int, ErrorKind, float]] = []
        controller = RetryController(
            _CONFIG,
            sleep=lambda _: None,
            rand=lambda: 0.0,
            on_retry=lambda attempt, classified, delay: seen.append((attempt, classified.kind, delay)),
        )
        controller.call(FlakyCall([ConnectionError("reset"), _rate_limited()]))
        assert seen == [(1, ErrorKind.NETWORK, 1.0), (2, ErrorKind.RATE_LIMIT, 2.0)]

    def test_retries_logged_at_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        controller = _controller(_CONFIG, [])
        with caplog.at_level(logging.WARNING, logger="agentloop.retry"):
            controller.call(FlakyCall([_rate_limited()]))
        assert any("attempt 1/5" in r.getMessage() and "rate_limit" in r.getMessage() for r in caplog.records)

    def test_arguments_forwarded(self) -> None:
        controller = _controller(_CONFIG, [])
        assert controller.call(lambda a, b=0: a + b, 2, b=3) == 5

    def test_counters_reset_between_calls(self) -> None:
        controller = _controller(_CONFIG, [])
        controller.call(FlakyCall([_rate_limited()]))
        controller.call(FlakyCall([]))
        assert controller.attempts == 1
        assert controller.delays == []
        assert controller.last_error is None


class TestRetryConfigPresets:
    """Preset configurations."""

    def test_default(self) -> None:
        assert RetryConfig.default().max_attempts == 3

    def test_autonomous(self) -> None:
        config = RetryConfig.autonomous()
        assert config.max_attempts == 6
        assert config.hard_cap == 300.0
        assert config.base_delay > RetryConfig.default().base_delay

    def test_jitter_must_stay_below_one(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig(jitter=1.0)
