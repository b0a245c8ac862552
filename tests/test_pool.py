"""Tests for ProviderPool concurrency limiting."""

from __future__ import annotations

import threading
import time

import pytest

from agentloop.exceptions import ConfigError, ProviderError, ProviderErrorKind
from agentloop.models.events import ProviderChunk
from agentloop.pool import ProviderPool


class SlowProvider:
    """Streams two chunks with a pause between them."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay

    def stream_completion(self, history, tool_schemas, config):
        yield ProviderChunk(text="a")
        time.sleep(self.delay)
        yield ProviderChunk(text="b", finish_reason="stop")


class FailingProvider:
    def stream_completion(self, history, tool_schemas, config):
        yield ProviderChunk(text="a")
        raise ProviderError(ProviderErrorKind.NETWORK, "reset")


def drain(pool: ProviderPool) -> str:
    return "".join(chunk.text for chunk in pool.stream_completion([], [], {}))


class TestProviderPool:
    """Slots are bounded, tracked and always released."""

    def test_rejects_zero_limit(self) -> None:
        with pytest.raises(ConfigError):
            ProviderPool(SlowProvider(), 0)

    def test_streams_through(self) -> None:
        pool = ProviderPool(SlowProvider(0), 2)
        assert drain(pool) == "ab"
        assert pool.in_flight == 0
        assert pool.peak == 1

    def test_limit_respected_across_threads(self) -> None:
        pool = ProviderPool(SlowProvider(0.05), 2)
        outputs: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            text = drain(pool)
            with lock:
                outputs.append(text)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert outputs == ["ab"] * 6
        assert pool.peak == 2
        assert pool.in_flight == 0

    def test_acquire_timeout_is_rate_limit(self) -> None:
        pool = ProviderPool(SlowProvider(0), 1, acquire_timeout=0.05)
        held = pool.stream_completion([], [], {})
        next(held)
        try:
            with pytest.raises(ProviderError) as exc_info:
                drain(pool)
            assert exc_info.value.kind == ProviderErrorKind.RATE_LIMITED
        finally:
            held.close()
        assert pool.in_flight == 0
        assert drain(pool) == "ab"

    def test_released_on_failure(self) -> None:
        pool = ProviderPool(FailingProvider(), 1, acquire_timeout=0.05)
        with pytest.raises(ProviderError):
            drain(pool)
        assert pool.in_flight == 0
        with pytest.raises(ProviderError, match="reset"):
            drain(pool)

    def test_released_when_abandoned(self) -> None:
        pool = ProviderPool(SlowProvider(0), 1, acquire_timeout=0.05)
        stream = pool.stream_completion([], [], {})
        next(stream)
        assert pool.in_flight == 1
        stream.close()
        assert pool.in_flight == 0
