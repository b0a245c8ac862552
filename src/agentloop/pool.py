"""ProviderPool: bounds concurrent requests to a shared Provider.

Independent sessions on separate threads may share one Provider. The
pool hands each stream a slot from a BoundedSemaphore sized to the
provider's concurrency limit; the slot is held until the streamed
response is exhausted, closed or fails.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from agentloop.exceptions import ConfigError, ProviderError, ProviderErrorKind

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from agentloop.models.events import ProviderChunk
    from agentloop.models.messages import Message
    from agentloop.protocols import Provider

logger = logging.getLogger(__name__)


class ProviderPool:
    """Provider wrapper that limits in-flight streams.

    Args:
        provider: The shared provider.
        max_concurrent: Maximum simultaneous streams.
        acquire_timeout: Seconds to wait for a slot before failing with a
            retryable ``ProviderError(RATE_LIMITED)``. None waits forever.
    """

    def __init__(
        self,
        provider: Provider,
        max_concurrent: int,
        *,
        acquire_timeout: float | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ConfigError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._provider = provider
        self._limit = max_concurrent
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._acquire_timeout = acquire_timeout
        self._in_flight = 0
        self._peak = 0
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def peak(self) -> int:
        """Highest number of simultaneous streams observed."""
        with self._lock:
            return self._peak

    def stream_completion(
        self,
        history: Sequence[Message],
        tool_schemas: Sequence[dict],
        config: dict[str, Any],
    ) -> Iterator[ProviderChunk]:
        """Stream from the wrapped provider while holding a slot.

        The slot is taken when iteration starts and released in
        ``finally``, so an abandoned or failed stream frees it too.
        """
        acquired = self._semaphore.acquire(timeout=self._acquire_timeout)
        if not acquired:
            raise ProviderError(
                ProviderErrorKind.RATE_LIMITED,
                f"no provider slot free within {self._acquire_timeout}s",
            )
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)
        try:
            yield from self._provider.stream_completion(history, tool_schemas, config)
        finally:
            with self._lock:
                self._in_flight -= 1
            self._semaphore.release()
            logger.debug("Released provider slot (%d/%d in flight)", self.in_flight, self._limit)
