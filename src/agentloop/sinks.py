"""UiSink implementations.

The engine pushes UiEvents to a sink passed to its constructor; the
sink has no way to talk back except through the CancellationToken.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from agentloop.models.events import AgentText

if TYPE_CHECKING:
    from agentloop.models.events import UiEvent

logger = logging.getLogger(__name__)


class NullUiSink:
    """Discards every event."""

    def emit(self, event: UiEvent) -> None:
        return None


class RecordingUiSink:
    """Keeps every event in order. Thread-safe."""

    def __init__(self) -> None:
        self._events: list[UiEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: UiEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[UiEvent]:
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: type) -> list[UiEvent]:
        return [e for e in self.events if isinstance(e, event_type)]

    @property
    def text(self) -> str:
        """Concatenated AgentText output."""
        return "".join(e.text for e in self.events if isinstance(e, AgentText))

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
