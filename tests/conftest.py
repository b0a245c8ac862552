"""Shared test fixtures for agentloop.

Provides an in-memory store engine, a session store, a scripted provider,
a deterministic estimator and a small tool registry.
"""

from __future__ import annotations

import json
from collections.abc import Iterator

import pytest

from agentloop.engine.loop import SessionEngine
from agentloop.engine.tokens import CharRatioEstimator
from agentloop.exceptions import ProviderError, ProviderErrorKind
from agentloop.models.config import EngineConfig, RetryConfig
from agentloop.models.events import ProviderChunk, ToolCallDelta
from agentloop.retry import RetryController
from agentloop.sinks import RecordingUiSink
from agentloop.storage.engine import create_store_engine, init_db
from agentloop.storage.store import SqliteSessionStore
from agentloop.toolkit.registry import ToolRegistry


# ------------------------------------------------------------------
# Scripted provider
# ------------------------------------------------------------------


class ScriptedProvider:
    """Provider that replays one scripted response per call.

    Each script entry is either a list of chunks (``ProviderChunk`` or
    plain text; an exception instance inside the list is raised at that
    point of the stream) or an exception instance raised when the call
    is made. Every call is recorded in ``calls``.
    """

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    def stream_completion(self, history, tool_schemas, config) -> Iterator[ProviderChunk]:
        self.calls.append(
            {"history": list(history), "tool_schemas": list(tool_schemas), "config": dict(config)}
        )
        if not self.responses:
            raise ProviderError(ProviderErrorKind.INVALID_REQUEST, "script exhausted")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return _replay(response)


def _replay(chunks) -> Iterator[ProviderChunk]:
    for chunk in chunks:
        if isinstance(chunk, BaseException):
            raise chunk
        if isinstance(chunk, str):
            chunk = ProviderChunk(text=chunk)
        yield chunk


# ------------------------------------------------------------------
# Response builders
# ------------------------------------------------------------------


def text_response(text: str, finish_reason: str = "stop") -> list[ProviderChunk]:
    """A plain text response."""
    return [ProviderChunk(text=text), ProviderChunk(finish_reason=finish_reason)]


def inline_call(name: str, args: dict | None = None) -> str:
    """Inline tool-call envelope on its own line."""
    return json.dumps({"tool": name, "args": args or {}}) + "\n"


def native_call(call_id: str, name: str, args: dict | None = None) -> ProviderChunk:
    """A chunk carrying one complete native tool call."""
    return ProviderChunk(tool_calls=(ToolCallDelta(call_id, name, json.dumps(args or {})),))


def tool_response(*calls: ProviderChunk, text: str = "") -> list[ProviderChunk]:
    """Narration followed by native tool calls."""
    chunks: list[ProviderChunk] = []
    if text:
        chunks.append(ProviderChunk(text=text))
    chunks.extend(calls)
    chunks.append(ProviderChunk(finish_reason="tool_calls"))
    return chunks


# ------------------------------------------------------------------
# Factories
# ------------------------------------------------------------------


def make_retry(max_attempts: int = 3) -> RetryController:
    """RetryController that never actually sleeps."""
    config = RetryConfig(max_attempts=max_attempts, base_delay=0.01, max_delay=0.1, max_elapsed=None)
    return RetryController(config, sleep=lambda _: None, rand=lambda: 0.0)


def make_registry(tmp_path=None) -> ToolRegistry:
    """Registry with list_files, read_file and a failing tool."""
    registry = ToolRegistry()

    @registry.tool(
        description="List files in a directory",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
        parallel_safe=True,
    )
    def list_files(path: str) -> str:
        if tmp_path is None:
            return "README.md\nsrc"
        return "\n".join(sorted(p.name for p in (tmp_path / path).iterdir()))

    @registry.tool(
        description="Read a file",
        parameters={
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
        parallel_safe=True,
    )
    def read_file(path: str) -> str:
        return f"contents of {path}"

    @registry.tool(description="Always fails")
    def explode() -> str:
        raise RuntimeError("boom")

    return registry


def make_engine(provider, registry=None, *, sink=None, store=None, **config) -> SessionEngine:
    """SessionEngine with a recording sink and non-sleeping retries."""
    return SessionEngine(
        provider,
        registry if registry is not None else make_registry(),
        EngineConfig(**config),
        sink=sink if sink is not None else RecordingUiSink(),
        store=store,
        estimator=CharRatioEstimator(),
        retry=make_retry(),
    )


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def store_engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_store_engine(":memory:")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(store_engine) -> SqliteSessionStore:
    return SqliteSessionStore(engine=store_engine)


@pytest.fixture
def estimator() -> CharRatioEstimator:
    return CharRatioEstimator()


@pytest.fixture
def registry() -> ToolRegistry:
    return make_registry()


@pytest.fixture
def sink() -> RecordingUiSink:
    return RecordingUiSink()
