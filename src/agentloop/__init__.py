"""agentloop: an autonomous coding-agent session engine.

Streams model responses, extracts tool calls as they arrive, executes
them under timeouts and cancellation, and keeps the conversation inside
the provider's context window.
"""

from agentloop._version import __version__

# Engine
from agentloop.engine.loop import (
    EngineState,
    SessionEngine,
    SessionResult,
    TerminationReason,
    should_auto_continue,
)
from agentloop.engine.context import ContextWindowManager
from agentloop.engine.dispatcher import ToolDispatcher
from agentloop.engine.execution import CancellationToken, CommandResult, ExecutionContext
from agentloop.engine.parser import StreamingToolParser
from agentloop.engine.summarizers import DigestSummarizer, ProviderSummarizer
from agentloop.engine.tokens import CharRatioEstimator, NullTokenEstimator, TiktokenEstimator

# Models
from agentloop.models.config import CompactionPolicy, ContextBudget, EngineConfig, RetryConfig
from agentloop.models.events import (
    AgentText,
    Completed,
    ProviderChunk,
    SessionTerminated,
    StreamError,
    StreamErrorKind,
    TextDelta,
    ToolCallArgDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolCompleted,
    ToolInvoked,
    TurnError,
    Usage,
)
from agentloop.models.messages import Message, MessageKind, Role, ToolCall
from agentloop.models.results import (
    CompactionAction,
    CompactionOutcome,
    ContextUsage,
    TaskResult,
    ToolErrorKind,
)
from agentloop.models.session import Session

# Errors and retry
from agentloop.classify import ClassifiedError, Disposition, ErrorKind, classify_error
from agentloop.retry import RetryController, backoff_delay
from agentloop.exceptions import (
    AgentLoopError,
    CompactionError,
    ConfigError,
    ContextOverflowError,
    MalformedToolCallError,
    ParseError,
    ProviderError,
    ProviderErrorKind,
    RetryExhaustedError,
    SessionError,
    ToolExecutionError,
)

# Tools, providers, sinks, storage
from agentloop.toolkit import ToolRegistry, ToolSpec, validate_arguments
from agentloop.pool import ProviderPool
from agentloop.protocols import Provider, SessionStore, Summarizer, TokenEstimator, ToolLookup, UiSink
from agentloop.sinks import NullUiSink, RecordingUiSink
from agentloop.storage.store import SessionSummary, SqliteSessionStore

__all__ = [
    "__version__",
    # Engine
    "SessionEngine",
    "SessionResult",
    "EngineState",
    "TerminationReason",
    "should_auto_continue",
    "ContextWindowManager",
    "ToolDispatcher",
    "CancellationToken",
    "CommandResult",
    "ExecutionContext",
    "StreamingToolParser",
    "DigestSummarizer",
    "ProviderSummarizer",
    "TiktokenEstimator",
    "CharRatioEstimator",
    "NullTokenEstimator",
    # Models
    "EngineConfig",
    "ContextBudget",
    "CompactionPolicy",
    "RetryConfig",
    "ProviderChunk",
    "ToolCallDelta",
    "TextDelta",
    "ToolCallStart",
    "ToolCallArgDelta",
    "ToolCallEnd",
    "Usage",
    "Completed",
    "StreamError",
    "StreamErrorKind",
    "AgentText",
    "ToolInvoked",
    "ToolCompleted",
    "TurnError",
    "SessionTerminated",
    "Message",
    "MessageKind",
    "Role",
    "ToolCall",
    "TaskResult",
    "ToolErrorKind",
    "CompactionAction",
    "CompactionOutcome",
    "ContextUsage",
    "Session",
    # Errors and retry
    "ClassifiedError",
    "Disposition",
    "ErrorKind",
    "classify_error",
    "RetryController",
    "backoff_delay",
    "AgentLoopError",
    "ConfigError",
    "ProviderError",
    "ProviderErrorKind",
    "ParseError",
    "MalformedToolCallError",
    "ToolExecutionError",
    "ContextOverflowError",
    "CompactionError",
    "SessionError",
    "RetryExhaustedError",
    # Tools, providers, sinks, storage
    "ToolRegistry",
    "ToolSpec",
    "validate_arguments",
    "ProviderPool",
    "Provider",
    "ToolLookup",
    "TokenEstimator",
    "UiSink",
    "SessionStore",
    "Summarizer",
    "NullUiSink",
    "RecordingUiSink",
    "SqliteSessionStore",
    "SessionSummary",
]
