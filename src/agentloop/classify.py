"""Error classification for provider-facing failures.

``classify_error`` maps any raised exception (a ``ProviderError``, a raw
``httpx`` error, a builtin OS/connection error, or an arbitrary exception
with a descriptive message) onto an ``ErrorKind`` and a retry
``Disposition``. It is a pure function: no I/O, no state.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, replace

import httpx

from agentloop.exceptions import ProviderError, ProviderErrorKind

_AUTH_STATUS_CODES = {401, 403}
_SERVER_STATUS_CODES = {500, 502, 503, 504}
_BUSY_STATUS_CODES = {529}
_INVALID_STATUS_CODES = {400, 404, 405, 409, 413, 422}


class ErrorKind(str, enum.Enum):
    """Taxonomy of provider-facing failures."""

    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    MODEL_BUSY = "model_busy"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    TOKEN_LIMIT = "token_limit"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


class Disposition(str, enum.Enum):
    """What the retry layer should do with a classified failure."""

    RETRYABLE = "retryable"
    RETRYABLE_EXHAUSTED = "retryable_exhausted"
    FATAL = "fatal"


_FATAL_KINDS = frozenset({
    ErrorKind.AUTH,
    ErrorKind.INVALID_REQUEST,
    ErrorKind.QUOTA_EXCEEDED,
    ErrorKind.CONTEXT_LENGTH_EXCEEDED,
    ErrorKind.UNKNOWN,
})

_PROVIDER_KIND_MAP: dict[ProviderErrorKind, ErrorKind] = {
    ProviderErrorKind.NETWORK: ErrorKind.NETWORK,
    ProviderErrorKind.RATE_LIMITED: ErrorKind.RATE_LIMIT,
    ProviderErrorKind.AUTH: ErrorKind.AUTH,
    ProviderErrorKind.INVALID_REQUEST: ErrorKind.INVALID_REQUEST,
    ProviderErrorKind.SERVER_ERROR: ErrorKind.SERVER_ERROR,
}


@dataclass(frozen=True)
class ClassifiedError:
    """A failure mapped onto the taxonomy.

    Attributes:
        kind: Taxonomy entry.
        disposition: Retry disposition.
        message: Human-readable description of the original failure.
        backoff_hint: Minimum delay in seconds requested by the provider
            (e.g. a Retry-After header), or None.
        status_code: HTTP status code when known.
    """

    kind: ErrorKind
    disposition: Disposition
    message: str
    backoff_hint: float | None = None
    status_code: int | None = None

    @property
    def is_retryable(self) -> bool:
        return self.disposition == Disposition.RETRYABLE

    @property
    def is_fatal(self) -> bool:
        return self.disposition == Disposition.FATAL

    def exhausted(self) -> ClassifiedError:
        """Return a copy marked as retryable-but-exhausted."""
        return replace(self, disposition=Disposition.RETRYABLE_EXHAUSTED)


def disposition_for(kind: ErrorKind) -> Disposition:
    """Return the default disposition for an error kind."""
    return Disposition.FATAL if kind in _FATAL_KINDS else Disposition.RETRYABLE


def _make(
    kind: ErrorKind,
    message: str,
    *,
    backoff_hint: float | None = None,
    status_code: int | None = None,
) -> ClassifiedError:
    return ClassifiedError(
        kind=kind,
        disposition=disposition_for(kind),
        message=message,
        backoff_hint=backoff_hint,
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Message heuristics
# ---------------------------------------------------------------------------

_CONTEXT_LENGTH_MARKERS = (
    "context_length_exceeded",
    "context length",
    "context window",
    "maximum context",
    "prompt is too long",
    "too many tokens",
)


def _has_code(text: str, *codes: str) -> bool:
    return any(re.search(rf"\b{code}\b", text) for code in codes)


def classify_message(message: str) -> ErrorKind:
    """Classify a failure from its message text alone.

    Checks are case-insensitive and applied in priority order; the
    first match wins. Connection timeouts count as network errors
    because the connection check precedes the timeout check.

    Args:
        message: Error text, typically ``str(exc)``.

    Returns:
        The matching ErrorKind, or ``ErrorKind.UNKNOWN``.
    """
    text = message.lower()
    if not text.strip():
        return ErrorKind.UNKNOWN

    if "insufficient_quota" in text or "quota exceeded" in text or "billing" in text:
        return ErrorKind.QUOTA_EXCEEDED
    if "rate limit" in text or "rate_limit" in text or _has_code(text, "429") or "too many requests" in text:
        return ErrorKind.RATE_LIMIT
    if "connection" in text:
        return ErrorKind.NETWORK
    if "timed out" in text or "timeout" in text:
        return ErrorKind.TIMEOUT
    if _has_code(text, "500", "502", "503", "504") or any(
        phrase in text
        for phrase in ("server error", "internal error", "bad gateway", "service unavailable")
    ):
        return ErrorKind.SERVER_ERROR
    if "overloaded" in text or "busy" in text:
        return ErrorKind.MODEL_BUSY
    if (_has_code(text, "400") or "bad request" in text) and any(
        marker in text for marker in _CONTEXT_LENGTH_MARKERS
    ):
        return ErrorKind.CONTEXT_LENGTH_EXCEEDED
    if "token" in text and ("limit" in text or "exceeded" in text):
        return ErrorKind.TOKEN_LIMIT
    if _has_code(text, "401", "403") or any(
        marker in text
        for marker in ("unauthorized", "forbidden", "authentication", "api key")
    ):
        return ErrorKind.AUTH
    if _has_code(text, "400") or "bad request" in text or "invalid request" in text:
        return ErrorKind.INVALID_REQUEST
    return ErrorKind.UNKNOWN


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _classify_status(status: int, message: str) -> ErrorKind:
    if status == 429:
        if "insufficient_quota" in message.lower():
            return ErrorKind.QUOTA_EXCEEDED
        return ErrorKind.RATE_LIMIT
    if status in _AUTH_STATUS_CODES:
        return ErrorKind.AUTH
    if status == 402:
        return ErrorKind.QUOTA_EXCEEDED
    if status in _BUSY_STATUS_CODES:
        return ErrorKind.MODEL_BUSY
    if status in _SERVER_STATUS_CODES or status >= 500:
        if "overloaded" in message.lower():
            return ErrorKind.MODEL_BUSY
        return ErrorKind.SERVER_ERROR
    if status in _INVALID_STATUS_CODES:
        lowered = message.lower()
        if any(marker in lowered for marker in _CONTEXT_LENGTH_MARKERS):
            return ErrorKind.CONTEXT_LENGTH_EXCEEDED
        return ErrorKind.INVALID_REQUEST
    return classify_message(message)


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def classify_error(exc: BaseException) -> ClassifiedError:
    """Map a raised failure onto the taxonomy with a retry disposition.

    Args:
        exc: The exception raised by a provider-facing operation.

    Returns:
        ClassifiedError describing the failure. Authentication, invalid
        requests, permanent quota exhaustion, context-length overflows
        and unrecognized failures are FATAL; everything else is
        RETRYABLE.
    """
    message = str(exc) or type(exc).__name__

    if isinstance(exc, ProviderError):
        kind = _PROVIDER_KIND_MAP[exc.kind]
        lowered = message.lower()
        if kind == ErrorKind.INVALID_REQUEST and any(
            marker in lowered for marker in _CONTEXT_LENGTH_MARKERS
        ):
            kind = ErrorKind.CONTEXT_LENGTH_EXCEEDED
        elif kind == ErrorKind.SERVER_ERROR and "overloaded" in lowered:
            kind = ErrorKind.MODEL_BUSY
        elif kind == ErrorKind.RATE_LIMIT and "insufficient_quota" in lowered:
            kind = ErrorKind.QUOTA_EXCEEDED
        return _make(
            kind,
            message,
            backoff_hint=exc.retry_after,
            status_code=exc.status_code,
        )

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = ""
        try:
            body = exc.response.text
        except httpx.ResponseNotRead:
            body = ""
        detail = f"HTTP {status}: {body}" if body else message
        return _make(
            _classify_status(status, detail),
            detail,
            backoff_hint=_retry_after(exc.response),
            status_code=status,
        )

    # ConnectTimeout is both a timeout and a connect error; treat as network.
    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
        return _make(ErrorKind.NETWORK, message)
    if isinstance(exc, httpx.TimeoutException):
        return _make(ErrorKind.TIMEOUT, message)
    if isinstance(exc, (httpx.NetworkError, httpx.RemoteProtocolError)):
        return _make(ErrorKind.NETWORK, message)

    if isinstance(exc, ConnectionError):
        return _make(ErrorKind.NETWORK, message)
    if isinstance(exc, TimeoutError):
        return _make(ErrorKind.TIMEOUT, message)

    return _make(classify_message(message), message)
