"""Tests for classify_error and classify_message.

httpx exceptions are constructed directly; no network access.
"""

from __future__ import annotations

import httpx
import pytest

from agentloop.classify import (
    ClassifiedError,
    Disposition,
    ErrorKind,
    classify_error,
    classify_message,
    disposition_for,
)
from agentloop.exceptions import ProviderError, ProviderErrorKind


def _status_error(status: int, body: str = "", headers: dict | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.test/v1/chat")
    response = httpx.Response(status, text=body, headers=headers, request=request)
    return httpx.HTTPStatusError(f"status {status}", request=request, response=response)


# ---------------------------------------------------------------------------
# ProviderError
# ---------------------------------------------------------------------------


class TestProviderErrors:
    """ProviderError kinds map onto the taxonomy."""

    @pytest.mark.parametrize(
        "kind, expected, disposition",
        [
            (ProviderErrorKind.NETWORK, ErrorKind.NETWORK, Disposition.RETRYABLE),
            (ProviderErrorKind.RATE_LIMITED, ErrorKind.RATE_LIMIT, Disposition.RETRYABLE),
            (ProviderErrorKind.SERVER_ERROR, ErrorKind.SERVER_ERROR, Disposition.RETRYABLE),
            (ProviderErrorKind.AUTH, ErrorKind.AUTH, Disposition.FATAL),
            (ProviderErrorKind.INVALID_REQUEST, ErrorKind.INVALID_REQUEST, Disposition.FATAL),
        ],
    )
    def test_kind_mapping(self, kind, expected, disposition) -> None:
        classified = classify_error(ProviderError(kind))
        assert classified.kind == expected
        assert classified.disposition == disposition

    def test_retry_after_becomes_hint(self) -> None:
        classified = classify_error(ProviderError(ProviderErrorKind.RATE_LIMITED, "slow down", retry_after=12.0))
        assert classified.backoff_hint == 12.0
        assert classified.is_retryable

    def test_invalid_request_with_context_length_message(self) -> None:
        exc = ProviderError(ProviderErrorKind.INVALID_REQUEST, "prompt is too long: 250000 tokens")
        assert classify_error(exc).kind == ErrorKind.CONTEXT_LENGTH_EXCEEDED

    def test_overloaded_server_is_busy(self) -> None:
        exc = ProviderError(ProviderErrorKind.SERVER_ERROR, "Overloaded", status_code=529)
        classified = classify_error(exc)
        assert classified.kind == ErrorKind.MODEL_BUSY
        assert classified.status_code == 529

    def test_quota_is_fatal(self) -> None:
        exc = ProviderError(ProviderErrorKind.RATE_LIMITED, "insufficient_quota")
        assert classify_error(exc).is_fatal


# ---------------------------------------------------------------------------
# httpx
# ---------------------------------------------------------------------------


class TestHttpxErrors:
    """Raw httpx transport and status errors."""

    @pytest.mark.parametrize(
        "status, expected",
        [
            (429, ErrorKind.RATE_LIMIT),
            (401, ErrorKind.AUTH),
            (403, ErrorKind.AUTH),
            (402, ErrorKind.QUOTA_EXCEEDED),
            (500, ErrorKind.SERVER_ERROR),
            (503, ErrorKind.SERVER_ERROR),
            (529, ErrorKind.MODEL_BUSY),
            (422, ErrorKind.INVALID_REQUEST),
        ],
    )
    def test_status_codes(self, status: int, expected: ErrorKind) -> None:
        classified = classify_error(_status_error(status))
        assert classified.kind == expected
        assert classified.status_code == status

    def test_retry_after_header(self) -> None:
        classified = classify_error(_status_error(429, headers={"Retry-After": "7"}))
        assert classified.backoff_hint == 7.0

    def test_unparseable_retry_after_ignored(self) -> None:
        classified = classify_error(_status_error(429, headers={"Retry-After": "soon"}))
        assert classified.backoff_hint is None

    def test_context_length_body(self) -> None:
        exc = _status_error(400, body='{"error": {"code": "context_length_exceeded"}}')
        classified = classify_error(exc)
        assert classified.kind == ErrorKind.CONTEXT_LENGTH_EXCEEDED
        assert classified.is_fatal

    def test_connect_error_is_network(self) -> None:
        assert classify_error(httpx.ConnectError("refused")).kind == ErrorKind.NETWORK

    def test_connect_timeout_is_network(self) -> None:
        assert classify_error(httpx.ConnectTimeout("slow connect")).kind == ErrorKind.NETWORK

    def test_read_timeout_is_timeout(self) -> None:
        classified = classify_error(httpx.ReadTimeout("read timed out"))
        assert classified.kind == ErrorKind.TIMEOUT
        assert classified.is_retryable

    def test_remote_protocol_error_is_network(self) -> None:
        assert classify_error(httpx.RemoteProtocolError("peer closed")).kind == ErrorKind.NETWORK


# ---------------------------------------------------------------------------
# Builtins and message heuristics
# ---------------------------------------------------------------------------


class TestMessageHeuristics:
    """Substring heuristics for message-only failures."""

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("Rate limit reached for requests", ErrorKind.RATE_LIMIT),
            ("Error code: 429", ErrorKind.RATE_LIMIT),
            ("Connection timed out", ErrorKind.NETWORK),
            ("Request timed out", ErrorKind.TIMEOUT),
            ("502 Bad Gateway", ErrorKind.SERVER_ERROR),
            ("The model is overloaded", ErrorKind.MODEL_BUSY),
            ("400 Bad Request: maximum context length is 8192", ErrorKind.CONTEXT_LENGTH_EXCEEDED),
            ("max token limit exceeded", ErrorKind.TOKEN_LIMIT),
            ("Invalid API key provided", ErrorKind.AUTH),
            ("401 Unauthorized", ErrorKind.AUTH),
            ("You exceeded your current quota, please check your plan and billing details", ErrorKind.QUOTA_EXCEEDED),
            ("invalid request: messages must not be empty", ErrorKind.INVALID_REQUEST),
            ("something odd happened", ErrorKind.UNKNOWN),
            ("", ErrorKind.UNKNOWN),
        ],
    )
    def test_classify_message(self, message: str, expected: ErrorKind) -> None:
        assert classify_message(message) == expected

    def test_code_requires_word_boundary(self) -> None:
        assert classify_message("request id 14290 failed") == ErrorKind.UNKNOWN

    def test_builtin_connection_error(self) -> None:
        assert classify_error(ConnectionResetError("reset")).kind == ErrorKind.NETWORK

    def test_builtin_timeout(self) -> None:
        assert classify_error(TimeoutError()).kind == ErrorKind.TIMEOUT

    def test_unknown_exception_is_fatal(self) -> None:
        classified = classify_error(ValueError("weird"))
        assert classified.kind == ErrorKind.UNKNOWN
        assert classified.is_fatal


class TestDispositions:
    """Disposition table and ClassifiedError helpers."""

    @pytest.mark.parametrize("kind", list(ErrorKind))
    def test_every_kind_has_disposition(self, kind: ErrorKind) -> None:
        fatal = {
            ErrorKind.AUTH,
            ErrorKind.INVALID_REQUEST,
            ErrorKind.QUOTA_EXCEEDED,
            ErrorKind.CONTEXT_LENGTH_EXCEEDED,
            ErrorKind.UNKNOWN,
        }
        expected = Disposition.FATAL if kind in fatal else Disposition.RETRYABLE
        assert disposition_for(kind) == expected

    def test_exhausted_copy(self) -> None:
        classified = ClassifiedError(ErrorKind.RATE_LIMIT, Disposition.RETRYABLE, "429")
        exhausted = classified.exhausted()
        assert exhausted.disposition == Disposition.RETRYABLE_EXHAUSTED
        assert exhausted.kind == ErrorKind.RATE_LIMIT
        assert not exhausted.is_retryable
        assert not exhausted.is_fatal
        assert classified.is_retryable
