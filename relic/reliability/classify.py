"""Error classification for single call attempts.

Decides whether a failure is transient (retry under backoff) or fatal
(give up on this method), and whether it is a rate-limit signal that
needs the larger backoff base.
"""

from __future__ import annotations

import socket

import requests

from relic.errors import (
    CallError,
    ErrorCode,
    JobErrorType,
    NormalizationError,
    RelicError,
    TransportError,
)

RETRYABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
RATE_LIMIT_STATUS = 429

RATE_LIMIT_MARKERS = ("rate limit", "rate-limit", "too many requests", "quota exceeded")

# Cold-start and capacity signals from hosted model spaces
UNAVAILABLE_MARKERS = (
    "is loading",
    "loading model",
    "starting",
    "sleeping",
    "building",
    "queue is full",
    "queueing",
    "in queue",
)

NETWORK_MARKERS = (
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "connection aborted",
    "name or service not known",
    "temporary failure in name resolution",
    "network is unreachable",
    "timed out",
    "timeout",
)


def _message_of(exc: BaseException) -> str:
    if isinstance(exc, RelicError):
        text = exc.message
        if isinstance(exc, TransportError) and exc.body:
            text = f"{text} {exc.body}"
        return text.lower()
    return str(exc).lower()


def _has_marker(message: str, markers: tuple[str, ...]) -> bool:
    return any(marker in message for marker in markers)


def is_network_exception(exc: BaseException) -> bool:
    """Check whether an exception is a connectivity-level failure."""
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    if isinstance(exc, (ConnectionError, TimeoutError, socket.gaierror)):
        return True
    if isinstance(exc, TransportError) and exc.status_code is None:
        return _has_marker(_message_of(exc), NETWORK_MARKERS) or isinstance(
            exc.cause, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)
        )
    return False


def classify_exception(exc: BaseException) -> CallError:
    """Classify an exception raised by one call attempt.

    Retryable: HTTP 429/502/503/504, connection reset/refused, DNS and other
    network failures, timeouts, and "loading/starting/sleeping/queueing"
    service messages. Everything else, including other 4xx and 500, is fatal.

    Args:
        exc: The exception raised by the transport or normalizer.

    Returns:
        A CallError carrying the classification.
    """
    if isinstance(exc, CallError):
        return exc

    message = _message_of(exc)
    status = exc.status_code if isinstance(exc, TransportError) else None

    if isinstance(exc, NormalizationError):
        return CallError(
            exc.message,
            retryable=False,
            code=exc.code,
            category=JobErrorType.PROCESSING_FAILED,
            cause=exc,
        )

    if status == RATE_LIMIT_STATUS or _has_marker(message, RATE_LIMIT_MARKERS):
        return CallError(
            str(exc) or "Rate limited",
            retryable=True,
            rate_limited=True,
            status_code=status,
            code=ErrorCode.CALL_RATE_LIMITED,
            category=JobErrorType.RATE_LIMITED,
            cause=exc if isinstance(exc, Exception) else None,
        )

    if status in RETRYABLE_STATUS_CODES:
        return CallError(
            str(exc) or f"HTTP {status}",
            retryable=True,
            status_code=status,
            code=ErrorCode.CALL_SERVICE_UNAVAILABLE,
            category=JobErrorType.PROCESSING_FAILED,
            cause=exc if isinstance(exc, Exception) else None,
        )

    if is_network_exception(exc):
        return CallError(
            str(exc) or "Network failure",
            retryable=True,
            code=ErrorCode.CALL_NETWORK,
            category=JobErrorType.NETWORK,
            cause=exc if isinstance(exc, Exception) else None,
        )

    server_side = status is None or 500 <= status < 600
    if server_side and _has_marker(message, UNAVAILABLE_MARKERS):
        # A 500 whose body says the space is still starting is a cold start
        return CallError(
            str(exc),
            retryable=True,
            status_code=status,
            code=ErrorCode.CALL_SERVICE_UNAVAILABLE,
            category=JobErrorType.PROCESSING_FAILED,
            cause=exc if isinstance(exc, Exception) else None,
        )

    return CallError(
        str(exc) or exc.__class__.__name__,
        retryable=False,
        status_code=status,
        code=ErrorCode.CALL_FATAL,
        category=JobErrorType.PROCESSING_FAILED,
        cause=exc if isinstance(exc, Exception) else None,
    )
