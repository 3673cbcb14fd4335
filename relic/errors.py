"""Unified exception hierarchy for relic.

All relic-specific exceptions inherit from RelicError, so callers can handle
orchestration failures consistently regardless of which layer raised them.

Exception Hierarchy:
    RelicError (base)
    ├── ConfigurationError - Unknown methods, bad operation types, invalid config
    ├── TransportError - Raw HTTP/service failure from one network call
    ├── CallError - A classified call failure (retryable or fatal)
    │   └── CallFailedError - Executor gave up on a method
    ├── NormalizationError - Response could not be resolved to an artifact
    ├── ChainError - Every method in a fallback plan failed
    ├── EncodingError - Input media could not be encoded for upload
    └── JobError - Job-level failure using the user-facing taxonomy
        ├── JobAlreadyActiveError - Entity already has a running job
        └── JobCancelledError - Job was cancelled by the caller

Usage:
    from relic.errors import ChainError, JobError

    try:
        result = await chain.run(plan, encoded)
    except ChainError as e:
        logger.error("Chain failed after %d attempts: %s", e.total_attempts, e)
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from relic.reliability.models import CallAttempt


class ErrorCode(str, Enum):
    """Machine-readable error codes included in ``to_dict()`` output."""

    # Configuration errors (CFG_*)
    CFG_INVALID = "CFG_INVALID"
    CFG_UNKNOWN_METHOD = "CFG_UNKNOWN_METHOD"
    CFG_UNKNOWN_OPERATION = "CFG_UNKNOWN_OPERATION"

    # Call errors (CALL_*)
    CALL_HTTP = "CALL_HTTP"
    CALL_NETWORK = "CALL_NETWORK"
    CALL_RATE_LIMITED = "CALL_RATE_LIMITED"
    CALL_SERVICE_UNAVAILABLE = "CALL_SERVICE_UNAVAILABLE"
    CALL_FATAL = "CALL_FATAL"
    CALL_EXHAUSTED = "CALL_EXHAUSTED"

    # Normalization errors (NRM_*)
    NRM_UNRESOLVABLE = "NRM_UNRESOLVABLE"
    NRM_FETCH_FAILED = "NRM_FETCH_FAILED"
    NRM_INVALID_CONTENT = "NRM_INVALID_CONTENT"

    # Chain / job errors
    CHAIN_EXHAUSTED = "CHAIN_EXHAUSTED"
    JOB_ACTIVE = "JOB_ACTIVE"
    JOB_CANCELLED = "JOB_CANCELLED"
    JOB_FAILED = "JOB_FAILED"
    ENC_FAILED = "ENC_FAILED"

    UNKNOWN = "UNKNOWN"


class JobErrorType(str, Enum):
    """Job-level failure taxonomy surfaced to the UI."""

    UPLOAD_FAILED = "upload-failed"
    NETWORK = "network"
    RATE_LIMITED = "rate-limited"
    PROCESSING_FAILED = "processing-failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class RelicError(Exception):
    """Base exception for all relic errors.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code from ErrorCode enum.
        details: Optional additional context about the error.
        cause: Optional original exception that caused this error.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause

        super().__init__(self.message)

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        parts = [f"{self.__class__.__name__}({self.message!r}"]
        if self.code != self.default_code:
            parts.append(f", code={self.code.value!r}")
        if self.details:
            parts.append(f", details={self.details!r}")
        if self.cause:
            parts.append(f", cause={self.cause!r}")
        parts.append(")")
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for UI or log payloads.

        Returns:
            Dictionary with error, code, and detail fields.
        """
        result: dict[str, Any] = {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "detail": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(RelicError):
    """Raised for invalid configuration or unknown method/operation names."""

    default_message = "Configuration error"
    default_code = ErrorCode.CFG_INVALID


class TransportError(RelicError):
    """Raised by a transport when a single network call fails.

    Carries the HTTP status when the service answered at all; a ``None``
    status means the failure happened below HTTP (DNS, refused, reset).
    """

    default_message = "Service call failed"
    default_code = ErrorCode.CALL_HTTP

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        url: str | None = None,
        body: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        if url:
            details["url"] = url
        super().__init__(message, code=code, details=details, cause=cause)
        self.status_code = status_code
        self.url = url
        self.body = body


class CallError(RelicError):
    """A classified failure of one call attempt.

    Attributes:
        retryable: Whether the executor may re-attempt the call.
        rate_limited: Whether the failure was an explicit throttling signal.
        status_code: HTTP status, if any.
        category: Job-level category this failure maps to.
    """

    default_message = "Call failed"
    default_code = ErrorCode.CALL_FATAL

    def __init__(
        self,
        message: str | None = None,
        *,
        retryable: bool = False,
        rate_limited: bool = False,
        status_code: int | None = None,
        category: JobErrorType = JobErrorType.PROCESSING_FAILED,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        details["retryable"] = retryable
        super().__init__(message, code=code, details=details, cause=cause)
        self.retryable = retryable
        self.rate_limited = rate_limited
        self.status_code = status_code
        self.category = category


class CallFailedError(CallError):
    """Raised by the executor when a method fails fatally or runs out of attempts."""

    default_message = "Method call failed"
    default_code = ErrorCode.CALL_EXHAUSTED

    def __init__(
        self,
        method: str,
        last_error: CallError,
        attempts: list[CallAttempt],
        *,
        exhausted: bool,
    ) -> None:
        verb = "exhausted" if exhausted else "failed fatally"
        super().__init__(
            f"{method} {verb} after {len(attempts)} attempt(s): {last_error.message}",
            retryable=False,
            rate_limited=last_error.rate_limited,
            status_code=last_error.status_code,
            category=last_error.category,
            code=ErrorCode.CALL_EXHAUSTED if exhausted else last_error.code,
            details={"method": method, "attempts": len(attempts)},
            cause=last_error,
        )
        self.method = method
        self.last_error = last_error
        self.attempts = attempts
        self.exhausted = exhausted


class NormalizationError(RelicError):
    """Raised when a service response cannot be resolved to an artifact.

    Normalization failures are fatal for the method attempt that produced them.
    """

    default_message = "Could not extract an artifact from the service response"
    default_code = ErrorCode.NRM_UNRESOLVABLE


class ChainError(RelicError):
    """Raised when every method in a fallback plan has failed.

    Attributes:
        last_error: The last error observed in the chain.
        attempts: Full attempt history across every method.
        methods_attempted: Method names in the order they were tried.
    """

    default_message = "All methods in the fallback plan failed"
    default_code = ErrorCode.CHAIN_EXHAUSTED

    def __init__(
        self,
        last_error: RelicError,
        attempts: list[CallAttempt],
        methods_attempted: list[str],
    ) -> None:
        super().__init__(
            last_error.message,
            details={
                "methods_attempted": list(methods_attempted),
                "total_attempts": len(attempts),
            },
            cause=last_error,
        )
        self.last_error = last_error
        self.attempts = attempts
        self.methods_attempted = methods_attempted

    @property
    def total_attempts(self) -> int:
        """Total call attempts across all methods."""
        return len(self.attempts)


class EncodingError(RelicError):
    """Raised when input media cannot be converted to the transferable encoding."""

    default_message = "Failed to encode input media"
    default_code = ErrorCode.ENC_FAILED


class JobError(RelicError):
    """Job-level error carrying the user-facing failure category.

    Attributes:
        error_type: Taxonomy category (upload-failed, network, ...).
        total_attempts: Number of call attempts made across all methods.
        methods_attempted: Method chain actually attempted.
    """

    default_message = "Job failed"
    default_code = ErrorCode.JOB_FAILED

    def __init__(
        self,
        message: str | None = None,
        *,
        error_type: JobErrorType = JobErrorType.UNKNOWN,
        total_attempts: int = 0,
        methods_attempted: list[str] | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        details["error_type"] = error_type.value
        super().__init__(message, code=code, details=details, cause=cause)
        self.error_type = error_type
        self.total_attempts = total_attempts
        self.methods_attempted = methods_attempted or []


class JobAlreadyActiveError(JobError):
    """Raised when starting a job for an entity that already has one running."""

    default_message = "A job is already active for this entity"
    default_code = ErrorCode.JOB_ACTIVE

    def __init__(self, entity_id: str) -> None:
        super().__init__(
            f"A job is already active for entity {entity_id}",
            details={"entity_id": entity_id},
        )
        self.entity_id = entity_id


class JobCancelledError(JobError):
    """Raised at a cancellation checkpoint once the job's token is set."""

    default_message = "Job was cancelled"
    default_code = ErrorCode.JOB_CANCELLED

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, error_type=JobErrorType.CANCELLED)


# Factory functions for common errors


def unknown_method(name: str, known: list[str]) -> ConfigurationError:
    """Create an error for a plan step naming an unconfigured method."""
    return ConfigurationError(
        f"Unknown inference method: {name}",
        code=ErrorCode.CFG_UNKNOWN_METHOD,
        details={"method": name, "known_methods": sorted(known)},
    )


def unknown_operation(op_type: str) -> ConfigurationError:
    """Create an error for an unsupported operation type."""
    return ConfigurationError(
        f"Unknown operation type: {op_type}",
        code=ErrorCode.CFG_UNKNOWN_OPERATION,
        details={"op_type": op_type},
    )
