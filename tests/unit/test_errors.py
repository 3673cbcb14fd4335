"""Unit tests for the relic exception hierarchy."""

import pytest

from relic.errors import (
    CallError,
    CallFailedError,
    ChainError,
    ConfigurationError,
    ErrorCode,
    JobAlreadyActiveError,
    JobCancelledError,
    JobError,
    JobErrorType,
    RelicError,
    TransportError,
    unknown_method,
    unknown_operation,
)
from relic.reliability.models import AttemptOutcome, CallAttempt


def _attempt(index, outcome=AttemptOutcome.RETRYABLE_FAILURE):
    return CallAttempt(
        method="trellis", attempt_index=index, started_at=0.0, outcome=outcome, latency=0.1
    )


class TestErrorCode:
    """Tests for ErrorCode enum."""

    def test_error_code_values_are_unique(self):
        """All error code values are unique."""
        values = [code.value for code in ErrorCode]
        assert len(values) == len(set(values))


class TestRelicError:
    """Tests for RelicError base class."""

    def test_default_message(self):
        """Has sensible default message."""
        error = RelicError()
        assert str(error) == "An error occurred"
        assert error.code == ErrorCode.UNKNOWN

    def test_cause_is_chained(self):
        """The original exception becomes __cause__."""
        cause = ValueError("boom")
        error = RelicError("wrapped", cause=cause)
        assert error.__cause__ is cause

    def test_to_dict(self):
        """to_dict carries class, code, message and details."""
        error = ConfigurationError("bad", details={"key": "value"})
        assert error.to_dict() == {
            "error": "ConfigurationError",
            "code": "CFG_INVALID",
            "detail": "bad",
            "details": {"key": "value"},
        }

    @pytest.mark.parametrize(
        "cls",
        [ConfigurationError, TransportError, CallError, ChainError, JobError],
    )
    def test_hierarchy(self, cls):
        """Every relic error is a RelicError."""
        assert issubclass(cls, RelicError)


class TestTransportError:
    """Tests for TransportError."""

    def test_status_in_details(self):
        """HTTP status and URL are recorded."""
        error = TransportError("HTTP 503", status_code=503, url="https://x.example")
        assert error.status_code == 503
        assert error.details == {"status_code": 503, "url": "https://x.example"}


class TestCallFailedError:
    """Tests for CallFailedError."""

    def test_exhausted(self):
        """Exhaustion keeps the last error's classification."""
        last = CallError("rate limited", retryable=True, rate_limited=True, status_code=429)
        attempts = [_attempt(0), _attempt(1), _attempt(2)]
        error = CallFailedError("trellis", last, attempts, exhausted=True)

        assert error.exhausted
        assert not error.retryable
        assert error.rate_limited
        assert error.code == ErrorCode.CALL_EXHAUSTED
        assert "3 attempt(s)" in error.message
        assert error.last_error is last

    def test_fatal(self):
        """A fatal failure keeps the last error's code."""
        last = CallError("HTTP 400", status_code=400, code=ErrorCode.CALL_FATAL)
        error = CallFailedError("trellis", last, [_attempt(0)], exhausted=False)
        assert not error.exhausted
        assert error.code == ErrorCode.CALL_FATAL
        assert "failed fatally" in error.message


class TestChainError:
    """Tests for ChainError."""

    def test_total_attempts(self):
        """Counts attempts across every method."""
        last = CallError("HTTP 400")
        error = ChainError(last, [_attempt(0), _attempt(1)], ["A", "B"])
        assert error.total_attempts == 2
        assert error.details["methods_attempted"] == ["A", "B"]
        assert error.message == "HTTP 400"


class TestJobErrors:
    """Tests for job-level errors."""

    def test_error_type_in_details(self):
        """The taxonomy category is part of the payload."""
        error = JobError("offline", error_type=JobErrorType.NETWORK)
        assert error.to_dict()["details"]["error_type"] == "network"

    def test_already_active(self):
        """Carries the entity id."""
        error = JobAlreadyActiveError("art-42")
        assert error.entity_id == "art-42"
        assert error.code == ErrorCode.JOB_ACTIVE

    def test_cancelled(self):
        """Cancellation uses the cancelled category."""
        assert JobCancelledError().error_type == JobErrorType.CANCELLED


class TestFactories:
    """Tests for error factory functions."""

    def test_unknown_method(self):
        error = unknown_method("missing", ["b", "a"])
        assert error.code == ErrorCode.CFG_UNKNOWN_METHOD
        assert error.details["known_methods"] == ["a", "b"]

    def test_unknown_operation(self):
        error = unknown_operation("sculpt")
        assert error.code == ErrorCode.CFG_UNKNOWN_OPERATION
        assert "sculpt" in error.message
