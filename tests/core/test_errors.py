"""Tests for the piiwatch error hierarchy."""

import builtins

from piiwatch.core.errors import (
    BufferSaturated,
    ConfigError,
    DeliveryAttemptError,
    ErrorCategory,
    InvalidConfigError,
    JobRejectedError,
    MissingConfigError,
    NetworkError,
    PiiWatchError,
    RenderError,
    RetryExhaustedError,
    StorageWriteError,
    SubmissionError,
    TimeoutError,
    TransientError,
    categorize_error,
    is_retryable,
)


class TestRetrySemantics:
    """Each error class knows whether it may be retried."""

    def test_transient_errors_are_retryable(self):
        """I/O failures are retried."""
        for cls in (TransientError, NetworkError, TimeoutError, StorageWriteError, SubmissionError):
            assert cls("boom").retryable is True

    def test_delivery_attempt_error_is_retryable_and_carries_status(self):
        """A non-2xx response is transient and remembers its status."""
        err = DeliveryAttemptError("HTTP 503", status_code=503)
        assert err.retryable is True
        assert err.status_code == 503
        assert err.context.http_status == 503
        assert err.category == ErrorCategory.DELIVERY

    def test_permanent_errors_are_not_retryable(self):
        """Config, render, rejection and saturation are never retried."""
        assert ConfigError("bad").retryable is False
        assert RenderError("missing jobId").retryable is False
        assert JobRejectedError("bad scope").retryable is False
        assert BufferSaturated(capacity=10).retryable is False

    def test_retryable_override(self):
        """A caller may override the class default."""
        assert TransientError("x", retryable=False).retryable is False

    def test_is_retryable_for_foreign_exceptions(self):
        """Stdlib connection/timeouts count as transient; everything else does not."""
        assert is_retryable(ConnectionResetError()) is True
        assert is_retryable(builtins.TimeoutError()) is True
        assert is_retryable(ValueError("nope")) is False
        assert is_retryable(StorageWriteError("throttled")) is True


class TestErrorContext:
    """Context travels with the error for logging."""

    def test_with_context_sets_known_and_extra_fields(self):
        err = StorageWriteError("throttled").with_context(component="sink", object_key="fn-logs-1", attempt=3)
        data = err.to_dict()
        assert data["error_type"] == "StorageWriteError"
        assert data["category"] == "STORAGE"
        assert data["context"] == {"component": "sink", "object_key": "fn-logs-1", "attempt": 3}

    def test_cause_is_chained(self):
        cause = OSError("disk full")
        err = StorageWriteError("write failed", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "disk full"

    def test_retry_exhausted_wraps_last_error(self):
        last = NetworkError("reset")
        err = RetryExhaustedError("gave up", attempts=5, last_error=last)
        assert err.attempts == 5
        assert err.last_error is last
        assert err.retryable is False


class TestConfigErrors:
    def test_missing_config_names_key(self):
        err = MissingConfigError("stage")
        assert err.key == "stage"
        assert "stage" in str(err)
        assert isinstance(err, ConfigError)

    def test_invalid_config_keeps_value(self):
        err = InvalidConfigError("classification_cadence", "fortnightly")
        assert err.value == "fortnightly"
        assert "fortnightly" in str(err)


class TestCategorize:
    def test_categories(self):
        assert categorize_error(RenderError("x")) == ErrorCategory.DATA_SHAPE
        assert categorize_error(BufferSaturated()) == ErrorCategory.CAPACITY
        assert categorize_error(ConnectionError()) == ErrorCategory.NETWORK
        assert categorize_error(KeyError("k")) == ErrorCategory.INTERNAL

    def test_all_errors_share_base(self):
        assert issubclass(JobRejectedError, PiiWatchError)
        assert issubclass(TimeoutError, TransientError)
