"""
Structured error types for piiwatch.

Every failure in the pipeline falls into one of a small number of classes,
and the class decides what happens next: transient I/O failures are retried
with bounded backoff, configuration errors halt startup, data-shape errors
are logged and skipped, and saturation is surfaced to the caller.

Manifesto:
    - **Typed hierarchy:** One base class, one subclass per failure kind
    - **Explicit retry semantics:** Each error knows whether it is retryable
    - **Rich context:** Errors carry stage, component and object/job ids
    - **Error chaining:** The original exception is preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       PiiWatchError                              │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  TransientError        ConfigError         BufferSaturated       │
        │  (retryable=True)      (CONFIG)            (CAPACITY)            │
        │       │                    │                                     │
        │  NetworkError          MissingConfigError  RenderError           │
        │  TimeoutError          InvalidConfigError  (DATA_SHAPE)          │
        │  StorageWriteError                                               │
        │  SubmissionError       JobRejectedError    RetryExhaustedError   │
        │  DeliveryAttemptError  (CLASSIFICATION)    (wraps last error)    │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> error = StorageWriteError("throttled", retry_after=2)
    >>> error.retryable
    True
    >>> RenderError("missing jobId").retryable
    False

Tags:
    error-handling, exception-hierarchy, retry-logic, piiwatch
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and alert routing."""

    NETWORK = "NETWORK"
    STORAGE = "STORAGE"
    CLASSIFICATION = "CLASSIFICATION"
    DELIVERY = "DELIVERY"
    CAPACITY = "CAPACITY"
    DATA_SHAPE = "DATA_SHAPE"
    CONFIG = "CONFIG"
    AUTH = "AUTH"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error for logging.

    Attributes:
        stage: Deployment stage the error occurred in
        component: Pipeline component (buffer, sink, scheduler, router)
        object_key: Storage object involved, if any
        job_id: Classification job involved, if any
        url: Endpoint being called (never includes credentials)
        http_status: HTTP status code if applicable
        metadata: Additional key-value pairs
    """

    stage: str | None = None
    component: str | None = None
    object_key: str | None = None
    job_id: str | None = None
    url: str | None = None
    http_status: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["stage", "component", "object_key", "job_id", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class PiiWatchError(Exception):
    """
    Base exception for all piiwatch errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers may
    override either per instance.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> PiiWatchError:
        """
        Add context to this error (fluent API).

        Usage:
            raise StorageWriteError("throttled").with_context(
                component="sink", object_key="fn-logs-1704067200000"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(PiiWatchError):
    """
    Temporary error that may succeed on retry.

    Use when the same call, made again after a delay, has a reasonable
    chance of succeeding: throttling, connection resets, timeouts, 5xx.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connection-level failure talking to a remote endpoint."""


class TimeoutError(TransientError):
    """Outbound call exceeded its timeout."""


class StorageWriteError(TransientError):
    """Writing a storage object failed (throttling, transient I/O)."""

    default_category = ErrorCategory.STORAGE


class SubmissionError(TransientError):
    """Classification job submission failed on the control plane."""

    default_category = ErrorCategory.CLASSIFICATION


class DeliveryAttemptError(TransientError):
    """A webhook delivery attempt got a non-2xx response."""

    default_category = ErrorCategory.DELIVERY

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.context.http_status = status_code


# =============================================================================
# NON-RETRYABLE ERRORS
# =============================================================================


class ConfigError(PiiWatchError):
    """
    Configuration error.

    Never retryable. Raised at startup; the process must not start.
    """

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class MissingConfigError(ConfigError):
    """Required configuration value is missing."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(message or f"Missing required configuration: {key}")
        self.key = key


class InvalidConfigError(ConfigError):
    """Configuration value is present but invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")
        self.key = key
        self.value = value


class BufferSaturated(PiiWatchError):
    """The log buffer is full and the append could not be accepted in time."""

    default_category = ErrorCategory.CAPACITY
    default_retryable = False

    def __init__(self, message: str = "Log buffer is saturated", *, capacity: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.capacity = capacity


class RenderError(PiiWatchError):
    """
    A finding event could not be rendered into an alert payload.

    A data-shape problem: retrying cannot fix it.
    """

    default_category = ErrorCategory.DATA_SHAPE
    default_retryable = False

    def __init__(self, message: str, *, field_path: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field_path = field_path


class JobRejectedError(PiiWatchError):
    """The classification service rejected a job request (invalid scope)."""

    default_category = ErrorCategory.CLASSIFICATION
    default_retryable = False


class RetryExhaustedError(PiiWatchError):
    """All attempts allowed by a retry budget failed."""

    default_retryable = False

    def __init__(self, message: str, *, attempts: int, last_error: Exception | None = None, **kwargs: Any):
        super().__init__(message, cause=last_error, **kwargs)
        self.attempts = attempts
        self.last_error = last_error


# =============================================================================
# HELPERS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Return True when ``error`` should be retried.

    piiwatch errors answer through their ``retryable`` flag; stdlib
    connection and timeout errors count as transient; everything else
    is permanent.
    """
    if isinstance(error, PiiWatchError):
        return error.retryable
    return isinstance(error, (ConnectionError, builtins.TimeoutError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Return the category of ``error``, INTERNAL for foreign exceptions."""
    if isinstance(error, PiiWatchError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "PiiWatchError",
    "TransientError",
    "NetworkError",
    "TimeoutError",
    "StorageWriteError",
    "SubmissionError",
    "DeliveryAttemptError",
    "ConfigError",
    "MissingConfigError",
    "InvalidConfigError",
    "BufferSaturated",
    "RenderError",
    "JobRejectedError",
    "RetryExhaustedError",
    "is_retryable",
    "categorize_error",
]
