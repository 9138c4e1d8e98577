"""Execution helpers: bounded retry with exponential backoff."""

from piiwatch.execution.retry import ExponentialBackoff, RetryContext, RetryStrategy

__all__ = ["ExponentialBackoff", "RetryContext", "RetryStrategy"]
