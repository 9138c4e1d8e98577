"""Bounded retry with exponential backoff.

Every blocking outbound call in the pipeline (object writes, job
submission, webhook dispatch) goes through a :class:`RetryContext`. Only
errors for which :func:`~piiwatch.core.errors.is_retryable` holds are
retried; anything else propagates on the first failure. When the budget is
spent the context raises :class:`~piiwatch.core.errors.RetryExhaustedError`
carrying the last error, and the owning component decides what exhaustion
means (hold the batch, return the slot to idle, record a delivery failure).

Example:
    >>> strategy = ExponentialBackoff(max_attempts=5, base_delay=0.5, jitter=False)
    >>> [strategy.next_delay(n) for n in range(4)]
    [0.5, 1.0, 2.0, 4.0]
    >>> ctx = RetryContext(strategy, sleep=lambda _: None)
    >>> ctx.run(lambda: "ok")
    'ok'
"""

from __future__ import annotations

import asyncio
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from piiwatch.core.errors import RetryExhaustedError, is_retryable
from piiwatch.core.timestamps import utc_now

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay before the retry following failed attempt ``attempt``.

        Args:
            attempt: Zero-based index of the failed attempt (0 = first call)
        """
        ...

    @abstractmethod
    def should_retry(self, attempts_made: int, error: Exception | None = None) -> bool:
        """Determine whether another attempt is allowed.

        Args:
            attempts_made: Number of attempts already made
            error: The exception the last attempt raised
        """
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

    Attributes:
        max_attempts: Total attempts allowed, first call included
        base_delay: Delay after the first failure in seconds
        max_delay: Delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness so concurrent retries spread out
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempts_made: int, error: Exception | None = None) -> bool:
        if attempts_made >= self.max_attempts:
            return False
        return error is None or is_retryable(error)


@dataclass
class RetryContext:
    """Retry state for one logical operation.

    ``sleep`` and ``async_sleep`` are injectable so callers (and tests) can
    control time. ``on_retry(attempt, error, delay)`` is called before each
    backoff sleep.
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], None] = time.sleep
    async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    errors: list[tuple[int, Exception, datetime]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def _record(self, error: Exception) -> float | None:
        """Record a failure; return the backoff delay, or None to stop."""
        self.last_error = error
        self.errors.append((self.attempt, error, utc_now()))
        if not is_retryable(error):
            return None
        if not self.strategy.should_retry(self.attempt, error):
            raise RetryExhaustedError(
                f"Gave up after {self.attempt} attempts: {error}",
                attempts=self.attempt,
                last_error=error,
            ) from error
        delay = self.strategy.next_delay(self.attempt - 1)
        if self.on_retry:
            self.on_retry(self.attempt, error, delay)
        return delay

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute ``func`` with retry.

        Raises:
            RetryExhaustedError: Every allowed attempt failed with a retryable error
            Exception: The first non-retryable error, unchanged
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                delay = self._record(e)
                if delay is None:
                    raise
            self.sleep(delay)

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute the coroutine function ``func`` with retry."""
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                delay = self._record(e)
                if delay is None:
                    raise
            await self.async_sleep(delay)


__all__ = ["RetryStrategy", "ExponentialBackoff", "RetryContext"]
