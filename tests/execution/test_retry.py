"""Tests for bounded retry with backoff."""

import pytest

from piiwatch.core.errors import JobRejectedError, NetworkError, RetryExhaustedError
from piiwatch.execution.retry import ExponentialBackoff, RetryContext


class Flaky:
    """Fails ``failures`` times with ``error``, then returns ``result``."""

    def __init__(self, failures, error=None, result="ok"):
        self.failures = failures
        self.error = error or NetworkError("connection reset")
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestExponentialBackoff:
    def test_delays_grow_and_cap(self):
        strategy = ExponentialBackoff(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [strategy.next_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=4.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 3.0 <= strategy.next_delay(0) <= 5.0

    def test_should_retry_respects_budget_and_class(self):
        strategy = ExponentialBackoff(max_attempts=3)
        assert strategy.should_retry(2, NetworkError("x"))
        assert not strategy.should_retry(3, NetworkError("x"))
        assert not strategy.should_retry(1, JobRejectedError("x"))

    def test_budget_must_allow_one_attempt(self):
        with pytest.raises(ValueError):
            ExponentialBackoff(max_attempts=0)


class TestRetryContext:
    """Transient failures below the budget are invisible to the caller."""

    def test_succeeds_after_transient_failures(self, sleep):
        func = Flaky(failures=2)
        ctx = RetryContext(ExponentialBackoff(max_attempts=5, base_delay=0.5, jitter=False), sleep=sleep)
        assert ctx.run(func) == "ok"
        assert func.calls == 3
        assert ctx.attempts == 3
        assert sleep.delays == [0.5, 1.0]

    def test_exhaustion_wraps_last_error(self, sleep):
        error = NetworkError("still down")
        func = Flaky(failures=10, error=error)
        ctx = RetryContext(ExponentialBackoff(max_attempts=3, jitter=False), sleep=sleep)
        with pytest.raises(RetryExhaustedError) as exc_info:
            ctx.run(func)
        assert func.calls == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error is error
        assert len(sleep.delays) == 2

    def test_non_retryable_error_propagates_unchanged(self, sleep):
        func = Flaky(failures=1, error=JobRejectedError("unknown bucket"))
        ctx = RetryContext(ExponentialBackoff(max_attempts=5), sleep=sleep)
        with pytest.raises(JobRejectedError):
            ctx.run(func)
        assert func.calls == 1
        assert sleep.delays == []

    def test_foreign_exception_is_not_retried(self, sleep):
        func = Flaky(failures=1, error=ValueError("bug"))
        with pytest.raises(ValueError):
            RetryContext(ExponentialBackoff(), sleep=sleep).run(func)
        assert func.calls == 1

    def test_on_retry_callback(self, sleep):
        seen = []
        ctx = RetryContext(
            ExponentialBackoff(max_attempts=3, jitter=False),
            on_retry=lambda attempt, error, delay: seen.append((attempt, delay)),
            sleep=sleep,
        )
        ctx.run(Flaky(failures=2))
        assert seen == [(1, 0.5), (2, 1.0)]

    @pytest.mark.asyncio
    async def test_run_async(self, async_sleep):
        func = Flaky(failures=2)

        async def call():
            return func()

        ctx = RetryContext(ExponentialBackoff(max_attempts=3, jitter=False), async_sleep=async_sleep)
        assert await ctx.run_async(call) == "ok"
        assert async_sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_run_async_exhaustion(self, async_sleep):
        async def call():
            raise NetworkError("down")

        ctx = RetryContext(ExponentialBackoff(max_attempts=2, jitter=False), async_sleep=async_sleep)
        with pytest.raises(RetryExhaustedError):
            await ctx.run_async(call)
        assert ctx.attempts == 2
