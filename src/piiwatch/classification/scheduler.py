"""Classification scheduler: one job per cadence epoch per slot.

The scheduler owns a single *job slot* and moves it through::

    IDLE ──tick──▶ REQUESTING ──created──▶ SUBMITTED ──completion──▶ IDLE
                        │
                        └──rejected / retries exhausted──▶ IDLE

Each tick derives the current cadence epoch (``2024-01-01`` for a daily
cadence) and submits at most one job for it. The job's idempotency token is
derived from the epoch, so however many times a submission is retried, by
this process or after a restart, the classification service creates one
job for it.

A tick that lands while the previous job is still running is resolved by
the overlap policy:

=============  ===========================================================
SKIP           drop the tick (counted in ``ticks_skipped_total``)
DEFER          remember the newest missed epoch, submit it on completion
INDEPENDENT    submit the new job alongside the running one
=============  ===========================================================

Failure handling:
    - Transient submission errors are retried with backoff using the SAME
      token; if the budget runs out the slot returns to IDLE and the next
      tick retries that token again.
    - ``JobRejectedError`` (invalid scope) is fatal: logged and re-raised to
      the operator, never retried.

Ticks are expected to be serialized (one backend thread).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from piiwatch.classification.service import ClassificationService
from piiwatch.core.errors import JobRejectedError, RetryExhaustedError
from piiwatch.core.logging import get_logger
from piiwatch.core.models import (
    Cadence,
    ClassificationJob,
    InvalidTransitionError,
    JobScope,
    RunMode,
)
from piiwatch.core.timestamps import utc_now
from piiwatch.execution.retry import ExponentialBackoff, RetryContext
from piiwatch.observability.metrics import MetricsRegistry, get_registry

logger = get_logger(__name__)


class SlotState(str, Enum):
    """State of the scheduler's job slot."""

    IDLE = "idle"
    REQUESTING = "requesting"
    SUBMITTED = "submitted"


SLOT_TRANSITIONS: dict[SlotState, frozenset[SlotState]] = {
    SlotState.IDLE: frozenset({SlotState.REQUESTING}),
    SlotState.REQUESTING: frozenset({SlotState.SUBMITTED, SlotState.IDLE}),
    SlotState.SUBMITTED: frozenset({SlotState.IDLE}),
}


class OverlapPolicy(str, Enum):
    """What a tick does while the slot's job is still running."""

    SKIP = "skip"
    DEFER = "defer"
    INDEPENDENT = "independent"


class TickOutcome(str, Enum):
    SUBMITTED = "submitted"
    NOT_DUE = "not_due"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass(frozen=True)
class TickResult:
    outcome: TickOutcome
    epoch: str
    token: str | None = None
    job_id: str | None = None


@dataclass(frozen=True)
class _PendingSubmission:
    token: str
    mode: RunMode


class ClassificationScheduler:
    """Submits one classification job per cadence epoch.

    Args:
        service: Where jobs are created
        name: Job name (stage scoped, e.g. ``Function-Logs-PII-dev``)
        scope: Storage location the job scans
        cadence: Epoch length
        initial_run: First job after activation backfills every object
        overlap: Policy for ticks landing on a running job
        retry: Backoff for job submission
        sleep: Async backoff sleep
        clock: UTC clock used when ``tick`` gets no explicit time
    """

    def __init__(
        self,
        service: ClassificationService,
        *,
        name: str,
        scope: JobScope,
        cadence: Cadence = Cadence.DAILY,
        initial_run: bool = False,
        overlap: OverlapPolicy | str = OverlapPolicy.SKIP,
        retry: ExponentialBackoff | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
        registry: MetricsRegistry | None = None,
    ):
        self.service = service
        self.name = name
        self.scope = scope
        self.cadence = Cadence(cadence)
        self.initial_run = initial_run
        self.overlap = OverlapPolicy(overlap)
        self.retry = retry or ExponentialBackoff(max_attempts=3)
        self._sleep = sleep
        self._clock = clock
        self._registry = registry or get_registry()

        self._state = SlotState.IDLE
        self._active: dict[str, str] = {}
        self._last_epoch: str | None = None
        self._deferred: str | None = None
        self._pending: _PendingSubmission | None = None
        self._activated = False

    # ── State ────────────────────────────────────────────────────────────

    @property
    def state(self) -> SlotState:
        return self._state

    @property
    def active_jobs(self) -> dict[str, str]:
        """Running job ids mapped to their tokens."""
        return dict(self._active)

    @property
    def deferred_token(self) -> str | None:
        return self._deferred

    @property
    def pending_retry_token(self) -> str | None:
        """Token whose submission exhausted its retries, resubmitted next tick."""
        return self._pending.token if self._pending else None

    def _transition(self, target: SlotState) -> None:
        if target not in SLOT_TRANSITIONS[self._state]:
            raise InvalidTransitionError(self._state.value, target.value, "SlotState")
        logger.debug("slot_transition", job_name=self.name, previous=self._state.value, state=target.value)
        self._state = target

    def token_for(self, epoch: str) -> str:
        """Idempotency token of the job due in ``epoch``."""
        return f"{self.name}:{epoch}"

    def _next_mode(self) -> RunMode:
        if self.initial_run and not self._activated and self.service.latest_job(self.name) is None:
            return RunMode.INITIAL_BACKFILL
        return RunMode.SCHEDULED_INCREMENTAL

    # ── Ticks ────────────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> TickResult:
        """Evaluate the schedule at ``now`` and submit if a job is due."""
        epoch = self.cadence.epoch_key(now or self._clock())

        if self._pending is not None and self._state == SlotState.IDLE:
            return await self._submit_for_tick(self._pending.token, epoch)

        if epoch == self._last_epoch:
            return TickResult(TickOutcome.NOT_DUE, epoch)
        self._last_epoch = epoch
        token = self.token_for(epoch)

        if self._state != SlotState.IDLE and not (
            self._state == SlotState.SUBMITTED and self.overlap == OverlapPolicy.INDEPENDENT
        ):
            if self.overlap == OverlapPolicy.DEFER and self._state == SlotState.SUBMITTED:
                self._deferred = token
                logger.info("tick_deferred", job_name=self.name, token=token, active=list(self._active))
                return TickResult(TickOutcome.DEFERRED, epoch, token=token)
            self._registry.counter("ticks_skipped_total").inc()
            logger.info("tick_skipped", job_name=self.name, token=token, state=self._state.value)
            return TickResult(TickOutcome.SKIPPED, epoch, token=token)

        return await self._submit_for_tick(token, epoch)

    async def _submit_for_tick(self, token: str, epoch: str) -> TickResult:
        try:
            job_id = await self.submit_tick(token)
        except RetryExhaustedError:
            return TickResult(TickOutcome.FAILED, epoch, token=token)
        return TickResult(TickOutcome.SUBMITTED, epoch, token=token, job_id=job_id)

    async def submit_tick(self, token: str, mode: RunMode | None = None) -> str:
        """Create the job for ``token`` and move the slot to SUBMITTED.

        Submitting a token whose job is already active returns that job's id
        without touching the slot.

        Raises:
            JobRejectedError: The service rejected the job (fatal)
            RetryExhaustedError: Transient failures used up the retry budget
            InvalidTransitionError: The slot is busy and the overlap policy forbids a second job
        """
        if token in self._active.values():
            return await self._create(token, mode or RunMode.SCHEDULED_INCREMENTAL)

        if self._pending is not None and self._pending.token == token:
            mode = mode or self._pending.mode
        mode = mode or self._next_mode()

        alongside = self._state == SlotState.SUBMITTED and self.overlap == OverlapPolicy.INDEPENDENT
        if not alongside:
            self._transition(SlotState.REQUESTING)

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "job_submission_retry", job_name=self.name, token=token, attempt=attempt, delay=delay, error=str(error)
            )

        ctx = RetryContext(self.retry, on_retry=on_retry, async_sleep=self._sleep)
        try:
            job_id = await ctx.run_async(self._create, token, mode)
        except Exception as exc:
            if not alongside:
                self._transition(SlotState.IDLE)
            if isinstance(exc, RetryExhaustedError):
                self._pending = _PendingSubmission(token, mode)
                self._registry.counter("job_submission_exhausted_total").inc()
                logger.error(
                    "job_submission_exhausted",
                    job_name=self.name,
                    token=token,
                    attempts=exc.attempts,
                    error=str(exc.last_error),
                )
            elif isinstance(exc, JobRejectedError):
                self._pending = None
                logger.error("job_rejected", job_name=self.name, token=token, error=str(exc))
            raise

        if self._pending is not None and self._pending.token == token:
            self._pending = None
        self._active[job_id] = token
        self._activated = True
        if not alongside:
            self._transition(SlotState.SUBMITTED)
        self._registry.counter("jobs_submitted_total").inc()
        logger.info(
            "job_submitted", job_name=self.name, job_id=job_id, token=token, mode=mode.value, attempts=ctx.attempts
        )
        return job_id

    async def _create(self, token: str, mode: RunMode) -> str:
        return self.service.create_job(token, self.scope, self.cadence, mode, name=self.name)

    # ── Completion ───────────────────────────────────────────────────────

    async def on_job_completed(self, job: ClassificationJob | str) -> None:
        """Release the slot when its job finishes; submit a deferred tick."""
        job_id = job if isinstance(job, str) else job.job_id
        token = self._active.pop(job_id, None)
        if token is None:
            return
        if not self._active and self._state == SlotState.SUBMITTED:
            self._transition(SlotState.IDLE)
        logger.info("job_slot_released", job_name=self.name, job_id=job_id, token=token)

        if self._deferred is not None and self._state == SlotState.IDLE:
            deferred, self._deferred = self._deferred, None
            try:
                await self.submit_tick(deferred)
            except RetryExhaustedError:
                # Already logged; the next tick resubmits the same token.
                return


__all__ = [
    "SlotState",
    "SLOT_TRANSITIONS",
    "OverlapPolicy",
    "TickOutcome",
    "TickResult",
    "ClassificationScheduler",
]
