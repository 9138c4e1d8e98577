"""Batch delivery sink: drains the log buffer into encrypted storage objects.

The sink keeps one open batch. Each :meth:`BatchDeliverySink.poll` pulls
newly buffered records into it and flushes when either trigger fires:

- **bytes**: the encoded (GZIP-compressed) batch reaches the byte threshold
- **window**: the time window since the batch was opened has elapsed

A flush freezes the batch: its object key and encrypted body are fixed at
the first attempt, so every retry writes identical bytes to the same key.
Writes are retried with exponential backoff; if the budget runs out the
batch is *held* (never dropped) and retried on the next window trigger,
and no new records are pulled meanwhile. Only a successful write
acknowledges the batch's last offset to the buffer.

Manifesto:
    - **Atomic objects:** A batch is one object or nothing
    - **At-least-once:** Records leave the buffer only after their object exists
    - **Deterministic keys:** ``<prefix>-<flush epoch millis>``, strictly increasing
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from piiwatch.buffer.log_buffer import LogBuffer
from piiwatch.core.errors import PiiWatchError, RetryExhaustedError
from piiwatch.core.logging import get_logger
from piiwatch.core.models import Batch, StorageObject
from piiwatch.core.timestamps import epoch_millis, utc_now
from piiwatch.execution.retry import ExponentialBackoff, RetryContext
from piiwatch.observability.metrics import MetricsRegistry, get_registry
from piiwatch.sink.codec import BatchCodec
from piiwatch.sink.object_store import ObjectStore

logger = get_logger(__name__)


@dataclass
class PendingFlush:
    """A frozen batch waiting to be written."""

    batch: Batch
    key: str
    body: bytes
    created_at: datetime
    attempts: int = 0
    held_since: float | None = None


class BatchDeliverySink:
    """Drains a :class:`LogBuffer` into an :class:`ObjectStore`.

    Args:
        buffer: Source of records
        store: Destination of flushed batches
        codec: Compresses and encrypts batches
        prefix: Fixed object key prefix
        threshold_bytes: Flush once the encoded batch is at least this large
        window_seconds: Flush once the batch has been open this long
        retry: Backoff for object writes
        clock: Monotonic clock used for the time window
        wall_clock: UTC clock used for object keys
        sleep: Backoff sleep
        read_limit: Records pulled from the buffer per read
    """

    def __init__(
        self,
        buffer: LogBuffer,
        store: ObjectStore,
        codec: BatchCodec,
        *,
        prefix: str = "fn-logs",
        threshold_bytes: int = 100 * 1024,
        window_seconds: float = 60.0,
        retry: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        read_limit: int = 500,
        registry: MetricsRegistry | None = None,
    ):
        if threshold_bytes <= 0 or window_seconds <= 0:
            raise ValueError("threshold_bytes and window_seconds must be positive")
        self.buffer = buffer
        self.store = store
        self.codec = codec
        self.prefix = prefix
        self.threshold_bytes = threshold_bytes
        self.window_seconds = window_seconds
        self.retry = retry or ExponentialBackoff(max_attempts=5)
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self.read_limit = read_limit
        self._registry = registry or get_registry()

        self._batch: Batch | None = None
        self._held: PendingFlush | None = None
        self._last_key_millis = 0
        # Raw size at which the encoded size is next measured.
        self._next_size_check = threshold_bytes

    # ── State ────────────────────────────────────────────────────────────

    @property
    def open_batch(self) -> Batch | None:
        return self._batch

    @property
    def held(self) -> PendingFlush | None:
        """Batch whose write exhausted its retries, awaiting the next trigger."""
        return self._held

    # ── Triggers ─────────────────────────────────────────────────────────

    def poll(self) -> StorageObject | None:
        """Pull new records and flush if a trigger fired.

        Returns the written object, or None when nothing was flushed.
        """
        if self._held is not None:
            if self._clock() - (self._held.held_since or 0.0) >= self.window_seconds:
                return self._write(self._held, reason="held_retry")
            return None

        if self._pull():
            return self.flush(reason="bytes")
        if self._batch is not None and self._clock() - self._batch.opened_at >= self.window_seconds:
            return self.flush(reason="window")
        return None

    def _pull(self) -> bool:
        """Read records into the open batch; True when the byte trigger fires."""
        after = self._batch.last_offset if self._batch and self._batch.last_offset else None
        rows = self.buffer.read(after_offset=after, limit=self.read_limit)
        for offset, record in rows:
            if self._batch is None:
                self._batch = Batch(opened_at=self._clock())
                self._next_size_check = self.threshold_bytes
            self._batch.add(offset, record)
        if self._batch is None or self._batch.raw_bytes < self._next_size_check:
            return False
        encoded_size = len(self.codec.compress(self._batch.records))
        if encoded_size >= self.threshold_bytes:
            return True
        # Compression ratio is stable over a batch; re-measure after 10% growth.
        self._next_size_check = int(self._batch.raw_bytes * 1.1) + 1
        return False

    def seconds_until_window(self) -> float | None:
        """Time left before the window trigger fires, None if nothing is pending."""
        if self._held is not None:
            return max(0.0, self.window_seconds - (self._clock() - (self._held.held_since or 0.0)))
        if self._batch is None:
            return None
        return max(0.0, self.window_seconds - (self._clock() - self._batch.opened_at))

    # ── Flush ────────────────────────────────────────────────────────────

    def flush(self, reason: str = "manual") -> StorageObject | None:
        """Freeze the open batch (or take the held one) and write it."""
        if self._held is None:
            if self._batch is None or self._batch.is_empty:
                return None
            self._held = self._freeze(self._batch)
            self._batch = None
        return self._write(self._held, reason=reason)

    def _freeze(self, batch: Batch) -> PendingFlush:
        created_at = self._wall_clock()
        key = self._next_key(created_at)
        return PendingFlush(batch=batch, key=key, body=self.codec.encode(batch.records, key), created_at=created_at)

    def _next_key(self, flush_time: datetime) -> str:
        millis = max(epoch_millis(flush_time), self._last_key_millis + 1)
        while self.store.head(f"{self.prefix}-{millis}") is not None:
            millis += 1
        self._last_key_millis = millis
        return f"{self.prefix}-{millis}"

    def _put(self, pending: PendingFlush) -> StorageObject:
        pending.attempts += 1
        try:
            return self.store.put(
                pending.key,
                pending.body,
                record_count=len(pending.batch),
                created_at=pending.created_at,
            )
        except Exception as exc:
            self._registry.counter("flush_failures_total").inc()
            logger.warning("flush_attempt_failed", object_key=pending.key, attempt=pending.attempts, error=str(exc))
            raise

    def _write(self, pending: PendingFlush, reason: str) -> StorageObject | None:
        ctx = RetryContext(self.retry, sleep=self._sleep)
        try:
            obj = ctx.run(self._put, pending)
        except RetryExhaustedError as exc:
            pending.held_since = self._clock()
            self._registry.counter("flush_exhausted_total").inc()
            logger.error(
                "flush_exhausted",
                object_key=pending.key,
                records=len(pending.batch),
                attempts=pending.attempts,
                error=str(exc.last_error),
            )
            return None

        if pending.batch.last_offset is None:
            raise PiiWatchError(f"Flushed batch {pending.key} has no buffer offset to acknowledge")
        self.buffer.ack(pending.batch.last_offset)
        self._held = None
        self._registry.counter("batches_flushed_total").inc()
        logger.info(
            "batch_flushed",
            object_key=obj.key,
            records=obj.record_count,
            size=obj.size,
            reason=reason,
            attempts=pending.attempts,
        )
        return obj

    def drain(self) -> StorageObject | None:
        """Pull whatever is buffered and flush it regardless of triggers (shutdown)."""
        if self._held is not None:
            return self._write(self._held, reason="drain")
        self._pull()
        return self.flush(reason="drain")


__all__ = ["PendingFlush", "BatchDeliverySink"]
