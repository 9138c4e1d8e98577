"""Durable, ordered, bounded log buffer.

Log emitters call :meth:`LogBuffer.append`; the batch delivery sink reads
pending records in offset order and acknowledges them once they are safely
in cold storage. The buffer is a SQLite table, so a record whose append
returned survives a restart and is delivered after it.

ARCHITECTURE
────────────
::

    LogBuffer(path, capacity, full_policy)
      ├── .append(record)           ─ durable enqueue, blocks/fails when full
      ├── .read(after, limit)       ─ pending records in offset order
      ├── .ack(offset)             ─ advance consumed cursor, free capacity
      ├── .depth                    ─ unconsumed record count
      └── .close()

    log_records    (seq INTEGER PRIMARY KEY AUTOINCREMENT, ...)
    buffer_cursor  (single row: consumed offset)

Offsets come from an AUTOINCREMENT key, so they are never reused even
after acknowledged rows are deleted. One global offset order implies
per-source order.

Example::

    buffer = LogBuffer(":memory:", capacity=1000)
    buffer.append(LogRecord.from_text("checkout-fn", "order placed"))
    for offset, record in buffer.read():
        ...
    buffer.ack(offset)
"""

from __future__ import annotations

import sqlite3
import threading
import time
from enum import Enum
from pathlib import Path

from piiwatch.core.errors import BufferSaturated
from piiwatch.core.logging import get_logger
from piiwatch.core.models import LogRecord
from piiwatch.core.timestamps import from_iso8601
from piiwatch.observability.metrics import MetricsRegistry, get_registry

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS log_records (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    payload BLOB NOT NULL
);
CREATE TABLE IF NOT EXISTS buffer_cursor (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    consumed INTEGER NOT NULL
);
INSERT OR IGNORE INTO buffer_cursor (id, consumed) VALUES (1, 0);
"""


class FullPolicy(str, Enum):
    """What ``append`` does when the buffer is at capacity."""

    BLOCK = "block"
    FAIL = "fail"


class LogBuffer:
    """Append-only durable queue of LogRecords.

    Args:
        path: SQLite database file, or ``":memory:"``
        capacity: Maximum number of unconsumed records
        full_policy: BLOCK waits up to ``block_timeout`` for space, FAIL raises at once
        block_timeout: Seconds an append may wait under BLOCK
        registry: Metrics registry (process-wide by default)
    """

    def __init__(
        self,
        path: str | Path = ":memory:",
        *,
        capacity: int = 10_000,
        full_policy: FullPolicy | str = FullPolicy.BLOCK,
        block_timeout: float = 5.0,
        registry: MetricsRegistry | None = None,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.full_policy = FullPolicy(full_policy)
        self.block_timeout = block_timeout
        self._registry = registry or get_registry()

        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        if str(path) != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

        self._cond = threading.Condition()
        self._consumed = self._conn.execute("SELECT consumed FROM buffer_cursor WHERE id = 1").fetchone()[0]
        self._depth = self._conn.execute(
            "SELECT COUNT(*) FROM log_records WHERE seq > ?", (self._consumed,)
        ).fetchone()[0]
        self._closed = False
        self._update_depth_gauge()

        if self._depth:
            logger.info("buffer_recovered", pending=self._depth, consumed_offset=self._consumed)

    # ── Producer side ────────────────────────────────────────────────────

    def append(self, record: LogRecord) -> int:
        """Durably enqueue ``record`` and return its offset.

        Raises:
            BufferSaturated: Buffer full (FAIL), or still full after ``block_timeout`` (BLOCK)
        """
        with self._cond:
            if self._closed:
                raise RuntimeError("LogBuffer is closed")
            if self._depth >= self.capacity:
                self._wait_for_space()

            cursor = self._conn.execute(
                "INSERT INTO log_records (source, timestamp, payload) VALUES (?, ?, ?)",
                (record.source, record.timestamp.isoformat(), record.payload),
            )
            self._conn.commit()
            self._depth += 1
            offset = cursor.lastrowid
            # Wake the sink if it is waiting for data.
            self._cond.notify_all()

        self._registry.counter("records_appended_total").inc()
        self._update_depth_gauge()
        return offset

    def _wait_for_space(self) -> None:
        if self.full_policy == FullPolicy.FAIL:
            self._saturated()
        deadline = time.monotonic() + self.block_timeout
        while self._depth >= self.capacity:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._saturated()
            self._cond.wait(remaining)
            if self._closed:
                raise RuntimeError("LogBuffer is closed")

    def _saturated(self) -> None:
        self._registry.counter("buffer_saturated_total").inc()
        logger.warning("buffer_saturated", capacity=self.capacity, policy=self.full_policy.value)
        raise BufferSaturated(f"Log buffer full ({self.capacity} pending records)", capacity=self.capacity)

    # ── Consumer side ────────────────────────────────────────────────────

    def read(self, after_offset: int | None = None, limit: int = 500) -> list[tuple[int, LogRecord]]:
        """Pending records with offset greater than ``after_offset``, oldest first.

        ``after_offset`` defaults to the consumed cursor.
        """
        with self._cond:
            after = self._consumed if after_offset is None else max(after_offset, self._consumed)
            rows = self._conn.execute(
                "SELECT seq, source, timestamp, payload FROM log_records WHERE seq > ? ORDER BY seq LIMIT ?",
                (after, limit),
            ).fetchall()
        return [
            (seq, LogRecord(timestamp=from_iso8601(ts), source=source, payload=bytes(payload)))
            for seq, source, ts, payload in rows
        ]

    def wait_for_records(self, after_offset: int, timeout: float) -> bool:
        """Block until a record past ``after_offset`` exists or ``timeout`` elapses."""
        with self._cond:
            return self._cond.wait_for(lambda: self._closed or self._last_offset() > after_offset, timeout)

    def _last_offset(self) -> int:
        row = self._conn.execute("SELECT MAX(seq) FROM log_records").fetchone()
        return row[0] or self._consumed

    def ack(self, offset: int) -> None:
        """Mark every record up to and including ``offset`` as consumed.

        Acknowledging an offset at or below the cursor is a no-op.
        """
        with self._cond:
            if offset <= self._consumed:
                return
            self._conn.execute("UPDATE buffer_cursor SET consumed = ? WHERE id = 1", (offset,))
            removed = self._conn.execute("DELETE FROM log_records WHERE seq <= ?", (offset,)).rowcount
            self._conn.commit()
            self._consumed = offset
            self._depth = max(0, self._depth - removed)
            self._cond.notify_all()
        self._update_depth_gauge()
        logger.debug("buffer_acked", offset=offset, released=removed)

    @property
    def consumed_offset(self) -> int:
        return self._consumed

    @property
    def depth(self) -> int:
        """Number of appended but unconsumed records."""
        return self._depth

    def _update_depth_gauge(self) -> None:
        self._registry.gauge("buffer_depth").set(self._depth)

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
            self._conn.close()

    def __enter__(self) -> LogBuffer:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


__all__ = ["FullPolicy", "LogBuffer"]
