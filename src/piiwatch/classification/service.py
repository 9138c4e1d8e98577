"""Classification service: idempotent job creation and the local scanner.

The scheduler talks to a :class:`ClassificationService`. The contract that
matters is ``create_job(token, scope, schedule, mode) -> job_id``, which is
idempotent on ``token``: asking twice with the same token returns the same
job id and creates one job.

:class:`LocalClassificationService` implements it over SQLite (a UNIQUE
token column) and scans stored objects itself when ``run_pending()`` is
called. For every object with detector hits it publishes one finding event
``{source: "pii-scanner", detail-type: "Finding"}`` on the event bus, then
marks the job complete and notifies completion listeners.

ARCHITECTURE
────────────
::

    create_job(token, scope, schedule, mode)
      ├── validate scope            ─ JobRejectedError (fatal)
      ├── INSERT OR IGNORE by token
      └── SELECT job_id by token    ─ same id on repeat

    run_pending()
      for each SUBMITTED job (oldest first):
        RUNNING → scan objects in scope → publish findings → COMPLETE
        (initial-backfill: every HOT object;
         scheduled-incremental: HOT objects no completed job of the same
         name has scanned yet)
        an object that cannot be decrypted or parsed is logged, counted
        and skipped; it never fails the job
"""

from __future__ import annotations

import inspect
import sqlite3
import threading
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from piiwatch.classification.detectors import classify, scan_text
from piiwatch.core.errors import JobRejectedError
from piiwatch.core.events import Event, EventBus
from piiwatch.core.logging import get_logger
from piiwatch.core.models import (
    FINDING_DETAIL_TYPE,
    FINDING_SOURCE,
    Cadence,
    ClassificationJob,
    FindingEvent,
    JobScope,
    JobStatus,
    RunMode,
    StorageObject,
    StorageTier,
    validate_job_transition,
)
from piiwatch.core.timestamps import from_iso8601, to_iso8601, utc_now
from piiwatch.observability.metrics import MetricsRegistry, get_registry
from piiwatch.sink.codec import BatchCodec, CorruptObjectError
from piiwatch.sink.object_store import ObjectStore

logger = get_logger(__name__)

CompletionListener = Callable[[ClassificationJob], Awaitable[None] | None]


@runtime_checkable
class ClassificationService(Protocol):
    """Control plane the scheduler submits jobs to."""

    def create_job(
        self,
        token: str,
        scope: JobScope,
        schedule: Cadence,
        mode: RunMode,
        *,
        name: str = "",
    ) -> str:
        """Create (or find) the job for ``token`` and return its id."""
        ...

    def get_job(self, job_id: str) -> ClassificationJob | None:
        ...

    def latest_job(self, name: str) -> ClassificationJob | None:
        """Most recently created job with ``name``, if any."""
        ...

    def add_completion_listener(self, listener: CompletionListener) -> None:
        ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS classification_jobs (
    job_id TEXT PRIMARY KEY,
    token TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    bucket TEXT NOT NULL,
    prefix TEXT NOT NULL DEFAULT '',
    mode TEXT NOT NULL,
    cadence TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    scanned_until TEXT,
    objects_scanned INTEGER NOT NULL DEFAULT 0,
    findings_count INTEGER NOT NULL DEFAULT 0,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_name_created ON classification_jobs (name, created_at);
CREATE TABLE IF NOT EXISTS scanned_objects (
    job_id TEXT NOT NULL REFERENCES classification_jobs (job_id),
    object_key TEXT NOT NULL,
    PRIMARY KEY (job_id, object_key)
);
"""

_COLUMNS = (
    "job_id, token, name, bucket, prefix, mode, cadence, status, created_at, "
    "completed_at, scanned_until, objects_scanned, findings_count, error"
)


class LocalClassificationService:
    """SQLite-backed job registry plus an in-process PII scanner.

    Args:
        path: SQLite database file, or ``":memory:"``
        stores: Scannable object stores by bucket name
        codec: Decrypts and decodes stored batches
        bus: Where finding events are published
        clock: UTC clock for job timestamps
        registry: Metrics registry for scan counters
    """

    def __init__(
        self,
        path: str | Path,
        stores: dict[str, ObjectStore],
        codec: BatchCodec,
        bus: EventBus,
        *,
        clock: Callable[[], datetime] = utc_now,
        registry: MetricsRegistry | None = None,
    ):
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()
        self.stores = dict(stores)
        self.codec = codec
        self.bus = bus
        self._clock = clock
        self._listeners: list[CompletionListener] = []
        self._registry = registry or get_registry()

    # ── Job registry ─────────────────────────────────────────────────────

    def create_job(
        self,
        token: str,
        scope: JobScope,
        schedule: Cadence,
        mode: RunMode,
        *,
        name: str = "",
    ) -> str:
        """Create the job for ``token``, or return the id of the existing one.

        Raises:
            JobRejectedError: Blank token, or a scope naming no known bucket
        """
        if not token or not token.strip():
            raise JobRejectedError("Job token must not be blank")
        if not scope.bucket or scope.bucket not in self.stores:
            raise JobRejectedError(f"Invalid job scope: unknown bucket {scope.bucket!r}").with_context(
                component="classification", bucket=scope.bucket
            )

        job = ClassificationJob(
            job_id=ClassificationJob.new_id(),
            token=token,
            name=name or scope.bucket,
            scope=scope,
            mode=RunMode(mode),
            cadence=Cadence(schedule),
            created_at=self._clock(),
        )
        with self._lock:
            cursor = self._conn.execute(
                "INSERT OR IGNORE INTO classification_jobs "
                "(job_id, token, name, bucket, prefix, mode, cadence, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id,
                    job.token,
                    job.name,
                    scope.bucket,
                    scope.prefix,
                    job.mode.value,
                    job.cadence.value,
                    job.status.value,
                    job.created_at.isoformat(),
                ),
            )
            self._conn.commit()
            created = cursor.rowcount == 1
            job_id = self._conn.execute(
                "SELECT job_id FROM classification_jobs WHERE token = ?", (token,)
            ).fetchone()[0]

        if created:
            logger.info("job_created", job_id=job_id, token=token, mode=job.mode.value, bucket=scope.bucket)
        else:
            logger.info("job_create_deduplicated", job_id=job_id, token=token)
        return job_id

    def get_job(self, job_id: str) -> ClassificationJob | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM classification_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def latest_job(self, name: str) -> ClassificationJob | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM classification_jobs WHERE name = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT 1",
                (name,),
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, status: JobStatus | None = None) -> list[ClassificationJob]:
        query = f"SELECT {_COLUMNS} FROM classification_jobs"
        params: tuple[str, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY created_at, rowid"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def count_jobs(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM classification_jobs").fetchone()[0]

    def add_completion_listener(self, listener: CompletionListener) -> None:
        self._listeners.append(listener)

    @staticmethod
    def _row_to_job(row: tuple) -> ClassificationJob:
        return ClassificationJob(
            job_id=row[0],
            token=row[1],
            name=row[2],
            scope=JobScope(bucket=row[3], prefix=row[4]),
            mode=RunMode(row[5]),
            cadence=Cadence(row[6]),
            status=JobStatus(row[7]),
            created_at=from_iso8601(row[8]),
            completed_at=from_iso8601(row[9]),
            scanned_until=from_iso8601(row[10]),
            objects_scanned=row[11],
            findings_count=row[12],
            error=row[13],
        )

    def _set_status(self, job: ClassificationJob, status: JobStatus) -> None:
        validate_job_transition(job.status, status)
        job.status = status
        if status.is_terminal:
            job.completed_at = self._clock()
        with self._lock:
            self._conn.execute(
                "UPDATE classification_jobs SET status = ?, completed_at = ?, scanned_until = ?, "
                "objects_scanned = ?, findings_count = ?, error = ? WHERE job_id = ?",
                (
                    job.status.value,
                    to_iso8601(job.completed_at),
                    to_iso8601(job.scanned_until),
                    job.objects_scanned,
                    job.findings_count,
                    job.error,
                    job.job_id,
                ),
            )
            self._conn.commit()

    def _scanned_keys(self, job: ClassificationJob) -> set[str]:
        """Object keys already covered by completed jobs with the same name."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT s.object_key FROM scanned_objects s "
                "JOIN classification_jobs j ON j.job_id = s.job_id "
                "WHERE j.name = ? AND j.bucket = ? AND j.status = ? AND j.job_id != ?",
                (job.name, job.scope.bucket, JobStatus.COMPLETE.value, job.job_id),
            ).fetchall()
        return {row[0] for row in rows}

    def _mark_scanned(self, job: ClassificationJob, key: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO scanned_objects (job_id, object_key) VALUES (?, ?)",
                (job.job_id, key),
            )
            self._conn.commit()

    # ── Scanner ──────────────────────────────────────────────────────────

    async def run_pending(self) -> list[ClassificationJob]:
        """Run every submitted job to completion, oldest first."""
        finished = []
        for job in self.list_jobs(JobStatus.SUBMITTED):
            await self._run(job)
            finished.append(job)
        return finished

    async def _run(self, job: ClassificationJob) -> None:
        self._set_status(job, JobStatus.RUNNING)
        log = logger.bind(job_id=job.job_id, mode=job.mode.value)
        job.scanned_until = self._clock()
        skipped = 0
        try:
            for obj in self._objects_in_scope(job):
                try:
                    finding = self._scan_object(job, obj)
                except CorruptObjectError as exc:
                    skipped += 1
                    self._registry.counter("objects_unreadable_total").inc()
                    log.error("object_unreadable", object_key=obj.key, error=str(exc))
                    self._mark_scanned(job, obj.key)
                    continue
                job.objects_scanned += 1
                if finding is not None:
                    job.findings_count += 1
                    await self.bus.publish(
                        Event(event_type=FINDING_DETAIL_TYPE, source=FINDING_SOURCE, payload=finding.to_detail())
                    )
                    log.info(
                        "finding_published",
                        object_key=obj.key,
                        finding_type=finding.finding_type,
                        severity=finding.severity.value,
                    )
                self._mark_scanned(job, obj.key)
        except Exception as exc:
            job.error = str(exc)
            self._set_status(job, JobStatus.FAILED)
            log.error("job_failed", error=str(exc), objects_scanned=job.objects_scanned)
        else:
            self._set_status(job, JobStatus.COMPLETE)
            log.info(
                "job_completed",
                objects_scanned=job.objects_scanned,
                objects_skipped=skipped,
                findings=job.findings_count,
            )
        await self._notify(job)

    def _objects_in_scope(self, job: ClassificationJob) -> list[StorageObject]:
        store = self.stores[job.scope.bucket]
        done: set[str] = set()
        if job.mode == RunMode.SCHEDULED_INCREMENTAL:
            done = self._scanned_keys(job)
        return [
            obj
            for obj in store.list()
            if obj.key.startswith(job.scope.prefix) and obj.tier == StorageTier.HOT and obj.key not in done
        ]

    def _scan_object(self, job: ClassificationJob, obj: StorageObject) -> FindingEvent | None:
        blob = self.stores[job.scope.bucket].get(obj.key)
        counts: dict[str, int] = {}
        for record in self.codec.decode(blob, obj.key):
            for name, n in scan_text(record.text()).items():
                counts[name] = counts.get(name, 0) + n
        if not counts:
            return None
        finding_type, severity = classify(counts)
        return FindingEvent(
            job_id=job.job_id,
            severity=severity,
            finding_type=finding_type,
            object_key=obj.key,
            bucket=obj.bucket,
            occurrences=counts,
        )

    async def _notify(self, job: ClassificationJob) -> None:
        for listener in self._listeners:
            try:
                result = listener(job)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("completion_listener_failed", job_id=job.job_id, error=str(exc))
                raise

    def close(self) -> None:
        self._conn.close()


__all__ = ["ClassificationService", "CompletionListener", "LocalClassificationService"]
