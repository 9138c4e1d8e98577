"""Pipeline domain models.

Defines the data that flows through the pipeline:

- LogRecord: one emitted unit of log data
- Batch: records accumulated by the sink until a flush trigger fires
- StorageObject / RetentionPolicy / StorageTier: flushed batches in cold storage
- ClassificationJob / JobScope / RunMode / Cadence: scheduled scans
- FindingEvent / Severity: scan output
- AlertPayload / RoutingRule / Destination / BasicAuthorization: alert routing

Records, objects, findings and routing configuration are immutable
(``frozen=True``). Batch and ClassificationJob are the only mutable
records; their status changes go through explicit methods.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from piiwatch.core.timestamps import utc_now


class InvalidTransitionError(ValueError):
    """Raised when an illegal state transition is attempted."""

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


# =============================================================================
# LOG RECORDS AND BATCHES
# =============================================================================


@dataclass(frozen=True)
class LogRecord:
    """A single emitted log record.

    Attributes:
        timestamp: Emission time (UTC)
        source: Emitting source identifier (function name, log group, ...)
        payload: Raw payload bytes
    """

    timestamp: datetime
    source: str
    payload: bytes

    @classmethod
    def from_text(cls, source: str, text: str, timestamp: datetime | None = None) -> LogRecord:
        """Build a record from a text line (UTF-8 encoded)."""
        return cls(timestamp=timestamp or utc_now(), source=source, payload=text.encode("utf-8"))

    @property
    def size(self) -> int:
        """Bytes this record contributes to a batch."""
        return len(self.payload) + len(self.source.encode("utf-8"))

    def text(self) -> str:
        """Payload decoded as UTF-8 (undecodable bytes replaced)."""
        return self.payload.decode("utf-8", errors="replace")


@dataclass
class Batch:
    """An open batch of buffered records.

    Records are held in buffer-offset order, which preserves per-source
    append order. ``last_offset`` is acknowledged to the buffer once the
    batch has been written.
    """

    opened_at: float
    records: list[LogRecord] = field(default_factory=list)
    first_offset: int | None = None
    last_offset: int | None = None
    raw_bytes: int = 0

    def add(self, offset: int, record: LogRecord) -> None:
        """Append a record read at ``offset``."""
        if self.last_offset is not None and offset <= self.last_offset:
            raise ValueError(f"Offsets must increase: {offset} after {self.last_offset}")
        if self.first_offset is None:
            self.first_offset = offset
        self.last_offset = offset
        self.records.append(record)
        self.raw_bytes += record.size

    def __len__(self) -> int:
        return len(self.records)

    @property
    def is_empty(self) -> bool:
        return not self.records


# =============================================================================
# STORAGE
# =============================================================================


class StorageTier(str, Enum):
    """Storage tier of a stored object."""

    HOT = "hot"
    ARCHIVE = "archive"
    DEEP_ARCHIVE = "deep_archive"


class RetentionMode(str, Enum):
    """What happens to an object after the hot window."""

    EXPIRE = "expire"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention/tiering policy of a store.

    EXPIRE: objects are deleted ``hot_days`` after creation.
    ARCHIVE: objects move to ARCHIVE after ``archive_after_days`` and to
    DEEP_ARCHIVE after ``deep_archive_after_days``; they are never deleted.
    """

    mode: RetentionMode = RetentionMode.EXPIRE
    hot_days: int = 7
    archive_after_days: int = 30
    deep_archive_after_days: int = 90

    def __post_init__(self) -> None:
        if self.hot_days <= 0:
            raise ValueError("hot_days must be positive")
        if self.mode == RetentionMode.ARCHIVE and not (
            0 < self.archive_after_days < self.deep_archive_after_days
        ):
            raise ValueError("archive_after_days must be positive and below deep_archive_after_days")

    @classmethod
    def logs(cls, hot_days: int = 7) -> RetentionPolicy:
        """Short-lived scan bucket: expire after the hot window."""
        return cls(mode=RetentionMode.EXPIRE, hot_days=hot_days)

    @classmethod
    def archive(cls, archive_after_days: int = 30, deep_archive_after_days: int = 90) -> RetentionPolicy:
        """Long-term archive bucket with intelligent tiering."""
        return cls(
            mode=RetentionMode.ARCHIVE,
            archive_after_days=archive_after_days,
            deep_archive_after_days=deep_archive_after_days,
        )

    def tier_for(self, created_at: datetime, now: datetime) -> StorageTier | None:
        """Tier an object created at ``created_at`` belongs in at ``now``.

        Returns None when the object has expired and must be deleted.
        """
        age = now - created_at
        if self.mode == RetentionMode.EXPIRE:
            return StorageTier.HOT if age < timedelta(days=self.hot_days) else None
        if age >= timedelta(days=self.deep_archive_after_days):
            return StorageTier.DEEP_ARCHIVE
        if age >= timedelta(days=self.archive_after_days):
            return StorageTier.ARCHIVE
        return StorageTier.HOT


@dataclass(frozen=True)
class StorageObject:
    """A flushed batch at rest in cold storage."""

    bucket: str
    key: str
    created_at: datetime
    size: int
    record_count: int
    tier: StorageTier = StorageTier.HOT

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "created_at": self.created_at.isoformat(),
            "size": self.size,
            "record_count": self.record_count,
            "tier": self.tier.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageObject:
        created_at = datetime.fromisoformat(data["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return cls(
            bucket=data["bucket"],
            key=data["key"],
            created_at=created_at,
            size=int(data["size"]),
            record_count=int(data["record_count"]),
            tier=StorageTier(data.get("tier", StorageTier.HOT.value)),
        )


# =============================================================================
# CLASSIFICATION
# =============================================================================


class RunMode(str, Enum):
    """Scope of a classification run.

    INITIAL_BACKFILL scans every object present; SCHEDULED_INCREMENTAL only
    objects added since the previous completed run.
    """

    INITIAL_BACKFILL = "initial-backfill"
    SCHEDULED_INCREMENTAL = "scheduled-incremental"


class Cadence(str, Enum):
    """Recurring classification cadence.

    Each cadence divides time into epochs; one job is due per epoch and the
    epoch key is what makes the job's idempotency token.
    """

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def epoch_start(self, now: datetime) -> datetime:
        """Start of the epoch containing ``now`` (UTC)."""
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        now = now.astimezone(UTC)
        if self == Cadence.HOURLY:
            return now.replace(minute=0, second=0, microsecond=0)
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self == Cadence.DAILY:
            return day
        if self == Cadence.WEEKLY:
            return day - timedelta(days=day.weekday())
        return day.replace(day=1)

    def epoch_key(self, now: datetime) -> str:
        """Stable string naming the epoch containing ``now``.

        >>> Cadence.DAILY.epoch_key(datetime(2024, 1, 1, 13, 5, tzinfo=UTC))
        '2024-01-01'
        """
        start = self.epoch_start(now)
        if self == Cadence.HOURLY:
            return start.strftime("%Y-%m-%dT%H")
        if self == Cadence.MONTHLY:
            return start.strftime("%Y-%m")
        return start.strftime("%Y-%m-%d")


class JobStatus(str, Enum):
    """Status of a classification job.

    Valid transition graph::

        SUBMITTED → RUNNING | CANCELLED
        RUNNING   → COMPLETE | FAILED
        COMPLETE / FAILED / CANCELLED → (terminal)
    """

    SUBMITTED = "submitted"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED)


JOB_VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.SUBMITTED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def validate_job_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal."""
    if target not in JOB_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "JobStatus")


@dataclass(frozen=True)
class JobScope:
    """Storage location(s) a classification job scans."""

    bucket: str
    prefix: str = ""


@dataclass
class ClassificationJob:
    """One scheduled classification scan.

    Exactly one job exists per ``token``.
    """

    job_id: str
    token: str
    name: str
    scope: JobScope
    mode: RunMode
    cadence: Cadence
    status: JobStatus = JobStatus.SUBMITTED
    created_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    scanned_until: datetime | None = None
    objects_scanned: int = 0
    findings_count: int = 0
    error: str | None = None

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex


# =============================================================================
# FINDINGS AND ALERTS
# =============================================================================

FINDING_SOURCE = "pii-scanner"
FINDING_DETAIL_TYPE = "Finding"


class Severity(str, Enum):
    """Finding severity, as shown to operators."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


@dataclass(frozen=True)
class FindingEvent:
    """Sensitive data detected by a completed classification job."""

    job_id: str
    severity: Severity
    finding_type: str
    object_key: str
    bucket: str = ""
    finding_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)
    occurrences: dict[str, int] = field(default_factory=dict)

    def to_detail(self) -> dict[str, Any]:
        """Event detail document published on the finding stream."""
        return {
            "id": self.finding_id,
            "type": self.finding_type,
            "createdAt": self.created_at.isoformat(),
            "severity": {"description": self.severity.value},
            "classificationDetails": {
                "jobId": self.job_id,
                "result": {"sensitiveData": [{"type": k, "count": v} for k, v in sorted(self.occurrences.items())]},
            },
            "resourcesAffected": {
                "s3Bucket": {"name": self.bucket},
                "s3Object": {"key": self.object_key},
            },
        }


@dataclass(frozen=True)
class AlertPayload:
    """Rendered alert document for one destination format. Not persisted."""

    format: str
    body: dict[str, Any]

    @property
    def title(self) -> str:
        return str(self.body.get("title", ""))

    def to_json(self) -> str:
        return json.dumps(self.body, sort_keys=True)


@dataclass(frozen=True)
class BasicAuthorization:
    """HTTP Basic credentials: a username and a *reference* to the password."""

    username: str
    password_ref: str


@dataclass(frozen=True)
class Destination:
    """External HTTP(S) endpoint receiving rendered alerts."""

    name: str
    endpoint: str
    authorization: BasicAuthorization | None = None
    format: str = "generic"
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class RoutingRule:
    """Binds finding events with an exact (source, detail type) to a destination."""

    name: str
    source: str
    detail_type: str
    destination: Destination


__all__ = [
    "InvalidTransitionError",
    "LogRecord",
    "Batch",
    "StorageTier",
    "RetentionMode",
    "RetentionPolicy",
    "StorageObject",
    "RunMode",
    "Cadence",
    "JobStatus",
    "JOB_VALID_TRANSITIONS",
    "validate_job_transition",
    "JobScope",
    "ClassificationJob",
    "FINDING_SOURCE",
    "FINDING_DETAIL_TYPE",
    "Severity",
    "FindingEvent",
    "AlertPayload",
    "BasicAuthorization",
    "Destination",
    "RoutingRule",
]
