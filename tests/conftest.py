"""
Shared pytest fixtures for piiwatch tests.

This module provides:
- An isolated metrics registry per test
- A resolvable master key and webhook password (dict secret backend)
- Manual clocks and recording sleeps so no test waits for real time
- Factories for log records and finding events
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from piiwatch.buffer.log_buffer import LogBuffer
from piiwatch.core.events import Event
from piiwatch.core.events.memory import InMemoryEventBus
from piiwatch.core.models import FINDING_DETAIL_TYPE, FINDING_SOURCE, FindingEvent, LogRecord, Severity
from piiwatch.core.secrets import DictSecretBackend, SecretsResolver
from piiwatch.observability.metrics import MetricsRegistry
from piiwatch.sink.codec import BatchCodec, EnvelopeCipher, generate_master_key
from piiwatch.sink.object_store import InMemoryObjectStore

MASTER_KEY_REF = "secret:dict:master_key"
PASSWORD_REF = "secret:dict:teams_password"
BUCKET = "piiwatch-logs-test"


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for time.sleep / asyncio.sleep and records the delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class AsyncRecordingSleep(RecordingSleep):
    async def __call__(self, delay: float) -> None:  # type: ignore[override]
        self.delays.append(delay)


@pytest.fixture
def registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def secrets_backend() -> DictSecretBackend:
    return DictSecretBackend({"master_key": generate_master_key(), "teams_password": "s3cr3t-pw"})


@pytest.fixture
def resolver(secrets_backend: DictSecretBackend) -> SecretsResolver:
    return SecretsResolver([secrets_backend])


@pytest.fixture
def codec(resolver: SecretsResolver) -> BatchCodec:
    return BatchCodec(EnvelopeCipher(MASTER_KEY_REF, resolver))


@pytest.fixture
def buffer(registry: MetricsRegistry):
    buf = LogBuffer(":memory:", capacity=1000, registry=registry)
    yield buf
    buf.close()


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore(BUCKET)


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def async_sleep() -> AsyncRecordingSleep:
    return AsyncRecordingSleep()


def make_record(text: str, source: str = "checkout-fn", second: int = 0) -> LogRecord:
    return LogRecord(
        timestamp=datetime(2024, 1, 1, 12, 0, second % 60, tzinfo=UTC),
        source=source,
        payload=text.encode("utf-8"),
    )


def make_finding_event(
    job_id: str = "job-42",
    severity: Severity = Severity.LOW,
    finding_type: str = "SensitiveData:S3Object/Personal",
    object_key: str = "fn-logs-1704067200000",
) -> Event:
    finding = FindingEvent(
        job_id=job_id,
        severity=severity,
        finding_type=finding_type,
        object_key=object_key,
        bucket=BUCKET,
        finding_id="finding-1",
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
    )
    return Event(event_type=FINDING_DETAIL_TYPE, source=FINDING_SOURCE, payload=finding.to_detail())
