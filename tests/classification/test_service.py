"""Tests for the local classification service."""

from datetime import UTC, datetime, timedelta

import pytest

from conftest import BUCKET, make_record
from piiwatch.classification.service import ClassificationService, LocalClassificationService
from piiwatch.core.errors import JobRejectedError, StorageWriteError
from piiwatch.core.models import Cadence, JobScope, JobStatus, RunMode, Severity, StorageTier
from piiwatch.execution.retry import ExponentialBackoff
from piiwatch.sink.delivery import BatchDeliverySink
from piiwatch.sink.object_store import InMemoryObjectStore

T0 = datetime(2024, 1, 1, tzinfo=UTC)
NAME = "Function-Logs-PII-test"


class Now:
    def __init__(self, value: datetime):
        self.value = value

    def __call__(self) -> datetime:
        return self.value


@pytest.fixture
def now():
    return Now(T0)


@pytest.fixture
def service(store, codec, bus, now, registry):
    svc = LocalClassificationService(":memory:", {BUCKET: store}, codec, bus, clock=now, registry=registry)
    yield svc
    svc.close()


def put_object(store, codec, key, lines, created_at):
    records = [make_record(line) for line in lines]
    store.put(key, codec.encode(records, key), record_count=len(records), created_at=created_at)


def create(service, token, mode=RunMode.SCHEDULED_INCREMENTAL, scope=None):
    return service.create_job(token, scope or JobScope(BUCKET), Cadence.DAILY, mode, name=NAME)


class TestCreateJob:
    """Job creation is idempotent on the token."""

    def test_same_token_yields_one_job(self, service):
        first = create(service, f"{NAME}:2024-01-01")
        second = create(service, f"{NAME}:2024-01-01")
        assert first == second
        assert service.count_jobs() == 1

    def test_distinct_tokens(self, service):
        assert create(service, "a") != create(service, "b")
        assert service.count_jobs() == 2

    def test_job_fields(self, service):
        job_id = create(service, "t", mode=RunMode.INITIAL_BACKFILL)
        job = service.get_job(job_id)
        assert job.status == JobStatus.SUBMITTED
        assert job.mode == RunMode.INITIAL_BACKFILL
        assert job.cadence == Cadence.DAILY
        assert job.scope == JobScope(BUCKET)
        assert job.name == NAME
        assert job.created_at == T0

    def test_unknown_bucket_is_rejected(self, service):
        with pytest.raises(JobRejectedError):
            create(service, "t", scope=JobScope("no-such-bucket"))
        assert service.count_jobs() == 0

    def test_blank_token_is_rejected(self, service):
        with pytest.raises(JobRejectedError):
            create(service, "  ")

    def test_latest_job(self, service, now):
        assert service.latest_job(NAME) is None
        create(service, "a")
        now.value = T0 + timedelta(days=1)
        b = create(service, "b")
        assert service.latest_job(NAME).job_id == b

    def test_satisfies_protocol(self, service):
        assert isinstance(service, ClassificationService)

    def test_jobs_survive_reopen(self, tmp_path, store, codec, bus):
        path = tmp_path / "jobs.db"
        svc = LocalClassificationService(path, {BUCKET: store}, codec, bus)
        job_id = create(svc, "t")
        svc.close()
        reopened = LocalClassificationService(path, {BUCKET: store}, codec, bus)
        assert create(reopened, "t") == job_id
        reopened.close()


class TestRunPending:
    @pytest.mark.asyncio
    async def test_backfill_scans_existing_objects(self, service, store, codec, bus, now):
        seen = []

        async def collect(event):
            seen.append(event)

        await bus.subscribe("Finding", collect)
        put_object(store, codec, "fn-logs-1", ["signup jane@example.com"], T0 - timedelta(hours=2))
        put_object(store, codec, "fn-logs-2", ["GET /health 200"], T0 - timedelta(hours=1))
        job_id = create(service, "t", mode=RunMode.INITIAL_BACKFILL)

        [job] = await service.run_pending()

        assert job.job_id == job_id
        assert job.status == JobStatus.COMPLETE
        assert job.objects_scanned == 2
        assert job.findings_count == 1
        assert len(seen) == 1
        event = seen[0]
        assert event.source == "pii-scanner"
        assert event.event_type == "Finding"
        assert event.payload["classificationDetails"]["jobId"] == job_id
        assert event.payload["severity"]["description"] == Severity.LOW.value
        assert event.payload["resourcesAffected"]["s3Object"]["key"] == "fn-logs-1"
        stored = service.get_job(job_id)
        assert stored.status == JobStatus.COMPLETE
        assert stored.scanned_until == T0

    @pytest.mark.asyncio
    async def test_incremental_scans_only_new_objects(self, service, store, codec, bus, now):
        seen = []

        async def collect(event):
            seen.append(event.payload["resourcesAffected"]["s3Object"]["key"])

        await bus.subscribe("Finding", collect)
        put_object(store, codec, "fn-logs-1", ["jane@example.com"], T0 - timedelta(hours=1))
        create(service, "day-1", mode=RunMode.INITIAL_BACKFILL)
        await service.run_pending()

        now.value = T0 + timedelta(days=1)
        put_object(store, codec, "fn-logs-2", ["john@example.com"], T0 + timedelta(hours=3))
        create(service, "day-2")
        [job] = await service.run_pending()

        assert job.objects_scanned == 1
        assert seen == ["fn-logs-1", "fn-logs-2"]

    @pytest.mark.asyncio
    async def test_first_incremental_without_history_scans_everything(self, service, store, codec):
        put_object(store, codec, "fn-logs-1", ["x"], T0 - timedelta(hours=1))
        create(service, "t")
        [job] = await service.run_pending()
        assert job.objects_scanned == 1

    @pytest.mark.asyncio
    async def test_archived_objects_are_not_scanned(self, service, store, codec):
        put_object(store, codec, "fn-logs-1", ["jane@example.com"], T0 - timedelta(hours=1))
        store.set_tier("fn-logs-1", StorageTier.ARCHIVE)
        create(service, "t", mode=RunMode.INITIAL_BACKFILL)
        [job] = await service.run_pending()
        assert job.objects_scanned == 0

    @pytest.mark.asyncio
    async def test_unreadable_object_is_skipped_not_fatal(self, service, store, codec, bus, registry):
        seen = []

        async def collect(event):
            seen.append(event.payload["resourcesAffected"]["s3Object"]["key"])

        await bus.subscribe("Finding", collect)
        store.put("fn-logs-1", b"garbage", created_at=T0 - timedelta(hours=2))
        put_object(store, codec, "fn-logs-2", ["jane@example.com"], T0 - timedelta(hours=1))
        job_id = create(service, "t", mode=RunMode.INITIAL_BACKFILL)

        [job] = await service.run_pending()

        assert job.status == JobStatus.COMPLETE
        assert job.error is None
        assert job.objects_scanned == 1
        assert seen == ["fn-logs-2"]
        assert registry.value("objects_unreadable_total") == 1.0
        assert service.get_job(job_id).status == JobStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_unreadable_object_is_not_rescanned(self, service, store, codec, now, registry):
        blob = codec.encode([make_record("jane@example.com")], "fn-logs-elsewhere")
        store.put("fn-logs-1", blob, created_at=T0 - timedelta(hours=1))
        create(service, "day-1")
        await service.run_pending()

        now.value = T0 + timedelta(days=1)
        put_object(store, codec, "fn-logs-2", ["john@example.com"], T0 + timedelta(hours=3))
        create(service, "day-2")
        [job] = await service.run_pending()

        assert job.status == JobStatus.COMPLETE
        assert job.objects_scanned == 1
        assert job.findings_count == 1
        assert registry.value("objects_unreadable_total") == 1.0

    @pytest.mark.asyncio
    async def test_objects_of_a_failed_job_are_scanned_again(self, service, store, codec, bus, now, monkeypatch):
        put_object(store, codec, "fn-logs-1", ["jane@example.com"], T0 - timedelta(hours=1))

        async def failing_publish(event):
            raise RuntimeError("bus unavailable")

        monkeypatch.setattr(bus, "publish", failing_publish)
        create(service, "day-1")
        [failed] = await service.run_pending()
        assert failed.status == JobStatus.FAILED

        monkeypatch.undo()
        now.value = T0 + timedelta(days=1)
        create(service, "day-2")
        [job] = await service.run_pending()
        assert job.status == JobStatus.COMPLETE
        assert job.findings_count == 1

    @pytest.mark.asyncio
    async def test_completion_listeners_sync_and_async(self, service):
        calls = []

        async def async_listener(job):
            calls.append(("async", job.status))

        service.add_completion_listener(lambda job: calls.append(("sync", job.status)))
        service.add_completion_listener(async_listener)
        create(service, "t")
        await service.run_pending()
        assert calls == [("sync", JobStatus.COMPLETE), ("async", JobStatus.COMPLETE)]

    @pytest.mark.asyncio
    async def test_jobs_run_once(self, service):
        create(service, "t")
        assert len(await service.run_pending()) == 1
        assert await service.run_pending() == []


class ThrottledStore(InMemoryObjectStore):
    """Rejects writes until ``recover()`` is called."""

    def __init__(self):
        super().__init__(BUCKET)
        self.available = False

    def recover(self) -> None:
        self.available = True

    def put(self, key, data, **kwargs):
        if not self.available:
            raise StorageWriteError("throttled")
        return super().put(key, data, **kwargs)


class TestLateWrites:
    """A batch held across a job run is still scanned once it lands."""

    @pytest.mark.asyncio
    async def test_held_batch_written_after_a_job_is_scanned_next_time(
        self, buffer, codec, bus, now, clock, sleep, registry
    ):
        store = ThrottledStore()
        service = LocalClassificationService(":memory:", {BUCKET: store}, codec, bus, clock=now, registry=registry)
        sink = BatchDeliverySink(
            buffer,
            store,
            codec,
            retry=ExponentialBackoff(max_attempts=1, jitter=False),
            clock=clock,
            wall_clock=now,
            sleep=sleep,
            registry=registry,
        )
        seen = []

        async def collect(event):
            seen.append(event.payload["resourcesAffected"]["s3Object"]["key"])

        await bus.subscribe("Finding", collect)
        buffer.append(make_record("signup jane@example.com"))
        assert sink.drain() is None
        assert sink.held is not None

        now.value = T0 + timedelta(minutes=1)
        create(service, "day-1")
        [first] = await service.run_pending()
        assert first.objects_scanned == 0

        store.recover()
        obj = sink.drain()
        assert obj is not None
        assert obj.created_at < first.scanned_until

        now.value = T0 + timedelta(days=1)
        create(service, "day-2")
        [second] = await service.run_pending()

        assert second.objects_scanned == 1
        assert seen == [obj.key]
        service.close()
