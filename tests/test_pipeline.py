"""End-to-end tests: emit → flush → classify → alert."""

import json
import threading

import httpx
import pytest

from conftest import MASTER_KEY_REF, PASSWORD_REF
from piiwatch.classification.scheduler import TickOutcome
from piiwatch.core.errors import InvalidConfigError, MissingConfigError
from piiwatch.core.models import RetentionMode
from piiwatch.core.secrets import DictSecretBackend, SecretsResolver
from piiwatch.core.settings import load_settings
from piiwatch.pipeline import Pipeline, destination_for, retention_for


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return load_settings(
        stage="test",
        webhook_url="https://hooks.example.com/teams",
        buffer_path=tmp_path / "buffer.db",
        storage_dir=tmp_path / "objects",
        jobs_path=tmp_path / "jobs.db",
        failures_path=tmp_path / "failures.db",
        encryption_key_ref=MASTER_KEY_REF,
        webhook_password_ref=PASSWORD_REF,
        initial_run=True,
    )


@pytest.fixture
def received():
    return []


@pytest.fixture
def pipeline(settings, resolver, registry, received):
    def handler(request):
        received.append(request)
        return httpx.Response(200)

    p = Pipeline.from_settings(settings, resolver=resolver, registry=registry, transport=httpx.MockTransport(handler))
    yield p
    p.close()


class TestWiring:
    def test_stage_scoped_names(self, pipeline):
        assert pipeline.store.bucket == "piiwatch-logs-test"
        assert pipeline.scheduler.name == "Function-Logs-PII-test"
        assert pipeline.router.rules[0].destination.name == "Teams-Destination-test"

    def test_destination_uses_password_reference(self, settings):
        destination = destination_for(settings)
        assert destination.authorization.username == "fake-teams-user"
        assert destination.authorization.password_ref == PASSWORD_REF

    def test_retention_profiles(self, settings):
        assert retention_for(settings).mode == RetentionMode.EXPIRE
        archive = settings.model_copy(update={"retention_profile": "archive"})
        assert retention_for(archive).mode == RetentionMode.ARCHIVE

    def test_missing_master_key_is_fatal(self, settings, registry):
        with pytest.raises(MissingConfigError):
            Pipeline.from_settings(settings, resolver=SecretsResolver([DictSecretBackend()]), registry=registry)

    def test_invalid_master_key_is_fatal(self, settings, registry):
        resolver = SecretsResolver([DictSecretBackend({"master_key": "dG9vIHNob3J0"})])
        with pytest.raises(InvalidConfigError):
            Pipeline.from_settings(settings, resolver=resolver, registry=registry)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_finding_reaches_webhook(self, pipeline, received, registry):
        await pipeline.router.subscribe(pipeline.bus)
        pipeline.emit("checkout-fn", "order 1001 placed by jane@example.com")
        pipeline.emit("checkout-fn", "GET /health 200")

        obj = pipeline.sink.drain()
        assert obj.record_count == 2
        assert pipeline.buffer.depth == 0

        result = await pipeline.tick()

        assert result.outcome == TickOutcome.SUBMITTED
        assert len(received) == 1
        body = json.loads(received[0].content)
        assert body["title"] == f"Finding for job {result.job_id}"
        assert body["severity"] == "Low"
        assert received[0].headers["Authorization"].startswith("Basic ")
        assert registry.value("alerts_delivered_total") == 1.0
        assert pipeline.scheduler.active_jobs == {}

    @pytest.mark.asyncio
    async def test_clean_logs_produce_no_alert(self, pipeline, received):
        await pipeline.router.subscribe(pipeline.bus)
        pipeline.emit("checkout-fn", "GET /health 200")
        pipeline.sink.drain()
        await pipeline.tick()
        assert received == []

    @pytest.mark.asyncio
    async def test_second_tick_in_same_epoch_is_not_due(self, pipeline):
        await pipeline.tick()
        assert (await pipeline.tick()).outcome == TickOutcome.NOT_DUE
        assert pipeline.service.count_jobs() == 1


class TestSinkWorker:
    def test_unexpected_poll_error_does_not_stop_the_worker(self, pipeline, registry, monkeypatch):
        pipeline.settings = pipeline.settings.model_copy(update={"sink_poll_interval": 0.01})
        calls = []

        def poll():
            calls.append(len(calls))
            if len(calls) == 1:
                raise ValueError("unexpected")
            if len(calls) >= 3:
                pipeline._stop.set()

        monkeypatch.setattr(pipeline.sink, "poll", poll)
        worker = threading.Thread(target=pipeline._sink_loop, daemon=True)
        worker.start()
        worker.join(timeout=5.0)

        assert not worker.is_alive()
        assert len(calls) >= 3
        assert registry.value("sink_poll_failures_total") == 1.0
