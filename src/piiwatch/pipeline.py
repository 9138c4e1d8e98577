"""Pipeline wiring: build every component from settings and run the workers.

Components are constructed explicitly and handed their collaborators; they
communicate only through the log buffer, the object store and the event bus.

::

    emitters ──append──▶ LogBuffer ──poll──▶ BatchDeliverySink ──put──▶ ObjectStore
                                                                          │
    ThreadSchedulerBackend ──tick──▶ ClassificationScheduler ──create_job──┤
                                                                          ▼
                         FindingRouter ◀──Finding── EventBus ◀── LocalClassificationService

Workers:
    - sink worker thread: polls the sink every ``sink_poll_interval``
    - scheduler backend thread: scheduler tick, pending scans, retention
    - router: runs inside the bus publish of the scanner
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field

import httpx

from piiwatch.buffer.log_buffer import LogBuffer
from piiwatch.classification.backends import SchedulerBackend, ThreadSchedulerBackend
from piiwatch.classification.scheduler import ClassificationScheduler, TickResult
from piiwatch.classification.service import LocalClassificationService
from piiwatch.core.errors import MissingConfigError, PiiWatchError
from piiwatch.core.events.memory import InMemoryEventBus
from piiwatch.core.logging import LogContext, get_logger
from piiwatch.core.models import (
    BasicAuthorization,
    Destination,
    JobScope,
    LogRecord,
    RetentionPolicy,
)
from piiwatch.core.secrets import MissingSecretError, SecretsResolver
from piiwatch.core.settings import PiiWatchSettings
from piiwatch.execution.retry import ExponentialBackoff
from piiwatch.observability.metrics import MetricsRegistry, get_registry
from piiwatch.routing.dispatch import DeliveryFailureLog, WebhookDispatcher
from piiwatch.routing.render import AlertRenderer
from piiwatch.routing.router import FindingRouter
from piiwatch.routing.rules import finding_rule
from piiwatch.sink.codec import BatchCodec, EnvelopeCipher
from piiwatch.sink.delivery import BatchDeliverySink
from piiwatch.sink.object_store import LocalObjectStore, ObjectStore

logger = get_logger(__name__)


def retention_for(settings: PiiWatchSettings) -> RetentionPolicy:
    if settings.retention_profile == "archive":
        return RetentionPolicy.archive()
    return RetentionPolicy.logs(hot_days=settings.hot_days)


def destination_for(settings: PiiWatchSettings) -> Destination:
    return Destination(
        name=f"Teams-Destination-{settings.stage}",
        endpoint=settings.webhook_url,
        authorization=BasicAuthorization(settings.webhook_username, settings.webhook_password_ref),
        format=settings.webhook_format,
        timeout_seconds=settings.webhook_timeout,
    )


@dataclass
class Pipeline:
    """A fully wired stage. Build with :meth:`from_settings`."""

    settings: PiiWatchSettings
    buffer: LogBuffer
    store: ObjectStore
    sink: BatchDeliverySink
    bus: InMemoryEventBus
    service: LocalClassificationService
    scheduler: ClassificationScheduler
    router: FindingRouter
    failures: DeliveryFailureLog
    backend: SchedulerBackend
    registry: MetricsRegistry
    _stop: threading.Event = field(default_factory=threading.Event, init=False)
    _sink_thread: threading.Thread | None = field(default=None, init=False)

    @classmethod
    def from_settings(
        cls,
        settings: PiiWatchSettings,
        *,
        resolver: SecretsResolver | None = None,
        registry: MetricsRegistry | None = None,
        store: ObjectStore | None = None,
        backend: SchedulerBackend | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Pipeline:
        """Construct every component.

        Raises:
            ConfigError: The encryption key reference cannot be resolved or is invalid
        """
        resolver = resolver or SecretsResolver()
        registry = registry or get_registry()

        cipher = EnvelopeCipher(settings.encryption_key_ref, resolver)
        try:
            cipher.check()
        except MissingSecretError as exc:
            raise MissingConfigError(
                "encryption_key_ref", f"Encryption key {settings.encryption_key_ref} could not be resolved"
            ) from exc
        codec = BatchCodec(cipher)

        buffer = LogBuffer(
            settings.buffer_path,
            capacity=settings.buffer_capacity,
            full_policy=settings.buffer_full_policy,
            block_timeout=settings.buffer_block_timeout,
            registry=registry,
        )
        store = store or LocalObjectStore(settings.storage_dir, settings.bucket_name, retention_for(settings))
        sink = BatchDeliverySink(
            buffer,
            store,
            codec,
            prefix=settings.object_prefix,
            threshold_bytes=settings.flush_threshold_bytes,
            window_seconds=settings.flush_window_seconds,
            retry=ExponentialBackoff(max_attempts=settings.flush_max_attempts),
            registry=registry,
        )

        bus = InMemoryEventBus()
        service = LocalClassificationService(
            settings.jobs_path, {store.bucket: store}, codec, bus, registry=registry
        )
        scheduler = ClassificationScheduler(
            service,
            name=settings.job_name,
            scope=JobScope(bucket=store.bucket, prefix=settings.object_prefix),
            cadence=settings.classification_cadence,
            initial_run=settings.initial_run,
            overlap=settings.overlap_policy,
            retry=ExponentialBackoff(max_attempts=settings.submit_max_attempts),
            registry=registry,
        )
        service.add_completion_listener(scheduler.on_job_completed)

        failures = DeliveryFailureLog(settings.failures_path)
        dispatcher = WebhookDispatcher(
            resolver,
            failures=failures,
            retry=ExponentialBackoff(max_attempts=settings.webhook_max_attempts, base_delay=1.0),
            transport=transport,
            registry=registry,
        )
        router = FindingRouter(
            [finding_rule(f"Teams-Rule-{settings.stage}", destination_for(settings))],
            AlertRenderer(region=settings.console_region, issue_board_url=settings.issue_board_url),
            dispatcher,
            registry=registry,
        )

        return cls(
            settings=settings,
            buffer=buffer,
            store=store,
            sink=sink,
            bus=bus,
            service=service,
            scheduler=scheduler,
            router=router,
            failures=failures,
            backend=backend or ThreadSchedulerBackend(),
            registry=registry,
        )

    # ── Operations ───────────────────────────────────────────────────────

    def emit(self, source: str, text: str) -> int:
        """Append one log line to the buffer; returns its offset."""
        return self.buffer.append(LogRecord.from_text(source, text))

    async def tick(self) -> TickResult:
        """One scheduler beat: submit if due, run submitted scans, apply retention."""
        result = await self.scheduler.tick()
        await self.service.run_pending()
        self.store.apply_retention()
        return result

    # ── Lifecycle ────────────────────────────────────────────────────────

    def _sink_loop(self) -> None:
        with LogContext(stage=self.settings.stage, component="sink"):
            logger.info("sink_worker_started", poll_interval=self.settings.sink_poll_interval)
            while not self._stop.wait(self.settings.sink_poll_interval):
                try:
                    self.sink.poll()
                except PiiWatchError as exc:
                    self.registry.counter("sink_poll_failures_total").inc()
                    logger.error("sink_poll_failed", **exc.to_dict())
                except Exception as exc:
                    self.registry.counter("sink_poll_failures_total").inc()
                    logger.exception("sink_poll_failed", error_type=type(exc).__name__, message=str(exc))
            logger.info("sink_worker_stopped")

    def start(self) -> None:
        asyncio.run(self.router.subscribe(self.bus))
        self._stop.clear()
        self._sink_thread = threading.Thread(target=self._sink_loop, daemon=True, name="piiwatch-sink")
        self._sink_thread.start()
        self.backend.start(self.tick, interval_seconds=self.settings.scheduler_interval)
        logger.info("pipeline_started", stage=self.settings.stage, bucket=self.store.bucket)

    def stop(self) -> None:
        """Stop workers and flush whatever is still buffered."""
        self.backend.stop()
        self._stop.set()
        if self._sink_thread is not None:
            self._sink_thread.join(timeout=10.0)
        try:
            self.sink.drain()
        except PiiWatchError as exc:
            logger.error("sink_drain_failed", **exc.to_dict())
        self.close()
        logger.info("pipeline_stopped", stage=self.settings.stage)

    def close(self) -> None:
        self.buffer.close()
        self.service.close()
        self.failures.close()


__all__ = ["Pipeline", "retention_for", "destination_for"]
