"""Authenticated webhook delivery with bounded retry and a failure ledger.

Manifesto:
    Any HTTP(S) endpoint should be a valid alert target, and a failed alert
    must never disappear silently.

- Each delivery is a JSON POST with HTTP Basic auth. The password is
  resolved from its reference at dispatch time and never logged.
- Non-2xx responses, connection errors and timeouts are transient and
  retried with exponential backoff (5 attempts by default).
- When the budget is spent the delivery is recorded in the
  :class:`DeliveryFailureLog`, counted and logged; it is not requeued.

Delivery is at-least-once: a receiver that accepted a request whose response
was lost will see it again.

Example::

    dispatcher = WebhookDispatcher(SecretsResolver(), failures=DeliveryFailureLog(":memory:"))
    result = await dispatcher.deliver(destination, payload)
    if not result.success:
        ...
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from piiwatch.core.errors import (
    DeliveryAttemptError,
    NetworkError,
    PiiWatchError,
    RetryExhaustedError,
    TimeoutError,
)
from piiwatch.core.logging import get_logger
from piiwatch.core.models import AlertPayload, Destination
from piiwatch.core.secrets import SecretsResolver
from piiwatch.core.timestamps import from_iso8601, utc_now
from piiwatch.execution.retry import ExponentialBackoff, RetryContext
from piiwatch.observability.metrics import MetricsRegistry, get_registry

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of one delivery (all of its attempts)."""

    destination: str
    success: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None
    failure_id: str | None = None


# ---------------------------------------------------------------------------
# Failure ledger
# ---------------------------------------------------------------------------


@dataclass
class DeliveryFailure:
    """A delivery that exhausted its retries."""

    id: str
    destination: str
    endpoint: str
    payload: dict[str, Any]
    error: str
    attempts: int
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


_FAILURES_SCHEMA = """
CREATE TABLE IF NOT EXISTS delivery_failures (
    id TEXT PRIMARY KEY,
    destination TEXT NOT NULL,
    endpoint TEXT NOT NULL,
    payload TEXT NOT NULL,
    error TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    resolved_at TEXT,
    resolved_by TEXT
)
"""


class DeliveryFailureLog:
    """Dead-letter table of failed alert deliveries.

    Operators list and resolve entries; nothing is retried automatically.
    """

    def __init__(self, path: str | Path = ":memory:"):
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.execute(_FAILURES_SCHEMA)
        self._conn.commit()
        self._lock = threading.Lock()

    def record(
        self,
        destination: Destination,
        payload: AlertPayload,
        error: str,
        attempts: int,
    ) -> DeliveryFailure:
        entry = DeliveryFailure(
            id=str(uuid.uuid4()),
            destination=destination.name,
            endpoint=destination.endpoint,
            payload=payload.body,
            error=error,
            attempts=attempts,
        )
        with self._lock:
            self._conn.execute(
                "INSERT INTO delivery_failures (id, destination, endpoint, payload, error, attempts, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.destination,
                    entry.endpoint,
                    json.dumps(entry.payload),
                    entry.error,
                    entry.attempts,
                    entry.created_at.isoformat(),
                ),
            )
            self._conn.commit()
        return entry

    def get(self, failure_id: str) -> DeliveryFailure | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT id, destination, endpoint, payload, error, attempts, created_at, resolved_at, resolved_by "
                "FROM delivery_failures WHERE id = ?",
                (failure_id,),
            ).fetchone()
        return self._row_to_failure(row) if row else None

    def list_unresolved(self, limit: int = 100) -> list[DeliveryFailure]:
        return self._list("WHERE resolved_at IS NULL", limit)

    def list_all(self, limit: int = 100) -> list[DeliveryFailure]:
        return self._list("", limit)

    def _list(self, where: str, limit: int) -> list[DeliveryFailure]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, destination, endpoint, payload, error, attempts, created_at, resolved_at, resolved_by "
                f"FROM delivery_failures {where} ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_failure(row) for row in rows]

    def resolve(self, failure_id: str, resolved_by: str = "operator") -> bool:
        """Mark an entry handled. Returns False if it is unknown or already resolved."""
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE delivery_failures SET resolved_at = ?, resolved_by = ? WHERE id = ? AND resolved_at IS NULL",
                (utc_now().isoformat(), resolved_by, failure_id),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def count_unresolved(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM delivery_failures WHERE resolved_at IS NULL").fetchone()[0]

    @staticmethod
    def _row_to_failure(row: tuple) -> DeliveryFailure:
        return DeliveryFailure(
            id=row[0],
            destination=row[1],
            endpoint=row[2],
            payload=json.loads(row[3]),
            error=row[4],
            attempts=row[5],
            created_at=from_iso8601(row[6]),
            resolved_at=from_iso8601(row[7]),
            resolved_by=row[8],
        )

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class WebhookDispatcher:
    """POSTs rendered alerts to their destination.

    Args:
        resolver: Resolves credential references at dispatch time
        failures: Ledger for exhausted deliveries
        retry: Backoff for delivery attempts (5 attempts by default)
        transport: httpx transport override (``httpx.MockTransport`` in tests)
        sleep: Async backoff sleep
        registry: Metrics registry
    """

    def __init__(
        self,
        resolver: SecretsResolver,
        *,
        failures: DeliveryFailureLog | None = None,
        retry: ExponentialBackoff | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        registry: MetricsRegistry | None = None,
    ):
        self._resolver = resolver
        self.failures = failures or DeliveryFailureLog()
        self.retry = retry or ExponentialBackoff(max_attempts=5, base_delay=1.0)
        self._transport = transport
        self._sleep = sleep
        self._registry = registry or get_registry()

    def _auth(self, destination: Destination) -> httpx.BasicAuth | None:
        if destination.authorization is None:
            return None
        password = self._resolver.resolve_secret_value(destination.authorization.password_ref)
        return httpx.BasicAuth(destination.authorization.username, password.get_secret())

    async def _attempt(self, client: httpx.AsyncClient, destination: Destination, payload: AlertPayload) -> int:
        auth = self._auth(destination)
        try:
            response = await client.post(
                destination.endpoint,
                json=payload.body,
                auth=auth if auth is not None else httpx.USE_CLIENT_DEFAULT,
                timeout=destination.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"Timed out after {destination.timeout_seconds}s", cause=exc).with_context(
                component="dispatch", url=destination.endpoint
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{type(exc).__name__}: {exc}", cause=exc).with_context(
                component="dispatch", url=destination.endpoint
            ) from exc

        if not response.is_success:
            raise DeliveryAttemptError(
                f"HTTP {response.status_code} from {destination.name}", status_code=response.status_code
            ).with_context(component="dispatch", url=destination.endpoint)
        return response.status_code

    async def deliver(self, destination: Destination, payload: AlertPayload) -> DeliveryResult:
        """Deliver ``payload`` to ``destination``; never raises for delivery failures."""

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "delivery_attempt_failed",
                destination=destination.name,
                attempt=attempt,
                delay=round(delay, 3),
                error=str(error),
            )

        ctx = RetryContext(self.retry, on_retry=on_retry, async_sleep=self._sleep)
        # One client per delivery: ticks run in short-lived event loops.
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                status = await ctx.run_async(self._attempt, client, destination, payload)
            except RetryExhaustedError as exc:
                return self._failed(destination, payload, ctx.attempts, exc.last_error or exc)
            except PiiWatchError as exc:
                return self._failed(destination, payload, ctx.attempts, exc)

        self._registry.counter("alerts_delivered_total").inc()
        logger.info(
            "alert_delivered",
            destination=destination.name,
            title=payload.title,
            status_code=status,
            attempts=ctx.attempts,
        )
        return DeliveryResult(destination=destination.name, success=True, attempts=ctx.attempts, status_code=status)

    def _failed(
        self, destination: Destination, payload: AlertPayload, attempts: int, error: Exception
    ) -> DeliveryResult:
        status = error.status_code if isinstance(error, DeliveryAttemptError) else None
        entry = self.failures.record(destination, payload, str(error), attempts)
        self._registry.counter("alert_delivery_failures_total").inc()
        logger.error(
            "delivery_failed",
            destination=destination.name,
            url=destination.endpoint,
            attempts=attempts,
            status_code=status,
            error=str(error),
            failure_id=entry.id,
        )
        return DeliveryResult(
            destination=destination.name,
            success=False,
            attempts=attempts,
            status_code=status,
            error=str(error),
            failure_id=entry.id,
        )


__all__ = ["DeliveryResult", "DeliveryFailure", "DeliveryFailureLog", "WebhookDispatcher"]
