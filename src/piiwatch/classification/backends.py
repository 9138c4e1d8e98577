"""Timing backends for the classification scheduler.

A backend only decides *when* to tick; the scheduler decides what a tick
does (derive the cadence epoch, submit or skip). The split lets tests drive
ticks by hand and production run them on a daemon thread.

::

    ThreadSchedulerBackend.start(tick_callback, interval_seconds)
        daemon thread:
            while not stop_event.wait(interval):
                tick_count += 1
                asyncio.run(tick_callback())
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from piiwatch.core.logging import get_logger
from piiwatch.core.timestamps import utc_now

logger = get_logger(__name__)

TickCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable scheduler timing backends."""

    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 60.0) -> None:
        """Start calling ``tick_callback`` every ``interval_seconds``."""
        ...

    def stop(self) -> None:
        """Stop gracefully, letting the current tick finish."""
        ...

    def health(self) -> dict[str, Any]:
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    failed_ticks: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "failed_ticks": self.failed_ticks,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }


class ThreadSchedulerBackend:
    """Ticks on a daemon thread, one ``asyncio.run`` per tick.

    A tick that raises is logged and counted; the loop keeps running. Set
    ``tick_immediately`` to run the first tick at start instead of after
    the first interval.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(scheduler_tick, interval_seconds=60.0)
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, *, tick_immediately: bool = True, join_timeout: float = 5.0) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._failed_ticks = 0
        self._last_tick: datetime | None = None
        self._interval = 60.0
        self._started = False
        self._lock = threading.Lock()
        self.tick_immediately = tick_immediately
        self.join_timeout = join_timeout

    def _tick(self, tick_callback: TickCallback) -> None:
        with self._lock:
            self._tick_count += 1
            self._last_tick = utc_now()
        try:
            asyncio.run(tick_callback())
        except Exception as e:
            with self._lock:
                self._failed_ticks += 1
            logger.exception("scheduler_tick_failed", error=str(e))

    def start(self, tick_callback: TickCallback, interval_seconds: float = 60.0) -> None:
        if self._started:
            logger.warning("scheduler_backend_already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("scheduler_backend_started", backend=self.name, interval_seconds=interval_seconds)
            if self.tick_immediately and not self._stop_event.is_set():
                self._tick(tick_callback)
            while not self._stop_event.wait(interval_seconds):
                self._tick(tick_callback)
            logger.info("scheduler_backend_stopped", backend=self.name, tick_count=self._tick_count)

        self._thread = threading.Thread(target=_loop, daemon=True, name="piiwatch-scheduler")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        if not self._started:
            return
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=self.join_timeout)
            if self._thread.is_alive():
                logger.warning("scheduler_thread_not_stopped", backend=self.name)
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def get_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            failed_ticks=self._failed_ticks,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()


__all__ = ["TickCallback", "SchedulerBackend", "BackendHealth", "ThreadSchedulerBackend"]
