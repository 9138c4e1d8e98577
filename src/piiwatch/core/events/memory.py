"""
In-memory event bus.

Events are handed to every matching handler as soon as they are published
and are not persisted. Publishers may live on different threads (the
scheduler backend runs each tick in its own event loop), so the
subscription table is guarded by a thread lock rather than an asyncio one.

Tags:
    events, in-memory, asyncio, testing, piiwatch
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass

from piiwatch.core.events import Event, EventHandler
from piiwatch.core.logging import get_logger

__all__ = ["InMemoryEventBus"]

logger = get_logger(__name__)


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler


class InMemoryEventBus:
    """In-process event bus for single-node deployments.

    Handlers run concurrently with ``asyncio.gather``. A handler that raises
    is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._closed = False
        self.published_count = 0

    async def publish(self, event: Event) -> None:
        if self._closed:
            logger.warning("event_dropped_bus_closed", event_type=event.event_type, event_id=event.event_id)
            return

        with self._lock:
            handlers = [(sub.id, sub.handler) for sub in self._subscriptions.values() if event.matches(sub.pattern)]
            self.published_count += 1

        if not handlers:
            logger.debug("event_unmatched", event_type=event.event_type, source=event.source)
            return

        async def safe_call(sub_id: str, handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub_id,
                    event_type=event.event_type,
                    event_id=event.event_id,
                    error=str(e),
                )

        await asyncio.gather(*[safe_call(sub_id, handler) for sub_id, handler in handlers])

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=event_type, handler=handler)
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    async def close(self) -> None:
        """Mark bus as closed and clear subscriptions."""
        self._closed = True
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        """Number of active subscriptions."""
        return len(self._subscriptions)
