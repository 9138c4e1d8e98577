"""Event bus between the classification service and the finding router.

Why This Package Exists
-----------------------
Classification jobs finish asynchronously and the router must hear about
every finding they produce without either side importing the other. The
``EventBus`` protocol decouples the producer (``pii-scanner``) from its
consumers; delivery is at-least-once and unordered, so subscribers must
tolerate duplicates.

Usage::

    from piiwatch.core.events import Event
    from piiwatch.core.events.memory import InMemoryEventBus

    bus = InMemoryEventBus()

    async def handler(event: Event):
        print(event.payload["classificationDetails"]["jobId"])

    await bus.subscribe("Finding", handler)
    await bus.publish(Event(event_type="Finding", source="pii-scanner", payload=detail))

Modules
-------
memory      InMemoryEventBus -- in-process, single node
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from piiwatch.core.timestamps import utc_now

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
]


# ── Event Model ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Event:
    """Event envelope published on the bus.

    Attributes:
        event_type: Detail type (e.g. ``Finding``)
        source: Emitting system (e.g. ``pii-scanner``)
        payload: Event detail document
        timestamp: When the event occurred (UTC)
        event_id: Unique event identifier
    """

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if the event type matches a subscription pattern.

        ``*`` matches everything; any other pattern must equal the type.
        """
        return pattern == "*" or self.event_type == pattern

    def to_document(self) -> dict[str, Any]:
        """Envelope as a document, the shape alert templates read paths from."""
        return {
            "id": self.event_id,
            "source": self.source,
            "detail-type": self.event_type,
            "time": self.timestamp.isoformat(),
            "detail": self.payload,
        }


# ── Type Aliases ─────────────────────────────────────────────────────────

EventHandler = Callable[[Event], Awaitable[None]]


# ── EventBus Protocol ────────────────────────────────────────────────────


@runtime_checkable
class EventBus(Protocol):
    """Protocol for event bus implementations."""

    async def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        ...

    async def subscribe(self, event_type: str, handler: EventHandler) -> str:
        """Subscribe to events whose type matches ``event_type``.

        Returns:
            Subscription ID for later unsubscription
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        """Remove a subscription."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...
