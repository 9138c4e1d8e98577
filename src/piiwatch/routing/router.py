"""Finding router: event bus → routing rules → rendered alert → webhook.

The router subscribes to the bus for every detail type its rules name. Each
incoming event is matched exactly against the rules; for every match the
event is rendered for the rule's destination format and dispatched.

- A render failure is a data-shape error: logged, counted in
  ``render_errors_total`` and skipped. It is never retried.
- Delivery failures are handled (and recorded) by the dispatcher; the
  router never raises for them, so one bad destination does not stop the
  others.
"""

from __future__ import annotations

from collections.abc import Iterable

from piiwatch.core.errors import RenderError
from piiwatch.core.events import Event, EventBus
from piiwatch.core.logging import get_logger
from piiwatch.core.models import RoutingRule
from piiwatch.observability.metrics import MetricsRegistry, get_registry
from piiwatch.routing.dispatch import DeliveryResult, WebhookDispatcher
from piiwatch.routing.render import AlertRenderer
from piiwatch.routing.rules import match_rules, validate_rules

logger = get_logger(__name__)


class FindingRouter:
    """Routes finding events to their destinations."""

    def __init__(
        self,
        rules: Iterable[RoutingRule],
        renderer: AlertRenderer,
        dispatcher: WebhookDispatcher,
        *,
        registry: MetricsRegistry | None = None,
    ):
        self.rules = validate_rules(rules)
        self.renderer = renderer
        self.dispatcher = dispatcher
        self._registry = registry or get_registry()
        self._subscriptions: list[str] = []

    async def subscribe(self, bus: EventBus) -> list[str]:
        """Register a handler for each detail type the rules route."""
        for detail_type in sorted({rule.detail_type for rule in self.rules}):
            self._subscriptions.append(await bus.subscribe(detail_type, self.handle))
        logger.info("router_subscribed", rules=[rule.name for rule in self.rules], subscriptions=len(self._subscriptions))
        return list(self._subscriptions)

    async def unsubscribe(self, bus: EventBus) -> None:
        for sub_id in self._subscriptions:
            await bus.unsubscribe(sub_id)
        self._subscriptions.clear()

    async def handle(self, event: Event) -> list[DeliveryResult]:
        """Route one event; returns one result per delivered-to destination."""
        results: list[DeliveryResult] = []
        matched = match_rules(self.rules, event)
        if not matched:
            logger.debug("event_not_routed", source=event.source, detail_type=event.event_type)
            return results

        document = event.to_document()
        for rule in matched:
            try:
                payload = self.renderer.render(document, rule.destination.format)
            except RenderError as exc:
                self._registry.counter("render_errors_total").inc()
                logger.warning(
                    "render_failed",
                    rule=rule.name,
                    event_id=event.event_id,
                    field_path=exc.field_path,
                    error=exc.message,
                )
                continue
            results.append(await self.dispatcher.deliver(rule.destination, payload))
        return results


__all__ = ["FindingRouter"]
