"""Finding routing: rules, alert rendering and authenticated webhook dispatch."""

from piiwatch.routing.dispatch import DeliveryFailureLog, DeliveryResult, WebhookDispatcher
from piiwatch.routing.render import AlertRenderer
from piiwatch.routing.router import FindingRouter

__all__ = ["AlertRenderer", "DeliveryFailureLog", "DeliveryResult", "FindingRouter", "WebhookDispatcher"]
