"""In-process metrics."""

from piiwatch.observability.metrics import Counter, Gauge, MetricsRegistry, get_registry

__all__ = ["Counter", "Gauge", "MetricsRegistry", "get_registry"]
