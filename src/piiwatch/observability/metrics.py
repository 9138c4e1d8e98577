"""Prometheus-style in-process metrics.

Exhausted retries, saturation and skipped work are operator-visible through
these counters (alongside an error log event); nothing here crashes the
process that owns the failing component.

Metric types:
- Counter: Monotonically increasing value
- Gauge: Value that can go up or down

Well-known metrics:
    records_appended_total, buffer_saturated_total, batches_flushed_total,
    flush_failures_total, flush_exhausted_total, jobs_submitted_total,
    ticks_skipped_total, alerts_delivered_total,
    alert_delivery_failures_total, render_errors_total (counters);
    buffer_depth (gauge)

Example:
    >>> registry = MetricsRegistry()
    >>> registry.counter("batches_flushed_total").inc()
    >>> registry.value("batches_flushed_total")
    1.0
    >>> registry.gauge("buffer_depth").set(42)
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Labels:
    """Immutable label set for metrics."""

    _labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str] | None) -> Labels:
        if not d:
            return cls(())
        return cls(tuple(sorted(d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self._labels)


class Metric(ABC):
    """Base class for metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()
        self._values: dict[Labels, float] = {}

    def get(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(Labels.from_dict(labels), 0.0)

    def collect(self) -> list[dict[str, Any]]:
        """Collect metric values for export."""
        with self._lock:
            return [
                {"name": self.name, "type": self.kind, "labels": labels.to_dict(), "value": value}
                for labels, value in self._values.items()
            ]

    @abstractmethod
    def _apply(self, labels: Labels, value: float) -> None: ...


class Counter(Metric):
    """A monotonically increasing counter."""

    kind = "counter"

    def labels(self, **kwargs: str) -> CounterChild:
        return CounterChild(self, Labels.from_dict(kwargs))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    def _apply(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value


class CounterChild:
    """Counter with fixed labels."""

    def __init__(self, counter: Counter, labels: Labels):
        self._counter = counter
        self._labels = labels

    def inc(self, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        self._counter._apply(self._labels, value)


class Gauge(Metric):
    """A value that can go up or down (queue depth, held batches)."""

    kind = "gauge"

    def labels(self, **kwargs: str) -> GaugeChild:
        return GaugeChild(self, Labels.from_dict(kwargs))

    def set(self, value: float) -> None:
        self.labels().set(value)

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    def dec(self, value: float = 1.0) -> None:
        self.labels().inc(-value)

    def _apply(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def _set(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = value


class GaugeChild:
    """Gauge with fixed labels."""

    def __init__(self, gauge: Gauge, labels: Labels):
        self._gauge = gauge
        self._labels = labels

    def set(self, value: float) -> None:
        self._gauge._set(self._labels, value)

    def inc(self, value: float = 1.0) -> None:
        self._gauge._apply(self._labels, value)


class MetricsRegistry:
    """Registry of all metrics for collection and export."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, cls: type[Metric], description: str) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = cls(name, description)
                self._metrics[name] = metric
            elif not isinstance(metric, cls):
                raise TypeError(f"Metric {name!r} already registered as {metric.kind}")
            return metric

    def counter(self, name: str, description: str = "") -> Counter:
        """Get or create a counter."""
        return self._get_or_create(name, Counter, description)

    def gauge(self, name: str, description: str = "") -> Gauge:
        """Get or create a gauge."""
        return self._get_or_create(name, Gauge, description)

    def value(self, name: str, **labels: str) -> float:
        """Current value of a metric, 0.0 when it was never touched."""
        with self._lock:
            metric = self._metrics.get(name)
        return metric.get(**labels) if metric is not None else 0.0

    def collect(self) -> list[dict[str, Any]]:
        """Collect all metrics."""
        with self._lock:
            metrics = list(self._metrics.values())
        results: list[dict[str, Any]] = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def to_prometheus(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines: list[str] = []
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.name)
        for metric in metrics:
            if metric.description:
                lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for sample in metric.collect():
                label_str = ",".join(f'{k}="{v}"' for k, v in sample["labels"].items())
                suffix = f"{{{label_str}}}" if label_str else ""
                lines.append(f"{metric.name}{suffix} {sample['value']}")
        return "\n".join(lines) + ("\n" if lines else "")


_registry = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    """Process-wide registry used when a component is not given one."""
    return _registry


__all__ = [
    "Labels",
    "Metric",
    "Counter",
    "Gauge",
    "MetricsRegistry",
    "get_registry",
]
