"""Tests for the in-process metrics registry."""

import pytest

from piiwatch.observability.metrics import MetricsRegistry


class TestMetricsRegistry:
    def test_counter(self):
        registry = MetricsRegistry()
        registry.counter("batches_flushed_total").inc()
        registry.counter("batches_flushed_total").inc(2)
        assert registry.value("batches_flushed_total") == 3.0

    def test_counter_cannot_decrease(self):
        registry = MetricsRegistry()
        with pytest.raises(ValueError):
            registry.counter("c").inc(-1)

    def test_gauge(self):
        registry = MetricsRegistry()
        gauge = registry.gauge("buffer_depth")
        gauge.set(10)
        gauge.inc(5)
        gauge.dec(3)
        assert registry.value("buffer_depth") == 12.0

    def test_untouched_metric_is_zero(self):
        assert MetricsRegistry().value("never_touched_total") == 0.0

    def test_kind_conflict(self):
        registry = MetricsRegistry()
        registry.counter("x")
        with pytest.raises(TypeError):
            registry.gauge("x")

    def test_labelled_values_and_prometheus_text(self):
        registry = MetricsRegistry()
        registry.counter("alerts_delivered_total", "Alerts delivered").labels(destination="teams").inc()
        registry.gauge("buffer_depth").set(4)
        text = registry.to_prometheus()
        assert "# HELP alerts_delivered_total Alerts delivered" in text
        assert 'alerts_delivered_total{destination="teams"} 1.0' in text
        assert "# TYPE buffer_depth gauge" in text
        assert "buffer_depth 4" in text
        assert registry.value("alerts_delivered_total", destination="teams") == 1.0
        assert len(registry.collect()) == 2
