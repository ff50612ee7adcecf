"""
Tests for observability/metrics.py - Metrics Collection.

Covers:
- Series key formatting
- Counters, gauges, histograms and timers
- Buffer and histogram bounds, flush and reset
- OpenTelemetry mirroring through an in-memory reader
- Flush loop lifecycle
"""
import asyncio
from unittest.mock import patch

import pytest
from opentelemetry.sdk.metrics import MeterProvider as SDKMeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from core.config import MetricsConfig
from core.types import HealthState
from observability.metrics import (
    HistogramData,
    MetricsCollector,
    build_meter_provider,
    format_metric_key,
    percentile,
)


def collected(reader):
    """Map metric name -> data points from an in-memory reader."""
    points = {}
    data = reader.get_metrics_data()
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                points[metric.name] = list(metric.data.data_points)
    return points


# =============================================================================
# Key Format Tests
# =============================================================================


class TestFormatMetricKey:
    """Tests for format_metric_key."""

    def test_untagged(self):
        assert format_metric_key("cache.hit") == "cache.hit"
        assert format_metric_key("cache.hit", {}) == "cache.hit"

    def test_tags_sorted_by_key(self):
        key = format_metric_key("errors.total", {"service": "deck", "error_type": "X"})
        assert key == "errors.total{error_type=X,service=deck}"


class TestPercentile:
    """Tests for the nearest-rank percentile helper."""

    def test_nearest_rank(self):
        values = list(range(1, 11))

        assert percentile(values, 50) == 5
        assert percentile(values, 95) == 10
        assert percentile(values, 100) == 10

    def test_empty(self):
        assert percentile([], 95) == 0.0

    def test_histogram_summary(self):
        data = HistogramData.create(max_values=100)
        for value in (10, 20, 30, 40):
            data.record(value)

        summary = data.summary()

        assert summary["count"] == 4
        assert summary["sum"] == 100
        assert summary["min"] == 10
        assert summary["max"] == 40
        assert summary["mean"] == 25


# =============================================================================
# Recording Tests
# =============================================================================


class TestRecording:
    """Tests for in-process aggregates."""

    def test_increment_and_decrement(self, metrics):
        metrics.increment("decks.created")
        metrics.increment("decks.created", 2)
        metrics.decrement("decks.created")

        assert metrics.get_counter("decks.created") == 2

    def test_counters_separated_by_tags(self, metrics):
        metrics.increment("cache.hit", tags={"cache": "cards"})
        metrics.increment("cache.hit", tags={"cache": "decks"})
        metrics.increment("cache.hit", tags={"cache": "decks"})

        assert metrics.get_counter("cache.hit", {"cache": "cards"}) == 1
        assert metrics.get_counter("cache.hit", {"cache": "decks"}) == 2
        assert metrics.get_counter("cache.hit") == 0

    def test_gauge_keeps_latest(self, metrics):
        metrics.gauge("cache.keys", 3)
        metrics.gauge("cache.keys", 7)

        assert metrics.get_gauge("cache.keys") == 7
        assert metrics.get_gauge("missing") is None

    def test_histogram(self, metrics):
        for value in (5, 1, 3):
            metrics.histogram("deck.size", value)

        summary = metrics.get_histogram("deck.size")

        assert summary["count"] == 3
        assert summary["min"] == 1
        assert summary["max"] == 5
        assert metrics.get_histogram("missing") is None

    def test_histogram_window_is_bounded(self, logger):
        metrics = MetricsCollector(logger, MetricsConfig(max_histogram_values=5))

        for value in range(10):
            metrics.histogram("deck.size", value)

        summary = metrics.get_histogram("deck.size")
        assert summary["count"] == 10
        assert summary["min"] == 0
        # Percentiles only see the last five values
        assert summary["p50"] == 7

    def test_timer_records_once(self, metrics):
        timer = metrics.start_timer("deck.validate", {"format": "standard"})

        first = timer.stop()
        second = timer.stop()

        assert first == second
        assert first >= 0
        assert timer.stopped
        summary = metrics.get_histogram("deck.validate", {"format": "standard"})
        assert summary["count"] == 1

    def test_timer_stop_tags_merge(self, metrics):
        timer = metrics.start_timer("jobs.duration", {"type": "export"})
        timer.stop({"status": "completed"})

        assert metrics.get_histogram(
            "jobs.duration", {"type": "export", "status": "completed"}
        )["count"] == 1

    def test_timer_context_manager(self, metrics):
        with metrics.start_timer("deck.export"):
            pass

        assert metrics.get_histogram("deck.export")["count"] == 1

    def test_timing(self, metrics):
        metrics.timing("http.request", 12.5, {"route": "/decks"})

        assert metrics.get_histogram("http.request", {"route": "/decks"})["sum"] == 12.5

    def test_snapshot(self, metrics):
        metrics.increment("a")
        metrics.gauge("b", 2)
        metrics.histogram("c", 3)

        snapshot = metrics.snapshot()

        assert snapshot["counters"] == {"a": 1}
        assert snapshot["gauges"] == {"b": 2}
        assert snapshot["histograms"]["c"]["count"] == 1


# =============================================================================
# Buffer Tests
# =============================================================================


class TestBuffer:
    """Tests for the point buffer."""

    def test_buffer_is_bounded(self, logger):
        metrics = MetricsCollector(logger, MetricsConfig(max_buffer_size=3))

        for i in range(5):
            metrics.increment("ticks", tags={"i": str(i)})

        points = metrics.get_metrics()
        assert len(points) == 3
        assert [p.tags["i"] for p in points] == ["2", "3", "4"]
        # Aggregates are unaffected by buffer eviction
        assert metrics.get_counter("ticks", {"i": "0"}) == 1

    def test_flush_drains_buffer(self, metrics):
        metrics.increment("a")
        metrics.gauge("b", 1)

        points = metrics.flush()

        assert [p.kind for p in points] == ["counter", "gauge"]
        assert points[0].key == "a"
        assert metrics.get_metrics() == []
        assert metrics.get_counter("a") == 1

    def test_reset(self, metrics):
        metrics.increment("a")
        metrics.reset()

        assert metrics.get_counter("a") == 0
        assert metrics.get_metrics() == []

    def test_point_to_dict(self, metrics):
        metrics.increment("a", tags={"k": "v"})

        data = metrics.get_metrics()[0].to_dict()

        assert data["name"] == "a"
        assert data["kind"] == "counter"
        assert data["tags"] == {"k": "v"}


# =============================================================================
# OpenTelemetry Tests
# =============================================================================


class TestOpenTelemetry:
    """Tests for mirroring into OpenTelemetry instruments."""

    @pytest.fixture
    def reader(self):
        return InMemoryMetricReader()

    @pytest.fixture
    def otel_metrics(self, logger, metrics_config, reader):
        provider = SDKMeterProvider(metric_readers=[reader])
        yield MetricsCollector(logger, metrics_config, meter_provider=provider)
        provider.shutdown()

    def test_counter_exported(self, otel_metrics, reader):
        otel_metrics.increment("cache.hit", tags={"cache": "cards"})
        otel_metrics.increment("cache.hit", tags={"cache": "cards"})

        points = collected(reader)["cache.hit"]

        assert points[0].value == 2
        assert dict(points[0].attributes) == {"cache": "cards"}

    def test_histogram_exported(self, otel_metrics, reader):
        otel_metrics.timing("deck.validate", 10)
        otel_metrics.timing("deck.validate", 30)

        point = collected(reader)["deck.validate"][0]

        assert point.count == 2
        assert point.sum == 40

    def test_gauge_exported(self, otel_metrics, reader):
        otel_metrics.gauge("cache.keys", 4)
        otel_metrics.gauge("cache.keys", 9)

        point = collected(reader)["cache.keys"][0]

        assert point.value == 9

    def test_build_meter_provider_with_extra_reader(self, metrics_config, reader, logger):
        provider = build_meter_provider(metrics_config, extra_readers=[reader])
        try:
            metrics = MetricsCollector(logger, metrics_config, meter_provider=provider)
            metrics.increment("decks.created")

            assert collected(reader)["decks.created"][0].value == 1
        finally:
            provider.shutdown()

    @pytest.mark.asyncio
    async def test_owned_provider_shut_down(self, logger, metrics_config):
        reader = InMemoryMetricReader()
        provider = build_meter_provider(metrics_config, extra_readers=[reader])
        metrics = MetricsCollector(
            logger, metrics_config, meter_provider=provider, owns_meter_provider=True
        )

        with patch.object(provider, "shutdown", wraps=provider.shutdown) as shutdown:
            await metrics.initialize()
            await metrics.shutdown()

        shutdown.assert_called_once()


# =============================================================================
# Lifecycle Tests
# =============================================================================


class TestLifecycle:
    """Tests for the flush loop."""

    @pytest.mark.asyncio
    async def test_flush_loop_drains_periodically(self, logger):
        metrics = MetricsCollector(logger, MetricsConfig(flush_interval=0.01))
        await metrics.initialize()
        try:
            metrics.increment("a")
            await asyncio.sleep(0.05)

            assert metrics.get_metrics() == []
            assert any(e["event"] == "Metrics flushed" for e in logger.entries)
        finally:
            await metrics.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_flushes(self, metrics):
        await metrics.initialize()
        metrics.increment("a")

        await metrics.shutdown()

        assert metrics.get_metrics() == []

    @pytest.mark.asyncio
    async def test_health(self, metrics):
        metrics.increment("a")
        metrics.gauge("b", 1)

        health = await metrics.health_check()

        assert health.status == HealthState.HEALTHY
        assert health.metrics["counters"] == 1
        assert health.metrics["gauges"] == 1
        assert health.metrics["buffered_points"] == 2
