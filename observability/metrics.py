"""
Deckforge - Metrics Collection

In-process counters, gauges, histograms and timers with a queryable
snapshot, mirrored to OpenTelemetry instruments when a MeterProvider is
supplied.

Key format:
    Every series is keyed ``name{k1=v1,k2=v2}`` with tags sorted by key,
    or just ``name`` when untagged.

Usage:
    from observability.metrics import MetricsCollector

    metrics = MetricsCollector(logger)
    metrics.increment("cache.hit", tags={"cache": "cards"})

    timer = metrics.start_timer("deck.validate")
    ...
    timer.stop({"format": "standard"})

    with metrics.start_timer("deck.export"):
        ...
"""
from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

import numpy as np
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import (
    CallbackOptions,
    Histogram,
    Meter,
    MeterProvider,
    Observation,
    UpDownCounter,
)
from opentelemetry.sdk.metrics import MeterProvider as SDKMeterProvider
from opentelemetry.sdk.metrics.export import (
    ConsoleMetricExporter,
    MetricReader,
    PeriodicExportingMetricReader,
)
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION

from core.config import MetricsConfig
from core.types import BaseService, HealthState, ServiceHealthStatus, Tags
from observability.logging import StructuredLogger


def format_metric_key(name: str, tags: Optional[Tags] = None) -> str:
    """Build the canonical series key for a metric name and tag set."""
    if not tags:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{rendered}}}"


def percentile(values: Iterable[float], q: float) -> float:
    """Nearest-rank percentile (``q`` in 0..100)."""
    data = np.asarray(list(values), dtype=float)
    if data.size == 0:
        return 0.0
    return float(np.percentile(data, q, method="inverted_cdf"))


@dataclass
class MetricPoint:
    """A single recorded value, as held in the export buffer."""

    name: str
    kind: str
    value: float
    tags: Tags = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return format_metric_key(self.name, self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "value": self.value,
            "tags": dict(self.tags),
            "timestamp": self.timestamp,
        }


@dataclass
class HistogramData:
    """Bounded sample window plus running aggregates."""

    values: Deque[float]
    count: int = 0
    sum: float = 0.0
    min: float = float("inf")
    max: float = float("-inf")

    @classmethod
    def create(cls, max_values: int) -> "HistogramData":
        return cls(values=deque(maxlen=max_values))

    def record(self, value: float) -> None:
        self.values.append(value)
        self.count += 1
        self.sum += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    @property
    def mean(self) -> float:
        return self.sum / self.count if self.count else 0.0

    def summary(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "sum": self.sum,
            "min": self.min if self.count else 0.0,
            "max": self.max if self.count else 0.0,
            "mean": self.mean,
            "p50": percentile(self.values, 50),
            "p95": percentile(self.values, 95),
            "p99": percentile(self.values, 99),
        }


class Timer:
    """Handle returned by ``start_timer``; ``stop`` records elapsed ms once."""

    def __init__(self, collector: "MetricsCollector", name: str, tags: Optional[Tags] = None):
        self._collector = collector
        self.name = name
        self.tags: Tags = dict(tags or {})
        self._start = time.perf_counter()
        self._elapsed_ms: Optional[float] = None

    @property
    def stopped(self) -> bool:
        return self._elapsed_ms is not None

    def stop(self, tags: Optional[Tags] = None) -> float:
        if self._elapsed_ms is not None:
            return self._elapsed_ms
        self._elapsed_ms = (time.perf_counter() - self._start) * 1000
        self._collector.timing(self.name, self._elapsed_ms, {**self.tags, **(tags or {})})
        return self._elapsed_ms

    def __enter__(self) -> "Timer":
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


def build_meter_provider(
    config: MetricsConfig,
    extra_readers: Optional[List[MetricReader]] = None,
) -> SDKMeterProvider:
    """
    Build an OpenTelemetry SDK MeterProvider for a MetricsCollector.

    The provider is not installed globally; the collector that receives it
    owns its lifecycle.
    """
    resource = Resource.create({
        SERVICE_NAME: config.service_name,
        SERVICE_VERSION: config.service_version,
    })

    readers: List[MetricReader] = list(extra_readers or [])

    if config.otlp_endpoint:
        readers.append(
            PeriodicExportingMetricReader(
                OTLPMetricExporter(endpoint=config.otlp_endpoint, insecure=True),
                export_interval_millis=config.export_interval_millis,
            )
        )

    if config.console_export:
        readers.append(
            PeriodicExportingMetricReader(
                ConsoleMetricExporter(),
                export_interval_millis=config.export_interval_millis,
            )
        )

    return SDKMeterProvider(resource=resource, metric_readers=readers)


class MetricsCollector(BaseService):
    """
    Central metrics collector.

    Keeps in-process aggregates keyed by series, a bounded buffer of
    recorded points drained by ``flush``, and mirrors every value to
    OpenTelemetry instruments when a meter provider is present.
    """

    name = "MetricsCollector"

    def __init__(
        self,
        logger: StructuredLogger,
        config: Optional[MetricsConfig] = None,
        meter_provider: Optional[MeterProvider] = None,
        owns_meter_provider: bool = False,
    ):
        self.config = config or MetricsConfig()
        self.config.validate()
        self._logger = logger.child({"component": "metrics"})
        self._lock = threading.RLock()

        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, Tuple[str, Tags, float]] = {}
        self._histograms: Dict[str, HistogramData] = {}
        self._buffer: Deque[MetricPoint] = deque(maxlen=self.config.max_buffer_size)

        self._meter_provider = meter_provider
        self._owns_meter_provider = owns_meter_provider
        self._meter: Optional[Meter] = (
            meter_provider.get_meter(self.config.service_name, self.config.service_version)
            if meter_provider is not None
            else None
        )
        self._otel_counters: Dict[str, UpDownCounter] = {}
        self._otel_histograms: Dict[str, Histogram] = {}
        self._otel_gauges: set = set()

        self._flush_task: Optional[asyncio.Task[None]] = None

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def increment(self, name: str, value: float = 1, tags: Optional[Tags] = None) -> None:
        tags = dict(tags or {})
        key = format_metric_key(name, tags)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value
            self._buffer.append(MetricPoint(name, "counter", value, tags))
        counter = self._otel_counter(name)
        if counter is not None:
            counter.add(value, attributes=tags)

    def decrement(self, name: str, value: float = 1, tags: Optional[Tags] = None) -> None:
        self.increment(name, -value, tags)

    def gauge(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        tags = dict(tags or {})
        key = format_metric_key(name, tags)
        with self._lock:
            self._gauges[key] = (name, tags, value)
            self._buffer.append(MetricPoint(name, "gauge", value, tags))
        self._register_otel_gauge(name)

    def histogram(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        self._record_distribution(name, value, tags, "histogram")

    def timing(self, name: str, duration_ms: float, tags: Optional[Tags] = None) -> None:
        self._record_distribution(name, duration_ms, tags, "timer")

    def start_timer(self, name: str, tags: Optional[Tags] = None) -> Timer:
        return Timer(self, name, tags)

    def _record_distribution(
        self,
        name: str,
        value: float,
        tags: Optional[Tags],
        kind: str,
    ) -> None:
        tags = dict(tags or {})
        key = format_metric_key(name, tags)
        with self._lock:
            data = self._histograms.get(key)
            if data is None:
                data = HistogramData.create(self.config.max_histogram_values)
                self._histograms[key] = data
            data.record(value)
            self._buffer.append(MetricPoint(name, kind, value, tags))
        histogram = self._otel_histogram(name, unit="ms" if kind == "timer" else "1")
        if histogram is not None:
            histogram.record(value, attributes=tags)

    # -------------------------------------------------------------------------
    # OpenTelemetry mirroring
    # -------------------------------------------------------------------------

    def _otel_counter(self, name: str) -> Optional[UpDownCounter]:
        if self._meter is None:
            return None
        with self._lock:
            if name not in self._otel_counters:
                self._otel_counters[name] = self._meter.create_up_down_counter(name, unit="1")
            return self._otel_counters[name]

    def _otel_histogram(self, name: str, unit: str) -> Optional[Histogram]:
        if self._meter is None:
            return None
        with self._lock:
            if name not in self._otel_histograms:
                self._otel_histograms[name] = self._meter.create_histogram(name, unit=unit)
            return self._otel_histograms[name]

    def _register_otel_gauge(self, name: str) -> None:
        if self._meter is None:
            return
        with self._lock:
            if name in self._otel_gauges:
                return
            self._otel_gauges.add(name)

        def observe(options: CallbackOptions) -> Iterable[Observation]:
            with self._lock:
                series = [
                    (tags, value)
                    for gauge_name, tags, value in self._gauges.values()
                    if gauge_name == name
                ]
            return [Observation(value, attributes=tags) for tags, value in series]

        self._meter.create_observable_gauge(name, callbacks=[observe])

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_counter(self, name: str, tags: Optional[Tags] = None) -> float:
        with self._lock:
            return self._counters.get(format_metric_key(name, tags), 0)

    def get_gauge(self, name: str, tags: Optional[Tags] = None) -> Optional[float]:
        with self._lock:
            entry = self._gauges.get(format_metric_key(name, tags))
        return entry[2] if entry else None

    def get_histogram(self, name: str, tags: Optional[Tags] = None) -> Optional[Dict[str, float]]:
        with self._lock:
            data = self._histograms.get(format_metric_key(name, tags))
            return data.summary() if data else None

    def get_metrics(self) -> List[MetricPoint]:
        """Points recorded since the last flush, oldest first."""
        with self._lock:
            return list(self._buffer)

    def snapshot(self) -> Dict[str, Any]:
        """Current aggregates of every series."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": {key: value for key, (_, _, value) in self._gauges.items()},
                "histograms": {
                    key: data.summary() for key, data in self._histograms.items()
                },
            }

    def flush(self) -> List[MetricPoint]:
        """Drain and return the point buffer."""
        with self._lock:
            points = list(self._buffer)
            self._buffer.clear()
        if points:
            self._logger.debug("Metrics flushed", count=len(points))
        return points

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._buffer.clear()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.flush_interval)
            try:
                self.flush()
            except Exception as e:
                self._logger.error("Metrics flush failed", error=e)

    async def initialize(self) -> None:
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_loop())
        self._logger.info("Metrics collector initialized")

    async def shutdown(self) -> None:
        if self._flush_task and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self._flush_task = None
        self.flush()
        if self._owns_meter_provider and isinstance(self._meter_provider, SDKMeterProvider):
            self._meter_provider.shutdown()
        self._logger.info("Metrics collector shut down")

    async def health_check(self) -> ServiceHealthStatus:
        with self._lock:
            metrics = {
                "counters": len(self._counters),
                "gauges": len(self._gauges),
                "histograms": len(self._histograms),
                "buffered_points": len(self._buffer),
            }
        return ServiceHealthStatus(status=HealthState.HEALTHY, metrics=metrics)
