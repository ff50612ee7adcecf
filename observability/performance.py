"""
Deckforge - Performance Monitor

Tracks operation latencies and error rates, produces percentile reports
and runs ad-hoc profiling sessions (wall time and traced memory).

Usage:
    monitor = PerformanceMonitor(logger, metrics)
    deck = await monitor.track_operation("deck.load", lambda: repo.load(deck_id))

    report = monitor.get_performance_report()
    report.operations["deck.load"].p95_ms
"""
from __future__ import annotations

import time
import tracemalloc
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
    TypeVar,
)

import numpy as np

from core.errors import ConflictError
from core.types import BaseService, HealthState, Metadata, ServiceHealthStatus, Tags
from observability.logging import StructuredLogger
from observability.metrics import MetricsCollector

T = TypeVar("T")


@dataclass
class OperationSample:
    operation: str
    duration_ms: float
    success: bool
    timestamp: float = field(default_factory=time.time)
    context: Metadata = field(default_factory=dict)


@dataclass
class OperationReport:
    operation: str
    count: int
    error_count: int
    avg_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    max_ms: float

    @property
    def error_rate(self) -> float:
        return self.error_count / self.count if self.count else 0.0


@dataclass
class PerformanceReport:
    generated_at: float
    since: Optional[float]
    operations: Dict[str, OperationReport]
    slow_operations: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "since": self.since,
            "operations": {
                name: {
                    "count": op.count,
                    "error_count": op.error_count,
                    "error_rate": op.error_rate,
                    "avg_ms": op.avg_ms,
                    "p50_ms": op.p50_ms,
                    "p95_ms": op.p95_ms,
                    "p99_ms": op.p99_ms,
                    "max_ms": op.max_ms,
                }
                for name, op in self.operations.items()
            },
            "slow_operations": list(self.slow_operations),
        }


@dataclass
class ProfileResult:
    duration_ms: float
    memory_start_bytes: int
    memory_end_bytes: int
    memory_peak_bytes: int

    @property
    def memory_delta_bytes(self) -> int:
        return self.memory_end_bytes - self.memory_start_bytes


class PerformanceMonitor(BaseService):
    """Operation latency tracking on top of the MetricsCollector."""

    name = "PerformanceMonitor"

    def __init__(
        self,
        logger: StructuredLogger,
        metrics: MetricsCollector,
        max_samples: int = 1000,
        slow_threshold_ms: float = 1000.0,
    ):
        self._logger = logger.child({"component": "performance"})
        self._metrics = metrics
        self._max_samples = max_samples
        self.slow_threshold_ms = slow_threshold_ms
        self._samples: Dict[str, Deque[OperationSample]] = {}

        self._profile_start: Optional[float] = None
        self._profile_memory_start = 0
        self._owns_tracing = False

    def _record(self, sample: OperationSample) -> None:
        samples = self._samples.get(sample.operation)
        if samples is None:
            samples = deque(maxlen=self._max_samples)
            self._samples[sample.operation] = samples
        samples.append(sample)

    async def track_operation(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        context: Optional[Metadata] = None,
    ) -> T:
        """Await ``fn`` and record its latency; failures are recorded and re-raised."""
        tags = {"operation": operation}
        start = time.perf_counter()
        try:
            result = await fn()
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            self._record(OperationSample(operation, duration_ms, False, context=dict(context or {})))
            self._metrics.timing("performance.operation_duration", duration_ms, tags)
            self._metrics.increment("performance.operation_errors", tags=tags)
            self._logger.warn(
                "Tracked operation failed",
                operation=operation,
                duration_ms=round(duration_ms, 3),
                error=str(e),
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        self._record(OperationSample(operation, duration_ms, True, context=dict(context or {})))
        self._metrics.timing("performance.operation_duration", duration_ms, tags)
        if duration_ms > self.slow_threshold_ms:
            self._logger.warn("Slow operation", operation=operation, duration_ms=round(duration_ms, 3))
        return result

    def record_metric(self, name: str, value: float, tags: Optional[Tags] = None) -> None:
        self._metrics.histogram(name, value, tags)

    def get_performance_report(self, since: Optional[float] = None) -> PerformanceReport:
        """
        Summarize tracked operations.

        Args:
            since: Only include samples recorded at or after this epoch time
        """
        operations: Dict[str, OperationReport] = {}
        for name, samples in self._samples.items():
            window = [s for s in samples if since is None or s.timestamp >= since]
            if not window:
                continue
            durations = np.array([s.duration_ms for s in window], dtype=float)
            operations[name] = OperationReport(
                operation=name,
                count=len(window),
                error_count=sum(1 for s in window if not s.success),
                avg_ms=float(durations.mean()),
                p50_ms=float(np.percentile(durations, 50, method="inverted_cdf")),
                p95_ms=float(np.percentile(durations, 95, method="inverted_cdf")),
                p99_ms=float(np.percentile(durations, 99, method="inverted_cdf")),
                max_ms=float(durations.max()),
            )

        slow = sorted(
            name for name, op in operations.items() if op.p95_ms > self.slow_threshold_ms
        )
        return PerformanceReport(
            generated_at=time.time(),
            since=since,
            operations=operations,
            slow_operations=slow,
        )

    # -------------------------------------------------------------------------
    # Profiling
    # -------------------------------------------------------------------------

    @property
    def is_profiling(self) -> bool:
        return self._profile_start is not None

    def start_profiling(self) -> None:
        if self.is_profiling:
            raise ConflictError("Profiling session already running")
        if not tracemalloc.is_tracing():
            tracemalloc.start()
            self._owns_tracing = True
        self._profile_memory_start, _ = tracemalloc.get_traced_memory()
        self._profile_start = time.perf_counter()
        self._logger.info("Profiling started")

    def stop_profiling(self) -> Optional[ProfileResult]:
        if self._profile_start is None:
            return None
        duration_ms = (time.perf_counter() - self._profile_start) * 1000
        current, peak = tracemalloc.get_traced_memory()
        if self._owns_tracing:
            tracemalloc.stop()
            self._owns_tracing = False
        self._profile_start = None

        result = ProfileResult(
            duration_ms=duration_ms,
            memory_start_bytes=self._profile_memory_start,
            memory_end_bytes=current,
            memory_peak_bytes=peak,
        )
        self._metrics.timing("performance.profile_duration", duration_ms)
        self._logger.info(
            "Profiling stopped",
            duration_ms=round(duration_ms, 3),
            memory_delta_bytes=result.memory_delta_bytes,
            memory_peak_bytes=peak,
        )
        return result

    async def shutdown(self) -> None:
        self.stop_profiling()

    async def health_check(self) -> ServiceHealthStatus:
        report = self.get_performance_report()
        status = HealthState.DEGRADED if report.slow_operations else HealthState.HEALTHY
        return ServiceHealthStatus(
            status=status,
            message=(
                f"Slow operations: {', '.join(report.slow_operations)}"
                if report.slow_operations
                else None
            ),
            metrics={
                "tracked_operations": len(report.operations),
                "profiling": self.is_profiling,
            },
        )
