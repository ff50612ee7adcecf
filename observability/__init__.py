"""
Deckforge - Observability

Structured logging, metrics collection and performance monitoring for
the core runtime.

Usage:
    from observability import StructuredLogger, MetricsCollector

    logger = StructuredLogger()
    metrics = MetricsCollector(logger)
    metrics.increment("decks.created", tags={"format": "commander"})
"""

from observability.logging import (
    StructuredLogger,
    create_logger,
    create_request_logger,
    create_service_logger,
    is_log_level_enabled,
    log_performance,
)
from observability.metrics import (
    MetricPoint,
    MetricsCollector,
    Timer,
    build_meter_provider,
    format_metric_key,
)
from observability.performance import (
    PerformanceMonitor,
    PerformanceReport,
    ProfileResult,
)

__all__ = [
    # Logging
    "StructuredLogger",
    "create_logger",
    "create_request_logger",
    "create_service_logger",
    "is_log_level_enabled",
    "log_performance",
    # Metrics
    "MetricPoint",
    "MetricsCollector",
    "Timer",
    "build_meter_provider",
    "format_metric_key",
    # Performance
    "PerformanceMonitor",
    "PerformanceReport",
    "ProfileResult",
]
