"""
Deckforge - Runtime Bootstrap

Wires the core services into a ServiceContainer:

    Logger
      -> MetricsCollector
           -> ErrorHandler, CacheService, JobProcessor, PerformanceMonitor

All six are eager singletons; ``container.start()`` creates and
initializes them in dependency order and ``container.stop()`` shuts them
down in reverse.

Usage:
    from core.bootstrap import ServiceTokens, service_runtime

    async with service_runtime() as container:
        cache = await container.resolve(ServiceTokens.CACHE_SERVICE)
        await cache.set("deck:42", deck, ttl=300, tags=["decks"])
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from cache.intelligent_cache import IntelligentCache
from core.config import RuntimeConfig
from core.error_handler import ErrorHandler
from core.types import HealthState, ServiceHealthStatus
from di.container import ServiceContainer, ServiceToken
from jobs.processor import BackgroundJobProcessor
from observability.logging import StructuredLogger
from observability.metrics import MetricsCollector, build_meter_provider
from observability.performance import PerformanceMonitor


class ServiceTokens:
    """Tokens of the core runtime services."""

    LOGGER: ServiceToken[StructuredLogger] = ServiceToken("Logger", StructuredLogger)
    METRICS_COLLECTOR: ServiceToken[MetricsCollector] = ServiceToken(
        "MetricsCollector", MetricsCollector
    )
    ERROR_HANDLER: ServiceToken[ErrorHandler] = ServiceToken("ErrorHandler", ErrorHandler)
    CACHE_SERVICE: ServiceToken[IntelligentCache] = ServiceToken("CacheService", IntelligentCache)
    JOB_PROCESSOR: ServiceToken[BackgroundJobProcessor] = ServiceToken(
        "JobProcessor", BackgroundJobProcessor
    )
    PERFORMANCE_MONITOR: ServiceToken[PerformanceMonitor] = ServiceToken(
        "PerformanceMonitor", PerformanceMonitor
    )

    @classmethod
    def all(cls) -> Tuple[ServiceToken[Any], ...]:
        return (
            cls.LOGGER,
            cls.METRICS_COLLECTOR,
            cls.ERROR_HANDLER,
            cls.CACHE_SERVICE,
            cls.JOB_PROCESSOR,
            cls.PERFORMANCE_MONITOR,
        )


def create_service_container(
    config: Optional[RuntimeConfig] = None,
    logger: Optional[StructuredLogger] = None,
) -> ServiceContainer:
    """Build a container with every core service registered (not started)."""
    config = config or RuntimeConfig()
    config.validate()
    logger = logger or StructuredLogger(config.logging)
    container = ServiceContainer(logger)
    tokens = ServiceTokens

    async def create_metrics() -> MetricsCollector:
        provider = build_meter_provider(config.metrics) if config.metrics.otel_enabled else None
        return MetricsCollector(
            await container.resolve(tokens.LOGGER),
            config.metrics,
            meter_provider=provider,
            owns_meter_provider=provider is not None,
        )

    async def create_error_handler() -> ErrorHandler:
        return ErrorHandler(
            await container.resolve(tokens.LOGGER),
            await container.resolve(tokens.METRICS_COLLECTOR),
        )

    async def create_cache() -> IntelligentCache:
        return IntelligentCache(
            await container.resolve(tokens.LOGGER),
            await container.resolve(tokens.METRICS_COLLECTOR),
            config.cache,
        )

    async def create_job_processor() -> BackgroundJobProcessor:
        return BackgroundJobProcessor(
            await container.resolve(tokens.LOGGER),
            await container.resolve(tokens.METRICS_COLLECTOR),
            config.jobs,
        )

    async def create_performance_monitor() -> PerformanceMonitor:
        return PerformanceMonitor(
            await container.resolve(tokens.LOGGER),
            await container.resolve(tokens.METRICS_COLLECTOR),
        )

    observed = (tokens.LOGGER, tokens.METRICS_COLLECTOR)
    container.register(tokens.LOGGER, lambda: logger)
    container.register(tokens.METRICS_COLLECTOR, create_metrics, dependencies=[tokens.LOGGER])
    container.register(tokens.ERROR_HANDLER, create_error_handler, dependencies=observed)
    container.register(tokens.CACHE_SERVICE, create_cache, dependencies=observed)
    container.register(tokens.JOB_PROCESSOR, create_job_processor, dependencies=observed)
    container.register(
        tokens.PERFORMANCE_MONITOR, create_performance_monitor, dependencies=observed
    )
    return container


@dataclass
class CoreServices:
    logger: StructuredLogger
    metrics: MetricsCollector
    error_handler: ErrorHandler
    cache: IntelligentCache
    jobs: BackgroundJobProcessor
    performance: PerformanceMonitor


async def get_core_services(container: ServiceContainer) -> CoreServices:
    tokens = ServiceTokens
    logger, metrics, error_handler, cache, jobs, performance = await asyncio.gather(
        container.resolve(tokens.LOGGER),
        container.resolve(tokens.METRICS_COLLECTOR),
        container.resolve(tokens.ERROR_HANDLER),
        container.resolve(tokens.CACHE_SERVICE),
        container.resolve(tokens.JOB_PROCESSOR),
        container.resolve(tokens.PERFORMANCE_MONITOR),
    )
    return CoreServices(logger, metrics, error_handler, cache, jobs, performance)


@dataclass
class CoreHealthReport:
    """Aggregated health; healthy only when every live service is healthy."""

    healthy: bool
    services: Dict[str, ServiceHealthStatus]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "services": {name: status.to_dict() for name, status in self.services.items()},
            "timestamp": self.timestamp.isoformat(),
        }


async def check_core_services_health(container: ServiceContainer) -> CoreHealthReport:
    services = await container.get_health_status()
    healthy = bool(services) and all(
        status.status == HealthState.HEALTHY for status in services.values()
    )
    return CoreHealthReport(healthy=healthy, services=services)


@asynccontextmanager
async def service_runtime(
    config: Optional[RuntimeConfig] = None,
) -> AsyncIterator[ServiceContainer]:
    """Create, start and (on exit) stop a fully wired container."""
    container = create_service_container(config)
    await container.start()
    try:
        yield container
    finally:
        await container.stop()
