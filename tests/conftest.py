"""
Deckforge - Test Configuration

Pytest fixtures and configuration for all tests.
"""
import pytest

from core.config import (
    CacheConfig,
    JobProcessorConfig,
    LoggingConfig,
    MetricsConfig,
    RuntimeConfig,
)
from observability.logging import StructuredLogger
from observability.metrics import MetricsCollector


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def logging_config() -> LoggingConfig:
    """Debug-level JSON logging to the (captured) console."""
    return LoggingConfig(
        service_name="deckforge-test",
        level="debug",
        format="json",
        destination="console",
        colors=False,
    )


@pytest.fixture
def logger(logging_config) -> StructuredLogger:
    return StructuredLogger(logging_config)


@pytest.fixture
def metrics_config() -> MetricsConfig:
    return MetricsConfig(
        service_name="deckforge-test",
        otel_enabled=False,
        otlp_endpoint=None,
        console_export=False,
    )


@pytest.fixture
def metrics(logger, metrics_config) -> MetricsCollector:
    return MetricsCollector(logger, metrics_config)


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(
        max_memory=10 * 1024 * 1024,
        default_ttl=3600,
        compression_threshold=1024,
        max_key_length=250,
        cleanup_interval=60,
    )


@pytest.fixture
def job_config() -> JobProcessorConfig:
    """Fast polling and short backoff so retry paths finish quickly."""
    return JobProcessorConfig(
        default_concurrency=1,
        default_attempts=3,
        default_timeout=5.0,
        poll_interval=0.01,
        backoff_base=0.05,
        backoff_max=1.0,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def runtime_config(logging_config, metrics_config, cache_config, job_config) -> RuntimeConfig:
    return RuntimeConfig(
        logging=logging_config,
        metrics=metrics_config,
        cache=cache_config,
        jobs=job_config,
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")
    config.addinivalue_line("markers", "property: marks property-based tests using Hypothesis")
    config.addinivalue_line("markers", "e2e: End-to-end tests covering complete workflows")
