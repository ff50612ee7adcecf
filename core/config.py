"""
Deckforge - Configuration

Configuration for every core runtime service.
Uses environment variables with sensible defaults.

Usage:
    from core.config import RuntimeConfig

    config = RuntimeConfig.from_environment()
    config.cache.max_memory          # bytes
    config.jobs.default_timeout      # seconds
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from core.errors import ValidationError

LOG_LEVELS = ("debug", "info", "warn", "error")
LOG_FORMATS = ("json", "text")
LOG_DESTINATIONS = ("console", "file", "both")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class LoggingConfig:
    """Structured logging configuration."""

    service_name: str = field(default_factory=lambda: os.getenv("SERVICE_NAME", "deckforge"))
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "info").lower())
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "json").lower())
    destination: str = field(default_factory=lambda: os.getenv("LOG_DESTINATION", "console").lower())
    colors: bool = field(default_factory=lambda: _env_bool("LOG_COLORS", "true"))
    include_timestamp: bool = True
    include_trace_context: bool = True
    log_file_path: Path = field(
        default_factory=lambda: Path(os.getenv("LOG_FILE", "./logs/deckforge.log"))
    )
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    buffer_size: int = 1000

    def validate(self) -> None:
        if self.level not in LOG_LEVELS:
            raise ValidationError(f"Unknown log level '{self.level}'", field="logging.level")
        if self.format not in LOG_FORMATS:
            raise ValidationError(f"Unknown log format '{self.format}'", field="logging.format")
        if self.destination not in LOG_DESTINATIONS:
            raise ValidationError(
                f"Unknown log destination '{self.destination}'", field="logging.destination"
            )


@dataclass
class MetricsConfig:
    """Metrics collection and OpenTelemetry export configuration."""

    service_name: str = field(default_factory=lambda: os.getenv("SERVICE_NAME", "deckforge"))
    service_version: str = "1.0.0"
    flush_interval: float = field(
        default_factory=lambda: float(os.getenv("METRICS_FLUSH_INTERVAL", "60"))
    )
    max_buffer_size: int = 10000
    max_histogram_values: int = 1000
    otel_enabled: bool = field(default_factory=lambda: _env_bool("METRICS_OTEL_ENABLED", "false"))
    otlp_endpoint: Optional[str] = field(
        default_factory=lambda: os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    console_export: bool = field(
        default_factory=lambda: _env_bool("METRICS_CONSOLE_EXPORT", "false")
    )
    export_interval_millis: int = 60000

    def validate(self) -> None:
        if self.flush_interval <= 0:
            raise ValidationError("Flush interval must be positive", field="metrics.flush_interval")
        if self.max_buffer_size < 1:
            raise ValidationError("Buffer size must be positive", field="metrics.max_buffer_size")


@dataclass
class CacheConfig:
    """In-process cache configuration."""

    max_memory: int = field(
        default_factory=lambda: int(os.getenv("CACHE_MAX_MEMORY", str(100 * 1024 * 1024)))
    )
    default_ttl: float = field(
        default_factory=lambda: float(os.getenv("CACHE_DEFAULT_TTL", "3600"))
    )
    compression_threshold: int = field(
        default_factory=lambda: int(os.getenv("CACHE_COMPRESSION_THRESHOLD", "1024"))
    )
    max_key_length: int = field(
        default_factory=lambda: int(os.getenv("CACHE_MAX_KEY_LENGTH", "250"))
    )
    cleanup_interval: float = field(
        default_factory=lambda: float(os.getenv("CACHE_CLEANUP_INTERVAL", "60"))
    )

    def validate(self) -> None:
        if self.max_memory <= 0:
            raise ValidationError("Cache memory limit must be positive", field="cache.max_memory")
        if self.default_ttl <= 0:
            raise ValidationError("Default TTL must be positive", field="cache.default_ttl")
        if self.max_key_length < 1:
            raise ValidationError("Max key length must be positive", field="cache.max_key_length")
        if self.cleanup_interval <= 0:
            raise ValidationError(
                "Cleanup interval must be positive", field="cache.cleanup_interval"
            )


@dataclass
class JobProcessorConfig:
    """Background job processor configuration."""

    default_concurrency: int = field(
        default_factory=lambda: int(os.getenv("JOBS_DEFAULT_CONCURRENCY", "1"))
    )
    default_attempts: int = field(
        default_factory=lambda: int(os.getenv("JOBS_DEFAULT_ATTEMPTS", "3"))
    )
    default_timeout: float = field(
        default_factory=lambda: float(os.getenv("JOBS_DEFAULT_TIMEOUT", "30"))
    )
    poll_interval: float = field(
        default_factory=lambda: float(os.getenv("JOBS_POLL_INTERVAL", "1.0"))
    )
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    shutdown_timeout: float = field(
        default_factory=lambda: float(os.getenv("JOBS_SHUTDOWN_TIMEOUT", "30"))
    )

    def validate(self) -> None:
        if self.default_concurrency < 1:
            raise ValidationError(
                "Concurrency must be at least 1", field="jobs.default_concurrency"
            )
        if self.default_attempts < 1:
            raise ValidationError("Attempts must be at least 1", field="jobs.default_attempts")
        if self.default_timeout <= 0:
            raise ValidationError("Timeout must be positive", field="jobs.default_timeout")
        if self.poll_interval <= 0:
            raise ValidationError("Poll interval must be positive", field="jobs.poll_interval")


@dataclass
class RuntimeConfig:
    """Complete runtime configuration."""

    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    jobs: JobProcessorConfig = field(default_factory=JobProcessorConfig)

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> "RuntimeConfig":
        """Load a .env file (if present) and build the configuration from it."""
        load_dotenv(env_file)
        config = cls()
        config.validate()
        return config

    def validate(self) -> None:
        self.logging.validate()
        self.metrics.validate()
        self.cache.validate()
        self.jobs.validate()

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "logging": {
                "service_name": self.logging.service_name,
                "level": self.logging.level,
                "format": self.logging.format,
                "destination": self.logging.destination,
                "colors": self.logging.colors,
            },
            "metrics": {
                "flush_interval": self.metrics.flush_interval,
                "max_buffer_size": self.metrics.max_buffer_size,
                "otel_enabled": self.metrics.otel_enabled,
            },
            "cache": {
                "max_memory": self.cache.max_memory,
                "default_ttl": self.cache.default_ttl,
                "compression_threshold": self.cache.compression_threshold,
                "max_key_length": self.cache.max_key_length,
                "cleanup_interval": self.cache.cleanup_interval,
            },
            "jobs": {
                "default_concurrency": self.jobs.default_concurrency,
                "default_attempts": self.jobs.default_attempts,
                "default_timeout": self.jobs.default_timeout,
                "poll_interval": self.jobs.poll_interval,
            },
        }
