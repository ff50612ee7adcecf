"""
Deckforge - Structured Logging with Trace Context

Leveled structured logger built on structlog, with OpenTelemetry trace
context injection and child loggers that compose context.

Features:
- Structured JSON or colored console output
- Automatic trace context injection (trace_id, span_id)
- Child loggers merging parent and child context (child keys win)
- Console, rotating file, or both as destinations
- Bounded in-memory buffer of recent entries for diagnostics

Every StructuredLogger owns its processor chain and handlers, so two
containers never share logging state.

Usage:
    from observability.logging import StructuredLogger
    from core.config import LoggingConfig

    logger = StructuredLogger(LoggingConfig(level="debug", format="text"))
    job_logger = logger.child({"job_id": "job_123"})
    job_logger.info("Job started", attempt=1)
"""
from __future__ import annotations

import functools
import logging
import sys
import time
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
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

import structlog
from opentelemetry import trace
from structlog.types import EventDict, Processor, WrappedLogger

from core.config import LoggingConfig
from core.types import BaseService, HealthState, ServiceHealthStatus

T = TypeVar("T")

LOG_LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def add_trace_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """
    Structlog processor that adds OpenTelemetry trace context to log events.

    Adds trace_id and span_id from the current span context, enabling
    correlation between logs and traces in observability backends.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        if ctx.is_valid:
            event_dict["trace_id"] = format(ctx.trace_id, "032x")
            event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_service_context(service_name: str) -> Processor:
    """Create a processor that stamps the service name on every event."""

    def processor(
        logger: WrappedLogger,
        method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add ISO8601 timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def format_exception(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Format exception information for structured output."""
    exc_info = event_dict.pop("exc_info", None)
    if exc_info:
        if isinstance(exc_info, tuple):
            event_dict["error"] = {
                "type": exc_info[0].__name__ if exc_info[0] else None,
                "message": str(exc_info[1]) if exc_info[1] else None,
            }
        elif isinstance(exc_info, BaseException):
            event_dict["error"] = {
                "type": type(exc_info).__name__,
                "message": str(exc_info),
            }
    return event_dict


class _LogSink:
    """Handlers and recent-entry buffer shared by a logger and its children."""

    def __init__(self, config: LoggingConfig):
        self.config = config
        self.entries: Deque[Dict[str, Any]] = deque(maxlen=config.buffer_size)
        # Constructed directly so it stays out of the global logging registry
        self.stdlib_logger = logging.Logger(config.service_name, logging.DEBUG)
        self.stdlib_logger.propagate = False
        self.open()

    @property
    def closed(self) -> bool:
        return not self.stdlib_logger.handlers

    def open(self) -> None:
        """Attach fresh handlers if the sink was closed; no-op otherwise."""
        if not self.closed:
            return
        for handler in self._build_handlers():
            self.stdlib_logger.addHandler(handler)

    def _build_handlers(self) -> List[logging.Handler]:
        handlers: List[logging.Handler] = []
        formatter = logging.Formatter("%(message)s")

        if self.config.destination in ("console", "both"):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setFormatter(formatter)
            handlers.append(console_handler)

        if self.config.destination in ("file", "both"):
            self.config.log_file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                self.config.log_file_path,
                maxBytes=self.config.max_file_size,
                backupCount=self.config.backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

        return handlers

    def capture(
        self,
        logger: WrappedLogger,
        method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        self.entries.append(dict(event_dict))
        return event_dict

    def build_processors(self) -> List[Processor]:
        processors: List[Processor] = [
            structlog.processors.add_log_level,
            add_service_context(self.config.service_name),
        ]
        if self.config.include_timestamp:
            processors.append(add_timestamp)
        if self.config.include_trace_context:
            processors.append(add_trace_context)
        processors.append(format_exception)
        processors.append(self.capture)

        if self.config.format == "json":
            processors.append(structlog.processors.JSONRenderer())
        else:
            processors.append(structlog.dev.ConsoleRenderer(colors=self.config.colors))
        return processors

    def close(self) -> None:
        for handler in self.stdlib_logger.handlers[:]:
            handler.flush()
            handler.close()
            self.stdlib_logger.removeHandler(handler)


class StructuredLogger(BaseService):
    """
    Leveled structured logger (debug < info < warn < error).

    ``child(context)`` returns a logger that writes to the same sinks and
    stamps the merged context on every entry.
    """

    name = "Logger"

    def __init__(
        self,
        config: Optional[LoggingConfig] = None,
        context: Optional[Dict[str, Any]] = None,
        *,
        _sink: Optional[_LogSink] = None,
    ):
        self.config = config or LoggingConfig()
        self.config.validate()
        self._context: Dict[str, Any] = dict(context or {})
        self._owns_sink = _sink is None
        self._sink = _sink or _LogSink(self.config)
        self._logger = structlog.wrap_logger(
            self._sink.stdlib_logger,
            processors=self._sink.build_processors(),
            wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVELS[self.config.level]),
            context_class=dict,
            **self._context,
        )

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    @property
    def level(self) -> str:
        return self.config.level

    @property
    def entries(self) -> List[Dict[str, Any]]:
        """Recent entries, oldest first."""
        return list(self._sink.entries)

    def debug(self, message: str, **meta: Any) -> None:
        self._logger.debug(message, **meta)

    def info(self, message: str, **meta: Any) -> None:
        self._logger.info(message, **meta)

    def warn(self, message: str, **meta: Any) -> None:
        self._logger.warning(message, **meta)

    warning = warn

    def error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        **meta: Any,
    ) -> None:
        if error is not None:
            meta["exc_info"] = error
        self._logger.error(message, **meta)

    def log(self, level: str, message: str, **meta: Any) -> None:
        if level == "error":
            self.error(message, **meta)
        elif level in LOG_LEVELS:
            getattr(self, level)(message, **meta)
        else:
            raise ValueError(f"Unknown log level '{level}'")

    def is_enabled_for(self, level: str) -> bool:
        return is_log_level_enabled(self.config.level, level)

    def child(self, context: Dict[str, Any]) -> "StructuredLogger":
        """Create a logger whose context is this one's merged with ``context``."""
        return StructuredLogger(
            self.config,
            {**self._context, **context},
            _sink=self._sink,
        )

    async def initialize(self) -> None:
        if self._owns_sink:
            self._sink.open()

    async def shutdown(self) -> None:
        if self._owns_sink:
            self._sink.close()

    async def health_check(self) -> ServiceHealthStatus:
        return ServiceHealthStatus(
            status=HealthState.HEALTHY,
            metrics={
                "level": self.config.level,
                "buffered_entries": len(self._sink.entries),
            },
        )


# =============================================================================
# HELPERS
# =============================================================================


def create_logger(
    config: Optional[LoggingConfig] = None,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogger:
    return StructuredLogger(config, context)


def create_service_logger(
    service_name: str,
    config: Optional[LoggingConfig] = None,
) -> StructuredLogger:
    return StructuredLogger(config, {"service": service_name})


def is_log_level_enabled(current_level: str, target_level: str) -> bool:
    """Whether a logger at ``current_level`` emits ``target_level`` entries."""
    return LOG_LEVELS[target_level] >= LOG_LEVELS[current_level]


def log_performance(
    logger: StructuredLogger,
    operation: str,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator logging the duration of a coroutine function.

    Usage:
        @log_performance(logger, "deck.import")
        async def import_deck(payload):
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                logger.error(
                    "Operation failed",
                    error=e,
                    operation=operation,
                    duration_ms=round(duration_ms, 3),
                )
                raise
            duration_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "Operation completed",
                operation=operation,
                duration_ms=round(duration_ms, 3),
            )
            return result

        return wrapper

    return decorator


def create_request_logger(
    logger: StructuredLogger,
) -> Callable[..., StructuredLogger]:
    """Return a factory producing per-request child loggers."""

    def for_request(
        request_id: str,
        user_id: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> StructuredLogger:
        context: Dict[str, Any] = {"request_id": request_id}
        if user_id is not None:
            context["user_id"] = user_id
        if operation is not None:
            context["operation"] = operation
        return logger.child(context)

    return for_request
