"""
Deckforge - Centralized Error Handler

Observability sink for errors: every handled error is logged, counted as
``errors.total{error_type,service,operation}`` and dispatched to the
handler registered for its ErrorKind.

Dispatch order:
    registered handler for the error's kind
    -> SERVICE handler (for any ServiceError)
    -> UNKNOWN handler (the default)

``handle`` never changes control flow; callers decide whether to re-raise.

Usage:
    handler = ErrorHandler(logger, metrics)
    handler.register(ErrorKind.CONFLICT, on_conflict)

    await with_error_handling(
        lambda: import_deck(payload),
        create_error_context("DeckService", "import"),
        handler,
    )
"""
from __future__ import annotations

import functools
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Type,
    TypeVar,
    Union,
)

from core.errors import (
    ErrorContext,
    ErrorKind,
    RateLimitError,
    ServiceError,
    error_kind_of,
)
from core.types import BaseService, HealthState, ServiceHealthStatus
from observability.logging import StructuredLogger
from observability.metrics import MetricsCollector

T = TypeVar("T")

ErrorHandlerFn = Callable[[BaseException, Optional[ErrorContext]], Awaitable[None]]


def _context_fields(context: Optional[ErrorContext]) -> Dict[str, Any]:
    if context is None:
        return {}
    fields: Dict[str, Any] = {
        "service": context.service,
        "operation": context.operation,
    }
    if context.user_id:
        fields["user_id"] = context.user_id
    if context.request_id:
        fields["request_id"] = context.request_id
    if context.metadata:
        fields["metadata"] = context.metadata
    return fields


class ErrorHandler(BaseService):
    """Kind-keyed error handler registry with logging and metrics."""

    name = "ErrorHandler"

    def __init__(self, logger: StructuredLogger, metrics: MetricsCollector):
        self._logger = logger.child({"component": "error_handler"})
        self._metrics = metrics
        self._handlers: Dict[ErrorKind, ErrorHandlerFn] = {}
        self._handled_count = 0
        self._handler_failures = 0
        self._register_default_handlers()

    def register(
        self,
        kind: Union[ErrorKind, Type[ServiceError]],
        handler: ErrorHandlerFn,
    ) -> None:
        """Register ``handler`` for an ErrorKind or a ServiceError subclass's kind."""
        if isinstance(kind, type) and issubclass(kind, ServiceError):
            kind = kind.kind
        self._handlers[kind] = handler

    def handler_for(self, error: BaseException) -> ErrorHandlerFn:
        kind = error_kind_of(error)
        handler = self._handlers.get(kind)
        if handler is None and isinstance(error, ServiceError):
            handler = self._handlers.get(ErrorKind.SERVICE)
        if handler is None:
            handler = self._handlers[ErrorKind.UNKNOWN]
        return handler

    async def handle(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None,
    ) -> None:
        """Log, count and dispatch ``error``. Never raises."""
        self._handled_count += 1
        error_type = type(error).__name__

        self._logger.error(
            "Error occurred",
            error=error,
            error_type=error_type,
            error_kind=error_kind_of(error).value,
            **_context_fields(context),
        )
        self._metrics.increment(
            "errors.total",
            tags={
                "error_type": error_type,
                "service": context.service if context else "unknown",
                "operation": context.operation if context else "unknown",
            },
        )

        handler = self.handler_for(error)
        try:
            await handler(error, context)
        except Exception as handler_error:
            self._handler_failures += 1
            self._logger.error(
                "Error handler failed",
                error=handler_error,
                original_error=str(error),
            )

    # -------------------------------------------------------------------------
    # Default handlers
    # -------------------------------------------------------------------------

    def _register_default_handlers(self) -> None:
        self._handlers.update({
            ErrorKind.VALIDATION: self._on_validation,
            ErrorKind.NOT_FOUND: self._on_not_found,
            ErrorKind.UNAUTHORIZED: self._on_security,
            ErrorKind.FORBIDDEN: self._on_security,
            ErrorKind.RATE_LIMIT: self._on_rate_limit,
            ErrorKind.EXTERNAL_SERVICE: self._on_upstream,
            ErrorKind.DATABASE: self._on_upstream,
            ErrorKind.CACHE: self._on_upstream,
            ErrorKind.JOB_PROCESSING: self._on_job,
            ErrorKind.UNKNOWN: self._on_unhandled,
        })

    async def _on_validation(self, error: BaseException, context: Optional[ErrorContext]) -> None:
        self._logger.warn(
            "Validation error",
            field=getattr(error, "field", None),
            error_message=str(error),
            **_context_fields(context),
        )

    async def _on_not_found(self, error: BaseException, context: Optional[ErrorContext]) -> None:
        self._logger.warn("Resource not found", error_message=str(error), **_context_fields(context))

    async def _on_security(self, error: BaseException, context: Optional[ErrorContext]) -> None:
        self._logger.warn(
            "Security event",
            error_type=type(error).__name__,
            user_id=context.user_id if context else None,
            request_id=context.request_id if context else None,
        )

    async def _on_rate_limit(self, error: BaseException, context: Optional[ErrorContext]) -> None:
        retry_after = error.retry_after if isinstance(error, RateLimitError) else None
        self._logger.warn(
            "Rate limit exceeded",
            retry_after=retry_after,
            **_context_fields(context),
        )
        self._metrics.increment(
            "rate_limit.exceeded",
            tags={"service": context.service if context else "unknown"},
        )

    async def _on_upstream(self, error: BaseException, context: Optional[ErrorContext]) -> None:
        self._logger.error(
            "Dependency failure",
            error_kind=error_kind_of(error).value,
            operation=getattr(error, "operation", None) or (context.operation if context else None),
            error_message=str(error),
        )

    async def _on_job(self, error: BaseException, context: Optional[ErrorContext]) -> None:
        self._logger.error(
            "Job processing error",
            job_type=getattr(error, "job_type", None),
            job_id=getattr(error, "job_id", None),
            error_message=str(error),
        )

    async def _on_unhandled(self, error: BaseException, context: Optional[ErrorContext]) -> None:
        self._logger.error("Unhandled error", error=error, **_context_fields(context))

    async def health_check(self) -> ServiceHealthStatus:
        return ServiceHealthStatus(
            status=HealthState.HEALTHY,
            metrics={
                "registered_handlers": len(self._handlers),
                "handled": self._handled_count,
                "handler_failures": self._handler_failures,
            },
        )


async def with_error_handling(
    operation: Callable[[], Awaitable[T]],
    context: ErrorContext,
    error_handler: ErrorHandler,
) -> T:
    """Await ``operation``; on failure report it and re-raise the original error."""
    try:
        return await operation()
    except Exception as e:
        await error_handler.handle(e, context)
        raise


def handled(
    error_handler: ErrorHandler,
    service: str,
    operation: Optional[str] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator form of ``with_error_handling`` for coroutine functions.

    Usage:
        @handled(error_handler, "DeckService")
        async def import_deck(payload):
            ...
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            context = ErrorContext(service=service, operation=operation or func.__name__)
            return await with_error_handling(
                lambda: func(*args, **kwargs), context, error_handler
            )

        return wrapper

    return decorator
