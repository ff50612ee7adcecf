"""
Deckforge - Unified Error Handling

Provides the error taxonomy shared by every runtime service, and the
helpers used to classify and surface errors at API boundaries.

Features:
- Hierarchical exception classes with context preservation
- Closed ErrorKind enum used as the single dispatch key
- Machine-readable codes and HTTP-style status codes
- Structured error context for debugging
- OpenTelemetry integration for error tracing
"""

from __future__ import annotations

import asyncio
import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Sequence,
    Type,
    TypeVar,
)

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from core.types import Metadata

T = TypeVar("T")


class ErrorSeverity(Enum):
    """Error severity levels for prioritized handling."""

    INFO = "info"        # Expected condition, surfaced to the caller
    WARNING = "warning"  # Bad input or missing resource
    ERROR = "error"      # Operation failed
    CRITICAL = "critical"  # Runtime wiring is broken


class ErrorKind(Enum):
    """Closed set of error kinds; handler dispatch is keyed by these."""

    SERVICE = "service"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    CACHE = "cache"
    JOB_PROCESSING = "job_processing"
    TIMEOUT = "timeout"
    SERVICE_NOT_REGISTERED = "service_not_registered"
    CIRCULAR_DEPENDENCY = "circular_dependency"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Structured context threaded through error handling calls."""

    service: str
    operation: str
    user_id: Optional[str] = None
    request_id: Optional[str] = None
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    metadata: Metadata = field(default_factory=dict)
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary for serialization."""
        return {
            "service": self.service,
            "operation": self.operation,
            "user_id": self.user_id,
            "request_id": self.request_id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "metadata": self.metadata,
            "stack_trace": self.stack_trace,
        }

    @classmethod
    def from_current_span(
        cls,
        service: str,
        operation: str,
        **kwargs: Any
    ) -> "ErrorContext":
        """Create context from current OpenTelemetry span."""
        span = trace.get_current_span()
        trace_id = None
        span_id = None

        if span and span.is_recording():
            ctx = span.get_span_context()
            if ctx.is_valid:
                trace_id = format(ctx.trace_id, "032x")
                span_id = format(ctx.span_id, "016x")

        return cls(
            service=service,
            operation=operation,
            trace_id=trace_id,
            span_id=span_id,
            stack_trace=traceback.format_exc() if sys.exc_info()[0] else None,
            **kwargs
        )


class ServiceError(Exception):
    """
    Base exception for all runtime errors.

    Provides:
    - Machine-readable code and HTTP-style status code
    - Severity level
    - Chained exception support
    - OpenTelemetry span recording
    """

    kind: ErrorKind = ErrorKind.SERVICE
    default_code: str = "SERVICE_ERROR"
    default_status_code: int = 500
    default_severity: ErrorSeverity = ErrorSeverity.ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[ErrorContext] = None,
        severity: Optional[ErrorSeverity] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status_code
        self.context = context
        self.severity = severity or self.default_severity
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        self._record_to_span()

    def _record_to_span(self) -> None:
        """Record exception to current OpenTelemetry span."""
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_status(Status(StatusCode.ERROR, self.message))
            span.record_exception(self)
            span.set_attribute("error.code", self.code)
            span.set_attribute("error.kind", self.kind.value)
            span.set_attribute("error.severity", self.severity.value)
            if self.context:
                span.set_attribute("error.service", self.context.service)
                span.set_attribute("error.operation", self.context.operation)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "status_code": self.status_code,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context.to_dict() if self.context else None,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        parts = [f"[{self.code}] {self.message}"]
        if self.context:
            parts.append(f" (service: {self.context.service})")
        if self.cause:
            parts.append(f" [caused by: {self.cause}]")
        return "".join(parts)

    def with_context(self, **kwargs: Any) -> "ServiceError":
        """Add additional metadata to the error context."""
        if self.context:
            self.context.metadata.update(kwargs)
        else:
            self.context = ErrorContext(
                service="unknown",
                operation="unknown",
                metadata=kwargs
            )
        return self


class ValidationError(ServiceError):
    """Bad input; carries the offending field."""

    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"
    default_status_code = 400
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field


class NotFoundError(ServiceError):
    """A requested resource does not exist."""

    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"
    default_status_code = 404
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None,
        **kwargs: Any,
    ):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message, **kwargs)
        self.resource = resource
        self.identifier = identifier


class UnauthorizedError(ServiceError):
    kind = ErrorKind.UNAUTHORIZED
    default_code = "UNAUTHORIZED"
    default_status_code = 401
    default_severity = ErrorSeverity.WARNING

    def __init__(self, message: str = "Authentication required", **kwargs: Any):
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    kind = ErrorKind.FORBIDDEN
    default_code = "FORBIDDEN"
    default_status_code = 403
    default_severity = ErrorSeverity.WARNING

    def __init__(self, message: str = "Insufficient permissions", **kwargs: Any):
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT
    default_code = "CONFLICT"
    default_status_code = 409
    default_severity = ErrorSeverity.WARNING


class RateLimitError(ServiceError):
    """Caller exceeded a rate limit; ``retry_after`` is in seconds."""

    kind = ErrorKind.RATE_LIMIT
    default_code = "RATE_LIMIT_EXCEEDED"
    default_status_code = 429
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ExternalServiceError(ServiceError):
    """Wraps an upstream failure and preserves the original error."""

    kind = ErrorKind.EXTERNAL_SERVICE
    default_code = "EXTERNAL_SERVICE_ERROR"
    default_status_code = 502

    def __init__(
        self,
        service: str,
        message: str,
        original_error: Optional[BaseException] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("cause", original_error)
        super().__init__(f"{service}: {message}", **kwargs)
        self.service = service
        self.original_error = original_error


class DatabaseError(ServiceError):
    """Wraps a storage-layer failure."""

    kind = ErrorKind.DATABASE
    default_code = "DATABASE_ERROR"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("cause", original_error)
        super().__init__(message, **kwargs)
        self.operation = operation
        self.original_error = original_error


class CacheError(ServiceError):
    """Wraps a cache-operation failure."""

    kind = ErrorKind.CACHE
    default_code = "CACHE_ERROR"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.operation = operation


class JobProcessingError(ServiceError):
    """Wraps a job handler failure."""

    kind = ErrorKind.JOB_PROCESSING
    default_code = "JOB_PROCESSING_ERROR"

    def __init__(
        self,
        job_type: str,
        message: str,
        job_id: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.job_type = job_type
        self.job_id = job_id


class OperationTimeoutError(ServiceError):
    """An operation did not settle within its time budget."""

    kind = ErrorKind.TIMEOUT
    default_code = "TIMEOUT"
    default_status_code = 504
    default_severity = ErrorSeverity.WARNING

    def __init__(
        self,
        message: str,
        timeout_seconds: Optional[float] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds


class ServiceNotRegisteredError(ServiceError):
    """Resolution of a token the container does not know."""

    kind = ErrorKind.SERVICE_NOT_REGISTERED
    default_code = "SERVICE_NOT_REGISTERED"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, token_name: str, **kwargs: Any):
        super().__init__(f"Service '{token_name}' is not registered", **kwargs)
        self.token_name = token_name


class CircularDependencyError(ServiceError):
    """The declared dependency graph contains a cycle."""

    kind = ErrorKind.CIRCULAR_DEPENDENCY
    default_code = "CIRCULAR_DEPENDENCY"
    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, cycle: Sequence[str], **kwargs: Any):
        path = " -> ".join(cycle)
        super().__init__(f"Circular dependency detected: {path}", **kwargs)
        self.cycle: List[str] = list(cycle)


# =============================================================================
# HELPERS
# =============================================================================

# Error mapping for automatic classification
ERROR_TYPE_MAP: Dict[Type[BaseException], Type[ServiceError]] = {
    asyncio.TimeoutError: OperationTimeoutError,
    TimeoutError: OperationTimeoutError,
    ConnectionError: ExternalServiceError,
    PermissionError: ForbiddenError,
    ValueError: ValidationError,
}


def error_kind_of(error: BaseException) -> ErrorKind:
    """Return the dispatch kind of an error; plain exceptions are UNKNOWN."""
    if isinstance(error, ServiceError):
        return error.kind
    return ErrorKind.UNKNOWN


def is_service_error(error: BaseException) -> bool:
    return isinstance(error, ServiceError)


def get_error_status_code(error: BaseException) -> int:
    if isinstance(error, ServiceError):
        return error.status_code
    return 500


def get_error_code(error: BaseException) -> str:
    if isinstance(error, ServiceError):
        return error.code
    return "INTERNAL_ERROR"


def create_error_context(
    service: str,
    operation: str,
    user_id: Optional[str] = None,
    request_id: Optional[str] = None,
    metadata: Optional[Metadata] = None,
) -> ErrorContext:
    """Build an ErrorContext enriched with the current trace identifiers."""
    return ErrorContext.from_current_span(
        service,
        operation,
        user_id=user_id,
        request_id=request_id,
        metadata=dict(metadata or {}),
    )


def classify_error(error: BaseException) -> ServiceError:
    """Classify a generic exception into the appropriate ServiceError type."""
    if isinstance(error, ServiceError):
        return error
    for error_type, service_type in ERROR_TYPE_MAP.items():
        if isinstance(error, error_type):
            if service_type is ExternalServiceError:
                return ExternalServiceError(
                    service="upstream",
                    message=str(error),
                    original_error=error,
                )
            if service_type is ForbiddenError:
                return ForbiddenError(str(error) or "Permission denied", cause=error)
            return service_type(str(error), cause=error)
    return ServiceError(str(error), code="INTERNAL_ERROR", cause=error)
