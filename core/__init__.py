"""
Deckforge - Core Module

Foundational pieces shared by every runtime service:
- Unified error taxonomy and helpers
- Base service contract and health types
- Configuration dataclasses

The ErrorHandler service (core.error_handler) and the runtime wiring
(core.bootstrap) depend on the other packages and are imported directly.

Usage:
    from core import RuntimeConfig, ValidationError, BaseService
    from core.bootstrap import service_runtime
"""

from core.errors import (
    CacheError,
    CircularDependencyError,
    ConflictError,
    DatabaseError,
    ErrorContext,
    ErrorKind,
    ErrorSeverity,
    ExternalServiceError,
    ForbiddenError,
    JobProcessingError,
    NotFoundError,
    OperationTimeoutError,
    RateLimitError,
    ServiceError,
    ServiceNotRegisteredError,
    UnauthorizedError,
    ValidationError,
    classify_error,
    create_error_context,
    error_kind_of,
    get_error_code,
    get_error_status_code,
    is_service_error,
)
from core.types import (
    BaseService,
    HealthState,
    JSONValue,
    Metadata,
    ServiceHealthStatus,
    Tags,
)
from core.config import (
    CacheConfig,
    JobProcessorConfig,
    LoggingConfig,
    MetricsConfig,
    RuntimeConfig,
)

__all__ = [
    # Errors
    "CacheError",
    "CircularDependencyError",
    "ConflictError",
    "DatabaseError",
    "ErrorContext",
    "ErrorKind",
    "ErrorSeverity",
    "ExternalServiceError",
    "ForbiddenError",
    "JobProcessingError",
    "NotFoundError",
    "OperationTimeoutError",
    "RateLimitError",
    "ServiceError",
    "ServiceNotRegisteredError",
    "UnauthorizedError",
    "ValidationError",
    "classify_error",
    "create_error_context",
    "error_kind_of",
    "get_error_code",
    "get_error_status_code",
    "is_service_error",
    # Types
    "BaseService",
    "HealthState",
    "JSONValue",
    "Metadata",
    "ServiceHealthStatus",
    "Tags",
    # Config
    "CacheConfig",
    "JobProcessorConfig",
    "LoggingConfig",
    "MetricsConfig",
    "RuntimeConfig",
]
