"""
Tests for core/errors.py - Unified Error Handling.

Covers:
- ServiceError defaults, formatting and serialization
- Specialized error classes and their extra fields
- Classification of plain exceptions
- Status/code helpers and error context construction
"""
import asyncio

import pytest

from core.errors import (
    CacheError,
    CircularDependencyError,
    ConflictError,
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


# =============================================================================
# ServiceError Tests
# =============================================================================


class TestServiceError:
    """Tests for the base ServiceError."""

    def test_defaults(self):
        error = ServiceError("Something broke")

        assert error.message == "Something broke"
        assert error.code == "SERVICE_ERROR"
        assert error.status_code == 500
        assert error.severity == ErrorSeverity.ERROR
        assert error.kind == ErrorKind.SERVICE
        assert error.context is None
        assert error.cause is None

    def test_overrides(self):
        cause = RuntimeError("disk full")
        error = ServiceError(
            "Write failed",
            code="WRITE_FAILED",
            status_code=503,
            severity=ErrorSeverity.CRITICAL,
            cause=cause,
        )

        assert error.code == "WRITE_FAILED"
        assert error.status_code == 503
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.cause is cause

    def test_str_includes_code_service_and_cause(self):
        context = ErrorContext(service="DeckService", operation="save")
        error = ServiceError("Write failed", context=context, cause=RuntimeError("disk full"))

        rendered = str(error)

        assert rendered.startswith("[SERVICE_ERROR] Write failed")
        assert "(service: DeckService)" in rendered
        assert "[caused by: disk full]" in rendered

    def test_to_dict(self):
        context = ErrorContext(service="DeckService", operation="save", request_id="req-1")
        error = ServiceError("Write failed", context=context)

        data = error.to_dict()

        assert data["code"] == "SERVICE_ERROR"
        assert data["kind"] == "service"
        assert data["message"] == "Write failed"
        assert data["status_code"] == 500
        assert data["severity"] == "error"
        assert data["context"]["request_id"] == "req-1"
        assert data["cause"] is None
        assert "timestamp" in data

    def test_with_context_creates_context(self):
        error = ServiceError("Oops").with_context(deck_id="d1")

        assert error.context is not None
        assert error.context.service == "unknown"
        assert error.context.metadata == {"deck_id": "d1"}

    def test_with_context_merges_metadata(self):
        context = ErrorContext(service="DeckService", operation="save", metadata={"a": 1})
        error = ServiceError("Oops", context=context).with_context(b=2)

        assert error.context.metadata == {"a": 1, "b": 2}

    def test_is_exception(self):
        with pytest.raises(ServiceError):
            raise ServiceError("boom")


# =============================================================================
# Specialized Error Tests
# =============================================================================


class TestSpecializedErrors:
    """Tests for the ServiceError subclasses."""

    def test_validation_error(self):
        error = ValidationError("Deck name is required", field="name")

        assert error.code == "VALIDATION_ERROR"
        assert error.status_code == 400
        assert error.field == "name"
        assert error.kind == ErrorKind.VALIDATION
        assert error.severity == ErrorSeverity.WARNING

    def test_not_found_with_identifier(self):
        error = NotFoundError("Deck", "deck-42")

        assert error.message == "Deck with id 'deck-42' not found"
        assert error.status_code == 404
        assert error.resource == "Deck"
        assert error.identifier == "deck-42"

    def test_not_found_without_identifier(self):
        assert NotFoundError("Card").message == "Card not found"

    def test_auth_errors(self):
        assert UnauthorizedError().status_code == 401
        assert UnauthorizedError().message == "Authentication required"
        assert ForbiddenError().status_code == 403
        assert ForbiddenError().kind == ErrorKind.FORBIDDEN

    def test_conflict_error(self):
        error = ConflictError("Deck name already taken")

        assert error.code == "CONFLICT"
        assert error.status_code == 409

    def test_rate_limit_error(self):
        error = RateLimitError(retry_after=30)

        assert error.code == "RATE_LIMIT_EXCEEDED"
        assert error.status_code == 429
        assert error.retry_after == 30

    def test_external_service_error(self):
        original = ConnectionError("refused")
        error = ExternalServiceError("scryfall", "Card lookup failed", original_error=original)

        assert error.message == "scryfall: Card lookup failed"
        assert error.status_code == 502
        assert error.service == "scryfall"
        assert error.original_error is original
        assert error.cause is original

    def test_cache_error(self):
        error = CacheError("Could not encode", operation="serialize")

        assert error.kind == ErrorKind.CACHE
        assert error.operation == "serialize"

    def test_job_processing_error(self):
        error = JobProcessingError("deck.import", "Parser crashed", job_id="job_1")

        assert error.job_type == "deck.import"
        assert error.job_id == "job_1"
        assert error.kind == ErrorKind.JOB_PROCESSING

    def test_timeout_error(self):
        error = OperationTimeoutError("Too slow", timeout_seconds=5)

        assert error.code == "TIMEOUT"
        assert error.status_code == 504
        assert error.timeout_seconds == 5

    def test_service_not_registered(self):
        error = ServiceNotRegisteredError("CardIndex")

        assert error.message == "Service 'CardIndex' is not registered"
        assert error.code == "SERVICE_NOT_REGISTERED"
        assert error.token_name == "CardIndex"

    def test_circular_dependency(self):
        error = CircularDependencyError(["A", "B", "A"])

        assert error.message == "Circular dependency detected: A -> B -> A"
        assert error.cycle == ["A", "B", "A"]
        assert error.kind == ErrorKind.CIRCULAR_DEPENDENCY

    def test_every_subclass_is_a_service_error(self):
        for error in (
            ValidationError("x"),
            NotFoundError("x"),
            UnauthorizedError(),
            ForbiddenError(),
            ConflictError("x"),
            RateLimitError(),
            ExternalServiceError("x", "y"),
            CacheError("x"),
            JobProcessingError("x", "y"),
            OperationTimeoutError("x"),
            ServiceNotRegisteredError("x"),
            CircularDependencyError(["x", "x"]),
        ):
            assert isinstance(error, ServiceError)


# =============================================================================
# Helper Tests
# =============================================================================


class TestErrorHelpers:
    """Tests for classification and lookup helpers."""

    def test_error_kind_of(self):
        assert error_kind_of(ConflictError("x")) == ErrorKind.CONFLICT
        assert error_kind_of(RuntimeError("x")) == ErrorKind.UNKNOWN

    def test_is_service_error(self):
        assert is_service_error(ValidationError("x"))
        assert not is_service_error(ValueError("x"))

    def test_status_code_helper(self):
        assert get_error_status_code(NotFoundError("Deck")) == 404
        assert get_error_status_code(RuntimeError("x")) == 500

    def test_code_helper(self):
        assert get_error_code(RateLimitError()) == "RATE_LIMIT_EXCEEDED"
        assert get_error_code(RuntimeError("x")) == "INTERNAL_ERROR"

    def test_classify_passes_service_errors_through(self):
        error = ConflictError("x")
        assert classify_error(error) is error

    def test_classify_timeout(self):
        classified = classify_error(asyncio.TimeoutError())
        assert isinstance(classified, OperationTimeoutError)

    def test_classify_connection_error(self):
        original = ConnectionError("refused")
        classified = classify_error(original)

        assert isinstance(classified, ExternalServiceError)
        assert classified.original_error is original

    def test_classify_value_error(self):
        classified = classify_error(ValueError("bad input"))

        assert isinstance(classified, ValidationError)
        assert classified.message == "bad input"

    def test_classify_permission_error(self):
        assert isinstance(classify_error(PermissionError()), ForbiddenError)

    def test_classify_unknown(self):
        original = RuntimeError("kaboom")
        classified = classify_error(original)

        assert type(classified) is ServiceError
        assert classified.code == "INTERNAL_ERROR"
        assert classified.cause is original


class TestErrorContext:
    """Tests for ErrorContext construction."""

    def test_create_error_context(self):
        context = create_error_context(
            "DeckService",
            "import",
            user_id="u1",
            request_id="r1",
            metadata={"deck_id": "d1"},
        )

        assert context.service == "DeckService"
        assert context.operation == "import"
        assert context.user_id == "u1"
        assert context.request_id == "r1"
        assert context.metadata == {"deck_id": "d1"}
        # No active span
        assert context.trace_id is None
        assert context.span_id is None

    def test_stack_trace_captured_inside_except(self):
        try:
            raise RuntimeError("inner")
        except RuntimeError:
            context = create_error_context("DeckService", "import")

        assert context.stack_trace is not None
        assert "RuntimeError: inner" in context.stack_trace

    def test_to_dict(self):
        context = ErrorContext(service="S", operation="op", metadata={"k": "v"})
        data = context.to_dict()

        assert data["service"] == "S"
        assert data["operation"] == "op"
        assert data["metadata"] == {"k": "v"}
        assert data["stack_trace"] is None
