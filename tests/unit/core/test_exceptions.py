"""Unit tests for IndexPilot exception hierarchy.

This module tests the exception classes and error handling utilities
to ensure proper error reporting and context management.
"""

import pytest

from indexpilot.core.exceptions import (
    ActionExecutionError,
    AnalysisError,
    BackupError,
    CacheError,
    ConfigurationError,
    DatabaseConnectionError,
    DatabaseError,
    DatabaseErrorKind,
    ErrorCodes,
    ExecutionCancelledError,
    IndexPilotException,
    OptimizationError,
    OptimizationInProgressError,
    PlanValidationError,
    QueryError,
    SchemaIntrospectionError,
    UnknownOptimizationTypeError,
    ValidationError,
    create_error_from_exception,
)


class TestIndexPilotException:
    """Test base IndexPilot exception class."""

    def test_basic_exception_creation(self):
        """Test basic exception creation with message only."""
        exc = IndexPilotException("Test error message")

        assert str(exc) == "IndexPilotException: Test error message"
        assert exc.message == "Test error message"
        assert exc.code == "IndexPilotException"
        assert exc.context == {}
        assert exc.cause is None

    def test_exception_with_custom_code(self):
        """Test exception creation with custom error code."""
        exc = IndexPilotException("Cycle failed", code="CYCLE_FAILED")

        assert exc.code == "CYCLE_FAILED"
        assert str(exc) == "CYCLE_FAILED: Cycle failed"

    def test_exception_to_dict(self):
        """Test exception serialization to dictionary."""
        original_error = ValueError("Original")

        exc = IndexPilotException(
            "Test message",
            code="TEST_CODE",
            context={"phase": "analyzing"},
            cause=original_error
        )

        result = exc.to_dict()

        assert result == {
            "error_type": "IndexPilotException",
            "message": "Test message",
            "code": "TEST_CODE",
            "context": {"phase": "analyzing"},
            "cause": "Original",
        }

    def test_exception_repr(self):
        """Test exception string representation."""
        repr_str = repr(IndexPilotException("Test message", code="TEST_CODE", context={"key": "value"}))

        assert "IndexPilotException" in repr_str
        assert "Test message" in repr_str
        assert "TEST_CODE" in repr_str
        assert "{'key': 'value'}" in repr_str


class TestDatabaseError:
    """Test classified database errors."""

    def test_default_kind_is_generic(self):
        """Test the default classification."""
        exc = DatabaseError("Something broke")

        assert exc.kind is DatabaseErrorKind.GENERIC
        assert exc.retryable is False

    @pytest.mark.parametrize("kind, retryable", [
        (DatabaseErrorKind.TIMEOUT, True),
        (DatabaseErrorKind.CONNECTION_LOST, True),
        (DatabaseErrorKind.DUPLICATE, False),
        (DatabaseErrorKind.NOT_FOUND, False),
        (DatabaseErrorKind.ACCESS_DENIED, False),
        (DatabaseErrorKind.SYNTAX, False),
    ])
    def test_retryable_kinds(self, kind, retryable):
        """Test which kinds may be retried."""
        assert QueryError("failed", kind=kind).retryable is retryable

    def test_to_dict_includes_kind(self):
        """Test serialization carries the classification."""
        data = QueryError("Duplicate key name 'idx_a'", kind=DatabaseErrorKind.DUPLICATE).to_dict()

        assert data["error_type"] == "QueryError"
        assert data["kind"] == "duplicate"
        assert data["retryable"] is False

    def test_kind_is_string_enum(self):
        """Test kinds compare equal to their values."""
        assert DatabaseErrorKind.NOT_FOUND == "not_found"
        assert DatabaseErrorKind("timeout") is DatabaseErrorKind.TIMEOUT


class TestPlanValidationError:
    """Test plan validation errors."""

    def test_idempotent_flag(self):
        """Test the goal-already-met flag."""
        exc = PlanValidationError(
            "Index already exists",
            idempotent=True,
            code=ErrorCodes.INDEX_ALREADY_EXISTS,
        )

        assert exc.idempotent is True
        assert exc.code == ErrorCodes.INDEX_ALREADY_EXISTS

    def test_not_idempotent_by_default(self):
        """Test the default flag value."""
        assert PlanValidationError("Table missing").idempotent is False


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    def test_validation_error_is_configuration_error(self):
        """Test ValidationError inherits from ConfigurationError."""
        assert isinstance(ValidationError("bad"), ConfigurationError)

    def test_database_errors(self):
        """Test database error subclasses."""
        assert isinstance(QueryError("q"), DatabaseError)
        assert isinstance(DatabaseConnectionError("c"), DatabaseError)

    def test_analysis_errors(self):
        """Test analysis error subclasses."""
        assert isinstance(SchemaIntrospectionError("s"), AnalysisError)

    @pytest.mark.parametrize("exception_class", [
        PlanValidationError,
        ActionExecutionError,
        BackupError,
        ExecutionCancelledError,
        OptimizationInProgressError,
        UnknownOptimizationTypeError,
    ])
    def test_optimization_errors(self, exception_class):
        """Test optimization error subclasses."""
        assert isinstance(exception_class("Test message"), OptimizationError)


class TestErrorCodes:
    """Test error code constants."""

    @pytest.mark.parametrize("name", [
        "CONFIG_NOT_FOUND",
        "CONNECTION_LOST",
        "SCHEMA_INTROSPECTION_FAILED",
        "USAGE_STATISTICS_UNAVAILABLE",
        "PRIMARY_KEY_PROTECTED",
        "VERIFICATION_FAILED",
        "OPTIMIZATION_IN_PROGRESS",
        "UNKNOWN_OPTIMIZATION_TYPE",
    ])
    def test_error_codes_exist(self, name):
        """Test that error code constants exist and equal their names."""
        assert getattr(ErrorCodes, name) == name

    def test_error_codes_are_uppercase(self):
        """Test that error codes follow uppercase convention."""
        codes = [value for key, value in vars(ErrorCodes).items() if not key.startswith("_")]

        assert codes
        assert all(isinstance(code, str) and code.isupper() for code in codes)


class TestCreateErrorFromException:
    """Test error creation utility function."""

    def test_create_from_connection_refused_error(self):
        """Test creating IndexPilot error from ConnectionRefusedError."""
        original = ConnectionRefusedError("Connection refused")
        context = {"host": "localhost", "port": 3306}

        result = create_error_from_exception(original, context=context)

        assert isinstance(result, DatabaseConnectionError)
        assert result.kind is DatabaseErrorKind.CONNECTION_LOST
        assert result.code == ErrorCodes.CONNECTION_LOST
        assert result.context == context
        assert result.cause == original

    def test_create_from_timeout_error(self):
        """Test creating IndexPilot error from TimeoutError."""
        original = TimeoutError("Operation timed out")

        result = create_error_from_exception(original)

        assert isinstance(result, QueryError)
        assert result.kind is DatabaseErrorKind.TIMEOUT
        assert result.retryable

    def test_create_from_value_error(self):
        """Test creating IndexPilot error from ValueError."""
        original = ValueError("Invalid value")

        result = create_error_from_exception(original, message="Custom validation message")

        assert isinstance(result, ValidationError)
        assert "Custom validation message" in str(result)
        assert result.cause == original

    def test_create_from_unknown_exception(self):
        """Test creating IndexPilot error from unknown exception type."""
        original = RuntimeError("Unknown error")

        result = create_error_from_exception(original, code="UNKNOWN_ERROR")

        assert type(result) is IndexPilotException
        assert result.code == "UNKNOWN_ERROR"

    def test_indexpilot_exception_passes_through(self):
        """Test that IndexPilot errors are returned unchanged."""
        original = CacheError("Key invalid", code=ErrorCodes.CACHE_KEY_INVALID)

        assert create_error_from_exception(original) is original


class TestExceptionUsagePatterns:
    """Test common exception usage patterns."""

    def test_exception_chaining(self):
        """Test exception chaining with cause."""
        with pytest.raises(ConfigurationError) as exc_info:
            try:
                raise ValueError("Inner error")
            except ValueError as e:
                raise ConfigurationError(
                    "Configuration parsing failed",
                    code="CONFIG_PARSE_ERROR",
                    context={"file": "indexpilot.yaml"},
                    cause=e
                ) from e

        exc = exc_info.value
        assert isinstance(exc.cause, ValueError)
        assert exc.__cause__ is exc.cause
        assert exc.context["file"] == "indexpilot.yaml"

    def test_unicode_message_handling(self):
        """Test handling of unicode messages."""
        unicode_message = "Index für Tabelle fehlgeschlagen"
        exc = IndexPilotException(unicode_message)

        assert unicode_message in str(exc)
        assert exc.to_dict()["message"] == unicode_message


@pytest.mark.parametrize("exception_class,expected_code", [
    (ConfigurationError, "ConfigurationError"),
    (ValidationError, "ValidationError"),
    (DatabaseConnectionError, "DatabaseConnectionError"),
    (SchemaIntrospectionError, "SchemaIntrospectionError"),
    (ActionExecutionError, "ActionExecutionError"),
])
def test_exception_default_codes(exception_class, expected_code):
    """Test that exceptions have correct default error codes."""
    exc = exception_class("Test message")
    assert exc.code == expected_code
