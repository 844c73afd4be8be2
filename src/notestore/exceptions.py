"""Custom exceptions for the note store.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Every error raised by the store
reaches the caller; nothing is retried internally.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Migration errors (1xxx)
    MIGRATION_INVALID = 1001
    MIGRATION_DUPLICATE_VERSION = 1002
    MIGRATION_INVALID_ORDER = 1003
    MIGRATION_UNKNOWN_VERSION = 1004
    MIGRATION_EXECUTION_FAILED = 1005

    # Storage errors (4xxx)
    STORAGE_IO_FAILED = 4001
    STORE_CLOSED = 4002
    STORE_NOT_READY = 4003

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class NoteStoreError(Exception):
    """Base exception for all note store errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class MigrationError(NoteStoreError):
    """Raised when a migration list is invalid or a migration fails to apply.

    Invalid lists (duplicate or unordered versions) are detected when the
    list is constructed, before the store is touched. Execution failures
    carry the version that failed; that migration's changes are rolled back.
    """

    def __init__(
        self,
        message: str,
        version: Optional[str] = None,
        code: ErrorCode = ErrorCode.MIGRATION_EXECUTION_FAILED,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if version:
            details["version"] = version
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.version = version
        self.original_error = original_error

    @classmethod
    def duplicate_version(cls, version: str) -> "MigrationError":
        return cls(
            f"Duplicate migration version '{version}'",
            version=version,
            code=ErrorCode.MIGRATION_DUPLICATE_VERSION,
        )

    @classmethod
    def execution_failed(
        cls, version: str, original_error: Exception
    ) -> "MigrationError":
        return cls(
            f"Migration {version} failed and was rolled back",
            version=version,
            code=ErrorCode.MIGRATION_EXECUTION_FAILED,
            original_error=original_error,
        )


class StoreError(NoteStoreError):
    """Raised for storage/persistence errors and lifecycle violations."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_IO_FAILED,
        original_error: Optional[Exception] = None
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if path:
            details["path"] = path[:100]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error

    @classmethod
    def io_failure(
        cls,
        operation: str,
        original_error: Exception,
        path: Optional[str] = None,
    ) -> "StoreError":
        return cls(
            f"Storage failure during {operation}",
            operation=operation,
            path=path,
            code=ErrorCode.STORAGE_IO_FAILED,
            original_error=original_error,
        )

    @classmethod
    def closed(cls, operation: str) -> "StoreError":
        return cls(
            f"Cannot {operation}: the database has been closed",
            operation=operation,
            code=ErrorCode.STORE_CLOSED,
        )

    @classmethod
    def not_ready(cls, operation: str, state: str) -> "StoreError":
        error = cls(
            f"Cannot {operation}: the database is not ready",
            operation=operation,
            code=ErrorCode.STORE_NOT_READY,
        )
        error.details["state"] = state
        return error


class ConfigurationError(NoteStoreError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(NoteStoreError):
    """Raised for invalid input, such as a blank entry path."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
