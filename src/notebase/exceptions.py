"""Custom exceptions for the notebase engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information for callers of the façade.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002
    NOTE_ALREADY_EXISTS = 1003
    NOTE_NAME_REQUIRED = 1004
    NOTE_NAME_CONFLICT = 1005

    # Property errors (2xxx)
    PROPERTY_NOT_FOUND = 2001
    GROUP_NOT_FOUND = 2002
    PROPERTY_SPAN_INVALID = 2003

    # Tag errors (3xxx)
    TAG_NOT_FOUND = 3001
    TAG_INVALID = 3002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_CONNECTION_FAILED = 4004
    DATABASE_CORRUPTED = 4005
    MIGRATION_FAILED = 4006
    FTS_CORRUPTED = 4007

    # Bulk operation errors (45xx)
    BULK_OPERATION_FAILED = 4501
    BULK_OPERATION_PARTIAL = 4502
    BULK_OPERATION_EMPTY_INPUT = 4503

    # Search errors (5xxx)
    SEARCH_FAILED = 5001
    SEARCH_INVALID_QUERY = 5002

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    NO_FRONTMATTER = 7002
    INVALID_FRONTMATTER = 7003
    INVALID_OPERATOR = 7004
    INVALID_FORMULA = 7005
    PATH_TRAVERSAL_DETECTED = 7006

    # Base errors (8xxx)
    BASE_NOT_FOUND = 8001
    BASE_ALREADY_EXISTS = 8002
    BASE_CONFIG_INVALID = 8003
    VIEW_NOT_EDITABLE = 8004


class NotebaseError(Exception):
    """Base exception for all notebase errors.

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


class NoteNotFoundError(NotebaseError):
    """Raised when a note cannot be found by name."""

    def __init__(self, name: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note '{name}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"name": name}
        )
        self.name = name


class NoteValidationError(NotebaseError):
    """Raised when note data (name, folder, content) fails validation."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.NOTE_VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class TagNotFoundError(NotebaseError):
    """Raised when a tag is not known to the index."""

    def __init__(self, tag: str, message: Optional[str] = None):
        super().__init__(
            message or f"Tag '{tag}' not found",
            code=ErrorCode.TAG_NOT_FOUND,
            details={"tag": tag}
        )
        self.tag = tag


class PropertyError(NotebaseError):
    """Raised for inline property and property-group errors."""

    def __init__(
        self,
        message: str,
        note_id: Optional[int] = None,
        group_id: Optional[int] = None,
        key: Optional[str] = None,
        code: ErrorCode = ErrorCode.PROPERTY_NOT_FOUND
    ):
        details: Dict[str, Any] = {}
        if note_id is not None:
            details["note_id"] = note_id
        if group_id is not None:
            details["group_id"] = group_id
        if key:
            details["key"] = key

        super().__init__(message, code=code, details=details)
        self.note_id = note_id
        self.group_id = group_id
        self.key = key


class StorageError(NotebaseError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Only the last component is exposed
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class DatabaseCorruptionError(StorageError):
    """Raised when the SQLite database or its FTS5 index is corrupted.

    The index is derived data, so the usual remedy is to delete the
    database file and re-run a full sync from the notes on disk.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.DATABASE_CORRUPTED,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="database_check",
            code=code,
            original_error=original_error
        )


class MigrationError(StorageError):
    """Raised when a schema migration step fails."""

    def __init__(
        self,
        message: str,
        version: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message,
            operation="migrate",
            code=ErrorCode.MIGRATION_FAILED,
            original_error=original_error
        )
        self.version = version
        if version is not None:
            self.details["version"] = version


class SearchError(NotebaseError):
    """Raised for search-related errors."""

    def __init__(
        self,
        message: str,
        query: Optional[str] = None,
        code: ErrorCode = ErrorCode.SEARCH_FAILED
    ):
        details = {}
        if query:
            details["query"] = query[:100]

        super().__init__(message, code=code, details=details)
        self.query = query


class ConfigurationError(NotebaseError):
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


class ValidationError(NotebaseError):
    """Raised for general validation errors."""

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


class FrontmatterError(ValidationError):
    """Base class for frontmatter parse failures."""


class NoFrontmatterError(FrontmatterError):
    """Raised when content does not start with a delimited YAML header."""

    def __init__(self, message: str = "Content has no frontmatter header"):
        super().__init__(message, code=ErrorCode.NO_FRONTMATTER)


class InvalidFrontmatterError(FrontmatterError):
    """Raised when the YAML header cannot be parsed as a mapping."""

    def __init__(self, message: str, value: Optional[Any] = None):
        super().__init__(
            message, field="frontmatter", value=value,
            code=ErrorCode.INVALID_FRONTMATTER
        )


class FormulaError(ValidationError):
    """Raised by the formula parser; surfaced to callers as a cell error value."""

    def __init__(self, message: str, formula: Optional[str] = None):
        super().__init__(
            message, field="formula", value=formula,
            code=ErrorCode.INVALID_FORMULA
        )
        self.formula = formula


class BaseNotFoundError(NotebaseError):
    """Raised when a Base configuration cannot be found by name."""

    def __init__(self, name: str):
        super().__init__(
            f"Base '{name}' not found",
            code=ErrorCode.BASE_NOT_FOUND,
            details={"name": name}
        )
        self.name = name


class BaseConfigError(ValidationError):
    """Raised for invalid Base configurations or forbidden edits."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.BASE_CONFIG_INVALID
    ):
        super().__init__(message, field=field, value=value, code=code)


class BulkOperationError(NotebaseError):
    """Raised for bulk operation errors.

    Provides detailed information about which items succeeded and failed.

    Attributes:
        operation: Name of the bulk operation (e.g., "index_all_notes")
        total_count: Total number of items attempted
        success_count: Number of items that succeeded
        failed_ids: List of item identifiers that failed (full list)
        failures: Mapping of failed item identifier to failure reason

    Note:
        The `details` dict contains `failed_ids` truncated to 10 items for
        safe serialization. Access `self.failed_ids` for the complete list.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        total_count: int = 0,
        success_count: int = 0,
        failed_ids: Optional[List[str]] = None,
        failures: Optional[Dict[str, str]] = None,
        code: ErrorCode = ErrorCode.BULK_OPERATION_FAILED,
        original_error: Optional[Exception] = None
    ):
        if total_count < 0:
            raise ValueError("total_count must be non-negative")
        if success_count < 0:
            raise ValueError("success_count must be non-negative")
        if success_count > total_count:
            raise ValueError("success_count cannot exceed total_count")

        failures = dict(failures) if failures else {}
        if failed_ids is None:
            failed_ids = list(failures)

        details = {
            "operation": operation,
            "total_count": total_count,
            "success_count": success_count,
            "failed_count": total_count - success_count
        }
        if failed_ids:
            details["failed_ids"] = failed_ids[:10]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.total_count = total_count
        self.success_count = success_count
        self.failed_ids: List[str] = list(failed_ids)
        self.failures: Dict[str, str] = failures
        self.original_error = original_error

    @property
    def failed_count(self) -> int:
        """Number of items that failed (computed from total - success)."""
        return self.total_count - self.success_count
