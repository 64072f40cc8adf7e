"""Error Hierarchy — typed, categorized exceptions for every Angio Core Lab failure mode.

Invariants:
    - Every error has a code (str), category (ErrorCategory), severity (ErrorSeverity)
    - Domain errors (400-level) are recoverable outcomes surfaced to the caller
    - Infrastructure errors (500-level) are critical; storage failures always follow a rollback
    - to_response() produces the REST envelope used by collaborator routes
    - No internal details leaked in user-facing messages

Design Decisions:
    - Single hierarchy with AngioLabError base: one handler in the host catches all (ADR: uniform error shape)
    - ErrorContext as dataclass: record coordinates travel with the error, not with the logger
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorSeverity(str, Enum):
    """Error severity for observability and client handling."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    VALIDATION = "validation"
    RESOURCE_NOT_FOUND = "resource_not_found"
    CONFLICT = "conflict"
    DATABASE = "database"
    BACKUP = "backup"
    INTERNAL = "internal"


@dataclass
class ErrorContext:
    """Record coordinates attached to an error for logs and responses."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    patient_id: str | None = None
    table_name: str | None = None
    record_id: int | None = None
    debug_info: dict[str, Any] | None = None


class AngioLabError(Exception):
    """Base exception for all Angio Core Lab errors."""

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: ErrorContext | None = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.http_status = http_status

    @property
    def recoverable(self) -> bool:
        return self.http_status < 500

    def to_response(self) -> dict:
        """Convert to standardized REST error response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "severity": self.severity.value,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "patient_id": self.context.patient_id,
                    "table_name": self.context.table_name,
                    "record_id": self.context.record_id,
                },
            }
        }


# ─── Domain Errors (400-level) ──────────────────────────────────

class RecordValidationError(AngioLabError):
    """Malformed or out-of-range input (format, enum, range, missing field)."""
    def __init__(self, message: str, field: str, context: ErrorContext | None = None):
        super().__init__(
            message, "VALIDATION_ERROR", ErrorCategory.VALIDATION,
            ErrorSeverity.ERROR, context, 400,
        )
        self.field = field


class ResourceNotFoundError(AngioLabError):
    """Referenced patient, procedure, user or backup does not exist."""
    def __init__(
        self, resource_type: str, resource_id: str, context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "RESOURCE_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND,
            ErrorSeverity.ERROR, context, 404,
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(AngioLabError):
    """Uniqueness violation (patient_id, email)."""
    def __init__(
        self, resource_type: str, field: str, value: str,
        context: ErrorContext | None = None,
    ):
        super().__init__(
            f"{resource_type} with {field} '{value}' already exists",
            "CONFLICT", ErrorCategory.CONFLICT,
            ErrorSeverity.ERROR, context, 409,
        )
        self.resource_type = resource_type
        self.field = field


# ─── Infrastructure Errors (500-level) ──────────────────────────

class StorageError(AngioLabError):
    """Storage engine I/O or constraint failure not otherwise classified."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Storage {operation} failed: {message}",
            "STORAGE_ERROR", ErrorCategory.DATABASE,
            ErrorSeverity.CRITICAL, context, 503,
        )
        self.operation = operation


class BackupError(AngioLabError):
    """Snapshot capture, write, prune or restore failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        super().__init__(
            f"Backup {operation} failed: {message}",
            "BACKUP_ERROR", ErrorCategory.BACKUP,
            ErrorSeverity.CRITICAL, context, 500,
        )
        self.operation = operation
