"""
Structured exceptions for Taskgraph.

Provides consistent error handling across the engine with:
- A closed set of error codes
- Custom exception classes carrying structured context
- Explicit serialization per variant into a stable error document
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


# =============================================================================
# Error Response Schema
# =============================================================================

class ErrorDetail(BaseModel):
    """Detail of a single error."""
    loc: Optional[List[str]] = None  # Location of error (e.g., ["tasks", "a/b"])
    msg: str
    type: str


class ErrorResponse(BaseModel):
    """Structured error document."""
    error: str  # Error code (e.g., "not_found", "cycle_detected")
    message: str  # Human-readable message
    details: Optional[List[ErrorDetail]] = None
    context: Optional[Dict[str, Any]] = None


class ErrorCode(str, Enum):
    INTERNAL = "internal_error"
    VALIDATION = "validation_error"
    CYCLE_DETECTED = "cycle_detected"
    INVALID_PATH = "invalid_path"
    NOT_FOUND = "not_found"
    DUPLICATE = "duplicate_task"
    CONCURRENCY = "version_conflict"
    TRANSACTION = "transaction_error"
    TRANSACTION_FINALIZED = "transaction_finalized"
    STORAGE = "storage_error"
    BULK_OPERATION = "bulk_operation_failed"
    BACKUP = "backup_error"


# =============================================================================
# Custom Exceptions
# =============================================================================

class TaskgraphException(Exception):
    """Base exception for all Taskgraph errors."""

    error_code: ErrorCode = ErrorCode.INTERNAL

    def __init__(
        self,
        message: str,
        details: Optional[List[Dict[str, Any]]] = None,
    ):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }

    def to_response(self) -> ErrorResponse:
        return ErrorResponse.model_validate(self.to_dict())


class ValidationError(TaskgraphException):
    """Input violates a graph or hierarchy rule. Never retried automatically."""

    error_code = ErrorCode.VALIDATION

    def __init__(self, message: str, violations: Optional[List[Any]] = None):
        self.violations = list(violations or [])
        super().__init__(
            message,
            details=[
                {"loc": ["tasks", v.path], "msg": v.message, "type": v.code.value}
                for v in self.violations
            ] or None,
        )


class CycleDetectedError(ValidationError):
    """A set of tasks depends on itself."""

    error_code = ErrorCode.CYCLE_DETECTED

    def __init__(self, cycle: List[str], message: Optional[str] = None):
        self.cycle = list(cycle)
        super().__init__(
            message or f"Circular dependency detected: {' -> '.join(self.cycle)}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {"cycle": self.cycle}
        return data


class InvalidPathError(ValidationError):
    """Task path does not follow the hierarchical path format."""

    error_code = ErrorCode.INVALID_PATH

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid task path '{path}': {reason}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {"path": self.path, "reason": self.reason}
        return data


class NotFoundError(TaskgraphException):
    """Resource not found."""

    error_code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identity: str):
        super().__init__(f"{resource} '{identity}' not found")
        self.resource = resource
        self.identity = identity

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {"resource": self.resource, "identity": self.identity}
        return data


class DuplicateTaskError(TaskgraphException):
    """A task with the same path already exists."""

    error_code = ErrorCode.DUPLICATE

    def __init__(self, path: str):
        super().__init__(f"Task '{path}' already exists")
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {"path": self.path}
        return data


class ConcurrencyError(TaskgraphException):
    """Version mismatch on update. The caller must re-read and retry."""

    error_code = ErrorCode.CONCURRENCY

    def __init__(self, path: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Task '{path}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.path = path
        self.expected_version = expected_version
        self.actual_version = actual_version

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {
            "path": self.path,
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }
        return data


class TransactionError(TaskgraphException):
    """Commit or rollback failure."""

    error_code = ErrorCode.TRANSACTION

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        failures: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.failures = dict(failures or {})

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {
            "transaction_id": self.transaction_id,
            "failures": self.failures,
        }
        return data


class TransactionFinalizedError(TransactionError):
    """Operation attempted on a committed or rolled back transaction."""

    error_code = ErrorCode.TRANSACTION_FINALIZED

    def __init__(self, transaction_id: str, state: str):
        super().__init__(
            f"Transaction {transaction_id} already finalized ({state})",
            transaction_id=transaction_id,
        )
        self.state = state


class StorageError(TaskgraphException):
    """Storage Port failure, classified as transient or permanent."""

    error_code = ErrorCode.STORAGE

    def __init__(self, message: str, operation: str, transient: bool = False):
        super().__init__(message)
        self.operation = operation
        self.transient = transient

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {"operation": self.operation, "transient": self.transient}
        return data


class BulkOperationError(TaskgraphException):
    """Bulk call with per-item failures; carries partial success counts."""

    error_code = ErrorCode.BULK_OPERATION

    def __init__(
        self,
        message: str,
        processed_count: int,
        failed_count: int,
        errors: List[Dict[str, Any]],
    ):
        super().__init__(message, details=[
            {"loc": ["items", e["identity"]], "msg": e["message"], "type": e["status"]}
            for e in errors
        ] or None)
        self.processed_count = processed_count
        self.failed_count = failed_count
        self.errors = errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
        }
        return data


class BackupError(TaskgraphException):
    """Export, import or rotation failure."""

    error_code = ErrorCode.BACKUP

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["context"] = {"path": self.path}
        return data


# =============================================================================
# Retry classification
# =============================================================================

_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "database is locked",
    "locked",
    "busy",
    "timeout",
    "timed out",
    "deadlock",
    "could not serialize",
    "connection reset",
    "temporarily unavailable",
)


def is_transient_message(message: str) -> bool:
    """True if a driver error message looks like a lock/busy/timeout failure."""
    lowered = message.lower()
    return any(pattern in lowered for pattern in _TRANSIENT_PATTERNS)


def is_transient(exc: BaseException) -> bool:
    """Whether an error may succeed if the operation is retried."""
    if isinstance(exc, StorageError):
        return exc.transient
    if isinstance(exc, TaskgraphException):
        return False
    return isinstance(exc, (TimeoutError, ConnectionError))
