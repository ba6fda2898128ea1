"""
Domain errors.

Every refusal is raised before any write happens; the API layer maps each
class onto an HTTP status.
"""
from typing import Any, Dict, Optional


class TreasuryError(Exception):
    """Base exception for all treasury errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(TreasuryError):
    """Missing or malformed input, caught before the store is touched."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="VALIDATION_FAILED", details=details)


class PermissionDeniedError(TreasuryError):
    """Illegal transition or role/relationship mismatch."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="PERMISSION_DENIED", details=details)


class ConflictError(TreasuryError):
    """The record changed under us: the expected status no longer holds."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFLICT", details=details)


class RecordNotFoundError(TreasuryError):
    def __init__(self, kind: str, record_id: Any):
        super().__init__(
            f"{kind} not found",
            code="NOT_FOUND",
            details={"kind": kind, "id": record_id}
        )


class StorageError(TreasuryError):
    """Blob store could not complete an operation."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="STORAGE_ERROR", details=details)
