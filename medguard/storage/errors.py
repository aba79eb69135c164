from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TransientStorageError(Exception):
    """Raised when the backing store is briefly unreachable; safe to retry reads."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class RecordValidationError(ValueError):
    """Raised when a row read from storage does not match the typed record shape."""


__all__ = ["ConstraintViolation", "TransientStorageError", "RecordValidationError"]
