from __future__ import annotations

from datetime import timedelta
from typing import Callable, Optional, TypeVar

from medguard.storage.errors import TransientStorageError

T = TypeVar("T")


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - expired (400)
    - attempts_exhausted (400)
    - mismatch (400)
    - persistence_failure (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class Unauthenticated(ServiceError):
    """No valid session context (401)."""
    status_code = 401
    error_code = "unauthorized"


class ValidationError(ServiceError):
    """Malformed input, e.g. wrong question count or non-numeric code (400)."""
    status_code = 400
    error_code = "validation_error"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimited(ServiceError):
    """Lockout or rate limit active (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[timedelta] = None,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after = retry_after
        detail = dict(detail or {})
        if retry_after is not None:
            detail.setdefault("retry_after_seconds", retry_after_seconds(retry_after))
        super().__init__(message, detail=detail)


class Expired(ServiceError):
    """One-time code or setup window has passed."""
    status_code = 400
    error_code = "expired"


class AttemptsExhausted(ServiceError):
    """Phone code attempts used up."""
    status_code = 400
    error_code = "attempts_exhausted"


class Mismatch(ServiceError):
    """Wrong code, answer, backup code or confirmation proof."""
    status_code = 400
    error_code = "mismatch"


class PersistenceFailure(ServiceError):
    """Storage layer error surfaced to the caller (503)."""
    status_code = 503
    error_code = "persistence_failure"


class DeliveryFailure(ServiceError):
    """Notification transport rejected the message (502)."""
    status_code = 502
    error_code = "delivery_failure"


def retry_after_seconds(delta: timedelta) -> int:
    """Whole seconds a client should wait, rounded up and never below 1."""
    seconds = delta.total_seconds()
    whole = int(seconds)
    if whole < seconds:
        whole += 1
    return max(1, whole)


def read_with_retry(operation: str, fn: Callable[[], T]) -> T:
    """Run a storage read, retrying once on a transient error."""
    try:
        return fn()
    except TransientStorageError:
        pass
    try:
        return fn()
    except TransientStorageError as exc:
        raise PersistenceFailure(
            "storage temporarily unavailable", detail={"operation": operation}
        ) from exc


def write_or_fail(operation: str, fn: Callable[[], T]) -> T:
    """Run a storage write; transient errors become PersistenceFailure without retry."""
    try:
        return fn()
    except TransientStorageError as exc:
        raise PersistenceFailure(
            "storage temporarily unavailable", detail={"operation": operation}
        ) from exc


__all__ = [
    "ServiceError",
    "Unauthenticated",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimited",
    "Expired",
    "AttemptsExhausted",
    "Mismatch",
    "PersistenceFailure",
    "DeliveryFailure",
    "read_with_retry",
    "write_or_fail",
    "retry_after_seconds",
]
