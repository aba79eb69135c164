from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from medguard.storage.errors import RecordValidationError

SECURITY_QUESTION_COUNT = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Any, field_name: str) -> datetime:
    """Coerce a stored timestamp (datetime or ISO string) to an aware UTC datetime."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise RecordValidationError(f"{field_name} is not a timestamp") from exc
    if not isinstance(value, datetime):
        raise RecordValidationError(f"{field_name} is not a timestamp")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_aware(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    return _as_aware(value, field_name)


def _require(row: Mapping[str, Any], key: str) -> Any:
    if key not in row or row[key] is None:
        raise RecordValidationError(f"missing required column '{key}'")
    return row[key]


@dataclass
class UserAccount:
    id: str
    email: str
    role: str = "paciente"
    phone_number: Optional[str] = None
    phone_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "UserAccount":
        return cls(
            id=str(_require(row, "id")),
            email=str(_require(row, "email")),
            role=str(row.get("role") or "paciente"),
            phone_number=row.get("phone_number"),
            phone_verified=bool(row.get("phone_verified", False)),
            created_at=_as_aware(row.get("created_at") or _utcnow(), "created_at"),
        )


@dataclass
class LoginAttemptRecord:
    identity_key: str
    failure_count: int = 0
    lockout_until: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LoginAttemptRecord":
        count = int(row.get("failure_count") or 0)
        if count < 0:
            raise RecordValidationError("failure_count must not be negative")
        return cls(
            identity_key=str(_require(row, "identity_key")),
            failure_count=count,
            lockout_until=_optional_aware(row.get("lockout_until"), "lockout_until"),
        )


@dataclass
class TwoFactorConfig:
    """TOTP enrollment for one user.

    ``backup_codes`` holds SHA-256 digests, never the codes themselves.
    """

    user_id: str
    secret: str
    backup_codes: set[str] = field(default_factory=set)
    enabled: bool = False
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TwoFactorConfig":
        codes = row.get("backup_codes") or []
        if not isinstance(codes, (list, tuple, set, frozenset)):
            raise RecordValidationError("backup_codes must be a collection")
        enabled = bool(row.get("enabled", False))
        verified_at = _optional_aware(row.get("verified_at"), "verified_at")
        if enabled and verified_at is None:
            raise RecordValidationError("enabled two-factor config has no verified_at")
        return cls(
            user_id=str(_require(row, "user_id")),
            secret=str(_require(row, "secret")),
            backup_codes={str(c) for c in codes},
            enabled=enabled,
            verified_at=verified_at,
            created_at=_as_aware(row.get("created_at") or _utcnow(), "created_at"),
        )


@dataclass
class PhoneVerification:
    id: str
    user_id: str
    phone_number: str
    code: str
    expires_at: datetime
    attempts: int = 0
    verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, user_id: str, phone_number: str, code: str, *, now: datetime, expires_at: datetime
    ) -> "PhoneVerification":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            phone_number=phone_number,
            code=code,
            expires_at=expires_at,
            created_at=now,
        )

    def is_pending(self, now: datetime) -> bool:
        return not self.verified and now <= self.expires_at

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PhoneVerification":
        code = str(_require(row, "code"))
        if len(code) != 6 or not code.isdigit():
            raise RecordValidationError("phone verification code must be 6 digits")
        return cls(
            id=str(_require(row, "id")),
            user_id=str(_require(row, "user_id")),
            phone_number=str(_require(row, "phone_number")),
            code=code,
            expires_at=_as_aware(_require(row, "expires_at"), "expires_at"),
            attempts=int(row.get("attempts") or 0),
            verified=bool(row.get("verified", False)),
            created_at=_as_aware(row.get("created_at") or _utcnow(), "created_at"),
        )


@dataclass(frozen=True)
class SecurityQuestion:
    question: str
    answer_hash: str


@dataclass
class SecurityQuestionSet:
    user_id: str
    questions: Tuple[SecurityQuestion, ...]
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if len(self.questions) != SECURITY_QUESTION_COUNT:
            raise RecordValidationError(
                f"exactly {SECURITY_QUESTION_COUNT} security questions are required"
            )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SecurityQuestionSet":
        questions = tuple(
            SecurityQuestion(
                question=str(_require(row, f"question_{i}")),
                answer_hash=str(_require(row, f"answer_hash_{i}")),
            )
            for i in range(1, SECURITY_QUESTION_COUNT + 1)
        )
        return cls(
            user_id=str(_require(row, "user_id")),
            questions=questions,
            updated_at=_as_aware(row.get("updated_at") or _utcnow(), "updated_at"),
        )


@dataclass
class ActiveSession:
    id: str
    user_id: str
    created_at: datetime
    last_activity: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None

    def __post_init__(self) -> None:
        if self.last_activity < self.created_at:
            raise RecordValidationError("last_activity precedes created_at")

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        now: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "ActiveSession":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_activity=now,
            device_info=device_info,
            ip_address=ip_address,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ActiveSession":
        raw_ip = row.get("ip_address")
        return cls(
            id=str(_require(row, "id")),
            user_id=str(_require(row, "user_id")),
            created_at=_as_aware(_require(row, "created_at"), "created_at"),
            last_activity=_as_aware(_require(row, "last_activity"), "last_activity"),
            device_info=row.get("device_info"),
            ip_address=str(raw_ip) if raw_ip is not None else None,
        )


@dataclass
class SecurityEvent:
    id: str
    user_id: Optional[str]
    event_type: str
    description: str
    status: str = "info"
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SecurityEvent":
        return cls(
            id=str(_require(row, "id")),
            user_id=str(row["user_id"]) if row.get("user_id") is not None else None,
            event_type=str(_require(row, "event_type")),
            description=str(row.get("description") or ""),
            status=str(row.get("status") or "info"),
            created_at=_as_aware(row.get("created_at") or _utcnow(), "created_at"),
            meta=row.get("meta"),
        )
