from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_QUESTION_ITEMS = 10


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after removing zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "expired",
        "attempts_exhausted",
        "mismatch",
        "conflict",
        "persistence_failure",
        "delivery_failure",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=1024)
    device_info: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    user_id: str
    session_id: str
    role: str
    two_factor_enabled: bool = False
    idle_timeout_seconds: int


class SuccessResponse(BaseModel):
    success: bool
    message: Optional[str] = None


class TotpSetupResponse(BaseModel):
    secret: str
    qr_payload: str
    backup_codes: List[str]


class TotpVerifyRequest(BaseModel):
    code: str = Field(..., max_length=32)


class TotpDisableRequest(BaseModel):
    confirmation_proof: str = Field(
        ..., max_length=1024, description="Current account password"
    )


class TwoFactorStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether two-factor is currently enforced")
    configured: bool = Field(..., description="Whether a secret exists (possibly pending verification)")
    backup_codes_remaining: int = 0


class PhoneSendCodeRequest(BaseModel):
    phone_number: str = Field(..., max_length=32)


class PhoneSendCodeResponse(BaseModel):
    success: bool
    expires_at: datetime


class PhoneVerifyCodeRequest(BaseModel):
    phone_number: str = Field(..., max_length=32)
    code: str = Field(..., max_length=16)


class SecurityQuestionItem(BaseModel):
    question: str = Field(..., max_length=256)
    answer: str = Field(..., max_length=256)

    @field_validator("question", "answer")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        return _normalize_unicode(value)


class SecurityQuestionsSaveRequest(BaseModel):
    questions: List[SecurityQuestionItem] = Field(..., max_length=MAX_QUESTION_ITEMS)


class SecurityQuestionsVerifyRequest(BaseModel):
    email: str
    answers: List[str] = Field(..., max_length=MAX_QUESTION_ITEMS)

    @field_validator("email")
    @classmethod
    def _validate_recovery_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("answers")
    @classmethod
    def _normalize_answers(cls, value: List[str]) -> List[str]:
        for answer in value:
            if len(answer) > 256:
                raise ValueError("answer too long")
        return [_normalize_unicode(answer) for answer in value]


class SecurityQuestionsResponse(BaseModel):
    questions: List[str]


class SessionInfo(BaseModel):
    id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    last_activity: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class TerminateOthersResponse(BaseModel):
    terminated: int


class SessionTimeoutResponse(BaseModel):
    state: str
    remaining_seconds: int
    idle_timeout_seconds: int
    warning_lead_seconds: int


class SecurityEventItem(BaseModel):
    id: str
    event_type: str
    description: str
    status: str
    created_at: datetime
    meta: Optional[Dict[str, Any]] = None


class SecurityEventListResponse(BaseModel):
    items: List[SecurityEventItem]
