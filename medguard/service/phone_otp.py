from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from medguard.logging import get_logger
from medguard.service.audit import SecurityEventRecorder
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.credentials import CredentialStore
from medguard.service.errors import (
    AttemptsExhausted,
    Expired,
    Mismatch,
    ValidationError,
    read_with_retry,
    write_or_fail,
)
from medguard.service.sms import SmsService
from medguard.storage.common import SecurityStore
from medguard.storage.models import PhoneVerification

logger = get_logger(__name__)

REASON_EXPIRED = "expired"
REASON_TOO_MANY_ATTEMPTS = "too_many_attempts"
REASON_INVALID_CODE = "invalid_code"
REASON_NO_PENDING_CODE = "no_pending_code"

_PHONE_RE = re.compile(r"^\+?\d{8,15}$")
_CODE_RE = re.compile(r"^\d{6}$")


@dataclass(frozen=True)
class PhoneCodeIssued:
    verification_id: str
    expires_at: datetime


@dataclass(frozen=True)
class PhoneVerificationResult:
    valid: bool
    reason: Optional[str] = None


def normalize_phone(phone_number: str) -> str:
    """Strip separators; the result is ``+`` followed by 8-15 digits or bare digits."""
    if not phone_number:
        raise ValidationError("phone number is required")
    compact = re.sub(r"[\s\-().]", "", phone_number)
    if not _PHONE_RE.match(compact):
        raise ValidationError("phone number must contain 8 to 15 digits")
    return compact


class PhoneOtpVerifier:
    """Short-lived numeric codes proving possession of a phone number."""

    def __init__(
        self,
        store: SecurityStore,
        credentials: CredentialStore,
        sms: SmsService,
        *,
        clock: Optional[ClockSource] = None,
        recorder: Optional[SecurityEventRecorder] = None,
        code_ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.sms = sms
        self.clock = clock or SystemClock()
        self.recorder = recorder
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts

    @staticmethod
    def _generate_code() -> str:
        return str(100000 + secrets.randbelow(900000))

    def send_code(self, user_id: str, phone_number: str) -> PhoneCodeIssued:
        phone = normalize_phone(phone_number)
        now = self.clock.now()
        record = PhoneVerification.new(
            user_id,
            phone,
            self._generate_code(),
            now=now,
            expires_at=now + self.code_ttl,
        )
        # an undelivered code must never shadow the last one the user received
        self.sms.send_verification_code(
            phone, record.code, int(self.code_ttl.total_seconds() // 60)
        )
        write_or_fail("add_phone_verification", lambda: self.store.add_phone_verification(record))
        logger.info("phone_code_sent", user_id=user_id, verification_id=record.id)
        return PhoneCodeIssued(verification_id=record.id, expires_at=record.expires_at)

    def _record_failure(self, user_id: str, reason: str, attempts: int) -> None:
        if self.recorder:
            self.recorder.record(
                user_id,
                "phone_verification_failed",
                f"Phone verification failed: {reason}",
                status="failure",
                meta={"reason": reason, "attempts": attempts},
            )

    def verify_code(self, user_id: str, phone_number: str, code: str) -> PhoneVerificationResult:
        """Check ``code`` against the most recent pending record for the number.

        Raises ``Mismatch`` (wrong code or nothing pending), ``Expired`` or
        ``AttemptsExhausted``; the ``reason`` in ``detail`` names which.
        """
        phone = normalize_phone(phone_number)
        if code is None or not _CODE_RE.match(code.strip()):
            raise ValidationError("code must be 6 digits")
        code = code.strip()
        now = self.clock.now()
        pending = read_with_retry(
            "get_phone_verification",
            lambda: self.store.get_latest_unverified_phone_verification(user_id, phone),
        )
        if pending is None:
            self._record_failure(user_id, REASON_NO_PENDING_CODE, 0)
            raise Mismatch(
                "no pending verification code", detail={"reason": REASON_NO_PENDING_CODE}
            )

        outcome = {"reason": None}

        def _check(current: PhoneVerification) -> PhoneVerification:
            if current.verified:
                outcome["reason"] = REASON_NO_PENDING_CODE
                return current
            if now > current.expires_at:
                outcome["reason"] = REASON_EXPIRED
                return current
            if current.attempts >= self.max_attempts:
                outcome["reason"] = REASON_TOO_MANY_ATTEMPTS
                return current
            if not secrets.compare_digest(current.code, code):
                outcome["reason"] = REASON_INVALID_CODE
                return replace(current, attempts=current.attempts + 1)
            return replace(current, verified=True)

        updated = write_or_fail(
            "update_phone_verification",
            lambda: self.store.update_phone_verification(pending.id, _check),
        )
        if updated is None:
            outcome["reason"] = REASON_NO_PENDING_CODE
        reason = outcome["reason"]
        if reason is None:
            self.credentials.set_verified_phone(user_id, phone)
            logger.info("phone_verified", user_id=user_id)
            if self.recorder:
                self.recorder.record(
                    user_id,
                    "phone_verified",
                    "Phone number verified",
                    status="success",
                    meta={"phone_suffix": phone[-4:]},
                )
            return PhoneVerificationResult(valid=True)

        attempts = updated.attempts if updated else 0
        logger.warning("phone_verification_failed", user_id=user_id, reason=reason)
        self._record_failure(user_id, reason, attempts)
        if reason == REASON_EXPIRED:
            raise Expired("verification code expired", detail={"reason": reason})
        if reason == REASON_TOO_MANY_ATTEMPTS:
            raise AttemptsExhausted(
                "too many incorrect attempts; request a new code", detail={"reason": reason}
            )
        if reason == REASON_NO_PENDING_CODE:
            raise Mismatch("no pending verification code", detail={"reason": reason})
        raise Mismatch(
            "incorrect verification code",
            detail={"reason": reason, "attempts_remaining": max(0, self.max_attempts - attempts)},
        )


__all__ = [
    "PhoneOtpVerifier",
    "PhoneCodeIssued",
    "PhoneVerificationResult",
    "normalize_phone",
    "REASON_EXPIRED",
    "REASON_TOO_MANY_ATTEMPTS",
    "REASON_INVALID_CODE",
    "REASON_NO_PENDING_CODE",
]
