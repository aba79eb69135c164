from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import secrets
import string
from dataclasses import dataclass, replace
from typing import List, Optional
from urllib.parse import quote, urlencode

from medguard.logging import get_logger
from medguard.service.audit import SecurityEventRecorder
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.credentials import CredentialStore
from medguard.service.errors import (
    Mismatch,
    NotFoundError,
    ValidationError,
    read_with_retry,
    write_or_fail,
)
from medguard.storage.common import SecurityStore
from medguard.storage.models import TwoFactorConfig

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20
BACKUP_CODE_LENGTH = 8
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits
_TOTP_RE = re.compile(r"^\d{6}$")
_BACKUP_RE = re.compile(r"^[A-Z0-9]{8}$")


@dataclass(frozen=True)
class TotpSetup:
    secret: str
    qr_payload: str
    backup_codes: List[str]


@dataclass(frozen=True)
class TotpStatus:
    configured: bool
    enabled: bool
    backup_codes_remaining: int


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code (HMAC-SHA1) for the step containing ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def normalize_backup_code(code: str) -> str:
    return code.replace(" ", "").replace("-", "").upper()


class TotpAuthenticator:
    """TOTP second factor with single-use backup codes."""

    def __init__(
        self,
        store: SecurityStore,
        credentials: CredentialStore,
        *,
        clock: Optional[ClockSource] = None,
        recorder: Optional[SecurityEventRecorder] = None,
        issuer: str = "RedSalud",
        drift_steps: int = 2,
        backup_code_count: int = 10,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.clock = clock or SystemClock()
        self.recorder = recorder
        self.issuer = issuer
        self.drift_steps = drift_steps
        self.backup_code_count = backup_code_count

    def _generate_backup_codes(self) -> List[str]:
        codes: set[str] = set()
        while len(codes) < self.backup_code_count:
            codes.add("".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)))
        return sorted(codes)

    def provisioning_uri(self, secret: str, label: str) -> str:
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        return f"otpauth://totp/{quote(self.issuer)}:{quote(label)}?{query}"

    def setup(self, user_id: str, label: str) -> TotpSetup:
        """Start enrollment with a fresh secret; the factor stays disabled until verified."""
        existing = read_with_retry("get_two_factor", lambda: self.store.get_two_factor(user_id))
        if existing and existing.enabled:
            raise ValidationError(
                "two-factor authentication is already enabled; disable it before enrolling again"
            )
        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode().rstrip("=")
        backup_codes = self._generate_backup_codes()
        config = TwoFactorConfig(
            user_id=user_id,
            secret=secret,
            backup_codes={hash_backup_code(code) for code in backup_codes},
            enabled=False,
            created_at=self.clock.now(),
        )
        write_or_fail("save_two_factor", lambda: self.store.save_two_factor(config))
        logger.info("totp_setup_started", user_id=user_id)
        return TotpSetup(
            secret=secret,
            qr_payload=self.provisioning_uri(secret, label),
            backup_codes=backup_codes,
        )

    def _matches_window(self, secret: str, code: str) -> bool:
        now_ts = self.clock.now().timestamp()
        matched = False
        for offset in range(-self.drift_steps, self.drift_steps + 1):
            generated = generate_totp(secret, now_ts + offset * TOTP_INTERVAL)
            # evaluate every step so timing does not reveal which one matched
            if generated and hmac.compare_digest(generated, code):
                matched = True
        return matched

    def verify(self, user_id: str, code: str) -> bool:
        """Check a TOTP or backup code; the first TOTP success enables the factor."""
        if code is None:
            raise ValidationError("verification code is required")
        compact = code.strip().replace(" ", "")
        if _TOTP_RE.match(compact):
            return self._verify_totp(user_id, compact)
        backup = normalize_backup_code(code.strip())
        if _BACKUP_RE.match(backup):
            return self._consume_backup_code(user_id, backup)
        raise ValidationError("code must be 6 digits or an 8 character backup code")

    def _verify_totp(self, user_id: str, code: str) -> bool:
        config = read_with_retry("get_two_factor", lambda: self.store.get_two_factor(user_id))
        if config is None:
            logger.info("totp_not_configured", user_id=user_id)
            return False
        if not self._matches_window(config.secret, code):
            logger.warning("totp_mismatch", user_id=user_id)
            return False
        if config.enabled:
            logger.info("totp_verified", user_id=user_id)
            return True

        now = self.clock.now()

        def _enable(current: TwoFactorConfig) -> Optional[TwoFactorConfig]:
            if current.enabled:
                return None
            return replace(current, enabled=True, verified_at=now)

        enabled = write_or_fail(
            "enable_two_factor", lambda: self.store.update_two_factor(user_id, _enable)
        )
        logger.info("totp_verified", user_id=user_id)
        if enabled is not None and self.recorder:
            self.recorder.record(
                user_id,
                "2fa_enabled",
                "Two-factor authentication enabled",
                status="success",
            )
        return True

    def _consume_backup_code(self, user_id: str, code: str) -> bool:
        digest = hash_backup_code(code)
        consumed = {"hit": False}

        def _consume(current: TwoFactorConfig) -> Optional[TwoFactorConfig]:
            if not current.enabled or digest not in current.backup_codes:
                return None
            consumed["hit"] = True
            return replace(current, backup_codes=current.backup_codes - {digest})

        updated = write_or_fail(
            "consume_backup_code", lambda: self.store.update_two_factor(user_id, _consume)
        )
        if not consumed["hit"]:
            logger.warning("backup_code_rejected", user_id=user_id)
            return False
        remaining = len(updated.backup_codes) if updated else 0
        logger.info("backup_code_consumed", user_id=user_id, remaining=remaining)
        if self.recorder:
            self.recorder.record(
                user_id,
                "backup_code_used",
                "Backup code used for two-factor verification",
                status="info",
                meta={"remaining": remaining},
            )
        return True

    def disable(self, user_id: str, confirmation_proof: str) -> None:
        config = read_with_retry("get_two_factor", lambda: self.store.get_two_factor(user_id))
        if config is None:
            raise NotFoundError("two-factor authentication is not configured")
        if not confirmation_proof or not self.credentials.verify_password(
            user_id, confirmation_proof
        ):
            if self.recorder:
                self.recorder.record(
                    user_id,
                    "2fa_disable_failed",
                    "Two-factor disable rejected: confirmation failed",
                    status="failure",
                )
            raise Mismatch("confirmation failed")
        write_or_fail("delete_two_factor", lambda: self.store.delete_two_factor(user_id))
        logger.info("totp_disabled", user_id=user_id)
        if self.recorder:
            self.recorder.record(
                user_id,
                "2fa_disabled",
                "Two-factor authentication disabled",
                status="warning",
            )

    def status(self, user_id: str) -> TotpStatus:
        config = read_with_retry("get_two_factor", lambda: self.store.get_two_factor(user_id))
        if config is None:
            return TotpStatus(configured=False, enabled=False, backup_codes_remaining=0)
        return TotpStatus(
            configured=True,
            enabled=config.enabled,
            backup_codes_remaining=len(config.backup_codes),
        )


__all__ = [
    "TotpAuthenticator",
    "TotpSetup",
    "TotpStatus",
    "generate_totp",
    "hash_backup_code",
    "normalize_backup_code",
]
