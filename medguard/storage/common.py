"""Storage contract and helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
from datetime import datetime
from ipaddress import ip_address
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from medguard.logging import get_logger
from medguard.storage.models import (
    ActiveSession,
    LoginAttemptRecord,
    PhoneVerification,
    SecurityEvent,
    SecurityQuestionSet,
    TwoFactorConfig,
    UserAccount,
)

logger = get_logger(__name__)

LoginAttemptMutator = Callable[[Optional[LoginAttemptRecord]], Optional[LoginAttemptRecord]]
TwoFactorMutator = Callable[[TwoFactorConfig], Optional[TwoFactorConfig]]
PhoneVerificationMutator = Callable[[PhoneVerification], PhoneVerification]


class SecurityStore(Protocol):
    """Persistence contract for the security subsystem.

    ``update_*`` methods are per-key atomic read-modify-write operations: the
    mutator sees the current record and its return value is written back
    before any concurrent update of the same key can observe the old state.
    A login-attempt mutator returning None deletes the record; a two-factor
    mutator returning None leaves the stored config untouched.
    """

    # reference user directory
    def create_user(self, email: str, role: str = "paciente") -> UserAccount: ...

    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def set_user_phone(self, user_id: str, phone_number: str, *, verified: bool) -> Optional[UserAccount]: ...

    # login attempts
    def get_login_attempt(self, identity_key: str) -> Optional[LoginAttemptRecord]: ...

    def update_login_attempt(
        self, identity_key: str, mutate: LoginAttemptMutator
    ) -> Optional[LoginAttemptRecord]: ...

    # two-factor
    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]: ...

    def update_two_factor(
        self, user_id: str, mutate: TwoFactorMutator
    ) -> Optional[TwoFactorConfig]: ...

    def delete_two_factor(self, user_id: str) -> bool: ...

    # phone verification
    def add_phone_verification(self, record: PhoneVerification) -> PhoneVerification: ...

    def get_latest_unverified_phone_verification(
        self, user_id: str, phone_number: str
    ) -> Optional[PhoneVerification]: ...

    def update_phone_verification(
        self, verification_id: str, mutate: PhoneVerificationMutator
    ) -> Optional[PhoneVerification]: ...

    # recovery questions
    def replace_security_questions(self, question_set: SecurityQuestionSet) -> None: ...

    def get_security_questions(self, user_id: str) -> Optional[SecurityQuestionSet]: ...

    # sessions
    def create_active_session(self, session: ActiveSession) -> ActiveSession: ...

    def get_active_session(self, session_id: str) -> Optional[ActiveSession]: ...

    def list_active_sessions(self, user_id: str) -> List[ActiveSession]: ...

    def touch_active_session(self, session_id: str, at: datetime) -> Optional[ActiveSession]: ...

    def delete_active_session(
        self, session_id: str, *, idle_since: Optional[datetime] = None
    ) -> bool: ...

    def delete_user_sessions_except(self, user_id: str, keep_session_id: Optional[str]) -> int: ...

    # audit sink
    def append_security_event(self, event: SecurityEvent) -> None: ...

    def list_security_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]: ...


class SecretCipher:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest."""

    def __init__(self, fernet: Fernet) -> None:
        self._fernet = fernet

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @classmethod
    def from_material(cls, key_material: str) -> "SecretCipher":
        return cls(Fernet(cls._derive_key(key_material)))

    @classmethod
    def build(cls, key_material: Optional[str], fs_root: Path) -> "SecretCipher":
        """Resolve key material from argument, env, or a persisted key file."""
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            key_path = fs_root / ".mfa_secret_key"
            try:
                if key_path.exists() and not key_path.is_symlink():
                    material = key_path.read_text().strip()
            except OSError as exc:
                logger.warning("mfa_key_read_failed", error=str(exc))
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    key_path.parent.mkdir(parents=True, exist_ok=True)
                    key_path.write_text(generated)
                    os.chmod(key_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
                material = generated
        return cls.from_material(material)

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        if not token:
            return token
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored two-factor secret cannot be decrypted") from exc


def normalize_ip(raw_ip: Any) -> Optional[str]:
    """Canonical string form of an IP address, or None when absent/invalid."""
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        logger.warning("session_ip_unparseable")
        return None


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None
