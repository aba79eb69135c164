from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from medguard.logging import get_logger
from medguard.storage.common import (
    LoginAttemptMutator,
    PhoneVerificationMutator,
    SecretCipher,
    TwoFactorMutator,
    normalize_ip,
)
from medguard.storage.errors import ConstraintViolation
from medguard.storage.models import (
    ActiveSession,
    LoginAttemptRecord,
    PhoneVerification,
    SecurityEvent,
    SecurityQuestionSet,
    TwoFactorConfig,
    UserAccount,
)


class MemoryStore:
    """In-process security store persisted to a JSON file under ``fs_root``."""

    def __init__(
        self, fs_root: str = "/tmp/medguard", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.login_attempts: Dict[str, LoginAttemptRecord] = {}
        # secrets are held encrypted, exactly as written to disk
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.phone_verifications: Dict[str, PhoneVerification] = {}
        self.security_questions: Dict[str, SecurityQuestionSet] = {}
        self.sessions: Dict[str, ActiveSession] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so update_* mutators may call back into read helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher.build(mfa_encryption_key, self.fs_root)

        if not self._load_state():
            self._persist_state()
        self.logger.info("memory_store_ready", state_path=str(self._state_path()))

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    def verify_connection(self) -> None:
        """Memory store is always reachable; mirrors the postgres health hook."""
        return None

    # -- reference user directory -------------------------------------------

    def create_user(self, email: str, role: str = "paciente") -> UserAccount:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserAccount(id=str(uuid.uuid4()), email=normalized, role=role)
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_user_phone(
        self, user_id: str, phone_number: str, *, verified: bool
    ) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.phone_number = phone_number
            user.phone_verified = verified
            self._persist_state()
            return replace(user)

    # -- login attempts -------------------------------------------------------

    def get_login_attempt(self, identity_key: str) -> Optional[LoginAttemptRecord]:
        with self._data_lock:
            record = self.login_attempts.get(identity_key)
            return replace(record) if record else None

    def update_login_attempt(
        self, identity_key: str, mutate: LoginAttemptMutator
    ) -> Optional[LoginAttemptRecord]:
        with self._data_lock:
            current = self.login_attempts.get(identity_key)
            updated = mutate(replace(current) if current else None)
            if updated is None:
                if current is None:
                    return None
                self.login_attempts.pop(identity_key, None)
            else:
                self.login_attempts[identity_key] = replace(updated, identity_key=identity_key)
            self._persist_state()
            return replace(updated) if updated else None

    # -- two-factor -----------------------------------------------------------

    def _decrypted(self, stored: TwoFactorConfig) -> TwoFactorConfig:
        return replace(
            stored,
            secret=self._cipher.decrypt(stored.secret),
            backup_codes=set(stored.backup_codes),
        )

    def _encrypted(self, config: TwoFactorConfig) -> TwoFactorConfig:
        return replace(
            config,
            secret=self._cipher.encrypt(config.secret),
            backup_codes=set(config.backup_codes),
        )

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        with self._data_lock:
            if config.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": config.user_id}
                )
            self.two_factor[config.user_id] = self._encrypted(config)
            self._persist_state()
            return replace(config, backup_codes=set(config.backup_codes))

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            stored = self.two_factor.get(user_id)
            return self._decrypted(stored) if stored else None

    def update_two_factor(
        self, user_id: str, mutate: TwoFactorMutator
    ) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            stored = self.two_factor.get(user_id)
            if stored is None:
                return None
            updated = mutate(self._decrypted(stored))
            if updated is None:
                return None
            self.two_factor[user_id] = self._encrypted(updated)
            self._persist_state()
            return replace(updated, backup_codes=set(updated.backup_codes))

    def delete_two_factor(self, user_id: str) -> bool:
        with self._data_lock:
            if self.two_factor.pop(user_id, None) is None:
                return False
            self._persist_state()
            return True

    # -- phone verification ---------------------------------------------------

    def add_phone_verification(self, record: PhoneVerification) -> PhoneVerification:
        with self._data_lock:
            self.phone_verifications[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def get_latest_unverified_phone_verification(
        self, user_id: str, phone_number: str
    ) -> Optional[PhoneVerification]:
        with self._data_lock:
            candidates = [
                rec
                for rec in self.phone_verifications.values()
                if rec.user_id == user_id
                and rec.phone_number == phone_number
                and not rec.verified
            ]
            if not candidates:
                return None
            # insertion order breaks ties between sends at the same instant
            _, latest = max(enumerate(candidates), key=lambda pair: (pair[1].created_at, pair[0]))
            return replace(latest)

    def update_phone_verification(
        self, verification_id: str, mutate: PhoneVerificationMutator
    ) -> Optional[PhoneVerification]:
        with self._data_lock:
            current = self.phone_verifications.get(verification_id)
            if current is None:
                return None
            updated = mutate(replace(current))
            self.phone_verifications[verification_id] = replace(updated, id=verification_id)
            self._persist_state()
            return replace(updated)

    # -- recovery questions ---------------------------------------------------

    def replace_security_questions(self, question_set: SecurityQuestionSet) -> None:
        with self._data_lock:
            self.security_questions[question_set.user_id] = replace(question_set)
            self._persist_state()

    def get_security_questions(self, user_id: str) -> Optional[SecurityQuestionSet]:
        with self._data_lock:
            stored = self.security_questions.get(user_id)
            return replace(stored) if stored else None

    # -- sessions -------------------------------------------------------------

    def create_active_session(self, session: ActiveSession) -> ActiveSession:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            stored = replace(session, ip_address=normalize_ip(session.ip_address))
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_active_session(self, session_id: str) -> Optional[ActiveSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_active_sessions(self, user_id: str) -> List[ActiveSession]:
        with self._data_lock:
            owned = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.last_activity, reverse=True)

    def touch_active_session(self, session_id: str, at: datetime) -> Optional[ActiveSession]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return None
            if at > sess.last_activity:
                sess.last_activity = at
                self._persist_state()
            return replace(sess)

    def delete_active_session(
        self, session_id: str, *, idle_since: Optional[datetime] = None
    ) -> bool:
        """Remove a session; with ``idle_since`` only if it has not been used since."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return False
            if idle_since is not None and sess.last_activity > idle_since:
                return False
            del self.sessions[session_id]
            self._persist_state()
            return True

    def delete_user_sessions_except(
        self, user_id: str, keep_session_id: Optional[str]
    ) -> int:
        with self._data_lock:
            doomed = [
                sess_id
                for sess_id, sess in self.sessions.items()
                if sess.user_id == user_id and sess_id != keep_session_id
            ]
            for sess_id in doomed:
                self.sessions.pop(sess_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- audit sink -----------------------------------------------------------

    def append_security_event(self, event: SecurityEvent) -> None:
        with self._data_lock:
            self.security_events.append(replace(event))
            self._persist_state()

    def list_security_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        with self._data_lock:
            owned = [replace(e) for e in self.security_events if e.user_id == user_id]
        owned.sort(key=lambda e: e.created_at, reverse=True)
        return owned[:limit]

    # -- persistence ----------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "login_attempts": [
                {
                    "identity_key": rec.identity_key,
                    "failure_count": rec.failure_count,
                    "lockout_until": self._serialize_datetime(rec.lockout_until),
                }
                for rec in self.login_attempts.values()
            ],
            "two_factor": [
                self._serialize_two_factor(cfg) for cfg in self.two_factor.values()
            ],
            "phone_verifications": [
                self._serialize_phone_verification(rec)
                for rec in self.phone_verifications.values()
            ],
            "security_questions": [
                self._serialize_question_set(qs)
                for qs in self.security_questions.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "security_events": [
                self._serialize_event(e) for e in self.security_events
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: UserAccount.from_row(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.login_attempts = {
            rec["identity_key"]: LoginAttemptRecord.from_row(rec)
            for rec in data.get("login_attempts", [])
        }
        self.two_factor = {
            cfg["user_id"]: TwoFactorConfig.from_row(cfg)
            for cfg in data.get("two_factor", [])
        }
        self.phone_verifications = {
            rec["id"]: PhoneVerification.from_row(rec)
            for rec in data.get("phone_verifications", [])
        }
        self.security_questions = {
            qs["user_id"]: SecurityQuestionSet.from_row(qs)
            for qs in data.get("security_questions", [])
        }
        self.sessions = {
            s["id"]: ActiveSession.from_row(s) for s in data.get("sessions", [])
        }
        self.security_events = [
            SecurityEvent.from_row(e) for e in data.get("security_events", [])
        ]
        return True

    def _serialize_user(self, user: UserAccount) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "phone_number": user.phone_number,
            "phone_verified": user.phone_verified,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _serialize_two_factor(self, cfg: TwoFactorConfig) -> dict:
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "backup_codes": sorted(cfg.backup_codes),
            "enabled": cfg.enabled,
            "verified_at": self._serialize_datetime(cfg.verified_at),
            "created_at": self._serialize_datetime(cfg.created_at),
        }

    def _serialize_phone_verification(self, rec: PhoneVerification) -> dict:
        return {
            "id": rec.id,
            "user_id": rec.user_id,
            "phone_number": rec.phone_number,
            "code": rec.code,
            "expires_at": self._serialize_datetime(rec.expires_at),
            "attempts": rec.attempts,
            "verified": rec.verified,
            "created_at": self._serialize_datetime(rec.created_at),
        }

    def _serialize_question_set(self, qs: SecurityQuestionSet) -> dict:
        row: dict = {
            "user_id": qs.user_id,
            "updated_at": self._serialize_datetime(qs.updated_at),
        }
        for idx, entry in enumerate(qs.questions, start=1):
            row[f"question_{idx}"] = entry.question
            row[f"answer_hash_{idx}"] = entry.answer_hash
        return row

    def _serialize_session(self, session: ActiveSession) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "last_activity": self._serialize_datetime(session.last_activity),
            "device_info": session.device_info,
            "ip_address": session.ip_address,
        }

    def _serialize_event(self, event: SecurityEvent) -> dict:
        return {
            "id": event.id,
            "user_id": event.user_id,
            "event_type": event.event_type,
            "description": event.description,
            "status": event.status,
            "created_at": self._serialize_datetime(event.created_at),
            "meta": event.meta,
        }


__all__ = ["MemoryStore"]
