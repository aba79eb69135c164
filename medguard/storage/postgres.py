from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from medguard.logging import get_logger
from medguard.storage.common import (
    LoginAttemptMutator,
    PhoneVerificationMutator,
    SecretCipher,
    TwoFactorMutator,
    normalize_ip,
    parse_json_meta,
)
from medguard.storage.errors import ConstraintViolation, TransientStorageError
from medguard.storage.models import (
    SECURITY_QUESTION_COUNT,
    ActiveSession,
    LoginAttemptRecord,
    PhoneVerification,
    SecurityEvent,
    SecurityQuestionSet,
    TwoFactorConfig,
    UserAccount,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'paciente',
        phone_number TEXT,
        phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempts (
        identity_key TEXT PRIMARY KEY,
        failure_count INTEGER NOT NULL DEFAULT 0 CHECK (failure_count >= 0),
        lockout_until TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS two_factor_auth (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK (NOT enabled OR verified_at IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS phone_verifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        phone_number TEXT NOT NULL,
        code CHAR(6) NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        seq BIGSERIAL
    )
    """,
    "ALTER TABLE phone_verifications ADD COLUMN IF NOT EXISTS seq BIGSERIAL",
    """
    CREATE INDEX IF NOT EXISTS phone_verifications_pending_idx
        ON phone_verifications (user_id, phone_number, created_at DESC, seq DESC)
        WHERE NOT verified
    """,
    """
    CREATE TABLE IF NOT EXISTS security_questions (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        question_1 TEXT NOT NULL,
        answer_hash_1 TEXT NOT NULL,
        question_2 TEXT NOT NULL,
        answer_hash_2 TEXT NOT NULL,
        question_3 TEXT NOT NULL,
        answer_hash_3 TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS active_sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        device_info TEXT,
        ip_address INET,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        CHECK (last_activity >= created_at)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_events (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        event_type TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'info',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        meta JSONB
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS security_events_user_idx
        ON security_events (user_id, created_at DESC)
    """,
)


class PostgresStore:
    """Security store backed by Postgres through a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        mfa_encryption_key: str | None = None,
        pool: ConnectionPool | None = None,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = SecretCipher.build(mfa_encryption_key, self.fs_root)
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator:
        """Borrow a pooled connection; connectivity errors become transient."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.warning("postgres_unavailable", operation=operation, error=str(exc))
            raise TransientStorageError("postgres unavailable", operation=operation) from exc

    def _ensure_schema(self) -> None:
        """Create the security tables if they are missing."""

        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(self, email: str, role: str = "paciente") -> UserAccount:
        user = UserAccount(id=str(uuid.uuid4()), email=email.strip().lower(), role=role)
        try:
            with self._connect("create_user") as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, role, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (user.id, user.email, user.role, user.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connect("get_user") as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return UserAccount.from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._connect("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return UserAccount.from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect("save_password") as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect("get_password_record") as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def set_user_phone(
        self, user_id: str, phone_number: str, *, verified: bool
    ) -> Optional[UserAccount]:
        with self._connect("set_user_phone") as conn:
            row = conn.execute(
                """
                UPDATE app_user SET phone_number = %s, phone_verified = %s
                WHERE id = %s RETURNING *
                """,
                (phone_number, verified, user_id),
            ).fetchone()
        return UserAccount.from_row(row) if row else None

    # login attempts
    def get_login_attempt(self, identity_key: str) -> Optional[LoginAttemptRecord]:
        with self._connect("get_login_attempt") as conn:
            row = conn.execute(
                "SELECT * FROM login_attempts WHERE identity_key = %s", (identity_key,)
            ).fetchone()
        return LoginAttemptRecord.from_row(row) if row else None

    def update_login_attempt(
        self, identity_key: str, mutate: LoginAttemptMutator
    ) -> Optional[LoginAttemptRecord]:
        with self._connect("update_login_attempt") as conn:
            with conn.transaction():
                # materialize the row first so FOR UPDATE always has something to lock
                inserted = conn.execute(
                    """
                    INSERT INTO login_attempts (identity_key, failure_count)
                    VALUES (%s, 0)
                    ON CONFLICT (identity_key) DO NOTHING
                    RETURNING identity_key
                    """,
                    (identity_key,),
                ).fetchone()
                row = conn.execute(
                    "SELECT * FROM login_attempts WHERE identity_key = %s FOR UPDATE",
                    (identity_key,),
                ).fetchone()
                current = None if inserted or not row else LoginAttemptRecord.from_row(row)
                updated = mutate(current)
                if updated is None:
                    conn.execute(
                        "DELETE FROM login_attempts WHERE identity_key = %s", (identity_key,)
                    )
                    return None
                conn.execute(
                    """
                    UPDATE login_attempts SET failure_count = %s, lockout_until = %s
                    WHERE identity_key = %s
                    """,
                    (updated.failure_count, updated.lockout_until, identity_key),
                )
        return updated

    # two-factor
    def _config_from_row(self, row: dict) -> TwoFactorConfig:
        config = TwoFactorConfig.from_row(row)
        config.secret = self._cipher.decrypt(config.secret)
        return config

    def save_two_factor(self, config: TwoFactorConfig) -> TwoFactorConfig:
        try:
            with self._connect("save_two_factor") as conn:
                conn.execute(
                    """
                    INSERT INTO two_factor_auth (user_id, secret, backup_codes, enabled, verified_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret = EXCLUDED.secret,
                        backup_codes = EXCLUDED.backup_codes,
                        enabled = EXCLUDED.enabled,
                        verified_at = EXCLUDED.verified_at,
                        created_at = EXCLUDED.created_at
                    """,
                    (
                        config.user_id,
                        self._cipher.encrypt(config.secret),
                        sorted(config.backup_codes),
                        config.enabled,
                        config.verified_at,
                        config.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for two-factor", {"user_id": config.user_id}
            )
        return config

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._connect("get_two_factor") as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_auth WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._config_from_row(row) if row else None

    def update_two_factor(
        self, user_id: str, mutate: TwoFactorMutator
    ) -> Optional[TwoFactorConfig]:
        with self._connect("update_two_factor") as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM two_factor_auth WHERE user_id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if not row:
                    return None
                updated = mutate(self._config_from_row(row))
                if updated is None:
                    return None
                conn.execute(
                    """
                    UPDATE two_factor_auth
                    SET secret = %s, backup_codes = %s, enabled = %s, verified_at = %s
                    WHERE user_id = %s
                    """,
                    (
                        self._cipher.encrypt(updated.secret),
                        sorted(updated.backup_codes),
                        updated.enabled,
                        updated.verified_at,
                        user_id,
                    ),
                )
        return updated

    def delete_two_factor(self, user_id: str) -> bool:
        with self._connect("delete_two_factor") as conn:
            result = conn.execute("DELETE FROM two_factor_auth WHERE user_id = %s", (user_id,))
            return result.rowcount > 0

    # phone verification
    def add_phone_verification(self, record: PhoneVerification) -> PhoneVerification:
        try:
            with self._connect("add_phone_verification") as conn:
                conn.execute(
                    """
                    INSERT INTO phone_verifications (id, user_id, phone_number, code, expires_at, attempts, verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.phone_number,
                        record.code,
                        record.expires_at,
                        record.attempts,
                        record.verified,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for phone verification", {"user_id": record.user_id}
            )
        return record

    def get_latest_unverified_phone_verification(
        self, user_id: str, phone_number: str
    ) -> Optional[PhoneVerification]:
        with self._connect("get_phone_verification") as conn:
            row = conn.execute(
                """
                SELECT * FROM phone_verifications
                WHERE user_id = %s AND phone_number = %s AND NOT verified
                ORDER BY created_at DESC, seq DESC
                LIMIT 1
                """,
                (user_id, phone_number),
            ).fetchone()
        return PhoneVerification.from_row(row) if row else None

    def update_phone_verification(
        self, verification_id: str, mutate: PhoneVerificationMutator
    ) -> Optional[PhoneVerification]:
        with self._connect("update_phone_verification") as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM phone_verifications WHERE id = %s FOR UPDATE",
                    (verification_id,),
                ).fetchone()
                if not row:
                    return None
                updated = mutate(PhoneVerification.from_row(row))
                conn.execute(
                    "UPDATE phone_verifications SET attempts = %s, verified = %s WHERE id = %s",
                    (updated.attempts, updated.verified, verification_id),
                )
        return updated

    # recovery questions
    def replace_security_questions(self, question_set: SecurityQuestionSet) -> None:
        params: list = [question_set.user_id]
        for entry in question_set.questions:
            params.extend([entry.question, entry.answer_hash])
        params.append(question_set.updated_at)
        columns = ", ".join(
            f"question_{i}, answer_hash_{i}" for i in range(1, SECURITY_QUESTION_COUNT + 1)
        )
        updates = ", ".join(
            f"question_{i} = EXCLUDED.question_{i}, answer_hash_{i} = EXCLUDED.answer_hash_{i}"
            for i in range(1, SECURITY_QUESTION_COUNT + 1)
        )
        placeholders = ", ".join(["%s"] * len(params))
        try:
            with self._connect("replace_security_questions") as conn:
                conn.execute(
                    f"""
                    INSERT INTO security_questions (user_id, {columns}, updated_at)
                    VALUES ({placeholders})
                    ON CONFLICT (user_id) DO UPDATE
                    SET {updates}, updated_at = EXCLUDED.updated_at
                    """,
                    params,
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for security questions", {"user_id": question_set.user_id}
            )

    def get_security_questions(self, user_id: str) -> Optional[SecurityQuestionSet]:
        with self._connect("get_security_questions") as conn:
            row = conn.execute(
                "SELECT * FROM security_questions WHERE user_id = %s", (user_id,)
            ).fetchone()
        return SecurityQuestionSet.from_row(row) if row else None

    # sessions
    def create_active_session(self, session: ActiveSession) -> ActiveSession:
        session.ip_address = normalize_ip(session.ip_address)
        try:
            with self._connect("create_active_session") as conn:
                conn.execute(
                    """
                    INSERT INTO active_sessions (id, user_id, device_info, ip_address, created_at, last_activity)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.device_info,
                        session.ip_address,
                        session.created_at,
                        session.last_activity,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session id already exists", {"field": "id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_active_session(self, session_id: str) -> Optional[ActiveSession]:
        with self._connect("get_active_session") as conn:
            row = conn.execute(
                "SELECT * FROM active_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return ActiveSession.from_row(row) if row else None

    def list_active_sessions(self, user_id: str) -> List[ActiveSession]:
        with self._connect("list_active_sessions") as conn:
            rows = conn.execute(
                "SELECT * FROM active_sessions WHERE user_id = %s ORDER BY last_activity DESC",
                (user_id,),
            ).fetchall()
        return [ActiveSession.from_row(row) for row in rows]

    def touch_active_session(self, session_id: str, at: datetime) -> Optional[ActiveSession]:
        with self._connect("touch_active_session") as conn:
            row = conn.execute(
                """
                UPDATE active_sessions SET last_activity = GREATEST(last_activity, %s)
                WHERE id = %s RETURNING *
                """,
                (at, session_id),
            ).fetchone()
        return ActiveSession.from_row(row) if row else None

    def delete_active_session(
        self, session_id: str, *, idle_since: Optional[datetime] = None
    ) -> bool:
        with self._connect("delete_active_session") as conn:
            if idle_since is None:
                result = conn.execute("DELETE FROM active_sessions WHERE id = %s", (session_id,))
            else:
                result = conn.execute(
                    "DELETE FROM active_sessions WHERE id = %s AND last_activity <= %s",
                    (session_id, idle_since),
                )
            return result.rowcount > 0

    def delete_user_sessions_except(
        self, user_id: str, keep_session_id: Optional[str]
    ) -> int:
        with self._connect("delete_user_sessions") as conn:
            result = conn.execute(
                "DELETE FROM active_sessions WHERE user_id = %s AND id IS DISTINCT FROM %s",
                (user_id, keep_session_id),
            )
            return result.rowcount

    # audit sink
    def append_security_event(self, event: SecurityEvent) -> None:
        with self._connect("append_security_event") as conn:
            conn.execute(
                """
                INSERT INTO security_events (id, user_id, event_type, description, status, created_at, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.event_type,
                    event.description,
                    event.status,
                    event.created_at,
                    json.dumps(event.meta) if event.meta else None,
                ),
            )

    def list_security_events(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        with self._connect("list_security_events") as conn:
            rows = conn.execute(
                """
                SELECT * FROM security_events WHERE user_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        events = []
        for row in rows:
            event = SecurityEvent.from_row(row)
            event.meta = parse_json_meta(row.get("meta"))
            events.append(event)
        return events


__all__ = ["PostgresStore"]
