from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from medguard.logging import get_logger
from medguard.service.errors import read_with_retry, write_or_fail
from medguard.storage.common import SecurityStore
from medguard.storage.models import UserAccount

logger = get_logger(__name__)


class CredentialStore(Protocol):
    """Identity collaborator the security services call back into."""

    def verify_password(self, user_id: str, password: str) -> bool: ...

    def invalidate_credentials(self, user_id: str, session_id: Optional[str] = None) -> None: ...

    def set_verified_phone(self, user_id: str, phone_number: str) -> None: ...


class DirectoryCredentialStore:
    """Reference credential store over the ``app_user``/``user_credential`` tables."""

    def __init__(self, store: SecurityStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # verified against when the account is unknown, so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("medguard-unknown-account")

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def register_user(self, email: str, password: str, *, role: str = "paciente") -> UserAccount:
        user = write_or_fail("create_user", lambda: self.store.create_user(email, role=role))
        self.save_password(user.id, password)
        logger.info("user_registered", user_id=user.id, role=role)
        return user

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        write_or_fail("save_password", lambda: self.store.save_password(user_id, pwd_hash, algo))

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = read_with_retry(
            "get_password_record", lambda: self.store.get_password_record(user_id)
        )
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.warning("password_verification_failed", user_id=user_id)
            return False

    def authenticate(self, email: str, password: str) -> Optional[UserAccount]:
        user = read_with_retry("get_user_by_email", lambda: self.store.get_user_by_email(email))
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerifyMismatchError:
                pass
            return None
        if not self.verify_password(user.id, password):
            return None
        return user

    def invalidate_credentials(self, user_id: str, session_id: Optional[str] = None) -> None:
        """Revoke the session token held for ``session_id``.

        The session row is the credential in this store, so revoking it is a
        delete; a second call for the same session is a no-op.
        """
        if session_id is None:
            removed = write_or_fail(
                "revoke_user_sessions",
                lambda: self.store.delete_user_sessions_except(user_id, None),
            )
        else:
            removed = int(
                write_or_fail(
                    "revoke_session", lambda: self.store.delete_active_session(session_id)
                )
            )
        logger.info("credentials_invalidated", user_id=user_id, revoked=removed)

    def set_verified_phone(self, user_id: str, phone_number: str) -> None:
        updated = write_or_fail(
            "set_user_phone",
            lambda: self.store.set_user_phone(user_id, phone_number, verified=True),
        )
        if updated is None:
            logger.warning("verified_phone_user_missing", user_id=user_id)


__all__ = ["CredentialStore", "DirectoryCredentialStore"]
