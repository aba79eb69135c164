from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from medguard.logging import get_logger
from medguard.service.audit import SecurityEventRecorder
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.errors import (
    NotFoundError,
    Unauthenticated,
    read_with_retry,
    write_or_fail,
)
from medguard.storage.common import SecurityStore
from medguard.storage.models import ActiveSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionContext:
    """The authenticated session a request is acting through."""

    session: ActiveSession
    role: str = "paciente"

    @property
    def current_session_id(self) -> str:
        return self.session.id

    @property
    def user_id(self) -> str:
        return self.session.user_id


class SessionRegistry:
    """One entry per authenticated device; nothing here expires sessions."""

    def __init__(
        self,
        store: SecurityStore,
        *,
        clock: Optional[ClockSource] = None,
        recorder: Optional[SecurityEventRecorder] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.recorder = recorder

    def register(
        self,
        user_id: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        session = ActiveSession.new(
            user_id,
            now=self.clock.now(),
            device_info=device_info,
            ip_address=ip_address,
        )
        created = write_or_fail(
            "create_active_session", lambda: self.store.create_active_session(session)
        )
        logger.info("session_registered", user_id=user_id, session_id=created.id)
        if self.recorder:
            self.recorder.record(
                user_id,
                "session_login",
                "Signed in",
                status="success",
                meta={"session_id": created.id, "device_info": device_info},
            )
        return created.id

    def get(self, session_id: str) -> Optional[ActiveSession]:
        return read_with_retry(
            "get_active_session", lambda: self.store.get_active_session(session_id)
        )

    def list_sessions(self, user_id: str) -> List[ActiveSession]:
        """Sessions of ``user_id``, most recently active first."""
        return read_with_retry(
            "list_active_sessions", lambda: self.store.list_active_sessions(user_id)
        )

    def touch(self, session_id: str) -> ActiveSession:
        """Mark activity now; unknown or terminated sessions are unauthenticated."""
        if not session_id:
            raise Unauthenticated("session required")
        now = self.clock.now()
        touched = write_or_fail(
            "touch_active_session", lambda: self.store.touch_active_session(session_id, now)
        )
        if touched is None:
            raise Unauthenticated("session is no longer active")
        return touched

    def terminate(
        self,
        session_id: str,
        *,
        owner_user_id: Optional[str] = None,
        reason: str = "logout",
        idle_since: Optional[datetime] = None,
    ) -> bool:
        """End one session. With ``owner_user_id`` set, foreign sessions are not found.

        With ``idle_since`` the session is kept if it saw activity after that instant.
        """
        existing = self.get(session_id)
        if existing is None:
            if owner_user_id is not None:
                raise NotFoundError("session not found")
            return False
        if owner_user_id is not None and existing.user_id != owner_user_id:
            raise NotFoundError("session not found")
        removed = write_or_fail(
            "delete_active_session",
            lambda: self.store.delete_active_session(session_id, idle_since=idle_since),
        )
        if removed:
            logger.info("session_terminated", user_id=existing.user_id, session_id=session_id, reason=reason)
            if self.recorder and reason != "timeout":
                self.recorder.record(
                    existing.user_id,
                    "session_logout" if reason == "logout" else "session_revoked",
                    "Signed out" if reason == "logout" else "Session revoked from another device",
                    status="info",
                    meta={"session_id": session_id},
                )
        return removed

    def terminate_all_others(self, user_id: str, current_session_id: Optional[str]) -> int:
        removed = write_or_fail(
            "delete_user_sessions",
            lambda: self.store.delete_user_sessions_except(user_id, current_session_id),
        )
        logger.info("sessions_terminated", user_id=user_id, count=removed)
        if self.recorder:
            self.recorder.record(
                user_id,
                "sessions_terminated",
                f"Signed out of {removed} other session(s)",
                status="info",
                meta={"count": removed, "kept_session_id": current_session_id},
            )
        return removed


__all__ = ["SessionRegistry", "SessionContext"]
