"""Idle-timeout state machine for authenticated sessions.

A monitor watches one session and moves it through ACTIVE -> WARNING ->
EXPIRED based on the time since its last recorded activity. ``evaluate`` is
a single pure step that callers (the HTTP auth dependency, or the
cooperative poller started with ``start``) run whenever they want a fresh
answer. EXPIRED is terminal: the session is terminated and its credentials
invalidated exactly once.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

from medguard.config import ROLE_IDLE_TIMEOUTS
from medguard.logging import get_logger
from medguard.service.audit import SecurityEventRecorder
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.credentials import CredentialStore
from medguard.service.errors import Unauthenticated
from medguard.service.sessions import SessionRegistry

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionTimeoutPolicy:
    idle_timeout: timedelta
    warning_lead_time: timedelta

    def __post_init__(self) -> None:
        if self.idle_timeout <= timedelta(0):
            raise ValueError("idle_timeout must be positive")
        if self.warning_lead_time < timedelta(0):
            raise ValueError("warning_lead_time must not be negative")
        if self.warning_lead_time >= self.idle_timeout:
            raise ValueError("warning_lead_time must be shorter than idle_timeout")

    @property
    def warning_after(self) -> timedelta:
        return self.idle_timeout - self.warning_lead_time

    @classmethod
    def for_role(
        cls,
        role: Optional[str],
        *,
        default_idle: timedelta = timedelta(minutes=30),
        warning_lead_time: timedelta = timedelta(minutes=5),
        role_timeouts: Mapping[str, int] = ROLE_IDLE_TIMEOUTS,
    ) -> "SessionTimeoutPolicy":
        seconds = role_timeouts.get(role or "")
        idle = timedelta(seconds=seconds) if seconds else default_idle
        return cls(idle_timeout=idle, warning_lead_time=warning_lead_time)


StateCallback = Callable[[SessionState, SessionState], None]


class SessionTimeoutMonitor:
    """Tracks the idle state of a single session."""

    def __init__(
        self,
        session_id: str,
        registry: SessionRegistry,
        credentials: CredentialStore,
        policy: SessionTimeoutPolicy,
        *,
        clock: Optional[ClockSource] = None,
        recorder: Optional[SecurityEventRecorder] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_state_change: Optional[StateCallback] = None,
    ) -> None:
        self.session_id = session_id
        self.registry = registry
        self.credentials = credentials
        self.policy = policy
        self.clock = clock or SystemClock()
        self.recorder = recorder
        self.poll_interval = poll_interval
        self.on_state_change = on_state_change
        self._state = SessionState.ACTIVE
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._state

    def _transition(self, new_state: SessionState) -> SessionState:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(
                "session_state_changed",
                session_id=self.session_id,
                old_state=old_state.value,
                new_state=new_state.value,
            )
            if self.on_state_change:
                self.on_state_change(old_state, new_state)
        return new_state

    def evaluate(self) -> SessionState:
        """Read the session once and move to the state its idle time implies."""
        if self._state is SessionState.EXPIRED:
            return self._state
        session = self.registry.get(self.session_id)
        if session is None:
            return self._transition(SessionState.EXPIRED)
        now = self.clock.now()
        idle = now - session.last_activity
        if idle >= self.policy.idle_timeout:
            if self._expire(session.user_id, idle, now - self.policy.idle_timeout):
                return self._transition(SessionState.EXPIRED)
            # touched after the read above; judge the fresh activity instead
            return self.evaluate()
        if idle >= self.policy.warning_after:
            return self._transition(SessionState.WARNING)
        return self._transition(SessionState.ACTIVE)

    def _expire(self, user_id: str, idle: timedelta, idle_since: datetime) -> bool:
        removed = self.registry.terminate(
            self.session_id, reason="timeout", idle_since=idle_since
        )
        if not removed and self.registry.get(self.session_id) is not None:
            return False
        self.credentials.invalidate_credentials(user_id, self.session_id)
        logger.info(
            "session_timeout",
            user_id=user_id,
            session_id=self.session_id,
            idle_seconds=int(idle.total_seconds()),
        )
        if self.recorder:
            self.recorder.record(
                user_id,
                "session_timeout",
                "Signed out after inactivity",
                status="warning",
                meta={
                    "session_id": self.session_id,
                    "idle_seconds": int(idle.total_seconds()),
                    "idle_timeout_seconds": int(self.policy.idle_timeout.total_seconds()),
                },
            )
        return True

    def remaining(self) -> timedelta:
        """Time left before a forced logout; zero once expired."""
        if self._state is SessionState.EXPIRED:
            return timedelta(0)
        session = self.registry.get(self.session_id)
        if session is None:
            return timedelta(0)
        left = self.policy.idle_timeout - (self.clock.now() - session.last_activity)
        return max(left, timedelta(0))

    def extend(self) -> SessionState:
        """Record activity so a warned session becomes active again."""
        if self.evaluate() is SessionState.EXPIRED:
            raise Unauthenticated("session expired")
        try:
            session = self.registry.touch(self.session_id)
        except Unauthenticated:
            self._transition(SessionState.EXPIRED)
            raise
        if self.recorder:
            self.recorder.record(
                session.user_id,
                "session_extended",
                "Session extended",
                status="info",
                meta={"session_id": self.session_id},
            )
        return self._transition(SessionState.ACTIVE)

    async def start(self) -> None:
        """Start polling ``evaluate`` every ``poll_interval`` seconds."""
        if self._running:
            logger.warning("session_monitor_already_running", session_id=self.session_id)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "session_monitor_started",
            session_id=self.session_id,
            poll_interval=self.poll_interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_monitor_stopped", session_id=self.session_id)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                if self.evaluate() is SessionState.EXPIRED:
                    self._running = False
                    break
            except Exception as exc:
                logger.error(
                    "session_monitor_loop_error",
                    session_id=self.session_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.poll_interval)


__all__ = [
    "SessionState",
    "SessionTimeoutPolicy",
    "SessionTimeoutMonitor",
    "DEFAULT_POLL_INTERVAL_SECONDS",
]
