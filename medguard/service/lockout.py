from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Sequence, Tuple

from medguard.config import DEFAULT_LOCKOUT_THRESHOLDS, parse_lockout_thresholds
from medguard.logging import get_logger
from medguard.service.audit import SecurityEventRecorder
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.errors import RateLimited, read_with_retry, write_or_fail
from medguard.storage.common import SecurityStore
from medguard.storage.models import LoginAttemptRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    allowed: bool
    retry_after: Optional[timedelta] = None


@dataclass(frozen=True)
class FailureOutcome:
    locked: bool
    failure_count: int
    retry_after: Optional[timedelta]
    message: str


def format_remaining(delta: timedelta) -> str:
    """Human readable wait: whole seconds below a minute, else minutes rounded up."""
    seconds = max(1, math.ceil(delta.total_seconds()))
    if seconds < 60:
        unit = "second" if seconds == 1 else "seconds"
        return f"{seconds} {unit}"
    minutes = math.ceil(seconds / 60)
    unit = "minute" if minutes == 1 else "minutes"
    return f"{minutes} {unit}"


class LockoutGuard:
    """Escalating lockout of login attempts per identity key.

    Expiry is lazy: nothing runs in the background, an expired lockout is
    cleared by the next ``check`` for the same key.
    """

    def __init__(
        self,
        store: SecurityStore,
        *,
        clock: Optional[ClockSource] = None,
        thresholds: Optional[Sequence[Tuple[int, int]]] = None,
        recorder: Optional[SecurityEventRecorder] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.thresholds = parse_lockout_thresholds(
            thresholds if thresholds is not None else DEFAULT_LOCKOUT_THRESHOLDS
        )
        self.recorder = recorder

    def _lockout_duration(self, failure_count: int) -> Optional[timedelta]:
        duration: Optional[int] = None
        for attempts, seconds in self.thresholds:
            if failure_count >= attempts:
                duration = seconds
        return timedelta(seconds=duration) if duration is not None else None

    def check(self, identity_key: str) -> LockoutStatus:
        now = self.clock.now()
        record = read_with_retry(
            "get_login_attempt", lambda: self.store.get_login_attempt(identity_key)
        )
        if record is None or record.lockout_until is None:
            return LockoutStatus(allowed=True)
        if now < record.lockout_until:
            return LockoutStatus(allowed=False, retry_after=record.lockout_until - now)

        def _clear_if_expired(current: Optional[LoginAttemptRecord]) -> Optional[LoginAttemptRecord]:
            # a concurrent failure may have extended the lockout since our read
            if current is None or current.lockout_until is None:
                return current
            if now >= current.lockout_until:
                return None
            return current

        latest = write_or_fail(
            "clear_login_attempt",
            lambda: self.store.update_login_attempt(identity_key, _clear_if_expired),
        )
        if latest is not None and latest.lockout_until is not None and now < latest.lockout_until:
            return LockoutStatus(allowed=False, retry_after=latest.lockout_until - now)
        logger.info("lockout_expired")
        return LockoutStatus(allowed=True)

    def ensure_allowed(self, identity_key: str) -> None:
        """Raise ``RateLimited`` while the key is locked out."""
        status = self.check(identity_key)
        if not status.allowed:
            raise RateLimited(
                f"Too many failed attempts. Try again in {format_remaining(status.retry_after)}.",
                retry_after=status.retry_after,
            )

    def record_failure(self, identity_key: str, *, user_id: Optional[str] = None) -> FailureOutcome:
        now = self.clock.now()

        def _increment(current: Optional[LoginAttemptRecord]) -> LoginAttemptRecord:
            record = current or LoginAttemptRecord(identity_key=identity_key)
            if record.lockout_until is not None and now >= record.lockout_until:
                record = LoginAttemptRecord(identity_key=identity_key)
            record.failure_count += 1
            duration = self._lockout_duration(record.failure_count)
            if duration is not None:
                candidate = now + duration
                if record.lockout_until is None or candidate > record.lockout_until:
                    record.lockout_until = candidate
            return record

        updated = write_or_fail(
            "record_login_failure",
            lambda: self.store.update_login_attempt(identity_key, _increment),
        )
        locked = updated.lockout_until is not None and now < updated.lockout_until
        if not locked:
            logger.info("login_failure_recorded", failure_count=updated.failure_count)
            return FailureOutcome(
                locked=False,
                failure_count=updated.failure_count,
                retry_after=None,
                message="Invalid credentials.",
            )

        retry_after = updated.lockout_until - now
        message = f"Too many failed attempts. Try again in {format_remaining(retry_after)}."
        logger.warning(
            "lockout_triggered",
            failure_count=updated.failure_count,
            retry_after_seconds=int(retry_after.total_seconds()),
        )
        if self.recorder:
            self.recorder.record(
                user_id,
                "lockout_triggered",
                f"Login locked after {updated.failure_count} failed attempts",
                status="warning",
                meta={
                    "failure_count": updated.failure_count,
                    "lockout_until": updated.lockout_until.isoformat(),
                },
            )
        return FailureOutcome(
            locked=True,
            failure_count=updated.failure_count,
            retry_after=retry_after,
            message=message,
        )

    def reset(self, identity_key: str) -> None:
        write_or_fail(
            "reset_login_attempt",
            lambda: self.store.update_login_attempt(identity_key, lambda _current: None),
        )


__all__ = ["LockoutGuard", "LockoutStatus", "FailureOutcome", "format_remaining"]
