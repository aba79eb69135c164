from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from medguard.logging import get_logger
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.errors import read_with_retry
from medguard.storage.common import SecurityStore
from medguard.storage.errors import TransientStorageError
from medguard.storage.models import SecurityEvent

logger = get_logger(__name__)

EVENT_STATUSES = frozenset({"success", "failure", "info", "warning"})


class SecurityEventRecorder:
    """Append-only writer for the ``security_events`` audit sink.

    Every event is also emitted to the structured log, so a failing sink never
    hides a security outcome. Sink failures are logged and swallowed: the
    audit trail must not turn a completed login or verification into an error.
    """

    def __init__(self, store: SecurityStore, clock: Optional[ClockSource] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def record(
        self,
        user_id: Optional[str],
        event_type: str,
        description: str,
        *,
        status: str = "info",
        meta: Optional[Dict[str, Any]] = None,
    ) -> SecurityEvent:
        if status not in EVENT_STATUSES:
            raise ValueError(f"unknown security event status '{status}'")
        event = SecurityEvent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            event_type=event_type,
            description=description,
            status=status,
            created_at=self.clock.now(),
            meta=meta,
        )
        log = logger.warning if status in {"failure", "warning"} else logger.info
        log("security_event", event_type=event_type, user_id=user_id, status=status)
        try:
            self.store.append_security_event(event)
        except TransientStorageError as exc:
            logger.error(
                "security_event_persist_failed",
                event_type=event_type,
                user_id=user_id,
                error=str(exc),
            )
        return event

    def recent(self, user_id: str, limit: int = 50) -> List[SecurityEvent]:
        limit = max(1, min(limit, 200))
        return read_with_retry(
            "list_security_events", lambda: self.store.list_security_events(user_id, limit)
        )


__all__ = ["SecurityEventRecorder", "EVENT_STATUSES"]
