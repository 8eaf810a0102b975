from __future__ import annotations

import logging
from threading import Lock
from typing import Optional

from therapydocs.utils.dates import utc_now_iso

from .contracts import AuditEvent, AuditEventType

logger = logging.getLogger(__name__)


def _sanitize_detail(detail: str) -> str:
    # IMPORTANT: Never include note text or narrative output in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "..."
    return detail


class AuditTrail:
    def __init__(self, max_events: int = 500):
        self._max_events = max_events
        self._lock = Lock()
        self._events: list[AuditEvent] = []

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self._max_events:
                del self._events[: len(self._events) - self._max_events]

    def events(self, runtime_id: Optional[str] = None) -> list[AuditEvent]:
        with self._lock:
            if runtime_id is None:
                return list(self._events)
            return [item for item in self._events if item.runtime_id == runtime_id]


def log_event(
    trail: Optional[AuditTrail],
    runtime_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str = "",
    duration_ms: Optional[int] = None,
) -> None:
    event = AuditEvent(
        ts_iso=utc_now_iso(),
        runtime_id=runtime_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    logger.info("audit type=%s code=%s runtime_id=%s", event_type, code, runtime_id)
    if trail is not None:
        trail.append(event)
