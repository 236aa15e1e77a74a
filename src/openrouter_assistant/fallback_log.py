from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

from .errors import FailureKind
from .metrics import fallbacks_total

log = structlog.get_logger()

MAX_EVENTS = 1000


class FallbackReason(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    MODEL_UNAVAILABLE = "model_unavailable"
    API_ERROR = "api_error"
    QUOTA = "quota"
    UNKNOWN = "unknown"


def reason_for(kind: FailureKind | None, message: str = "") -> FallbackReason:
    if kind is None:
        return FallbackReason.UNKNOWN
    if kind is FailureKind.NETWORK_ERROR and "timeout" in message.lower():
        return FallbackReason.TIMEOUT
    if kind is FailureKind.RATE_LIMIT:
        return FallbackReason.RATE_LIMIT
    if kind in (FailureKind.AUTH_ERROR, FailureKind.QUOTA_EXCEEDED):
        return FallbackReason.QUOTA
    if kind is FailureKind.EMPTY_RESPONSE:
        return FallbackReason.MODEL_UNAVAILABLE
    if kind in (FailureKind.SERVER_ERROR, FailureKind.NETWORK_ERROR, FailureKind.BAD_REQUEST):
        return FallbackReason.API_ERROR
    return FallbackReason.UNKNOWN


@dataclass(frozen=True)
class FallbackEvent:
    timestamp: float
    primary_model: str
    fallback_model: str
    reason: FallbackReason
    error_details: str | None = None
    session_id: str | None = None
    channel: str | None = None


class FallbackLog:
    """Bounded in-memory history of requests that were answered by a fallback model."""

    def __init__(self, max_events: int = MAX_EVENTS, *, clock: Callable[[], float] | None = None):
        self._events: deque[FallbackEvent] = deque(maxlen=max(1, max_events))
        self._lock = threading.Lock()
        self._clock: Callable[[], float] = clock or time.time

    def record(
        self,
        *,
        primary_model: str,
        fallback_model: str,
        reason: FallbackReason,
        error_details: str | None = None,
        session_id: str | None = None,
        channel: str | None = None,
    ) -> FallbackEvent:
        event = FallbackEvent(
            timestamp=self._clock(),
            primary_model=primary_model,
            fallback_model=fallback_model,
            reason=reason,
            error_details=error_details,
            session_id=session_id,
            channel=channel,
        )
        with self._lock:
            self._events.append(event)
        fallbacks_total.labels(reason=reason.value).inc()
        log.warning(
            "fallback_used",
            primary_model=primary_model,
            fallback_model=fallback_model,
            reason=reason.value,
            error=error_details,
            session_id=session_id,
            channel=channel,
        )
        return event

    def recent(self, limit: int = 10) -> list[FallbackEvent]:
        with self._lock:
            events = list(self._events)
        return events[-limit:] if limit > 0 else []

    def stats(self) -> dict[str, object]:
        cutoff = self._clock() - 24 * 60 * 60
        by_reason = {r.value: 0 for r in FallbackReason}
        last_24_hours = 0
        with self._lock:
            events = list(self._events)
        for event in events:
            by_reason[event.reason.value] += 1
            if event.timestamp > cutoff:
                last_24_hours += 1
        return {"total": len(events), "by_reason": by_reason, "last_24_hours": last_24_hours}

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
