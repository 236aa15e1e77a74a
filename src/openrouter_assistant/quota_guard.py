from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

from .errors import FailureKind
from .metrics import quota_blocks_total

log = structlog.get_logger()

DEFAULT_COOLDOWN_SECONDS = 60.0


def is_quota_or_auth(kind: FailureKind) -> bool:
    return kind in (FailureKind.AUTH_ERROR, FailureKind.QUOTA_EXCEEDED)


@dataclass(frozen=True)
class BlockEntry:
    model_id: str
    blocked_at: float
    reason: str
    expires_at: float


@dataclass(frozen=True)
class BlockedModel:
    model_id: str
    reason: str
    remaining_ms: int


class BlockStore(Protocol):
    def get(self, model_id: str) -> BlockEntry | None: ...

    def set(self, entry: BlockEntry) -> None: ...

    def delete(self, model_id: str, *, if_expires_at: float | None = None) -> None: ...

    def items(self) -> list[BlockEntry]: ...

    def clear(self) -> None: ...


class InMemoryBlockStore:
    """Process-wide block map; one entry per model id, last writer wins."""

    def __init__(self) -> None:
        self._entries: dict[str, BlockEntry] = {}
        self._lock = threading.Lock()

    def get(self, model_id: str) -> BlockEntry | None:
        with self._lock:
            return self._entries.get(model_id)

    def set(self, entry: BlockEntry) -> None:
        with self._lock:
            self._entries[entry.model_id] = entry

    def delete(self, model_id: str, *, if_expires_at: float | None = None) -> None:
        with self._lock:
            current = self._entries.get(model_id)
            if current is None:
                return
            # A concurrent report may have renewed the block since it was read.
            if if_expires_at is not None and current.expires_at != if_expires_at:
                return
            del self._entries[model_id]

    def items(self) -> list[BlockEntry]:
        with self._lock:
            return list(self._entries.values())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class QuotaGuard:
    """
    Short-term circuit breaker keyed by model id.

    Models that fail with a quota/auth-class error are skipped until their
    cooldown expires. Expired entries are removed lazily when checked.
    """

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        *,
        store: BlockStore | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self._store: BlockStore = store or InMemoryBlockStore()
        self._clock: Callable[[], float] = clock or time.time

    def report_failure(self, model_id: str, is_quota_or_auth_error: bool, reason: str = "") -> None:
        if not is_quota_or_auth_error:
            return
        now = self._clock()
        entry = BlockEntry(
            model_id=model_id,
            blocked_at=now,
            reason=reason or "quota or auth failure",
            expires_at=now + self.cooldown_seconds,
        )
        self._store.set(entry)
        quota_blocks_total.labels(model=model_id).inc()
        log.warning("model_blocked", model=model_id, reason=entry.reason, cooldown_seconds=self.cooldown_seconds)

    def is_blocked(self, model_id: str) -> bool:
        entry = self._store.get(model_id)
        if entry is None:
            return False
        if self._clock() < entry.expires_at:
            return True
        self._store.delete(model_id, if_expires_at=entry.expires_at)
        log.info("model_unblocked", model=model_id)
        return False

    def list_blocked(self) -> list[BlockedModel]:
        now = self._clock()
        out: list[BlockedModel] = []
        for entry in self._store.items():
            if now >= entry.expires_at:
                self._store.delete(entry.model_id, if_expires_at=entry.expires_at)
                continue
            out.append(
                BlockedModel(
                    model_id=entry.model_id,
                    reason=entry.reason,
                    remaining_ms=int((entry.expires_at - now) * 1000),
                )
            )
        return sorted(out, key=lambda b: b.model_id)

    def clear(self) -> None:
        self._store.clear()
