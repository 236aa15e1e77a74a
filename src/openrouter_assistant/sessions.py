from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .contracts import ChatMessage
from .prompts import DEFAULT_MODE, OperatingMode, PersonalityMode

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_MAX_HISTORY = 20


@dataclass
class SessionContext:
    session_id: str
    mode: PersonalityMode = DEFAULT_MODE
    operating_mode: OperatingMode = OperatingMode.ASSISTANT
    history: list[ChatMessage] = field(default_factory=list)
    last_active: float = 0.0


class SessionStore:
    """
    In-memory conversation state keyed by session id.

    Expired sessions are dropped on access or by ``sweep()``. Losing a session
    just means the user starts a fresh context.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_history: int = DEFAULT_MAX_HISTORY,
        *,
        clock: Callable[[], float] | None = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_history = max(0, max_history)
        self._clock: Callable[[], float] = clock or time.time
        self._sessions: dict[str, SessionContext] = {}
        self._lock = threading.Lock()

    def _expired(self, ctx: SessionContext, now: float) -> bool:
        return now - ctx.last_active >= self.ttl_seconds

    def get(self, session_id: str) -> SessionContext:
        now = self._clock()
        with self._lock:
            ctx = self._sessions.get(session_id)
            if ctx is None or self._expired(ctx, now):
                ctx = SessionContext(session_id=session_id, last_active=now)
                self._sessions[session_id] = ctx
            else:
                ctx.last_active = now
            return ctx

    def history(self, session_id: str) -> list[ChatMessage]:
        return list(self.get(session_id).history)

    def append_exchange(self, session_id: str, user_text: str, assistant_text: str) -> None:
        ctx = self.get(session_id)
        with self._lock:
            ctx.history.append(ChatMessage(role="user", content=user_text))
            ctx.history.append(ChatMessage(role="assistant", content=assistant_text))
            if len(ctx.history) > self.max_history:
                ctx.history = ctx.history[-self.max_history :] if self.max_history else []

    def set_mode(self, session_id: str, mode: PersonalityMode) -> None:
        ctx = self.get(session_id)
        with self._lock:
            ctx.mode = mode

    def set_operating_mode(self, session_id: str, operating_mode: OperatingMode) -> None:
        ctx = self.get(session_id)
        with self._lock:
            ctx.operating_mode = operating_mode

    def reset(self, session_id: str) -> None:
        ctx = self.get(session_id)
        with self._lock:
            ctx.history = []

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [sid for sid, ctx in self._sessions.items() if self._expired(ctx, now)]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
