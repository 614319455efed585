from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

SESSION_TTL_SECONDS = 24 * 60 * 60
SWEEP_THRESHOLD = 100


@dataclass(slots=True)
class Session:
    session_id: str
    website_id: str
    account_id: str
    visitor_name: str
    started_at: float
    last_message_at: float
    visitor_email: str | None = None
    message_count: int = 1
    is_new: bool = True


class SessionTracker:
    """In-memory view of live Crisp conversations.

    Records are evicted lazily: once the live set grows past ``sweep_threshold``,
    inserting a new conversation drops every record idle for longer than ``ttl_seconds``.
    """

    def __init__(
        self,
        ttl_seconds: float = SESSION_TTL_SECONDS,
        sweep_threshold: int = SWEEP_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._sweep_threshold = sweep_threshold
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def track(
        self,
        session_id: str,
        website_id: str,
        account_id: str,
        visitor_name: str,
        visitor_email: str | None = None,
    ) -> Session:
        now = self._clock()
        existing = self._sessions.get(session_id)
        if existing is not None:
            existing.last_message_at = now
            existing.message_count += 1
            existing.is_new = False
            return existing

        session = Session(
            session_id=session_id,
            website_id=website_id,
            account_id=account_id,
            visitor_name=visitor_name,
            visitor_email=visitor_email,
            started_at=now,
            last_message_at=now,
        )
        self._sessions[session_id] = session

        if len(self._sessions) > self._sweep_threshold:
            self.sweep(now)
        return session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def set_email(self, session_id: str, email: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None or not email:
            return False
        session.visitor_email = email
        return True

    def sweep(self, now: float | None = None) -> int:
        cutoff = (self._clock() if now is None else now) - self._ttl
        stale = [key for key, session in self._sessions.items() if session.last_message_at < cutoff]
        for key in stale:
            del self._sessions[key]
        return len(stale)
