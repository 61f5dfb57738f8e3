from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from typing import Callable, Dict

from .store import _now_ms


DEFAULT_SESSION_TTL_MS = 60 * 60 * 1000


@dataclass
class Session:
    user_id: str
    session_token: str
    expires_at_ms: int


class SessionStore:
    """Bearer tokens binding transport requests to a user id."""

    def __init__(self, ttl_ms: int = DEFAULT_SESSION_TTL_MS, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._ttl_ms = ttl_ms
        self._now = now_func
        self._lock = threading.Lock()
        self._by_token: Dict[str, Session] = {}

    def create(self, user_id: str) -> Session:
        session = Session(
            user_id=user_id,
            session_token=f"st_{secrets.token_urlsafe(16)}",
            expires_at_ms=self._now() + self._ttl_ms,
        )
        with self._lock:
            self._by_token[session.session_token] = session
        return session

    def get(self, session_token: str) -> Session | None:
        with self._lock:
            session = self._by_token.get(session_token)
            if session is None:
                return None
            if session.expires_at_ms <= self._now():
                self._by_token.pop(session_token, None)
                return None
            return session

    def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [token for token, session in self._by_token.items() if session.user_id == user_id]
            for token in doomed:
                del self._by_token[token]
        return len(doomed)
