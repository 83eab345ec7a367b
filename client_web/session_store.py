"""
Server-side sessions for logged-in browser users. The browser only holds the random
session id (SESSION cookie); user details live here, user tokens in the AuthorizedClientCache.
In-memory, cleared at shutdown.
"""
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class Session:
    session_id: str
    username: str
    email: str | None = None
    name: str | None = None
    roles: tuple[str, ...] = ()
    scopes: frozenset[str] = frozenset()
    created_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)

    def expired(self, ttl_seconds: int, now: float) -> bool:
        """Idle timeout: expired when unused for ttl_seconds."""
        return now - self.last_seen >= ttl_seconds


class SessionStore:
    def __init__(self, ttl_seconds: int = 1800, clock: Callable[[], float] = time.time):
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, username: str, **details) -> Session:
        now = self._clock()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            username=username,
            created_at=now,
            last_seen=now,
            **details,
        )
        with self._lock:
            self._purge_expired(now)
            self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.expired(self._ttl, now):
                del self._sessions[session_id]
                return None
            session.last_seen = now
            return session

    def delete(self, session_id: str | None) -> Session | None:
        if not session_id:
            return None
        with self._lock:
            return self._sessions.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def _purge_expired(self, now: float) -> None:
        expired = [sid for sid, s in self._sessions.items() if s.expired(self._ttl, now)]
        for sid in expired:
            del self._sessions[sid]
