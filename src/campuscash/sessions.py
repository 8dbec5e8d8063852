from __future__ import annotations

import secrets
import time
from dataclasses import dataclass

from .sqlite_backend import SQLiteBackend


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    user_id: str
    session_token: str
    expires_at_ms: int


def _new_token() -> str:
    return f"st_{secrets.token_urlsafe(16)}"


class SessionStore:
    """Tracks active sessions keyed by session token."""

    def __init__(self, ttl_ms: int = 60 * 60 * 1000) -> None:
        self._ttl_ms = ttl_ms
        self._by_session: dict[str, Session] = {}

    def create(self, user_id: str) -> Session:
        session = Session(user_id=user_id, session_token=_new_token(), expires_at_ms=_now_ms() + self._ttl_ms)
        self._by_session[session.session_token] = session
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        session = self._by_session.get(session_token)
        if session is None:
            return None
        if session.expires_at_ms <= _now_ms():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        self._by_session.pop(session.session_token, None)


class SQLiteSessionStore:
    """Durable session store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, ttl_ms: int = 60 * 60 * 1000) -> None:
        self._backend = backend
        self._ttl_ms = ttl_ms

    def create(self, user_id: str) -> Session:
        session = Session(user_id=user_id, session_token=_new_token(), expires_at_ms=_now_ms() + self._ttl_ms)
        with self._backend.lock:
            self._backend.connection.execute(
                "INSERT INTO sessions (session_token, user_id, expires_at_ms) VALUES (?, ?, ?)",
                (session.session_token, session.user_id, session.expires_at_ms),
            )
        return session

    def get_by_session(self, session_token: str) -> Session | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT session_token, user_id, expires_at_ms FROM sessions WHERE session_token=?",
                (session_token,),
            ).fetchone()
        if row is None:
            return None
        session = Session(session_token=row[0], user_id=row[1], expires_at_ms=row[2])
        if session.expires_at_ms <= _now_ms():
            self.invalidate(session)
            return None
        return session

    def invalidate(self, session: Session) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "DELETE FROM sessions WHERE session_token=?",
                (session.session_token,),
            )
