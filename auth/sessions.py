"""
auth/sessions.py -- Server-side session bindings.

The login coordinator only ever calls SessionStore.set_authenticated_user().
Where the session id lives (a signed cookie via Starlette's
SessionMiddleware, in this app) is the transport's concern, not this
module's.

MemorySessionStore keeps session_id -> (user_id, expires_at) behind a lock,
mirroring PendingAttemptStore. Expired bindings are ignored on read and
purged by the same reaper loop that sweeps pending attempts.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class SessionStore(Protocol):
    def set_authenticated_user(self, session_id: str, user_id: int) -> None: ...


class MemorySessionStore:
    """Thread-safe in-process SessionStore with a fixed session lifetime."""

    def __init__(self, ttl_seconds: int = 3600) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._sessions: dict[str, tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def set_authenticated_user(self, session_id: str, user_id: int) -> None:
        expires_at = datetime.now(timezone.utc) + self.ttl
        with self._lock:
            self._sessions[session_id] = (user_id, expires_at)

    def get_user_id(self, session_id: str | None, now: datetime | None = None) -> int | None:
        """Return the user bound to session_id, or None if unbound or expired."""
        if not session_id:
            return None
        now = now or datetime.now(timezone.utc)
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is None:
                return None
            user_id, expires_at = entry
            if now >= expires_at:
                del self._sessions[session_id]
                return None
        return user_id

    def end_session(self, session_id: str | None) -> None:
        if not session_id:
            return
        with self._lock:
            self._sessions.pop(session_id, None)

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            expired = [sid for sid, (_, expires_at) in self._sessions.items() if now >= expires_at]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)
