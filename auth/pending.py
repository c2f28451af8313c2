"""
auth/pending.py -- In-memory store of in-flight login attempts, plus the
background reaper that reclaims abandoned ones.

Pattern: lock-protected dict. Every operation is synchronous and holds
self._lock for its whole body, so:
  - on the event loop it cannot be preempted (there is no await inside), and
  - from worker threads the lock serializes callers.

take_if_valid() is the central correctness operation: lookup and removal
happen in one critical section via dict.pop(), so for a given state token
exactly one caller ever receives the attempt. The reaper's sweep runs under
the same lock, so an entry is removed by either the sweep or a take, never
both, and never counted twice.

The store is an injectable instance (app.state.pending), not a
module global, so several coordinators can own independent stores.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from auth.errors import DuplicateToken, InvalidState
from auth.models import PendingAttempt
from auth.tokens import token_fingerprint

logger = logging.getLogger("oauthgate.auth.pending")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingAttemptStore:
    """Concurrent, time-bounded map of state token -> PendingAttempt.

    Usage:
        store = PendingAttemptStore()
        store.put(attempt)
        attempt = store.take_if_valid(token, utcnow())   # raises InvalidState on miss
        removed = store.sweep_expired(utcnow())
    """

    def __init__(self) -> None:
        self._attempts: dict[str, PendingAttempt] = {}
        self._lock = threading.Lock()

    def put(self, attempt: PendingAttempt) -> None:
        """Insert a new attempt. Raises DuplicateToken if the token is already pending.

        A collision means the entropy source is broken or astronomically
        unlucky; the store never retries. The caller regenerates.
        """
        with self._lock:
            if attempt.state_token in self._attempts:
                raise DuplicateToken("State token collision")
            self._attempts[attempt.state_token] = attempt

    def take_if_valid(self, state_token: str, now: datetime) -> PendingAttempt:
        """Atomically remove and return the attempt for state_token.

        Raises InvalidState if the token was never issued, was already taken,
        or has expired. An expired entry is removed on this path too.
        """
        with self._lock:
            attempt = self._attempts.pop(state_token, None)
        if attempt is None:
            raise InvalidState("State token unknown or already consumed")
        if attempt.is_expired(now):
            logger.info("Rejected expired state token %s", token_fingerprint(state_token))
            raise InvalidState("State token expired")
        return attempt

    def discard(self, state_token: str) -> bool:
        """Remove an attempt without validating it. Returns True if one was removed."""
        with self._lock:
            return self._attempts.pop(state_token, None) is not None

    def sweep_expired(self, now: datetime) -> int:
        """Remove every attempt with expires_at <= now. Returns the number removed."""
        with self._lock:
            expired = [token for token, attempt in self._attempts.items() if attempt.is_expired(now)]
            for token in expired:
                del self._attempts[token]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    def __contains__(self, state_token: object) -> bool:
        with self._lock:
            return state_token in self._attempts


# ---------------------------------------------------------------------------
# Expiry reaper
# ---------------------------------------------------------------------------


async def reap_expired(
    store: PendingAttemptStore,
    interval: float = 60.0,
    clock: Callable[[], datetime] = utcnow,
    extra_sweeps: tuple[Callable[[datetime], int], ...] = (),
) -> None:
    """Sweep expired attempts every `interval` seconds until cancelled.

    Started with asyncio.create_task() in the app lifespan. Correctness does
    not depend on it -- take_if_valid() already rejects expired entries -- it
    only stops abandoned flows from accumulating in memory.

    extra_sweeps are other purge callables run on the same schedule (the
    server-side session store uses this).

    CancelledError raised out of asyncio.sleep() during shutdown unwinds the
    coroutine. A sweep itself never awaits, so cancellation cannot interrupt
    it half way.
    """
    while True:
        await asyncio.sleep(interval)
        now = clock()
        try:
            removed = store.sweep_expired(now)
            for sweep in extra_sweeps:
                sweep(now)
        except Exception:
            logger.exception("Expiry sweep failed")
            continue
        if removed:
            logger.debug("Reaped %d expired login attempts (%d pending)", removed, len(store))
