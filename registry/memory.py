"""
registry/memory.py -- In-process revocation registry.

Single-process only: entries live in this interpreter and vanish on restart.
Use it for tests and local development (REVOCATION_URL=memory://). Every
public method takes the lock, so concurrent revoke() calls for the same jti
see exactly one winner.
"""

from __future__ import annotations

import threading

from core.clock import Clock, SystemClock
from registry.base import RevocationRegistry


class MemoryRevocationRegistry(RevocationRegistry):
    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._revoked: dict[str, int] = {}  # jti -> expires_at
        self._sessions: dict[str, dict[str, tuple[int, int]]] = {}  # subject -> jti -> (seq, expires_at)
        self._seq = 0

    def revoke(self, jti: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            return False
        now = self._clock.now()
        with self._lock:
            expires_at = self._revoked.get(jti)
            if expires_at is not None and expires_at > now:
                return False
            self._revoked[jti] = now + ttl_seconds
            return True

    def is_revoked(self, jti: str) -> bool:
        now = self._clock.now()
        with self._lock:
            expires_at = self._revoked.get(jti)
            return expires_at is not None and expires_at > now

    def register_session(self, subject: str, jti: str, expires_at: int, limit: int) -> list[tuple[str, int]]:
        now = self._clock.now()
        with self._lock:
            self._seq += 1
            sessions = self._sessions.setdefault(subject, {})
            for stale in [k for k, (_, exp) in sessions.items() if exp <= now]:
                del sessions[stale]
            sessions[jti] = (self._seq, expires_at)
            if limit <= 0 or len(sessions) <= limit:
                return []
            oldest = sorted(sessions.items(), key=lambda item: item[1][0])[: len(sessions) - limit]
            for old_jti, _ in oldest:
                del sessions[old_jti]
            return [(old_jti, exp) for old_jti, (_, exp) in oldest]

    def end_session(self, subject: str, jti: str) -> None:
        with self._lock:
            sessions = self._sessions.get(subject)
            if sessions is not None:
                sessions.pop(jti, None)

    def clear_sessions(self, subject: str) -> None:
        with self._lock:
            self._sessions.pop(subject, None)

    def purge_expired(self) -> int:
        now = self._clock.now()
        with self._lock:
            expired = [jti for jti, exp in self._revoked.items() if exp <= now]
            for jti in expired:
                del self._revoked[jti]
            for subject in list(self._sessions):
                live = {k: v for k, v in self._sessions[subject].items() if v[1] > now}
                if live:
                    self._sessions[subject] = live
                else:
                    del self._sessions[subject]
        return len(expired)

    def ping(self) -> bool:
        return True
