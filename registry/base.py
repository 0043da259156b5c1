"""
registry/base.py -- Revocation registry contract.

A revocation registry remembers explicitly revoked token ids (jti) until the
token would have expired anyway, so it never grows without bound. Every entry
is stored with a TTL equal to the revoked token's remaining lifetime.

Contract every backend honours:

  revoke(jti, ttl)   Idempotent insert. Returns True only for the call that
                     actually created the entry, False if it was already
                     present (or ttl <= 0, which is a no-op). That first-writer
                     signal is what lets two racing refresh calls agree on a
                     single winner.

  is_revoked(jti)    Point lookup. Once True it stays True until the TTL
                     elapses -- entries are never deleted early.

  Session index      Optional bookkeeping for the max-concurrent-sessions
                     policy: the live refresh-token ids per subject.
                     register_session() returns the oldest sessions evicted
                     beyond the limit; the caller revokes them.

  Failures           Any backend error that outlives the retry budget is
                     raised as RegistryUnavailableError. A backend must never
                     answer "not revoked" when it could not look.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class RevocationRegistry(ABC):
    @abstractmethod
    def revoke(self, jti: str, ttl_seconds: int) -> bool:
        """Record jti as revoked for ttl_seconds. True if this call created the entry."""

    @abstractmethod
    def is_revoked(self, jti: str) -> bool:
        """True while a revocation entry for jti is live."""

    @abstractmethod
    def register_session(self, subject: str, jti: str, expires_at: int, limit: int) -> list[tuple[str, int]]:
        """Track a live refresh token for subject.

        When more than `limit` live sessions remain, the oldest are dropped
        from the index and returned as (jti, expires_at) pairs.
        """

    @abstractmethod
    def end_session(self, subject: str, jti: str) -> None:
        """Drop one refresh token from the subject's session index."""

    @abstractmethod
    def clear_sessions(self, subject: str) -> None:
        """Drop the whole session index for subject."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete entries whose TTL has elapsed. Returns the number removed."""

    @abstractmethod
    def ping(self) -> bool:
        """True if the backend answers. Never raises."""

    def close(self) -> None:
        """Release connections. Default: nothing to release."""
