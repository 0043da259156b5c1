"""
registry/sql.py -- SQLAlchemy-backed revocation registry.

Default backend for single-node deployments: a SQLite file beside the
credential store, or any database SQLAlchemy can reach.

First-writer detection: jti is the primary key of revoked_tokens, so of two
concurrent revoke() calls for the same jti exactly one INSERT succeeds and the
other raises IntegrityError, which is reported as "already revoked".

Expiry: rows carry an absolute expires_at and every read filters on it, so an
entry stops counting the moment its TTL elapses even before purge_expired()
physically deletes it. The API lifespan runs purge_expired() periodically.

Usage:
    registry = SQLRevocationRegistry("sqlite:///revocations.db")
    registry.revoke(jti, ttl_seconds=3600)   # True
    registry.revoke(jti, ttl_seconds=3600)   # False -- already revoked
    registry.is_revoked(jti)                 # True for the next hour
    registry.purge_expired()                 # call periodically to trim old rows
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import Column, Integer, MetaData, String, Table, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from auth.errors import RegistryUnavailableError
from core.clock import Clock, SystemClock
from core.db import make_engine
from core.retry import call_with_retry
from registry.base import RevocationRegistry

logger = logging.getLogger("tokengate.registry")

T = TypeVar("T")

_metadata = MetaData()

_revoked = Table(
    "revoked_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("revoked_at", Integer, nullable=False),
    Column("expires_at", Integer, nullable=False, index=True),
)

_sessions = Table(
    "active_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),  # insertion order
    Column("jti", String(64), nullable=False, unique=True),
    Column("subject", String(64), nullable=False, index=True),
    Column("expires_at", Integer, nullable=False),
)


class SQLRevocationRegistry(RevocationRegistry):
    def __init__(
        self,
        db_url: str,
        *,
        clock: Clock | None = None,
        timeout_seconds: float = 2.0,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        self._clock = clock or SystemClock()
        self.engine: Engine = make_engine(db_url, timeout_seconds)
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds
        _metadata.create_all(self.engine)

    def _run(self, label: str, fn: Callable[[], T]) -> T:
        try:
            return call_with_retry(
                fn,
                attempts=self._retry_attempts,
                backoff_seconds=self._retry_backoff,
                transient=(OperationalError,),
                label=f"revocation registry {label}",
            )
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Revocation registry %s failed", label, exc_info=True)
            raise RegistryUnavailableError(f"revocation registry {label} failed") from exc

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, jti: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            return False
        now = self._clock.now()

        def _insert() -> bool:
            with self.engine.begin() as conn:
                # A lapsed row for the same jti no longer counts; clear it so the insert can land.
                conn.execute(delete(_revoked).where((_revoked.c.jti == jti) & (_revoked.c.expires_at <= now)))
                conn.execute(_revoked.insert().values(jti=jti, revoked_at=now, expires_at=now + ttl_seconds))
            return True

        try:
            return self._run("revoke", _insert)
        except IntegrityError:
            return False

    def is_revoked(self, jti: str) -> bool:
        now = self._clock.now()

        def _select() -> bool:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(_revoked.c.jti).where((_revoked.c.jti == jti) & (_revoked.c.expires_at > now))
                ).fetchone()
            return row is not None

        return self._run("is_revoked", _select)

    # ------------------------------------------------------------------
    # Session index
    # ------------------------------------------------------------------

    def register_session(self, subject: str, jti: str, expires_at: int, limit: int) -> list[tuple[str, int]]:
        now = self._clock.now()

        def _register() -> list[tuple[str, int]]:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(_sessions).where((_sessions.c.subject == subject) & (_sessions.c.expires_at <= now))
                )
                conn.execute(_sessions.insert().values(jti=jti, subject=subject, expires_at=expires_at))
                if limit <= 0:
                    return []
                rows = conn.execute(
                    select(_sessions.c.jti, _sessions.c.expires_at)
                    .where(_sessions.c.subject == subject)
                    .order_by(_sessions.c.id)
                ).fetchall()
                excess = rows[: max(0, len(rows) - limit)]
                if excess:
                    conn.execute(delete(_sessions).where(_sessions.c.jti.in_([r.jti for r in excess])))
            return [(r.jti, r.expires_at) for r in excess]

        return self._run("register_session", _register)

    def end_session(self, subject: str, jti: str) -> None:
        def _delete() -> None:
            with self.engine.begin() as conn:
                conn.execute(delete(_sessions).where((_sessions.c.subject == subject) & (_sessions.c.jti == jti)))

        self._run("end_session", _delete)

    def clear_sessions(self, subject: str) -> None:
        def _delete() -> None:
            with self.engine.begin() as conn:
                conn.execute(delete(_sessions).where(_sessions.c.subject == subject))

        self._run("clear_sessions", _delete)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete all lapsed revocations and sessions. Returns revocation rows removed."""
        now = self._clock.now()

        def _purge() -> int:
            with self.engine.begin() as conn:
                result = conn.execute(delete(_revoked).where(_revoked.c.expires_at <= now))
                conn.execute(delete(_sessions).where(_sessions.c.expires_at <= now))
            return result.rowcount

        return self._run("purge_expired", _purge)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            logger.warning("Revocation registry ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self.engine.dispose()
