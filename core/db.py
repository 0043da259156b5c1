"""
core/db.py -- SQLAlchemy engine construction shared by every SQL-backed store.

Both the credential store (auth/store.py) and the SQL revocation registry
(registry/sql.py) build their engines here so connection timeouts and SQLite
tuning are configured in exactly one place.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout_seconds: float) -> Engine:
    """Create an engine whose connection waits are bounded by timeout_seconds.

    SQLite: `timeout` bounds how long a statement waits on a locked database
    before raising OperationalError. Other databases: pool_timeout bounds the
    wait for a pooled connection and pool_pre_ping drops dead ones.
    """
    if db_url.startswith("sqlite"):
        engine = create_engine(
            db_url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
        )
        event.listen(engine, "connect", _set_wal_mode)
        return engine
    return create_engine(db_url, pool_pre_ping=True, pool_timeout=timeout_seconds)
