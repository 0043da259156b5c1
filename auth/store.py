"""
auth/store.py -- SQLAlchemy Core credential store.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account is the mapper. Services never touch SQL directly.

What the token engine reads from here: does the account exist, is it active,
and what is its current security_epoch. Everything that must invalidate all
of an account's tokens at once (password change, logout-all, deactivation)
does so by bumping security_epoch in a single UPDATE -- there is no list of
issued tokens to walk.

Failure handling:
  OperationalError (database locked, connection dropped, timeout) is treated
  as transient and retried within the configured budget. Any other database
  error, or a transient one that outlives the budget, becomes
  StoreUnavailableError so verification fails closed.

  IntegrityError (duplicate e-mail) is a domain outcome, not an outage, and
  propagates unchanged for AccountService to translate.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or registry/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from auth.errors import StoreUnavailableError
from auth.models import Account
from core.clock import new_account_id
from core.db import make_engine
from core.retry import call_with_retry

logger = logging.getLogger("tokengate.store")

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_digest", Text, nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("security_epoch", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("reset_token_hash", String(64), unique=True),
    Column("reset_expires_at", Integer),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records.

    Usage:
        store = AccountStore("sqlite:///accounts.db")
        account_id = store.create_account(Account(email="a@example.com", password_digest=digest))
        account = store.get_account(account_id)
        store.bump_security_epoch(account_id)   # every outstanding token is now stale
        store.close()
    """

    def __init__(
        self,
        db_url: str,
        *,
        timeout_seconds: float = 2.0,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
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
                label=f"credential store {label}",
            )
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Credential store %s failed", label, exc_info=True)
            raise StoreUnavailableError(f"credential store {label} failed") from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> str:
        """Insert a new account and return its id. Raises IntegrityError on duplicate e-mail."""
        account_id = account.id or new_account_id()

        def _insert() -> str:
            with self.engine.begin() as conn:
                conn.execute(
                    _accounts.insert().values(
                        id=account_id,
                        email=account.email,
                        password_digest=account.password_digest,
                        is_active=account.is_active,
                        security_epoch=account.security_epoch,
                        created_at=_now_iso(),
                    )
                )
            return account_id

        return self._run("create_account", _insert)

    def get_account(self, account_id: str) -> Account | None:
        """Look up an account by id. Returns None if not found."""

        def _select() -> Account | None:
            with self.engine.connect() as conn:
                row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
            return _row_to_account(row) if row is not None else None

        return self._run("get_account", _select)

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by exact (already normalised) e-mail. Returns None if not found."""

        def _select() -> Account | None:
            with self.engine.connect() as conn:
                row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
            return _row_to_account(row) if row is not None else None

        return self._run("get_by_email", _select)

    # ------------------------------------------------------------------
    # Epoch mutations -- each one is a single atomic UPDATE
    # ------------------------------------------------------------------

    def bump_security_epoch(self, account_id: str) -> int | None:
        """Increment security_epoch. Returns the new epoch, or None if the account does not exist."""
        return self._update_with_epoch_bump("bump_security_epoch", account_id, {})

    def set_password(self, account_id: str, password_digest: str) -> int | None:
        """Store a new digest and bump the epoch in the same statement.

        Any pending reset token is discarded with the old password.

        Returns the new epoch, or None if the account does not exist.
        """
        return self._update_with_epoch_bump(
            "set_password",
            account_id,
            {"password_digest": password_digest, "reset_token_hash": None, "reset_expires_at": None},
        )

    def set_active(self, account_id: str, active: bool) -> bool:
        """Activate or deactivate an account. Deactivation also bumps the epoch.

        Returns True if a row was updated, False if account_id was not found.
        """
        if not active:
            return self._update_with_epoch_bump("set_active", account_id, {"is_active": False}) is not None

        def _update() -> bool:
            with self.engine.begin() as conn:
                result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(is_active=True))
            return result.rowcount > 0

        return self._run("set_active", _update)

    def _update_with_epoch_bump(self, label: str, account_id: str, values: dict) -> int | None:
        def _update() -> int | None:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == account_id)
                    .values(security_epoch=_accounts.c.security_epoch + 1, **values)
                )
                if result.rowcount == 0:
                    return None
                return conn.execute(
                    select(_accounts.c.security_epoch).where(_accounts.c.id == account_id)
                ).scalar_one()

        return self._run(label, _update)

    # ------------------------------------------------------------------
    # Password reset tokens -- only the sha256 of the token is stored
    # ------------------------------------------------------------------

    def set_reset_token(self, account_id: str, token_hash: str, expires_at: int) -> bool:
        """Store a pending reset token for an active account, replacing any earlier one.

        Returns False if the account does not exist or is inactive.
        """

        def _update() -> bool:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == account_id, _accounts.c.is_active.is_(True))
                    .values(reset_token_hash=token_hash, reset_expires_at=expires_at)
                )
            return result.rowcount > 0

        return self._run("set_reset_token", _update)

    def consume_reset_token(self, token_hash: str, now: int, password_digest: str) -> tuple[str, int] | None:
        """Spend a reset token: set the new digest, clear the token and bump the epoch.

        The UPDATE is conditioned on the token hash, so of two concurrent
        calls with the same token only one changes the password. Returns
        (account_id, new_epoch), or None if the token is unknown, expired,
        already spent, or belongs to an inactive account.
        """

        def _consume() -> tuple[str, int] | None:
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(_accounts.c.id).where(
                        _accounts.c.reset_token_hash == token_hash,
                        _accounts.c.reset_expires_at > now,
                        _accounts.c.is_active.is_(True),
                    )
                ).fetchone()
                if row is None:
                    return None
                result = conn.execute(
                    _accounts.update()
                    .where(_accounts.c.id == row.id, _accounts.c.reset_token_hash == token_hash)
                    .values(
                        password_digest=password_digest,
                        reset_token_hash=None,
                        reset_expires_at=None,
                        security_epoch=_accounts.c.security_epoch + 1,
                    )
                )
                if result.rowcount == 0:
                    return None
                epoch = conn.execute(select(_accounts.c.security_epoch).where(_accounts.c.id == row.id)).scalar_one()
            return row.id, epoch

        return self._run("consume_reset_token", _consume)

    # ------------------------------------------------------------------
    # Other mutations
    # ------------------------------------------------------------------

    def delete_account(self, account_id: str) -> bool:
        """Permanently delete an account. Returns True if deleted, False if not found.

        Deletion is itself a full invalidation: verify() finds no account and
        rejects every token that names it.
        """

        def _delete() -> bool:
            with self.engine.begin() as conn:
                result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
            return result.rowcount > 0

        return self._run("delete_account", _delete)

    def update_last_login(self, account_id: str) -> None:
        """Stamp the current UTC timestamp as last_login."""

        def _update() -> None:
            with self.engine.begin() as conn:
                conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))

        self._run("update_last_login", _update)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            logger.warning("Credential store ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_digest=row.password_digest,
        is_active=bool(row.is_active),
        security_epoch=int(row.security_epoch),
        created_at=row.created_at,
        last_login=row.last_login,
    )
