"""
auth/accounts.py -- Account flows built on top of TokenService.

Register, login, password change and reset, logout-everywhere, deactivation
and deletion. These are the collaborators that mutate the credential store; the
token engine only reads it.

Security design decisions:
  Login timing [C1]: bcrypt runs whether or not the e-mail exists. Unknown
       e-mail burns time against dummy_digest() with the configured cost
       factor, so response time does not reveal which e-mails are registered.
       Unknown e-mail, wrong password and inactive account all raise the same
       INVALID_CREDENTIALS.

  Password change: the new digest and the epoch bump land in one UPDATE, so
       there is no window where the old password is gone but old tokens still
       verify. The caller gets a fresh pair carrying the new epoch.

  Password reset: a random one-time token is handed out once and only its
       sha256 is stored. Spending it sets the new digest, clears the token
       and bumps the epoch in one UPDATE, exactly like a password change.

  E-mail normalisation: stripped and lower-cased before every lookup and
       insert, so "A@x.com" and "a@x.com " are one account.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from collections.abc import Callable

from sqlalchemy.exc import IntegrityError

from auth.errors import AccountError, AccountErrorKind, AuthError, AuthErrorKind
from auth.models import Account, TokenPair
from auth.passwords import DEFAULT_ROUNDS, dummy_digest, hash_password, verify_password
from auth.service import TokenService
from auth.store import AccountStore
from core.clock import Clock, SystemClock

logger = logging.getLogger("tokengate.auth")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AccountService:
    def __init__(
        self,
        store: AccountStore,
        tokens: TokenService,
        *,
        bcrypt_rounds: int = DEFAULT_ROUNDS,
        clock: Clock | None = None,
        reset_ttl_seconds: int = 10 * 60,
        reset_min_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._rounds = bcrypt_rounds
        self._clock = clock or SystemClock()
        self._reset_ttl = reset_ttl_seconds
        self._reset_min_seconds = reset_min_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str) -> tuple[Account, TokenPair]:
        """Create an account and hand back its first token pair.

        Raises AccountError(EMAIL_EXISTS) if the e-mail is taken.
        """
        email = normalize_email(email)
        if self._store.get_by_email(email) is not None:
            raise AccountError(AccountErrorKind.EMAIL_EXISTS)
        digest = hash_password(password, self._rounds)
        try:
            account_id = self._store.create_account(Account(email=email, password_digest=digest))
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same e-mail.
            raise AccountError(AccountErrorKind.EMAIL_EXISTS) from exc
        account = self._require(account_id)
        logger.info("Registered account: subject=%s", account_id)
        return account, self._tokens.issue_pair(account_id)

    def login(self, email: str, password: str) -> tuple[Account, TokenPair]:
        """Check credentials and issue a pair. Raises AccountError(INVALID_CREDENTIALS)."""
        account = self._store.get_by_email(normalize_email(email))
        if account is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, dummy_digest(self._rounds))
            raise AccountError(AccountErrorKind.INVALID_CREDENTIALS)
        if not verify_password(password, account.password_digest):
            logger.warning("Failed login: subject=%s", account.id)
            raise AccountError(AccountErrorKind.INVALID_CREDENTIALS)
        if not account.is_active:
            logger.warning("Login attempt on inactive account: subject=%s", account.id)
            raise AccountError(AccountErrorKind.INVALID_CREDENTIALS)
        self._store.update_last_login(account.id)
        return account, self._tokens.issue_pair(account.id)

    # ------------------------------------------------------------------
    # Invalidation flows
    # ------------------------------------------------------------------

    def change_password(self, account_id: str, current_password: str, new_password: str) -> TokenPair:
        """Replace the password, invalidate every older token, return a fresh pair."""
        account = self._require(account_id)
        if not verify_password(current_password, account.password_digest):
            raise AccountError(AccountErrorKind.INVALID_CURRENT_PASSWORD)
        if current_password == new_password:
            raise AccountError(AccountErrorKind.PASSWORD_REUSE)
        epoch = self._store.set_password(account_id, hash_password(new_password, self._rounds))
        if epoch is None:
            raise AuthError(AuthErrorKind.USER_NOT_FOUND, detail=f"subject={account_id}")
        self._tokens.reset_sessions(account_id)
        logger.info("Password changed: subject=%s epoch=%d", account_id, epoch)
        return self._tokens.issue_pair(account_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> str | None:
        """Issue a one-time reset token for the account behind email.

        Returns the raw token, or None when no active account uses that
        e-mail. Only its sha256 is stored. A token and its hash are made on
        both paths and the call takes at least reset_min_seconds, so callers
        cannot time their way to which e-mails are registered.
        """
        started = time.monotonic()
        token = secrets.token_hex(32)
        token_hash = hash_reset_token(token)
        account = self._store.get_by_email(normalize_email(email))
        issued = None
        if account is not None and account.is_active:
            expires_at = self._clock.now() + self._reset_ttl
            if self._store.set_reset_token(account.id, token_hash, expires_at):
                issued = token
                logger.info("Password reset token issued: subject=%s expires_at=%d", account.id, expires_at)
        if issued is None:
            logger.info("Password reset requested for an unknown or inactive e-mail")
        remaining = self._reset_min_seconds - (time.monotonic() - started)
        if remaining > 0:
            self._sleep(remaining)
        return issued

    def reset_password(self, token: str, new_password: str) -> None:
        """Set a new password with a reset token and invalidate every outstanding session.

        The token is single use. Raises AccountError(INVALID_RESET_TOKEN) if it
        is unknown, expired or already spent.
        """
        if not token:
            raise AccountError(AccountErrorKind.INVALID_RESET_TOKEN)
        digest = hash_password(new_password, self._rounds)
        spent = self._store.consume_reset_token(hash_reset_token(token), self._clock.now(), digest)
        if spent is None:
            logger.warning("Rejected password reset with an invalid or expired token")
            raise AccountError(AccountErrorKind.INVALID_RESET_TOKEN)
        account_id, epoch = spent
        self._tokens.reset_sessions(account_id)
        logger.info("Password reset: subject=%s epoch=%d", account_id, epoch)

    def logout_all(self, account_id: str) -> int:
        """Log the account out on every device. Returns the new security epoch."""
        return self._tokens.revoke_all(account_id)

    def deactivate(self, account_id: str) -> None:
        """Soft-delete: the record stays, every token starts failing USER_NOT_FOUND."""
        if not self._store.set_active(account_id, False):
            raise AuthError(AuthErrorKind.USER_NOT_FOUND, detail=f"subject={account_id}")
        self._tokens.reset_sessions(account_id)
        logger.info("Deactivated account: subject=%s", account_id)

    def delete_account(self, account_id: str) -> None:
        if not self._store.delete_account(account_id):
            raise AuthError(AuthErrorKind.USER_NOT_FOUND, detail=f"subject={account_id}")
        self._tokens.reset_sessions(account_id)
        logger.info("Deleted account: subject=%s", account_id)

    def get_account(self, account_id: str) -> Account:
        return self._require(account_id)

    def _require(self, account_id: str) -> Account:
        account = self._store.get_account(account_id)
        if account is None:
            raise AuthError(AuthErrorKind.USER_NOT_FOUND, detail=f"subject={account_id}")
        return account
