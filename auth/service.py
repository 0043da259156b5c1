"""
auth/service.py -- TokenService: the only component that mints, verifies,
rotates or revokes tokens.

Verification order (each step runs only if the previous one passed):
  1. codec decode      BAD_SIGNATURE / MALFORMED -> INVALID_TOKEN
                       EXPIRED                   -> TOKEN_EXPIRED
  2. type check        wrong token type          -> INVALID_TOKEN
  3. registry lookup   jti revoked               -> TOKEN_REVOKED
  4. account lookup    missing or inactive       -> USER_NOT_FOUND
  5. epoch match       stale epoch               -> TOKEN_EXPIRED

Nothing is cached between calls. Every verify() re-reads the registry and the
credential store, so a logout, password change or deletion takes effect on
the very next request.

Fail closed: registry and store failures surface as BackendUnavailableError
and are never turned into an AuthError kind. A registry that cannot answer
must not read as "not revoked".

Rotation: refresh() revokes the presented refresh jti before minting the new
pair. RevocationRegistry.revoke() reports whether this call was the first
writer, so of two concurrent refreshes on one token exactly one wins and the
other gets TOKEN_REVOKED.

Layer rule: no imports from api/. The registry is reached only through the
RevocationRegistry interface.
"""

from __future__ import annotations

import logging

from auth.codec import TokenCodec
from auth.errors import AuthError, AuthErrorKind, DecodeFailure, TokenDecodeError
from auth.models import Account, TokenPair, TokenPayload, TokenType, VerifiedIdentity
from auth.policy import SessionPolicy
from auth.store import AccountStore
from core.clock import Clock, SystemClock, new_token_id
from registry.base import RevocationRegistry

logger = logging.getLogger("tokengate.auth")


class TokenService:
    """Issue, verify, rotate and revoke token pairs.

    Usage:
        service = TokenService(codec, registry, store, policy)
        pair = service.issue_pair(account_id)
        identity = service.verify(pair.access_token)
        pair = service.refresh(pair.refresh_token)
        service.revoke(pair.access_token)
    """

    def __init__(
        self,
        codec: TokenCodec,
        registry: RevocationRegistry,
        store: AccountStore,
        policy: SessionPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._codec = codec
        self._registry = registry
        self._store = store
        self._policy = policy or SessionPolicy()
        self._clock = clock or SystemClock()

    @property
    def policy(self) -> SessionPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_pair(self, account_id: str) -> TokenPair:
        """Mint a fresh access + refresh pair carrying the account's current epoch.

        Raises AuthError(USER_NOT_FOUND) if the account is missing or inactive.
        """
        account = self._store.get_account(account_id)
        if account is None or not account.is_active:
            raise AuthError(AuthErrorKind.USER_NOT_FOUND, detail=f"subject={account_id}")
        return self._issue_for(account)

    def _issue_for(self, account: Account) -> TokenPair:
        now = self._clock.now()
        access = self._payload(account, TokenType.access, now)
        refresh = self._payload(account, TokenType.refresh, now)
        pair = TokenPair(
            access_token=self._codec.encode(access),
            refresh_token=self._codec.encode(refresh),
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )
        if self._policy.limits_sessions:
            self._enforce_session_limit(account.id, refresh, now)
        logger.info("Issued token pair: subject=%s refresh_jti=%s", account.id, refresh.jti)
        return pair

    def _payload(self, account: Account, token_type: TokenType, now: int) -> TokenPayload:
        return TokenPayload(
            subject=account.id,
            token_type=token_type,
            jti=new_token_id(),
            security_epoch=account.security_epoch,
            issued_at=now,
            expires_at=now + self._policy.ttl_for(token_type),
        )

    def _enforce_session_limit(self, subject: str, refresh: TokenPayload, now: int) -> None:
        evicted = self._registry.register_session(
            subject, refresh.jti, refresh.expires_at, self._policy.max_concurrent_sessions
        )
        for jti, expires_at in evicted:
            self._registry.revoke(jti, self._remaining(expires_at, now))
            logger.info("Evicted oldest session: subject=%s refresh_jti=%s", subject, jti)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str | None, expected_type: TokenType | str = TokenType.access) -> VerifiedIdentity:
        """Check a presented token against codec, registry and credential store.

        expected_type accepts the enum or its plain value ("access"/"refresh").
        Raises AuthError on any rejection, BackendUnavailableError if a backend
        cannot answer.
        """
        payload, account = self._check(token, TokenType(expected_type))
        return VerifiedIdentity(
            account_id=account.id,
            security_epoch=account.security_epoch,
            jti=payload.jti,
            token_type=payload.token_type,
            expires_at=payload.expires_at,
        )

    def _check(self, token: str | None, expected_type: TokenType) -> tuple[TokenPayload, Account]:
        """Run the five verification steps. Returns the payload and the account snapshot they passed against."""
        if not token:
            raise AuthError(AuthErrorKind.MISSING_TOKEN, token_type=expected_type)

        try:
            payload = self._codec.decode(token)
        except TokenDecodeError as exc:
            if exc.failure is DecodeFailure.EXPIRED:
                raise AuthError(AuthErrorKind.TOKEN_EXPIRED, token_type=expected_type, detail=exc.detail) from exc
            logger.warning("Rejected undecodable token: failure=%s", exc.failure.value)
            raise AuthError(AuthErrorKind.INVALID_TOKEN, token_type=expected_type, detail=exc.detail) from exc

        if payload.token_type is not expected_type:
            logger.warning(
                "Rejected %s token presented as %s: jti=%s",
                payload.token_type.value,
                expected_type.value,
                payload.jti,
            )
            raise AuthError(
                AuthErrorKind.INVALID_TOKEN,
                token_type=expected_type,
                detail=f"expected {expected_type.value} token, got {payload.token_type.value}",
            )

        if self._registry.is_revoked(payload.jti):
            logger.warning("Rejected revoked token: subject=%s jti=%s", payload.subject, payload.jti)
            raise AuthError(AuthErrorKind.TOKEN_REVOKED, token_type=expected_type, detail=f"jti={payload.jti}")

        account = self._store.get_account(payload.subject)
        if account is None or not account.is_active:
            logger.warning("Rejected token for missing or inactive account: subject=%s", payload.subject)
            raise AuthError(AuthErrorKind.USER_NOT_FOUND, token_type=expected_type, detail=f"subject={payload.subject}")

        if account.security_epoch != payload.security_epoch:
            logger.warning(
                "Rejected stale token: subject=%s jti=%s token_epoch=%d current_epoch=%d",
                payload.subject,
                payload.jti,
                payload.security_epoch,
                account.security_epoch,
            )
            raise AuthError(AuthErrorKind.TOKEN_EXPIRED, token_type=expected_type, detail="security epoch changed")

        return payload, account

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def refresh(self, token: str | None) -> TokenPair:
        """Exchange a valid refresh token for a new pair.

        With rotation on, the presented refresh jti is revoked first. Losing
        that race to a concurrent refresh raises AuthError(TOKEN_REVOKED).

        The new pair carries the epoch the presented token was checked
        against, not a re-read one. A logout-all or password change landing
        in between leaves the new pair already stale.
        """
        payload, account = self._check(token, TokenType.refresh)

        if self._policy.rotate_refresh_tokens:
            now = self._clock.now()
            # _check() just passed, so at least one second of life remains.
            ttl = max(1, self._remaining(payload.expires_at, now))
            if not self._registry.revoke(payload.jti, ttl):
                logger.warning("Refresh token reused concurrently: subject=%s jti=%s", account.id, payload.jti)
                raise AuthError(AuthErrorKind.TOKEN_REVOKED, token_type=TokenType.refresh, detail="lost rotation race")
            if self._policy.limits_sessions:
                self._registry.end_session(account.id, payload.jti)

        pair = self._issue_for(account)
        logger.info("Rotated refresh token: subject=%s old_jti=%s", account.id, payload.jti)
        return pair

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token: str | None) -> bool:
        """Log a single token out. Returns True if this call revoked it.

        Any structurally valid token we signed is accepted, access or refresh,
        regardless of account state. Revoking an already expired or already
        revoked token is a no-op that returns False.
        """
        if not token:
            raise AuthError(AuthErrorKind.MISSING_TOKEN)

        try:
            payload = self._codec.decode(token)
        except TokenDecodeError as exc:
            if exc.failure is DecodeFailure.EXPIRED:
                logger.info("Logout of an already expired token ignored")
                return False
            raise AuthError(AuthErrorKind.INVALID_TOKEN, detail=exc.detail) from exc

        revoked = self._registry.revoke(payload.jti, self._codec.remaining_seconds(payload))
        if payload.token_type is TokenType.refresh and self._policy.limits_sessions:
            self._registry.end_session(payload.subject, payload.jti)
        if revoked:
            logger.info(
                "Revoked %s token: subject=%s jti=%s", payload.token_type.value, payload.subject, payload.jti
            )
        return revoked

    def revoke_all(self, account_id: str) -> int:
        """Invalidate every outstanding token for an account. Returns the new epoch.

        Raises AuthError(USER_NOT_FOUND) if the account does not exist.
        """
        epoch = self._store.bump_security_epoch(account_id)
        if epoch is None:
            raise AuthError(AuthErrorKind.USER_NOT_FOUND, detail=f"subject={account_id}")
        self.reset_sessions(account_id)
        logger.info("Logged out everywhere: subject=%s epoch=%d", account_id, epoch)
        return epoch

    def reset_sessions(self, account_id: str) -> None:
        """Forget the account's session index after an epoch bump made every entry stale."""
        if self._policy.limits_sessions:
            self._registry.clear_sessions(account_id)

    def _remaining(self, expires_at: int, now: int) -> int:
        return max(0, expires_at + self._codec.leeway_seconds - now)
