"""
auth/codec.py -- Signed token encode / decode.

Security design decisions:
  JWT: python-jose with an HMAC algorithm (HS256 by default). Tokens are
       signed with SECRET_KEY and carry the claim set described in
       auth/models.py.

  Failure classes: decode() distinguishes three outcomes because callers map
       them to different error kinds:
         MALFORMED      not a JWT, undecodable segments, missing/mistyped claims
         BAD_SIGNATURE  structurally fine but not signed by our key (tampered,
                        wrong key, or an unexpected alg header such as "none")
         EXPIRED        signature valid, exp has passed

  Check order: the signature is verified before any claim is trusted. Expiry
       is only reported for tokens we actually signed.

  Expiry: judged here against the injected clock rather than by jose, so the
       boundary rule lives in one place and tests can move time. A token is
       expired once now >= exp + leeway (RFC 7519: "on or after").

Stateless and thread-safe: no instance state is mutated after __init__.

Layer rule: no imports from api/ or registry/.
"""

from __future__ import annotations

from jose import jwt
from jose.exceptions import JWTClaimsError, JWTError

from auth.errors import DecodeFailure, TokenDecodeError
from auth.models import TokenPayload
from core.clock import Clock, SystemClock


class TokenCodec:
    def __init__(
        self,
        secret_key: str,
        *,
        algorithm: str = "HS256",
        clock: Clock | None = None,
        leeway_seconds: int = 0,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key is required")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._clock = clock or SystemClock()
        self.leeway_seconds = leeway_seconds

    def encode(self, payload: TokenPayload) -> str:
        """Sign payload. Raises ValueError only for a malformed payload (programmer error)."""
        return jwt.encode(payload.to_claims(), self._secret_key, algorithm=self._algorithm)

    def decode(self, token: str) -> TokenPayload:
        """Verify and decode a wire token.

        Raises TokenDecodeError with failure MALFORMED, BAD_SIGNATURE or EXPIRED.
        """
        if not isinstance(token, str) or not token:
            raise TokenDecodeError(DecodeFailure.MALFORMED, "empty token")

        # Structural parse first: a string that is not three base64url JSON
        # segments is malformed, not a signature failure.
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenDecodeError(DecodeFailure.MALFORMED, str(exc)) from exc

        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTClaimsError as exc:
            raise TokenDecodeError(DecodeFailure.MALFORMED, str(exc)) from exc
        except JWTError as exc:
            raise TokenDecodeError(DecodeFailure.BAD_SIGNATURE, str(exc)) from exc

        try:
            payload = TokenPayload.from_claims(claims)
        except ValueError as exc:
            raise TokenDecodeError(DecodeFailure.MALFORMED, str(exc)) from exc

        now = self._clock.now()
        if payload.issued_at > now + self.leeway_seconds:
            raise TokenDecodeError(DecodeFailure.MALFORMED, "token issued in the future")
        if self.is_expired(payload, now):
            raise TokenDecodeError(DecodeFailure.EXPIRED, "token expired", payload=payload)
        return payload

    def is_expired(self, payload: TokenPayload, now: int | None = None) -> bool:
        if now is None:
            now = self._clock.now()
        return now >= payload.expires_at + self.leeway_seconds

    def remaining_seconds(self, payload: TokenPayload, now: int | None = None) -> int:
        """Seconds until decode() starts reporting EXPIRED for this payload (never negative)."""
        if now is None:
            now = self._clock.now()
        return max(0, payload.expires_at + self.leeway_seconds - now)
