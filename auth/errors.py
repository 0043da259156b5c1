"""
auth/errors.py -- Closed error taxonomy for the token engine.

Three families, kept apart on purpose:

  AuthError            4xx-equivalent. The presented token is not usable.
                       One stable kind per cause so clients can decide
                       deterministically: refresh on TOKEN_EXPIRED, log in
                       again on TOKEN_REVOKED / USER_NOT_FOUND, re-authenticate
                       on MISSING_TOKEN / INVALID_TOKEN.

  AccountError         4xx-equivalent. An account flow (register, login,
                       password change) was refused.

  BackendUnavailableError
                       5xx-equivalent. The revocation registry or credential
                       store could not answer within the timeout/retry budget.
                       Never converted into an AuthError kind -- an
                       unreachable registry must not read as "not revoked".

TokenDecodeError is internal to the codec/service boundary; the service maps
it to AuthError before anything leaves the auth package.

`detail` is for logs only. The HTTP layer renders `message`, never `detail`.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from auth.models import TokenType

if TYPE_CHECKING:
    from auth.models import TokenPayload


class AuthErrorKind(str, Enum):
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    MISSING_TOKEN = "MISSING_TOKEN"


_MESSAGES = {
    AuthErrorKind.INVALID_TOKEN: "Invalid authentication token.",
    AuthErrorKind.TOKEN_EXPIRED: "Your session has expired. Refresh your token.",
    AuthErrorKind.TOKEN_REVOKED: "This token has been revoked. Log in again.",
    AuthErrorKind.USER_NOT_FOUND: "Account not found.",
    AuthErrorKind.MISSING_TOKEN: "Authentication token required.",
}

# Same kind, different text: an expired refresh token means "log in again",
# not "refresh".
_REFRESH_MESSAGES = {
    AuthErrorKind.INVALID_TOKEN: "Invalid refresh token.",
    AuthErrorKind.TOKEN_EXPIRED: "Refresh token expired. Log in again.",
    AuthErrorKind.MISSING_TOKEN: "Refresh token required.",
}


class AuthError(Exception):
    """A presented token was rejected."""

    def __init__(
        self,
        kind: AuthErrorKind,
        *,
        token_type: TokenType = TokenType.access,
        detail: str | None = None,
    ) -> None:
        self.kind = kind
        self.token_type = token_type
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def message(self) -> str:
        if self.token_type is TokenType.refresh and self.kind in _REFRESH_MESSAGES:
            return _REFRESH_MESSAGES[self.kind]
        return _MESSAGES[self.kind]


class DecodeFailure(str, Enum):
    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"


class TokenDecodeError(Exception):
    """Raised by TokenCodec.decode().

    For EXPIRED the signature was valid, so `payload` is populated and may be
    trusted for logging. For the other failures it is None.
    """

    def __init__(self, failure: DecodeFailure, detail: str = "", payload: TokenPayload | None = None) -> None:
        self.failure = failure
        self.detail = detail
        self.payload = payload
        super().__init__(f"{failure.value}: {detail}" if detail else failure.value)


class AccountErrorKind(str, Enum):
    EMAIL_EXISTS = "EMAIL_EXISTS"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_CURRENT_PASSWORD = "INVALID_CURRENT_PASSWORD"
    PASSWORD_REUSE = "PASSWORD_REUSE"
    INVALID_RESET_TOKEN = "INVALID_RESET_TOKEN"


_ACCOUNT_MESSAGES = {
    AccountErrorKind.EMAIL_EXISTS: "An account with this email already exists.",
    AccountErrorKind.INVALID_CREDENTIALS: "Invalid email or password.",
    AccountErrorKind.INVALID_CURRENT_PASSWORD: "The current password is incorrect.",
    AccountErrorKind.PASSWORD_REUSE: "The new password must differ from the current one.",
    AccountErrorKind.INVALID_RESET_TOKEN: "The password reset token is invalid or has expired.",
}


class AccountError(Exception):
    def __init__(self, kind: AccountErrorKind) -> None:
        self.kind = kind
        super().__init__(kind.value)

    @property
    def message(self) -> str:
        return _ACCOUNT_MESSAGES[self.kind]


class BackendUnavailableError(Exception):
    """A shared backend did not answer. Callers must treat this as a server error."""

    backend = "backend"


class RegistryUnavailableError(BackendUnavailableError):
    backend = "revocation_registry"


class StoreUnavailableError(BackendUnavailableError):
    backend = "credential_store"
