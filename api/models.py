"""
API request and response models for TokenGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, TokenPair
from auth.passwords import MAX_PASSWORD_BYTES

_PASSWORD_MIN = 8


def _check_password_bytes(value: str) -> str:
    """Reject passwords bcrypt cannot hash whole. The limit counts UTF-8 bytes, not characters."""
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Only the e-mail is normalised. Passwords are taken byte for byte, the
    same way login and password change take them.
    """

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=_PASSWORD_MIN)

    @field_validator("email")
    @classmethod
    def email_shape(cls, value: str) -> str:
        """Minimal shape check: one @ with something on both sides."""
        value = value.strip()
        local, sep, domain = value.partition("@")
        if not sep or not local or "." not in domain or "@" in domain:
            raise ValueError("must be a valid email address")
        return value.lower()

    @field_validator("password")
    @classmethod
    def password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)

    @field_validator("password")
    @classmethod
    def password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    refresh_token is optional at the schema level so a missing token surfaces
    as MISSING_TOKEN (401) rather than a 422 validation error.
    """

    refresh_token: Optional[str] = None


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout -- revoke the refresh token too."""

    refresh_token: Optional[str] = None


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=_PASSWORD_MIN)

    @field_validator("current_password", "new_password")
    @classmethod
    def password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


class PasswordResetRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset."""

    email: str = Field(min_length=1, max_length=255)


class PasswordResetConfirmRequest(BaseModel):
    """Request body for POST /api/v1/auth/password-reset/confirm."""

    token: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=_PASSWORD_MIN)

    @field_validator("new_password")
    @classmethod
    def password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    """Token pair returned by register, login, refresh and password change."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: int
    refresh_expires_at: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    email: str
    is_active: bool
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "MeResponse":
        return cls(
            account_id=account.id,
            email=account.email,
            is_active=account.is_active,
            created_at=account.created_at,
            last_login=account.last_login,
        )


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Logged out on all devices."
    security_epoch: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class PasswordResetRequestedResponse(BaseModel):
    """Response for POST /api/v1/auth/password-reset.

    The message is the same whether or not the e-mail is registered.
    reset_token is only filled in when DEBUG is on.
    """

    model_config = ConfigDict(frozen=True)

    message: str = "If that e-mail is registered, a password reset token has been issued."
    reset_token: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
