"""
auth/models.py -- Domain dataclasses for accounts and tokens.

Pattern: Data class (pure data container). Stores, codec and services do the
work; these classes own the domain shape.

TokenPayload is the only class with behaviour: it converts to and from the
wire claim set and validates its own shape, so the codec can classify a
structurally broken token as malformed without knowing the claim names.

Wire claims:
    {"sub": account_id, "typ": "access"|"refresh", "jti": uuid,
     "epoch": int, "iat": unix_seconds, "exp": unix_seconds}

Layer rule: no imports from api/ or registry/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TokenType(str, Enum):
    access = "access"
    refresh = "refresh"


@dataclass
class Account:
    """A credential-store record, reduced to what the token engine needs.

    security_epoch changes whenever every outstanding token must die at once
    (password change, logout-all, deactivation). Tokens copy it at issuance
    and are only valid while the copy matches.
    """

    email: str
    password_digest: str
    id: str | None = None
    is_active: bool = True
    security_epoch: int = 1
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class TokenPayload:
    subject: str
    token_type: TokenType
    jti: str
    security_epoch: int
    issued_at: int
    expires_at: int

    def to_claims(self) -> dict:
        """Return the claim dict to sign. Raises ValueError on a malformed payload."""
        _check_shape(self.subject, self.jti, self.security_epoch, self.issued_at, self.expires_at)
        if not isinstance(self.token_type, TokenType):
            raise ValueError(f"unknown token type: {self.token_type!r}")
        return {
            "sub": self.subject,
            "typ": self.token_type.value,
            "jti": self.jti,
            "epoch": self.security_epoch,
            "iat": self.issued_at,
            "exp": self.expires_at,
        }

    @classmethod
    def from_claims(cls, claims: dict) -> TokenPayload:
        """Build a payload from decoded claims. Raises ValueError on missing or mistyped claims."""
        missing = [k for k in ("sub", "typ", "jti", "epoch", "iat", "exp") if k not in claims]
        if missing:
            raise ValueError(f"missing claims: {', '.join(missing)}")
        try:
            token_type = TokenType(claims["typ"])
        except ValueError as exc:
            raise ValueError(f"unknown token type: {claims['typ']!r}") from exc
        _check_shape(claims["sub"], claims["jti"], claims["epoch"], claims["iat"], claims["exp"])
        return cls(
            subject=claims["sub"],
            token_type=token_type,
            jti=claims["jti"],
            security_epoch=claims["epoch"],
            issued_at=claims["iat"],
            expires_at=claims["exp"],
        )


def _is_int(value) -> bool:
    # bool is an int subclass; a JSON true must not pass as a timestamp.
    return isinstance(value, int) and not isinstance(value, bool)


def _check_shape(subject, jti, epoch, issued_at, expires_at) -> None:
    if not isinstance(subject, str) or not subject:
        raise ValueError("sub must be a non-empty string")
    if not isinstance(jti, str) or not jti:
        raise ValueError("jti must be a non-empty string")
    if not _is_int(epoch):
        raise ValueError("epoch must be an integer")
    if not _is_int(issued_at) or not _is_int(expires_at):
        raise ValueError("iat and exp must be integer Unix timestamps")
    if expires_at <= issued_at:
        raise ValueError("exp must be after iat")


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int


@dataclass(frozen=True)
class VerifiedIdentity:
    """What a successful verify() hands back to the caller."""

    account_id: str
    security_epoch: int
    jti: str
    token_type: TokenType
    expires_at: int
