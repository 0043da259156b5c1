"""
auth/policy.py -- Session policy consumed by TokenService.

Pure configuration. No state machine, no I/O. Built once at startup from
Settings and passed into the service; tests construct it directly with short
lifetimes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from auth.models import TokenType

if TYPE_CHECKING:
    from core.config import Settings


@dataclass(frozen=True)
class SessionPolicy:
    access_token_ttl: int = 24 * 60 * 60
    refresh_token_ttl: int = 30 * 24 * 60 * 60
    rotate_refresh_tokens: bool = True
    clock_skew_seconds: int = 0
    max_concurrent_sessions: int = 0  # 0 = unlimited

    def __post_init__(self) -> None:
        if self.access_token_ttl <= 0:
            raise ValueError("access_token_ttl must be positive")
        if self.refresh_token_ttl <= self.access_token_ttl:
            raise ValueError("refresh_token_ttl must be longer than access_token_ttl")
        if self.clock_skew_seconds < 0:
            raise ValueError("clock_skew_seconds cannot be negative")
        if self.max_concurrent_sessions < 0:
            raise ValueError("max_concurrent_sessions cannot be negative")

    def ttl_for(self, token_type: TokenType) -> int:
        if token_type is TokenType.refresh:
            return self.refresh_token_ttl
        return self.access_token_ttl

    @property
    def limits_sessions(self) -> bool:
        return self.max_concurrent_sessions > 0

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionPolicy:
        return cls(
            access_token_ttl=settings.access_token_ttl_seconds,
            refresh_token_ttl=settings.refresh_token_ttl_seconds,
            rotate_refresh_tokens=settings.rotate_refresh_tokens,
            clock_skew_seconds=settings.clock_skew_seconds,
            max_concurrent_sessions=settings.max_concurrent_sessions,
        )
