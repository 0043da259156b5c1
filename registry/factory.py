"""
registry/factory.py -- Pick a revocation registry backend from a URL.

    memory://                    MemoryRevocationRegistry (single process)
    redis://... / rediss://...   RedisRevocationRegistry
    anything else                SQLRevocationRegistry (SQLAlchemy URL)
"""

from __future__ import annotations

from core.clock import Clock
from registry.base import RevocationRegistry
from registry.memory import MemoryRevocationRegistry
from registry.redis_backend import RedisRevocationRegistry
from registry.sql import SQLRevocationRegistry


def build_registry(
    url: str,
    *,
    clock: Clock | None = None,
    timeout_seconds: float = 2.0,
    retry_attempts: int = 2,
    retry_backoff_seconds: float = 0.05,
) -> RevocationRegistry:
    if url.startswith("memory://"):
        return MemoryRevocationRegistry(clock=clock)
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisRevocationRegistry(
            url,
            clock=clock,
            timeout_seconds=timeout_seconds,
            retry_attempts=retry_attempts,
            retry_backoff_seconds=retry_backoff_seconds,
        )
    return SQLRevocationRegistry(
        url,
        clock=clock,
        timeout_seconds=timeout_seconds,
        retry_attempts=retry_attempts,
        retry_backoff_seconds=retry_backoff_seconds,
    )
