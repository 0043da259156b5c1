"""
registry/redis_backend.py -- Redis-backed revocation registry.

The backend for multi-instance deployments: every API process sees the same
revocations.

  revoke       SET <prefix>revoked:<jti> <now> NX EX <ttl>
               NX makes the first writer win; Redis expires the key itself, so
               purge_expired() has nothing to do.
  is_revoked   EXISTS <prefix>revoked:<jti>
  sessions     per subject: a sorted set of refresh jtis scored by an INCR
               sequence (issue order, no ties within a second), a hash of
               jti -> expires_at, and the sequence counter. Pruning, insert
               and eviction of the oldest run in one Lua script, so the
               session cap is applied atomically.

Timeouts: socket_timeout / socket_connect_timeout bound every command.
ConnectionError and TimeoutError are retried within the budget; anything else
from redis-py is raised as RegistryUnavailableError.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from auth.errors import RegistryUnavailableError
from core.clock import Clock, SystemClock
from core.retry import call_with_retry
from registry.base import RevocationRegistry

logger = logging.getLogger("tokengate.registry")

T = TypeVar("T")


class RedisRevocationRegistry(RevocationRegistry):
    # KEYS: order zset (score = issue sequence), expiry hash (jti -> expires_at), sequence counter
    # ARGV: jti, expires_at, now, limit (0 = unlimited), key ttl
    # Returns the evicted sessions flattened as {jti, expires_at, ...}, oldest first.
    _REGISTER_SESSION_SCRIPT = """
local order_key, expiry_key, seq_key = KEYS[1], KEYS[2], KEYS[3]
local jti, expires_at, now = ARGV[1], ARGV[2], tonumber(ARGV[3])
local limit, ttl = tonumber(ARGV[4]), tonumber(ARGV[5])

local expiries = redis.call('HGETALL', expiry_key)
for i = 1, #expiries, 2 do
  if tonumber(expiries[i + 1]) <= now then
    redis.call('ZREM', order_key, expiries[i])
    redis.call('HDEL', expiry_key, expiries[i])
  end
end

redis.call('ZADD', order_key, redis.call('INCR', seq_key), jti)
redis.call('HSET', expiry_key, jti, expires_at)

local evicted = {}
if limit > 0 then
  local excess = redis.call('ZCARD', order_key) - limit
  if excess > 0 then
    for _, member in ipairs(redis.call('ZRANGE', order_key, 0, excess - 1)) do
      table.insert(evicted, member)
      table.insert(evicted, redis.call('HGET', expiry_key, member))
      redis.call('ZREM', order_key, member)
      redis.call('HDEL', expiry_key, member)
    end
  end
end

for _, key in ipairs(KEYS) do
  if redis.call('TTL', key) < ttl then
    redis.call('EXPIRE', key, ttl)
  end
end
return evicted
"""

    def __init__(
        self,
        redis_url: str = "",
        *,
        client: Redis | None = None,
        clock: Clock | None = None,
        key_prefix: str = "tokengate:",
        timeout_seconds: float = 2.0,
        retry_attempts: int = 2,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=timeout_seconds,
                socket_connect_timeout=timeout_seconds,
            )
        self.client = client
        self._clock = clock or SystemClock()
        self._prefix = key_prefix
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds
        self._register_session_script = self.client.register_script(self._REGISTER_SESSION_SCRIPT)

    def _revoked_key(self, jti: str) -> str:
        return f"{self._prefix}revoked:{jti}"

    def _session_keys(self, subject: str) -> list[str]:
        base = f"{self._prefix}sessions:{subject}"
        return [base, f"{base}:expiry", f"{base}:seq"]

    def _run(self, label: str, fn: Callable[[], T]) -> T:
        try:
            return call_with_retry(
                fn,
                attempts=self._retry_attempts,
                backoff_seconds=self._retry_backoff,
                transient=(RedisConnectionError, RedisTimeoutError),
                label=f"revocation registry {label}",
            )
        except RedisError as exc:
            logger.error("Revocation registry %s failed", label, exc_info=True)
            raise RegistryUnavailableError(f"revocation registry {label} failed") from exc

    def revoke(self, jti: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            return False
        now = self._clock.now()
        key = self._revoked_key(jti)
        return self._run("revoke", lambda: bool(self.client.set(key, now, nx=True, ex=ttl_seconds)))

    def is_revoked(self, jti: str) -> bool:
        key = self._revoked_key(jti)
        return self._run("is_revoked", lambda: self.client.exists(key) > 0)

    def register_session(self, subject: str, jti: str, expires_at: int, limit: int) -> list[tuple[str, int]]:
        now = self._clock.now()
        keys = self._session_keys(subject)
        ttl = max(1, expires_at - now)

        def _register() -> list[tuple[str, int]]:
            flat = self._register_session_script(keys=keys, args=[jti, expires_at, now, max(0, limit), ttl])
            return [(flat[i], int(flat[i + 1])) for i in range(0, len(flat), 2)]

        return self._run("register_session", _register)

    def end_session(self, subject: str, jti: str) -> None:
        order_key, expiry_key, _ = self._session_keys(subject)

        def _end() -> None:
            pipe = self.client.pipeline()
            pipe.zrem(order_key, jti)
            pipe.hdel(expiry_key, jti)
            pipe.execute()

        self._run("end_session", _end)

    def clear_sessions(self, subject: str) -> None:
        keys = self._session_keys(subject)
        self._run("clear_sessions", lambda: self.client.delete(*keys))

    def purge_expired(self) -> int:
        # Redis expires revocation keys on its own.
        return 0

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except RedisError:
            logger.warning("Revocation registry ping failed", exc_info=True)
            return False

    def close(self) -> None:
        self.client.close()
