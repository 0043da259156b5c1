"""Unit tests for registry/ -- revocation registry backends.

Covers (memory and SQL backends share one parametrized suite):
- revoke() is first-writer-wins and idempotent
- is_revoked() stays true until the TTL lapses, then flips back exactly once
- non-positive TTL is a no-op
- concurrent revoke() of one jti from many threads has exactly one winner
- session index: eviction of the oldest beyond the limit, end/clear, lapsed sessions
- purge_expired() removes only lapsed entries

Redis backend: exercised against a MagicMock client (command shape, retry
budget, failure wrapping). build_registry() URL dispatch.
"""

import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from auth.errors import BackendUnavailableError, RegistryUnavailableError
from registry.factory import build_registry
from registry.memory import MemoryRevocationRegistry
from registry.redis_backend import RedisRevocationRegistry
from registry.sql import SQLRevocationRegistry

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def backend(request, clock, tmp_path):
    if request.param == "memory":
        reg = MemoryRevocationRegistry(clock=clock)
    else:
        reg = SQLRevocationRegistry(f"sqlite:///{tmp_path / 'revocations.db'}", clock=clock, retry_backoff_seconds=0)
    yield reg
    reg.close()


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


def test_first_revoke_wins(backend):
    assert backend.revoke("jti-1", 60) is True
    assert backend.revoke("jti-1", 60) is False
    assert backend.is_revoked("jti-1")


def test_unknown_jti_not_revoked(backend):
    assert not backend.is_revoked("never-seen")


def test_non_positive_ttl_is_noop(backend):
    assert backend.revoke("jti-1", 0) is False
    assert backend.revoke("jti-1", -5) is False
    assert not backend.is_revoked("jti-1")


def test_revocation_holds_until_ttl_lapses(backend, clock):
    backend.revoke("jti-1", 60)
    for _ in range(59):
        clock.advance(1)
        assert backend.is_revoked("jti-1")
    clock.advance(1)
    assert not backend.is_revoked("jti-1")


def test_lapsed_entry_can_be_revoked_again(backend, clock):
    backend.revoke("jti-1", 10)
    clock.advance(10)
    assert backend.revoke("jti-1", 10) is True
    assert backend.is_revoked("jti-1")


def test_concurrent_revoke_has_one_winner(backend):
    results: list[bool] = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        won = backend.revoke("shared-jti", 300)
        with lock:
            results.append(won)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert results.count(False) == 7
    assert backend.is_revoked("shared-jti")


def test_purge_removes_only_lapsed(backend, clock):
    backend.revoke("short", 10)
    backend.revoke("long", 100)
    clock.advance(50)
    assert backend.purge_expired() == 1
    assert backend.is_revoked("long")
    assert backend.purge_expired() == 0


def test_ping(backend):
    assert backend.ping() is True


# ---------------------------------------------------------------------------
# Session index
# ---------------------------------------------------------------------------


def test_register_within_limit_evicts_nothing(backend, clock):
    exp = clock.now() + 1000
    assert backend.register_session("acct", "s1", exp, 2) == []
    assert backend.register_session("acct", "s2", exp, 2) == []


def test_register_beyond_limit_evicts_oldest(backend, clock):
    exp = clock.now() + 1000
    backend.register_session("acct", "s1", exp, 2)
    backend.register_session("acct", "s2", exp + 1, 2)
    assert backend.register_session("acct", "s3", exp + 2, 2) == [("s1", exp)]
    assert backend.register_session("acct", "s4", exp + 3, 2) == [("s2", exp + 1)]


def test_zero_limit_is_unlimited(backend, clock):
    exp = clock.now() + 1000
    for i in range(10):
        assert backend.register_session("acct", f"s{i}", exp, 0) == []


def test_sessions_are_per_subject(backend, clock):
    exp = clock.now() + 1000
    backend.register_session("a", "a1", exp, 1)
    assert backend.register_session("b", "b1", exp, 1) == []


def test_ended_session_frees_a_slot(backend, clock):
    exp = clock.now() + 1000
    backend.register_session("acct", "s1", exp, 1)
    backend.end_session("acct", "s1")
    assert backend.register_session("acct", "s2", exp, 1) == []


def test_cleared_sessions_free_all_slots(backend, clock):
    exp = clock.now() + 1000
    backend.register_session("acct", "s1", exp, 2)
    backend.register_session("acct", "s2", exp, 2)
    backend.clear_sessions("acct")
    assert backend.register_session("acct", "s3", exp, 2) == []
    assert backend.register_session("acct", "s4", exp, 2) == []


def test_lapsed_sessions_do_not_count(backend, clock):
    backend.register_session("acct", "s1", clock.now() + 10, 1)
    clock.advance(10)
    assert backend.register_session("acct", "s2", clock.now() + 10, 1) == []


# ---------------------------------------------------------------------------
# Redis backend (MagicMock client)
# ---------------------------------------------------------------------------


@pytest.fixture
def redis_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def redis_registry(redis_client, clock) -> RedisRevocationRegistry:
    return RedisRevocationRegistry(client=redis_client, clock=clock, retry_attempts=3, retry_backoff_seconds=0)


class TestRedisRegistry:
    def test_revoke_uses_set_nx_with_ttl(self, redis_registry, redis_client, clock):
        redis_client.set.return_value = True
        assert redis_registry.revoke("jti-1", 60) is True
        redis_client.set.assert_called_once_with("tokengate:revoked:jti-1", clock.now(), nx=True, ex=60)

    def test_revoke_already_present_returns_false(self, redis_registry, redis_client):
        redis_client.set.return_value = None
        assert redis_registry.revoke("jti-1", 60) is False

    def test_non_positive_ttl_skips_redis(self, redis_registry, redis_client):
        assert redis_registry.revoke("jti-1", 0) is False
        redis_client.set.assert_not_called()

    def test_is_revoked_uses_exists(self, redis_registry, redis_client):
        redis_client.exists.return_value = 1
        assert redis_registry.is_revoked("jti-1") is True
        redis_client.exists.assert_called_once_with("tokengate:revoked:jti-1")
        redis_client.exists.return_value = 0
        assert redis_registry.is_revoked("jti-2") is False

    def test_transient_errors_retried_within_budget(self, redis_registry, redis_client):
        redis_client.exists.side_effect = [RedisConnectionError("down"), 1]
        assert redis_registry.is_revoked("jti-1") is True
        assert redis_client.exists.call_count == 2

    def test_exhausted_budget_fails_closed(self, redis_registry, redis_client):
        redis_client.exists.side_effect = RedisConnectionError("down")
        with pytest.raises(RegistryUnavailableError) as exc_info:
            redis_registry.is_revoked("jti-1")
        assert isinstance(exc_info.value, BackendUnavailableError)
        assert redis_client.exists.call_count == 3

    def test_non_transient_error_not_retried(self, redis_registry, redis_client):
        redis_client.set.side_effect = ResponseError("WRONGTYPE")
        with pytest.raises(RegistryUnavailableError):
            redis_registry.revoke("jti-1", 60)
        assert redis_client.set.call_count == 1

    def test_register_session_runs_one_script(self, redis_registry, redis_client, clock):
        script = redis_client.register_script.return_value
        script.return_value = ["old", str(clock.now() + 100)]

        evicted = redis_registry.register_session("acct", "new", clock.now() + 300, 2)

        assert evicted == [("old", clock.now() + 100)]
        script.assert_called_once_with(
            keys=["tokengate:sessions:acct", "tokengate:sessions:acct:expiry", "tokengate:sessions:acct:seq"],
            args=["new", clock.now() + 300, clock.now(), 2, 300],
        )
        redis_client.zrange.assert_not_called()
        redis_client.zrem.assert_not_called()

    def test_register_session_script_orders_by_sequence(self, redis_registry, redis_client):
        redis_client.register_script.assert_called_once()
        source = redis_client.register_script.call_args.args[0]
        assert "redis.call('ZADD', order_key, redis.call('INCR', seq_key), jti)" in source

    def test_register_session_within_limit(self, redis_registry, redis_client, clock):
        redis_client.register_script.return_value.return_value = []
        assert redis_registry.register_session("acct", "new", clock.now() + 300, 2) == []

    def test_register_session_transient_error_retried(self, redis_registry, redis_client, clock):
        script = redis_client.register_script.return_value
        script.side_effect = [RedisTimeoutError("slow"), []]
        assert redis_registry.register_session("acct", "new", clock.now() + 300, 2) == []
        assert script.call_count == 2

    def test_end_session_drops_order_and_expiry(self, redis_registry, redis_client):
        redis_registry.end_session("acct", "jti-1")
        pipe = redis_client.pipeline.return_value
        pipe.zrem.assert_called_once_with("tokengate:sessions:acct", "jti-1")
        pipe.hdel.assert_called_once_with("tokengate:sessions:acct:expiry", "jti-1")
        pipe.execute.assert_called_once()

    def test_clear_sessions_deletes_keys(self, redis_registry, redis_client):
        redis_registry.clear_sessions("acct")
        redis_client.delete.assert_called_once_with(
            "tokengate:sessions:acct", "tokengate:sessions:acct:expiry", "tokengate:sessions:acct:seq"
        )

    def test_purge_is_noop(self, redis_registry, redis_client):
        redis_client.reset_mock()
        assert redis_registry.purge_expired() == 0
        assert redis_client.method_calls == []

    def test_ping_false_when_unreachable(self, redis_registry, redis_client):
        redis_client.ping.side_effect = RedisConnectionError("down")
        assert redis_registry.ping() is False


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def test_build_registry_memory():
    assert isinstance(build_registry("memory://"), MemoryRevocationRegistry)


def test_build_registry_sql(tmp_path):
    reg = build_registry(f"sqlite:///{tmp_path / 'r.db'}")
    assert isinstance(reg, SQLRevocationRegistry)
    reg.close()


def test_build_registry_redis():
    # Redis.from_url does not connect until the first command.
    assert isinstance(build_registry("redis://localhost:6379/0"), RedisRevocationRegistry)
