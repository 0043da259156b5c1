"""Unit tests for core/config.py and auth/policy.py.

Covers:
- SECRET_KEY policy: dev mode generates a key, production refuses to start,
  short keys rejected in both modes
- token settings validation (algorithm, TTL ordering, non-negative knobs)
- SessionPolicy.from_settings() and its own validation
"""

import pytest
from pydantic import ValidationError

from auth.models import TokenType
from auth.policy import SessionPolicy
from core.config import Settings

KEY = "k" * 32


def _settings(**overrides) -> Settings:
    fields = dict(debug=True, secret_key=KEY)
    fields.update(overrides)
    return Settings(_env_file=None, **fields)


class TestSecretKey:
    def test_dev_mode_generates_key(self):
        settings = _settings(secret_key="")
        assert len(settings.secret_key) >= 32

    def test_production_requires_key(self):
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            _settings(debug=False, secret_key="")

    @pytest.mark.parametrize("debug", [True, False])
    def test_short_key_rejected(self, debug):
        with pytest.raises(ValidationError, match="at least 32 characters"):
            _settings(debug=debug, secret_key="too-short")


class TestTokenSettings:
    def test_defaults(self):
        settings = _settings()
        assert settings.access_token_ttl_seconds == 24 * 60 * 60
        assert settings.refresh_token_ttl_seconds > settings.access_token_ttl_seconds
        assert settings.rotate_refresh_tokens is True
        assert settings.jwt_algorithm == "HS256"

    def test_non_hmac_algorithm_rejected(self):
        with pytest.raises(ValidationError, match="JWT_ALGORITHM"):
            _settings(jwt_algorithm="RS256")

    def test_refresh_must_outlive_access(self):
        with pytest.raises(ValidationError, match="REFRESH_TOKEN_TTL_SECONDS"):
            _settings(access_token_ttl_seconds=3600, refresh_token_ttl_seconds=3600)

    @pytest.mark.parametrize(
        "field",
        ["clock_skew_seconds", "max_concurrent_sessions", "password_reset_min_seconds"],
    )
    def test_negative_rejected(self, field):
        with pytest.raises(ValidationError):
            _settings(**{field: -1})

    def test_reset_ttl_must_be_positive(self):
        with pytest.raises(ValidationError, match="PASSWORD_RESET_TTL_SECONDS"):
            _settings(password_reset_ttl_seconds=0)

    def test_retry_budget_at_least_one(self):
        with pytest.raises(ValidationError, match="BACKEND_RETRY_ATTEMPTS"):
            _settings(backend_retry_attempts=0)

    def test_env_var_mapping(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "600")
        monkeypatch.setenv("REVOCATION_URL", "memory://")
        settings = _settings()
        assert settings.access_token_ttl_seconds == 600
        assert settings.revocation_url == "memory://"


class TestSessionPolicy:
    def test_from_settings(self):
        policy = SessionPolicy.from_settings(
            _settings(access_token_ttl_seconds=60, refresh_token_ttl_seconds=600, max_concurrent_sessions=3)
        )
        assert policy.ttl_for(TokenType.access) == 60
        assert policy.ttl_for(TokenType.refresh) == 600
        assert policy.limits_sessions is True

    def test_unlimited_by_default(self):
        assert SessionPolicy().limits_sessions is False

    @pytest.mark.parametrize(
        "fields",
        [
            {"access_token_ttl": 0},
            {"access_token_ttl": 100, "refresh_token_ttl": 100},
            {"clock_skew_seconds": -1},
            {"max_concurrent_sessions": -1},
        ],
    )
    def test_invalid_policy(self, fields):
        with pytest.raises(ValueError):
            SessionPolicy(**fields)
