"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TokenGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, access_token_ttl_seconds ->
      ACCESS_TOKEN_TTL_SECONDS). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and the token lifetime rules.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HMAC token
       signing relies on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key in production would silently log
       every client out on each restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or registry/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokengate.config")

_DATA_DIR = Path(__file__).resolve().parent.parent

_HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Session policy
    # ------------------------------------------------------------------

    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 24 * 60 * 60
    refresh_token_ttl_seconds: int = 30 * 24 * 60 * 60
    rotate_refresh_tokens: bool = True
    clock_skew_seconds: int = 0
    # 0 = unlimited
    max_concurrent_sessions: int = 0

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_DATA_DIR / 'tokengate.db'}"
    # memory://, redis://host:6379/0, or any SQLAlchemy URL
    revocation_url: str = f"sqlite:///{_DATA_DIR / 'tokengate_revocations.db'}"
    backend_timeout_seconds: float = 2.0
    backend_retry_attempts: int = 2
    backend_retry_backoff_seconds: float = 0.05
    purge_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Passwords / rate limiting
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"
    password_reset_rate_limit: str = "5/hour"

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    password_reset_ttl_seconds: int = 10 * 60
    # Floor on request handling time so known and unknown e-mails look alike.
    password_reset_min_seconds: float = 0.1

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_settings(self) -> "Settings":
        """Reject token settings the session policy cannot honour."""
        if self.jwt_algorithm not in _HMAC_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {', '.join(_HMAC_ALGORITHMS)}.")
        if self.access_token_ttl_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be positive.")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be longer than ACCESS_TOKEN_TTL_SECONDS.")
        if self.clock_skew_seconds < 0:
            raise ValueError("CLOCK_SKEW_SECONDS cannot be negative.")
        if self.max_concurrent_sessions < 0:
            raise ValueError("MAX_CONCURRENT_SESSIONS cannot be negative.")
        if self.backend_retry_attempts < 1:
            raise ValueError("BACKEND_RETRY_ATTEMPTS must be at least 1.")
        if self.password_reset_ttl_seconds <= 0:
            raise ValueError("PASSWORD_RESET_TTL_SECONDS must be positive.")
        if self.password_reset_min_seconds < 0:
            raise ValueError("PASSWORD_RESET_MIN_SECONDS cannot be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
