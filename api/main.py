"""
api/main.py -- FastAPI application entry point for TokenGate.

Exposes the token engine over HTTP: register, login, refresh, logout,
logout-everywhere, password change and account deletion.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (credential store, revocation registry, services,
purge task) and shutdown (cancel purge task, close backends) symmetrically.

Error mapping: every handler returns the same ErrorResponse envelope.
  AuthError                 -> 401 + WWW-Authenticate: Bearer
  AccountError              -> 409 / 401 / 400 by kind
  BackendUnavailableError   -> 503 (fail closed, never a 401 or a 200)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.accounts import AccountService
from auth.codec import TokenCodec
from auth.errors import AccountError, AccountErrorKind, AuthError, BackendUnavailableError
from auth.policy import SessionPolicy
from auth.service import TokenService
from auth.store import AccountStore
from core.clock import Clock
from core.config import Settings, get_settings
from registry.base import RevocationRegistry
from registry.factory import build_registry

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tokengate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def attach_services(
    app: FastAPI,
    settings: Settings,
    store: AccountStore,
    registry: RevocationRegistry,
    clock: Clock | None = None,
) -> None:
    """Build codec, policy and services on top of the given backends and hang them on app.state."""
    policy = SessionPolicy.from_settings(settings)
    codec = TokenCodec(
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
        clock=clock,
        leeway_seconds=policy.clock_skew_seconds,
    )
    token_service = TokenService(codec, registry, store, policy, clock)
    app.state.settings = settings
    app.state.account_store = store
    app.state.registry = registry
    app.state.token_service = token_service
    app.state.account_service = AccountService(
        store,
        token_service,
        bcrypt_rounds=settings.bcrypt_rounds,
        clock=clock,
        reset_ttl_seconds=settings.password_reset_ttl_seconds,
        reset_min_seconds=settings.password_reset_min_seconds,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int) -> None:
    """Drop lapsed revocation entries every interval_seconds.

    Runs as a background asyncio task started in lifespan startup. The purge
    itself is a blocking database call, so it runs in a worker thread.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(app.state.registry.purge_expired)
        except BackendUnavailableError:
            logger.warning("Revocation purge skipped -- registry unavailable")
            continue
        if removed:
            logger.info("Purged %d expired revocation entries", removed)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Credential store -- the token service reads it on every verify().
      2. Revocation registry -- same, and the purge task references it.
      3. Services -- depend on both backends.
      4. Purge task last.
    """
    settings = get_settings()
    logger.info("TokenGate API starting up")
    store = AccountStore(
        settings.database_url,
        timeout_seconds=settings.backend_timeout_seconds,
        retry_attempts=settings.backend_retry_attempts,
        retry_backoff_seconds=settings.backend_retry_backoff_seconds,
    )
    registry = build_registry(
        settings.revocation_url,
        timeout_seconds=settings.backend_timeout_seconds,
        retry_attempts=settings.backend_retry_attempts,
        retry_backoff_seconds=settings.backend_retry_backoff_seconds,
    )
    attach_services(app, settings, store, registry)
    logger.info(
        "Token engine initialized (registry=%s, rotation=%s, max_sessions=%d)",
        type(registry).__name__,
        settings.rotate_refresh_tokens,
        settings.max_concurrent_sessions,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.purge_interval_seconds))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    registry.close()
    store.close()
    logger.info("TokenGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TokenGate API",
    description="Access/refresh token issuance, rotation and revocation.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time before and after call_next gives the latency.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# `detail` from domain errors is for logs only and never rendered.
# ---------------------------------------------------------------------------

_ACCOUNT_ERROR_STATUS = {
    AccountErrorKind.EMAIL_EXISTS: 409,
    AccountErrorKind.INVALID_CREDENTIALS: 401,
    AccountErrorKind.INVALID_CURRENT_PASSWORD: 400,
    AccountErrorKind.PASSWORD_REUSE: 400,
    AccountErrorKind.INVALID_RESET_TOKEN: 400,
}


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Return 401 with the stable error kind. Clients branch on error.code."""
    response = _error_response(401, exc.kind.value, exc.message)
    response.headers["WWW-Authenticate"] = "Bearer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(AccountError)
async def account_error_handler(request: Request, exc: AccountError) -> JSONResponse:
    response = _error_response(_ACCOUNT_ERROR_STATUS[exc.kind], exc.kind.value, exc.message)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(BackendUnavailableError)
async def backend_unavailable_handler(request: Request, exc: BackendUnavailableError) -> JSONResponse:
    """Return 503 when the registry or store cannot answer. Never reported as a token problem."""
    logger.error("Backend unavailable on %s %s: %s", request.method, request.url.path, exc.backend)
    response = _error_response(503, "SERVICE_UNAVAILABLE", "Authentication backend unavailable. Try again later.")
    response.headers["Retry-After"] = "1"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus a reachability check of both backends."""
    components = {
        "database": "ok" if request.app.state.account_store.ping() else "unavailable",
        "revocation_registry": "ok" if request.app.state.registry.ping() else "unavailable",
    }
    status = "ok" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
