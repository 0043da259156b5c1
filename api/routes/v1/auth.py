"""
api/routes/v1/auth.py -- Token lifecycle REST endpoints.

Routes:
  POST   /api/v1/auth/register     -- create account; 201 + token pair
  POST   /api/v1/auth/login        -- password login; token pair
  POST   /api/v1/auth/refresh      -- rotate a refresh token into a new pair
  POST   /api/v1/auth/logout       -- revoke the bearer token (+ optional refresh token)
  POST   /api/v1/auth/password-reset          -- issue a one-time reset token; 202
  POST   /api/v1/auth/password-reset/confirm  -- spend it to set a new password
  POST   /api/v1/auth/logout-all   -- invalidate every token for the account (requires auth)
  GET    /api/v1/auth/me           -- current account info (requires auth)
  POST   /api/v1/auth/password     -- change password; new token pair (requires auth)
  DELETE /api/v1/auth/account      -- delete the account; 204 (requires auth)

Security:
  [H2] POST /login, POST /refresh and both password-reset routes are rate-limited per IP.
  [C1] AccountService.login() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.

Handlers are plain `def` so FastAPI runs them in its threadpool; the
services below make blocking database and Redis calls.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, password_reset_limit, refresh_limit
from api.models import (
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirmRequest,
    PasswordResetRequest,
    PasswordResetRequestedResponse,
    RefreshRequest,
    RegisterRequest,
    TokenPairResponse,
)
from auth.accounts import AccountService
from auth.dependencies import get_bearer_token, get_current_identity
from auth.errors import AuthError, AuthErrorKind
from auth.models import TokenPair, TokenType, VerifiedIdentity
from auth.service import TokenService

# Auth policy:
# - POST   /api/v1/auth/register:    public
# - POST   /api/v1/auth/login:       public -- login endpoint must be unauthenticated
# - POST   /api/v1/auth/refresh:     public -- the refresh token is the credential
# - POST   /api/v1/auth/logout:      bearer token required, but not a *valid* one
# - POST   /api/v1/auth/password-reset[/confirm]: public -- the reset token is the credential
# - POST   /api/v1/auth/logout-all:  requires auth (get_current_identity)
# - GET    /api/v1/auth/me:          requires auth (get_current_identity)
# - POST   /api/v1/auth/password:    requires auth (get_current_identity)
# - DELETE /api/v1/auth/account:     requires auth (get_current_identity)
router = APIRouter()


def _pair_response(pair: TokenPair, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=TokenPairResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenPairResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and return its first token pair."""
    accounts: AccountService = request.app.state.account_service
    _, pair = accounts.register(body.email, body.password)
    return _pair_response(pair, status_code=201)


@limiter.limit(login_limit)  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with e-mail and password.

    Wrong e-mail, wrong password and inactive account all return the same
    INVALID_CREDENTIALS error to avoid leaking which e-mails exist.
    """
    accounts: AccountService = request.app.state.account_service
    _, pair = accounts.login(body.email, body.password)
    return _pair_response(pair)


@limiter.limit(refresh_limit)  # [H2]
@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented refresh token is spent."""
    tokens: TokenService = request.app.state.token_service
    if not body.refresh_token:
        raise AuthError(AuthErrorKind.MISSING_TOKEN, token_type=TokenType.refresh)
    return _pair_response(tokens.refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest | None = None) -> MessageResponse:
    """Revoke the bearer token, and the body refresh token if one is sent.

    Idempotent: logging out an already revoked or already expired token
    succeeds. Only a missing or undecodable token is an error.
    """
    tokens: TokenService = request.app.state.token_service
    token = get_bearer_token(request)
    if token is None:
        raise AuthError(AuthErrorKind.MISSING_TOKEN)
    tokens.revoke(token)
    if body is not None and body.refresh_token:
        tokens.revoke(body.refresh_token)
    return MessageResponse(message="Logged out.")


@limiter.limit(password_reset_limit)  # [H2]
@router.post("/auth/password-reset", response_model=PasswordResetRequestedResponse, status_code=202)
def request_password_reset(request: Request, body: PasswordResetRequest) -> JSONResponse:
    """Start a password reset. The answer is identical for known and unknown e-mails.

    Token delivery (e-mail) is outside this service. With DEBUG on the raw
    token is echoed back so the flow can be driven locally.
    """
    accounts: AccountService = request.app.state.account_service
    token = accounts.request_password_reset(body.email)
    content = PasswordResetRequestedResponse(reset_token=token if request.app.state.settings.debug else None)
    resp = JSONResponse(status_code=202, content=content.model_dump(exclude_none=True))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@limiter.limit(password_reset_limit)  # [H2]
@router.post("/auth/password-reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirmRequest) -> MessageResponse:
    """Set a new password with a reset token. Every outstanding token for the account stops working."""
    accounts: AccountService = request.app.state.account_service
    accounts.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password reset. Log in with the new password.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, identity: VerifiedIdentity = Depends(get_current_identity)) -> LogoutAllResponse:
    """Invalidate every outstanding token for the caller's account, this one included."""
    accounts: AccountService = request.app.state.account_service
    epoch = accounts.logout_all(identity.account_id)
    return LogoutAllResponse(security_epoch=epoch)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, identity: VerifiedIdentity = Depends(get_current_identity)) -> MeResponse:
    """Return account information for the currently authenticated caller."""
    accounts: AccountService = request.app.state.account_service
    return MeResponse.from_account(accounts.get_account(identity.account_id))


@router.post("/auth/password", response_model=TokenPairResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    identity: VerifiedIdentity = Depends(get_current_identity),
) -> JSONResponse:
    """Change password. Every older token stops working; the response carries a fresh pair."""
    accounts: AccountService = request.app.state.account_service
    pair = accounts.change_password(identity.account_id, body.current_password, body.new_password)
    return _pair_response(pair)


@router.delete("/auth/account", status_code=204)
def delete_account(request: Request, identity: VerifiedIdentity = Depends(get_current_identity)) -> Response:
    """Permanently delete the caller's account. Every token naming it fails USER_NOT_FOUND afterwards."""
    accounts: AccountService = request.app.state.account_service
    accounts.delete_account(identity.account_id)
    return Response(status_code=204)
