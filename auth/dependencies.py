"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

This is the authentication middleware boundary: it pulls the bearer token off
the request and hands it to TokenService.verify(). It never decodes tokens
itself and never turns an AuthError into an HTTP shape -- api/main.py owns
that mapping.

get_bearer_token() is the soft variant (returns None when no token is sent).
get_current_identity() requires a valid access token.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AuthError, AuthErrorKind
from auth.models import TokenType, VerifiedIdentity


def get_bearer_token(request: Request) -> str | None:
    """Return the token from an `Authorization: Bearer <token>` header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def get_current_identity(request: Request) -> VerifiedIdentity:
    """Require a valid access token. Raises AuthError, rendered as 401 by the API layer.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: VerifiedIdentity = Depends(get_current_identity)): ...
    """
    token = get_bearer_token(request)
    if token is None:
        raise AuthError(AuthErrorKind.MISSING_TOKEN)
    return request.app.state.token_service.verify(token, TokenType.access)
