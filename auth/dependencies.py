"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with an Authorization: Bearer <token> header. The
token must verify against the process-wide TokenIssuer (signature, expiry,
audience, issuer) and name an existing user. Blacklisted tokens never reach
these helpers -- the blacklist middleware in api/main.py has already
answered 401.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. No imports from api/ or cache/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.current_token import CurrentTokenResolver, extract_bearer_token
from auth.models import User


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via its bearer token.

    Returns the authenticated User on success, None on any failure.
    Never raises.
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token:
        return None
    payload = request.app.state.token_issuer.decode(token)
    if payload is None:
        return None
    return request.app.state.user_store.get_by_username(payload["sub"])


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def get_token_resolver(request: Request) -> CurrentTokenResolver:
    """Bind the app's token blacklist to this request's bearer token."""
    return CurrentTokenResolver(request.headers, request.app.state.token_blacklist)
