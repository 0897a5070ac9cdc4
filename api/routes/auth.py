"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/auth/login           -- password (+ inline two-factor) login; returns a bearer token
  POST /api/auth/logout          -- blacklists the caller's bearer token (requires auth)
  POST /api/auth/changepassword  -- change own password (requires auth)
  GET  /api/auth/me              -- current user info (requires auth)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Unknown username and wrong password return byte-identical 401 bodies.
  Cache-Control: no-store on every login response.
  Handlers are plain `def` so bcrypt and SQLite work runs in the threadpool
  instead of blocking the event loop.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    PasswordErrorItem,
    PasswordErrorsResponse,
)
from auth.current_token import CurrentTokenResolver
from auth.dependencies import get_current_user, get_token_resolver
from auth.models import SignInAttempt, SignInState, User
from auth.signin import SignInOrchestrator
from auth.tokens import token_fingerprint

logger = logging.getLogger("flexflow.api")

# Auth policy:
# - POST /api/auth/login:           public
# - POST /api/auth/logout:          requires auth (get_current_user)
# - POST /api/auth/changepassword:  requires auth (get_current_user)
# - GET  /api/auth/me:              requires auth (get_current_user)
router = APIRouter()


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(exclude_none=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post(
    "/auth/login",
    response_model=LoginResponse,
    responses={401: {"model": ErrorResponse}, 428: {"model": ErrorResponse}},
)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username, password and (when enabled) a two-factor code.

    200 -- token issued.
    401 -- unknown user, wrong password, wrong code or locked out (indistinguishable).
    428 -- password accepted but the account needs a two-factor code; re-submit with twoFactorToken.
    """
    signin: SignInOrchestrator = request.app.state.signin
    result = signin.sign_in(
        SignInAttempt(
            username=body.username,
            password=body.password,
            two_factor_code=body.two_factor_token or None,
            remember_me=body.remember_me,
            remember_machine=body.two_factor_remember_machine,
        )
    )

    if result.state is SignInState.AWAITING_TWO_FACTOR:
        return _error(428, "two_factor_required", "A two-factor authentication code is required.")
    if not result.succeeded:
        return _error(401, "unauthorized", "Invalid username or password.")

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            user_id=result.user_id,
            display_name=result.display_name,
            token=result.token,
            requires_email_validation=result.requires_email_validation,
        ).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(
    current_user: User = Depends(get_current_user),
    resolver: CurrentTokenResolver = Depends(get_token_resolver),
) -> dict:
    """Blacklist the bearer token used for this request.

    The token stays rejected by the blacklist middleware until it would have
    expired anyway.
    """
    resolver.blacklist()
    logger.info("User %s logged out (token %s)", current_user.username, token_fingerprint(resolver.token))
    return {"message": "Logged out."}


@router.post(
    "/auth/changepassword",
    responses={400: {"model": PasswordErrorsResponse}},
)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
):
    """Change the caller's password. 400 lists every policy violation."""
    identity = request.app.state.identity
    errors = identity.change_password(current_user, body.old_password, body.new_password)
    if errors:
        logger.info(
            "Password change refused for %s: %s", current_user.username, ",".join(e.code for e in errors)
        )
        return JSONResponse(
            status_code=400,
            content=PasswordErrorsResponse(
                errors=[PasswordErrorItem(code=e.code, description=e.description) for e in errors]
            ).model_dump(),
        )
    return {"message": "Password changed."}


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        username=current_user.username,
        display_name=current_user.display_name,
        email=current_user.email,
        roles=current_user.roles,
    )
