"""
api/main.py -- FastAPI application entry point for FlexFlow.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests             -- one log line per request with latency
  2. reject_blacklisted_tokens -- 401 for any bearer token that was logged out
  3. SlowAPIMiddleware        -- enforces per-route rate limits from api.limiter

Lifespan handles startup (settings, user store + admin seed, token issuer,
blacklist, purge task) and shutdown (cancel purge task, close stores)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from auth.blacklist import MemoryTokenBlacklist, TokenBlacklist
from auth.current_token import CurrentTokenResolver
from auth.identity import StoreIdentityProvider, seed_admin
from auth.signin import SignInOrchestrator
from auth.store import UserStore
from auth.tokens import BearerConfig, TokenIssuer, token_fingerprint
from cache.store import SqliteTokenBlacklist
from core.config import Settings, get_settings

VERSION = "0.3.0"
_PURGE_INTERVAL_SECONDS = 10 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(level=logging.INFO, format=_LOG_FORMAT, datefmt=_LOG_DATEFMT)
logger = logging.getLogger("flexflow.api")


def _configure_file_logging(log_file: str) -> None:
    """Mirror the flexflow.* loggers into a daily-rotated file when LOG_FILE is set."""
    if not log_file:
        return
    handler = TimedRotatingFileHandler(log_file, when="midnight", backupCount=14, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATEFMT))
    logging.getLogger("flexflow").addHandler(handler)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_blacklist(settings: Settings, issuer: TokenIssuer) -> TokenBlacklist:
    """Pick the blacklist backend named by BLACKLIST_BACKEND.

    Entries live exactly one token lifetime, the longest any token can stay valid.
    """
    if settings.blacklist_backend == "sqlite":
        logger.info("Token blacklist: sqlite (%s)", settings.blacklist_db_path)
        return SqliteTokenBlacklist(Path(settings.blacklist_db_path), ttl=issuer.lifetime)
    logger.info("Token blacklist: in-memory (not shared between worker processes)")
    return MemoryTokenBlacklist(ttl=issuer.lifetime)


def wire_auth(app: FastAPI, settings: Settings, user_store: UserStore, blacklist: TokenBlacklist | None = None) -> None:
    """Attach the auth services to app.state. Shared by the lifespan and tests."""
    issuer = TokenIssuer(BearerConfig.from_settings(settings))
    identity = StoreIdentityProvider.from_settings(user_store, settings)
    app.state.user_store = user_store
    app.state.token_issuer = issuer
    app.state.identity = identity
    app.state.signin = SignInOrchestrator(identity, issuer)
    app.state.token_blacklist = blacklist if blacklist is not None else build_blacklist(settings, issuer)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired blacklist entries every 10 minutes.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        removed = await run_in_threadpool(app.state.token_blacklist.purge_expired)
        if removed:
            logger.info("Purged %d expired blacklist entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Settings are resolved first: a missing BEARER_SECRET outside DEBUG mode
    raises here and the server never starts accepting requests.
    """
    settings = get_settings()
    _configure_file_logging(settings.log_file)
    logger.info("FlexFlow API starting up")

    user_store = UserStore(settings.database_url)
    seed_admin(user_store, settings.admin_email)
    logger.info("Database configured and contactable.")

    wire_auth(app, settings, user_store)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.token_blacklist.close()
    app.state.user_store.close()
    logger.info("FlexFlow API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="FlexFlow API",
    description="Authentication and user management for FlexFlow.",
    version=VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Token blacklist middleware
#
# Runs before routing, so a logged-out token is refused for every endpoint
# -- including public ones -- without the handler ever being invoked.
# Requests with no bearer token resolve to "" and always pass through.
# The lookup runs in the threadpool, like the sync route handlers.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def reject_blacklisted_tokens(request: Request, call_next):
    resolver = CurrentTokenResolver(request.headers, request.app.state.token_blacklist)
    if resolver.token and await run_in_threadpool(resolver.is_blacklisted):
        logger.info(
            "Rejected blacklisted token %s on %s %s",
            token_fingerprint(resolver.token),
            request.method,
            request.url.path,
        )
        return JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="token_revoked", message="This token has been revoked.")
            ).model_dump(exclude_none=True),
        )
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Registered last so it is the outermost layer and also times requests the
# blacklist middleware rejects.
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

app.include_router(auth_router, prefix="/api", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail; use it directly as
    the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Public endpoints defined directly on the app
#
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    try:
        database = "ok" if request.app.state.user_store.ping() else "error"
    except Exception:
        logger.exception("Health check database ping failed")
        database = "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})


@app.get("/api/test", tags=["Health"])
def server_time() -> str:
    """Return the current server time. Handy smoke test for a fresh deployment."""
    return f"Current time: {datetime.now()}"
