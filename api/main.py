"""
api/main.py -- FastAPI application entry point for OAuthGate.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie carrying the server-side session id

Lifespan handles startup (stores, provider registry, coordinator, reaper task)
and shutdown (cancel reaper, close the provider HTTP clients, dispose the DB
engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import contextlib
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
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import OAuthFlowError
from auth.flow import LoginCoordinator
from auth.linker import AccountLinker
from auth.oauth import build_provider_registry, close_provider_registry
from auth.pending import PendingAttemptStore, reap_expired
from auth.sessions import MemorySessionStore
from auth.store import UserStore
from core.config import get_settings

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("oauthgate.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- the coordinator and the reaper reference them.
      2. Provider registry -- each adapter owns its HTTP client.
      3. Coordinator once all collaborators exist.
      4. Reaper task last -- references app.state.pending and sessions.
    """
    logger.info("OAuthGate starting up")
    app.state.user_store = UserStore(settings.database_url)
    app.state.pending = PendingAttemptStore()
    app.state.sessions = MemorySessionStore(settings.session_expire_seconds)

    app.state.providers = build_provider_registry(settings)
    if not app.state.providers:
        logger.warning("No OAuth providers configured -- third-party login is disabled")

    app.state.coordinator = LoginCoordinator(
        registry=app.state.providers,
        pending=app.state.pending,
        linker=AccountLinker(app.state.user_store, settings.auto_link_verified_email),
        sessions=app.state.sessions,
        store=app.state.user_store,
        state_ttl_seconds=settings.oauth_state_ttl_seconds,
        block_last_credential_unlink=settings.block_last_credential_unlink,
    )
    app.state.reaper_task = asyncio.create_task(
        reap_expired(
            app.state.pending,
            settings.oauth_sweep_interval_seconds,
            extra_sweeps=(app.state.sessions.purge_expired,),
        )
    )
    logger.info("Login coordinator ready (%d providers)", len(app.state.providers))

    yield

    # Shutdown
    app.state.reaper_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await app.state.reaper_task
    await close_provider_registry(app.state.providers)
    app.state.user_store.close()
    logger.info("OAuthGate shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="OAuthGate",
    description="Third-party login (Google, GitHub, generic OIDC) with account linking.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST call is outermost.
# Register innermost first: Session -> SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="oauthgate_session",
    max_age=settings.session_expire_seconds,
    same_site="lax",
    https_only=settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_host_list)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
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
# Web router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(OAuthFlowError)
async def oauth_flow_error_handler(request: Request, exc: OAuthFlowError) -> JSONResponse:
    """Render login-flow errors with their public message only.

    str(exc) can contain provider detail and is logged, never returned. The
    correlation id (when the coordinator attached one) goes in `detail` so a
    user report can be matched with the log line.
    """
    logger.info("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.code,
                message=exc.public_message,
                detail=exc.correlation_id,
            )
        ).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
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

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only; the client receives a generic message.
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
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- load balancer health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, database reachability and the pending-login count."""
    try:
        request.app.state.user_store.ping()
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
        pending_logins=len(request.app.state.pending),
    )
