"""
api/main.py -- FastAPI application entry point for moodledger.

Exposes account registration/login, the token ledger, collectibles and the
community pool over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (container build, pool account, purge task) and
shutdown (cancel purge task, close storage) symmetrically.

Error mapping: services raise core.errors.CoreError subclasses unchanged;
core_error_handler turns each class into its HTTP status and the standard
{"error": {"code", "message"}} envelope.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.collectibles import router as collectibles_router
from api.routes.v1.ledger import router as ledger_router
from api.routes.v1.pool import router as pool_router
from auth.dependencies import get_current_account
from auth.models import Account
from container import build_container
from core.config import get_settings
from core.errors import (
    AccountNotFound,
    AuthenticationRequired,
    CollectibleNotFound,
    CoreError,
    DuplicateUsername,
    InsufficientBalance,
    InvalidCredentials,
    InvalidInput,
    InvalidState,
    InvalidTarget,
    LedgerCorruption,
    NotOwner,
    Unavailable,
)

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("moodledger.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired sessions every session_purge_interval_seconds.

    Runs as a background asyncio task started in lifespan startup. The purge
    itself blocks on storage, so it runs in a worker thread. A storage outage
    is logged and retried on the next tick; any other failure is logged with
    its traceback and retried the same way. CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds cleanly.
    """
    container = app.state.container
    while True:
        await asyncio.sleep(container.settings.session_purge_interval_seconds)
        try:
            await asyncio.to_thread(container.sessions.purge_expired)
        except Unavailable:
            logger.warning("Session purge skipped: storage unavailable")
        except Exception:
            logger.exception("Session purge failed; retrying next interval")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Container first -- opens storage, creates the schema and the
         community pool account before any request arrives.
      2. Purge task last -- references app.state.container.
    """
    logger.info("moodledger API starting up")
    app.state.container = build_container(get_settings())
    logger.info(
        "Storage ready (database=%s, sessions=%s)",
        app.state.container.db.engine.url.render_as_string(hide_password=True),
        app.state.container.settings.session_backend,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.container.close()
    logger.info("moodledger API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="moodledger API",
    description="Accounts, sessions, a token ledger and collectible records.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by session-protected routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status and latency. Never logs headers or bodies: they
# carry session ids and passwords.
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
app.include_router(ledger_router, prefix="/api/v1", tags=["Ledger"])
app.include_router(collectibles_router, prefix="/api/v1", tags=["Collectibles"])
app.include_router(pool_router, prefix="/api/v1", tags=["Pool"])


# ---------------------------------------------------------------------------
# Session-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
def docs(account: Account = Depends(get_current_account)):
    """Swagger UI -- requires a session."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="moodledger API")


@app.get("/redoc", include_in_schema=False)
def redoc(account: Account = Depends(get_current_account)):
    """ReDoc UI -- requires a session."""
    return get_redoc_html(openapi_url="/openapi.json", title="moodledger API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR: dict[type[CoreError], int] = {
    InvalidInput: 400,
    InvalidTarget: 400,
    InvalidCredentials: 401,
    AuthenticationRequired: 401,
    NotOwner: 403,
    AccountNotFound: 404,
    CollectibleNotFound: 404,
    DuplicateUsername: 409,
    InsufficientBalance: 409,
    InvalidState: 409,
    LedgerCorruption: 500,
    Unavailable: 503,
}

UNAVAILABLE_RETRY_AFTER_SECONDS = 5


def status_for(exc: CoreError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return 500


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    """Map a classified service error to its HTTP status.

    LedgerCorruption is an operator alert: it is logged CRITICAL and the
    client only sees the generic code. Unavailable carries Retry-After.
    """
    status_code = status_for(exc)
    if isinstance(exc, LedgerCorruption):
        logger.critical("Ledger corruption surfaced on %s %s", request.method, request.url.path)
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, Unavailable):
        response.headers["Retry-After"] = str(UNAVAILABLE_RETRY_AFTER_SECONDS)
    if isinstance(exc, (InvalidCredentials, AuthenticationRequired)):
        response.headers["Cache-Control"] = "no-store"
    return response


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
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Input values are dropped from the echoed errors: a rejected login body
    would otherwise send the password back.
    """
    errors = [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
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

    The traceback goes to the server log only; the client receives a
    generic message.
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
# Defined directly in main.py so it is always reachable. No rate limit and no
# auth -- load balancers and monitors must not be throttled or challenged.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and storage status."""
    database = "ok" if request.app.state.container.db.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
