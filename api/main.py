"""
api/main.py -- FastAPI application entry point for the admin console.

Exposes login, remember-me and the administrator user grid over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, codec, authenticator, directory engine,
purge task) and shutdown (cancel purge task, dispose the engine) symmetrically.
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
from api.routes.v1.users import router as users_router
from auth.dependencies import Principal, get_current_principal
from auth.exceptions import StorageError
from auth.passwords import PasswordCodec
from auth.session import SessionAuthenticator, utcnow
from auth.store import AccountStore
from core.config import get_settings
from directory.engine import DirectoryQueryEngine

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("adminconsole.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired session and remember-me rows once an hour.

    Expired rows are already refused on lookup; this only keeps the tables
    small. CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(60 * 60)
        try:
            removed = app.state.store.purge_expired(utcnow())
        except StorageError:
            logger.exception("Purge of expired sessions failed")
            continue
        if removed:
            logger.info("Purged %d expired session/remember-me row(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the application services once and tear them down on shutdown.

    Startup order matters:
      1. Store first -- creates the schema; everything else reads from it.
      2. Codec, authenticator and directory engine share the store.
      3. Purge task last -- references app.state.store.
    """
    settings = get_settings()
    logger.info("Admin console API starting up")
    store = AccountStore(settings.database_url)
    codec = PasswordCodec.from_settings(settings)
    app.state.store = store
    app.state.authenticator = SessionAuthenticator.from_settings(store, settings, codec=codec)
    app.state.directory = DirectoryQueryEngine(store, codec, settings.listing_max_page_size)
    if not store.has_accounts():
        logger.warning("No accounts exist yet -- create an administrator with: python main.py create-user --admin")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("Admin console API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Admin Console API",
    description="Session authentication, remember-me and administrator user management.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
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
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching a route handler;
# latency is measured around call_next.
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
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Admin Console API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Admin Console API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
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

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field rather than
    stringifying it -- str(dict) produces a Python repr, not JSON.
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


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Return 503 when the credential store fails. Details go to the log only."""
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="storage_unavailable",
                message="The account store is unavailable. Try again shortly.",
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
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
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    components = {"app": "ok"}
    try:
        request.app.state.store.has_accounts()
        components["database"] = "ok"
    except StorageError:
        components["database"] = "error"
    return HealthResponse(version=API_VERSION, components=components)
