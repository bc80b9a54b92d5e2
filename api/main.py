"""
api/main.py -- FastAPI application entry point for AccessGate.

Exposes the credential kernel to trusted backend services. Every route except
/api/v1/health requires a service API key carrying the scope the route
declares (see auth/dependencies.py).

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the AuthStore and builds the ApiKeyRegistry on startup and
disposes the engine on shutdown. Importing auth.credentials computes a bcrypt
digest, so a broken hash primitive or entropy source (CryptoFailure) stops
the process before it accepts traffic.
"""

from __future__ import annotations

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
from api.routes.v1.accounts import router as accounts_router
from api.routes.v1.keys import router as keys_router
from auth.registry import ApiKeyRegistry
from auth.store import AuthStore
from core.config import get_settings
from core.errors import (
    AccessGateError,
    AccountNotFound,
    AuthorizationDenied,
    CryptoFailure,
    DuplicateName,
    InvalidPassword,
    InvalidScope,
    ProvisioningMismatch,
    StoreUnavailable,
    WeakTokenRequest,
    WriteConflict,
)

API_VERSION = "0.3.0"

_settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if _settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accessgate.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store, build the registry, and dispose both on shutdown."""
    logger.info("AccessGate API starting up")
    app.state.auth_store = AuthStore()
    app.state.registry = ApiKeyRegistry(app.state.auth_store)
    active = len(app.state.registry.list_keys())
    if active == 0:
        logger.warning("No active service API keys -- issue one with `python main.py issue-key`")
    else:
        logger.info("Auth store initialized (%d active API keys)", active)

    yield

    app.state.auth_store.close()
    logger.info("AccessGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AccessGate API",
    description="Credential lifecycle, login eligibility, and service-to-service API key authorization.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH"],
    allow_headers=["Content-Type", _settings.api_key_header],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status, latency, and -- once the scope dependency has
# run -- the name of the authorized key for the audit trail.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s key=%s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
        getattr(request.state, "api_key_name", "-"),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(keys_router, prefix="/api/v1", tags=["Service API Keys"])
app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Kernel error -> (status, code). Checked in order; first isinstance match wins.
_ERROR_STATUS: list[tuple[type[AccessGateError], int, str]] = [
    (InvalidScope, 400, "invalid_scope"),
    (InvalidPassword, 400, "invalid_password"),
    (WeakTokenRequest, 400, "weak_token_request"),
    (AccountNotFound, 404, "not_found"),
    (DuplicateName, 409, "duplicate_name"),
    (WriteConflict, 409, "conflict"),
    (StoreUnavailable, 503, "store_unavailable"),
]


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AccessGateError)
async def kernel_error_handler(request: Request, exc: AccessGateError) -> JSONResponse:
    """Map kernel errors onto structured responses.

    Denials that escape a route (they normally stop in the scope dependency)
    get the same uniform 401. CryptoFailure and ProvisioningMismatch are
    server faults: logged in full, reported generically.
    """
    if isinstance(exc, AuthorizationDenied):
        logger.warning("Denied %s %s: reason=%s", request.method, request.url.path, exc.reason)
        return _error_response(401, "unauthorized", "Invalid or missing API key.")
    for exc_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            if status_code >= 500:
                logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
            return _error_response(status_code, code, str(exc))
    if isinstance(exc, (CryptoFailure, ProvisioningMismatch)):
        logger.critical("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    else:
        logger.error("Unmapped %s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
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

    Route handlers raise HTTPException with a dict detail. Use it directly as
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

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No key and no rate limit -- load balancers and monitors must always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and database reachability."""
    store: AuthStore = request.app.state.auth_store
    return HealthResponse(
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if store.ping() else "error"},
    )
