"""
api/main.py -- FastAPI application entry point for Ayerhs authentication.

Exposes the AuthOrchestrator over HTTP. The core (auth/) knows nothing
about HTTP; this module wires it together and translates domain errors into
the ApiResponse envelope.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware        -- adds CORS headers for allowed browser origins
  2. SlowAPIMiddleware     -- rate-limit hook; routes with @limiter.limit enforce their own

Lifespan handles startup (settings, credential store, RSA key, core
components) and shutdown (dispose the store's engine) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ApiResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.crypto import CryptoCore
from auth.notifier import EmailNotifier
from auth.orchestrator import AuthOrchestrator
from auth.otp import OtpEngine
from auth.store import CredentialStore
from core.config import Settings, get_settings
from core.errors import AuthError, ErrorCode, TransientStoreError, ValidationError, new_txn

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ayerhs.api")


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def _load_private_key(settings: Settings) -> str:
    """Return the configured RSA private key, generating one in debug mode.

    A generated key lives only for the process lifetime: clients must fetch
    the public key again after a restart.
    """
    pem = settings.load_private_key_pem()
    if pem:
        return pem
    if not settings.debug:
        raise RuntimeError(
            "RSA_PRIVATE_KEY_PATH or RSA_PRIVATE_KEY_PEM is required in production mode. "
            "To run in development mode, set DEBUG=true."
        )
    logger.warning("WARNING: Using an auto-generated RSA key. Encrypted passwords will not survive restarts.")
    return CryptoCore.generate_private_key_pem()


def build_orchestrator(settings: Settings, store: CredentialStore) -> AuthOrchestrator:
    """Wire the core components around one store."""
    return AuthOrchestrator(
        settings,
        store,
        CryptoCore(settings),
        OtpEngine(settings, store),
        EmailNotifier(settings),
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are resolved first because every other component is
    constructed from them.
    """
    settings = get_settings()
    logging.getLogger("ayerhs").setLevel(settings.log_level.upper())
    logger.info("Ayerhs API starting up")
    app.state.settings = settings
    app.state.store = CredentialStore(settings.database_url)
    logger.info("Credential store initialized")
    app.state.private_key = _load_private_key(settings)
    app.state.orchestrator = build_orchestrator(settings, app.state.store)
    logger.info(
        "Auth initialized (threshold=%d, lockout=%ds, otp_ttl=%ds)",
        settings.max_login_attempts,
        settings.lockout_seconds,
        settings.otp_ttl_seconds,
    )

    yield

    app.state.store.close()
    logger.info("Ayerhs API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Ayerhs Auth API",
    description="Credential login with lockout, OTP unlock and account registration.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

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


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the ApiResponse envelope so clients parse errors
# uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, error: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse.failure(status_code, error).model_dump(mode="json"),
    )


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _envelope(400, exc)


@app.exception_handler(TransientStoreError)
async def store_error_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
    """503: the store is unreachable or contended. Already logged by the orchestrator."""
    response = _envelope(503, exc)
    response.headers["Retry-After"] = "1"
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    logger.error("[%s] Unmapped domain error %s on %s", exc.txn, exc.error_code, request.url.path)
    return _envelope(500, AuthError("An unexpected error occurred.", ErrorCode.INTERNAL, exc.txn))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a rate limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(429, AuthError("Too many requests.", ErrorCode.INTERNAL))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body or query params fail schema validation."""
    error = ValidationError("Request validation failed.")
    response = ApiResponse.failure(422, error, return_value=str(exc.errors()))
    return JSONResponse(status_code=422, content=response.model_dump(mode="json"))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _envelope(exc.status_code, AuthError(str(exc.detail), f"HTTP-{exc.status_code}"))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    txn = new_txn()
    logger.exception("[%s] Unhandled exception on %s %s", txn, request.method, request.url.path)
    return _envelope(500, AuthError("An unexpected error occurred.", ErrorCode.INTERNAL, txn))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    database_ok = request.app.state.store.ping()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": "ok" if database_ok else "error"},
    )
