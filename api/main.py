"""
api/main.py -- FastAPI application entry point for the onboarding service.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the frontend origin(s)
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- holds authlib's OAuth state for Google sign-in

Lifespan builds the long-lived collaborators once and hangs them on app.state:
  settings, store, issuer, csrf, mailer, oauth, registration, sessions
and tears them down symmetrically (pending emails are drained first).
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.register import router as register_router
from auth.csrf import CsrfGuard
from auth.errors import AuthError
from auth.oauth import build_oauth
from auth.registration import RegistrationPolicy, RegistrationWorkflow
from auth.sessions import CookiePolicy, SessionOrchestrator
from auth.store import AccountStore
from auth.tokens import CredentialIssuer, IssuerConfig
from core.config import Settings, get_settings
from mail.mailer import Mailer

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("oni.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def configure_state(app: FastAPI, settings: Settings, store: AccountStore, mailer: Mailer) -> None:
    """Build the auth collaborators around a store and a mailer.

    Shared by the real lifespan and the test lifespan so both wire the same
    graph; only the store and the mail sender differ.
    """
    issuer = CredentialIssuer(IssuerConfig.from_settings(settings))
    app.state.settings = settings
    app.state.store = store
    app.state.mailer = mailer
    app.state.issuer = issuer
    app.state.csrf = CsrfGuard(settings.jwt_secret, settings.csrf_ttl_seconds, secure=settings.secure_cookies)
    app.state.oauth = build_oauth(settings)
    app.state.registration = RegistrationWorkflow(store, issuer, mailer, RegistrationPolicy.from_settings(settings))
    app.state.sessions = SessionOrchestrator(store, issuer, CookiePolicy.from_settings(settings))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Everything before yield runs on startup; everything after on shutdown.

    Shutdown order: drain the mailer before closing the store, so no send
    that was dispatched during a request is cut off mid-flight.
    """
    logger.info("Onboarding API starting up (debug=%s)", settings.debug)
    configure_state(app, settings, AccountStore(db_url=settings.database_url), Mailer.from_settings(settings))
    logger.info(
        "Auth initialized (mail backend=%s, google=%s)",
        settings.email_backend,
        settings.google_enabled,
    )

    yield

    await app.state.mailer.aclose()
    app.state.store.close()
    logger.info("Onboarding API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Onboarding API",
    description="Credential issuance, CSRF protection and the account registration workflow.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state value in the session between the
# authorization redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=settings.jwt_secret, https_only=settings.secure_cookies)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Never logs query strings: confirmation and reset links carry their token
# there.
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
app.include_router(register_router, prefix="/api/v1", tags=["Registration"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {"success": false, "error": "..."} envelope so
# clients parse errors uniformly.
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a workflow error and expire any cookies it names."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s", type(exc).__name__, request.method, request.url.path)
    else:
        logger.info("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    response = _error(exc.status_code, exc.message)
    for name in exc.clear_cookies:
        response.delete_cookie(name)
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "Too many requests")
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the first validation message.

    Uses 400 rather than FastAPI's default 422 so body validation and
    workflow ValidationError look the same to clients.
    """
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        message = str(errors[0].get("msg", message)).removeprefix("Value error, ")
    return _error(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "Server Error")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
