"""authproxy FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app()  — testable application factory
  - lifespan      — @asynccontextmanager startup/shutdown sequence
  - init_state()  — wires managers onto app.state (shared by lifespan and tests)
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. load_config()              → app.state.config
  2. Database.initialize()      → app.state.db (schema, WAL, chmod 0600)
  3. SQLiteAuditBackend         → app.state.audit_backend
  4. MailtrapNotifier           → app.state.notifier
  5. create_http_client()       → app.state.http_client
  6. init_state()               → keys, quota, otp, guard, sessions, clock
  7. app.state.ready = True

Shutdown (reverse):
  ready = False → close http client → close notifier → close audit backend

Route precedence: /auth/* and /dashboard/api/* are registered before the
catch-all proxy route, so every other path is an upstream path.  FastAPI's
own /docs, /redoc and /openapi.json are disabled; those paths belong to the
catch-all and are refused by the admission guard.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Callable, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from authproxy.audit.protocol import AuditBackend, NullAuditBackend
from authproxy.audit.sqlite_backend import SQLiteAuditBackend
from authproxy.auth.keys import ApiKeyManager
from authproxy.auth.limiter import limiter
from authproxy.auth.otp import OtpAuthenticator, OtpDebugCache
from authproxy.auth.router import router as auth_router
from authproxy.auth.session import SessionManager
from authproxy.config import Config, load_config
from authproxy.dashboard.api import router as dashboard_router
from authproxy.db import Database
from authproxy.errors import AuthProxyError, ServiceNotReadyError
from authproxy.notify.mailer import MailtrapNotifier, Notifier
from authproxy.proxy.engine import create_http_client, router as engine_router
from authproxy.proxy.guard import AdmissionGuard
from authproxy.quota.tracker import QuotaTracker
from authproxy.utils.logger import configure_logging, get_logger
from authproxy.utils.timeutil import utc_now

# ─── Logging Setup ────────────────────────────────────────────────────────────
# Configured at import time; the lifespan reconfigures once the environment is known.
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: 503 until startup has completed."""
    if not getattr(request.app.state, "ready", False):
        raise ServiceNotReadyError()


# ─── State wiring ─────────────────────────────────────────────────────────────


def init_state(
    app: FastAPI,
    config: Config,
    db: Database,
    *,
    audit_backend: AuditBackend,
    notifier: Notifier,
    http_client: httpx.AsyncClient,
    clock: Callable[[], datetime] = utc_now,
) -> None:
    """Attach every request-time collaborator to ``app.state``.

    ``clock`` is the single time source for admission, OTP and usage
    decisions; tests replace it to pin the UTC date.
    """
    state = app.state
    state.config = config
    state.db = db
    state.audit_backend = audit_backend
    state.notifier = notifier
    state.http_client = http_client
    state.clock = clock

    state.keys = ApiKeyManager(db)
    state.quota = QuotaTracker(db)
    state.otp_debug_cache = (
        OtpDebugCache() if config.otp.debug_cache and not config.is_production else None
    )
    state.otp = OtpAuthenticator(db, config.otp, state.otp_debug_cache)
    state.sessions = SessionManager(config)
    state.guard = AdmissionGuard(config, state.keys, state.quota, audit_backend)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("authproxy starting up...")

    # load_config() raises SystemExit on invalid config, before ready is ever set.
    config: Config = load_config()
    configure_logging(log_level=config.log_level, json_output=config.is_production or JSON_LOGS)

    db = Database(config.database.path)
    await db.initialize()

    audit_backend: AuditBackend = SQLiteAuditBackend(db)
    notifier = MailtrapNotifier(
        config.mail,
        production=config.is_production,
        ttl_minutes=config.otp.ttl_minutes,
    )
    http_client = create_http_client(config.upstream.timeout_s)

    init_state(
        app,
        config,
        db,
        audit_backend=audit_backend,
        notifier=notifier,
        http_client=http_client,
    )

    app.state.ready = True
    logger.info(
        "authproxy ready",
        environment=config.environment,
        upstream=config.upstream.base_url,
        daily_limit=config.quota.daily_limit,
        enforcement=config.quota.enforcement,
        otp_debug_cache=app.state.otp_debug_cache is not None,
    )

    try:
        yield
    finally:
        app.state.ready = False
        logger.info("authproxy shutting down...")
        await http_client.aclose()
        await notifier.aclose()
        await audit_backend.close()
        logger.info("authproxy shutdown complete")


# ─── Exception rendering ──────────────────────────────────────────────────────


def _error_response(status_code: int, code: str, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "code": code}},
        headers=headers,
    )


# ─── App Factory ──────────────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="authproxy",
        description="API-key admission proxy with daily quotas and OTP dashboard login",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    # ready=False and a no-op audit backend until the lifespan has run.
    application.state.ready = False
    application.state.audit_backend = NullAuditBackend()

    application.state.limiter = limiter
    application.add_middleware(SlowAPIMiddleware)

    application.include_router(auth_router)
    application.include_router(dashboard_router)
    # Catch-all last: every path not claimed above is an upstream path.
    application.include_router(engine_router, dependencies=[Depends(require_ready)])

    # Global exception handlers
    @application.exception_handler(AuthProxyError)
    async def authproxy_error_handler(request: Request, exc: AuthProxyError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "request_failed",
            status_code=exc.status_code,
            code=exc.code,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers or None)

    @application.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        logger.warning("endpoint_rate_limited", path=str(request.url.path), limit=str(exc.detail))
        return _error_response(429, "too_many_requests", f"Rate limit exceeded: {exc.detail}")

    @application.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(400, "invalid_request", "Request body is missing or malformed")

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.warning("HTTP exception", status_code=exc.status_code, path=str(request.url.path))
        return _error_response(exc.status_code, "http_error", str(exc.detail))

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return _error_response(500, "internal_error", "Internal server error")

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
