"""
api/main.py -- FastAPI application entry point for TicketGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost, as a request meets them):
  1. TrustedHostMiddleware   -- rejects requests with unexpected Host headers
  2. log_requests            -- method, path, status, latency, client address
  3. audit_requests          -- ACCESS audit before/after stage; writes the
                                sliding session token back; security headers
  4. CORSMiddleware          -- CORS headers for allowed browser origins
  5. SlowAPIMiddleware       -- per-route and default rate limits
  6. ContentPolicyMiddleware -- inbound sensitive-data scan (block / redact)

Starlette builds the stack so that the LAST middleware added is the
OUTERMOST. Registration below therefore runs from innermost to outermost.

Lifespan builds every service on app.state (audit trail, user store,
authenticator, session registry, accounts, tracker client, scanner) and
starts the housekeeping task; shutdown cancels it and closes resources.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.engine import make_url
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException

from api.content_policy import ContentPolicyMiddleware
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.tickets import router as tickets_router
from audit.models import EventType
from audit.trail import AuditTrail
from auth.accounts import AccountManager
from auth.authenticator import Authenticator
from auth.dependencies import audit_actor
from auth.sessions import SessionRegistry
from auth.store import UserStore
from auth.tokens import SESSION_HEADER, set_session_cookie
from core.config import Settings, get_settings
from core.errors import AppError, InternalError, RateLimited, ValidationError
from core.scanner import ContentScanner
from tracker.client import TrackerClient

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ticketgate.api")

_settings = get_settings()

# Paths that never produce ACCESS audit entries (load balancer health checks).
_AUDIT_EXEMPT_PATHS = frozenset({"/api/v1/health"})

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings, *, user_store=None, tracker=None, clock=_utcnow) -> None:
    """Construct every service object and attach it to app.state.

    Shared by the real lifespan and the test lifespan, so tests exercise the
    same wiring with their own settings, stores, and clock.
    """
    app.state.clock = clock
    app.state.request_scanner = ContentScanner(disabled=() if settings.scanner_detect_email else ("email",))
    app.state.audit = AuditTrail(
        settings.audit_log_dir,
        settings.audit_key,
        archive_dir=settings.audit_archive_dir,
        retention_days=settings.audit_retention_days,
        scanner=ContentScanner(),
        environment=settings.environment,
        clock=clock,
    )
    app.state.user_store = user_store or UserStore(settings.database_url)
    app.state.sessions = SessionRegistry(
        settings.secret_key,
        app.state.audit,
        idle_timeout_minutes=settings.session_idle_timeout_minutes,
        absolute_timeout_minutes=settings.session_absolute_timeout_minutes,
        bind_address=settings.session_bind_address,
        clock=clock,
    )
    app.state.authenticator = Authenticator(
        app.state.user_store,
        app.state.audit,
        lockout_threshold=settings.lockout_threshold,
        lockout_minutes=settings.lockout_minutes,
        clock=clock,
    )
    app.state.accounts = AccountManager(app.state.user_store, app.state.sessions, app.state.audit)
    app.state.tracker = tracker or TrackerClient(
        settings.tracker_base_url,
        settings.tracker_email,
        settings.tracker_api_token,
        timeout=settings.tracker_timeout_seconds,
    )


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and not url.database.startswith("file:"):
        if url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Background housekeeping task
# ---------------------------------------------------------------------------


async def _housekeeping_loop(app: FastAPI, interval_seconds: int) -> None:
    """Sweep expired sessions every interval; purge expired audit files daily.

    asyncio.sleep yields to the event loop between iterations. CancelledError
    from task.cancel() during shutdown propagates out of the sleep and
    unwinds the coroutine.
    """
    last_purge = 0.0
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            app.state.sessions.sweep()
            if time.monotonic() - last_purge >= 24 * 60 * 60:
                app.state.audit.purge_expired()
                last_purge = time.monotonic()
        except Exception:
            logger.exception("Housekeeping iteration failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup: build services, seed the default admin, start housekeeping.

    Shutdown: cancel housekeeping, record the stop, close resources.
    """
    settings = get_settings()
    logger.info("TicketGate API starting up (environment=%s)", settings.environment)
    _ensure_sqlite_dir(settings.database_url)
    build_services(app, settings)
    app.state.accounts.ensure_default_admin(
        settings.default_admin_username,
        settings.default_admin_email,
        settings.default_admin_password,
    )
    if not app.state.tracker.configured:
        logger.warning("TRACKER_BASE_URL / TRACKER_EMAIL / TRACKER_API_TOKEN not set -- ticket routes will fail")
    app.state.audit.record(EventType.SYSTEM, "APPLICATION_START", "SUCCESS", detail={"version": VERSION})
    app.state.housekeeping_task = asyncio.create_task(
        _housekeeping_loop(app, settings.session_sweep_interval_seconds)
    )

    yield

    app.state.housekeeping_task.cancel()
    app.state.audit.record(EventType.SYSTEM, "APPLICATION_STOP", "SUCCESS")
    app.state.tracker.close()
    app.state.user_store.close()
    logger.info("TicketGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TicketGate API",
    description="Audited, session-guarded proxy to the issue tracker.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Middleware stack, registered innermost first (see module docstring).
# The inner three are added here; the two @app.middleware functions below
# wrap them, and TrustedHostMiddleware is added last so it is outermost.
# ---------------------------------------------------------------------------

app.add_middleware(ContentPolicyMiddleware)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=[SESSION_HEADER],
    max_age=3600,
)

# ---------------------------------------------------------------------------
# Access audit middleware (before / after stage)
# ---------------------------------------------------------------------------


@app.middleware("http")
async def audit_requests(request: Request, call_next):
    """Record every API request on the audit trail and apply response headers.

    Before stage: ACCESS/REQUEST STARTED with method, path, and query string
    (AuditTrail redacts sensitive values before the write). After stage:
    ACCESS/REQUEST COMPLETED with status and
    duration. The actor comes from request.state.session_context, which the
    request gate sets only after it has validated the session.

    When the gate re-signed the session token, the fresh token is written
    back as the cookie and the X-Session-Token header.

    AuditTrail writes are blocking file I/O, so they run in the threadpool.
    """
    path = request.url.path
    audited = path not in _AUDIT_EXEMPT_PATHS
    audit = getattr(request.app.state, "audit", None)
    start = time.perf_counter()
    if audited and audit is not None:
        await run_in_threadpool(
            audit.record,
            EventType.ACCESS,
            "REQUEST",
            "STARTED",
            actor=audit_actor(request),
            detail={"method": request.method, "path": path, "query": request.url.query},
        )

    response = await call_next(request)

    issued = getattr(request.state, "refreshed_session", None)
    if issued is not None:
        max_age = (issued.expires_at - request.app.state.clock()).total_seconds()
        set_session_cookie(response, issued.token, int(max_age))
        response.headers[SESSION_HEADER] = issued.token
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)

    if audited and audit is not None:
        await run_in_threadpool(
            audit.record,
            EventType.ACCESS,
            "REQUEST",
            "COMPLETED",
            actor=audit_actor(request, getattr(request.state, "session_context", None)),
            detail={
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "duration_ms": round((time.perf_counter() - start) * 1000, 1),
            },
        )
    return response


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


app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(tickets_router, prefix="/api/v1", tags=["Tickets"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render any domain error. Only the class's safe message and detail reach the client."""
    return _envelope(exc.status_code, exc.code, exc.message, exc.detail)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. slowapi stores the window on the exception."""
    retry_after = int(getattr(exc, "retry_after", 60))
    error = RateLimited(detail=str(exc.detail))
    response = _envelope(error.status_code, error.code, error.message, error.detail)
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Field locations and messages only. Submitted values are never echoed back."""
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}" for err in exc.errors()
    )
    error = ValidationError(detail=problems)
    return _envelope(error.status_code, error.code, error.message, error.detail)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the server log. The client gets a generic message;
    the exception text is added as detail only when DEBUG=true.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    error = InternalError(detail=str(exc) if get_settings().debug else None)
    return _envelope(error.status_code, error.code, error.message, error.detail)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. Exempt from rate limiting: health checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
@limiter.exempt
async def health(request: Request) -> HealthResponse:
    """Liveness plus aggregate status. No per-user or per-session data."""
    settings = get_settings()
    return HealthResponse(
        version=VERSION,
        scanner_mode=settings.scanner_mode if settings.scanner_enabled else "disabled",
        active_sessions=request.app.state.sessions.active_count,
    )
