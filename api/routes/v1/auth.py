"""
api/routes/v1/auth.py -- Authentication, self-service, and admin endpoints.

Routes:
  POST  /api/v1/auth/login                         -- password login; sets session cookie
  POST  /api/v1/auth/logout                        -- ends the session; clears cookie
  GET   /api/v1/auth/me                            -- current user
  POST  /api/v1/auth/change-password               -- ends every other session
  POST  /api/v1/auth/update-profile                -- email and preferences only
  GET   /api/v1/auth/session-status                -- remaining idle/absolute time
  GET   /api/v1/auth/admin/users                   -- list users (admin)
  POST  /api/v1/auth/admin/users                   -- create user (admin)
  PATCH /api/v1/auth/admin/users/{user_id}/active  -- activate/deactivate (admin)
  GET   /api/v1/auth/admin/audit-logs              -- recent audit entries (admin)

Security:
  POST /login is rate-limited per client address (LOGIN_RATE_LIMIT).
  Every login failure gets the same 401 "bad_credentials" body; the real
  reason (unknown user, locked, disabled, wrong password) goes only to the
  audit trail.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, limiter
from api.models import (
    AuditEntryResponse,
    AuditLogResponse,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileUpdateRequest,
    SessionStatusResponse,
    UserActiveUpdate,
    UserCreate,
    UserResponse,
)
from audit.models import EventType
from auth.dependencies import audit_actor, get_current_user, request_context, require_admin, require_session
from auth.models import SessionContext, User
from auth.sessions import USER_LOGOUT
from auth.tokens import clear_session_cookie, set_session_cookie
from core.errors import AuthenticationError, ValidationError

router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username (or email) and password; start a session."""
    ctx = request_context(request)
    result = request.app.state.authenticator.authenticate(body.username, body.password, ctx)
    if not result.ok:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    issued = request.app.state.sessions.create_session(ctx, result.user)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            token=issued.token,
            expires_at=issued.expires_at.isoformat(),
            must_change_password=result.must_change_password,
            user=UserResponse.from_user(result.user, request.app.state.clock()),
        ).model_dump(),
    )
    max_age = (issued.expires_at - request.app.state.clock()).total_seconds()
    set_session_cookie(resp, issued.token, int(max_age))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, session: SessionContext = Depends(require_session)) -> JSONResponse:
    """End the current session and clear the cookie."""
    request.app.state.sessions.terminate_session(session.session_id, USER_LOGOUT)
    # Nothing left to refresh; stop the after-stage middleware re-issuing a cookie.
    request.state.refreshed_session = None
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_session_cookie(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user, request.app.state.clock())


@router.get("/auth/session-status", response_model=SessionStatusResponse)
def session_status(request: Request, session: SessionContext = Depends(require_session)) -> SessionStatusResponse:
    info = request.app.state.sessions.describe(session.session_id)
    if info is None:
        raise AuthenticationError()
    return SessionStatusResponse(**info)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    session: SessionContext = Depends(require_session),
) -> MessageResponse:
    """Change the caller's password. Other sessions of the same user end; this one survives."""
    request.app.state.accounts.change_password(
        session.user_id,
        body.current_password,
        body.new_password,
        keep_session_id=session.session_id,
        actor=audit_actor(request, session),
    )
    return MessageResponse(message="Password changed.")


@router.post("/auth/update-profile", response_model=UserResponse)
def update_profile(
    request: Request,
    body: ProfileUpdateRequest,
    session: SessionContext = Depends(require_session),
) -> UserResponse:
    updates = body.model_dump(exclude_none=True)
    if not updates or updates == {"preferences": {}}:
        raise ValidationError(detail="No fields to update.")
    user = request.app.state.accounts.update_profile(session.user_id, updates, actor=audit_actor(request, session))
    return UserResponse.from_user(user, request.app.state.clock())


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/admin/users", response_model=list[UserResponse])
def list_users(request: Request, admin: User = Depends(require_admin)) -> list[UserResponse]:
    now = request.app.state.clock()
    return [UserResponse.from_user(u.public(), now) for u in request.app.state.user_store.list_users()]


@router.post("/auth/admin/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate, admin: User = Depends(require_admin)) -> UserResponse:
    """Create an account. The new user must change the password at first login."""
    user = request.app.state.accounts.create_user(
        body.username,
        body.email,
        body.password,
        body.role,
        actor=audit_actor(request, request.state.session_context),
    )
    return UserResponse.from_user(user, request.app.state.clock())


@router.patch("/auth/admin/users/{user_id}/active", response_model=UserResponse)
def set_user_active(
    request: Request,
    user_id: int,
    body: UserActiveUpdate,
    admin: User = Depends(require_admin),
) -> UserResponse:
    """Activate or deactivate a user. Self-deactivation and removing the last admin are refused."""
    user = request.app.state.accounts.set_active(
        user_id,
        body.active,
        admin.id,
        actor=audit_actor(request, request.state.session_context),
    )
    return UserResponse.from_user(user, request.app.state.clock())


@router.get("/auth/admin/audit-logs", response_model=AuditLogResponse)
def audit_logs(
    request: Request,
    day: date | None = Query(default=None, description="UTC date (YYYY-MM-DD); default walks newest files first."),
    event_type: EventType | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    admin: User = Depends(require_admin),
) -> AuditLogResponse:
    """Return recent audit entries, newest first, each with its integrity check result."""
    audit = request.app.state.audit
    pairs = audit.read_entries(day=day, event_type=event_type, limit=limit)
    entries = [
        AuditEntryResponse(
            audit_id=entry.audit_id,
            timestamp=entry.timestamp,
            event_type=entry.event_type,
            action=entry.action,
            result=entry.result,
            actor_id=entry.actor_id,
            actor_email=entry.actor_email,
            session_id=entry.session_id,
            source_address=entry.source_address,
            detail=entry.detail,
            verified=verified,
        )
        for entry, verified in pairs
    ]
    audit.record(
        EventType.ACCESS,
        "VIEW_AUDIT_LOGS",
        "SUCCESS",
        actor=audit_actor(request, request.state.session_context),
        detail={"returned": len(entries)},
    )
    return AuditLogResponse(
        entries=entries,
        count=len(entries),
        unverified=sum(1 for e in entries if not e.verified),
    )
