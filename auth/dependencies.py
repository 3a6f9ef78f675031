"""
auth/dependencies.py -- FastAPI Depends() helpers: the request gate.

require_session() is the gate for every protected route. It validates the
session through the SessionRegistry on app.state and either returns the
SessionContext or raises AuthenticationError, in which case the route
handler never runs. Every rejection reason collapses to the same 401.

require_role(role) layers a role check on top. A mismatch (or a user record
that vanished or was deactivated) is written to the audit trail as
SECURITY/UNAUTHORIZED_ACCESS_ATTEMPT before the 403.

request_context() is the single place a Starlette request becomes the
framework-free RequestContext. api/content_policy.py reuses it for raw ASGI
scopes.

Layer rule: no imports from api/ or tracker/.
  auth/dependencies.py may import from fastapi because it is part of the
  FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from audit.models import ActorContext, EventType
from auth.models import ROLE_ADMIN, RequestContext, SessionContext, User
from auth.sessions import USER_DEACTIVATED, SessionRejected
from auth.tokens import SESSION_COOKIE
from core.config import get_settings
from core.errors import AuthenticationError, AuthorizationError


def client_address(request: Request) -> str | None:
    """Client address, honouring X-Forwarded-For only when configured to."""
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else None


def request_context(request: Request) -> RequestContext:
    bearer = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        bearer = auth_header[7:].strip() or None
    return RequestContext(
        address=client_address(request),
        user_agent=request.headers.get("User-Agent"),
        bearer_token=bearer,
        cookie_token=request.cookies.get(SESSION_COOKIE) or None,
    )


def audit_actor(request: Request, context: SessionContext | None = None) -> ActorContext:
    """ActorContext for audit entries written while handling request."""
    return ActorContext(
        user_id=context.user_id if context else None,
        email=context.email if context else None,
        session_id=context.session_id if context else None,
        source_address=client_address(request),
        user_agent=request.headers.get("User-Agent"),
    )


def require_session(request: Request) -> SessionContext:
    """Require a live session. Raises AuthenticationError (401) otherwise.

    On success the context is stored on request.state.session_context and a
    re-signed sliding token on request.state.refreshed_session, which the
    access-audit middleware writes back to the client.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: SessionContext = Depends(require_session)): ...
    """
    registry = request.app.state.sessions
    try:
        context = registry.validate(request_context(request))
    except SessionRejected:
        raise AuthenticationError() from None
    request.state.session_context = context
    issued = registry.refresh_token(context)
    if issued is not None:
        request.state.refreshed_session = issued
    return context


def get_current_user(request: Request, context: SessionContext = Depends(require_session)) -> User:
    """Require a session and return the (hash-free) user record behind it."""
    user = request.app.state.user_store.get_by_id(context.user_id)
    if user is None or not user.is_active:
        request.app.state.sessions.terminate_session(context.session_id, USER_DEACTIVATED)
        raise AuthenticationError()
    return user.public()


def require_role(role: str):
    """Build a dependency that requires a session whose user holds `role`."""

    def dependency(request: Request, context: SessionContext = Depends(require_session)) -> User:
        user = request.app.state.user_store.get_by_id(context.user_id)
        if user is None or not user.is_active or user.role != role:
            request.app.state.audit.record(
                EventType.SECURITY,
                "UNAUTHORIZED_ACCESS_ATTEMPT",
                "FAILURE",
                actor=audit_actor(request, context),
                detail={"required_role": role, "method": request.method, "path": request.url.path},
            )
            raise AuthorizationError()
        return user.public()

    dependency.__name__ = f"require_{role}"
    return dependency


require_admin = require_role(ROLE_ADMIN)
