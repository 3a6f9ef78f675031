"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). UserStore and
SessionRegistry own persistence and lifecycle; these types carry shape.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)


@dataclass
class User:
    """A local account in the credential store.

    email is stored lower-cased; username is matched exactly. hashed_password
    must never leave the auth layer -- use public() before handing a User to
    a route, a log line, or an audit entry.

    preferences is a dict persisted as JSON text. Known keys:
    session_timeout_minutes (per-user idle timeout override) and theme.
    """

    username: str
    email: str
    role: str = ROLE_USER
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    must_change_password: bool = False
    failed_attempts: int = 0
    locked_until: str | None = None  # ISO 8601 UTC
    last_login: str | None = None
    preferences: dict[str, Any] = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def is_locked(self, now: datetime) -> bool:
        """True while a lockout is in force. A lapsed locked_until does not count."""
        return self.locked_until is not None and datetime.fromisoformat(self.locked_until) > now

    def public(self) -> "User":
        """Return a copy with the password hash removed."""
        return replace(self, hashed_password=None, preferences=dict(self.preferences))

    def preferences_json(self) -> str:
        return json.dumps(self.preferences, sort_keys=True)


@dataclass
class Session:
    """An in-memory login session owned by SessionRegistry.

    idle_timeout is per session (seconds), so a user's own preference can
    shorten or lengthen it within the absolute cap.
    """

    id: str
    user_id: int
    email: str
    display_name: str
    created_at: datetime
    last_activity: datetime
    address: str | None
    user_agent: str | None
    idle_timeout: float
    is_active: bool = True


@dataclass(frozen=True)
class SessionContext:
    """The identity attached to a request after the gate has validated it."""

    session_id: str
    user_id: int
    email: str
    display_name: str


@dataclass(frozen=True)
class RequestContext:
    """Framework-free view of an inbound request.

    Built by the api layer from a Starlette request or raw ASGI scope so the
    registry and authenticator never import the web framework.
    """

    address: str | None = None
    user_agent: str | None = None
    bearer_token: str | None = None
    cookie_token: str | None = None

    @property
    def token(self) -> str | None:
        """Bearer header wins; the cookie is the fallback."""
        return self.bearer_token or self.cookie_token or None
