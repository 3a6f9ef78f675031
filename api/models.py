"""
API request and response models for TicketGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Input rules live in core/validation.py; the field validators below call into
it so the API and the service layer enforce exactly the same constraints, and
a violation surfaces as the standard 422 envelope.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import User
from core.errors import ValidationError as DomainValidationError
from core.validation import (
    TRANSITION_ID_MAX,
    TRANSITION_ID_MIN,
    validate_comment,
)

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health. Aggregate values only."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    scanner_mode: str
    active_sessions: int


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """username may also be the account email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_timeout_minutes: Optional[int] = None
    theme: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    """Only email and preferences are editable; anything else is a 422."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=254)
    preferences: Optional[PreferencesUpdate] = None


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/admin/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=64)
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)
    role: str = Field(default="user", pattern=r"^(admin|user)$")


class UserActiveUpdate(BaseModel):
    active: bool


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. There is deliberately no password field."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    is_active: bool
    must_change_password: bool
    locked: bool = False
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    preferences: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_user(cls, user: User, now: Optional[datetime] = None) -> "UserResponse":
        now = now or datetime.now(timezone.utc)
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            is_active=user.is_active,
            must_change_password=user.must_change_password,
            locked=user.is_locked(now),
            last_login=user.last_login,
            created_at=user.created_at,
            preferences=dict(user.preferences),
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_at: str
    must_change_password: bool
    user: UserResponse


class SessionStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    created_at: str
    last_activity: str
    idle_seconds_remaining: int
    absolute_seconds_remaining: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    audit_id: str
    timestamp: str
    event_type: str
    action: str
    result: str
    actor_id: Optional[int] = None
    actor_email: Optional[str] = None
    session_id: Optional[str] = None
    source_address: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict)
    verified: bool


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    entries: list[AuditEntryResponse]
    count: int
    unverified: int


# ---------------------------------------------------------------------------
# Tickets -- requests
# ---------------------------------------------------------------------------


class CommentRequest(BaseModel):
    """The validator returns the trimmed, markup-escaped comment."""

    comment: str

    @field_validator("comment")
    @classmethod
    def clean_comment(cls, value: str) -> str:
        try:
            return validate_comment(value)
        except DomainValidationError as exc:
            raise ValueError(exc.detail) from None


class TransitionRequest(BaseModel):
    transition_id: int = Field(ge=TRANSITION_ID_MIN, le=TRANSITION_ID_MAX)


# ---------------------------------------------------------------------------
# Tickets -- responses
# ---------------------------------------------------------------------------


class IssuePage(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: list[dict[str, Any]]
    total: int
    start_at: int
    max_results: int


class TrackerAccount(BaseModel):
    """The tracker service account the proxy acts as."""

    model_config = ConfigDict(frozen=True)

    account_id: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None


class TransitionList(BaseModel):
    model_config = ConfigDict(frozen=True)

    transitions: list[dict[str, Any]]


class CommentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    comment_id: Optional[str] = None
    message: str = "Comment added successfully."
