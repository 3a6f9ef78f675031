"""
auth/accounts.py -- Account lifecycle: first-boot admin, user creation,
password change, profile updates, activation.

Every rule that protects the account table lives here rather than in the
routes, so it holds no matter which caller mutates a user:
  - passwords must satisfy core.validation.check_password_strength
  - usernames and emails are unique (emails compared lower-cased)
  - an admin cannot deactivate their own account
  - the last active admin can never be deactivated
  - deactivation ends every session of the target user
  - a password change ends every other session of that user

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import logging
import re
import secrets
from typing import Any

from sqlalchemy.exc import IntegrityError

from audit.models import ActorContext, EventType
from audit.trail import AuditTrail
from auth.models import ROLE_ADMIN, ROLES, User
from auth.sessions import PASSWORD_CHANGED, USER_DEACTIVATED, SessionRegistry
from auth.store import UserStore
from auth.tokens import hash_password, verify_password
from core.errors import NotFoundError, ValidationError
from core.validation import check_password_strength, normalize_email

logger = logging.getLogger("ticketgate.accounts")

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,64}$")

PROFILE_FIELDS = frozenset({"email", "preferences"})
PREFERENCE_KEYS = frozenset({"session_timeout_minutes", "theme"})
THEMES = ("light", "dark", "system")
SESSION_TIMEOUT_MIN_MINUTES = 5
SESSION_TIMEOUT_MAX_MINUTES = 480


class AccountManager:
    def __init__(self, store: UserStore, sessions: SessionRegistry, audit: AuditTrail) -> None:
        self._store = store
        self._sessions = sessions
        self._audit = audit

    # ------------------------------------------------------------------
    # First boot
    # ------------------------------------------------------------------

    def ensure_default_admin(self, username: str, email: str, password: str = "") -> User | None:
        """Create the first admin when the store is empty. No-op otherwise.

        With no configured password a random one is generated and written to
        the log exactly once. Either way the account must change its password
        at first login.
        """
        if self._store.has_users():
            return None
        generated = not password
        if generated:
            password = secrets.token_urlsafe(18)
        user = User(
            username=username,
            email=email.lower(),
            role=ROLE_ADMIN,
            hashed_password=hash_password(password),
            must_change_password=True,
        )
        try:
            user.id = self._store.create_user(user)
        except IntegrityError:
            # Another worker created it between has_users() and the insert.
            logger.info("Default admin already created by a concurrent worker")
            return None
        if generated:
            logger.warning(
                "Created default admin %r with one-time password: %s -- change it at first login.",
                username,
                password,
            )
        else:
            logger.warning("Created default admin %r from DEFAULT_ADMIN_PASSWORD.", username)
        self._audit.record(
            EventType.SYSTEM,
            "DEFAULT_ADMIN_CREATED",
            "SUCCESS",
            detail={"username": username, "generated_credential": generated},
        )
        return user.public()

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        role: str = "user",
        *,
        must_change_password: bool = True,
        actor: ActorContext | None = None,
    ) -> User:
        if not _USERNAME_RE.match(username or ""):
            raise ValidationError(detail="Username must be 3-64 characters: letters, digits, '.', '_' or '-'.")
        email = normalize_email(email)
        check_password_strength(password)
        if role not in ROLES:
            raise ValidationError(detail=f"Role must be one of: {', '.join(ROLES)}.")
        if self._store.get_by_username(username) or self._store.get_by_email(email):
            raise ValidationError(detail="A user with that username or email already exists.")

        user = User(
            username=username,
            email=email,
            role=role,
            hashed_password=hash_password(password),
            must_change_password=must_change_password,
        )
        try:
            user.id = self._store.create_user(user)
        except IntegrityError:
            raise ValidationError(detail="A user with that username or email already exists.") from None

        self._audit.record(
            EventType.DATA_MODIFICATION,
            "USER_CREATED",
            "SUCCESS",
            actor=actor,
            detail={"target_user_id": user.id, "username": username, "role": role},
        )
        logger.info("User id=%s created with role %s", user.id, role)
        return self._store.get_by_id(user.id).public()

    def set_active(self, target_id: int, active: bool, acting_user_id: int, *, actor: ActorContext | None = None) -> User:
        """Activate or deactivate an account.

        Activation also clears any lockout. Deactivation terminates the
        target's sessions immediately.
        """
        target = self._store.get_by_id(target_id)
        if target is None:
            raise NotFoundError("User not found.")
        if not active:
            if target_id == acting_user_id:
                raise ValidationError(detail="You cannot deactivate your own account.")
            if target.is_admin and target.is_active and self._store.count_active_admins() <= 1:
                raise ValidationError(detail="Cannot deactivate the last active admin.")

        if active:
            self._store.update_user(target_id, is_active=True, failed_attempts=0, locked_until=None)
        else:
            self._store.update_user(target_id, is_active=False)
            ended = self._sessions.terminate_user_sessions(target_id, USER_DEACTIVATED)
            if ended:
                logger.info("Ended %d session(s) of deactivated user id=%s", ended, target_id)

        self._audit.record(
            EventType.DATA_MODIFICATION,
            "USER_ACTIVATED" if active else "USER_DEACTIVATED",
            "SUCCESS",
            actor=actor,
            detail={"target_user_id": target_id},
        )
        return self._store.get_by_id(target_id).public()

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: str | None = None,
        actor: ActorContext | None = None,
    ) -> None:
        """Verify the current password, store the new one, end other sessions."""
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if not verify_password(current_password, user.hashed_password or ""):
            self._audit.record(
                EventType.AUTHENTICATION,
                "PASSWORD_CHANGE",
                "FAILURE",
                actor=actor,
                detail={"reason": "CURRENT_CREDENTIAL_MISMATCH"},
            )
            raise ValidationError(detail="Current password is incorrect.")
        if new_password == current_password:
            raise ValidationError(detail="New password must differ from the current password.")
        check_password_strength(new_password)

        self._store.update_user(user_id, hashed_password=hash_password(new_password), must_change_password=False)
        ended = self._sessions.terminate_user_sessions(user_id, PASSWORD_CHANGED, keep_session_id=keep_session_id)
        self._audit.record(
            EventType.AUTHENTICATION,
            "PASSWORD_CHANGE",
            "SUCCESS",
            actor=actor,
            detail={"other_sessions_ended": ended},
        )

    def update_profile(self, user_id: int, updates: dict[str, Any], *, actor: ActorContext | None = None) -> User:
        """Apply whitelisted profile changes (email, preferences).

        Preferences are merged into the stored ones; unknown fields or keys
        are rejected rather than ignored.
        """
        unknown = set(updates) - PROFILE_FIELDS
        if unknown:
            raise ValidationError(detail=f"Fields not editable: {', '.join(sorted(unknown))}.")
        user = self._store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")

        changes: dict[str, Any] = {}
        if updates.get("email") is not None:
            email = normalize_email(updates["email"])
            other = self._store.get_by_email(email)
            if other is not None and other.id != user_id:
                raise ValidationError(detail="That email is already in use.")
            changes["email"] = email
        if updates.get("preferences") is not None:
            changes["preferences"] = {**user.preferences, **_check_preferences(updates["preferences"])}

        if changes:
            self._store.update_user(user_id, **changes)
            self._audit.record(
                EventType.DATA_MODIFICATION,
                "PROFILE_UPDATED",
                "SUCCESS",
                actor=actor,
                detail={"changed": sorted(changes)},
            )
        return self._store.get_by_id(user_id).public()


def _check_preferences(preferences: Any) -> dict[str, Any]:
    if not isinstance(preferences, dict):
        raise ValidationError(detail="Preferences must be an object.")
    unknown = set(preferences) - PREFERENCE_KEYS
    if unknown:
        raise ValidationError(detail=f"Unknown preferences: {', '.join(sorted(unknown))}.")
    cleaned: dict[str, Any] = {}
    if "session_timeout_minutes" in preferences:
        minutes = preferences["session_timeout_minutes"]
        if (
            isinstance(minutes, bool)
            or not isinstance(minutes, int)
            or not SESSION_TIMEOUT_MIN_MINUTES <= minutes <= SESSION_TIMEOUT_MAX_MINUTES
        ):
            raise ValidationError(
                detail=(
                    f"session_timeout_minutes must be an integer between "
                    f"{SESSION_TIMEOUT_MIN_MINUTES} and {SESSION_TIMEOUT_MAX_MINUTES}."
                )
            )
        cleaned["session_timeout_minutes"] = minutes
    if "theme" in preferences:
        if preferences["theme"] not in THEMES:
            raise ValidationError(detail=f"theme must be one of: {', '.join(THEMES)}.")
        cleaned["theme"] = preferences["theme"]
    return cleaned
