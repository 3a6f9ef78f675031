"""
auth/authenticator.py -- Password login with lockout.

Order of checks for authenticate(identifier, password):
  1. Look up by exact username, then by email (case-insensitive).
  2. Unknown account        -> INVALID_CREDENTIALS (bcrypt still runs).
  3. Lock still in force    -> ACCOUNT_LOCKED. A lapsed lock is cleared
                               together with the failure counter.
  4. Account deactivated    -> ACCOUNT_DISABLED.
  5. bcrypt mismatch        -> failed_attempts += 1 in a single UPDATE,
                               lock on reaching the threshold,
                               INVALID_CREDENTIALS.
  6. Success                -> counter reset, last_login stamped. A lock set
                               by a concurrent failure wins: ACCOUNT_LOCKED.

Every branch spends one bcrypt verification, so response time does not
reveal which check failed. Every call writes an AUTHENTICATION/LOGIN audit
entry carrying the internal reason; the HTTP layer collapses all failures
into one generic 401.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from audit.models import ActorContext, EventType
from audit.trail import AuditTrail
from auth.models import RequestContext, User
from auth.store import UserStore
from auth.tokens import burn_dummy_check, verify_password

logger = logging.getLogger("ticketgate.auth")

INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
ACCOUNT_DISABLED = "ACCOUNT_DISABLED"


class AuthResult(NamedTuple):
    ok: bool
    user: User | None = None
    must_change_password: bool = False
    reason: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Authenticator:
    """Verifies credentials against the UserStore and maintains lockout state."""

    def __init__(
        self,
        store: UserStore,
        audit: AuditTrail,
        *,
        lockout_threshold: int = 5,
        lockout_minutes: int = 15,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self.lockout_threshold = lockout_threshold
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self._clock = clock

    def authenticate(self, identifier: str, password: str, ctx: RequestContext | None = None) -> AuthResult:
        ctx = ctx or RequestContext()
        user = self._store.get_by_username(identifier) or self._store.get_by_email(identifier)
        if user is None:
            burn_dummy_check(password)
            return self._fail(None, identifier, INVALID_CREDENTIALS, ctx)

        now = self._clock()
        if user.locked_until:
            if user.is_locked(now):
                burn_dummy_check(password)
                return self._fail(user, identifier, ACCOUNT_LOCKED, ctx)
            self._store.update_user(user.id, failed_attempts=0, locked_until=None)
            user.failed_attempts = 0
            user.locked_until = None
            logger.info("Lockout lapsed for user id=%s; failure counter reset", user.id)

        if not user.is_active:
            burn_dummy_check(password)
            return self._fail(user, identifier, ACCOUNT_DISABLED, ctx)

        if not verify_password(password, user.hashed_password or ""):
            lock_until = (now + self.lockout_duration).isoformat()
            attempts, locked_until = self._store.record_failure(user.id, self.lockout_threshold, lock_until)
            locked = locked_until == lock_until
            if locked:
                logger.warning("User id=%s locked after %d failed attempts", user.id, attempts)
            return self._fail(
                user,
                identifier,
                INVALID_CREDENTIALS,
                ctx,
                failed_attempts=attempts,
                locked=locked,
            )

        if not self._store.record_success(user.id, now.isoformat()):
            # Parallel failures locked the account while bcrypt was running.
            return self._fail(user, identifier, ACCOUNT_LOCKED, ctx)
        fresh = self._store.get_by_id(user.id) or user
        self._audit.record(
            EventType.AUTHENTICATION,
            "LOGIN",
            "SUCCESS",
            actor=self._actor(fresh, ctx),
            detail={"username": fresh.username, "method": "password"},
        )
        return AuthResult(ok=True, user=fresh.public(), must_change_password=fresh.must_change_password)

    def _fail(self, user: User | None, identifier: str, reason: str, ctx: RequestContext, **extra) -> AuthResult:
        self._audit.record(
            EventType.AUTHENTICATION,
            "LOGIN",
            "FAILURE",
            actor=self._actor(user, ctx),
            detail={"username": identifier, "reason": reason, **extra},
        )
        return AuthResult(ok=False, reason=reason)

    @staticmethod
    def _actor(user: User | None, ctx: RequestContext) -> ActorContext:
        return ActorContext(
            user_id=user.id if user else None,
            email=user.email if user else None,
            source_address=ctx.address,
            user_agent=ctx.user_agent,
        )
