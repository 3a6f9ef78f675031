"""
auth/sessions.py -- In-memory session registry with idle and absolute timeouts.

The registry is the single owner of live sessions. A client holds a signed
JWT that names its session ("sid"); the token alone grants nothing, because
every request re-checks the server-side record:

  (a) token from the Authorization: Bearer header, else the session cookie
  (b) signature and token expiry
  (c) session exists and is active
  (d) idle time     <= the session's idle timeout       (else terminated)
  (e) absolute age  <= the absolute timeout              (else terminated)
  (f) request address == the address the session began from, when binding
      is enabled                                         (else terminated)
  (g) last_activity = now

Address binding is on by default and configurable (SESSION_BIND_ADDRESS).
Users behind rotating proxies or carrier-grade NAT will be logged out when
their apparent address changes; deployments with such users should turn it
off.

Concurrency: one threading.Lock guards the session map. It is never held
while writing audit entries or signing tokens that need no session state.

Token expiry is checked by python-jose against wall-clock time. Session
timing uses the injected clock, so tests can age a session without
invalidating its token.

Layer rule: no imports from api/ or tracker/.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from jose import ExpiredSignatureError, JWTError

from audit.models import ActorContext, EventType
from audit.trail import AuditTrail
from auth.models import RequestContext, Session, SessionContext, User
from auth.tokens import decode_session_token, encode_session_token

logger = logging.getLogger("ticketgate.sessions")

# Rejection reasons (validate)
NO_TOKEN = "NO_TOKEN"
INVALID_TOKEN = "INVALID_TOKEN"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
SESSION_TIMEOUT = "SESSION_TIMEOUT"
SESSION_EXPIRED = "SESSION_EXPIRED"
SESSION_INVALID = "SESSION_INVALID"

# Termination reasons
USER_LOGOUT = "USER_LOGOUT"
TIMEOUT_INACTIVITY = "TIMEOUT_INACTIVITY"
TIMEOUT_ABSOLUTE = "TIMEOUT_ABSOLUTE"
IP_MISMATCH = "IP_MISMATCH"
CLEANUP_EXPIRED = "CLEANUP_EXPIRED"
USER_DEACTIVATED = "USER_DEACTIVATED"
PASSWORD_CHANGED = "PASSWORD_CHANGED"


class SessionRejected(Exception):
    """Raised by validate(). reason is for the audit trail, never the client."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class IssuedSession(NamedTuple):
    token: str
    session_id: str
    expires_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRegistry:
    """Creates, validates, refreshes, and terminates sessions.

    Args:
        secret_key:               HS256 signing key for session tokens.
        audit:                    AuditTrail receiving SECURITY entries.
        idle_timeout_minutes:     Default inactivity limit.
        absolute_timeout_minutes: Hard cap on session age, whatever the activity.
        bind_address:             Terminate sessions whose request address changes.
        clock:                    Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        secret_key: str,
        audit: AuditTrail,
        *,
        idle_timeout_minutes: int = 15,
        absolute_timeout_minutes: int = 60,
        bind_address: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret_key = secret_key
        self._audit = audit
        self.idle_timeout = timedelta(minutes=idle_timeout_minutes)
        self.absolute_timeout = timedelta(minutes=absolute_timeout_minutes)
        self.bind_address = bind_address
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def create_session(self, ctx: RequestContext, user: User) -> IssuedSession:
        now = self._clock()
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            email=user.email,
            display_name=user.username,
            created_at=now,
            last_activity=now,
            address=ctx.address,
            user_agent=ctx.user_agent,
            idle_timeout=self._idle_timeout_for(user),
        )
        with self._lock:
            self._sessions[session.id] = session
        issued = self._sign(session, now)
        self._audit.record(
            EventType.SECURITY,
            "SESSION_CREATED",
            "SUCCESS",
            actor=_actor(session),
            detail={
                "idle_timeout_seconds": int(session.idle_timeout),
                "absolute_timeout_seconds": int(self.absolute_timeout.total_seconds()),
            },
        )
        logger.info("Session created for user id=%s", user.id)
        return issued

    def _idle_timeout_for(self, user: User) -> float:
        """Per-user preference override, bounded by the absolute timeout."""
        default = self.idle_timeout.total_seconds()
        minutes = (user.preferences or {}).get("session_timeout_minutes")
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes <= 0:
            return default
        return min(minutes * 60.0, self.absolute_timeout.total_seconds())

    def _sign(self, session: Session, now: datetime) -> IssuedSession:
        expires_at = min(
            now + timedelta(seconds=session.idle_timeout),
            session.created_at + self.absolute_timeout,
        )
        token = encode_session_token(
            self._secret_key,
            session_id=session.id,
            user_id=session.user_id,
            email=session.email,
            issued_at=now,
            expires_at=expires_at,
        )
        return IssuedSession(token=token, session_id=session.id, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, ctx: RequestContext) -> SessionContext:
        """Return the session identity for ctx or raise SessionRejected.

        Refreshes last_activity on success. Sessions failing the idle,
        absolute, or address checks are terminated before the rejection.
        """
        token = ctx.token
        if not token:
            self._reject(NO_TOKEN, ctx)
        try:
            claims = decode_session_token(token, self._secret_key)
        except ExpiredSignatureError:
            self._reject(TOKEN_EXPIRED, ctx)
        except JWTError:
            self._reject(INVALID_TOKEN, ctx)

        session_id = claims["sid"]
        now = self._clock()
        rejection: str | None = None
        termination: str | None = None
        removed: Session | None = None
        context: SessionContext | None = None

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active or str(session.user_id) != str(claims["sub"]):
                rejection = SESSION_NOT_FOUND
            elif now - session.last_activity > timedelta(seconds=session.idle_timeout):
                rejection, termination = SESSION_TIMEOUT, TIMEOUT_INACTIVITY
            elif now - session.created_at > self.absolute_timeout:
                rejection, termination = SESSION_EXPIRED, TIMEOUT_ABSOLUTE
            elif self.bind_address and session.address != ctx.address:
                rejection, termination = SESSION_INVALID, IP_MISMATCH
            else:
                session.last_activity = now
                context = _context(session)
            if termination is not None:
                removed = self._sessions.pop(session_id, None)

        if removed is not None:
            self._record_termination(removed, termination, now)
        if rejection is not None:
            self._reject(rejection, ctx, session_id)
        return context

    def peek(self, ctx: RequestContext) -> SessionContext | None:
        """Identify the caller without refreshing activity or terminating anything.

        Returns None whenever validate() would reject. Used to attribute audit
        entries outside the request gate.
        """
        token = ctx.token
        if not token:
            return None
        try:
            claims = decode_session_token(token, self._secret_key)
        except JWTError:
            return None
        now = self._clock()
        with self._lock:
            session = self._sessions.get(claims["sid"])
            if session is None or not self._is_live(session, now):
                return None
            if self.bind_address and session.address != ctx.address:
                return None
            return _context(session)

    def _reject(self, reason: str, ctx: RequestContext, session_id: str | None = None) -> None:
        self._audit.record(
            EventType.SECURITY,
            "SESSION_VALIDATION_FAILED",
            "FAILURE",
            actor=ActorContext(session_id=session_id, source_address=ctx.address, user_agent=ctx.user_agent),
            detail={"reason": reason},
        )
        logger.debug("Session rejected: %s", reason)
        raise SessionRejected(reason)

    def _is_live(self, session: Session, now: datetime) -> bool:
        return (
            session.is_active
            and now - session.last_activity <= timedelta(seconds=session.idle_timeout)
            and now - session.created_at <= self.absolute_timeout
        )

    # ------------------------------------------------------------------
    # Sliding refresh
    # ------------------------------------------------------------------

    def refresh_token(self, context: SessionContext) -> IssuedSession | None:
        """Re-sign a token for a live session. Expiry never passes the absolute cap.

        Returns None if the session is gone (e.g. terminated mid-request).
        """
        with self._lock:
            session = self._sessions.get(context.session_id)
        if session is None or not session.is_active:
            return None
        return self._sign(session, self._clock())

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate_session(self, session_id: str, reason: str) -> bool:
        """Remove a session. Unknown ids are a silent no-op (returns False)."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._record_termination(session, reason, self._clock())
        return True

    def terminate_user_sessions(self, user_id: int, reason: str, *, keep_session_id: str | None = None) -> int:
        """Terminate every session of a user, optionally sparing the caller's own."""
        with self._lock:
            doomed = [s for s in self._sessions.values() if s.user_id == user_id and s.id != keep_session_id]
            for session in doomed:
                del self._sessions[session.id]
        now = self._clock()
        for session in doomed:
            self._record_termination(session, reason, now)
        return len(doomed)

    def sweep(self) -> int:
        """Terminate every session past its idle or absolute limit. Returns the count."""
        now = self._clock()
        with self._lock:
            expired = [s for s in self._sessions.values() if not self._is_live(s, now)]
            for session in expired:
                del self._sessions[session.id]
        for session in expired:
            self._record_termination(session, CLEANUP_EXPIRED, now)
        if expired:
            logger.info("Session sweep removed %d expired session(s)", len(expired))
        return len(expired)

    def _record_termination(self, session: Session, reason: str, now: datetime) -> None:
        session.is_active = False
        self._audit.record(
            EventType.SECURITY,
            "SESSION_TERMINATED",
            "SUCCESS",
            actor=_actor(session),
            detail={
                "reason": reason,
                "duration_seconds": int((now - session.created_at).total_seconds()),
            },
        )
        logger.info("Session terminated for user id=%s (%s)", session.user_id, reason)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def describe(self, session_id: str) -> dict | None:
        """Timing view of one session for the session-status endpoint."""
        now = self._clock()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            idle_left = session.idle_timeout - (now - session.last_activity).total_seconds()
            absolute_left = (self.absolute_timeout - (now - session.created_at)).total_seconds()
            return {
                "session_id": session.id,
                "created_at": session.created_at.isoformat(),
                "last_activity": session.last_activity.isoformat(),
                "idle_seconds_remaining": max(int(idle_left), 0),
                "absolute_seconds_remaining": max(int(absolute_left), 0),
            }

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def stats(self) -> dict:
        return {
            "active_sessions": self.active_count,
            "idle_timeout_seconds": int(self.idle_timeout.total_seconds()),
            "absolute_timeout_seconds": int(self.absolute_timeout.total_seconds()),
            "bind_address": self.bind_address,
        }


def _context(session: Session) -> SessionContext:
    return SessionContext(
        session_id=session.id,
        user_id=session.user_id,
        email=session.email,
        display_name=session.display_name,
    )


def _actor(session: Session) -> ActorContext:
    return ActorContext(
        user_id=session.user_id,
        email=session.email,
        session_id=session.id,
        source_address=session.address,
        user_agent=session.user_agent,
    )
