"""
tests/test_sessions.py -- Unit tests for auth/sessions.py.

Time is driven by FakeClock. Token expiry is checked by python-jose against
the real clock, so every clock here starts at (or near) the real current
time; the TOKEN_EXPIRED case deliberately starts hours in the past.

Coverage:
  - every rejection reason: NO_TOKEN, INVALID_TOKEN, TOKEN_EXPIRED,
    SESSION_NOT_FOUND, SESSION_TIMEOUT, SESSION_EXPIRED, SESSION_INVALID
  - terminated sessions stay dead; termination reasons are audited
  - sliding refresh never passes the absolute cap
  - per-user idle timeout preference
  - sweep(), peek(), describe()
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from audit.models import EventType
from audit.trail import AuditTrail
from auth.models import RequestContext, User
from auth.sessions import (
    CLEANUP_EXPIRED,
    INVALID_TOKEN,
    IP_MISMATCH,
    NO_TOKEN,
    SESSION_EXPIRED,
    SESSION_INVALID,
    SESSION_NOT_FOUND,
    SESSION_TIMEOUT,
    TIMEOUT_ABSOLUTE,
    TIMEOUT_INACTIVITY,
    TOKEN_EXPIRED,
    USER_LOGOUT,
    SessionRegistry,
    SessionRejected,
)
from auth.tokens import encode_session_token
from conftest import TEST_SECRET, FakeClock

ADDRESS = "10.0.0.5"


def _user(user_id: int = 1, **prefs) -> User:
    return User(username=f"user{user_id}", email=f"user{user_id}@example.com", id=user_id, preferences=dict(prefs))


def _ctx(token: str | None = None, address: str = ADDRESS, *, cookie: str | None = None) -> RequestContext:
    return RequestContext(address=address, user_agent="pytest", bearer_token=token, cookie_token=cookie)


@pytest.fixture
def registry(audit_trail: AuditTrail, clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(TEST_SECRET, audit_trail, idle_timeout_minutes=15, absolute_timeout_minutes=60, clock=clock)


def _reason(registry: SessionRegistry, ctx: RequestContext) -> str:
    with pytest.raises(SessionRejected) as exc_info:
        registry.validate(ctx)
    return exc_info.value.reason


def _security_actions(audit_trail: AuditTrail) -> list[tuple[str, dict]]:
    return [(e.action, e.detail) for e, _ in reversed(audit_trail.read_entries(event_type=EventType.SECURITY, limit=1000))]


class TestCreateAndValidate:
    def test_valid_session_returns_context(self, registry: SessionRegistry) -> None:
        issued = registry.create_session(_ctx(), _user())
        context = registry.validate(_ctx(issued.token))
        assert context.session_id == issued.session_id
        assert context.user_id == 1
        assert context.email == "user1@example.com"
        assert context.display_name == "user1"

    def test_cookie_used_when_no_bearer(self, registry: SessionRegistry) -> None:
        issued = registry.create_session(_ctx(), _user())
        assert registry.validate(_ctx(cookie=issued.token)).session_id == issued.session_id

    def test_bearer_wins_over_cookie(self, registry: SessionRegistry) -> None:
        issued = registry.create_session(_ctx(), _user())
        assert _reason(registry, _ctx("garbage", cookie=issued.token)) == INVALID_TOKEN

    def test_creation_audited(self, registry: SessionRegistry, audit_trail: AuditTrail) -> None:
        registry.create_session(_ctx(), _user())
        [(action, detail)] = _security_actions(audit_trail)
        assert action == "SESSION_CREATED"
        assert detail == {"idle_timeout_seconds": 900, "absolute_timeout_seconds": 3600}

    def test_initial_expiry_is_idle_timeout(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user())
        assert issued.expires_at == clock() + timedelta(minutes=15)


class TestRejections:
    def test_no_token(self, registry: SessionRegistry) -> None:
        assert _reason(registry, _ctx()) == NO_TOKEN

    def test_malformed_token(self, registry: SessionRegistry) -> None:
        assert _reason(registry, _ctx("not.a.jwt")) == INVALID_TOKEN

    def test_wrong_signature(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user())
        forged = encode_session_token(
            "some-other-key-that-is-long-enough-0123456789",
            session_id=issued.session_id,
            user_id=1,
            email="user1@example.com",
            issued_at=clock(),
            expires_at=clock() + timedelta(minutes=5),
        )
        assert _reason(registry, _ctx(forged)) == INVALID_TOKEN

    def test_expired_token(self, audit_trail: AuditTrail) -> None:
        past = FakeClock(datetime.now(timezone.utc) - timedelta(hours=2))
        stale = SessionRegistry(TEST_SECRET, audit_trail, clock=past)
        issued = stale.create_session(_ctx(), _user())
        assert _reason(stale, _ctx(issued.token)) == TOKEN_EXPIRED

    def test_unknown_session(self, registry: SessionRegistry, clock: FakeClock) -> None:
        token = encode_session_token(
            TEST_SECRET,
            session_id="never-issued",
            user_id=1,
            email="user1@example.com",
            issued_at=clock(),
            expires_at=clock() + timedelta(minutes=5),
        )
        assert _reason(registry, _ctx(token)) == SESSION_NOT_FOUND

    def test_subject_mismatch_treated_as_not_found(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user(1))
        token = encode_session_token(
            TEST_SECRET,
            session_id=issued.session_id,
            user_id=2,
            email="user2@example.com",
            issued_at=clock(),
            expires_at=clock() + timedelta(minutes=5),
        )
        assert _reason(registry, _ctx(token)) == SESSION_NOT_FOUND

    def test_idle_timeout_terminates(self, registry: SessionRegistry, clock: FakeClock, audit_trail: AuditTrail) -> None:
        issued = registry.create_session(_ctx(), _user())
        clock.advance(minutes=15, seconds=1)
        assert _reason(registry, _ctx(issued.token)) == SESSION_TIMEOUT
        assert _reason(registry, _ctx(issued.token)) == SESSION_NOT_FOUND
        terminated = [d for a, d in _security_actions(audit_trail) if a == "SESSION_TERMINATED"]
        assert terminated == [{"reason": TIMEOUT_INACTIVITY, "duration_seconds": 901}]

    def test_activity_within_idle_window_keeps_session(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user())
        for _ in range(3):
            clock.advance(minutes=14)
            registry.validate(_ctx(issued.token))

    def test_absolute_timeout_despite_activity(self, registry: SessionRegistry, clock: FakeClock, audit_trail: AuditTrail) -> None:
        issued = registry.create_session(_ctx(), _user())
        for _ in range(4):
            clock.advance(minutes=14)
            registry.validate(_ctx(issued.token))
        clock.advance(minutes=5)
        assert _reason(registry, _ctx(issued.token)) == SESSION_EXPIRED
        terminated = [d["reason"] for a, d in _security_actions(audit_trail) if a == "SESSION_TERMINATED"]
        assert terminated == [TIMEOUT_ABSOLUTE]

    def test_address_change_terminates(self, registry: SessionRegistry, audit_trail: AuditTrail) -> None:
        issued = registry.create_session(_ctx(), _user())
        assert _reason(registry, _ctx(issued.token, address="10.9.9.9")) == SESSION_INVALID
        assert _reason(registry, _ctx(issued.token)) == SESSION_NOT_FOUND
        terminated = [d["reason"] for a, d in _security_actions(audit_trail) if a == "SESSION_TERMINATED"]
        assert terminated == [IP_MISMATCH]

    def test_address_binding_can_be_disabled(self, audit_trail: AuditTrail, clock: FakeClock) -> None:
        registry = SessionRegistry(TEST_SECRET, audit_trail, bind_address=False, clock=clock)
        issued = registry.create_session(_ctx(), _user())
        assert registry.validate(_ctx(issued.token, address="10.9.9.9")).user_id == 1

    def test_rejections_audited_without_token(self, registry: SessionRegistry, audit_trail: AuditTrail) -> None:
        _reason(registry, _ctx("not.a.jwt"))
        [(entry, _)] = audit_trail.read_entries(event_type=EventType.SECURITY)
        assert entry.action == "SESSION_VALIDATION_FAILED"
        assert entry.result == "FAILURE"
        assert entry.detail == {"reason": INVALID_TOKEN}
        assert entry.source_address == ADDRESS
        assert "not.a.jwt" not in repr(entry)


class TestRefresh:
    def test_refresh_slides_expiry(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user())
        clock.advance(minutes=10)
        context = registry.validate(_ctx(issued.token))
        refreshed = registry.refresh_token(context)
        assert refreshed.session_id == issued.session_id
        assert refreshed.expires_at == clock() + timedelta(minutes=15)
        assert registry.validate(_ctx(refreshed.token)).session_id == issued.session_id

    def test_refresh_capped_at_absolute(self, registry: SessionRegistry, clock: FakeClock) -> None:
        created = clock()
        issued = registry.create_session(_ctx(), _user())
        for _ in range(3):
            clock.advance(minutes=12)
            context = registry.validate(_ctx(issued.token))
        clock.advance(minutes=14)  # 50 minutes in
        context = registry.validate(_ctx(issued.token))
        assert registry.refresh_token(context).expires_at == created + timedelta(minutes=60)

    def test_refresh_of_terminated_session_is_none(self, registry: SessionRegistry) -> None:
        issued = registry.create_session(_ctx(), _user())
        context = registry.validate(_ctx(issued.token))
        registry.terminate_session(issued.session_id, USER_LOGOUT)
        assert registry.refresh_token(context) is None


class TestPerUserTimeout:
    def test_longer_preference_honoured(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user(session_timeout_minutes=30))
        clock.advance(minutes=20)
        assert registry.validate(_ctx(issued.token)).user_id == 1

    def test_shorter_preference_honoured(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user(session_timeout_minutes=5))
        clock.advance(minutes=6)
        assert _reason(registry, _ctx(issued.token)) == SESSION_TIMEOUT

    def test_preference_capped_at_absolute(self, registry: SessionRegistry) -> None:
        issued = registry.create_session(_ctx(), _user(session_timeout_minutes=480))
        info = registry.describe(issued.session_id)
        assert info["idle_seconds_remaining"] == 3600

    @pytest.mark.parametrize("bad", [True, "30", 0, -5, None])
    def test_invalid_preference_ignored(self, registry: SessionRegistry, bad) -> None:
        issued = registry.create_session(_ctx(), _user(session_timeout_minutes=bad))
        assert registry.describe(issued.session_id)["idle_seconds_remaining"] == 900


class TestTermination:
    def test_terminate_is_idempotent(self, registry: SessionRegistry, audit_trail: AuditTrail) -> None:
        issued = registry.create_session(_ctx(), _user())
        assert registry.terminate_session(issued.session_id, USER_LOGOUT) is True
        assert registry.terminate_session(issued.session_id, USER_LOGOUT) is False
        assert registry.terminate_session("unknown", USER_LOGOUT) is False
        terminated = [d["reason"] for a, d in _security_actions(audit_trail) if a == "SESSION_TERMINATED"]
        assert terminated == [USER_LOGOUT]
        assert _reason(registry, _ctx(issued.token)) == SESSION_NOT_FOUND

    def test_terminate_user_sessions_keeps_current(self, registry: SessionRegistry) -> None:
        keep = registry.create_session(_ctx(), _user(1))
        other = registry.create_session(_ctx(), _user(1))
        bystander = registry.create_session(_ctx(), _user(2))
        assert registry.terminate_user_sessions(1, "PASSWORD_CHANGED", keep_session_id=keep.session_id) == 1
        assert registry.validate(_ctx(keep.token)).user_id == 1
        assert registry.validate(_ctx(bystander.token)).user_id == 2
        assert _reason(registry, _ctx(other.token)) == SESSION_NOT_FOUND


class TestSweepAndIntrospection:
    def test_sweep_removes_only_expired(self, registry: SessionRegistry, clock: FakeClock, audit_trail: AuditTrail) -> None:
        old = registry.create_session(_ctx(), _user(1))
        clock.advance(minutes=10)
        fresh = registry.create_session(_ctx(), _user(2))
        clock.advance(minutes=6)
        assert registry.sweep() == 1
        assert registry.active_count == 1
        assert registry.describe(old.session_id) is None
        assert registry.describe(fresh.session_id) is not None
        terminated = [d["reason"] for a, d in _security_actions(audit_trail) if a == "SESSION_TERMINATED"]
        assert terminated == [CLEANUP_EXPIRED]
        assert registry.sweep() == 0

    def test_peek_does_not_refresh(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user())
        clock.advance(minutes=10)
        assert registry.peek(_ctx(issued.token)).session_id == issued.session_id
        clock.advance(minutes=6)
        assert registry.peek(_ctx(issued.token)) is None
        assert _reason(registry, _ctx(issued.token)) == SESSION_TIMEOUT

    def test_peek_never_raises(self, registry: SessionRegistry) -> None:
        assert registry.peek(_ctx()) is None
        assert registry.peek(_ctx("garbage")) is None

    def test_describe(self, registry: SessionRegistry, clock: FakeClock) -> None:
        issued = registry.create_session(_ctx(), _user())
        clock.advance(minutes=5)
        info = registry.describe(issued.session_id)
        assert info["session_id"] == issued.session_id
        assert info["idle_seconds_remaining"] == 600
        assert info["absolute_seconds_remaining"] == 3300

    def test_stats(self, registry: SessionRegistry) -> None:
        registry.create_session(_ctx(), _user())
        assert registry.stats() == {
            "active_sessions": 1,
            "idle_timeout_seconds": 900,
            "absolute_timeout_seconds": 3600,
            "bind_address": True,
        }
