"""
api/routes/v1/tickets.py -- Session-guarded proxy to the issue tracker.

Routes:
  GET  /api/v1/tickets/assigned                    -- issues assigned to the caller
  GET  /api/v1/tickets/created                     -- issues reported by the caller
  GET  /api/v1/tickets/search?q=                   -- text search within the caller's issues
  GET  /api/v1/tickets/{issue_key}                 -- one issue
  GET  /api/v1/tickets/{issue_key}/transitions     -- available workflow transitions
  POST /api/v1/tickets/{issue_key}/comment         -- add a comment
  POST /api/v1/tickets/{issue_key}/transition      -- move the issue to another status
  GET  /api/v1/tracker/user                        -- the tracker service account

Every route requires a session. Issue keys are validated by the path pattern
before anything is forwarded, JQL is only ever built by tracker/jql.py from
the session's own email, and upstream payloads are reduced to whitelisted
fields by tracker/issues.py. Reads are audited as ACCESS, writes as
DATA_MODIFICATION. Tracker failures surface as the sanitized UpstreamError /
NotFoundError envelopes raised by the client.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Query, Request

from api.models import (
    CommentRequest,
    CommentResponse,
    IssuePage,
    MessageResponse,
    TrackerAccount,
    TransitionList,
    TransitionRequest,
)
from audit.models import EventType
from auth.dependencies import audit_actor, require_session
from auth.models import SessionContext
from core.validation import ISSUE_KEY_MAX_LENGTH, ISSUE_KEY_PATTERN, SEARCH_TERM_MAX_LENGTH
from tracker.client import TrackerClient
from tracker.issues import transform_issue, transform_transition
from tracker.jql import build_assigned_query, build_created_query, build_text_search_query, clamp_paging

router = APIRouter()

IssueKey = Annotated[str, Path(pattern=ISSUE_KEY_PATTERN, max_length=ISSUE_KEY_MAX_LENGTH, description="e.g. PROJ-123")]


def _tracker(request: Request) -> TrackerClient:
    return request.app.state.tracker


def _page(request: Request, session: SessionContext, action: str, jql: str, start_at: int, max_results: int) -> IssuePage:
    tracker = _tracker(request)
    start, size = clamp_paging(start_at, max_results)
    data = tracker.search(jql, start, size)
    issues = [transform_issue(raw, tracker.base_url) for raw in data["issues"]]
    request.app.state.audit.record(
        EventType.ACCESS,
        action,
        "SUCCESS",
        actor=audit_actor(request, session),
        detail={"resource": "TICKETS", "returned": len(issues)},
    )
    return IssuePage(issues=issues, total=data["total"], start_at=data["start_at"], max_results=data["max_results"])


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


@router.get("/tickets/assigned", response_model=IssuePage)
def assigned_tickets(
    request: Request,
    start_at: int = Query(default=0, ge=0),
    max_results: int = Query(default=50, ge=1, le=100),
    session: SessionContext = Depends(require_session),
) -> IssuePage:
    return _page(request, session, "GET_ASSIGNED_TICKETS", build_assigned_query(session.email), start_at, max_results)


@router.get("/tickets/created", response_model=IssuePage)
def created_tickets(
    request: Request,
    start_at: int = Query(default=0, ge=0),
    max_results: int = Query(default=50, ge=1, le=100),
    session: SessionContext = Depends(require_session),
) -> IssuePage:
    return _page(request, session, "GET_CREATED_TICKETS", build_created_query(session.email), start_at, max_results)


@router.get("/tickets/search", response_model=IssuePage)
def search_tickets(
    request: Request,
    q: str = Query(min_length=1, max_length=SEARCH_TERM_MAX_LENGTH),
    start_at: int = Query(default=0, ge=0),
    max_results: int = Query(default=50, ge=1, le=100),
    session: SessionContext = Depends(require_session),
) -> IssuePage:
    jql = build_text_search_query(q, session.email)
    return _page(request, session, "SEARCH_TICKETS", jql, start_at, max_results)


# ---------------------------------------------------------------------------
# Single issue
# ---------------------------------------------------------------------------


@router.get("/tickets/{issue_key}")
def get_ticket(
    request: Request,
    issue_key: IssueKey,
    session: SessionContext = Depends(require_session),
) -> dict:
    tracker = _tracker(request)
    issue = transform_issue(tracker.get_issue(issue_key), tracker.base_url)
    request.app.state.audit.record(
        EventType.ACCESS,
        "GET_TICKET",
        "SUCCESS",
        actor=audit_actor(request, session),
        detail={"resource": "TICKET", "issue_key": issue_key},
    )
    return issue


@router.get("/tickets/{issue_key}/transitions", response_model=TransitionList)
def get_transitions(
    request: Request,
    issue_key: IssueKey,
    session: SessionContext = Depends(require_session),
) -> TransitionList:
    transitions = [transform_transition(t) for t in _tracker(request).get_transitions(issue_key)]
    request.app.state.audit.record(
        EventType.ACCESS,
        "GET_TRANSITIONS",
        "SUCCESS",
        actor=audit_actor(request, session),
        detail={"resource": "TICKET_TRANSITIONS", "issue_key": issue_key},
    )
    return TransitionList(transitions=transitions)


@router.post("/tickets/{issue_key}/comment", response_model=CommentResponse)
def add_comment(
    request: Request,
    issue_key: IssueKey,
    body: CommentRequest,
    session: SessionContext = Depends(require_session),
) -> CommentResponse:
    """Forward a comment. body.comment is already trimmed and markup-escaped."""
    created = _tracker(request).add_comment(issue_key, body.comment)
    comment_id = str(created["id"]) if created.get("id") is not None else None
    request.app.state.audit.record(
        EventType.DATA_MODIFICATION,
        "CREATE_COMMENT",
        "SUCCESS",
        actor=audit_actor(request, session),
        detail={
            "resource": "TICKET_COMMENT",
            "issue_key": issue_key,
            "comment_id": comment_id,
            "length": len(body.comment),
            "sanitized": bool(getattr(request.state, "content_sanitized", False)),
        },
    )
    return CommentResponse(comment_id=comment_id)


@router.post("/tickets/{issue_key}/transition", response_model=MessageResponse)
def transition_ticket(
    request: Request,
    issue_key: IssueKey,
    body: TransitionRequest,
    session: SessionContext = Depends(require_session),
) -> MessageResponse:
    _tracker(request).transition(issue_key, body.transition_id)
    request.app.state.audit.record(
        EventType.DATA_MODIFICATION,
        "TRANSITION_TICKET",
        "SUCCESS",
        actor=audit_actor(request, session),
        detail={"resource": "TICKET_STATUS", "issue_key": issue_key, "transition_id": body.transition_id},
    )
    return MessageResponse(message="Ticket status updated successfully.")


# ---------------------------------------------------------------------------
# Tracker account
# ---------------------------------------------------------------------------


@router.get("/tracker/user", response_model=TrackerAccount)
def tracker_user(request: Request, session: SessionContext = Depends(require_session)) -> TrackerAccount:
    """Identity of the service account; doubles as a connectivity check."""
    account = TrackerAccount(**_tracker(request).get_myself())
    request.app.state.audit.record(
        EventType.ACCESS,
        "GET_USER_INFO",
        "SUCCESS",
        actor=audit_actor(request, session),
        detail={"resource": "TRACKER_USER"},
    )
    return account
