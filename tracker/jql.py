"""
tracker/jql.py -- Safe JQL construction.

User input never reaches the tracker as raw JQL. Values are validated, then
escaped and placed inside double-quoted string literals, so a crafted email
or search term cannot close the literal and append clauses of its own.
"""

from __future__ import annotations

from core.errors import ValidationError
from core.validation import is_valid_email, validate_search_term

DEFAULT_MAX_RESULTS = 50
MAX_RESULTS_CAP = 100

ISSUE_FIELDS = (
    "key",
    "summary",
    "description",
    "status",
    "priority",
    "issuetype",
    "assignee",
    "reporter",
    "created",
    "updated",
    "project",
)


def escape_jql_string(value: str) -> str:
    """Escape backslashes first, then both quote characters."""
    if not isinstance(value, str):
        raise ValidationError(detail="JQL value must be a string.")
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("'", "\\'")


def _require_email(email: str) -> str:
    if not is_valid_email(email):
        raise ValidationError(detail="Invalid email format for JQL query.")
    return escape_jql_string(email)


def build_assigned_query(email: str) -> str:
    return f'assignee = "{_require_email(email)}" ORDER BY updated DESC'


def build_created_query(email: str) -> str:
    return f'reporter = "{_require_email(email)}" ORDER BY created DESC'


def build_text_search_query(term: str, email: str | None = None) -> str:
    """Full-text search, optionally limited to issues the user is assigned or reported.

    Raises ValidationError if nothing searchable is left after cleaning.
    """
    cleaned = validate_search_term(term)
    if not cleaned:
        raise ValidationError(detail="Search term cannot be empty.")
    clause = f'text ~ "{escape_jql_string(cleaned)}"'
    if email is not None:
        escaped = _require_email(email)
        clause = f'(assignee = "{escaped}" OR reporter = "{escaped}") AND {clause}'
    return f"{clause} ORDER BY updated DESC"


def clamp_paging(start_at: int | str | None = 0, max_results: int | str | None = None) -> tuple[int, int]:
    """Return (start_at >= 0, 1 <= max_results <= 100). Unparseable values fall back to defaults."""
    try:
        start = max(0, int(start_at or 0))
    except (TypeError, ValueError):
        start = 0
    try:
        size = int(max_results) if max_results is not None else DEFAULT_MAX_RESULTS
    except (TypeError, ValueError):
        size = DEFAULT_MAX_RESULTS
    return start, min(max(1, size), MAX_RESULTS_CAP)
