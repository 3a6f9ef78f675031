"""
core/validation.py -- Input rules for everything forwarded to the issue tracker
or written to the credential store.

These are domain rules, not an API contract: api/models.py wires them into
Pydantic validators, and the service layer calls them directly when input
arrives outside a request model. Every function either returns the
normalized value or raises core.errors.ValidationError.

Layer rule: no imports from api/, auth/, audit/, or tracker/.
"""

from __future__ import annotations

import html
import re

from core.errors import ValidationError

# Tracker issue key: project key (uppercase letter, then letters/digits), a
# hyphen, and a positive issue number with no leading zero.
ISSUE_KEY_PATTERN = r"^[A-Z][A-Z0-9]*-[1-9][0-9]*$"
ISSUE_KEY_MAX_LENGTH = 50

COMMENT_MAX_LENGTH = 2000
SEARCH_TERM_MAX_LENGTH = 100
TRANSITION_ID_MIN = 1
TRANSITION_ID_MAX = 99999
PASSWORD_MIN_LENGTH = 8

EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
EMAIL_MAX_LENGTH = 254  # RFC 5321

_ISSUE_KEY_RE = re.compile(ISSUE_KEY_PATTERN)
_EMAIL_RE = re.compile(EMAIL_PATTERN)
_SEARCH_STRIP_RE = re.compile(r"[<>&\"']")


def validate_issue_key(issue_key: str) -> str:
    if not isinstance(issue_key, str):
        raise ValidationError(detail="Issue key must be a string.")
    if len(issue_key) > ISSUE_KEY_MAX_LENGTH:
        raise ValidationError(detail="Issue key too long.")
    if not _ISSUE_KEY_RE.fullmatch(issue_key):
        raise ValidationError(detail="Invalid issue key format.")
    return issue_key


def validate_comment(comment: str) -> str:
    """Return the trimmed comment with markup characters escaped.

    Length is checked on the trimmed text before escaping, so a 2000-character
    comment is accepted even if escaping makes the forwarded body longer.
    """
    if not isinstance(comment, str):
        raise ValidationError(detail="Comment must be a string.")
    trimmed = comment.strip()
    if not trimmed:
        raise ValidationError(detail="Comment cannot be empty.")
    if len(trimmed) > COMMENT_MAX_LENGTH:
        raise ValidationError(detail=f"Comment too long (max {COMMENT_MAX_LENGTH} characters).")
    return html.escape(trimmed, quote=True)


def validate_transition_id(transition_id: int | str) -> int:
    try:
        value = int(transition_id)
    except (TypeError, ValueError):
        raise ValidationError(detail="Invalid transition ID.") from None
    if value < TRANSITION_ID_MIN or value > TRANSITION_ID_MAX:
        raise ValidationError(detail="Invalid transition ID.")
    return value


def validate_search_term(term: str) -> str:
    """Trim, length-check, and strip quoting/markup characters from a search term."""
    if not isinstance(term, str):
        raise ValidationError(detail="Search term must be a string.")
    trimmed = term.strip()
    if len(trimmed) > SEARCH_TERM_MAX_LENGTH:
        raise ValidationError(detail=f"Search term too long (max {SEARCH_TERM_MAX_LENGTH} characters).")
    return _SEARCH_STRIP_RE.sub("", trimmed)


def is_valid_email(email: str) -> bool:
    return isinstance(email, str) and len(email) <= EMAIL_MAX_LENGTH and bool(_EMAIL_RE.fullmatch(email))


def normalize_email(email: str) -> str:
    """Validate and lower-case an email address.

    Emails are stored lower-cased so the UNIQUE constraint and the
    case-insensitive login lookup agree.
    """
    if not is_valid_email(email):
        raise ValidationError(detail="Invalid email format.")
    return email.lower()


def check_password_strength(password: str) -> str:
    """Enforce the password policy: length >= 8, lower, upper, digit, symbol.

    Raises ValidationError naming the first rule that fails.
    """
    if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(detail=f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
    if not re.search(r"[a-z]", password):
        raise ValidationError(detail="Password must contain at least one lowercase letter.")
    if not re.search(r"[A-Z]", password):
        raise ValidationError(detail="Password must contain at least one uppercase letter.")
    if not re.search(r"\d", password):
        raise ValidationError(detail="Password must contain at least one number.")
    if not re.search(r"[^A-Za-z0-9]", password):
        raise ValidationError(detail="Password must contain at least one special character.")
    return password
