"""
auth/tokens.py -- Password hashing, session token signing, and the cookie helper.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). bcrypt's cost factor
       makes brute force expensive for low-entropy secrets, and checkpw is a
       constant-time comparison. _DUMMY_HASH lets the Authenticator burn the
       same bcrypt work for unknown accounts, so response time does not reveal
       whether a username exists.

  Session tokens: python-jose, HS256. A token is only a signed reference to a
       server-side session (claim "sid") -- it grants nothing once the session
       is gone from the registry. The signing key is passed in explicitly by
       SessionRegistry rather than read here, so tests can sign with their own
       key.

  Cookie: "session_token", httpOnly, SameSite=Strict, Secure when
       SECURE_COOKIES=true.

Layer rule: no imports from api/ or tracker/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("ticketgate.auth.tokens")

ALGORITHM = "HS256"
SESSION_COOKIE = "session_token"
SESSION_HEADER = "X-Session-Token"

# Claims every session token must carry. Anything signed by us without them
# is treated as malformed.
_REQUIRED_CLAIMS = ("sid", "sub", "exp")

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    fields at 128 characters, which keeps typical input inside that limit.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the store. Treat as a mismatch.
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("ticketgate_timing_dummy")


def burn_dummy_check(plain: str) -> None:
    """Spend one bcrypt verification on a hash that can never match."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session token encode / decode
# ---------------------------------------------------------------------------


def encode_session_token(
    secret_key: str,
    *,
    session_id: str,
    user_id: int,
    email: str,
    issued_at: datetime,
    expires_at: datetime,
) -> str:
    """Sign a session reference token.

    sub is the user id as a string (JWT requires a string subject).
    iat/exp are integer epoch seconds.
    """
    payload = {
        "sid": session_id,
        "sub": str(user_id),
        "email": email,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(payload, secret_key, algorithm=ALGORITHM)


def decode_session_token(token: str, secret_key: str) -> dict[str, Any]:
    """Verify signature and expiry and return the claims.

    Raises jose.ExpiredSignatureError for an expired token and
    jose.JWTError for every other failure (bad signature, malformed token,
    missing claims). ExpiredSignatureError is a JWTError subclass, so callers
    that do not care about the distinction can catch JWTError alone.
    """
    payload = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    if any(claim not in payload for claim in _REQUIRED_CLAIMS):
        raise JWTError("Session token is missing required claims.")
    return payload


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, max_age: int) -> None:
    """Write the session token as an httpOnly, SameSite=Strict cookie.

    max_age should match the token's remaining lifetime so both expire
    together.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=get_settings().secure_cookies,
        max_age=max(int(max_age), 0),
        path="/",
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        httponly=True,
        samesite="strict",
        secure=get_settings().secure_cookies,
        path="/",
    )
