"""
core/errors.py -- Error taxonomy shared by every layer.

Each class carries the HTTP status, a stable machine-readable code, and a
message that is safe to show to clients. api/main.py renders every AppError
into the standard ErrorResponse envelope with a single exception handler, so
route and service code raise these instead of building HTTPException dicts.

Only ValidationError may carry client-visible detail (field-level messages).
For everything else, diagnostic context belongs in the server log, never in
`detail`.

Layer rule: no imports from api/, auth/, audit/, or tracker/.
"""

from __future__ import annotations


class AppError(Exception):
    """Base class for errors that map to a sanitized HTTP response."""

    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed input. Field-level detail is safe to return."""

    status_code = 422
    code = "validation_error"
    message = "Request validation failed."


class AuthenticationError(AppError):
    """Missing, invalid, or expired session. Never says which check failed."""

    status_code = 401
    code = "unauthorized"
    message = "Authentication required."


class AuthorizationError(AppError):
    status_code = 403
    code = "forbidden"
    message = "Insufficient privilege."


class RateLimited(AppError):
    status_code = 429
    code = "rate_limited"
    message = "Too many requests."


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    message = "The requested resource was not found."


class UpstreamError(AppError):
    """The issue tracker call failed (timeout, 5xx, malformed response)."""

    status_code = 502
    code = "upstream_error"
    message = "The issue tracker is unavailable. Please try again later."

    def __init__(self, message: str | None = None, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class ContentPolicyError(AppError):
    """Sensitive data detected in a request while blocking is enabled."""

    status_code = 400
    code = "content_policy"
    message = "Request contains potentially sensitive information. Remove it and try again."


class InternalError(AppError):
    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."
