"""
api/content_policy.py -- Inbound sensitive-data scanning as a pure ASGI middleware.

Runs before routing so it can rewrite the request body before FastAPI parses
it into route models. The query string and JSON bodies are scanned; other
content types pass through untouched. Values under password, secret or token
keys are never scanned.

  SCANNER_MODE=block  -> 400 content_policy, the route never runs.
  SCANNER_MODE=redact -> matches are masked in the body/query, the request
                         continues, and request.state.content_sanitized is True.

Either way one SECURITY/SENSITIVE_CONTENT_DETECTED audit entry is written
with finding types, counts, field paths, confidence and severity -- never the
matched text. The actor is identified with SessionRegistry.peek(), which does
not refresh activity: the request gate still decides access later.

Services are read from scope["app"].state at call time, so the middleware
works with whatever the lifespan (or a test) put there.
"""

from __future__ import annotations

import json
import logging
from urllib.parse import parse_qsl, urlencode

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from api.models import ErrorDetail, ErrorResponse
from audit.models import ActorContext, EventType
from auth.dependencies import request_context
from core.config import get_settings
from core.errors import ContentPolicyError
from core.scanner import ScanResult, severity

logger = logging.getLogger("ticketgate.content_policy")

# Credentials are opaque strings, so a password that happens to look like a
# phone number must neither be blocked nor rewritten.
_SECRET_FIELD_TERMS = ("password", "secret", "token")


def is_secret_field(key: str) -> bool:
    normalized = key.lower().replace("_", "").replace("-", "")
    return any(term in normalized for term in _SECRET_FIELD_TERMS)


class ContentPolicyMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        settings = get_settings()
        state = scope["app"].state
        scanner = getattr(state, "request_scanner", None)
        if not settings.scanner_enabled or scanner is None or scope["path"] in settings.scanner_exempt_paths:
            await self.app(scope, receive, send)
            return

        chunks: list[bytes] = []
        while True:
            message = await receive()
            if message["type"] != "http.request":
                # Client disconnected before the body arrived.
                return
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                break
        body = b"".join(chunks)

        query_pairs = parse_qsl(scope.get("query_string", b"").decode("latin-1"), keep_blank_values=True)
        payload = _json_payload(scope, body)

        target: dict = {"query": _group(query_pairs)}
        if payload is not None:
            target["body"] = payload
        result = scanner.scan_object(
            target,
            context_hint=settings.scanner_context_hint or None,
            skip_key=is_secret_field,
        )

        if result.has_match:
            await run_in_threadpool(self._record, scope, state, result, settings.scanner_mode)
            if settings.scanner_mode == "block":
                response = _policy_response()
                await response(scope, receive, send)
                return
            # The state dict is shared with the outer middleware; mutate it in place.
            scope.setdefault("state", {})["content_sanitized"] = True
            scope = dict(scope)
            if payload is not None:
                masked_payload = scanner.sanitize_object(payload, mode="mask", skip_key=is_secret_field)
                body = json.dumps(masked_payload).encode("utf-8")
                scope["headers"] = _with_content_length(scope["headers"], len(body))
            if query_pairs:
                masked = [
                    (key, value if is_secret_field(key) else scanner.sanitize(value, mode="mask"))
                    for key, value in query_pairs
                ]
                scope["query_string"] = urlencode(masked).encode("latin-1")

        body_sent = False

        async def replay() -> Message:
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        await self.app(scope, replay, send)

    @staticmethod
    def _record(scope: Scope, state, result: ScanResult, mode: str) -> None:
        request = Request(scope)
        ctx = request_context(request)
        registry = getattr(state, "sessions", None)
        session = registry.peek(ctx) if registry is not None else None
        actor = ActorContext(
            user_id=session.user_id if session else None,
            email=session.email if session else None,
            session_id=session.session_id if session else None,
            source_address=ctx.address,
            user_agent=ctx.user_agent,
        )
        counts = result.counts_by_type()
        state.audit.record(
            EventType.SECURITY,
            "SENSITIVE_CONTENT_DETECTED",
            "BLOCKED" if mode == "block" else "REDACTED",
            actor=actor,
            detail={
                "types": sorted(counts),
                "counts": [{"type": name, "count": n} for name, n in sorted(counts.items())],
                "fields": result.fields(),
                "confidence": round(result.confidence, 2),
                "severity": severity(result.confidence),
                "method": scope["method"],
                "path": scope["path"],
            },
        )
        logger.warning(
            "Sensitive content (%s) in %s %s: %s",
            ", ".join(sorted(counts)),
            scope["method"],
            scope["path"],
            "blocked" if mode == "block" else "redacted",
        )


def _json_payload(scope: Scope, body: bytes):
    """Parsed JSON body, or None when the request has no (valid) JSON body."""
    if not body:
        return None
    content_type = ""
    for name, value in scope.get("headers", []):
        if name == b"content-type":
            content_type = value.decode("latin-1").lower()
            break
    if "json" not in content_type:
        return None
    try:
        return json.loads(body)
    except ValueError:
        # Left for FastAPI to reject with its own 422.
        return None


def _group(pairs: list[tuple[str, str]]) -> dict:
    grouped: dict[str, list[str]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)
    return {key: values[0] if len(values) == 1 else values for key, values in grouped.items()}


def _with_content_length(headers, length: int) -> list[tuple[bytes, bytes]]:
    kept = [(name, value) for name, value in headers if name != b"content-length"]
    kept.append((b"content-length", str(length).encode("latin-1")))
    return kept


def _policy_response() -> JSONResponse:
    error = ContentPolicyError()
    return JSONResponse(
        status_code=error.status_code,
        content=ErrorResponse(error=ErrorDetail(code=error.code, message=error.message)).model_dump(),
    )
