"""
tests/test_health.py -- Integration tests for GET /api/v1/health and the
cross-cutting middleware around it.

Covers:
  - 200 response with status, version, scanner mode, and session count
  - No authentication required
  - Health checks are not written to the audit trail
  - Security headers on every response
  - TrustedHostMiddleware rejects unknown Host headers
"""

from __future__ import annotations

from audit.models import EventType
from conftest import Harness


def test_health_returns_200_with_status(api_client: Harness) -> None:
    """Health endpoint returns 200 with status, version, scanner mode and session count."""
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == "1.0.0"
    assert data["scanner_mode"] == "block"
    assert isinstance(data["active_sessions"], int)


def test_health_no_auth_required(api_client: Harness) -> None:
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_not_audited(api_client: Harness) -> None:
    api_client.client.get("/api/v1/health")
    audit = api_client.client.app.state.audit
    paths = [e.detail.get("path") for e, _ in audit.read_entries(event_type=EventType.ACCESS, limit=1000)]
    assert "/api/v1/health" not in paths


def test_security_headers(api_client: Harness) -> None:
    resp = api_client.client.get("/api/v1/health")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Cache-Control"] == "no-store"


def test_unknown_host_rejected(api_client: Harness) -> None:
    resp = api_client.client.get("/api/v1/health", headers={"Host": "evil.example.com"})
    assert resp.status_code == 400


def test_unknown_route_uses_error_envelope(api_client: Harness) -> None:
    resp = api_client.client.get("/api/v1/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http_404"
