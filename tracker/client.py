"""
tracker/client.py -- Thin requests-based client for the tracker REST API v3.

One requests.Session per client for connection pooling, authenticated with
the service account (email + API token, HTTP basic). max_redirects=3 instead
of the requests default of 30: the tracker is a known host and long redirect
chains are an SSRF smell.

Error mapping (clients only ever see the sanitized AppError message):
  timeout              -> UpstreamError, HTTP 504
  upstream 404         -> NotFoundError
  any other failure    -> UpstreamError, HTTP 502
  (connection error, 4xx/5xx, non-JSON body)

Upstream status and exception text go to the server log. Response bodies are
never logged: they can contain ticket content.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from core.errors import NotFoundError, UpstreamError
from tracker.jql import ISSUE_FIELDS

logger = logging.getLogger("ticketgate.tracker")


class TrackerClient:
    """Client for the handful of tracker endpoints the dashboard proxies.

    Usage:
        client = TrackerClient("https://example.atlassian.net", "svc@example.com", token)
        page = client.search('assignee = "a@example.com"', start_at=0, max_results=50)
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        *,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._configured = bool(base_url and email and api_token)
        self._session = session or requests.Session()
        self._session.max_redirects = 3
        self._session.auth = (email, api_token)
        self._session.headers.update({"Accept": "application/json", "Content-Type": "application/json"})

    @property
    def configured(self) -> bool:
        return self._configured

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        if not self._configured:
            logger.error("Tracker call %s %s attempted without TRACKER_* configuration", method, path)
            raise UpstreamError("The issue tracker is not configured.")
        url = f"{self.base_url}/rest/api/3{path}"
        try:
            resp = self._session.request(method, url, params=params, json=payload, timeout=self.timeout)
        except requests.Timeout as exc:
            logger.warning("Tracker %s %s timed out: %s", method, path, exc)
            raise UpstreamError("The issue tracker did not respond in time.", status_code=504) from None
        except requests.RequestException as exc:
            logger.warning("Tracker %s %s failed: %s", method, path, exc)
            raise UpstreamError() from None

        if resp.status_code == 404:
            logger.info("Tracker %s %s returned 404", method, path)
            raise NotFoundError("Issue not found.")
        if resp.status_code >= 400:
            logger.warning("Tracker %s %s returned HTTP %d", method, path, resp.status_code)
            raise UpstreamError()
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            logger.warning("Tracker %s %s returned a non-JSON body", method, path)
            raise UpstreamError() from None

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def get_myself(self) -> dict[str, Any]:
        data = self._request("GET", "/myself")
        if not isinstance(data, dict):
            raise UpstreamError()
        return {
            "account_id": data.get("accountId"),
            "display_name": data.get("displayName"),
            "email": data.get("emailAddress"),
        }

    def search(self, jql: str, start_at: int = 0, max_results: int = 50) -> dict[str, Any]:
        """Run a JQL search. Returns {"issues", "total", "start_at", "max_results"} with raw issues."""
        data = self._request(
            "GET",
            "/search",
            params={
                "jql": jql,
                "startAt": start_at,
                "maxResults": max_results,
                "fields": ",".join(ISSUE_FIELDS),
            },
        )
        if not isinstance(data, dict):
            logger.warning("Tracker search returned an unexpected payload")
            raise UpstreamError()
        issues = data.get("issues") or []
        return {
            "issues": issues,
            "total": data.get("total", len(issues)),
            "start_at": data.get("startAt", start_at),
            "max_results": data.get("maxResults", max_results),
        }

    def get_issue(self, issue_key: str) -> dict[str, Any]:
        data = self._request("GET", f"/issue/{issue_key}", params={"fields": ",".join(ISSUE_FIELDS)})
        if not isinstance(data, dict):
            raise UpstreamError()
        return data

    def get_transitions(self, issue_key: str) -> list[dict[str, Any]]:
        data = self._request("GET", f"/issue/{issue_key}/transitions")
        if not isinstance(data, dict):
            logger.warning("Tracker transitions for %s returned an unexpected payload", issue_key)
            raise UpstreamError()
        transitions = data.get("transitions") or []
        if not isinstance(transitions, list):
            raise UpstreamError()
        return [t for t in transitions if isinstance(t, dict)]

    def add_comment(self, issue_key: str, text: str) -> dict[str, Any]:
        """Post a plain-text comment wrapped in a single-paragraph ADF document."""
        body = {
            "body": {
                "type": "doc",
                "version": 1,
                "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
            }
        }
        return self._request("POST", f"/issue/{issue_key}/comment", payload=body) or {}

    def transition(self, issue_key: str, transition_id: int) -> None:
        self._request("POST", f"/issue/{issue_key}/transitions", payload={"transition": {"id": str(transition_id)}})

    def close(self) -> None:
        self._session.close()
