"""
tracker/issues.py -- Reduce raw tracker payloads to the fields the dashboard shows.

Only whitelisted fields leave this module. Anything else the tracker returns
(custom fields, changelogs, account internals) is dropped, so new upstream
fields never leak to clients by accident.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


def priority_level(name: str | None) -> str:
    """Map a tracker priority name to one of: highest, high, medium, low, lowest."""
    if not name:
        return "low"
    lowered = name.lower()
    if "highest" in lowered or "critical" in lowered:
        return "highest"
    if "high" in lowered:
        return "high"
    if "medium" in lowered:
        return "medium"
    if "lowest" in lowered:
        return "lowest"
    if "low" in lowered:
        return "low"
    return "medium"


def adf_to_text(node: Any) -> str:
    """Flatten an Atlassian Document Format tree into plain text.

    Paragraph-level nodes are separated by newlines. Plain strings (older
    API versions) are returned as-is.
    """
    if node is None:
        return ""
    if isinstance(node, str):
        return node
    if not isinstance(node, dict):
        return ""
    if node.get("type") == "text":
        return node.get("text", "")
    if node.get("type") == "hardBreak":
        return "\n"
    parts = [adf_to_text(child) for child in node.get("content") or []]
    separator = "\n" if node.get("type") == "doc" else ""
    return separator.join(p for p in parts if p)


def _iso(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f%z").isoformat()
    except ValueError:
        return value


def _person(raw: dict | None) -> dict | None:
    if not raw:
        return None
    return {
        "display_name": raw.get("displayName") or "Unknown User",
        "email": raw.get("emailAddress") or "",
        "avatar": (raw.get("avatarUrls") or {}).get("32x32", ""),
    }


def transform_issue(raw: dict[str, Any], base_url: str) -> dict[str, Any]:
    fields = raw.get("fields") or {}
    status = fields.get("status") or {}
    category = status.get("statusCategory") or {}
    priority = fields.get("priority") or {}
    issue_type = fields.get("issuetype") or {}
    project = fields.get("project") or {}
    key = raw.get("key", "")
    return {
        "key": key,
        "id": raw.get("id"),
        "summary": fields.get("summary") or "No summary",
        "description": adf_to_text(fields.get("description")),
        "status": {
            "name": status.get("name") or "Unknown",
            "category": category.get("name") or "Unknown",
            "color": category.get("colorName") or "gray",
        },
        "priority": {
            "name": priority.get("name") or "None",
            "level": priority_level(priority.get("name")),
        },
        "issue_type": {
            "name": issue_type.get("name") or "Unknown",
            "icon": issue_type.get("iconUrl") or "",
        },
        "assignee": _person(fields.get("assignee")),
        "reporter": _person(fields.get("reporter")),
        "project": {
            "key": project.get("key") or "UNKNOWN",
            "name": project.get("name") or "Unknown Project",
            "avatar": (project.get("avatarUrls") or {}).get("32x32", ""),
        },
        "created": _iso(fields.get("created")),
        "updated": _iso(fields.get("updated")),
        "url": f"{base_url.rstrip('/')}/browse/{key}",
    }


def transform_transition(raw: dict[str, Any]) -> dict[str, Any]:
    target = raw.get("to") or {}
    return {
        "id": str(raw.get("id", "")),
        "name": raw.get("name") or "",
        "to": {
            "id": str(target.get("id", "")),
            "name": target.get("name") or "",
            "category": (target.get("statusCategory") or {}).get("name") or "Unknown",
        },
    }
