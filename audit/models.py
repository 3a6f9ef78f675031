"""
audit/models.py -- Domain dataclasses for audit entries.

Pattern: Data class (pure data container). AuditTrail owns construction,
digesting, and persistence; these types only carry shape.

Layer rule: no imports from api/, auth/, or tracker/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

ANONYMOUS = "ANONYMOUS"


class EventType(str, Enum):
    ACCESS = "ACCESS"
    AUTHENTICATION = "AUTHENTICATION"
    DATA_MODIFICATION = "DATA_MODIFICATION"
    SECURITY = "SECURITY"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class ActorContext:
    """Who triggered an event, and from where.

    Every field is optional: login failures have no user yet, background
    sweeps have no address.
    """

    user_id: int | None = None
    email: str | None = None
    session_id: str | None = None
    source_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuditEntry:
    """One immutable line of the audit log.

    integrity is HMAC-SHA256 over the canonical JSON of every other field.
    """

    audit_id: str
    timestamp: str
    event_type: str
    action: str
    result: str
    actor_id: int | None
    actor_email: str
    session_id: str | None
    source_address: str | None
    user_agent: str | None
    application: str
    environment: str
    detail: dict[str, Any] = field(default_factory=dict)
    integrity: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def unsigned_dict(self) -> dict[str, Any]:
        """Every field except integrity -- the input to the digest."""
        data = asdict(self)
        data.pop("integrity", None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEntry":
        return cls(
            audit_id=data["audit_id"],
            timestamp=data["timestamp"],
            event_type=data["event_type"],
            action=data["action"],
            result=data["result"],
            actor_id=data.get("actor_id"),
            actor_email=data.get("actor_email", ANONYMOUS),
            session_id=data.get("session_id"),
            source_address=data.get("source_address"),
            user_agent=data.get("user_agent"),
            application=data.get("application", ""),
            environment=data.get("environment", ""),
            detail=data.get("detail", {}),
            integrity=data.get("integrity", ""),
        )
