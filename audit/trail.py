"""
audit/trail.py -- Append-only audit log with per-entry integrity digests.

Storage layout: one JSON object per line in <log_dir>/audit-YYYY-MM-DD.log
(UTC date of the entry). A new file starts every day; nothing ever rewrites
an existing line.

Integrity: every entry carries integrity = HMAC-SHA256(key, canonical JSON)
where the canonical form is json.dumps(entry minus integrity, sort_keys=True,
compact separators). Anyone holding the key can recompute the digest from the
stored fields; a mismatch means the line was edited after it was written.

Sanitization (mandatory, before the digest is computed):
  1. Field-name redaction -- any detail key whose normalized name contains a
     sensitive term (ssn, dob, diagnosis, password, ...) is replaced with
     "[REDACTED]", recursively through nested dicts and lists.
  2. Value redaction -- every remaining string value goes through the
     ContentScanner in token mode, so no value matching a sensitive-data
     pattern reaches disk.

Failure policy: an OSError while appending never propagates. The entry is
written to the "ticketgate.audit.fallback" logger instead (stderr by
default), so the event is not lost and the request that triggered it still
completes.

Concurrency: appends are serialized by a per-trail lock so concurrent request
threads never interleave partial lines.

Layer rule: no imports from api/, auth/, or tracker/.
"""

from __future__ import annotations

import gzip
import hashlib
import hmac
import json
import logging
import re
import shutil
import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from audit.models import ANONYMOUS, ActorContext, AuditEntry, EventType
from core.scanner import ContentScanner

logger = logging.getLogger("ticketgate.audit")
_fallback_logger = logging.getLogger("ticketgate.audit.fallback")

REDACTION_MARKER = "[REDACTED]"

# Matched against the detail key lower-cased with non-alphanumerics removed,
# so "date_of_birth", "dateOfBirth" and "Date Of Birth" all hit "dateofbirth".
_SENSITIVE_FIELD_TERMS: tuple[str, ...] = (
    "ssn",
    "socialsecuritynumber",
    "dateofbirth",
    "dob",
    "mrn",
    "medicalrecordnumber",
    "patientname",
    "patientid",
    "firstname",
    "lastname",
    "phonenumber",
    "address",
    "diagnosis",
    "treatment",
    "medication",
    "symptoms",
    "healthinfo",
    "password",
    "secret",
    "token",
)

_FILE_RE = re.compile(r"^audit-(\d{4}-\d{2}-\d{2})\.log$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_key(key: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(key).lower())


def is_sensitive_field(key: str) -> bool:
    normalized = _normalize_key(key)
    return any(term in normalized for term in _SENSITIVE_FIELD_TERMS)


def canonical_json(data: Mapping[str, Any]) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


class AuditTrail:
    """Writes, verifies, reads, and expires audit entries.

    Usage:
        trail = AuditTrail("logs/audit", secret_key=settings.audit_key)
        trail.record(EventType.AUTHENTICATION, "LOGIN", "SUCCESS", actor, {"method": "password"})
        for entry, verified in trail.read_entries(limit=20): ...
        trail.purge_expired()
    """

    def __init__(
        self,
        log_dir: str | Path,
        secret_key: str,
        *,
        archive_dir: str | Path | None = None,
        retention_days: int = 2555,
        scanner: ContentScanner | None = None,
        application: str = "TICKETGATE",
        environment: str = "production",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.archive_dir = Path(archive_dir) if archive_dir else self.log_dir / "archive"
        self.retention_days = retention_days
        self.application = application
        self.environment = environment
        self._key = secret_key.encode("utf-8")
        # The audit scanner always runs every detector, including ones a
        # deployment disables for inbound request scanning.
        self._scanner = scanner or ContentScanner()
        self._clock = clock
        self._lock = threading.Lock()
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("Cannot create audit log directory %s: %s", self.log_dir, exc)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def record(
        self,
        event_type: EventType | str,
        action: str,
        result: str,
        actor: ActorContext | None = None,
        detail: Mapping[str, Any] | None = None,
    ) -> AuditEntry:
        """Build, sanitize, sign, and append one entry. Never raises on I/O failure."""
        actor = actor or ActorContext()
        unsigned = AuditEntry(
            audit_id=str(uuid.uuid4()),
            timestamp=self._clock().isoformat(),
            event_type=EventType(event_type).value,
            action=action,
            result=result,
            actor_id=actor.user_id,
            actor_email=actor.email or ANONYMOUS,
            session_id=actor.session_id,
            source_address=actor.source_address,
            user_agent=actor.user_agent,
            application=self.application,
            environment=self.environment,
            detail=self.sanitize_detail(detail or {}),
        )
        entry = AuditEntry.from_dict({**unsigned.to_dict(), "integrity": self.digest(unsigned)})
        self._append(entry)
        return entry

    def sanitize_detail(self, detail: Mapping[str, Any]) -> dict[str, Any]:
        """Redact sensitive keys and values, and coerce everything to JSON types."""

        def _clean(value: Any) -> Any:
            if isinstance(value, Mapping):
                return {
                    str(k): (REDACTION_MARKER if is_sensitive_field(k) else _clean(v)) for k, v in value.items()
                }
            if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
                return [_clean(v) for v in value]
            if isinstance(value, str):
                return self._scanner.sanitize(value, mode="token")
            if value is None or isinstance(value, (bool, int, float)):
                return value
            return self._scanner.sanitize(str(value), mode="token")

        return _clean(detail)

    def _append(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.to_dict(), sort_keys=True, separators=(",", ":")) + "\n"
        path = self.log_path(datetime.fromisoformat(entry.timestamp).date())
        try:
            with self._lock:
                with path.open("a", encoding="utf-8") as fh:
                    fh.write(line)
        except OSError as exc:
            logger.warning("Audit write to %s failed (%s); using fallback sink", path, exc)
            _fallback_logger.error("AUDIT_FALLBACK %s", line.rstrip("\n"))

    def log_path(self, day: date) -> Path:
        return self.log_dir / f"audit-{day.isoformat()}.log"

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def digest(self, entry: AuditEntry) -> str:
        return hmac.new(self._key, canonical_json(entry.unsigned_dict()).encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, entry: AuditEntry) -> bool:
        """Recompute the digest from the stored fields and compare in constant time."""
        return hmac.compare_digest(self.digest(entry), entry.integrity or "")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_entries(
        self,
        day: date | None = None,
        event_type: EventType | str | None = None,
        limit: int = 100,
    ) -> list[tuple[AuditEntry, bool]]:
        """Return up to `limit` (entry, verified) pairs, newest first.

        day=None walks the daily files from newest to oldest. Lines that are
        not valid JSON are skipped with a warning -- a corrupt line is itself
        evidence worth keeping on disk, but it cannot be returned as an entry.
        """
        if day is not None:
            paths = [self.log_path(day)]
        else:
            paths = sorted(self._log_files(), reverse=True)
        wanted = EventType(event_type).value if event_type else None

        results: list[tuple[AuditEntry, bool]] = []
        for path in paths:
            if not path.is_file():
                continue
            with path.open(encoding="utf-8") as fh:
                lines = fh.readlines()
            for raw in reversed(lines):
                if not raw.strip():
                    continue
                try:
                    entry = AuditEntry.from_dict(json.loads(raw))
                except (ValueError, KeyError, TypeError):
                    logger.warning("Skipping unreadable audit line in %s", path.name)
                    continue
                if wanted and entry.event_type != wanted:
                    continue
                results.append((entry, self.verify(entry)))
                if len(results) >= limit:
                    return results
        return results

    def _log_files(self) -> list[Path]:
        if not self.log_dir.is_dir():
            return []
        return [p for p in self.log_dir.iterdir() if p.is_file() and _FILE_RE.match(p.name)]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Archive (gzip) and delete daily files older than the retention window.

        Returns the number of files archived. A failure on one file is logged
        and does not stop the sweep.
        """
        cutoff = self._clock().date() - timedelta(days=self.retention_days)
        archived = 0
        for path in self._log_files():
            file_day = date.fromisoformat(_FILE_RE.match(path.name).group(1))
            if file_day >= cutoff:
                continue
            try:
                self.archive_dir.mkdir(parents=True, exist_ok=True)
                target = self.archive_dir / f"{path.name}.gz"
                with self._lock:
                    with path.open("rb") as src, gzip.open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    path.unlink()
                archived += 1
                logger.info("Archived expired audit log %s", path.name)
            except OSError as exc:
                logger.error("Could not archive audit log %s: %s", path.name, exc)
        if archived:
            self.record(
                EventType.SYSTEM,
                "AUDIT_LOGS_ARCHIVED",
                "SUCCESS",
                detail={"files": archived, "retention_days": self.retention_days},
            )
        return archived
