"""
core/scanner.py -- Heuristic detector for sensitive personal data in free text.

The scanner is a list of Detector tuples (name, label, regex, weight,
optional validator). New detectors are added by appending to the list passed
to ContentScanner -- call sites never change. Payment-card candidates must
also pass the Luhn checksum before they count as findings, which removes
most false positives from long digit runs (ticket numbers, build ids).

This is a best-effort filter, not an authoritative classifier. Weights
express how likely a match is to be real personal data in a ticket-tracking
context: id-like patterns score high, addresses and emails (which have
legitimate business uses) score low.

Findings carry positions, never the matched text, so a ScanResult can be
logged or audited without re-exposing what it found.

Usage:
    scanner = ContentScanner()
    result = scanner.scan("call me at 555-123-4567")
    result.has_match            # True
    scanner.sanitize("call me at 555-123-4567")
    # 'call me at ************'

Layer rule: no imports from api/, auth/, audit/, or tracker/.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, NamedTuple

RedactionMode = Literal["mask", "token"]

MASK_CHAR = "*"
REDACTION_TOKEN = "[REDACTED]"

# Context hints that raise confidence (the text is known to come from a
# clinical workflow, where an id-shaped string is more likely a real id).
_BOOST_HINTS = frozenset({"healthcare", "medical"})
_BOOST_FACTOR = 1.2

# After this many token-mode passes, remaining matches are masked instead.
# The token itself could in theory complete a new match; masking cannot.
_TOKEN_PASSES = 3


class Detector(NamedTuple):
    name: str
    label: str
    pattern: re.Pattern[str]
    weight: float
    validator: Callable[[str], bool] | None = None


@dataclass(frozen=True)
class Finding:
    type: str
    label: str
    start: int
    end: int
    weight: float
    field: str | None = None


@dataclass
class ScanResult:
    has_match: bool
    findings: list[Finding] = field(default_factory=list)
    confidence: float = 0.0

    def counts_by_type(self) -> dict[str, int]:
        return dict(Counter(f.type for f in self.findings))

    def fields(self) -> list[str]:
        """Distinct field paths with findings, in first-seen order."""
        seen: dict[str, None] = {}
        for f in self.findings:
            if f.field is not None:
                seen.setdefault(f.field, None)
        return list(seen)


def luhn_valid(candidate: str) -> bool:
    """Return True if the digits in candidate pass the Luhn checksum (13-19 digits)."""
    digits = [int(c) for c in candidate if c.isdigit()]
    if len(digits) < 13 or len(digits) > 19:
        return False
    total = 0
    for i, digit in enumerate(reversed(digits)):
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


DEFAULT_DETECTORS: tuple[Detector, ...] = (
    Detector(
        "ssn",
        "Social Security Number",
        re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
        0.9,
    ),
    Detector(
        "mrn",
        "Medical Record Number",
        re.compile(r"\b(?:MRN|medical\s*record\s*(?:number|#)?)\s*:?\s*[\w-]{6,20}\b", re.IGNORECASE),
        0.9,
    ),
    Detector(
        "patient_id",
        "Patient ID",
        re.compile(r"\b(?:patient|pat)\s*(?:id|number|#)\s*:?\s*[\w-]{5,15}\b", re.IGNORECASE),
        0.9,
    ),
    Detector(
        "credit_card",
        "Credit Card Number",
        re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
        0.8,
        luhn_valid,
    ),
    Detector(
        "phone",
        "Phone Number",
        re.compile(r"\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        0.7,
    ),
    Detector(
        "dob",
        "Date of Birth",
        re.compile(
            r"\b(?:dob|date\s*of\s*birth|born|birthday)\s*:?\s*"
            r"(?:\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|\d{2,4}[/-]\d{1,2}[/-]\d{1,2})\b",
            re.IGNORECASE,
        ),
        0.7,
    ),
    Detector(
        "insurance",
        "Insurance ID",
        re.compile(r"\b(?:insurance|member|policy)\s*(?:id|number|#)?\s*:?\s*[\w-]{8,20}\b", re.IGNORECASE),
        0.7,
    ),
    Detector(
        "address",
        "Street Address",
        re.compile(
            r"\b\d+\s+[A-Za-z\s]+(?:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Lane|Ln|Boulevard|Blvd)\b",
            re.IGNORECASE,
        ),
        0.5,
    ),
    Detector(
        "email",
        "Email Address",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        0.5,
    ),
)


def severity(confidence: float) -> str:
    """Bucket a confidence score for audit entries and alerting."""
    if confidence > 0.8:
        return "HIGH"
    if confidence > 0.5:
        return "MEDIUM"
    return "LOW"


class ContentScanner:
    """Runs a pluggable set of detectors over text and nested structures.

    Args:
        detectors: Detector tuples to run, in order. Defaults to DEFAULT_DETECTORS.
        disabled:  Detector names to skip (e.g. {"email"} for deployments where
                   addresses in ticket text are routine).
    """

    def __init__(
        self,
        detectors: Iterable[Detector] = DEFAULT_DETECTORS,
        disabled: Iterable[str] = (),
    ) -> None:
        skip = set(disabled)
        self.detectors: list[Detector] = [d for d in detectors if d.name not in skip]

    def add_detector(self, detector: Detector) -> None:
        self.detectors.append(detector)

    @property
    def detector_names(self) -> list[str]:
        return [d.name for d in self.detectors]

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _find(self, text: str, field_path: str | None = None) -> list[Finding]:
        findings: list[Finding] = []
        for detector in self.detectors:
            for match in detector.pattern.finditer(text):
                if detector.validator is not None and not detector.validator(match.group(0)):
                    continue
                findings.append(
                    Finding(
                        type=detector.name,
                        label=detector.label,
                        start=match.start(),
                        end=match.end(),
                        weight=detector.weight,
                        field=field_path,
                    )
                )
        return findings

    def scan(self, text: Any, context_hint: str | None = None) -> ScanResult:
        """Scan a single string. Non-strings and empty strings never match."""
        if not isinstance(text, str) or not text:
            return ScanResult(has_match=False)
        findings = self._find(text)
        return ScanResult(
            has_match=bool(findings),
            findings=findings,
            confidence=self.confidence(findings, context_hint),
        )

    def scan_object(
        self,
        obj: Any,
        context_hint: str | None = None,
        skip_key: Callable[[str], bool] | None = None,
    ) -> ScanResult:
        """Scan every string inside a nested mapping/sequence structure.

        Each finding records the dotted path of the field it came from, e.g.
        "fields.comment" or "labels.2". Mapping values whose key satisfies
        skip_key are not scanned.
        """
        findings: list[Finding] = []

        def _walk(item: Any, path: str) -> None:
            if isinstance(item, str):
                findings.extend(self._find(item, path or None))
            elif isinstance(item, Mapping):
                for key, value in item.items():
                    if skip_key is not None and skip_key(str(key)):
                        continue
                    _walk(value, f"{path}.{key}" if path else str(key))
            elif isinstance(item, Sequence) and not isinstance(item, (bytes, bytearray)):
                for index, value in enumerate(item):
                    _walk(value, f"{path}.{index}" if path else str(index))

        _walk(obj, "")
        return ScanResult(
            has_match=bool(findings),
            findings=findings,
            confidence=self.confidence(findings, context_hint),
        )

    @staticmethod
    def confidence(findings: Sequence[Finding], context_hint: str | None = None) -> float:
        """Mean finding weight, boosted for clinical context, capped at 1.0."""
        if not findings:
            return 0.0
        total = sum(f.weight for f in findings)
        if context_hint and context_hint.lower() in _BOOST_HINTS:
            total *= _BOOST_FACTOR
        return min(total / len(findings), 1.0)

    # ------------------------------------------------------------------
    # Redaction
    # ------------------------------------------------------------------

    def sanitize(self, text: Any, mode: RedactionMode = "mask") -> Any:
        """Replace every detected span in text.

        mode="mask" replaces each span with the same number of "*" characters;
        mode="token" replaces it with "[REDACTED]". Redaction repeats until a
        re-scan of the output is clean, so sanitize() is idempotent.
        Non-string input is returned unchanged.
        """
        if not isinstance(text, str) or not text:
            return text
        result = text
        passes = 0
        while True:
            findings = self._find(result)
            if not findings:
                return result
            pass_mode: RedactionMode = mode if passes < _TOKEN_PASSES else "mask"
            result = _redact_spans(result, findings, pass_mode)
            passes += 1

    def sanitize_object(
        self,
        obj: Any,
        mode: RedactionMode = "mask",
        skip_key: Callable[[str], bool] | None = None,
    ) -> Any:
        """Return a copy of obj with every string value sanitized.

        Mappings come back as dicts and sequences as lists; other scalars are
        returned as-is. Values under a key satisfying skip_key are kept verbatim.
        """
        if isinstance(obj, str):
            return self.sanitize(obj, mode)
        if isinstance(obj, Mapping):
            return {
                key: value
                if skip_key is not None and skip_key(str(key))
                else self.sanitize_object(value, mode, skip_key)
                for key, value in obj.items()
            }
        if isinstance(obj, Sequence) and not isinstance(obj, (bytes, bytearray)):
            return [self.sanitize_object(value, mode, skip_key) for value in obj]
        return obj


def _redact_spans(text: str, findings: Sequence[Finding], mode: RedactionMode) -> str:
    """Replace the union of all finding spans. Overlapping spans are merged first."""
    spans = sorted((f.start, f.end) for f in findings)
    merged: list[list[int]] = []
    for start, end in spans:
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])

    parts: list[str] = []
    cursor = 0
    for start, end in merged:
        parts.append(text[cursor:start])
        parts.append(MASK_CHAR * (end - start) if mode == "mask" else REDACTION_TOKEN)
        cursor = end
    parts.append(text[cursor:])
    return "".join(parts)
