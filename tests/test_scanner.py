"""
tests/test_scanner.py -- Unit tests for core/scanner.py.

Coverage:
  - Each default detector fires on a representative sample
  - Luhn filtering of card-shaped digit runs
  - Confidence: mean weight, healthcare boost, cap at 1.0; severity buckets
  - scan_object() field paths through nested dicts and lists
  - sanitize(): mask preserves length, token mode, idempotence, clean input untouched
  - Pluggable detectors (disabled names, add_detector)
"""

from __future__ import annotations

import re

import pytest

from core.scanner import REDACTION_TOKEN, ContentScanner, Detector, luhn_valid, severity


@pytest.fixture
def scanner() -> ContentScanner:
    return ContentScanner()


class TestDetectors:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("SSN 123-45-6789 on file", "ssn"),
            ("MRN: 12345678", "mrn"),
            ("patient id: PT-55821", "patient_id"),
            ("card 4111 1111 1111 1111", "credit_card"),
            ("call me at 555-123-4567", "phone"),
            ("DOB: 01/15/1980", "dob"),
            ("insurance id: ABC12345678", "insurance"),
            ("lives at 123 Main Street", "address"),
            ("mail john.doe@example.com", "email"),
        ],
    )
    def test_detector_fires(self, scanner: ContentScanner, text: str, expected: str) -> None:
        result = scanner.scan(text)
        assert result.has_match
        assert expected in result.counts_by_type()

    def test_clean_text_has_no_match(self, scanner: ContentScanner) -> None:
        result = scanner.scan("The login button is misaligned on the settings page.")
        assert not result.has_match
        assert result.findings == []
        assert result.confidence == 0.0

    def test_non_string_and_empty_never_match(self, scanner: ContentScanner) -> None:
        assert not scanner.scan(None).has_match
        assert not scanner.scan("").has_match
        assert not scanner.scan(123456789).has_match

    def test_findings_do_not_carry_matched_text(self, scanner: ContentScanner) -> None:
        finding = scanner.scan("SSN 123-45-6789").findings[0]
        assert not any("123-45-6789" == str(v) for v in vars(finding).values())
        assert (finding.start, finding.end) == (4, 15)


class TestLuhn:
    def test_valid_card_number(self) -> None:
        assert luhn_valid("4111 1111 1111 1111")

    def test_invalid_checksum(self) -> None:
        assert not luhn_valid("4111 1111 1111 1112")

    def test_too_short(self) -> None:
        assert not luhn_valid("4111 1111")

    def test_card_shaped_number_failing_luhn_is_not_a_card(self, scanner: ContentScanner) -> None:
        result = scanner.scan("build 1234 5678 9012 3456")
        assert "credit_card" not in result.counts_by_type()


class TestConfidence:
    def test_single_finding_uses_detector_weight(self, scanner: ContentScanner) -> None:
        assert scanner.scan("SSN 123-45-6789").confidence == pytest.approx(0.9)

    def test_mean_of_weights(self, scanner: ContentScanner) -> None:
        # ssn (0.9) + address (0.5)
        result = scanner.scan("123-45-6789 and 42 Oak Avenue")
        assert result.counts_by_type() == {"ssn": 1, "address": 1}
        assert result.confidence == pytest.approx(0.7)

    def test_healthcare_hint_boosts_and_caps(self, scanner: ContentScanner) -> None:
        assert scanner.scan("SSN 123-45-6789", context_hint="healthcare").confidence == 1.0
        boosted = scanner.scan("lives at 123 Main Street", context_hint="Medical").confidence
        assert boosted == pytest.approx(0.6)

    def test_unknown_hint_has_no_effect(self, scanner: ContentScanner) -> None:
        assert scanner.scan("SSN 123-45-6789", context_hint="retail").confidence == pytest.approx(0.9)

    @pytest.mark.parametrize("value,bucket", [(0.95, "HIGH"), (0.8, "MEDIUM"), (0.6, "MEDIUM"), (0.5, "LOW")])
    def test_severity_buckets(self, value: float, bucket: str) -> None:
        assert severity(value) == bucket


class TestScanObject:
    def test_field_paths_through_nesting(self, scanner: ContentScanner) -> None:
        payload = {"fields": {"comment": "SSN 123-45-6789"}, "labels": ["ok", "call 555-123-4567"]}
        result = scanner.scan_object(payload)
        assert result.fields() == ["fields.comment", "labels.1"]

    def test_non_string_leaves_ignored(self, scanner: ContentScanner) -> None:
        assert not scanner.scan_object({"transition_id": 123456789, "flag": True}).has_match

    def test_skipped_keys_not_scanned(self, scanner: ContentScanner) -> None:
        payload = {"user": {"new_password": "Ab!1234567890"}, "note": "call 555-123-4567"}
        result = scanner.scan_object(payload, skip_key=lambda key: "password" in key)
        assert result.fields() == ["note"]


class TestSanitize:
    def test_mask_preserves_length(self, scanner: ContentScanner) -> None:
        text = "SSN 123-45-6789 here"
        masked = scanner.sanitize(text)
        assert masked == "SSN *********** here"
        assert len(masked) == len(text)

    def test_token_mode(self, scanner: ContentScanner) -> None:
        assert scanner.sanitize("SSN 123-45-6789", mode="token") == f"SSN {REDACTION_TOKEN}"

    def test_result_rescans_clean_and_is_idempotent(self, scanner: ContentScanner) -> None:
        text = "MRN: 12345678, DOB: 01/15/1980, call 555-123-4567, card 4111 1111 1111 1111"
        for mode in ("mask", "token"):
            once = scanner.sanitize(text, mode=mode)
            assert not scanner.scan(once).has_match
            assert scanner.sanitize(once, mode=mode) == once

    def test_clean_text_unchanged(self, scanner: ContentScanner) -> None:
        text = "Please reset the staging database."
        assert scanner.sanitize(text) == text

    def test_sanitize_object_copies(self, scanner: ContentScanner) -> None:
        payload = {"comment": "SSN 123-45-6789", "count": 3, "tags": ("a", "555-123-4567")}
        cleaned = scanner.sanitize_object(payload)
        assert cleaned == {"comment": "SSN ***********", "count": 3, "tags": ["a", "************"]}
        assert payload["comment"] == "SSN 123-45-6789"

    def test_sanitize_object_keeps_skipped_keys(self, scanner: ContentScanner) -> None:
        payload = {"password": "Ab!1234567890", "comment": "call 555-123-4567"}
        cleaned = scanner.sanitize_object(payload, skip_key=lambda key: key == "password")
        assert cleaned == {"password": "Ab!1234567890", "comment": "call ************"}


class TestPluggableDetectors:
    def test_disabled_detector_is_skipped(self) -> None:
        scanner = ContentScanner(disabled=("email",))
        assert "email" not in scanner.detector_names
        assert not scanner.scan("ping ops@example.com").has_match

    def test_added_detector_participates(self) -> None:
        scanner = ContentScanner()
        scanner.add_detector(Detector("employee_id", "Employee ID", re.compile(r"\bEMP-\d{6}\b"), 0.6))
        result = scanner.scan("owner EMP-123456")
        assert result.counts_by_type() == {"employee_id": 1}
        assert scanner.sanitize("owner EMP-123456") == "owner **********"
