"""
tests/test_validation.py -- Unit tests for core/validation.py input rules.

Boundary values matter here: the comment limit, transition id range, and
issue key pattern are the contract with the tracker, so each is tested on
both sides of the edge.
"""

from __future__ import annotations

import pytest

from core.errors import ValidationError
from core.validation import (
    check_password_strength,
    is_valid_email,
    normalize_email,
    validate_comment,
    validate_issue_key,
    validate_search_term,
    validate_transition_id,
)


class TestIssueKey:
    @pytest.mark.parametrize("key", ["AB-1", "PROJ2-45", "X-99999"])
    def test_valid(self, key: str) -> None:
        assert validate_issue_key(key) == key

    @pytest.mark.parametrize("key", ["AB-0", "ab-1", "2PROJ-1", "PROJ-01", "PROJ_1", "PROJ-", "PROJ-1 OR 1=1", "PROJ-1\n"])
    def test_invalid(self, key: str) -> None:
        with pytest.raises(ValidationError):
            validate_issue_key(key)

    def test_too_long(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_issue_key("A" * 48 + "-1" + "0")
        assert "too long" in exc_info.value.detail


class TestComment:
    def test_trimmed_and_escaped(self) -> None:
        assert validate_comment("  <b>done</b> & \"shipped\"  ") == "&lt;b&gt;done&lt;/b&gt; &amp; &quot;shipped&quot;"

    def test_exactly_2000_accepted(self) -> None:
        assert len(validate_comment("a" * 2000)) == 2000

    def test_2001_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_comment("a" * 2001)
        assert "2000" in exc_info.value.detail

    def test_limit_applies_before_escaping(self) -> None:
        escaped = validate_comment("<" * 2000)
        assert escaped == "&lt;" * 2000

    @pytest.mark.parametrize("value", ["", "   \n\t "])
    def test_empty_rejected(self, value: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_comment(value)
        assert "empty" in exc_info.value.detail


class TestTransitionId:
    @pytest.mark.parametrize("value,expected", [(1, 1), ("31", 31), (99999, 99999)])
    def test_valid(self, value, expected: int) -> None:
        assert validate_transition_id(value) == expected

    @pytest.mark.parametrize("value", [0, 100000, -5, "abc", None])
    def test_invalid(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_transition_id(value)


class TestSearchTerm:
    def test_strips_quotes_and_markup(self) -> None:
        assert validate_search_term(' "login" <bug> ') == "login bug"

    def test_length_limit(self) -> None:
        assert validate_search_term("x" * 100) == "x" * 100
        with pytest.raises(ValidationError):
            validate_search_term("x" * 101)


class TestEmail:
    def test_normalize_lowercases(self) -> None:
        assert normalize_email("Alice@Example.COM") == "alice@example.com"

    @pytest.mark.parametrize("value", ["no-at-sign", "a@b", "a b@example.com", "a@example.com\n"])
    def test_invalid(self, value: str) -> None:
        assert not is_valid_email(value)
        with pytest.raises(ValidationError):
            normalize_email(value)


class TestPasswordStrength:
    def test_strong_password_returned(self) -> None:
        assert check_password_strength("Str0ng!Pass") == "Str0ng!Pass"

    @pytest.mark.parametrize(
        "password,rule",
        [
            ("S0!a", "at least 8"),
            ("STR0NG!PASS", "lowercase"),
            ("str0ng!pass", "uppercase"),
            ("Strong!Pass", "number"),
            ("Str0ngPass", "special"),
        ],
    )
    def test_first_failing_rule_named(self, password: str, rule: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            check_password_strength(password)
        assert rule in exc_info.value.detail
