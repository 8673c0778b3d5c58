"""Tests for the password policy and request input normalization."""

import pytest

from hackemon.service.passwords import WEAK_PASSWORD, PasswordPolicy
from hackemon.service.validation import (
    MAX_INPUT_LENGTH,
    is_valid_email,
    is_valid_username,
    normalize_email,
    normalize_identifier,
    sanitize_text,
)


class TestPasswordPolicy:
    def test_accepts_minimal_compliant_password(self):
        check = PasswordPolicy().validate("Aa1!aaaaaaaa")

        assert check.valid
        assert check.reason is None
        assert check.unmet == []

    def test_rejects_missing_digit(self):
        """A 12 character password with no digit is weak."""
        check = PasswordPolicy().validate("Aa!aaaaaaaaa")

        assert not check.valid
        assert check.reason == WEAK_PASSWORD
        assert check.unmet == ["digit"]

    def test_reports_every_unmet_requirement(self):
        check = PasswordPolicy().validate("short")

        assert not check.valid
        assert set(check.unmet) == {"min_length", "uppercase", "digit", "special"}
        assert len(check.messages) == len(check.unmet)

    def test_rejects_overlong_password(self):
        check = PasswordPolicy().validate("Aa1!" + "a" * 200)

        assert not check.valid
        assert check.unmet == ["max_length"]

    def test_empty_and_none_are_weak(self):
        assert not PasswordPolicy().validate("").valid
        assert not PasswordPolicy().validate(None).valid

    def test_details_shape(self):
        details = PasswordPolicy().validate("aaaaaaaaaaaa").as_details()

        assert details["reason"] == WEAK_PASSWORD
        assert "uppercase" in details["unmet"]
        assert details["requirements"]

    def test_minimum_cannot_drop_below_twelve(self):
        with pytest.raises(ValueError):
            PasswordPolicy(min_length=8)

    def test_longer_minimum_is_enforced(self):
        policy = PasswordPolicy(min_length=16)

        assert not policy.validate("Aa1!aaaaaaaa").valid
        assert policy.validate("Aa1!aaaaaaaaaaaa").valid


class TestInputValidation:
    @pytest.mark.parametrize("username", ["abc", "alice_01", "Bob-the-Builder", "a" * 20])
    def test_valid_usernames(self, username):
        assert is_valid_username(username)

    @pytest.mark.parametrize("username", ["ab", "a" * 21, "has space", "semi;colon", "<b>", ""])
    def test_invalid_usernames(self, username):
        assert not is_valid_username(username)

    def test_email_normalization_and_format(self):
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"
        assert normalize_email(None) == ""
        assert is_valid_email("alice@example.com")
        assert not is_valid_email("alice@example")
        assert not is_valid_email("not-an-email")
        assert not is_valid_email("a" * 250 + "@x.io")

    def test_sanitize_strips_markup_and_scripts(self):
        assert sanitize_text("  <script>alert(1)</script> ") == "scriptalert(1)/script"
        assert sanitize_text("JavaScript:alert(1)") == "alert(1)"
        assert sanitize_text(None) == ""
        assert len(sanitize_text("x" * (MAX_INPUT_LENGTH + 50))) == MAX_INPUT_LENGTH

    def test_identifier_lowercases_only_emails(self):
        assert normalize_identifier(" Alice@Example.com ") == "alice@example.com"
        assert normalize_identifier("Alice") == "Alice"
        assert normalize_identifier(None) == ""
