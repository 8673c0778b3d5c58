from __future__ import annotations

import re
from typing import Optional

MAX_INPUT_LENGTH = 1000
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 20

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_JAVASCRIPT_SCHEME = re.compile(r"javascript:", re.IGNORECASE)


def sanitize_text(value: Optional[str], max_length: int = MAX_INPUT_LENGTH) -> str:
    """Strip markup brackets and ``javascript:`` and bound the length.

    Never applied to passwords.
    """
    if not value:
        return ""
    cleaned = value.strip().replace("<", "").replace(">", "")
    cleaned = _JAVASCRIPT_SCHEME.sub("", cleaned)
    return cleaned[:max_length]


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(email) and len(email) <= 254 and bool(_EMAIL_PATTERN.match(email))


def is_valid_username(username: str) -> bool:
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        return False
    return bool(_USERNAME_PATTERN.match(username))


def normalize_identifier(value: Optional[str]) -> str:
    """Login identifiers are an email (lower-cased) or a case-sensitive username."""
    identifier = sanitize_text(value)
    if "@" in identifier:
        return identifier.lower()
    return identifier
