"""Helpers shared by the memory and postgres stores.

Identity lookups accept either the canonical UUID or a numeric id issued by
older deployments. ``parse_identity_key`` is the only place that tells the two
apart; stores branch on its result and nowhere else.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

from hackemon.storage.models import Identity


@dataclass(frozen=True)
class IdentityKey:
    kind: str  # "uuid" or "legacy"
    value: Union[str, int]

    @property
    def is_legacy(self) -> bool:
        return self.kind == "legacy"


def parse_identity_key(raw: Any) -> Optional[IdentityKey]:
    """Translate a caller-supplied identity id into a canonical lookup key.

    Returns None for anything that is neither a UUID nor a positive integer,
    so stores can answer "not found" without touching storage.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, int):
        return IdentityKey("legacy", raw) if raw > 0 else None
    text = str(raw).strip()
    if not text:
        return None
    if text.isdigit():
        value = int(text)
        return IdentityKey("legacy", value) if value > 0 else None
    try:
        return IdentityKey("uuid", str(uuid.UUID(text)))
    except ValueError:
        return None


def token_digest(token: str) -> str:
    """Refresh tokens are stored as SHA-256 digests, never verbatim."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a value from a dict row or an attribute-style row."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def identity_from_row(row: Any) -> Identity:
    created_at = safe_row_value(row, "created_at")
    updated_at = safe_row_value(row, "updated_at")
    legacy_id = safe_row_value(row, "legacy_id")
    return Identity(
        id=str(safe_row_value(row, "id")),
        email=safe_row_value(row, "email"),
        username=safe_row_value(row, "username"),
        role=safe_row_value(row, "role", "user") or "user",
        level=int(safe_row_value(row, "level", 1) or 1),
        legacy_id=int(legacy_id) if legacy_id is not None else None,
        created_at=ensure_aware(created_at) if isinstance(created_at, datetime) else None,
        updated_at=ensure_aware(updated_at) if isinstance(updated_at, datetime) else None,
    )
