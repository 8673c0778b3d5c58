from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    """A registered account. The password hash lives in a separate credential record."""

    id: str
    email: str
    username: str
    role: str = "user"
    level: int = 1
    legacy_id: Optional[int] = None
    created_at: Optional[datetime] = field(default_factory=utcnow)
    updated_at: Optional[datetime] = field(default_factory=utcnow)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "level": self.level,
            "created_at": self.created_at,
        }

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> Optional["Identity"]:
        """Rebuild a possibly stale identity from verified access-token claims."""
        subject = claims.get("sub")
        username = claims.get("username")
        email = claims.get("email")
        if not subject or not username or not email:
            return None
        return cls(
            id=str(subject),
            email=str(email),
            username=str(username),
            role=str(claims.get("role") or "user"),
            level=int(claims.get("level") or 1),
            created_at=None,
            updated_at=None,
        )


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None
