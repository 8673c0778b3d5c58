from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

SPECIAL_CHARACTERS = "!@#$%^&*(),.?\":{}|<>-_+=[]\\/;'~`"
MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128

WEAK_PASSWORD = "WEAK_PASSWORD"


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    reason: Optional[str] = None
    unmet: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    def as_details(self) -> Dict[str, object]:
        return {"reason": self.reason, "unmet": list(self.unmet), "requirements": list(self.messages)}


class PasswordPolicy:
    """Server-side password strength rules. Pure; no I/O."""

    def __init__(
        self,
        min_length: int = MIN_PASSWORD_LENGTH,
        max_length: int = MAX_PASSWORD_LENGTH,
        special_characters: str = SPECIAL_CHARACTERS,
    ) -> None:
        if min_length < MIN_PASSWORD_LENGTH:
            raise ValueError(f"min_length must be at least {MIN_PASSWORD_LENGTH}")
        self.min_length = min_length
        self.max_length = max_length
        self.special_characters = frozenset(special_characters)

    def validate(self, password: Optional[str]) -> PasswordCheck:
        password = password or ""
        unmet: List[str] = []
        messages: List[str] = []

        if len(password) < self.min_length:
            unmet.append("min_length")
            messages.append(f"at least {self.min_length} characters")
        if len(password) > self.max_length:
            unmet.append("max_length")
            messages.append(f"at most {self.max_length} characters")
        if not any(c.isupper() for c in password):
            unmet.append("uppercase")
            messages.append("one uppercase letter")
        if not any(c.islower() for c in password):
            unmet.append("lowercase")
            messages.append("one lowercase letter")
        if not any(c.isdigit() for c in password):
            unmet.append("digit")
            messages.append("one number")
        if not any(c in self.special_characters for c in password):
            unmet.append("special")
            messages.append("one special character")

        if unmet:
            return PasswordCheck(False, WEAK_PASSWORD, unmet, messages)
        return PasswordCheck(True)
