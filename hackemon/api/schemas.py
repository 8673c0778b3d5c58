from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hackemon.service.errors import AuthErrorCode
from hackemon.storage.models import Identity

# Bound every free-text request field; passwords get the argon2 input bound
MAX_FIELD_LENGTH = 1000
MAX_PASSWORD_FIELD_LENGTH = 1024
MAX_TOKEN_LENGTH = 4096

_VALID_ERROR_CODES = frozenset(code.value for code in AuthErrorCode)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# requests
#
# Fields are optional at the schema level so a missing value reaches the
# service and comes back as MISSING_FIELDS rather than a framework 422.


class RegisterRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_FIELD_LENGTH)


class LoginRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    username: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    identifier: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_FIELD_LENGTH)

    @property
    def login_identifier(self) -> Optional[str]:
        """Email wins over username, username over the generic identifier."""
        for candidate in (self.email, self.username, self.identifier):
            if candidate and candidate.strip():
                return candidate
        return None


class RefreshRequest(_CamelModel):
    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", max_length=MAX_TOKEN_LENGTH
    )


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", max_length=MAX_TOKEN_LENGTH
    )


# responses


class UserView(_CamelModel):
    id: str
    username: str
    email: str
    role: str = "user"
    level: int = 1
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserView":
        return cls(**identity.public_view())


class TokenPair(_CamelModel):
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    user: UserView
    # access token duplicated at the top level for older clients
    token: str
    tokens: TokenPair


class RefreshResponse(BaseModel):
    success: bool = True
    message: str
    token: str
    tokens: TokenPair


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class ProfileResponse(BaseModel):
    success: bool = True
    user: UserView
    source: Literal["store", "token"] = "store"


class SessionResponse(_CamelModel):
    is_authenticated: bool = Field(alias="isAuthenticated")
    user: Optional[UserView] = None


class HealthResponse(BaseModel):
    status: str = "OK"
    timestamp: datetime
    uptime: float


class ErrorEnvelope(BaseModel):
    """Error body shared by every failing endpoint."""

    success: Literal[False] = False
    error: str
    code: str
    details: Optional[Any] = None
    request_id: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value
