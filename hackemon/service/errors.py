from __future__ import annotations

from enum import Enum
from typing import Dict, Optional


class ErrorCategory(str, Enum):
    INPUT = "input"
    AUTH = "auth"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"


class AuthErrorCode(str, Enum):
    """Stable client-visible error codes."""

    MISSING_FIELDS = "MISSING_FIELDS"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    INVALID_USERNAME_FORMAT = "INVALID_USERNAME_FORMAT"
    INVALID_EMAIL_FORMAT = "INVALID_EMAIL_FORMAT"
    MISSING_REFRESH_TOKEN = "MISSING_REFRESH_TOKEN"
    BAD_REQUEST = "BAD_REQUEST"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    UNAUTHORIZED_REFRESH_TOKEN = "UNAUTHORIZED_REFRESH_TOKEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    USER_EXISTS = "USER_EXISTS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SERVER_ERROR = "SERVER_ERROR"
    DB_UNAVAILABLE = "DB_UNAVAILABLE"

    @property
    def status_code(self) -> int:
        return _STATUS[self]

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORY[self]

    @property
    def default_message(self) -> str:
        return _MESSAGES[self]


_C = AuthErrorCode

_STATUS: Dict[AuthErrorCode, int] = {
    _C.MISSING_FIELDS: 400,
    _C.INVALID_PASSWORD: 400,
    _C.INVALID_USERNAME_FORMAT: 400,
    _C.INVALID_EMAIL_FORMAT: 400,
    _C.MISSING_REFRESH_TOKEN: 400,
    _C.BAD_REQUEST: 400,
    _C.INVALID_CREDENTIALS: 401,
    _C.INVALID_TOKEN: 401,
    _C.INVALID_REFRESH_TOKEN: 401,
    _C.UNAUTHORIZED_REFRESH_TOKEN: 401,
    _C.UNAUTHORIZED: 401,
    _C.FORBIDDEN: 403,
    _C.USER_NOT_FOUND: 404,
    _C.NOT_FOUND: 404,
    _C.METHOD_NOT_ALLOWED: 405,
    _C.USER_EXISTS: 409,
    _C.ACCOUNT_LOCKED: 429,
    _C.SERVER_ERROR: 500,
    _C.DB_UNAVAILABLE: 503,
}

_CATEGORY: Dict[AuthErrorCode, ErrorCategory] = {
    _C.MISSING_FIELDS: ErrorCategory.INPUT,
    _C.INVALID_PASSWORD: ErrorCategory.INPUT,
    _C.INVALID_USERNAME_FORMAT: ErrorCategory.INPUT,
    _C.INVALID_EMAIL_FORMAT: ErrorCategory.INPUT,
    _C.MISSING_REFRESH_TOKEN: ErrorCategory.INPUT,
    _C.BAD_REQUEST: ErrorCategory.INPUT,
    _C.INVALID_CREDENTIALS: ErrorCategory.AUTH,
    _C.INVALID_TOKEN: ErrorCategory.AUTH,
    _C.INVALID_REFRESH_TOKEN: ErrorCategory.AUTH,
    _C.UNAUTHORIZED_REFRESH_TOKEN: ErrorCategory.AUTH,
    _C.UNAUTHORIZED: ErrorCategory.AUTH,
    _C.FORBIDDEN: ErrorCategory.AUTH,
    _C.USER_NOT_FOUND: ErrorCategory.NOT_FOUND,
    _C.NOT_FOUND: ErrorCategory.NOT_FOUND,
    _C.METHOD_NOT_ALLOWED: ErrorCategory.INPUT,
    _C.USER_EXISTS: ErrorCategory.CONFLICT,
    _C.ACCOUNT_LOCKED: ErrorCategory.RATE_LIMITED,
    _C.SERVER_ERROR: ErrorCategory.SERVER,
    _C.DB_UNAVAILABLE: ErrorCategory.SERVER,
}

_MESSAGES: Dict[AuthErrorCode, str] = {
    _C.MISSING_FIELDS: "Required fields are missing",
    _C.INVALID_PASSWORD: "Password does not meet the security requirements",
    _C.INVALID_USERNAME_FORMAT: "Username must be 3-20 characters: letters, digits, underscores or hyphens",
    _C.INVALID_EMAIL_FORMAT: "Email address is not valid",
    _C.MISSING_REFRESH_TOKEN: "Refresh token is required",
    _C.BAD_REQUEST: "Bad request",
    _C.INVALID_CREDENTIALS: "Invalid credentials",
    _C.INVALID_TOKEN: "Invalid or expired token",
    _C.INVALID_REFRESH_TOKEN: "Invalid or expired refresh token",
    _C.UNAUTHORIZED_REFRESH_TOKEN: "Refresh token is not authorized",
    _C.UNAUTHORIZED: "Authentication required",
    _C.FORBIDDEN: "Forbidden",
    _C.USER_NOT_FOUND: "User not found",
    _C.NOT_FOUND: "Not found",
    _C.METHOD_NOT_ALLOWED: "Method not allowed",
    _C.USER_EXISTS: "A user with this email or username already exists",
    _C.ACCOUNT_LOCKED: "Too many failed login attempts; try again later",
    _C.SERVER_ERROR: "Internal server error",
    _C.DB_UNAVAILABLE: "Service temporarily unavailable",
}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a default ``error_code``;
    both can be overridden per instance with any ``AuthErrorCode``.
    """

    status_code: int = 400
    error_code: AuthErrorCode = AuthErrorCode.BAD_REQUEST

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[AuthErrorCode] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if error_code is not None:
            self.error_code = AuthErrorCode(error_code)
        self.message = message or self.error_code.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = AuthErrorCode.MISSING_FIELDS


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = AuthErrorCode.UNAUTHORIZED


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = AuthErrorCode.FORBIDDEN


class NotFoundError(ServiceError):
    status_code = 404
    error_code = AuthErrorCode.USER_NOT_FOUND


class ConflictError(ServiceError):
    """Duplicate identity (409)."""
    status_code = 409
    error_code = AuthErrorCode.USER_EXISTS


class RateLimitedError(ServiceError):
    """Login locked out (429)."""
    status_code = 429
    error_code = AuthErrorCode.ACCOUNT_LOCKED


class ServerError(ServiceError):
    status_code = 500
    error_code = AuthErrorCode.SERVER_ERROR


class UnavailableError(ServerError):
    status_code = 503
    error_code = AuthErrorCode.DB_UNAVAILABLE


_ERROR_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    429: RateLimitedError,
    500: ServerError,
    503: UnavailableError,
}


def error_for_code(
    code: AuthErrorCode,
    message: Optional[str] = None,
    *,
    detail: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> ServiceError:
    """Build the ServiceError subclass matching ``code``'s HTTP status."""
    code = AuthErrorCode(code)
    error_cls = _ERROR_BY_STATUS.get(code.status_code, ServiceError)
    return error_cls(
        message,
        status_code=code.status_code,
        error_code=code,
        detail=detail,
        headers=headers,
    )


__all__ = [
    "AuthErrorCode",
    "ErrorCategory",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UnavailableError",
    "error_for_code",
]
