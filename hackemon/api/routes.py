from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request

from hackemon.api.schemas import (
    AuthResponse,
    HealthResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    SessionResponse,
    TokenPair,
    UserView,
)
from hackemon.logging import get_logger
from hackemon.service.auth import AuthResult
from hackemon.service.errors import AuthErrorCode, RateLimitedError, error_for_code
from hackemon.service.lockout import LockoutStatus
from hackemon.service.runtime import get_runtime
from hackemon.service.validation import normalize_identifier

logger = get_logger(__name__)

router = APIRouter()


def _raise_for(result: AuthResult, *, headers: Optional[Dict[str, str]] = None) -> None:
    if result.ok:
        return
    raise error_for_code(
        result.code or AuthErrorCode.SERVER_ERROR,
        result.message,
        detail=result.details,
        headers=headers,
    )


def _token_pair(result: AuthResult) -> TokenPair:
    return TokenPair(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        message=result.message,
        user=UserView.from_identity(result.identity),
        token=result.tokens.access_token,
        tokens=_token_pair(result),
    )


def _locked_error(status: LockoutStatus) -> RateLimitedError:
    return RateLimitedError(
        detail={"retry_after_seconds": status.retry_after_seconds},
        headers={"Retry-After": str(status.retry_after_seconds)},
    )


async def get_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Resolve the bearer access token into its verified claims."""
    result = await get_runtime().auth.authenticate(authorization)
    _raise_for(result, headers={"WWW-Authenticate": "Bearer"})
    return result.claims


@router.post("/register", response_model=AuthResponse, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an identity and sign it in.

    Raises:
        400: missing fields, bad username or email format, weak password
        409: username or email already taken
    """
    runtime = get_runtime()
    result = await runtime.auth.register(body.username, body.email, body.password)
    _raise_for(result)
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email or username and password.

    Raises:
        401: invalid credentials; details carry ``remaining_attempts``
        429: too many failures for this identifier; ``Retry-After`` is set
    """
    runtime = get_runtime()
    identifier = normalize_identifier(body.login_identifier)
    if not identifier or not body.password:
        # no password guess to count; the service reports MISSING_FIELDS
        result = await runtime.auth.login(identifier or None, body.password)
        _raise_for(result)

    client_ip = request.client.host if request.client else None
    key = runtime.lockout.key_for(
        identifier, client_ip if runtime.settings.lockout_include_ip else None
    )
    # reserved before the password check so parallel guesses are counted
    status = await runtime.lockout.acquire(key)
    if status.locked:
        logger.info("login_rejected_locked", retry_after=status.retry_after_seconds)
        raise _locked_error(status)

    result = await runtime.auth.login(identifier, body.password)
    if not result.ok:
        if result.code == AuthErrorCode.INVALID_CREDENTIALS:
            result.details = {
                **result.details,
                "remaining_attempts": status.remaining_attempts,
            }
        _raise_for(result)

    await runtime.lockout.reset(key)
    return _auth_response(result)


@router.post("/refresh-token", response_model=RefreshResponse, tags=["auth"])
async def refresh_token(body: RefreshRequest):
    """Exchange a refresh token for a new pair; the presented token is consumed."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    _raise_for(result)
    return RefreshResponse(
        message=result.message,
        token=result.tokens.access_token,
        tokens=_token_pair(result),
    )


@router.post("/logout", response_model=MessageResponse, tags=["auth"])
async def logout(body: Optional[LogoutRequest] = None):
    runtime = get_runtime()
    result = await runtime.auth.logout(body.refresh_token if body else None)
    return MessageResponse(message=result.message)


@router.post("/logout-all", response_model=MessageResponse, tags=["auth"])
async def logout_all(claims: Dict[str, Any] = Depends(get_user)):
    """Revoke every refresh token held by the caller."""
    runtime = get_runtime()
    result = await runtime.auth.logout_all(claims)
    _raise_for(result)
    return MessageResponse(message=result.message)


@router.get("/profile", response_model=ProfileResponse, tags=["auth"])
async def profile(claims: Dict[str, Any] = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.auth.get_profile(claims)
    _raise_for(result)
    return ProfileResponse(user=UserView.from_identity(result.identity), source=result.source)


@router.get("/session", response_model=SessionResponse, tags=["auth"])
async def session(authorization: Optional[str] = Header(None)):
    """Report whether the bearer token (if any) belongs to a live identity."""
    runtime = get_runtime()
    auth = await runtime.auth.authenticate(authorization)
    if not auth.ok:
        return SessionResponse(is_authenticated=False)
    result = await runtime.auth.get_profile(auth.claims)
    if not result.ok:
        return SessionResponse(is_authenticated=False)
    return SessionResponse(is_authenticated=True, user=UserView.from_identity(result.identity))


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health():
    runtime = get_runtime()
    now = datetime.now(timezone.utc)
    return HealthResponse(
        timestamp=now,
        uptime=round((now - runtime.started_at).total_seconds(), 3),
    )
