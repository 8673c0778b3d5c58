from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from hackemon.config import Settings
from hackemon.logging import get_logger
from hackemon.service.errors import AuthErrorCode
from hackemon.service.passwords import PasswordPolicy
from hackemon.service.tokens import ACCESS, REFRESH, RefreshTokenRegistry, TokenCodec
from hackemon.service.validation import (
    is_valid_email,
    is_valid_username,
    normalize_email,
    normalize_identifier,
)
from hackemon.storage.errors import ConstraintViolation, StoreUnavailable
from hackemon.storage.models import Identity

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def find_by_email_or_username(self, identifier: str) -> Optional[Identity]: ...

    def find_by_id(self, identity_id) -> Optional[Identity]: ...

    def create_identity(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = "user",
        level: int = 1,
    ) -> Identity: ...

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str


@dataclass
class AuthResult:
    """Outcome of an AuthService operation; failures carry a stable code."""

    ok: bool
    code: Optional[AuthErrorCode] = None
    message: str = ""
    identity: Optional[Identity] = None
    tokens: Optional[IssuedTokens] = None
    claims: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)
    source: str = "store"

    @classmethod
    def success(cls, message: str = "", **kwargs: Any) -> "AuthResult":
        return cls(ok=True, message=message, **kwargs)

    @classmethod
    def failure(
        cls,
        code: AuthErrorCode,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> "AuthResult":
        return cls(
            ok=False,
            code=code,
            message=message or code.default_message,
            details=details or {},
        )


class AuthService:
    """Registration, login, refresh-token rotation, logout and profile lookup.

    Operations return an ``AuthResult`` instead of raising. Password hashing
    and verification run in a worker thread so they never block the event
    loop. The service keeps no per-request state between calls.
    """

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        registry: RefreshTokenRegistry,
        policy: PasswordPolicy,
        settings: Settings,
    ) -> None:
        self.store = store
        self.codec = codec
        self.registry = registry
        self.policy = policy
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, identity_id: str, password: str) -> bool:
        """Verify a password against the stored hash in constant time."""
        record = self.store.get_password_record(identity_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=identity_id)
            self._burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=identity_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _burn_verification(self, password: str) -> None:
        """Spend one verification on a throwaway hash so unknown users cost the same."""
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash("hackemon-timing-equalizer")
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def _issue_tokens(self, identity: Identity) -> IssuedTokens:
        return IssuedTokens(
            access_token=self.codec.sign_access(identity),
            refresh_token=self.codec.sign_refresh(identity),
        )

    # operations
    async def register(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
    ) -> AuthResult:
        username = (username or "").strip()
        email = normalize_email(email)
        if not username or not email or not password:
            return AuthResult.failure(
                AuthErrorCode.MISSING_FIELDS,
                details={"required": ["username", "email", "password"]},
            )
        if not is_valid_username(username):
            return AuthResult.failure(
                AuthErrorCode.INVALID_USERNAME_FORMAT, details={"field": "username"}
            )
        if not is_valid_email(email):
            return AuthResult.failure(
                AuthErrorCode.INVALID_EMAIL_FORMAT, details={"field": "email"}
            )

        check = self.policy.validate(password)
        if not check.valid:
            return AuthResult.failure(
                AuthErrorCode.INVALID_PASSWORD,
                "Password must contain " + ", ".join(check.messages),
                details=check.as_details(),
            )

        if self.store.find_by_email_or_username(email) or self.store.find_by_email_or_username(
            username
        ):
            self.logger.info("register_rejected_duplicate")
            return AuthResult.failure(AuthErrorCode.USER_EXISTS)

        pwd_hash, algo = await asyncio.to_thread(self._hash_password, password)
        try:
            identity = self.store.create_identity(username, email, pwd_hash, algo)
        except ConstraintViolation as exc:
            # lost a registration race; the unique constraint decided
            self.logger.info("register_constraint_violation", detail=exc.detail)
            return AuthResult.failure(AuthErrorCode.USER_EXISTS)

        tokens = self._issue_tokens(identity)
        try:
            self.registry.add(identity.id, tokens.refresh_token)
        except (ConstraintViolation, StoreUnavailable) as exc:
            self.logger.error(
                "register_refresh_token_persist_failed",
                user_id=identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AuthResult.failure(AuthErrorCode.SERVER_ERROR)

        self.logger.info("user_registered", user_id=identity.id)
        return AuthResult.success(
            "User registered successfully", identity=identity, tokens=tokens
        )

    async def login(self, identifier: Optional[str], password: Optional[str]) -> AuthResult:
        identifier = normalize_identifier(identifier)
        if not identifier or not password:
            return AuthResult.failure(
                AuthErrorCode.MISSING_FIELDS,
                details={"required": ["email or username", "password"]},
            )

        identity = self.store.find_by_email_or_username(identifier)
        if identity is None:
            await asyncio.to_thread(self._burn_verification, password)
            self.logger.info("login_failed", reason="unknown_identifier")
            return AuthResult.failure(AuthErrorCode.INVALID_CREDENTIALS)

        if not await asyncio.to_thread(self.verify_password, identity.id, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=identity.id)
            return AuthResult.failure(AuthErrorCode.INVALID_CREDENTIALS)

        tokens = self._issue_tokens(identity)
        try:
            self.registry.add(identity.id, tokens.refresh_token)
        except (ConstraintViolation, StoreUnavailable) as exc:
            self.logger.error(
                "login_refresh_token_persist_failed",
                user_id=identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AuthResult.failure(AuthErrorCode.SERVER_ERROR)

        self.logger.info("user_logged_in", user_id=identity.id)
        return AuthResult.success("Login successful", identity=identity, tokens=tokens)

    async def refresh(self, refresh_token: Optional[str]) -> AuthResult:
        if not refresh_token:
            return AuthResult.failure(AuthErrorCode.MISSING_REFRESH_TOKEN)

        claims = self.codec.verify(refresh_token, token_type=REFRESH)
        if not claims:
            return AuthResult.failure(AuthErrorCode.INVALID_REFRESH_TOKEN)

        identity = self.store.find_by_id(claims.get("sub"))
        if identity is None:
            self.logger.warning("refresh_orphaned_token", user_id=claims.get("sub"))
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND)

        if not self.registry.is_valid(identity.id, refresh_token):
            self.logger.warning("refresh_token_not_registered", user_id=identity.id)
            return AuthResult.failure(AuthErrorCode.UNAUTHORIZED_REFRESH_TOKEN)

        tokens = self._issue_tokens(identity)
        try:
            rotated = self.registry.rotate(identity.id, refresh_token, tokens.refresh_token)
        except (ConstraintViolation, StoreUnavailable) as exc:
            self.logger.error(
                "refresh_rotation_failed",
                user_id=identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AuthResult.failure(AuthErrorCode.SERVER_ERROR)
        if not rotated:
            # a concurrent refresh consumed this token first
            self.logger.warning("refresh_rotation_lost_race", user_id=identity.id)
            return AuthResult.failure(AuthErrorCode.UNAUTHORIZED_REFRESH_TOKEN)

        return AuthResult.success(
            "Token refreshed successfully", identity=identity, tokens=tokens
        )

    async def logout(self, refresh_token: Optional[str] = None) -> AuthResult:
        """Best-effort sign-out; always succeeds for the caller."""
        claims = self.codec.verify(refresh_token, token_type=REFRESH) if refresh_token else None
        if claims and claims.get("sub"):
            try:
                removed = self.registry.remove(str(claims["sub"]), refresh_token)
            except StoreUnavailable as exc:
                self.logger.warning("logout_registry_unavailable", error=str(exc))
            else:
                self.logger.info("user_logged_out", user_id=claims["sub"], removed=removed)
        return AuthResult.success("Logged out successfully")

    async def logout_all(self, claims: Dict[str, Any]) -> AuthResult:
        subject = str(claims.get("sub") or "")
        if not subject:
            return AuthResult.failure(AuthErrorCode.INVALID_TOKEN)
        cleared = self.registry.clear_all(subject)
        self.logger.info("user_logged_out_everywhere", user_id=subject, cleared=cleared)
        return AuthResult.success(
            "Logged out from all sessions", details={"revoked": cleared}
        )

    async def get_profile(self, claims: Dict[str, Any]) -> AuthResult:
        subject = claims.get("sub")
        try:
            identity = self.store.find_by_id(subject)
        except StoreUnavailable as exc:
            fallback = Identity.from_claims(claims)
            if fallback is None:
                self.logger.error("profile_lookup_failed", user_id=subject, error=str(exc))
                return AuthResult.failure(AuthErrorCode.DB_UNAVAILABLE)
            self.logger.warning("profile_served_from_token", user_id=subject, error=str(exc))
            return AuthResult.success(identity=fallback, source="token")
        if identity is None:
            return AuthResult.failure(AuthErrorCode.USER_NOT_FOUND)
        return AuthResult.success(identity=identity)

    async def authenticate(self, authorization: Optional[str]) -> AuthResult:
        token = self._extract_bearer(authorization)
        if not token:
            return AuthResult.failure(AuthErrorCode.UNAUTHORIZED)
        claims = self.codec.verify(token, token_type=ACCESS)
        if not claims:
            return AuthResult.failure(AuthErrorCode.INVALID_TOKEN)
        return AuthResult.success(claims=claims)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None
