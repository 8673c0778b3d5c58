from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from hackemon.config import Settings
from hackemon.logging import get_logger
from hackemon.storage.common import token_digest
from hackemon.storage.models import Identity

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Signs and verifies HS256 compact tokens.

    ``verify`` never raises: every failure (malformed, wrong algorithm, bad
    signature, expired, wrong issuer/audience/type) yields ``None`` and is
    logged at debug level only. Changing the secret invalidates every token
    issued under the old one.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(seconds=30),
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self.clock: Clock = clock or _utc_now

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=settings.jwt_leeway_seconds),
            clock=clock,
        )

    def sign_access(self, identity: Identity) -> str:
        return self._encode(
            {
                "sub": identity.id,
                "username": identity.username,
                "email": identity.email,
                "level": identity.level,
                "role": identity.role,
            },
            token_type=ACCESS,
            ttl=self.access_ttl,
        )

    def sign_refresh(self, identity: Identity) -> str:
        return self._encode(
            {"sub": identity.id, "username": identity.username},
            token_type=REFRESH,
            ttl=self.refresh_ttl,
        )

    def verify(self, token: Optional[str], token_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.debug("token_malformed")
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("token_header_decode_failed")
            return None
        # Only HS256; rejects "none" and algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("token_invalid_algorithm")
            return None

        expected_sig = _encode_segment(self._sign(f"{header_b64}.{payload_b64}"))
        try:
            signature_ok = hmac.compare_digest(expected_sig, sig_b64)
        except TypeError:
            # non-ASCII signature segment
            signature_ok = False
        if not signature_ok:
            logger.debug("token_bad_signature")
            return None

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.debug("token_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None

        if payload.get("iss") != self.issuer:
            logger.debug("token_wrong_issuer")
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            logger.debug("token_wrong_audience")
            return None

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            logger.debug("token_missing_exp")
            return None
        now_ts = self.clock().timestamp()
        if exp_ts <= now_ts - self.leeway.total_seconds():
            logger.debug("token_expired")
            return None

        if token_type is not None and payload.get("token_type") != token_type:
            logger.debug("token_wrong_type", expected=token_type)
            return None
        return payload

    def decode_unsafe(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Decode claims WITHOUT checking the signature.

        For logging and telemetry only; never base an authorization decision
        on the result.
        """
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 3:
            return None
        try:
            payload = json.loads(_decode_segment(parts[1]))
        except (ValueError, TypeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _encode(self, claims: Dict[str, Any], *, token_type: str, ttl: timedelta) -> str:
        now = self.clock()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            # Distinguishes two tokens minted for the same identity in the same second
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(signing_input))}"

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()


class RefreshTokenStore(Protocol):
    def add_refresh_token(self, user_id: str, digest: str, expires_at: datetime) -> None: ...

    def remove_refresh_token(self, user_id: str, digest: str) -> bool: ...

    def has_refresh_token(self, user_id: str, digest: str) -> bool: ...

    def rotate_refresh_token(
        self, user_id: str, old_digest: str, new_digest: str, expires_at: datetime
    ) -> bool: ...

    def clear_refresh_tokens(self, user_id: str) -> int: ...

    def prune_refresh_tokens(self, now: datetime) -> int: ...


class RefreshTokenRegistry:
    """The set of refresh tokens each identity may still redeem.

    A refresh token is usable only while it is signature-valid AND present
    here; rotation swaps the presented token for a new one in one
    compare-and-swap step so two racing refreshes cannot both succeed.
    """

    def __init__(self, store: RefreshTokenStore, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec

    def _expiry(self, token: str) -> datetime:
        claims = self.codec.verify(token, token_type=REFRESH)
        if not claims:
            raise ValueError("cannot register an invalid refresh token")
        return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)

    def add(self, identity_id: str, token: str) -> None:
        self.store.add_refresh_token(identity_id, token_digest(token), self._expiry(token))

    def remove(self, identity_id: str, token: str) -> bool:
        """Idempotent; returns whether a token was actually removed."""
        return self.store.remove_refresh_token(identity_id, token_digest(token))

    def is_valid(self, identity_id: str, token: str) -> bool:
        claims = self.codec.verify(token, token_type=REFRESH)
        if not claims or str(claims.get("sub")) != str(identity_id):
            return False
        return self.store.has_refresh_token(identity_id, token_digest(token))

    def rotate(self, identity_id: str, old_token: str, new_token: str) -> bool:
        """Remove ``old_token`` iff present, then add ``new_token``.

        Returns False without adding anything when ``old_token`` was already
        gone, i.e. another request rotated it first.
        """
        return self.store.rotate_refresh_token(
            identity_id,
            token_digest(old_token),
            token_digest(new_token),
            self._expiry(new_token),
        )

    def clear_all(self, identity_id: str) -> int:
        return self.store.clear_refresh_tokens(identity_id)

    def prune_expired(self) -> int:
        return self.store.prune_refresh_tokens(self.codec.clock())
