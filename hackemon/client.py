from __future__ import annotations

import time
from typing import Any, Dict, Optional

import httpx

from hackemon.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class ApiError(Exception):
    """Non-2xx response carrying the server's error envelope."""

    def __init__(self, status_code: int, code: Optional[str], message: str, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("error") or body.get("message") or f"server error ({response.status_code})"
        return cls(response.status_code, body.get("code"), message, body.get("details"))


class AuthenticationRequired(ApiError):
    """The session is gone; tokens were discarded and the user must sign in again."""


class AuthClient:
    """Synchronous client for the auth API that keeps the token pair.

    Authenticated calls attach ``Authorization: Bearer``. On a 401 the client
    calls ``/refresh-token`` once and retries the original request; a second
    401, or a failed refresh, clears both tokens and raises
    ``AuthenticationRequired``. 5xx responses are retried ``max_retries``
    times with a fixed delay.
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 0,
        retry_delay: float = 1.0,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=base_url, transport=transport, timeout=timeout
        )
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None

    def __enter__(self) -> "AuthClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def clear_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None

    def _store_tokens(self, body: Dict[str, Any]) -> None:
        tokens = body.get("tokens") or {}
        self.access_token = tokens.get("accessToken") or body.get("token")
        self.refresh_token = tokens.get("refreshToken") or self.refresh_token

    def _send(self, method: str, path: str, *, json: Any = None, auth: bool = False) -> httpx.Response:
        headers = {}
        if auth and self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        attempt = 0
        while True:
            response = self._client.request(method, path, json=json, headers=headers)
            if response.status_code < 500 or attempt >= self.max_retries:
                return response
            attempt += 1
            logger.info("client_retry_server_error", path=path, status_code=response.status_code)
            time.sleep(self.retry_delay)

    def _unwrap(self, response: httpx.Response) -> Dict[str, Any]:
        if response.is_success:
            return response.json()
        raise ApiError.from_response(response)

    # public endpoints
    def register(self, username: str, email: str, password: str) -> Dict[str, Any]:
        body = self._unwrap(
            self._send(
                "POST",
                "/register",
                json={"username": username, "email": email, "password": password},
            )
        )
        self._store_tokens(body)
        return body

    def login(self, identifier: str, password: str) -> Dict[str, Any]:
        field = "email" if "@" in identifier else "username"
        body = self._unwrap(
            self._send("POST", "/login", json={field: identifier, "password": password})
        )
        self._store_tokens(body)
        return body

    def refresh(self) -> bool:
        """Rotate the token pair. Returns False (tokens cleared) when refused."""
        if not self.refresh_token:
            return False
        response = self._send("POST", "/refresh-token", json={"refreshToken": self.refresh_token})
        if not response.is_success:
            logger.info("client_refresh_rejected", status_code=response.status_code)
            self.clear_tokens()
            return False
        self._store_tokens(response.json())
        return True

    def logout(self) -> None:
        """Server-side revocation is best effort; local tokens are always dropped."""
        payload = {"refreshToken": self.refresh_token} if self.refresh_token else None
        try:
            self._send("POST", "/logout", json=payload)
        finally:
            self.clear_tokens()

    # authenticated endpoints
    def request(self, method: str, path: str, *, json: Any = None) -> Dict[str, Any]:
        response = self._send(method, path, json=json, auth=True)
        if response.status_code == 401:
            if not self.refresh():
                raise AuthenticationRequired.from_response(response)
            response = self._send(method, path, json=json, auth=True)
            if response.status_code == 401:
                self.clear_tokens()
                raise AuthenticationRequired.from_response(response)
        return self._unwrap(response)

    def profile(self) -> Dict[str, Any]:
        return self.request("GET", "/profile")["user"]

    def logout_all(self) -> None:
        try:
            self.request("POST", "/logout-all")
        finally:
            self.clear_tokens()
