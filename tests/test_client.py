"""Tests for the AuthClient token handling and refresh-then-retry protocol."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from hackemon import app as app_module
from hackemon.client import ApiError, AuthClient, AuthenticationRequired

PASSWORD = "Aa1!aaaaaaaa"


def _tokens(n):
    return {
        "success": True,
        "token": f"access-{n}",
        "tokens": {"accessToken": f"access-{n}", "refreshToken": f"refresh-{n}"},
    }


class FakeServer:
    """Scripted server: access tokens listed in ``expired`` get a 401."""

    def __init__(self, *, refresh_ok=True):
        self.expired = set()
        self.refresh_ok = refresh_ok
        self.issued = 0
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path, request.headers.get("Authorization")))
        if request.url.path == "/login":
            self.issued += 1
            return httpx.Response(200, json=_tokens(self.issued))
        if request.url.path == "/refresh-token":
            if not self.refresh_ok:
                return httpx.Response(401, json={"success": False, "error": "no", "code": "UNAUTHORIZED_REFRESH_TOKEN"})
            self.issued += 1
            return httpx.Response(200, json=_tokens(self.issued))
        if request.url.path == "/logout":
            return httpx.Response(200, json={"success": True, "message": "bye"})
        token = (request.headers.get("Authorization") or "").removeprefix("Bearer ")
        if not token or token in self.expired:
            return httpx.Response(401, json={"success": False, "error": "expired", "code": "INVALID_TOKEN"})
        return httpx.Response(200, json={"success": True, "user": {"username": "alice"}})


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def api(server):
    client = AuthClient("http://testserver", transport=httpx.MockTransport(server))
    yield client
    client.close()


class TestRefreshProtocol:
    def test_login_stores_tokens_and_attaches_bearer(self, api, server):
        api.login("alice@x.com", PASSWORD)

        assert api.access_token == "access-1"
        assert api.profile() == {"username": "alice"}
        assert server.requests[-1][2] == "Bearer access-1"

    def test_login_sends_email_or_username(self, api, server):
        api.login("alice", PASSWORD)

        assert server.requests[-1][1] == "/login"

    def test_401_refreshes_once_and_retries(self, api, server):
        api.login("alice", PASSWORD)
        server.expired.add("access-1")

        assert api.profile() == {"username": "alice"}
        paths = [path for _, path, _ in server.requests]
        assert paths == ["/login", "/profile", "/refresh-token", "/profile"]
        assert api.access_token == "access-2"
        assert api.refresh_token == "refresh-2"

    def test_second_401_discards_tokens(self, api, server):
        api.login("alice", PASSWORD)
        server.expired.update({"access-1", "access-2"})

        with pytest.raises(AuthenticationRequired) as exc_info:
            api.profile()

        assert exc_info.value.status_code == 401
        assert api.access_token is None and api.refresh_token is None
        assert [path for _, path, _ in server.requests].count("/refresh-token") == 1

    def test_failed_refresh_discards_tokens(self, server):
        server.refresh_ok = False
        with AuthClient("http://testserver", transport=httpx.MockTransport(server)) as api:
            api.login("alice", PASSWORD)
            server.expired.add("access-1")

            with pytest.raises(AuthenticationRequired):
                api.profile()

            assert not api.is_authenticated

    def test_logout_clears_tokens_and_sends_refresh_token(self, api, server):
        api.login("alice", PASSWORD)

        api.logout()

        assert not api.is_authenticated
        assert server.requests[-1][1] == "/logout"


class TestErrors:
    def test_api_error_carries_code_and_details(self):
        def handler(request):
            return httpx.Response(
                409, json={"success": False, "error": "taken", "code": "USER_EXISTS", "details": {"field": "email"}}
            )

        with AuthClient("http://testserver", transport=httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError) as exc_info:
                api.register("alice", "alice@x.com", PASSWORD)

        assert exc_info.value.code == "USER_EXISTS"
        assert exc_info.value.message == "taken"
        assert exc_info.value.details == {"field": "email"}

    def test_server_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request.url.path)
            if len(attempts) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json=_tokens(1))

        with AuthClient(
            "http://testserver", transport=httpx.MockTransport(handler), max_retries=3, retry_delay=0
        ) as api:
            api.login("alice", PASSWORD)

        assert len(attempts) == 3
        assert api.access_token == "access-1"

    def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(502, text="<html>bad gateway</html>")

        with AuthClient("http://testserver", transport=httpx.MockTransport(handler)) as api:
            with pytest.raises(ApiError) as exc_info:
                api.login("alice", PASSWORD)

        assert exc_info.value.status_code == 502
        assert exc_info.value.code is None


class TestAgainstTheApp:
    def test_full_flow_over_the_real_app(self):
        with AuthClient(client=TestClient(app_module.app)) as api:
            api.register("alice", "alice@x.com", PASSWORD)
            first_refresh = api.refresh_token

            assert api.profile()["username"] == "alice"
            assert api.refresh()
            assert api.refresh_token != first_refresh

            # a stale access token triggers a transparent refresh
            api.access_token = "stale"
            assert api.profile()["email"] == "alice@x.com"

            api.logout_all()
            assert not api.is_authenticated

    def test_login_payload_shape(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=_tokens(1))

        with AuthClient("http://testserver", transport=httpx.MockTransport(handler)) as api:
            api.login("alice@x.com", PASSWORD)
            api.login("alice", PASSWORD)

        assert seen == [
            {"email": "alice@x.com", "password": PASSWORD},
            {"username": "alice", "password": PASSWORD},
        ]
