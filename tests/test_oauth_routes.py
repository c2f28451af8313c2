"""
tests/test_oauth_routes.py -- Integration tests for the browser login routes.

These run through the real ASGI stack (TrustedHost, CORS, SlowAPI, Session
middleware) with the web_client fixture (follow_redirects=False) and assert on
Location headers directly.

Coverage:
  - Initiate: 302 to the provider with state + S256 challenge; unknown provider
  - Callback success: 302 to ?next, no-store, session bound; /me works
  - Replay, provider denial, forged state -> LOGIN_ERROR_URL?error=<code>
  - Callback state must match the one stored in the initiating browser's
    session; a mismatch burns the attempt
  - Open redirect prevention on ?next=
  - Session rotation on login; logout ends the session
  - Email collision -> ambiguous_account
  - Login page renders provider buttons and only whitelisted messages
  - Rate limit on initiation -> 429 with Retry-After
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

from conftest import LOGIN_LIMIT, FakeGitHub, login
from fastapi.testclient import TestClient

from asgi import app
from auth.tokens import generate_state_token
from core.config import get_settings

COOKIE = "oauthgate_session"


def _error_of(resp) -> str:
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    assert location.path == "/login"
    return parse_qs(location.query)["error"][0]


def _logout(client: TestClient) -> None:
    client.post("/logout")


class TestInitiate:
    def test_redirects_to_provider(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        resp = client.get("/login/oauth/github", params={"next": "/dashboard"})
        assert resp.status_code == 302
        assert resp.headers["cache-control"] == "no-store"
        location = urlparse(resp.headers["location"])
        assert location.netloc == "github.com"
        query = parse_qs(location.query)
        assert len(query["state"][0]) == 64
        assert query["code_challenge_method"] == ["S256"]
        assert query["redirect_uri"] == ["http://testserver/login/callback/github"]

    def test_unknown_provider_redirects_with_error(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        assert _error_of(client.get("/login/oauth/myspace")) == "unknown_provider"

    def test_unconfigured_provider_redirects_with_error(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        assert _error_of(client.get("/login/oauth/google")) == "unknown_provider"


class TestCallback:
    def test_full_login(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        _logout(client)
        resp = login(client, fake, next_url="/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"
        assert resp.headers["cache-control"] == "no-store"
        assert COOKIE in resp.headers.get("set-cookie", "")

        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["email"] == "octo@example.com"
        assert me.json()["last_login"] is not None

    def test_replayed_callback_rejected(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        _logout(client)
        start = client.get("/login/oauth/github")
        code, state = fake.authorize(start.headers["location"])
        first = client.get("/login/callback/github", params={"code": code, "state": state})
        assert first.status_code == 302 and first.headers["location"] == "/"

        replay = client.get("/login/callback/github", params={"code": code, "state": state})
        assert _error_of(replay) == "invalid_state"
        assert "ref" in parse_qs(urlparse(replay.headers["location"]).query)

    def test_provider_denial(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        start = client.get("/login/oauth/github")
        state = parse_qs(urlparse(start.headers["location"]).query)["state"][0]
        resp = client.get(
            "/login/callback/github",
            params={"error": "access_denied", "error_description": "<script>x</script>", "state": state},
        )
        assert _error_of(resp) == "provider_denied"
        assert "script" not in resp.headers["location"]
        assert state not in app.state.pending

    def test_forged_state(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        resp = client.get("/login/callback/github", params={"code": "c", "state": generate_state_token()})
        assert _error_of(resp) == "invalid_state"

    def test_callback_in_another_browser_rejected(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        _logout(client)
        start = client.get("/login/oauth/github")
        code, state = fake.authorize(start.headers["location"])
        token_requests = fake.token_requests

        # A second browser (no session cookie) is handed the attacker's callback URL.
        victim = TestClient(app, follow_redirects=False)
        resp = victim.get("/login/callback/github", params={"code": code, "state": state})
        assert _error_of(resp) == "invalid_state"
        assert "ref" in parse_qs(urlparse(resp.headers["location"]).query)
        assert victim.get("/api/v1/auth/me").status_code == 401
        assert fake.token_requests == token_requests

        # The attempt is burned, so the initiating browser cannot finish it either.
        assert state not in app.state.pending
        assert _error_of(client.get("/login/callback/github", params={"code": code, "state": state})) == "invalid_state"

    def test_only_latest_attempt_in_a_browser_completes(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        _logout(client)
        first = client.get("/login/oauth/github")
        client.get("/login/oauth/github")
        code, state = fake.authorize(first.headers["location"])
        resp = client.get("/login/callback/github", params={"code": code, "state": state})
        assert _error_of(resp) == "invalid_state"
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_open_redirect_blocked(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        _logout(client)
        resp = login(client, fake, next_url="//evil.example.com/phish")
        assert resp.headers["location"] == "/"

    def test_session_rotated_on_login(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        _logout(client)
        login(client, fake)
        old_cookie = client.cookies.get(COOKIE)

        login(client, fake)
        new_cookie = client.cookies.get(COOKIE)
        assert new_cookie != old_cookie

        # The pre-rotation session no longer authenticates.
        other = TestClient(app)
        assert other.get("/api/v1/auth/me", headers={"Cookie": f"{COOKIE}={old_cookie}"}).status_code == 401
        assert other.get("/api/v1/auth/me", headers={"Cookie": f"{COOKIE}={new_cookie}"}).status_code == 200

    def test_logout_ends_session(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        login(client, fake)
        assert client.get("/api/v1/auth/me").status_code == 200
        resp = client.post("/logout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_email_collision_is_ambiguous(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        """A second GitHub account with an already-registered email is not merged."""
        client, fake = web_client
        _logout(client)
        login(client, fake)
        _logout(client)
        impostor = dict(fake.profile, id=999999, login="octo-twin")
        assert _error_of(login(client, fake, profile=impostor)) == "ambiguous_account"
        assert client.get("/api/v1/auth/me").status_code == 401


class TestLoginPage:
    def test_lists_providers(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        _logout(client)
        resp = client.get("/login")
        assert resp.status_code == 200
        assert 'href="/login/oauth/github"' in resp.text
        assert "Continue with GitHub" in resp.text

    def test_whitelisted_error_message(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        resp = client.get("/login", params={"error": "invalid_state"})
        assert "expired or was already used" in resp.text

    def test_unknown_error_not_reflected(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        resp = client.get("/login", params={"error": "<script>alert(1)</script>"})
        assert resp.status_code == 200
        assert "alert(1)" not in resp.text

    def test_authenticated_user_redirected_home(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, fake = web_client
        login(client, fake)
        resp = client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        _logout(client)


class TestRateLimit:
    def test_limit_is_read_from_settings(self) -> None:
        assert get_settings().login_rate_limit == f"{LOGIN_LIMIT}/minute"

    def test_initiation_is_rate_limited(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        for _ in range(LOGIN_LIMIT):
            assert client.get("/login/oauth/github").status_code == 302
        resp = client.get("/login/oauth/github")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry-after" in resp.headers

    def test_callback_is_not_rate_limited(self, web_client: tuple[TestClient, FakeGitHub]) -> None:
        client, _fake = web_client
        for _ in range(LOGIN_LIMIT + 1):
            resp = client.get("/login/callback/github", params={"code": "c", "state": generate_state_token()})
            assert _error_of(resp) == "invalid_state"
