"""
tests/conftest.py -- Shared test fixtures for OAuthGate tests.

This module provides:
  - FakeGitHub: an httpx.MockTransport handler that plays GitHub's token and
    user API, including PKCE verification, so flows run end-to-end offline
  - memory_db_url(): unique named shared-memory SQLite URIs
  - user_store / coordinator fixtures for unit-level flow tests
  - _patch_lifespan(): wires test collaborators into app.state
  - web_client: TestClient with follow_redirects=False for route tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient and asyncio.to_thread run store calls in worker threads.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

DEBUG must be set before any auth/core import so get_settings() auto-generates
SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")
# Route decorators bind the limit at import time.
LOGIN_LIMIT = 20
os.environ["LOGIN_RATE_LIMIT"] = f"{LOGIN_LIMIT}/minute"

import httpx
import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from fastapi.testclient import TestClient

from api.limiter import limiter
from asgi import app
from auth.flow import LoginCoordinator
from auth.linker import AccountLinker
from auth.models import Provider
from auth.oauth import GitHubAdapter, ProviderConfig, close_provider_registry
from auth.pending import PendingAttemptStore
from auth.sessions import MemorySessionStore
from auth.store import UserStore

CALLBACK_BASE = "http://testserver/login/callback"


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeGitHub:
    """Stateful stand-in for github.com + api.github.com.

    authorize() plays the user approving the consent screen: it reads state
    and code_challenge off an authorization URL and mints a one-time code.
    The token endpoint only accepts that code together with a verifier whose
    S256 challenge matches, as the real server does.
    """

    def __init__(self) -> None:
        self.profile = {
            "id": 4242,
            "login": "octocat",
            "name": "Octo Cat",
            "email": "octo@example.com",
            "avatar_url": "https://avatars.example.com/4242",
        }
        self.emails = [
            {"email": "octo@example.com", "primary": True, "verified": True},
        ]
        self._codes: dict[str, tuple[str, dict]] = {}
        self._tokens: dict[str, dict] = {}
        self.token_requests = 0
        self.token_status = 200
        self.fail_network = False

    def authorize(self, authorization_url: str, profile: dict | None = None) -> tuple[str, str]:
        """Return (code, state) for an authorization URL."""
        query = parse_qs(urlparse(authorization_url).query)
        code = f"code-{uuid.uuid4().hex[:8]}"
        self._codes[code] = (query["code_challenge"][0], profile or dict(self.profile))
        return code, query["state"][0]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_network:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if request.method == "POST" and path == "/login/oauth/access_token":
            return self._token(request)
        profile = self._tokens.get(request.headers.get("Authorization", "").removeprefix("Bearer "))
        if profile is None:
            return httpx.Response(401, json={"message": "Bad credentials"})
        if path == "/user":
            return httpx.Response(200, json=profile)
        if path == "/user/emails":
            return httpx.Response(200, json=self.emails)
        return httpx.Response(404, json={"message": "Not Found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests += 1
        if self.token_status != 200:
            return httpx.Response(self.token_status, text="upstream unavailable")
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        entry = self._codes.pop(form.get("code", ""), None)
        if entry is None:
            # GitHub answers bad codes with HTTP 200 and an error body.
            return httpx.Response(200, json={"error": "bad_verification_code"})
        challenge, profile = entry
        if create_s256_code_challenge(form.get("code_verifier", "")) != challenge:
            return httpx.Response(200, json={"error": "invalid_grant"})
        token = f"gho_{uuid.uuid4().hex}"
        self._tokens[token] = profile
        return httpx.Response(200, json={"access_token": token, "token_type": "bearer", "scope": "read:user"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def github_config() -> ProviderConfig:
    return ProviderConfig(
        client_id="gh-client",
        client_secret="gh-secret",
        redirect_uri=f"{CALLBACK_BASE}/github",
    )


class FakeClock:
    """Hand-driven clock for expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url(prefix: str = "test") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=memory_db_url("auth"))
    yield store
    store.close()


@pytest.fixture(autouse=True)
def _fresh_rate_limits() -> None:
    """Every test starts with empty limiter counters."""
    limiter.reset()


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def coordinator(user_store: UserStore, fake_github: FakeGitHub, clock: FakeClock) -> LoginCoordinator:
    """A coordinator wired to FakeGitHub, an in-memory DB and a FakeClock."""
    registry = {Provider.github: GitHubAdapter(github_config(), transport=fake_github.transport())}
    return LoginCoordinator(
        registry=registry,
        pending=PendingAttemptStore(),
        linker=AccountLinker(user_store),
        sessions=MemorySessionStore(),
        store=user_store,
        state_ttl_seconds=600,
        clock=clock,
    )


def run(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, fake: FakeGitHub):
    """Return an async context manager that replaces the real lifespan.

    Same wiring as api.main.lifespan, except the provider registry talks to
    FakeGitHub through MockTransport. The reaper is a long-sleeping task so
    shutdown still has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.pending = PendingAttemptStore()
        app.state.sessions = MemorySessionStore()
        app.state.providers = {Provider.github: GitHubAdapter(github_config(), transport=fake.transport())}
        app.state.coordinator = LoginCoordinator(
            registry=app.state.providers,
            pending=app.state.pending,
            linker=AccountLinker(user_store),
            sessions=app.state.sessions,
            store=user_store,
        )
        app.state.reaper_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.reaper_task.cancel()
        await close_provider_registry(app.state.providers)

    return test_lifespan


@pytest.fixture(scope="module")
def web_client() -> Generator[tuple[TestClient, FakeGitHub], None, None]:
    """Yield (client, fake_github) for route integration tests.

    follow_redirects=False is essential: tests assert on redirect Location
    headers, which are invisible once the client follows them.
    """
    user_store = UserStore(db_url=memory_db_url("web"))
    fake = FakeGitHub()
    app.router.lifespan_context = _patch_lifespan(user_store, fake)
    limiter.reset()

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, fake

    user_store.close()


def login(client: TestClient, fake: FakeGitHub, profile: dict | None = None, next_url: str = "/") -> httpx.Response:
    """Drive a full browser login against FakeGitHub; return the callback response."""
    resp = client.get("/login/oauth/github", params={"next": next_url})
    assert resp.status_code == 302, resp.text
    code, state = fake.authorize(resp.headers["location"], profile)
    return client.get("/login/callback/github", params={"code": code, "state": state})
