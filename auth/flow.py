"""
auth/flow.py -- LoginCoordinator: drives one third-party login from redirect
to authenticated session.

Lifecycle of an attempt:
  initiate()  -> Created   (PendingAttempt stored under a fresh state token)
  callback()  -> Consumed  (take_if_valid removed it; success or failure)
  reaper      -> Expired   (never came back within the TTL)
There is no way back to Created. A replayed callback always finds nothing.

callback() order matters:
  1. provider error param  -> consume the state, ProviderDenied
  2. take_if_valid         -> InvalidState on miss / expiry / provider mismatch
  3. missing code          -> ProviderError rejected "missing_code"
  4. exchange + identity   -> adapter errors propagate (attempt stays consumed)
  5. AccountLinker.resolve -> worker thread, one DB transaction
  6. inactive user         -> AccountDisabled
  7. bind session, stamp last_login, return LoginResult
The state is consumed BEFORE any provider call, so a slow or failing provider
can never leave a reusable token behind.

Security notes:
  [C2] return_url is reduced to a server-local path before it is stored.
       It is redirected to after login, so an absolute or protocol-relative
       URL would be an open redirect.
  [M3] Every failure raised from callback() carries a correlation id. The id
       goes to the client; the provider detail goes only to the log line with
       the same id.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import (
    AccountDisabled,
    DuplicateToken,
    InvalidState,
    LastCredential,
    NotFound,
    OAuthFlowError,
    ProviderDenied,
    ProviderError,
)
from auth.linker import AccountLinker
from auth.models import LoginResult, PendingAttempt, Provider
from auth.oauth import OAuthProviderAdapter, get_adapter
from auth.pending import PendingAttemptStore, utcnow
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import (
    generate_pkce_verifier,
    generate_state_token,
    is_well_formed_state,
    pkce_challenge,
    token_fingerprint,
)

logger = logging.getLogger("oauthgate.auth.flow")

MAX_TOKEN_ATTEMPTS = 3


def safe_return_url(url: str | None) -> str:
    """Reduce a post-login target to a server-local path. [C2]

    Accepted: "/", "/assets?page=2". Rejected (-> "/"): absolute URLs,
    protocol-relative "//evil.com", and "/\\evil.com", which some browsers
    normalise to "//evil.com".
    """
    if not url or not url.startswith("/"):
        return "/"
    if url.startswith("//") or url.startswith("/\\"):
        return "/"
    if any(ch in url for ch in "\r\n"):
        return "/"
    return url


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


class LoginCoordinator:
    """Orchestrates initiate/callback/unlink across the flow's collaborators.

    Every collaborator is injected, so tests can wire a coordinator around an
    httpx.MockTransport-backed registry, an in-memory SQLite store and a
    hand-driven clock.
    """

    def __init__(
        self,
        registry: dict[Provider, OAuthProviderAdapter],
        pending: PendingAttemptStore,
        linker: AccountLinker,
        sessions: SessionStore,
        store: UserStore,
        state_ttl_seconds: int = 600,
        block_last_credential_unlink: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.pending = pending
        self.linker = linker
        self.sessions = sessions
        self.store = store
        self.state_ttl = timedelta(seconds=state_ttl_seconds)
        self.block_last_credential_unlink = block_last_credential_unlink
        self.clock = clock

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    async def initiate(
        self,
        provider_id: str | Provider,
        return_url: str | None = "/",
        current_user_id: int | None = None,
    ) -> str:
        """Start an attempt and return the provider authorization URL.

        When current_user_id is given the attempt links the identity to that
        user on callback instead of logging in.
        """
        adapter = get_adapter(self.registry, provider_id)
        return_url = safe_return_url(return_url)

        for _ in range(MAX_TOKEN_ATTEMPTS):
            state_token = generate_state_token()
            verifier = generate_pkce_verifier()
            # Built before the insert: a failure here must not leave an entry behind.
            url = await adapter.authorization_url(state_token, pkce_challenge(verifier))
            now = self.clock()
            attempt = PendingAttempt(
                state_token=state_token,
                provider=adapter.provider,
                pkce_verifier=verifier,
                created_at=now,
                expires_at=now + self.state_ttl,
                return_url=return_url,
                linking_user_id=current_user_id,
            )
            try:
                self.pending.put(attempt)
            except DuplicateToken:
                logger.error("State token collision on %s, regenerating", adapter.provider.value)
                continue
            logger.info(
                "Login initiated: provider=%s state=%s linking=%s",
                adapter.provider.value,
                token_fingerprint(state_token),
                current_user_id is not None,
            )
            return url
        raise DuplicateToken(f"No unique state token after {MAX_TOKEN_ATTEMPTS} attempts")

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def callback(
        self,
        provider_id: str | Provider,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
        *,
        session_id: str,
    ) -> LoginResult:
        """Complete an attempt. Raises an OAuthFlowError subclass on any failure.

        session_id is the (already rotated) id the user is bound to on success.
        """
        correlation_id = new_correlation_id()
        try:
            return await self._callback(provider_id, code, state, error, error_description, session_id)
        except OAuthFlowError as exc:
            exc.correlation_id = correlation_id
            logger.warning(
                "OAuth callback failed: cid=%s provider=%s code=%s detail=%s",
                correlation_id,
                provider_id.value if isinstance(provider_id, Provider) else provider_id,
                getattr(exc, "error_code", None) or exc.code,
                exc,
            )
            raise

    async def _callback(
        self,
        provider_id: str | Provider,
        code: str | None,
        state: str | None,
        error: str | None,
        error_description: str | None,
        session_id: str,
    ) -> LoginResult:
        if error:
            if state:
                self.pending.discard(state)
            raise ProviderDenied(error, error_description)

        if not is_well_formed_state(state):
            raise InvalidState("Malformed or missing state token")
        attempt = self.pending.take_if_valid(state, self.clock())

        try:
            provider = Provider.parse(provider_id)
        except OAuthFlowError:
            provider = None
        if provider != attempt.provider:
            raise InvalidState(
                f"State issued for {attempt.provider.value}, callback arrived for {provider_id!r}"
            )

        if not code:
            raise ProviderError.rejected("missing_code", "Callback carried no authorization code")

        adapter = get_adapter(self.registry, provider)
        token = await adapter.exchange_code(code, attempt.pkce_verifier)
        identity = await adapter.fetch_identity(token)

        user, linked = await asyncio.to_thread(self.linker.resolve, identity, provider, attempt.linking_user_id)
        if not user.is_active:
            raise AccountDisabled(f"User {user.id} is disabled")

        self.sessions.set_authenticated_user(session_id, user.id)
        await asyncio.to_thread(self.store.update_last_login, user.id)
        logger.info(
            "OAuth login succeeded: provider=%s user=%s linked=%s",
            provider.value,
            user.id,
            linked,
        )
        return LoginResult(user=user, return_url=attempt.return_url, linked=linked)

    # ------------------------------------------------------------------
    # Unlink
    # ------------------------------------------------------------------

    def unlink(self, user_id: int, provider_id: str | Provider) -> None:
        """Remove the user's link for a provider.

        Raises NotFound when there is no such link, LastCredential when it is
        the user's only way to sign in (and the policy is on).
        Synchronous: call from a worker thread or a sync FastAPI route.
        """
        provider = Provider.parse(provider_id)
        with self.store.transaction() as conn:
            link = self.store.find_user_link(user_id, provider, conn=conn)
            if link is None:
                raise NotFound(f"User {user_id} has no {provider.value} link")
            if self.block_last_credential_unlink:
                user = self.store.find_by_id(user_id, conn=conn)
                if user is not None and not user.has_password and self.store.count_links(user_id, conn=conn) <= 1:
                    raise LastCredential(f"{provider.value} is the only credential of user {user_id}")
            self.store.delete_link(user_id, provider, conn=conn)
        logger.info("Unlinked %s account from user %s", provider.value, user_id)
