"""
auth/oauth.py -- OAuth/OIDC provider adapters.

One adapter per external provider, all sharing OAuthProviderAdapter:
  google -- OIDC; endpoints from Google's discovery document.
  github -- proprietary OAuth2 API; static endpoints; email may be private.
  oidc   -- generic OIDC (Okta, Azure AD, Keycloak, Authentik, ...); endpoints
            from OIDC_DISCOVERY_URL, or configured manually.

Each adapter owns an authlib AsyncOAuth2Client. authlib builds the authorize
URL and performs the authorization-code exchange (client_secret_post, PKCE
verifier, redirect_uri); the adapter adds discovery, the identity calls and
error mapping. State tokens and PKCE pairs are generated by the login
coordinator and passed in, so one pending attempt store covers every provider.

Error contract (no retries anywhere in this module):
  timeout / transport failure           -> ProviderError kind="network"
  non-2xx, or a body carrying "error"   -> ProviderError kind="rejected",
                                           error_code = provider's error or http_<status>
  2xx body unusable (wrong JSON type,
  no token, no sub)                     -> ProviderError kind="rejected"
Raw provider bodies are logged here and never placed in the exception's
public message.

Security notes:
  [H1] The email_verified flag is carried through to ExternalIdentity.
       The account linker only auto-links by email when it is True.
  Redirects are never followed on provider calls (clients are built with
  follow_redirects=False) to keep token requests on the configured host.
  The client never holds a session token: identity calls are made with
  withhold_token=True and an explicit bearer header, so concurrent logins
  sharing one adapter cannot see each other's access tokens.

Layer rule: no imports from api/ or web/. Import from core/ is allowed
(build_provider_registry reads Settings).
"""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, ClassVar

import httpx
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError

from auth.errors import ProviderError, UnknownProvider
from auth.models import ExternalIdentity, Provider, ProviderToken
from core.config import Settings, get_settings

logger = logging.getLogger("oauthgate.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
GITHUB_API_URL = "https://api.github.com"

DEFAULT_TIMEOUT = 10.0

_ENDPOINT_KEYS = ("authorization_endpoint", "token_endpoint", "userinfo_endpoint")


@dataclass(frozen=True)
class ProviderConfig:
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: tuple[str, ...] = ()
    discovery_url: str = ""
    authorize_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    label: str = ""


@dataclass(frozen=True)
class Endpoints:
    authorize_url: str
    token_url: str
    userinfo_url: str


# ---------------------------------------------------------------------------
# Shared adapter logic
# ---------------------------------------------------------------------------


class OAuthProviderAdapter(abc.ABC):
    """Base class for provider adapters.

    Subclasses set `provider`, `label`, `default_scopes` and implement
    fetch_identity(). authorization_url() and exchange_code() are shared:
    every supported provider speaks standard authorization-code + PKCE on
    those two legs.

    Endpoint URLs live in the authlib client's metadata under the same keys
    as an OIDC discovery document (authorization_endpoint, token_endpoint,
    userinfo_endpoint).
    """

    provider: ClassVar[Provider]
    label: ClassVar[str]
    default_scopes: ClassVar[tuple[str, ...]] = ()

    def __init__(
        self,
        config: ProviderConfig,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self.client = AsyncOAuth2Client(
            client_id=config.client_id,
            client_secret=config.client_secret,
            token_endpoint_auth_method="client_secret_post",
            scope=" ".join(self.scopes),
            redirect_uri=config.redirect_uri,
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
        )
        self.client.metadata.update(self.static_metadata())

    @property
    def scopes(self) -> tuple[str, ...]:
        return self.config.scopes or self.default_scopes

    @property
    def display_label(self) -> str:
        return self.config.label or self.label

    def static_metadata(self) -> dict[str, str]:
        """Endpoint URLs known without a network call."""
        urls = (self.config.authorize_url, self.config.token_url, self.config.userinfo_url)
        return {key: url for key, url in zip(_ENDPOINT_KEYS, urls) if url}

    async def endpoints(self) -> Endpoints:
        metadata = self.client.metadata
        missing = [key for key in _ENDPOINT_KEYS if not metadata.get(key)]
        if missing:
            logger.warning("%s provider has no %s configured", self.provider.value, ", ".join(missing))
            raise ProviderError.rejected("invalid_discovery", f"{self.provider.value} endpoints incomplete")
        return Endpoints(
            authorize_url=metadata["authorization_endpoint"],
            token_url=metadata["token_endpoint"],
            userinfo_url=metadata["userinfo_endpoint"],
        )

    @abc.abstractmethod
    async def fetch_identity(self, token: ProviderToken) -> ExternalIdentity: ...

    async def aclose(self) -> None:
        await self.client.aclose()

    async def authorization_url(self, state_token: str, code_challenge: str) -> str:
        """Build the provider's authorize URL for one attempt.

        Deterministic for a given (state_token, code_challenge) once the
        endpoints are known.
        """
        endpoints = await self.endpoints()
        url, _state = self.client.create_authorization_url(
            endpoints.authorize_url,
            state=state_token,
            code_challenge=code_challenge,
            code_challenge_method="S256",
        )
        return url

    async def exchange_code(self, code: str, verifier: str) -> ProviderToken:
        """Redeem the authorization code and PKCE verifier at the token endpoint."""
        endpoints = await self.endpoints()
        name = self.provider.value
        with self._mapped_errors("token exchange"):
            token = await self.client.fetch_token(
                endpoints.token_url,
                grant_type="authorization_code",
                code=code,
                code_verifier=verifier,
            )
        if not isinstance(token, dict):
            logger.warning("%s token response is not a JSON object", name)
            raise ProviderError.rejected("invalid_response", f"{name} token response is not a JSON object")
        access_token = token.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ProviderError.rejected("missing_access_token", f"{name} token response had no access_token")
        return ProviderToken(
            access_token=access_token,
            token_type=token.get("token_type") or "Bearer",
            refresh_token=token.get("refresh_token"),
            expires_in=_optional_int(token.get("expires_in")),
            scope=token.get("scope"),
            id_token=token.get("id_token"),
        )

    @contextmanager
    def _mapped_errors(self, what: str) -> Iterator[None]:
        """Translate httpx / authlib failures raised inside the block into ProviderError."""
        name = self.provider.value
        try:
            yield
        except OAuthError as exc:
            # GitHub reports token errors with HTTP 200 and an error body.
            error_code = str(exc.error)
            logger.warning("%s %s rejected: error=%s description=%s", name, what, error_code, exc.description)
            raise ProviderError.rejected(error_code, f"{name} {what} rejected ({error_code})") from exc
        except httpx.TimeoutException as exc:
            logger.warning("%s %s timed out after %.1fs", name, what, self.timeout)
            raise ProviderError.network(f"{name} {what} timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("%s %s failed: status=%d", name, what, status)
            raise ProviderError.rejected(f"http_{status}", f"{name} {what} returned HTTP {status}") from exc
        except httpx.HTTPError as exc:
            logger.warning("%s %s transport failure: %s", name, what, exc)
            raise ProviderError.network(f"{name} {what} failed: {type(exc).__name__}") from exc
        except (ValueError, TypeError) as exc:
            # authlib raises these for non-object bodies and malformed expiry fields.
            logger.warning("%s %s returned an unusable body: %s", name, what, exc)
            raise ProviderError.rejected("invalid_response", f"{name} {what} returned an unusable body") from exc

    async def _get_json(
        self,
        url: str,
        what: str,
        expected: type = dict,
        token: ProviderToken | None = None,
        headers: dict | None = None,
    ) -> Any:
        """GET a JSON document of the expected type, mapping failures to ProviderError."""
        merged = {"Accept": "application/json"}
        if token is not None:
            merged["Authorization"] = f"Bearer {token.access_token}"
        merged.update(headers or {})
        name = self.provider.value

        with self._mapped_errors(what):
            resp = await self.client.request("GET", url, withhold_token=True, headers=merged)

        try:
            body = resp.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get("error"):
            error_code = str(body["error"])
            logger.warning(
                "%s %s rejected: status=%d error=%s description=%s",
                name,
                what,
                resp.status_code,
                error_code,
                body.get("error_description"),
            )
            raise ProviderError.rejected(error_code, f"{name} {what} rejected ({error_code})")
        if not resp.is_success:
            logger.warning("%s %s failed: status=%d", name, what, resp.status_code)
            raise ProviderError.rejected(f"http_{resp.status_code}", f"{name} {what} returned HTTP {resp.status_code}")
        if not isinstance(body, expected):
            logger.warning(
                "%s %s returned %s, expected a JSON %s (status=%d)",
                name,
                what,
                type(body).__name__,
                expected.__name__,
                resp.status_code,
            )
            raise ProviderError.rejected("invalid_response", f"{name} {what} returned an unexpected body")
        return body


def _optional_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# OIDC (generic + Google)
# ---------------------------------------------------------------------------


class OIDCAdapter(OAuthProviderAdapter):
    """Generic OpenID Connect provider.

    Endpoints come from the discovery document when config.discovery_url is
    set (fetched once, then cached in the client metadata with a _loaded_at
    stamp, as authlib's own framework clients do), otherwise from the manually
    configured URLs. Identity comes from the userinfo endpoint.
    """

    provider = Provider.oidc
    label = "SSO"
    default_scopes = ("openid", "email", "profile")

    async def endpoints(self) -> Endpoints:
        metadata = self.client.metadata
        if self.config.discovery_url and "_loaded_at" not in metadata:
            metadata.update(await self._load_server_metadata())
        return await super().endpoints()

    async def _load_server_metadata(self) -> dict[str, Any]:
        doc = await self._get_json(self.config.discovery_url, "discovery")
        endpoints = {key: doc.get(key) for key in _ENDPOINT_KEYS}
        if not all(isinstance(url, str) and url for url in endpoints.values()):
            logger.warning("%s discovery document is missing required endpoints", self.provider.value)
            raise ProviderError.rejected("invalid_discovery", "Discovery document incomplete")
        # Concurrent first calls may both fetch; the results are identical.
        endpoints["_loaded_at"] = time.time()
        return endpoints

    async def fetch_identity(self, token: ProviderToken) -> ExternalIdentity:
        endpoints = await self.endpoints()
        claims = await self._get_json(endpoints.userinfo_url, "userinfo", token=token)
        return self._identity_from_claims(claims)

    def _identity_from_claims(self, claims: dict) -> ExternalIdentity:
        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email or not isinstance(email, str):
            logger.warning("%s userinfo missing sub or email claim", self.provider.value)
            raise ProviderError.rejected("incomplete_profile", f"{self.provider.value} userinfo missing sub or email")
        # Some providers serialise the flag as a string; absent means unverified.
        verified = claims.get("email_verified", False)
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        return ExternalIdentity(
            provider=self.provider,
            provider_user_id=str(subject),
            email=email,
            display_name=claims.get("name") or claims.get("preferred_username"),
            avatar_url=claims.get("picture"),
            email_verified=verified is True,
        )


class GoogleAdapter(OIDCAdapter):
    provider = Provider.google
    label = "Google"

    def __init__(
        self,
        config: ProviderConfig,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.discovery_url:
            config = replace(config, discovery_url=GOOGLE_DISCOVERY_URL)
        super().__init__(config, timeout, transport)


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


class GitHubAdapter(OAuthProviderAdapter):
    """GitHub OAuth app.

    GitHub has no discovery document and no userinfo claims. Identity takes
    up to two API calls:
      1. GET /user        -- numeric id (stable subject), login, name, avatar.
      2. GET /user/emails -- only when /user has no public email; the entry
                             with primary=true AND verified=true is used [H1].
    A public profile email is not proof of verification, so email_verified is
    True only for addresses confirmed through /user/emails.
    """

    provider = Provider.github
    label = "GitHub"
    default_scopes = ("read:user", "user:email")

    _API_HEADERS = {
        "Accept": "application/vnd.github+json",
        "User-Agent": "oauthgate",
    }

    def static_metadata(self) -> dict[str, str]:
        return {
            "authorization_endpoint": self.config.authorize_url or GITHUB_AUTHORIZE_URL,
            "token_endpoint": self.config.token_url or GITHUB_TOKEN_URL,
            "userinfo_endpoint": self.config.userinfo_url or f"{GITHUB_API_URL}/user",
        }

    async def fetch_identity(self, token: ProviderToken) -> ExternalIdentity:
        endpoints = await self.endpoints()
        profile = await self._get_json(endpoints.userinfo_url, "user profile", token=token, headers=self._API_HEADERS)
        subject = profile.get("id")
        if subject is None or isinstance(subject, (dict, list)):
            raise ProviderError.rejected("incomplete_profile", "GitHub profile has no id")

        email = profile.get("email")
        verified = False
        if not email or not isinstance(email, str):
            email = await self._primary_verified_email(endpoints.userinfo_url, token)
            verified = True

        return ExternalIdentity(
            provider=self.provider,
            provider_user_id=str(subject),
            email=email,
            display_name=profile.get("name") or profile.get("login"),
            avatar_url=profile.get("avatar_url"),
            email_verified=verified,
        )

    async def _primary_verified_email(self, user_url: str, token: ProviderToken) -> str:
        emails = await self._get_json(
            f"{user_url.rstrip('/')}/emails",
            "user emails",
            expected=list,
            token=token,
            headers=self._API_HEADERS,
        )
        for entry in emails:
            if not isinstance(entry, dict):
                continue
            email = entry.get("email")
            if entry.get("primary") is True and entry.get("verified") is True and isinstance(email, str) and email:
                return email
        logger.warning("GitHub login rejected: no primary verified email")
        raise ProviderError.rejected(
            "no_verified_email",
            "GitHub account has no primary verified email",
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ADAPTER_CLASSES: dict[Provider, type[OAuthProviderAdapter]] = {
    Provider.google: GoogleAdapter,
    Provider.github: GitHubAdapter,
    Provider.oidc: OIDCAdapter,
}


def redirect_uri_for(settings: Settings, provider: Provider) -> str:
    return f"{settings.base_url.rstrip('/')}/login/callback/{Provider(provider).value}"


def provider_configs(settings: Settings) -> dict[Provider, ProviderConfig]:
    """Return a ProviderConfig for every provider with both client id and secret set."""
    configs: dict[Provider, ProviderConfig] = {}

    if settings.google_client_id and settings.google_client_secret:
        configs[Provider.google] = ProviderConfig(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=redirect_uri_for(settings, Provider.google),
        )

    if settings.github_client_id and settings.github_client_secret:
        configs[Provider.github] = ProviderConfig(
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            redirect_uri=redirect_uri_for(settings, Provider.github),
        )

    if settings.oidc_client_id and settings.oidc_client_secret:
        configs[Provider.oidc] = ProviderConfig(
            client_id=settings.oidc_client_id,
            client_secret=settings.oidc_client_secret,
            redirect_uri=redirect_uri_for(settings, Provider.oidc),
            scopes=tuple(settings.oidc_scopes.split()),
            discovery_url=settings.oidc_discovery_url,
            authorize_url=settings.oidc_authorize_url,
            token_url=settings.oidc_token_url,
            userinfo_url=settings.oidc_userinfo_url,
            label=settings.oidc_display_name,
        )
    return configs


def build_provider_registry(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[Provider, OAuthProviderAdapter]:
    """Instantiate an adapter for each configured provider.

    transport is handed to every adapter's HTTP client; tests pass an
    httpx.MockTransport here.
    """
    settings = settings or get_settings()
    registry: dict[Provider, OAuthProviderAdapter] = {}
    for provider, config in provider_configs(settings).items():
        registry[provider] = ADAPTER_CLASSES[provider](config, settings.provider_timeout_seconds, transport)
        logger.info("%s OAuth provider registered", registry[provider].display_label)
    return registry


async def close_provider_registry(registry: dict[Provider, OAuthProviderAdapter]) -> None:
    """Close every adapter's HTTP client. Called on application shutdown."""
    for adapter in registry.values():
        await adapter.aclose()


def get_adapter(registry: dict[Provider, OAuthProviderAdapter], name: str | Provider) -> OAuthProviderAdapter:
    """Resolve a provider name to its adapter. Raises UnknownProvider if unknown or unconfigured."""
    provider = Provider.parse(name)
    adapter = registry.get(provider)
    if adapter is None:
        raise UnknownProvider(f"OAuth provider {provider.value!r} is not configured")
    return adapter


def get_enabled_providers(registry: dict[Provider, OAuthProviderAdapter]) -> list[dict]:
    """Return [{"name", "label"}] for each registered provider, in a stable order.

    Used by GET /api/v1/auth/providers so the login page can render buttons.
    """
    return [
        {"name": provider.value, "label": registry[provider].display_label}
        for provider in Provider
        if provider in registry
    ]
