"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for OAuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the DEBUG-conditional SECRET_KEY policy and the
      generic OIDC endpoint requirements.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The session
       cookie signature relies on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("oauthgate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///oauthgate.db"
    # Public origin of this service. Redirect URIs registered with providers
    # are derived from it: {base_url}/login/callback/{provider}
    base_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_expire_seconds: int = 3600

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.). Either the
    # discovery URL or all three manual endpoints must be set.
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_authorize_url: str = ""
    oidc_token_url: str = ""
    oidc_userinfo_url: str = ""
    oidc_display_name: str = "SSO"
    oidc_scopes: str = "openid email profile"

    # ------------------------------------------------------------------
    # Login flow
    # ------------------------------------------------------------------

    oauth_state_ttl_seconds: int = 600
    oauth_sweep_interval_seconds: float = 60.0
    provider_timeout_seconds: float = 10.0
    # Off by default: an email match across providers surfaces
    # AmbiguousAccount instead of silently merging accounts.
    auto_link_verified_email: bool = False
    block_last_credential_unlink: bool = True
    login_error_url: str = "/login"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # Comma-separated Host header allowlist for TrustedHostMiddleware. The
    # host of base_url is always added.
    allowed_hosts: str = "localhost,127.0.0.1,*.localhost"
    cors_origins: str = "http://localhost,http://localhost:3000,http://127.0.0.1"

    @property
    def allowed_host_list(self) -> list[str]:
        hosts = [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]
        base_host = urlparse(self.base_url).hostname
        if base_host and base_host not in hosts:
            hosts.append(base_host)
        return hosts

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_oidc_endpoints(self) -> "Settings":
        """A configured generic OIDC client needs discovery or all manual endpoints."""
        if self.oidc_client_id and self.oidc_client_secret and not self.oidc_discovery_url:
            manual = (self.oidc_authorize_url, self.oidc_token_url, self.oidc_userinfo_url)
            if not all(manual):
                raise ValueError(
                    "Generic OIDC requires OIDC_DISCOVERY_URL, or all of "
                    "OIDC_AUTHORIZE_URL, OIDC_TOKEN_URL and OIDC_USERINFO_URL."
                )
        if self.oauth_state_ttl_seconds <= 0:
            raise ValueError("OAUTH_STATE_TTL_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
