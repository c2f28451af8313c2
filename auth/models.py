"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Stores, the
account linker and the login coordinator do the work; these types only own
the domain shape.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from auth.errors import UnknownProvider


class Provider(str, Enum):
    """External identity providers supported by the login flow."""

    google = "google"  # OIDC with a fixed discovery document
    github = "github"  # proprietary OAuth2 API, static endpoints
    oidc = "oidc"  # generic OIDC: discovery URL or manual endpoints

    @classmethod
    def parse(cls, name: str | Provider) -> Provider:
        """Case-insensitive lookup. Raises UnknownProvider for anything else."""
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            raise UnknownProvider(f"Unknown OAuth provider: {name!r}") from None


@dataclass(frozen=True)
class PendingAttempt:
    """An in-flight login attempt, keyed by its single-use state token.

    Created by LoginCoordinator.initiate(), destroyed either by consumption in
    callback() or by the expiry reaper. Frozen: an attempt is never mutated.

    linking_user_id is set when an already-authenticated user started the
    flow to attach another provider rather than to log in.
    """

    state_token: str  # 64 hex chars, 32 bytes of entropy
    provider: Provider
    pkce_verifier: str  # 43-128 chars, RFC 7636 unreserved alphabet
    created_at: datetime
    expires_at: datetime
    return_url: str = "/"
    linking_user_id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ProviderToken:
    """Token endpoint response, reduced to the fields the flow uses."""

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None
    id_token: str | None = None


@dataclass(frozen=True)
class ExternalIdentity:
    """Normalized identity produced by a provider adapter. Never persisted as-is."""

    provider: Provider
    provider_user_id: str
    email: str
    display_name: str | None = None
    avatar_url: str | None = None
    email_verified: bool = False


@dataclass
class User:
    """An internal user record.

    hashed_password is owned by the password subsystem and is None for users
    created through an OAuth login. It only matters here for the
    last-credential unlink check.
    """

    email: str
    id: int | None = None
    display_name: str | None = None
    hashed_password: str | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None

    @property
    def has_password(self) -> bool:
        return bool(self.hashed_password)


@dataclass
class AccountLink:
    """Association between a user and one external provider identity.

    (provider, provider_user_id) is unique across all links -- enforced by the
    oauth_accounts unique index, which is the only concurrency guard.
    """

    user_id: int
    provider: Provider
    provider_user_id: str
    email: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful callback."""

    user: User
    return_url: str
    linked: bool = False
