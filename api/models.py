"""
API request and response models for OAuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
    pending_logins: int = 0


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class OAuthProviderInfo(BaseModel):
    """One entry of GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    display_name: Optional[str] = None
    has_password: bool
    last_login: Optional[str] = None


class AccountLinkResponse(BaseModel):
    """A linked external account as shown to its owner."""

    model_config = ConfigDict(frozen=True)

    provider: str
    provider_user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
