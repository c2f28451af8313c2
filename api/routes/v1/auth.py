"""
api/routes/v1/auth.py -- Session and linked-account REST endpoints.

Routes:
  GET    /api/v1/auth/providers         -- list enabled OAuth providers (public)
  GET    /api/v1/auth/me                -- current user info (requires auth)
  GET    /api/v1/auth/links             -- current user's linked accounts (requires auth)
  DELETE /api/v1/auth/links/{provider}  -- unlink a provider (requires auth)
  POST   /api/v1/auth/logout            -- end the session; 200

Errors raised by the coordinator (NotFound, LastCredential, UnknownProvider)
propagate to the OAuthFlowError handler in api/main.py, which renders the
shared ErrorResponse envelope.

Security:
  IDOR guard: unlink passes current_user.id to the coordinator; the store's
  WHERE clause requires both user_id and provider to match.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import AccountLinkResponse, MeResponse, OAuthProviderInfo
from auth.dependencies import current_session_id, get_current_user
from auth.flow import LoginCoordinator
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.store import UserStore

# Auth policy:
# - GET    /api/v1/auth/providers:        public -- login page calls this to render OAuth buttons
# - POST   /api/v1/auth/logout:           public -- ending a session needs no prior auth
# - GET    /api/v1/auth/me:               requires auth (get_current_user)
# - GET    /api/v1/auth/links:            requires auth (get_current_user)
# - DELETE /api/v1/auth/links/{provider}: requires auth + ownership enforced in store
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the list of configured OAuth providers.

    Returns an empty list if no provider credentials are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.providers)]


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """End the server-side session and clear the session cookie payload."""
    request.app.state.sessions.end_session(current_session_id(request))
    request.session.clear()
    resp = JSONResponse(content={"message": "Logged out."})
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        display_name=current_user.display_name,
        has_password=current_user.has_password,
        last_login=current_user.last_login,
    )


@router.get("/auth/links", response_model=list[AccountLinkResponse])
def list_links(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[AccountLinkResponse]:
    """List the external accounts linked to the current user, newest first."""
    user_store: UserStore = request.app.state.user_store
    return [
        AccountLinkResponse(
            provider=link.provider.value,
            provider_user_id=link.provider_user_id,
            email=link.email,
            display_name=link.display_name,
            avatar_url=link.avatar_url,
            created_at=link.created_at,
            updated_at=link.updated_at,
        )
        for link in user_store.list_links(current_user.id)
    ]


@router.delete("/auth/links/{provider}", status_code=204)
def unlink(
    request: Request,
    provider: str,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Remove the current user's link for a provider.

    404 not_found when there is no such link; 409 last_credential when it is
    the user's only way to sign in.
    """
    coordinator: LoginCoordinator = request.app.state.coordinator
    coordinator.unlink(current_user.id, provider)
    return Response(status_code=204)
