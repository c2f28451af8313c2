"""
web/routes.py -- Browser-facing login routes for OAuthGate.

These routes drive the redirect dance with the provider. They share app.state
with the API routes (same coordinator, user store and session store) but
answer with redirects and HTML instead of JSON.

Route registration order matters: GET /login/oauth/{provider} and
GET /login/callback/{provider} are registered before GET /login.

Routes:
  GET  /login/oauth/{provider}     -- start a login (or a link, when signed in)
  GET  /login/callback/{provider}  -- provider callback; bind session, redirect
  GET  /login                      -- login page with provider buttons
  POST /logout                     -- end session, redirect /

Security:
  [C2] ?next= is sanitised by the coordinator before it is stored.
  [M3] ?error= only ever carries a code from _ERROR_MESSAGES; the login page
       renders the whitelisted message, never the raw query value.
  [M5] Cache-Control: no-store on every response that changes the session.
  [H2] Login initiation is rate-limited per client IP (LOGIN_RATE_LIMIT, read
       once at import).
  Login CSRF: the state token is also written to the signed session cookie on
  initiation. A callback whose state does not match the cookie is refused and
  the pending attempt is burned, so a victim cannot be logged in to an
  attacker-initiated attempt.
  Session fixation: a fresh session id is issued on every successful callback
  and the pre-login binding is ended.
"""

import hmac
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from authlib.common.urls import add_params_to_uri
from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from api.limiter import limiter
from auth.dependencies import SESSION_KEY, current_session_id, try_get_current_user
from auth.errors import InvalidState, OAuthFlowError
from auth.flow import LoginCoordinator, new_correlation_id
from auth.oauth import get_enabled_providers
from auth.tokens import generate_session_id, token_fingerprint
from core.config import get_settings

logger = logging.getLogger("oauthgate.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= on the login page [M3].
_ERROR_MESSAGES: dict[str, str] = {
    "invalid_state": "Your sign-in attempt expired or was already used. Please try again.",
    "provider_denied": "Sign-in was cancelled at the provider.",
    "provider_error": "The sign-in provider could not be reached. Please try again.",
    "conflict": "This account is already linked to another user.",
    "ambiguous_account": (
        "An account with this email already exists. Sign in with your existing method, then link this provider."
    ),
    "account_disabled": "Your account has been disabled. Contact an admin.",
    "unknown_provider": "This sign-in provider is not available.",
    "oauth_failed": "Sign-in failed. Please try again.",
}


def _error_redirect(exc: OAuthFlowError) -> RedirectResponse:
    code = exc.code if exc.code in _ERROR_MESSAGES else "oauth_failed"
    params = [("error", code)]
    if exc.correlation_id:
        params.append(("ref", exc.correlation_id))
    resp = RedirectResponse(add_params_to_uri(get_settings().login_error_url, params), status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# OAuth flow
# ---------------------------------------------------------------------------

# Session cookie key holding the state token of the attempt this browser started.
OAUTH_STATE_KEY = "oauth_state"


def _state_of(authorization_url: str) -> str:
    return parse_qs(urlsplit(authorization_url).query)["state"][0]


def _state_bound_to_browser(request: Request, state: Optional[str]) -> bool:
    expected = request.session.pop(OAUTH_STATE_KEY, None)
    if not expected or not state:
        return False
    return hmac.compare_digest(expected.encode(), state.encode())


@limiter.limit(get_settings().login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.get("/login/oauth/{provider}", response_class=RedirectResponse)
async def oauth_redirect(request: Request, provider: str, next: Optional[str] = "/") -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    A signed-in user starting this flow attaches the provider to their
    account instead of logging in.
    """
    coordinator: LoginCoordinator = request.app.state.coordinator
    current_user = try_get_current_user(request)
    try:
        url = await coordinator.initiate(
            provider,
            next,
            current_user_id=current_user.id if current_user is not None else None,
        )
    except OAuthFlowError as exc:
        logger.warning("OAuth initiation failed for %r: %s", provider, exc)
        return _error_redirect(exc)
    # Only the latest attempt per browser can complete.
    request.session[OAUTH_STATE_KEY] = _state_of(url)
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/login/callback/{provider}", response_class=RedirectResponse, name="oauth_callback")
async def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> RedirectResponse:
    """Complete the login and redirect to the attempt's return URL.

    Every failure redirects to LOGIN_ERROR_URL?error=<code>&ref=<correlation id>.
    The coordinator has already logged the detail under the same id.
    """
    if not _state_bound_to_browser(request, state):
        correlation_id = new_correlation_id()
        burned = bool(state) and request.app.state.pending.discard(state)
        logger.warning(
            "OAuth callback rejected [%s]: state %s not issued to this browser (attempt discarded=%s)",
            correlation_id,
            token_fingerprint(state or ""),
            burned,
        )
        return _error_redirect(InvalidState("Callback state not bound to this browser", correlation_id))

    coordinator: LoginCoordinator = request.app.state.coordinator
    new_sid = generate_session_id()
    try:
        result = await coordinator.callback(
            provider,
            code,
            state,
            error,
            error_description,
            session_id=new_sid,
        )
    except OAuthFlowError as exc:
        return _error_redirect(exc)

    # Rotate: the pre-login id must never become an authenticated session.
    request.app.state.sessions.end_session(current_session_id(request))
    request.session.clear()
    request.session[SESSION_KEY] = new_sid

    resp = RedirectResponse(result.return_url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Login page / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page with one button per configured provider."""
    if try_get_current_user(request) is not None:
        return RedirectResponse("/", status_code=302)

    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""), None)  # [M3]
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "providers": get_enabled_providers(request.app.state.providers),
        },
    )


@router.post("/logout")
def logout(request: Request) -> RedirectResponse:
    """End the server-side session, clear the cookie payload, redirect to /."""
    request.app.state.sessions.end_session(current_session_id(request))
    request.session.clear()
    resp = RedirectResponse("/", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp
