"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

A request is authenticated when its signed session cookie carries a session id
("sid") that MemorySessionStore still binds to an active user.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from api/ or web/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User

SESSION_KEY = "sid"


def current_session_id(request: Request) -> str | None:
    return request.session.get(SESSION_KEY)


def try_get_current_user(request: Request) -> User | None:
    """Resolve the request's session to a User.

    Returns None when there is no session id, the binding expired, the user
    was deleted, or the user is disabled. Never raises.
    """
    user_id = request.app.state.sessions.get_user_id(current_session_id(request))
    if user_id is None:
        return None
    user = request.app.state.user_store.find_by_id(user_id)
    if user is None or not user.is_active:
        return None
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
