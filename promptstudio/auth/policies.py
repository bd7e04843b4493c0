"""
Policies - the clean interface for route authorization.

Just use: `ctx: AuthContext = Depends(require(Action.CREATE))`

Design:
- The session token comes from the session cookie, or a bearer header
- No valid session → Unauthenticated (401)
- Session but role lacks the action → PermissionDenied (403)
- Ownership-dependent checks (update/delete) happen in the handler once
  the resource is loaded, via ctx.require(action, ownership)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from promptstudio.auth.capabilities import Action, role_allows
from promptstudio.auth.context import AuthContext
from promptstudio.core.errors import PermissionDenied, Unauthenticated
from promptstudio.integrations.sentry import set_user

if TYPE_CHECKING:
    from promptstudio.services.container import Services


# Optional bearer (doesn't fail if no header)
optional_bearer = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def session_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_bearer),
) -> str | None:
    """Extract the session token: cookie first, then Authorization header."""
    services = get_services(request)
    token = request.cookies.get(services.settings.session_cookie_name)
    if token:
        return token
    if credentials:
        return credentials.credentials
    return None


async def get_optional_context(
    request: Request,
    token: str | None = Depends(session_token),
) -> AuthContext | None:
    services = get_services(request)
    user = await services.sessions.resolve_session(token)
    if user is None:
        return None
    set_user(user.id, user.username, role=user.role.value)
    return AuthContext(user=user, session_id=token)


def require(*actions: Action) -> Callable:
    """
    Require an authenticated session whose role permits `actions`.

    Only pass ownership-independent actions here (READ, CREATE, UPLOAD,
    MANAGE); UPDATE and DELETE are decided against the loaded resource.
    """

    async def dependency(
        ctx: AuthContext | None = Depends(get_optional_context),
    ) -> AuthContext:
        if ctx is None:
            raise Unauthenticated("Unauthorized")
        for action in actions:
            if not role_allows(ctx.user.role, action):
                raise PermissionDenied("Forbidden")
        return ctx

    return dependency


def require_auth() -> Callable:
    """Just require a valid session."""
    return require()


def require_admin() -> Callable:
    """Require the admin role."""
    return require(Action.MANAGE)
