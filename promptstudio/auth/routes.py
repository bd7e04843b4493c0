# =============================================================================
# Auth and User API Routes
# =============================================================================
#
# Endpoints:
#   POST /api/auth/login        - Password login, sets the session cookie
#   POST /api/auth/guest-login  - Shared guest passcode login
#   POST /api/auth/logout       - Revoke the session, clear the cookie
#   GET  /api/auth/me           - Current user with storage usage
#
# Users:
#   POST   /api/users           - Create account (admin)
#   GET    /api/users           - List accounts (admin)
#   DELETE /api/users/{id}      - Delete account and its sessions (admin)
#   PUT    /api/users/password  - Change own password (not guests)
#   PUT    /api/users/{id}/role - Change role (admin)
#
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from promptstudio.auth.context import AuthContext
from promptstudio.auth.policies import (
    get_services,
    require_admin,
    require_auth,
    session_token,
)
from promptstudio.core.errors import InvalidFormat, PermissionDenied, Unauthenticated
from promptstudio.core.models import Role, Session, User
from promptstudio.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])
users_router = APIRouter(prefix="/api/users", tags=["users"])


# =============================================================================
# Request/Response Models
# =============================================================================

class LoginRequest(BaseModel):
    username: str
    password: str


class GuestLoginRequest(BaseModel):
    passcode: str


class CreateUserRequest(BaseModel):
    username: str
    password: str
    role: Role = Role.USER


class PasswordRequest(BaseModel):
    password: str


class RoleRequest(BaseModel):
    role: Role


def user_summary(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role.value,
        "storageUsage": user.storage_usage,
    }


def set_session_cookie(response: Response, services: Services, session: Session) -> None:
    settings = services.settings
    max_age = int((session.expires_at - session.created_at).total_seconds())
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session.id,
        max_age=max_age,
        expires=session.expires_at,
        path="/",
        samesite="lax",
        httponly=True,
        secure=settings.cookie_secure,
    )


def clear_session_cookie(response: Response, services: Services) -> None:
    response.delete_cookie(
        key=services.settings.session_cookie_name,
        path="/",
        samesite="lax",
        httponly=True,
        secure=services.settings.cookie_secure,
    )


async def start_session(response: Response, services: Services, user: User) -> dict[str, Any]:
    session = await services.sessions.create_session(user.id)
    set_session_cookie(response, services, session)
    logger.info("Login %s (%s)", user.username, user.role.value)
    return {"success": True, "user": user_summary(user)}


# =============================================================================
# Auth Endpoints
# =============================================================================

@router.post("/login")
async def login(
    data: LoginRequest,
    response: Response,
    services: Services = Depends(get_services),
):
    user = await services.credentials.authenticate(data.username, data.password)
    if user is None:
        raise Unauthenticated("Invalid username or password")
    return await start_session(response, services, user)


@router.post("/guest-login")
async def guest_login(
    data: GuestLoginRequest,
    response: Response,
    services: Services = Depends(get_services),
):
    """Log in as the shared read-only guest account."""
    user = await services.credentials.authenticate(
        services.settings.guest_username, data.passcode
    )
    if user is None or not user.is_guest:
        raise Unauthenticated("Invalid passcode")
    return await start_session(response, services, user)


@router.post("/logout")
async def logout(
    response: Response,
    token: str | None = Depends(session_token),
    services: Services = Depends(get_services),
):
    await services.sessions.revoke_session(token)
    clear_session_cookie(response, services)
    return {"success": True}


@router.get("/me")
async def me(
    ctx: AuthContext = Depends(require_auth()),
    services: Services = Depends(get_services),
):
    return {
        **user_summary(ctx.user),
        "storageQuota": services.ledger.ceiling,
    }


# =============================================================================
# User Management
# =============================================================================

@users_router.post("")
async def create_user(
    data: CreateUserRequest,
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    user = await services.credentials.create_user(data.username, data.password, data.role)
    return {"success": True, "id": user.id}


@users_router.get("")
async def list_users(
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    return [
        {**user_summary(u), "createdAt": u.created_at}
        for u in await services.credentials.list_users()
    ]


@users_router.put("/password")
async def change_password(
    data: PasswordRequest,
    ctx: AuthContext = Depends(require_auth()),
    services: Services = Depends(get_services),
):
    """Change your own password. The guest passcode is set by an admin."""
    if ctx.user.is_guest:
        raise PermissionDenied("Forbidden")
    await services.credentials.change_password(ctx.user_id, data.password)
    return {"success": True}


@users_router.put("/{user_id}/role")
async def set_role(
    user_id: str,
    data: RoleRequest,
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    if user_id == ctx.user_id:
        raise InvalidFormat("Cannot change own role")
    user = await services.credentials.set_role(user_id, data.role)
    return user_summary(user)


@users_router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    ctx: AuthContext = Depends(require_admin()),
    services: Services = Depends(get_services),
):
    if user_id == ctx.user_id:
        raise InvalidFormat("Cannot delete self")
    await services.credentials.delete_user(user_id)
    return {"success": True}
