"""
Actions and the authorization decision.

This defines WHO may do WHAT to a resource, as a pure function of
(actor, ownership, action). The FastAPI wiring lives in policies.py.
"""

from __future__ import annotations

from enum import Enum

from promptstudio.core.errors import PermissionDenied
from promptstudio.core.models import Owned, Ownership, Role, Unowned, User


class Action(str, Enum):
    """Things an actor can attempt."""

    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    UPLOAD = "upload"     # Write bytes to the asset bucket
    MANAGE = "manage"     # Users, artists, guest passcode, maintenance


# Actions that change an existing resource and so depend on ownership
OWNERSHIP_ACTIONS = {Action.UPDATE, Action.DELETE}


# What each role may do regardless of ownership
ROLE_ACTIONS: dict[Role, set[Action]] = {
    Role.ADMIN: set(Action),
    Role.USER: {Action.READ, Action.CREATE, Action.UPLOAD},
    Role.GUEST: {Action.READ},
}


def can_access(actor: User, ownership: Ownership, action: Action) -> bool:
    """
    Decide whether `actor` may perform `action` on a resource.

    Users may change what they own and, for backward compatibility,
    anything with no owner recorded. Admins may do everything; guests
    may only read.
    """
    if action in ROLE_ACTIONS[actor.role]:
        return True
    if actor.role != Role.USER or action not in OWNERSHIP_ACTIONS:
        return False

    if isinstance(ownership, Unowned):
        return True
    if isinstance(ownership, Owned):
        return ownership.user_id == actor.id
    return False


def authorize(actor: User, ownership: Ownership, action: Action) -> None:
    """Raise PermissionDenied unless can_access() allows it."""
    if not can_access(actor, ownership, action):
        raise PermissionDenied("Permission Denied")


def role_allows(role: Role, action: Action) -> bool:
    """Ownership-independent check, for route-level gates."""
    return action in ROLE_ACTIONS[role]
