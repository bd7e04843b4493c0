"""
Auth context - the "who can do what" for each request.

This is the lightweight object passed to route handlers.
It contains everything needed to make authorization decisions.
"""

from __future__ import annotations

from dataclasses import dataclass

from promptstudio.auth.capabilities import Action, authorize, can_access
from promptstudio.core.models import Ownership, Unowned, User


@dataclass
class AuthContext:
    """
    Authorization context for a request.

    Usage in routes:
        async def my_route(ctx: AuthContext = Depends(require(Action.CREATE))):
            ctx.require(Action.UPDATE, ownership_of(chain.user_id))
    """

    user: User
    session_id: str | None = None

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.user.is_admin

    def can(self, action: Action, ownership: Ownership = Unowned()) -> bool:
        return can_access(self.user, ownership, action)

    def require(self, action: Action, ownership: Ownership = Unowned()) -> None:
        """Raise PermissionDenied if the action is not allowed."""
        authorize(self.user, ownership, action)
