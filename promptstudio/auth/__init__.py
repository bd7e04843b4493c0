"""
Authorization system: sessions, roles and ownership.

Design principles:
1. Sessions are opaque server-side tokens, never self-describing
2. Role decides what a user may attempt, ownership decides on which record
3. One dependency per route: `Depends(require(Action.CREATE))`

The HTTP routes live in promptstudio.auth.routes and are mounted by the app.
"""

from promptstudio.auth.capabilities import (
    Action,
    OWNERSHIP_ACTIONS,
    ROLE_ACTIONS,
    authorize,
    can_access,
    role_allows,
)
from promptstudio.auth.context import AuthContext
from promptstudio.auth.credentials import CredentialStore, hash_password, verify_password
from promptstudio.auth.sessions import SessionManager
from promptstudio.auth.policies import (
    get_optional_context,
    get_services,
    require,
    require_admin,
    require_auth,
)

__all__ = [
    # Main interface
    "require",
    "require_auth",
    "require_admin",
    "get_optional_context",
    "get_services",
    "AuthContext",
    # Policy
    "Action",
    "OWNERSHIP_ACTIONS",
    "ROLE_ACTIONS",
    "authorize",
    "can_access",
    "role_allows",
    # Accounts
    "CredentialStore",
    "SessionManager",
    "hash_password",
    "verify_password",
]
