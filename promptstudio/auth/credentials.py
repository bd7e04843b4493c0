# =============================================================================
# Credential Store
# =============================================================================
#
# User records and everything identity-related:
#   - Password hashing
#   - Lookup by id / username
#   - Admin provisioning, password change, role edit, deletion
#   - First-run bootstrap of the fixed admin and guest accounts
#
# Storage usage lives on the user record but is only ever changed through
# the quota ledger (promptstudio.assets.quota).
#
# =============================================================================

from __future__ import annotations

import hashlib
import logging
import secrets

from promptstudio.core.errors import Conflict, InvalidFormat, NotFound
from promptstudio.core.models import Role, User
from promptstudio.storage.base import Collections, MetadataStorage

logger = logging.getLogger(__name__)


# =============================================================================
# Password Hashing
# =============================================================================

def hash_password(password: str) -> str:
    """
    Hash a password using PBKDF2-SHA256.

    Returns: salt:hash format string
    """
    salt = secrets.token_hex(32)
    hash_bytes = hashlib.pbkdf2_hmac(
        'sha256',
        password.encode('utf-8'),
        salt.encode('utf-8'),
        iterations=100_000
    )
    return f"{salt}:{hash_bytes.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    try:
        salt, stored_hash = password_hash.split(':')
        hash_bytes = hashlib.pbkdf2_hmac(
            'sha256',
            password.encode('utf-8'),
            salt.encode('utf-8'),
            iterations=100_000
        )
        return secrets.compare_digest(hash_bytes.hex(), stored_hash)
    except (ValueError, AttributeError):
        return False


# =============================================================================
# Store
# =============================================================================

class CredentialStore:
    """User records on top of MetadataStorage."""

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    async def get_user(self, user_id: str) -> User | None:
        data = await self.metadata.get(Collections.USERS, user_id)
        return User.model_validate(data) if data else None

    async def get_user_by_username(self, username: str) -> User | None:
        rows = await self.metadata.query(Collections.USERS, {"username": username}, limit=1)
        return User.model_validate(rows[0]) if rows else None

    async def list_users(self) -> list[User]:
        rows = await self.metadata.query(Collections.USERS, limit=10_000)
        users = [User.model_validate(r) for r in rows]
        return sorted(users, key=lambda u: u.created_at, reverse=True)

    async def create_user(self, username: str, password: str, role: Role = Role.USER) -> User:
        username = username.strip()
        if not username or not password:
            raise InvalidFormat("Username and password are required")
        if await self.get_user_by_username(username):
            raise Conflict("Username exists")

        user = User(username=username, password_hash=hash_password(password), role=role)
        await self.metadata.save(Collections.USERS, user.id, user.model_dump(mode="json"))
        logger.info("Created %s account %s (%s)", role.value, username, user.id)
        return user

    async def authenticate(self, username: str, password: str) -> User | None:
        """Return the user if the password matches, None otherwise."""
        user = await self.get_user_by_username(username)
        if not user or not verify_password(password, user.password_hash):
            return None
        return user

    async def change_password(self, user_id: str, new_password: str) -> None:
        if not new_password:
            raise InvalidFormat("Missing password")
        updated = await self.metadata.update(
            Collections.USERS, user_id, {"password_hash": hash_password(new_password)}
        )
        if not updated:
            raise NotFound("User not found")

    async def set_role(self, user_id: str, role: Role) -> User:
        if not await self.metadata.update(Collections.USERS, user_id, {"role": role.value}):
            raise NotFound("User not found")
        return await self.get_user(user_id)

    async def delete_user(self, user_id: str) -> bool:
        """
        Delete a user and every session bound to it.

        Resources the user owned are left in place.
        """
        if not await self.metadata.delete(Collections.USERS, user_id):
            return False
        sessions = await self.metadata.query(
            Collections.SESSIONS, {"user_id": user_id}, limit=10_000
        )
        for row in sessions:
            await self.metadata.delete(Collections.SESSIONS, row["id"])
        logger.info("Deleted user %s and %d session(s)", user_id, len(sessions))
        return True

    async def ensure_account(self, username: str, password: str, role: Role) -> User:
        """Create the account if missing; never touches an existing one."""
        existing = await self.get_user_by_username(username)
        if existing:
            return existing
        return await self.create_user(username, password, role)

    async def bootstrap(
        self,
        admin_username: str,
        admin_password: str,
        guest_username: str,
        guest_passcode: str,
    ) -> tuple[User, User]:
        """First-run setup: the fixed admin and the fixed guest account."""
        admin = await self.ensure_account(admin_username, admin_password, Role.ADMIN)
        guest = await self.ensure_account(guest_username, guest_passcode, Role.GUEST)
        return admin, guest
