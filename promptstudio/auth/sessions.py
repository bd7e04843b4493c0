"""
Session manager.

Sessions are opaque random tokens stored server-side with an absolute
expiry. A session is active from creation until it is revoked or the clock
reaches `expires_at`; there is no refresh. Expiry is checked on every read,
so a stale row that has not been purged yet never authenticates anyone.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from promptstudio.auth.credentials import CredentialStore
from promptstudio.core.errors import NotFound
from promptstudio.core.models import Role, Session, User
from promptstudio.core.utils import utc_now
from promptstudio.storage.base import Collections, MetadataStorage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SessionManager:
    """Issue, resolve and revoke session tokens."""

    def __init__(
        self,
        metadata: MetadataStorage,
        credentials: CredentialStore,
        ttl: timedelta = timedelta(days=7),
        guest_ttl: timedelta = timedelta(hours=24),
        clock: Clock = utc_now,
    ):
        self.metadata = metadata
        self.credentials = credentials
        self.ttl = ttl
        self.guest_ttl = guest_ttl
        self.clock = clock

    def ttl_for(self, role: Role) -> timedelta:
        return self.guest_ttl if role == Role.GUEST else self.ttl

    async def create_session(self, user_id: str) -> Session:
        """Issue a new token for `user_id` with the role's TTL."""
        user = await self.credentials.get_user(user_id)
        if user is None:
            raise NotFound("User not found")

        now = self.clock()
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            expires_at=now + self.ttl_for(user.role),
            created_at=now,
        )
        await self.metadata.save(Collections.SESSIONS, session.id, {
            "id": session.id,
            "user_id": session.user_id,
            "expires_at": session.expires_at.isoformat(),
            "created_at": session.created_at.isoformat(),
        })
        logger.debug("Issued session for %s until %s", user.username, session.expires_at)
        return session

    async def get_session(self, token: str | None) -> Session | None:
        """The session row if it exists and has not expired."""
        if not token:
            return None
        row = await self.metadata.get(Collections.SESSIONS, token)
        if row is None:
            return None
        session = Session.model_validate(row)
        if self.clock() >= session.expires_at:
            return None
        return session

    async def resolve_session(self, token: str | None) -> User | None:
        """The user behind an active session, with current storage usage."""
        session = await self.get_session(token)
        if session is None:
            return None
        return await self.credentials.get_user(session.user_id)

    async def revoke_session(self, token: str | None) -> None:
        """Delete the session. Unknown tokens are ignored."""
        if token:
            await self.metadata.delete(Collections.SESSIONS, token)

    async def purge_expired(self) -> int:
        """Drop expired rows. Housekeeping only; reads already ignore them."""
        now = self.clock()
        purged = 0
        for row in await self.metadata.query(Collections.SESSIONS, limit=100_000):
            if datetime.fromisoformat(row["expires_at"]) <= now:
                await self.metadata.delete(Collections.SESSIONS, row["id"])
                purged += 1
        if purged:
            logger.info("Purged %d expired session(s)", purged)
        return purged
