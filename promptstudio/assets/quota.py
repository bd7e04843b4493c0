"""
Quota ledger.

Per-user cumulative byte usage, stored as `storage_usage` on the user
record. All changes go through MetadataStorage.increment(), which applies
the arithmetic inside the store; nothing here computes a new value from a
previously read one.

Accounting policy is explicit:

- GROW_ONLY: usage only ever grows. Deleting or replacing an image does not
  give bytes back, so the counter drifts above what the bucket really holds.
- CREDIT_ON_RECLAIM: when an object is reclaimed, its size is credited back
  to the user recorded as having paid for it.
"""

from __future__ import annotations

import logging
from enum import Enum

from promptstudio.core.errors import NotFound, QuotaExceeded
from promptstudio.core.models import User
from promptstudio.storage.base import Collections, MetadataStorage

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

USAGE_FIELD = "storage_usage"


class QuotaPolicy(str, Enum):
    GROW_ONLY = "grow_only"
    CREDIT_ON_RECLAIM = "credit_on_reclaim"


def format_mib(nbytes: int) -> str:
    return f"{nbytes / MIB:.1f}MB"


class QuotaLedger:
    """Admission checks and atomic usage updates."""

    def __init__(
        self,
        metadata: MetadataStorage,
        ceiling: int = 300 * MIB,
        policy: QuotaPolicy = QuotaPolicy.GROW_ONLY,
    ):
        self.metadata = metadata
        self.ceiling = ceiling
        self.policy = QuotaPolicy(policy)

    def exempt(self, user: User) -> bool:
        return user.is_admin

    def admits(self, user: User, incoming: int) -> bool:
        """Would `incoming` more bytes fit, judging by this user snapshot?"""
        if self.exempt(user):
            return True
        return user.storage_usage + incoming <= self.ceiling

    def check_admission(self, user: User, incoming: int) -> None:
        if not self.admits(user, incoming):
            raise QuotaExceeded(self._exceeded_message(user.storage_usage))

    async def usage(self, user_id: str) -> int:
        data = await self.metadata.get(Collections.USERS, user_id)
        if data is None:
            raise NotFound("User not found")
        return data.get(USAGE_FIELD) or 0

    async def reserve(self, user: User, nbytes: int) -> int:
        """
        Charge `nbytes` to the user if it fits under the ceiling.

        The fit test and the addition are a single conditional update in the
        store, so two concurrent reservations cannot both squeeze past the
        ceiling. On refusal the counter is untouched.
        """
        ceiling = None if self.exempt(user) else self.ceiling
        new_usage = await self.metadata.increment(
            Collections.USERS, user.id, USAGE_FIELD, nbytes, ceiling=ceiling, floor=0
        )
        if new_usage is None:
            if await self.metadata.get(Collections.USERS, user.id) is None:
                raise NotFound("User not found")
            current = await self.usage(user.id)
            logger.info(
                "Quota refused %d bytes for %s (usage %d)", nbytes, user.username, current
            )
            raise QuotaExceeded(self._exceeded_message(current))
        return new_usage

    async def increment(self, user_id: str, delta: int) -> int | None:
        """Unconditional atomic add, never below zero."""
        return await self.metadata.increment(
            Collections.USERS, user_id, USAGE_FIELD, delta, floor=0
        )

    async def release(self, user_id: str, nbytes: int) -> None:
        """Undo a reservation whose write did not happen."""
        if nbytes:
            await self.increment(user_id, -nbytes)

    async def credit(self, user_id: str | None, nbytes: int) -> bool:
        """Give back reclaimed bytes; a no-op under GROW_ONLY."""
        if self.policy != QuotaPolicy.CREDIT_ON_RECLAIM or not user_id or nbytes <= 0:
            return False
        await self.increment(user_id, -nbytes)
        return True

    def _exceeded_message(self, current: int) -> str:
        return (
            f"Storage quota exceeded ({format_mib(self.ceiling)} limit). "
            f"Current: {format_mib(current)}"
        )
