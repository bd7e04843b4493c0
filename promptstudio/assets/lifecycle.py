"""
Asset lifecycle orchestration.

Every record mutation that carries or drops images goes through a
mutation block:

    async with lifecycle.mutation(actor) as change:
        change.stage("preview_image", body.preview_image,
                     folder="covers", entity_id=chain.id,
                     previous=chain.preview_image)
        values = await change.apply()        # admission, reserve, upload
        await metadata.update(..., values)   # commit the record

Ordering guarantees:

1. Inline payloads are decoded while staging; a malformed one aborts before
   anything is written.
2. apply() checks admission for the total of all inline payloads and
   reserves it in one atomic update before the first byte is written. A
   refusal leaves both the bucket and the counter untouched.
3. New objects exist before the record points at them. An existing managed
   key can only be attached by the user it is charged to, or an admin.
4. Superseded objects are reclaimed only after the block exits cleanly, i.e.
   after the record commit. A failure there leaves an orphaned object, which
   is logged, reported and queued for retry, never raised to the caller.
5. If the block raises, objects uploaded inside it are deleted and the
   reservation released. Nothing is reclaimed.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, BinaryIO, Callable

from promptstudio.assets.quota import QuotaLedger
from promptstudio.assets.refs import AssetRef, InlineImage, Managed, classify, parse_ref
from promptstudio.assets.store import CHARGED_TO, AssetStore
from promptstudio.auth.capabilities import Action, authorize
from promptstudio.core.models import Unowned, User, ownership_of
from promptstudio.integrations.sentry import capture_message
from promptstudio.storage.base import QueueStorage, Queues

logger = logging.getLogger(__name__)

# Answers "does any record still point at this key?"
ReferenceCheck = Callable[[Managed], Awaitable[bool]]


@dataclass
class StagedAsset:
    """One asset field of a pending mutation."""

    name: str
    incoming: AssetRef | InlineImage
    folder: str
    entity_id: str
    previous: AssetRef
    result: AssetRef | None = None


@dataclass
class AssetMutation:
    """Asset side of one record mutation. Created by AssetLifecycle.mutation()."""

    lifecycle: AssetLifecycle
    actor: User
    staged: list[StagedAsset] = field(default_factory=list)
    released: list[AssetRef] = field(default_factory=list)
    uploaded: list[Managed] = field(default_factory=list)
    reserved: int = 0
    applied: bool = False

    def stage(
        self,
        field_name: str,
        value: str | None,
        *,
        folder: str,
        entity_id: str,
        previous: str | None = None,
    ) -> None:
        """Register a new value for an asset field. Decodes inline data now."""
        if self.applied:
            raise RuntimeError("Cannot stage after apply()")
        self.staged.append(StagedAsset(
            name=field_name,
            incoming=classify(value),
            folder=folder,
            entity_id=entity_id,
            previous=parse_ref(previous),
        ))

    def release(self, *values: str | None) -> None:
        """Mark references to reclaim once the record change commits."""
        self.released.extend(parse_ref(v) for v in values)

    @property
    def inline_bytes(self) -> int:
        return sum(s.incoming.size for s in self.staged if isinstance(s.incoming, InlineImage))

    async def apply(self) -> dict[str, Any]:
        """
        Upload staged inline payloads.

        Returns field name → stored value (the managed path, the external
        URL as given, or None for empty).
        """
        if self.applied:
            raise RuntimeError("apply() called twice")
        self.applied = True

        for staged in self.staged:
            if isinstance(staged.incoming, Managed) and staged.incoming != staged.previous:
                await self.lifecycle.check_attach(self.actor, staged.incoming)

        inline = [s for s in self.staged if isinstance(s.incoming, InlineImage)]
        if inline:
            store, ledger = self.lifecycle.store, self.lifecycle.ledger
            authorize(self.actor, Unowned(), Action.UPLOAD)
            store.ensure_configured()

            total = self.inline_bytes
            ledger.check_admission(self.actor, total)
            await ledger.reserve(self.actor, total)
            self.reserved = total

            for staged in inline:
                image = staged.incoming
                key = store.build_key(staged.folder, staged.entity_id, image.ext)
                await store.put(key, image.data, image.content_type, charged_to=self.actor.id)
                ref = Managed(key)
                self.uploaded.append(ref)
                staged.result = ref

        for staged in self.staged:
            if staged.result is None:
                staged.result = staged.incoming
            if staged.previous != staged.result:
                self.released.append(staged.previous)

        return {s.name: s.result.to_value() for s in self.staged}

    async def rollback(self) -> None:
        """Undo uploads made by apply(); the record was never switched to them."""
        for ref in self.uploaded:
            try:
                await self.lifecycle.store.delete(ref.key)
            except Exception as e:
                logger.warning("Rollback could not delete %s: %s", ref.key, e)
                await self.lifecycle.defer(ref, reason=str(e), credit=False)
        if self.reserved:
            await self.lifecycle.ledger.release(self.actor.id, self.reserved)
        if self.uploaded:
            logger.info("Rolled back %d upload(s) for %s", len(self.uploaded), self.actor.username)
        self.uploaded.clear()
        self.reserved = 0

    async def commit(self) -> None:
        """Reclaim superseded and released references."""
        keep = {s.result for s in self.staged if s.result is not None}
        targets = [ref for ref in self.released if ref not in keep]
        await self.lifecycle.reclaim(targets)


class AssetLifecycle:
    """Coordinates policy, quota and the asset store around record mutations."""

    def __init__(
        self,
        store: AssetStore,
        ledger: QuotaLedger,
        queue: QueueStorage | None = None,
        is_referenced: ReferenceCheck | None = None,
    ):
        self.store = store
        self.ledger = ledger
        self.queue = queue
        self.is_referenced = is_referenced

    @asynccontextmanager
    async def mutation(self, actor: User) -> AsyncIterator[AssetMutation]:
        change = AssetMutation(lifecycle=self, actor=actor)
        try:
            yield change
        except Exception:
            await change.rollback()
            raise
        await change.commit()

    async def check_attach(self, actor: User, ref: Managed) -> None:
        """
        Refuse to point a record at someone else's object.

        Attaching needs the same right as deleting the object: the user it
        is charged to, or an admin. Objects with no `charged-to` count as
        unowned.
        """
        if not self.store.configured:
            return
        obj = await self.store.head(ref.key)
        if obj is None:
            return
        authorize(actor, ownership_of(obj.metadata.get(CHARGED_TO)), Action.DELETE)

    async def upload(
        self,
        actor: User,
        data: bytes | BinaryIO,
        size: int,
        *,
        ext: str,
        content_type: str,
        folder: str,
        entity_id: str,
    ) -> Managed:
        """Store a standalone upload (multipart) and charge it to `actor`."""
        authorize(actor, Unowned(), Action.UPLOAD)
        self.store.ensure_configured()
        key = self.store.build_key(folder, entity_id, ext)

        self.ledger.check_admission(actor, size)
        await self.ledger.reserve(actor, size)
        try:
            await self.store.put(key, data, content_type, charged_to=actor.id)
        except Exception:
            await self.ledger.release(actor.id, size)
            raise
        logger.info("Upload %s (%d bytes) by %s", key, size, actor.username)
        return Managed(key)

    async def reclaim(self, refs: list[AssetRef]) -> int:
        """
        Best-effort delete of managed references. Returns how many were deleted.

        External and empty references are skipped, as are keys another
        record still points at. Failures are deferred, not raised.
        """
        reclaimed = 0
        seen: set[str] = set()
        for ref in refs:
            if not isinstance(ref, Managed) or ref.key in seen:
                continue
            seen.add(ref.key)
            try:
                if await self._reclaim_one(ref):
                    reclaimed += 1
            except Exception as e:
                logger.warning("Reclaim of %s failed: %s", ref.key, e)
                capture_message(f"Asset reclaim failed: {ref.key}", level="warning", error=str(e))
                await self.defer(ref, reason=str(e))
        return reclaimed

    async def _reclaim_one(self, ref: Managed, credit: bool = True) -> bool:
        if self.is_referenced and await self.is_referenced(ref):
            logger.debug("Keeping %s, still referenced", ref.key)
            return False
        obj = await self.store.reclaim(ref)
        if obj is None:
            return False
        if credit:
            await self.ledger.credit(obj.metadata.get(CHARGED_TO), obj.size)
        logger.debug("Reclaimed %s (%d bytes)", ref.key, obj.size)
        return True

    async def defer(
        self, ref: Managed, reason: str = "", attempts: int = 0, credit: bool = True
    ) -> None:
        """Queue a reclaim for retry_pending_reclaims()."""
        if self.queue is None:
            return
        await self.queue.enqueue(Queues.ASSET_RECLAIM, {
            "key": ref.key,
            "reason": reason,
            "attempts": attempts + 1,
            "credit": credit,
        })

    async def retry_pending_reclaims(self, limit: int = 1000) -> dict[str, int]:
        """
        Drain the reclaim queue once. Items that fail again are re-queued
        after the pass, so each item is tried at most once per call.
        """
        result = {"reclaimed": 0, "failed": 0}
        if self.queue is None:
            return result

        retry: list[tuple[Managed, str, int, bool]] = []
        for _ in range(limit):
            message = await self.queue.dequeue(Queues.ASSET_RECLAIM)
            if message is None:
                break
            ref = Managed(message["key"])
            credit = message.get("credit", True)
            try:
                if await self._reclaim_one(ref, credit=credit):
                    result["reclaimed"] += 1
            except Exception as e:
                logger.warning("Retry of %s failed: %s", ref.key, e)
                result["failed"] += 1
                retry.append((ref, str(e), message.get("attempts", 1), credit))
            await self.queue.ack(Queues.ASSET_RECLAIM, message["_message_id"])

        for ref, reason, attempts, credit in retry:
            await self.defer(ref, reason=reason, attempts=attempts, credit=credit)
        return result
