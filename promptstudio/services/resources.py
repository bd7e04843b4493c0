"""
Resource services: chains, artists and inspirations.

Only the parts that touch ownership and image fields are interesting here;
everything else is plain field mapping onto MetadataStorage. Each mutation
that carries an image runs inside an asset mutation block so uploads,
quota and reclaim stay consistent with the record.
"""

from __future__ import annotations

import logging
from typing import Any

from promptstudio.assets.lifecycle import AssetLifecycle
from promptstudio.assets.refs import Managed
from promptstudio.auth.capabilities import Action, authorize, can_access
from promptstudio.core.errors import NotFound
from promptstudio.core.models import (
    Artist,
    Chain,
    Inspiration,
    Unowned,
    User,
    ownership_of,
)
from promptstudio.core.utils import epoch_ms, generate_id
from promptstudio.storage.base import Collections, MetadataStorage

logger = logging.getLogger(__name__)

# Large enough to mean "everything" for the in-memory and small deployments
SCAN_LIMIT = 100_000


class ReferenceIndex:
    """Answers whether any record still points at a managed key."""

    def __init__(self, metadata: MetadataStorage):
        self.metadata = metadata

    async def __call__(self, ref: Managed) -> bool:
        value = ref.to_value()
        if await self.metadata.query(Collections.CHAINS, {"preview_image": value}, limit=1):
            return True
        if await self.metadata.query(Collections.INSPIRATIONS, {"image_url": value}, limit=1):
            return True
        for artist in await self.metadata.query(Collections.ARTISTS, limit=SCAN_LIMIT):
            if artist.get("image_url") == value or value in (artist.get("benchmarks") or []):
                return True
        return False


# =============================================================================
# Chains
# =============================================================================


class ChainService:
    COVER_FOLDER = "covers"

    def __init__(self, metadata: MetadataStorage, lifecycle: AssetLifecycle):
        self.metadata = metadata
        self.lifecycle = lifecycle

    @staticmethod
    def default_module() -> dict[str, Any]:
        return {
            "id": generate_id(),
            "name": "Lighting",
            "content": "cinematic lighting",
            "isActive": True,
        }

    async def list(self) -> list[Chain]:
        rows = await self.metadata.query(Collections.CHAINS, limit=SCAN_LIMIT)
        chains = [Chain.model_validate(r) for r in rows]
        return sorted(chains, key=lambda c: c.updated_at, reverse=True)

    async def get(self, chain_id: str) -> Chain:
        row = await self.metadata.get(Collections.CHAINS, chain_id)
        if row is None:
            raise NotFound("Not Found")
        return Chain.model_validate(row)

    async def create(self, actor: User, fields: dict[str, Any]) -> Chain:
        authorize(actor, ownership_of(actor.id), Action.CREATE)
        chain_id = generate_id()
        preview = fields.pop("preview_image", None)

        async with self.lifecycle.mutation(actor) as change:
            change.stage("preview_image", preview, folder=self.COVER_FOLDER, entity_id=chain_id)
            values = await change.apply()
            fields = {k: v for k, v in fields.items() if v}
            fields.setdefault("modules", [self.default_module()])
            chain = Chain(
                **fields,
                **values,
                id=chain_id,
                user_id=actor.id,
                username=actor.username,
            )
            await self.metadata.save(Collections.CHAINS, chain.id, chain.to_storage())

        logger.info("Chain %s created by %s", chain.id, actor.username)
        return chain

    async def update(self, actor: User, chain_id: str, changes: dict[str, Any]) -> Chain:
        chain = await self.get(chain_id)
        authorize(actor, ownership_of(chain.user_id), Action.UPDATE)

        async with self.lifecycle.mutation(actor) as change:
            if "preview_image" in changes:
                change.stage(
                    "preview_image",
                    changes["preview_image"],
                    folder=self.COVER_FOLDER,
                    entity_id=chain.id,
                    previous=chain.preview_image,
                )
            changes.update(await change.apply())
            if changes:
                changes["updated_at"] = epoch_ms()
                await self.metadata.update(Collections.CHAINS, chain.id, changes)

        return await self.get(chain_id)

    async def delete(self, actor: User, chain_id: str) -> bool:
        row = await self.metadata.get(Collections.CHAINS, chain_id)
        if row is None:
            return False
        chain = Chain.model_validate(row)
        authorize(actor, ownership_of(chain.user_id), Action.DELETE)

        async with self.lifecycle.mutation(actor) as change:
            change.release(chain.preview_image)
            await self.metadata.delete(Collections.CHAINS, chain.id)

        logger.info("Chain %s deleted by %s", chain.id, actor.username)
        return True


# =============================================================================
# Artists
# =============================================================================


class ArtistService:
    """Artists are shared by everyone and managed by admins only."""

    AVATAR_FOLDER = "artists"

    def __init__(self, metadata: MetadataStorage, lifecycle: AssetLifecycle):
        self.metadata = metadata
        self.lifecycle = lifecycle

    @staticmethod
    def benchmark_folder(index: int) -> str:
        return f"artists/benchmarks_{index}"

    async def list(self) -> list[Artist]:
        rows = await self.metadata.query(Collections.ARTISTS, limit=SCAN_LIMIT)
        return sorted((Artist.model_validate(r) for r in rows), key=lambda a: a.name)

    async def get(self, artist_id: str) -> Artist:
        row = await self.metadata.get(Collections.ARTISTS, artist_id)
        if row is None:
            raise NotFound("Not Found")
        return Artist.model_validate(row)

    async def save(
        self,
        actor: User,
        name: str,
        image_url: str | None = None,
        benchmarks: list[str] | None = None,
        artist_id: str | None = None,
    ) -> Artist:
        """Create or replace an artist, uploading any inline images."""
        authorize(actor, Unowned(), Action.MANAGE)
        artist_id = artist_id or generate_id()
        row = await self.metadata.get(Collections.ARTISTS, artist_id)
        existing = Artist.model_validate(row) if row else None
        benchmarks = benchmarks or []

        async with self.lifecycle.mutation(actor) as change:
            change.stage(
                "image_url",
                image_url,
                folder=self.AVATAR_FOLDER,
                entity_id=artist_id,
                previous=existing.image_url if existing else None,
            )
            for i, value in enumerate(benchmarks):
                change.stage(
                    f"benchmarks.{i}",
                    value,
                    folder=self.benchmark_folder(i),
                    entity_id=artist_id,
                )
            values = await change.apply()

            stored_benchmarks = [
                values[f"benchmarks.{i}"]
                for i in range(len(benchmarks))
                if values[f"benchmarks.{i}"]
            ]
            if existing:
                change.release(*(b for b in existing.benchmarks if b not in stored_benchmarks))

            artist = Artist(
                id=artist_id,
                name=name,
                image_url=values["image_url"],
                benchmarks=stored_benchmarks,
            )
            await self.metadata.save(Collections.ARTISTS, artist.id, artist.to_storage())

        return artist

    async def delete(self, actor: User, artist_id: str) -> bool:
        authorize(actor, Unowned(), Action.MANAGE)
        row = await self.metadata.get(Collections.ARTISTS, artist_id)
        if row is None:
            return False
        artist = Artist.model_validate(row)

        async with self.lifecycle.mutation(actor) as change:
            change.release(artist.image_url, *artist.benchmarks)
            await self.metadata.delete(Collections.ARTISTS, artist.id)

        logger.info("Artist %s deleted by %s", artist.id, actor.username)
        return True


# =============================================================================
# Inspirations
# =============================================================================


class InspirationService:
    IMAGE_FOLDER = "inspirations"

    def __init__(self, metadata: MetadataStorage, lifecycle: AssetLifecycle):
        self.metadata = metadata
        self.lifecycle = lifecycle

    async def list(self) -> list[Inspiration]:
        rows = await self.metadata.query(Collections.INSPIRATIONS, limit=SCAN_LIMIT)
        items = [Inspiration.model_validate(r) for r in rows]
        return sorted(items, key=lambda i: i.created_at, reverse=True)

    async def get(self, inspiration_id: str) -> Inspiration:
        row = await self.metadata.get(Collections.INSPIRATIONS, inspiration_id)
        if row is None:
            raise NotFound("Not Found")
        return Inspiration.model_validate(row)

    async def save(
        self,
        actor: User,
        title: str,
        image_url: str | None = None,
        prompt: str = "",
        inspiration_id: str | None = None,
        created_at: int | None = None,
    ) -> Inspiration:
        """
        Create an inspiration, or replace one the actor may update.

        The record becomes owned by the actor either way.
        """
        authorize(actor, ownership_of(actor.id), Action.CREATE)
        inspiration_id = inspiration_id or generate_id()
        row = await self.metadata.get(Collections.INSPIRATIONS, inspiration_id)
        existing = Inspiration.model_validate(row) if row else None
        if existing:
            authorize(actor, ownership_of(existing.user_id), Action.UPDATE)

        async with self.lifecycle.mutation(actor) as change:
            change.stage(
                "image_url",
                image_url,
                folder=self.IMAGE_FOLDER,
                entity_id=inspiration_id,
                previous=existing.image_url if existing else None,
            )
            values = await change.apply()
            item = Inspiration(
                id=inspiration_id,
                user_id=actor.id,
                username=actor.username,
                title=title,
                image_url=values["image_url"],
                prompt=prompt or "",
                created_at=created_at or epoch_ms(),
            )
            await self.metadata.save(Collections.INSPIRATIONS, item.id, item.to_storage())

        return item

    async def update(self, actor: User, inspiration_id: str, changes: dict[str, Any]) -> Inspiration:
        item = await self.get(inspiration_id)
        authorize(actor, ownership_of(item.user_id), Action.UPDATE)

        async with self.lifecycle.mutation(actor) as change:
            if "image_url" in changes:
                change.stage(
                    "image_url",
                    changes["image_url"],
                    folder=self.IMAGE_FOLDER,
                    entity_id=item.id,
                    previous=item.image_url,
                )
            changes.update(await change.apply())
            if changes:
                await self.metadata.update(Collections.INSPIRATIONS, item.id, changes)

        return await self.get(inspiration_id)

    async def delete(self, actor: User, inspiration_id: str) -> bool:
        row = await self.metadata.get(Collections.INSPIRATIONS, inspiration_id)
        if row is None:
            return False
        item = Inspiration.model_validate(row)
        authorize(actor, ownership_of(item.user_id), Action.DELETE)

        async with self.lifecycle.mutation(actor) as change:
            change.release(item.image_url)
            await self.metadata.delete(Collections.INSPIRATIONS, item.id)
        return True

    async def bulk_delete(self, actor: User, ids: list[str]) -> int:
        """Delete what the actor may delete; silently skip the rest."""
        deleted = 0
        for inspiration_id in ids:
            row = await self.metadata.get(Collections.INSPIRATIONS, inspiration_id)
            if row is None:
                continue
            if not can_access(actor, ownership_of(row.get("user_id")), Action.DELETE):
                continue
            if await self.delete(actor, inspiration_id):
                deleted += 1
        return deleted
