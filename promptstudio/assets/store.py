"""
Asset store.

Thin domain layer over ContentStorage: key naming, validation, and the
"no bucket configured" failure mode. Keys look like

    <folder>/<entity id>_<epoch ms>.<ext>

e.g. `covers/chain_1f..._1718000000000.png`, so an object can be traced back
to the record and category that produced it.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import BinaryIO, Callable

from promptstudio.assets.refs import AssetRef, Managed
from promptstudio.core.errors import InvalidFormat, NotFound, ServiceUnavailable
from promptstudio.core.utils import epoch_ms, utc_now
from promptstudio.storage.base import ContentStorage, StoredObject

logger = logging.getLogger(__name__)

# Object metadata field naming the user whose quota paid for the object
CHARGED_TO = "charged-to"

# No leading dot: ".", ".." and hidden entries such as the local sidecar
# directory (.meta) are never valid key segments
_SEGMENT = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


def clean_folder(folder: str | None, default: str = "uploads") -> str:
    """Normalise a caller-supplied folder into safe path segments."""
    parts = [p for p in (folder or "").strip().split("/") if p]
    if not parts:
        return default
    for part in parts:
        if not _SEGMENT.match(part):
            raise InvalidFormat(f"Invalid folder: {folder}")
    return "/".join(parts)


def validate_key(key: str) -> str:
    if not key or not all(_SEGMENT.match(p) for p in key.split("/")):
        raise NotFound("File not found")
    return key


class AssetStore:
    """Put, fetch and delete image objects in the configured bucket."""

    def __init__(
        self,
        content: ContentStorage | None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._content = content
        self.clock = clock

    @property
    def configured(self) -> bool:
        return self._content is not None

    @property
    def content(self) -> ContentStorage:
        if self._content is None:
            raise ServiceUnavailable("Bucket not configured")
        return self._content

    def ensure_configured(self) -> None:
        if self._content is None:
            raise ServiceUnavailable("Bucket not configured")

    def build_key(self, folder: str, entity_id: str, ext: str) -> str:
        folder = clean_folder(folder)
        entity = re.sub(r"[^A-Za-z0-9_-]", "_", entity_id) or "asset"
        ext = re.sub(r"[^A-Za-z0-9]", "", ext).lower() or "bin"
        return f"{folder}/{entity}_{epoch_ms(self.clock())}.{ext}"

    async def put(
        self,
        key: str,
        data: bytes | BinaryIO,
        content_type: str,
        charged_to: str | None = None,
    ) -> StoredObject:
        metadata = {CHARGED_TO: charged_to} if charged_to else {}
        obj = await self.content.put(validate_key(key), data, content_type, metadata)
        logger.debug("Stored %s (%d bytes)", key, obj.size)
        return obj

    async def get(self, key: str) -> StoredObject:
        obj = await self.content.get(validate_key(key))
        if obj is None:
            raise NotFound("File not found")
        return obj

    async def head(self, key: str) -> StoredObject | None:
        return await self.content.head(validate_key(key))

    async def delete(self, key: str) -> None:
        """Remove an object. Missing keys are fine."""
        await self.content.delete(validate_key(key))

    async def reclaim(self, ref: AssetRef) -> StoredObject | None:
        """
        Delete the object behind a managed reference.

        Returns what was deleted (for quota credit), or None if the reference
        is not managed or the object is already gone.
        """
        if not isinstance(ref, Managed):
            return None
        obj = await self.head(ref.key)
        await self.delete(ref.key)
        return obj
