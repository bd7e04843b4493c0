"""
Local storage implementations for development and tests.

These are in-memory or filesystem-based implementations
that work without any external services.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, BinaryIO

from promptstudio.storage.base import (
    ContentStorage,
    MetadataStorage,
    QueueStorage,
    StorageProvider,
    StoredObject,
)


# =============================================================================
# Local Filesystem Content Storage
# =============================================================================


class LocalContentStorage(ContentStorage):
    """
    Store content on local filesystem.

    Object metadata (content type, ETag, user metadata) lives in a JSON
    sidecar under `<base>/.meta/` so list_keys only sees object files.
    """

    META_DIR = ".meta"

    def __init__(self, base_path: str = "./data/content"):
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _key_to_path(self, key: str) -> Path | None:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            return None
        return path

    def _meta_path(self, key: str) -> Path:
        return self.base_path / self.META_DIR / f"{key}.json"

    async def put(
        self,
        key: str,
        data: bytes | BinaryIO,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        path = self._key_to_path(key)
        if path is None:
            raise ValueError(f"Key escapes storage root: {key}")
        path.parent.mkdir(parents=True, exist_ok=True)

        digest = hashlib.md5()
        if isinstance(data, (bytes, bytearray)):
            path.write_bytes(data)
            digest.update(data)
        else:
            with path.open("wb") as out:
                while chunk := data.read(1024 * 1024):
                    digest.update(chunk)
                    out.write(chunk)

        obj = StoredObject(
            key=key,
            size=path.stat().st_size,
            content_type=content_type,
            etag=f'"{digest.hexdigest()}"',
            metadata=dict(metadata or {}),
        )
        meta_path = self._meta_path(key)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        meta_path.write_text(json.dumps({
            "content_type": obj.content_type,
            "etag": obj.etag,
            "metadata": obj.metadata,
        }))
        return obj

    async def head(self, key: str) -> StoredObject | None:
        path = self._key_to_path(key)
        if path is None or not path.is_file():
            return None

        meta_path = self._meta_path(key)
        meta: dict[str, Any] = {}
        if meta_path.exists():
            meta = json.loads(meta_path.read_text())

        etag = meta.get("etag")
        if not etag:
            etag = f'"{hashlib.md5(path.read_bytes()).hexdigest()}"'

        return StoredObject(
            key=key,
            size=path.stat().st_size,
            content_type=meta.get("content_type", "application/octet-stream"),
            etag=etag,
            metadata=meta.get("metadata", {}),
        )

    async def get(self, key: str) -> StoredObject | None:
        obj = await self.head(key)
        if obj is None:
            return None
        obj.body = self._key_to_path(key).read_bytes()
        return obj

    async def delete(self, key: str) -> bool:
        path = self._key_to_path(key)
        if path is None or not path.is_file():
            return False
        path.unlink()
        self._meta_path(key).unlink(missing_ok=True)
        return True

    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        meta_root = self.base_path / self.META_DIR
        for path in sorted(self.base_path.rglob("*")):
            if not path.is_file() or meta_root in path.parents:
                continue
            key = path.relative_to(self.base_path).as_posix()
            if key.startswith(prefix):
                yield key


# =============================================================================
# In-Memory Metadata Storage
# =============================================================================


class InMemoryMetadataStorage(MetadataStorage):
    """In-memory document storage for development."""

    def __init__(self):
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        # Guards read-modify-write in increment(); nothing awaits while held
        self._lock = threading.Lock()

    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        if collection not in self._data:
            self._data[collection] = {}
        self._data[collection][id] = {
            **data,
            "_id": id,
            "_updated_at": datetime.now(timezone.utc).isoformat(),
        }

    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        doc = self._data.get(collection, {}).get(id)
        return dict(doc) if doc is not None else None

    async def delete(self, collection: str, id: str) -> bool:
        if collection in self._data and id in self._data[collection]:
            del self._data[collection][id]
            return True
        return False

    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if collection not in self._data:
            return []

        results = list(self._data[collection].values())

        # Apply filters
        if filters:
            results = [
                doc for doc in results
                if all(doc.get(key) == value for key, value in filters.items())
            ]

        # Apply pagination
        return [dict(doc) for doc in results[offset:offset + limit]]

    async def update(self, collection: str, id: str, updates: dict[str, Any]) -> bool:
        if collection in self._data and id in self._data[collection]:
            self._data[collection][id].update(updates)
            self._data[collection][id]["_updated_at"] = datetime.now(timezone.utc).isoformat()
            return True
        return False

    async def increment(
        self,
        collection: str,
        id: str,
        field: str,
        delta: int,
        ceiling: int | None = None,
        floor: int | None = None,
    ) -> int | None:
        with self._lock:
            doc = self._data.get(collection, {}).get(id)
            if doc is None:
                return None

            new_value = (doc.get(field) or 0) + delta
            if ceiling is not None and delta > 0 and new_value > ceiling:
                return None
            if floor is not None and new_value < floor:
                new_value = floor

            doc[field] = new_value
            doc["_updated_at"] = datetime.now(timezone.utc).isoformat()
            return new_value


# =============================================================================
# In-Memory Queue Storage
# =============================================================================


class InMemoryQueueStorage(QueueStorage):
    """In-memory queue for development."""

    def __init__(self):
        self._queues: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._pending: dict[str, dict[str, dict[str, Any]]] = {}

    async def enqueue(self, queue_name: str, message: dict[str, Any]) -> str:
        if queue_name not in self._queues:
            self._queues[queue_name] = []

        message_id = str(uuid.uuid4())
        self._queues[queue_name].append((message_id, message))
        return message_id

    async def dequeue(self, queue_name: str, wait_seconds: int = 0) -> dict[str, Any] | None:
        if queue_name not in self._queues or not self._queues[queue_name]:
            return None

        message_id, message = self._queues[queue_name].pop(0)

        # Track pending for ack
        if queue_name not in self._pending:
            self._pending[queue_name] = {}
        self._pending[queue_name][message_id] = message

        return {"_message_id": message_id, **message}

    async def ack(self, queue_name: str, message_id: str) -> None:
        if queue_name in self._pending and message_id in self._pending[queue_name]:
            del self._pending[queue_name][message_id]

    def depth(self, queue_name: str) -> int:
        """Number of messages waiting (not counting unacked)."""
        return len(self._queues.get(queue_name, []))


# =============================================================================
# Factory
# =============================================================================


def create_local_storage(
    data_dir: str = "./data",
    content: ContentStorage | None = None,
    with_content: bool = True,
) -> StorageProvider:
    """
    Create a StorageProvider with local implementations.

    Pass `content` to plug in another bucket (e.g. S3), or
    `with_content=False` to run without any bucket.
    """
    if content is None and with_content:
        content = LocalContentStorage(f"{data_dir}/content")
    return StorageProvider(
        content=content,
        metadata=InMemoryMetadataStorage(),
        queue=InMemoryQueueStorage(),
    )
