"""
Storage abstraction layer.

All persistence goes through these interfaces. This allows swapping
implementations (local filesystem → S3, in-memory → a real database)
without changing application code.

Integration points:
- ContentStorage → S3 / R2 bucket (image objects)
- MetadataStorage → users, sessions, chains, artists, inspirations
- QueueStorage → deferred work (failed asset reclaims)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, BinaryIO

from pydantic import BaseModel


# =============================================================================
# Objects
# =============================================================================


@dataclass
class StoredObject:
    """An object in the content bucket. `body` is None for head requests."""

    key: str
    size: int
    content_type: str
    etag: str
    metadata: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None


# =============================================================================
# Storage Interfaces
# =============================================================================


class ContentStorage(ABC):
    """
    Storage for binary content (images).

    AWS Implementation: S3 (or any S3-compatible bucket)
    Local Implementation: Filesystem
    """

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes | BinaryIO,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        """Store content under `key`, overwriting any existing object."""
        pass

    @abstractmethod
    async def get(self, key: str) -> StoredObject | None:
        """Retrieve an object with its body, or None if absent."""
        pass

    @abstractmethod
    async def head(self, key: str) -> StoredObject | None:
        """Retrieve object metadata without the body."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete content. Absent keys are not an error; returns whether something was removed."""
        pass

    @abstractmethod
    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        """List keys with optional prefix."""
        pass


class MetadataStorage(ABC):
    """
    Storage for structured records.

    Local Implementation: in-memory
    """

    @abstractmethod
    async def save(self, collection: str, id: str, data: dict[str, Any]) -> None:
        """Save a document to a collection."""
        pass

    @abstractmethod
    async def get(self, collection: str, id: str) -> dict[str, Any] | None:
        """Get a document by ID."""
        pass

    @abstractmethod
    async def delete(self, collection: str, id: str) -> bool:
        """Delete a document."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Query documents with optional equality filters."""
        pass

    @abstractmethod
    async def update(self, collection: str, id: str, updates: dict[str, Any]) -> bool:
        """Partial update of a document."""
        pass

    @abstractmethod
    async def increment(
        self,
        collection: str,
        id: str,
        field: str,
        delta: int,
        ceiling: int | None = None,
        floor: int | None = None,
    ) -> int | None:
        """
        Atomically add `delta` to a numeric field.

        The equivalent of `UPDATE t SET f = COALESCE(f, 0) + :delta
        WHERE id = :id AND COALESCE(f, 0) + :delta <= :ceiling`, evaluated
        inside the store so concurrent callers never work from a stale value.

        If the result would exceed `ceiling`, nothing changes and None is
        returned. If it would drop below `floor`, the field is set to `floor`.
        Returns the new value, or None when the document does not exist.
        """
        pass


class QueueStorage(ABC):
    """
    Message queue for deferred work.

    AWS Implementation: SQS
    Local Implementation: In-memory queue
    """

    @abstractmethod
    async def enqueue(self, queue_name: str, message: dict[str, Any]) -> str:
        """Add a message to queue, return message ID."""
        pass

    @abstractmethod
    async def dequeue(self, queue_name: str, wait_seconds: int = 0) -> dict[str, Any] | None:
        """Get next message from queue."""
        pass

    @abstractmethod
    async def ack(self, queue_name: str, message_id: str) -> None:
        """Acknowledge message processing complete."""
        pass


# =============================================================================
# Storage Provider (dependency injection container)
# =============================================================================


class StorageProvider(BaseModel):
    """
    Container for all storage backends.

    Initialize once at app startup with appropriate implementations.
    `content` is None when no bucket is configured.
    """

    model_config = {"arbitrary_types_allowed": True}

    content: ContentStorage | None
    metadata: MetadataStorage
    queue: QueueStorage


# =============================================================================
# Collection Names (for MetadataStorage)
# =============================================================================


class Collections:
    """Standard collection/table names."""

    USERS = "users"
    SESSIONS = "sessions"
    CHAINS = "chains"
    ARTISTS = "artists"
    INSPIRATIONS = "inspirations"


class Queues:
    """Standard queue names."""

    ASSET_RECLAIM = "asset_reclaim"
