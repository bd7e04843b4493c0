"""
Storage abstractions.

Integration Points:
- ContentStorage → S3 / R2 (image objects)
- MetadataStorage → records (users, sessions, resources)
- QueueStorage → deferred reclaim retries
"""

from promptstudio.storage.base import (
    ContentStorage,
    MetadataStorage,
    QueueStorage,
    StorageProvider,
    StoredObject,
    Collections,
    Queues,
)
from promptstudio.storage.local import create_local_storage

__all__ = [
    "ContentStorage",
    "MetadataStorage",
    "QueueStorage",
    "StorageProvider",
    "StoredObject",
    "Collections",
    "Queues",
    "create_local_storage",
]
