"""
Service container.

Everything a request handler needs, wired once at startup from Settings.
Tests build their own with build_services(settings, storage, clock=...).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from promptstudio.assets.lifecycle import AssetLifecycle
from promptstudio.assets.quota import QuotaLedger, QuotaPolicy
from promptstudio.assets.store import AssetStore
from promptstudio.auth.credentials import CredentialStore
from promptstudio.auth.sessions import SessionManager
from promptstudio.config import Settings
from promptstudio.core.utils import utc_now
from promptstudio.services.resources import (
    ArtistService,
    ChainService,
    InspirationService,
    ReferenceIndex,
)
from promptstudio.storage.base import ContentStorage, StorageProvider
from promptstudio.storage.local import LocalContentStorage, create_local_storage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: StorageProvider
    credentials: CredentialStore
    sessions: SessionManager
    ledger: QuotaLedger
    assets: AssetStore
    lifecycle: AssetLifecycle
    chains: ChainService
    artists: ArtistService
    inspirations: InspirationService

    async def bootstrap(self) -> None:
        """First-run accounts and session housekeeping."""
        s = self.settings
        await self.credentials.bootstrap(
            s.admin_username, s.admin_password, s.guest_username, s.guest_passcode
        )
        await self.sessions.purge_expired()


def build_content_storage(settings: Settings) -> ContentStorage | None:
    """The bucket named by settings, or None when none is configured."""
    backend = settings.storage_backend.lower().strip()
    if settings.use_s3:
        if not settings.aws_s3_bucket:
            logger.warning("STORAGE_BACKEND=s3 but AWS_S3_BUCKET is empty; assets disabled")
            return None
        from promptstudio.storage.s3 import S3ContentStorage
        return S3ContentStorage.from_settings(settings)
    if backend == "local":
        return LocalContentStorage(settings.content_dir)
    if backend:
        logger.warning("Unknown STORAGE_BACKEND %r; assets disabled", backend)
    return None


def build_storage(settings: Settings) -> StorageProvider:
    """Bucket plus the metadata/queue backend named by DATABASE_URL."""
    content = build_content_storage(settings)
    if settings.database_url:
        from promptstudio.storage.sql import create_sql_storage
        return create_sql_storage(settings.database_url, content)
    logger.warning("DATABASE_URL is empty; users, sessions and quota usage are not persisted")
    return create_local_storage(content=content, with_content=content is not None)


def build_services(
    settings: Settings,
    storage: StorageProvider | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    if storage is None:
        storage = build_storage(settings)

    credentials = CredentialStore(storage.metadata)
    sessions = SessionManager(
        storage.metadata,
        credentials,
        ttl=timedelta(hours=settings.session_ttl_hours),
        guest_ttl=timedelta(hours=settings.guest_session_ttl_hours),
        clock=clock,
    )
    ledger = QuotaLedger(
        storage.metadata,
        ceiling=settings.storage_quota_bytes,
        policy=QuotaPolicy(settings.quota_policy),
    )
    assets = AssetStore(storage.content, clock=clock)
    lifecycle = AssetLifecycle(
        assets,
        ledger,
        queue=storage.queue,
        is_referenced=ReferenceIndex(storage.metadata),
    )

    logger.info(
        "Services ready (metadata: %s, bucket: %s, quota: %d bytes, policy: %s)",
        type(storage.metadata).__name__,
        type(storage.content).__name__ if storage.content else "none",
        ledger.ceiling,
        ledger.policy.value,
    )
    return Services(
        settings=settings,
        storage=storage,
        credentials=credentials,
        sessions=sessions,
        ledger=ledger,
        assets=assets,
        lifecycle=lifecycle,
        chains=ChainService(storage.metadata, lifecycle),
        artists=ArtistService(storage.metadata, lifecycle),
        inspirations=InspirationService(storage.metadata, lifecycle),
    )
