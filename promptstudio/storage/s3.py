"""
S3 content storage.

Works against AWS S3 and S3-compatible buckets (Cloudflare R2, MinIO)
through `aws_s3_endpoint_url`. boto3 is blocking, so every call runs in
a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, BinaryIO

import boto3
from botocore.exceptions import ClientError

from promptstudio.config import Settings
from promptstudio.storage.base import ContentStorage, StoredObject

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class S3ContentStorage(ContentStorage):
    """Store content in an S3 bucket under an optional key prefix."""

    def __init__(self, bucket: str, client: Any, prefix: str = ""):
        self.bucket = bucket
        self.prefix = prefix
        self._s3 = client

    @classmethod
    def from_settings(cls, settings: Settings) -> S3ContentStorage:
        kwargs: dict[str, Any] = {"region_name": settings.aws_region}
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            kwargs["aws_access_key_id"] = settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
        if settings.aws_s3_endpoint_url:
            kwargs["endpoint_url"] = settings.aws_s3_endpoint_url
        client = boto3.client("s3", **kwargs)
        return cls(settings.aws_s3_bucket, client, prefix=settings.aws_s3_prefix)

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}" if self.prefix else key

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        return error.response.get("Error", {}).get("Code") in _MISSING_CODES

    async def put(
        self,
        key: str,
        data: bytes | BinaryIO,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        full_key = self._full_key(key)
        extra = {"ContentType": content_type, "Metadata": dict(metadata or {})}

        if isinstance(data, (bytes, bytearray)):
            await asyncio.to_thread(
                self._s3.put_object,
                Bucket=self.bucket,
                Key=full_key,
                Body=bytes(data),
                **extra,
            )
        else:
            # Multipart streaming upload, never holds the whole file in memory
            await asyncio.to_thread(
                self._s3.upload_fileobj,
                data,
                self.bucket,
                full_key,
                ExtraArgs=extra,
            )

        obj = await self.head(key)
        if obj is None:
            raise RuntimeError(f"Object vanished right after upload: {full_key}")
        return obj

    async def head(self, key: str) -> StoredObject | None:
        try:
            head = await asyncio.to_thread(
                self._s3.head_object, Bucket=self.bucket, Key=self._full_key(key)
            )
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise
        return StoredObject(
            key=key,
            size=int(head.get("ContentLength", 0)),
            content_type=head.get("ContentType", "application/octet-stream"),
            etag=head.get("ETag", ""),
            metadata=head.get("Metadata", {}),
        )

    async def get(self, key: str) -> StoredObject | None:
        try:
            resp = await asyncio.to_thread(
                self._s3.get_object, Bucket=self.bucket, Key=self._full_key(key)
            )
        except ClientError as e:
            if self._is_missing(e):
                return None
            raise
        body = await asyncio.to_thread(resp["Body"].read)
        return StoredObject(
            key=key,
            size=int(resp.get("ContentLength", len(body))),
            content_type=resp.get("ContentType", "application/octet-stream"),
            etag=resp.get("ETag", ""),
            metadata=resp.get("Metadata", {}),
            body=body,
        )

    async def delete(self, key: str) -> bool:
        # S3 DeleteObject succeeds for missing keys as well
        await asyncio.to_thread(
            self._s3.delete_object, Bucket=self.bucket, Key=self._full_key(key)
        )
        return True

    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        paginator = self._s3.get_paginator("list_objects_v2")
        pages = await asyncio.to_thread(
            lambda: list(paginator.paginate(Bucket=self.bucket, Prefix=self._full_key(prefix)))
        )
        for page in pages:
            for item in page.get("Contents", []):
                yield item["Key"][len(self.prefix):]
