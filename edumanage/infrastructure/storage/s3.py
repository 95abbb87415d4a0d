# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""S3 object storage for build artifacts.

boto3 is synchronous, so every call is pushed to a worker thread with
asyncio.to_thread to keep build workers responsive.

Dependencies: boto3
"""

import asyncio
import hashlib
import logging
from pathlib import Path, PurePosixPath
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from edumanage.core.config.settings import StorageSettings
from edumanage.infrastructure.storage.base import (
    ObjectStorage,
    StorageError,
    StoredObject,
    content_type_for,
)
from edumanage.utils.datetime import format_iso, utc_now

logger = logging.getLogger(__name__)


def _md5_file(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class S3ObjectStorage(ObjectStorage):
    """S3 (or S3-compatible) bucket holding build artifacts."""

    def __init__(
        self,
        bucket: str,
        region: str = "eu-west-1",
        client: Any | None = None,
        public_base_url: str | None = None,
    ) -> None:
        """Initialize S3 storage.

        Args:
            bucket: Bucket name.
            region: Bucket region.
            client: Preconfigured boto3 S3 client (created when omitted).
            public_base_url: Base URL for unsigned object URLs.
        """
        self._bucket = bucket
        self._region = region
        self._client = client or boto3.client("s3", region_name=region)
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None

    @classmethod
    def from_settings(cls, settings: StorageSettings) -> "S3ObjectStorage":
        """Create storage from StorageSettings."""
        kwargs: dict[str, Any] = {"region_name": settings.region}
        if settings.endpoint_url:
            kwargs["endpoint_url"] = settings.endpoint_url
        if settings.access_key_id and settings.secret_access_key:
            kwargs["aws_access_key_id"] = settings.access_key_id.get_secret_value()
            kwargs["aws_secret_access_key"] = settings.secret_access_key.get_secret_value()

        return cls(
            bucket=settings.bucket,
            region=settings.region,
            client=boto3.client("s3", **kwargs),
            public_base_url=settings.public_base_url,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def object_url(self, key: str) -> str:
        """Unsigned URL of an object."""
        if self._public_base_url:
            return f"{self._public_base_url}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

    async def upload_file(
        self,
        path: Path,
        key: str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        """Upload a local file with an md5 checksum and upload time as metadata."""
        path = Path(path)

        def _upload() -> int:
            object_metadata = {
                "uploadedAt": format_iso(utc_now()) or "",
                "checksum": _md5_file(path),
                **(metadata or {}),
            }
            self._client.upload_file(
                str(path),
                self._bucket,
                key,
                ExtraArgs={
                    "ContentType": content_type or content_type_for(path),
                    "Metadata": object_metadata,
                },
            )
            return path.stat().st_size

        try:
            size = await asyncio.to_thread(_upload)
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to upload file to S3: %s: %s", key, e)
            raise StorageError(f"Failed to upload {key}: {e}", key=key) from e

        logger.info("File uploaded to S3: %s (%d bytes)", key, size)
        return StoredObject(key=key, url=self.object_url(key), size=size)

    async def signed_url(self, key: str, expires_in: int) -> str:
        """Signed GET URL with an attachment Content-Disposition."""
        filename = PurePosixPath(key).name

        def _sign() -> str:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={
                    "Bucket": self._bucket,
                    "Key": key,
                    "ResponseContentDisposition": f'attachment; filename="{filename}"',
                },
                ExpiresIn=expires_in,
            )

        try:
            return await asyncio.to_thread(_sign)
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to generate signed URL for %s: %s", key, e)
            raise StorageError(f"Failed to sign {key}: {e}", key=key) from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._client.delete_object, Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to delete file from S3: %s: %s", key, e)
            raise StorageError(f"Failed to delete {key}: {e}", key=key) from e
        logger.info("File deleted from S3: %s", key)

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self._client.head_object, Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to check {key}: {e}", key=key) from e
