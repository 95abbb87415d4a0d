# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Upload of build artifacts and signing of download links.

Key layout in the bucket:
    builds/<build_id>/<build_id>.zip      the customer package
    builds/<build_id>/database.json       the seed document
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from edumanage.domains.build.entity import ArtifactFile
from edumanage.infrastructure.storage.base import ObjectStorage

logger = logging.getLogger(__name__)

SIGNED_URL_TTL_SECONDS = 24 * 60 * 60


def _sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class UploadResult:
    """Artifacts stored for a build and the signed link to the package."""

    download_url: str
    archive: ArtifactFile
    database: ArtifactFile | None = None


class StorageUploader:
    """Publishes build artifacts to object storage."""

    def __init__(
        self,
        storage: ObjectStorage,
        signed_url_ttl: int = SIGNED_URL_TTL_SECONDS,
        timeout: float | None = None,
    ) -> None:
        """Initialize the uploader.

        Args:
            storage: Object storage backend.
            signed_url_ttl: Lifetime of signed download links in seconds.
            timeout: Upper bound for one publish call, None for no limit.
        """
        self._storage = storage
        self._signed_url_ttl = signed_url_ttl
        self._timeout = timeout

    @staticmethod
    def archive_key(build_id: str) -> str:
        return f"builds/{build_id}/{build_id}.zip"

    @staticmethod
    def database_key(build_id: str) -> str:
        return f"builds/{build_id}/database.json"

    async def _upload(self, path: Path, key: str, content_type: str) -> ArtifactFile:
        checksum = await asyncio.to_thread(_sha256_file, path)
        stored = await self._storage.upload_file(
            path, key, content_type, metadata={"sha256": checksum}
        )
        return ArtifactFile(key=stored.key, url=stored.url, size=stored.size, checksum=checksum)

    async def publish(
        self,
        build_id: str,
        archive_path: Path,
        database_path: Path | None = None,
    ) -> UploadResult:
        """Upload the package (and seed document) and sign a download link.

        Args:
            build_id: Build the artifacts belong to.
            archive_path: Local package archive.
            database_path: Local seed document, skipped when None or missing.

        Returns:
            UploadResult with the signed link and stored artifacts.

        Raises:
            StorageError: If storage rejects an operation.
            TimeoutError: If publishing exceeds the configured timeout.
        """

        async def _publish() -> UploadResult:
            archive = await self._upload(archive_path, self.archive_key(build_id), "application/zip")
            database = None
            if database_path is not None and database_path.is_file():
                database = await self._upload(
                    database_path, self.database_key(build_id), "application/json"
                )
            download_url = await self._storage.signed_url(archive.key, self._signed_url_ttl)
            return UploadResult(download_url=download_url, archive=archive, database=database)

        if self._timeout is None:
            result = await _publish()
        else:
            try:
                result = await asyncio.wait_for(_publish(), timeout=self._timeout)
            except asyncio.TimeoutError as e:
                raise TimeoutError(f"Upload did not finish within {self._timeout}s") from e

        logger.info("Build %s uploaded (%d bytes)", build_id, result.archive.size)
        return result

    async def refresh_link(self, build_id: str, key: str | None = None) -> str:
        """Sign a fresh download link for an already uploaded package."""
        return await self._storage.signed_url(key or self.archive_key(build_id), self._signed_url_ttl)

    async def remove(self, build_id: str) -> None:
        """Delete a build's artifacts from storage."""
        await self._storage.delete(self.archive_key(build_id))
        await self._storage.delete(self.database_key(build_id))
