# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Unit tests for S3 object storage and the storage uploader."""

import asyncio
import hashlib
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from edumanage.domains.build.uploader import SIGNED_URL_TTL_SECONDS, StorageUploader
from edumanage.infrastructure.storage import S3ObjectStorage, StorageError
from edumanage.infrastructure.storage.base import ObjectStorage, StoredObject


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://signed.example/builds/x.zip?sig=1"
    return client


@pytest.fixture
def s3_storage(s3_client) -> S3ObjectStorage:
    return S3ObjectStorage("edumanage-builds", region="eu-west-1", client=s3_client)


@pytest.fixture
def archive(tmp_path: Path) -> Path:
    path = tmp_path / "BLD-1-ABCDEF.zip"
    path.write_bytes(b"PK\x03\x04 fake archive")
    return path


class TestS3ObjectStorage:
    """Tests for the boto3-backed storage."""

    @pytest.mark.asyncio
    async def test_upload_sets_content_type_and_metadata(self, s3_storage, s3_client, archive) -> None:
        stored = await s3_storage.upload_file(
            archive, "builds/BLD-1/BLD-1.zip", "application/zip", metadata={"sha256": "abc"}
        )

        args, kwargs = s3_client.upload_file.call_args
        assert args[1:] == ("edumanage-builds", "builds/BLD-1/BLD-1.zip")
        extra = kwargs["ExtraArgs"]
        assert extra["ContentType"] == "application/zip"
        assert extra["Metadata"]["sha256"] == "abc"
        assert extra["Metadata"]["checksum"] == hashlib.md5(archive.read_bytes()).hexdigest()
        assert "uploadedAt" in extra["Metadata"]
        assert stored.size == archive.stat().st_size
        assert stored.url == "https://edumanage-builds.s3.eu-west-1.amazonaws.com/builds/BLD-1/BLD-1.zip"

    @pytest.mark.asyncio
    async def test_public_base_url(self, s3_client) -> None:
        storage = S3ObjectStorage("b", client=s3_client, public_base_url="https://cdn.example")

        assert storage.object_url("builds/a.zip") == "https://cdn.example/builds/a.zip"

    @pytest.mark.asyncio
    async def test_upload_failure_becomes_storage_error(self, s3_storage, s3_client, archive) -> None:
        s3_client.upload_file.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"
        )

        with pytest.raises(StorageError) as exc_info:
            await s3_storage.upload_file(archive, "builds/BLD-1/BLD-1.zip")

        assert exc_info.value.key == "builds/BLD-1/BLD-1.zip"

    @pytest.mark.asyncio
    async def test_signed_url_is_attachment(self, s3_storage, s3_client) -> None:
        url = await s3_storage.signed_url("builds/BLD-1/BLD-1.zip", 86400)

        assert url.startswith("https://signed.example/")
        kwargs = s3_client.generate_presigned_url.call_args.kwargs
        assert kwargs["ExpiresIn"] == 86400
        assert kwargs["Params"]["ResponseContentDisposition"] == 'attachment; filename="BLD-1.zip"'

    @pytest.mark.asyncio
    async def test_exists_false_on_404(self, s3_storage, s3_client) -> None:
        s3_client.head_object.side_effect = ClientError(
            {"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject"
        )

        assert await s3_storage.exists("builds/missing.zip") is False


class TestStorageUploader:
    """Tests for publishing build artifacts."""

    @pytest.mark.asyncio
    async def test_publish_uploads_archive_and_seed(self, storage, archive, tmp_path) -> None:
        seed = tmp_path / "initial-data.json"
        seed.write_text("{}")
        uploader = StorageUploader(storage)

        result = await uploader.publish("BLD-1", archive, seed)

        assert set(storage.objects) == {"builds/BLD-1/BLD-1.zip", "builds/BLD-1/database.json"}
        assert result.archive.checksum == hashlib.sha256(archive.read_bytes()).hexdigest()
        assert storage.metadata["builds/BLD-1/BLD-1.zip"]["sha256"] == result.archive.checksum
        assert result.database.key == "builds/BLD-1/database.json"
        assert storage.signed == [("builds/BLD-1/BLD-1.zip", SIGNED_URL_TTL_SECONDS)]
        assert result.download_url.startswith("https://bucket.example/builds/BLD-1/BLD-1.zip")

    @pytest.mark.asyncio
    async def test_publish_without_seed(self, storage, archive) -> None:
        result = await StorageUploader(storage).publish("BLD-1", archive, None)

        assert result.database is None
        assert list(storage.objects) == ["builds/BLD-1/BLD-1.zip"]

    @pytest.mark.asyncio
    async def test_publish_timeout(self, archive) -> None:
        class SlowStorage(ObjectStorage):
            async def upload_file(self, path, key, content_type=None, metadata=None):
                await asyncio.sleep(5)
                return StoredObject(key=key, url=key, size=0)

            async def signed_url(self, key, expires_in):
                return key

            async def delete(self, key):
                return None

            async def exists(self, key):
                return False

        uploader = StorageUploader(SlowStorage(), timeout=0.05)

        with pytest.raises(TimeoutError):
            await uploader.publish("BLD-1", archive)

    @pytest.mark.asyncio
    async def test_refresh_link_signs_again(self, storage) -> None:
        uploader = StorageUploader(storage, signed_url_ttl=3600)

        first = await uploader.refresh_link("BLD-1")
        second = await uploader.refresh_link("BLD-1")

        assert first != second
        assert storage.signed[-1] == ("builds/BLD-1/BLD-1.zip", 3600)

    @pytest.mark.asyncio
    async def test_remove_deletes_both_objects(self, storage, archive) -> None:
        uploader = StorageUploader(storage)
        await uploader.publish("BLD-1", archive)

        await uploader.remove("BLD-1")

        assert storage.objects == {}
