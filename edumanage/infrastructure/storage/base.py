# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Object storage interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


class StorageError(Exception):
    """Object storage operation failed.

    Attributes:
        message: Error description.
        key: Object key involved, if any.
    """

    def __init__(self, message: str, key: str | None = None):
        self.message = message
        self.key = key
        super().__init__(message)


@dataclass(frozen=True)
class StoredObject:
    """Result of an upload.

    Attributes:
        key: Object key.
        url: Unsigned object URL.
        size: Uploaded size in bytes.
    """

    key: str
    url: str
    size: int


CONTENT_TYPES = {
    ".zip": "application/zip",
    ".json": "application/json",
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def content_type_for(path: Path | str) -> str:
    """Guess a content type from a file extension."""
    return CONTENT_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


class ObjectStorage(ABC):
    """Blob store holding build artifacts."""

    @abstractmethod
    async def upload_file(
        self,
        path: Path,
        key: str,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        """Upload a local file under key.

        Raises:
            StorageError: If the upload fails.
        """

    @abstractmethod
    async def signed_url(self, key: str, expires_in: int) -> str:
        """Time-limited download URL that suggests a file name to browsers.

        Raises:
            StorageError: If the URL cannot be generated.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete an object. Missing objects are not an error."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Whether an object exists."""
