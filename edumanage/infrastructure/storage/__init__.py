# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Object storage for build artifacts.

Example:
    >>> from edumanage.infrastructure.storage import S3ObjectStorage
    >>> storage = S3ObjectStorage.from_settings(settings.storage)
    >>> url = await storage.upload_file(path, "builds/BLD-1/BLD-1.zip", "application/zip")
"""

from edumanage.infrastructure.storage.base import ObjectStorage, StorageError, StoredObject
from edumanage.infrastructure.storage.s3 import S3ObjectStorage

__all__ = [
    "ObjectStorage",
    "StorageError",
    "StoredObject",
    "S3ObjectStorage",
]
