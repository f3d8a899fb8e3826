"""Storage backend abstraction for staged files.

Usage:
    from migration.lib.storage import get_storage

    # Local filesystem (local runs and tests)
    storage = get_storage("./staging/")

    # Azure Blob Storage
    storage = get_storage("wasbs://container@account.blob.core.windows.net/")
"""

from typing import Any

from migration.lib.storage.adls import BlobStorage
from migration.lib.storage.base import FileInfo, StorageBackend, StorageResult
from migration.lib.storage.local import LocalStorage
from migration.lib.storage.uri import StorageLocation, is_cloud_location, parse_location

__all__ = [
    "BlobStorage",
    "FileInfo",
    "LocalStorage",
    "StorageBackend",
    "StorageLocation",
    "StorageResult",
    "get_storage",
    "is_cloud_location",
    "parse_location",
]


def get_storage(path: str, **options: Any) -> StorageBackend:
    """Get the appropriate storage backend for a path.

    Blob URIs (wasbs://, abfss://, ...) get a BlobStorage, anything else is
    treated as a local directory.
    """
    if is_cloud_location(path):
        return BlobStorage(path, **options)
    return LocalStorage(path, **options)
