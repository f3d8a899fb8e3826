"""Azure Blob Storage / ADLS Gen2 staging through adlfs."""

from __future__ import annotations

import fnmatch
import logging
from typing import Any, Dict, List, Optional

from migration.lib.env import get_config_value
from migration.lib.resilience import with_retry
from migration.lib.storage.base import FileInfo, StorageBackend, StorageResult
from migration.lib.storage.uri import parse_location

logger = logging.getLogger(__name__)

__all__ = ["BlobStorage"]

# (option, environment variable) pairs passed to adlfs when set
_CREDENTIAL_OPTIONS = (
    ("account_key", "AZURE_STORAGE_KEY"),
    ("connection_string", "AZURE_STORAGE_CONNECTION_STRING"),
    ("sas_token", "AZURE_STORAGE_SAS_TOKEN"),
)
_SERVICE_PRINCIPAL_OPTIONS = (
    ("client_id", "AZURE_CLIENT_ID"),
    ("client_secret", "AZURE_CLIENT_SECRET"),
    ("tenant_id", "AZURE_TENANT_ID"),
)

_TRANSIENT = (ConnectionError, TimeoutError)


class BlobStorage(StorageBackend):
    """The container PolyBase reads staged files from.

    The base path is the same ``wasbs://`` (or ``abfss://``) location the
    external data source is created with, so a staged file's
    ``get_full_path`` is exactly what the external table points at.

    Example:
        >>> storage = BlobStorage(
        ...     "wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net/",
        ...     account_key="${AZURE_STORAGE_KEY}",
        ... )
        >>> storage.exists("/FactOnlineSales/FactOnlineSales.txt")

    Credentials come from the options or, when absent, from
    AZURE_STORAGE_KEY, AZURE_STORAGE_CONNECTION_STRING,
    AZURE_STORAGE_SAS_TOKEN, or the AZURE_CLIENT_ID / AZURE_CLIENT_SECRET /
    AZURE_TENANT_ID service principal. ``anon: true`` connects anonymously.
    """

    def __init__(self, base_path: str, **options: Any) -> None:
        super().__init__(base_path, **options)
        self.location = parse_location(base_path)
        self._fs: Optional[Any] = None

    @property
    def scheme(self) -> str:
        return self.location.scheme

    def credentials(self) -> Dict[str, Any]:
        """Keyword arguments for ``adlfs.AzureBlobFileSystem``."""
        kwargs: Dict[str, Any] = {
            "account_name": get_config_value(self.options, "account_name", "AZURE_STORAGE_ACCOUNT")
            or self.location.account
        }
        for option, env_var in _CREDENTIAL_OPTIONS:
            value = get_config_value(self.options, option, env_var)
            if value:
                kwargs[option] = value.lstrip("?") if option == "sas_token" else value

        principal = {o: get_config_value(self.options, o, e) for o, e in _SERVICE_PRINCIPAL_OPTIONS}
        if all(principal.values()):
            kwargs.update(principal)
        if self.options.get("anon"):
            kwargs["anon"] = True
        return kwargs

    @property
    def fs(self) -> Any:
        if self._fs is None:
            import adlfs

            self._fs = adlfs.AzureBlobFileSystem(**self.credentials())
        return self._fs

    def _blob_path(self, path: str) -> str:
        """``container/prefix/path``, the form adlfs addresses blobs by."""
        parts = [self.location.container, self.location.path.strip("/"), path.strip("/")]
        return "/".join(p for p in parts if p)

    def get_full_path(self, path: str) -> str:
        return self.location.join(path)

    def exists(self, path: str) -> bool:
        blob_path = self._blob_path(path)
        try:
            return bool(self.fs.exists(blob_path))
        except Exception as e:
            logger.warning("Error checking existence of %s: %s", blob_path, e)
            return False

    @with_retry(max_attempts=3, backoff_seconds=1.0, retry_exceptions=_TRANSIENT)
    def list_files(self, path: str = "", pattern: Optional[str] = None) -> List[FileInfo]:
        try:
            entries = self.fs.ls(self._blob_path(path), detail=True)
        except FileNotFoundError:
            return []

        files = []
        for entry in entries:
            name = entry.get("name", "").rsplit("/", 1)[-1]
            if entry.get("type") != "file" or (pattern and not fnmatch.fnmatch(name, pattern)):
                continue
            files.append(FileInfo(name, entry.get("size", 0), entry.get("last_modified")))
        return sorted(files, key=lambda f: f.path)

    @with_retry(max_attempts=3, backoff_seconds=1.0, retry_exceptions=_TRANSIENT)
    def read_bytes(self, path: str) -> bytes:
        return bytes(self.fs.cat_file(self._blob_path(path)))

    def write_bytes(self, path: str, data: bytes) -> StorageResult:
        # A single block upload; the blob only appears once it is committed
        blob_path = self._blob_path(path)
        full_path = self.get_full_path(path)
        try:
            self.fs.pipe_file(blob_path, data)
        except Exception as e:
            logger.error("Failed to upload %s: %s", full_path, e)
            return StorageResult(success=False, path=full_path, error=str(e))
        return StorageResult(success=True, path=full_path, bytes_written=len(data))

    def delete(self, path: str) -> bool:
        try:
            self.fs.rm(self._blob_path(path))
        except FileNotFoundError:
            return False
        return True
