"""Staging on the local filesystem."""

from __future__ import annotations

import fnmatch
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from migration.lib.storage.base import FileInfo, StorageBackend, StorageResult

logger = logging.getLogger(__name__)

__all__ = ["LocalStorage"]


class LocalStorage(StorageBackend):
    """A folder standing in for a blob container.

    Used for offline runs and tests. Writes go to a temporary file next to
    the target and are renamed into place.

    Example:
        >>> storage = LocalStorage("./staging/")
        >>> storage.write_text("/DimProduct/DimProduct.txt", "1|Bike\\n")
        >>> storage.exists("/DimProduct/DimProduct.txt")
        True
    """

    @property
    def scheme(self) -> str:
        return "local"

    def _path(self, path: str) -> Path:
        return Path(self.get_full_path(path)).resolve()

    def exists(self, path: str) -> bool:
        return self._path(path).exists()

    def list_files(self, path: str = "", pattern: Optional[str] = None) -> List[FileInfo]:
        folder = self._path(path)
        if not folder.is_dir():
            return []
        files = []
        for entry in sorted(folder.iterdir()):
            if not entry.is_file() or (pattern and not fnmatch.fnmatch(entry.name, pattern)):
                continue
            stat = entry.stat()
            files.append(FileInfo(entry.name, stat.st_size, datetime.fromtimestamp(stat.st_mtime)))
        return files

    def read_bytes(self, path: str) -> bytes:
        return self._path(path).read_bytes()

    def write_bytes(self, path: str, data: bytes) -> StorageResult:
        target = self._path(path)
        partial = target.with_name(f".{target.name}.partial")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            partial.write_bytes(data)
            os.replace(partial, target)
        except OSError as e:
            logger.error("Failed to write %s: %s", target, e)
            partial.unlink(missing_ok=True)
            return StorageResult(success=False, path=str(target), error=str(e))
        return StorageResult(success=True, path=str(target), bytes_written=len(data))

    def delete(self, path: str) -> bool:
        target = self._path(path)
        if not target.is_file():
            return False
        try:
            target.unlink()
        except OSError as e:
            logger.error("Failed to delete %s: %s", target, e)
            return False
        return True
