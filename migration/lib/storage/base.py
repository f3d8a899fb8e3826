"""Storage interface for staged files.

The export stage writes staged files and checksum sidecars through a
:class:`StorageBackend`; the in-process warehouse reads them back through
the same interface, the way PolyBase reads them from the data source.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

__all__ = ["StorageBackend", "StorageResult", "FileInfo"]


@dataclass
class FileInfo:
    """A file directly under a listed folder (``path`` is the bare name)."""

    path: str
    size: int
    modified: Optional[datetime] = None


@dataclass
class StorageResult:
    """Outcome of a write. Backends report failures here instead of raising."""

    success: bool
    path: str
    bytes_written: int = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "path": self.path,
            "bytes_written": self.bytes_written,
            "error": self.error,
            "metadata": self.metadata,
        }


class StorageBackend(ABC):
    """Files under one root, addressed by relative paths.

    Paths may start with a slash: ``/DimProduct/DimProduct.txt`` is
    relative to ``base_path`` in the same way an external table LOCATION
    is relative to its external data source.

    Args:
        base_path: Root folder or container URI
        **options: Backend-specific options (credentials for blob storage)
    """

    def __init__(self, base_path: str, **options: Any) -> None:
        self.base_path = base_path
        self.options = options

    @property
    @abstractmethod
    def scheme(self) -> str:
        """URI scheme, e.g. ``local`` or ``wasbs``."""

    @abstractmethod
    def exists(self, path: str) -> bool: ...

    @abstractmethod
    def list_files(self, path: str = "", pattern: Optional[str] = None) -> List[FileInfo]:
        """Files directly under ``path``, sorted by name, optionally glob-filtered."""

    @abstractmethod
    def read_bytes(self, path: str) -> bytes: ...

    @abstractmethod
    def write_bytes(self, path: str, data: bytes) -> StorageResult:
        """Write ``data`` as the whole content of ``path``.

        Readers see either the previous file or the complete new one.
        """

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Delete a file; False if there was nothing to delete."""

    def read_text(self, path: str, encoding: str = "utf-8") -> str:
        return self.read_bytes(path).decode(encoding)

    def write_text(self, path: str, data: str, encoding: str = "utf-8") -> StorageResult:
        return self.write_bytes(path, data.encode(encoding))

    def get_full_path(self, path: str) -> str:
        """Absolute location of ``path``, as recorded on a StagedFile."""
        if not path:
            return self.base_path
        return f"{self.base_path.rstrip('/')}/{path.lstrip('/')}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.base_path!r})"
