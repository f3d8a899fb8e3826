"""Abstract base class for warehouse backends.

A backend owns the catalog of one dedicated SQL pool: the master key,
credentials, external data sources, file formats, external tables and
distributed tables. Creating an object that already exists raises
AlreadyExistsError (AlreadyInitializedError for the master key); callers
decide whether that is a problem.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from migration.lib.errors import AlreadyExistsError, AlreadyInitializedError, MigrationError
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.polybase import (
    ExternalDataSource,
    ExternalTable,
    ScopedCredential,
    TargetTable,
)
from migration.lib.verify import NodeUsage

logger = logging.getLogger(__name__)

__all__ = ["LoadStats", "ObjectKind", "WarehouseBackend"]


class ObjectKind(str, Enum):
    """Kinds of catalog objects a load creates."""

    MASTER_KEY = "MASTER KEY"
    CREDENTIAL = "DATABASE SCOPED CREDENTIAL"
    DATA_SOURCE = "EXTERNAL DATA SOURCE"
    FILE_FORMAT = "EXTERNAL FILE FORMAT"
    EXTERNAL_TABLE = "EXTERNAL TABLE"
    TABLE = "TABLE"


@dataclass
class LoadStats:
    """Outcome of a CTAS load."""

    rows_loaded: int
    rows_rejected: Optional[int] = 0  # None when the engine does not report it
    reject_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rows_loaded": self.rows_loaded,
            "rows_rejected": self.rows_rejected,
            "reject_reasons": self.reject_reasons[:10],
        }


class WarehouseBackend(ABC):
    """Abstract base class for warehouse backends.

    Subclasses implement the existence checks and the raw ``_create_*``
    operations; the public ``create_*`` methods add the already-exists
    checks under a lock so concurrent migrations sharing a backend do not
    race on shared catalog objects.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

    @property
    @abstractmethod
    def name(self) -> str:
        """Short backend name for logs."""

    @property
    @abstractmethod
    def node_count(self) -> int:
        """Number of compute nodes (distributions for the local engine)."""

    @abstractmethod
    def exists(self, kind: ObjectKind, name: Optional[str] = None) -> bool:
        """Check whether a catalog object exists."""

    @abstractmethod
    def _create_master_key(self, password: Optional[str]) -> None: ...

    @abstractmethod
    def _create_credential(self, credential: ScopedCredential) -> None: ...

    @abstractmethod
    def _create_data_source(self, data_source: ExternalDataSource) -> None: ...

    @abstractmethod
    def _create_file_format(self, file_format: DelimitedTextFormat) -> None: ...

    @abstractmethod
    def _create_external_table(self, table: ExternalTable) -> None: ...

    @abstractmethod
    def _create_table_as_select(self, target: TargetTable, source: ExternalTable) -> LoadStats: ...

    @abstractmethod
    def rebuild_indexes(self, target: TargetTable) -> None:
        """ALTER INDEX ALL ON target REBUILD."""

    @abstractmethod
    def drop_table(self, name: str) -> None: ...

    @abstractmethod
    def drop_external_table(self, name: str) -> None: ...

    @abstractmethod
    def row_count(self, name: str) -> int:
        """SELECT COUNT_BIG(*) from a table."""

    @abstractmethod
    def space_used(self, name: str) -> List[NodeUsage]:
        """Per-node row counts and space usage of a distributed table."""

    def close(self) -> None:
        """Release resources held by the backend."""

    def create_master_key(self, password: Optional[str] = None) -> None:
        """Create the database master key.

        Raises:
            AlreadyInitializedError: If the master key already exists
        """
        with self._lock:
            if self.exists(ObjectKind.MASTER_KEY):
                raise AlreadyInitializedError()
            self._create_master_key(password)
        logger.info("%s: created database master key", self.name)

    def create_credential(self, credential: ScopedCredential) -> None:
        with self._lock:
            self._require_absent(ObjectKind.CREDENTIAL, credential.name)
            self._create_credential(credential)
        logger.info("%s: created credential %s", self.name, credential.name)

    def create_data_source(self, data_source: ExternalDataSource) -> None:
        with self._lock:
            self._require_absent(ObjectKind.DATA_SOURCE, data_source.name)
            self._create_data_source(data_source)
        logger.info("%s: created external data source %s -> %s", self.name, data_source.name, data_source.location)

    def create_file_format(self, file_format: DelimitedTextFormat) -> None:
        with self._lock:
            self._require_absent(ObjectKind.FILE_FORMAT, file_format.name)
            self._create_file_format(file_format)
        logger.info("%s: created external file format %s", self.name, file_format.name)

    def create_external_table(self, table: ExternalTable) -> None:
        with self._lock:
            self._require_absent(ObjectKind.EXTERNAL_TABLE, table.qualified_name)
            self._create_external_table(table)
        logger.info("%s: created external table %s over %s", self.name, table.qualified_name, table.location)

    def create_table_as_select(
        self,
        target: TargetTable,
        source: ExternalTable,
        *,
        replace: bool = False,
    ) -> LoadStats:
        """Load the target from an external table with CTAS.

        Raises:
            AlreadyExistsError: If the target exists and replace is False
            RejectThresholdExceededError: If the reject policy is exceeded
        """
        with self._lock:
            # the old target survives a reload whose source is missing
            if not self.exists(ObjectKind.EXTERNAL_TABLE, source.qualified_name):
                raise MigrationError(
                    f"External table {source.qualified_name} does not exist",
                    table=target.qualified_name,
                )
            if self.exists(ObjectKind.TABLE, target.qualified_name):
                if not replace:
                    raise AlreadyExistsError(
                        f"Target table {target.qualified_name} already exists",
                        object_type=ObjectKind.TABLE.value,
                        name=target.qualified_name,
                        suggestion="Drop the table or set replace_target to reload it.",
                    )
                logger.info("%s: dropping existing table %s", self.name, target.qualified_name)
                self.drop_table(target.qualified_name)

        stats = self._create_table_as_select(target, source)
        logger.info(
            "%s: loaded %s with %d rows (%s rejected)",
            self.name,
            target.qualified_name,
            stats.rows_loaded,
            "unknown" if stats.rows_rejected is None else stats.rows_rejected,
        )
        return stats

    def _require_absent(self, kind: ObjectKind, name: str) -> None:
        if self.exists(kind, name):
            raise AlreadyExistsError(
                f"{kind.value} {name} already exists",
                object_type=kind.value,
                name=name,
            )

    def __enter__(self) -> "WarehouseBackend":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(nodes={self.node_count})"
