"""In-process warehouse engine.

Reproduces what a dedicated SQL pool does with a PolyBase load closely
enough to run the whole workflow on one machine: it reads the staged
files through the external data source, parses them with the external
file format, applies the reject policy, and spreads the loaded rows over
``node_count`` nodes by the table's distribution.

Used by ``python -m migration run --local`` and by the tests.
"""

from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pandas as pd

from migration.lib.errors import MigrationError, RejectThresholdExceededError
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.polybase import (
    ExternalColumn,
    ExternalDataSource,
    ExternalTable,
    ScopedCredential,
    TargetTable,
    split_name,
)
from migration.lib.storage import StorageBackend, get_storage
from migration.lib.verify import NodeUsage
from migration.lib.warehouse.base import LoadStats, ObjectKind, WarehouseBackend

logger = logging.getLogger(__name__)

__all__ = ["LocalWarehouse", "parse_delimited_line"]

DEFAULT_NODE_COUNT = 4
_PAGE_KB = 8


def parse_delimited_line(
    line: str,
    terminator: str,
    delimiter: str = "",
) -> List[Tuple[str, bool]]:
    """Split one record into ``(text, quoted)`` fields.

    A field that starts with the string delimiter runs to the next
    delimiter followed by the terminator or the end of the line.
    """
    if not delimiter:
        return [(text, False) for text in line.split(terminator)]

    fields: List[Tuple[str, bool]] = []
    pos = 0
    length = len(line)
    while True:
        if line.startswith(delimiter, pos):
            start = pos + 1
            end = start
            while True:
                end = line.find(delimiter, end)
                if end == -1:
                    raise ValueError("unterminated string delimiter")
                after = end + 1
                if after == length or line.startswith(terminator, after):
                    break
                end += 1
            fields.append((line[start:end], True))
            pos = end + 1
        else:
            end = line.find(terminator, pos)
            if end == -1:
                end = length
            fields.append((line[pos:end], False))
            pos = end
        if pos >= length:
            return fields
        pos += len(terminator)
        if pos == length:
            fields.append(("", False))
            return fields


def _pandas_dtype(column: ExternalColumn) -> Optional[str]:
    sql_type = column.sql_type
    if sql_type.is_integer:
        return "Int64"
    if sql_type.name == "BIT":
        return "boolean"
    if sql_type.name in {"FLOAT", "REAL"}:
        return "float64"
    return None


def _hash_node(value: Any, node_count: int) -> int:
    if value is None or (isinstance(value, float) and math.isnan(value)) or value is pd.NA:
        return 0
    digest = hashlib.md5(str(value).encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % node_count


@dataclass
class _LocalTable:
    definition: TargetTable
    columns: List[str]
    fragments: Dict[int, List[pd.DataFrame]] = field(default_factory=dict)
    rebuilt: bool = False

    def node_frame(self, node: int) -> pd.DataFrame:
        frames = self.fragments.get(node, [])
        if not frames:
            return pd.DataFrame(columns=self.columns)
        if len(frames) == 1:
            return frames[0]
        return pd.concat(frames, ignore_index=True)


class LocalWarehouse(WarehouseBackend):
    """A dedicated SQL pool simulated in memory.

    Example:
        >>> warehouse = LocalWarehouse(node_count=4)
        >>> warehouse.create_master_key()
        >>> warehouse.create_credential(ScopedCredential("AzureStorageCredential", secret="..."))

    Args:
        node_count: Number of nodes rows are distributed over
        storage_options: Extra options for the storage backend that reads
            staged files (merged with the credential secret)
    """

    def __init__(
        self,
        node_count: int = DEFAULT_NODE_COUNT,
        storage_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__()
        if node_count < 1:
            raise ValueError("node_count must be at least 1")
        self._node_count = node_count
        self.storage_options = storage_options or {}

        self.master_key = False
        self.credentials: Dict[str, ScopedCredential] = {}
        self.data_sources: Dict[str, ExternalDataSource] = {}
        self.file_formats: Dict[str, DelimitedTextFormat] = {}
        self.external_tables: Dict[str, ExternalTable] = {}
        self.tables: Dict[str, _LocalTable] = {}
        self.last_rejects: List[str] = []

    @property
    def name(self) -> str:
        return "local"

    @property
    def node_count(self) -> int:
        return self._node_count

    @staticmethod
    def _key(name: str) -> str:
        schema, table = split_name(name)
        return f"{schema or 'dbo'}.{table}".lower()

    def exists(self, kind: ObjectKind, name: Optional[str] = None) -> bool:
        with self._lock:
            if kind == ObjectKind.MASTER_KEY:
                return self.master_key
            if kind == ObjectKind.CREDENTIAL:
                return name in self.credentials
            if kind == ObjectKind.DATA_SOURCE:
                return name in self.data_sources
            if kind == ObjectKind.FILE_FORMAT:
                return name in self.file_formats
            if kind == ObjectKind.EXTERNAL_TABLE:
                return self._key(name or "") in self.external_tables
            return self._key(name or "") in self.tables

    # -- catalog -------------------------------------------------------

    def _create_master_key(self, password: Optional[str]) -> None:
        self.master_key = True

    def _create_credential(self, credential: ScopedCredential) -> None:
        if not self.master_key:
            raise MigrationError(
                "Cannot create a database scoped credential without a master key",
                suggestion="Create the master key first.",
            )
        self.credentials[credential.name] = credential

    def _create_data_source(self, data_source: ExternalDataSource) -> None:
        if data_source.credential and data_source.credential not in self.credentials:
            raise MigrationError(
                f"Credential {data_source.credential} does not exist",
                details={"data_source": data_source.name},
            )
        self.data_sources[data_source.name] = data_source

    def _create_file_format(self, file_format: DelimitedTextFormat) -> None:
        self.file_formats[file_format.name] = file_format

    def _create_external_table(self, table: ExternalTable) -> None:
        if table.data_source not in self.data_sources:
            raise MigrationError(
                f"External data source {table.data_source} does not exist",
                table=table.qualified_name,
            )
        if table.file_format not in self.file_formats:
            raise MigrationError(
                f"External file format {table.file_format} does not exist",
                table=table.qualified_name,
            )
        self.external_tables[self._key(table.qualified_name)] = table

    def drop_external_table(self, name: str) -> None:
        with self._lock:
            if self.external_tables.pop(self._key(name), None) is None:
                raise MigrationError(f"External table {name} does not exist")

    def drop_table(self, name: str) -> None:
        with self._lock:
            if self.tables.pop(self._key(name), None) is None:
                raise MigrationError(f"Table {name} does not exist")

    # -- load ----------------------------------------------------------

    def _storage_for(self, data_source: ExternalDataSource) -> StorageBackend:
        options = dict(self.storage_options)
        credential = self.credentials.get(data_source.credential or "")
        if data_source.is_cloud and credential and credential.secret:
            options.setdefault("account_key", credential.secret)
        return get_storage(data_source.location, **options)

    def _staged_files(self, storage: StorageBackend, location: str) -> List[str]:
        """Files behind an external table LOCATION.

        A folder location reads every file in it except hidden ones
        (leading ``.`` or ``_``), like PolyBase.
        """
        if not location.endswith("/"):
            return [location]
        names = [
            info.path
            for info in storage.list_files(location)
            if not info.path.startswith((".", "_"))
        ]
        return [location.rstrip("/") + "/" + name for name in names]

    def _read_records(self, table: ExternalTable, fmt: DelimitedTextFormat) -> Iterator[Tuple[int, str]]:
        data_source = self.data_sources[table.data_source]
        storage = self._storage_for(data_source)
        files = self._staged_files(storage, table.location)
        if not files:
            raise MigrationError(
                f"No files found at {table.location}",
                table=table.qualified_name,
                details={"data_source": data_source.location},
            )
        for path in files:
            try:
                text = storage.read_bytes(path).decode(fmt.python_encoding)
            except FileNotFoundError as e:
                raise MigrationError(
                    f"Staged file {path} not found",
                    table=table.qualified_name,
                    details={"data_source": data_source.location},
                ) from e
            lines = text.split("\n")
            if lines and lines[-1] == "":
                lines.pop()
            for number, line in enumerate(lines, start=1):
                if number < fmt.first_row:
                    continue
                yield number, line.rstrip("\r")

    def _convert(
        self,
        fields: List[Tuple[str, bool]],
        table: ExternalTable,
        fmt: DelimitedTextFormat,
    ) -> List[Any]:
        if len(fields) != len(table.columns):
            raise ValueError(f"expected {len(table.columns)} fields, found {len(fields)}")

        values = []
        for (text, quoted), column in zip(fields, table.columns):
            if text == "" and not quoted:
                value = column.sql_type.default() if fmt.use_type_default else None
            else:
                try:
                    value = column.sql_type.coerce(text, fmt.dates)
                except ValueError as e:
                    raise ValueError(f"column {column.name}: {e}") from None
            if value is None and not column.nullable:
                raise ValueError(f"column {column.name}: NULL in NOT NULL column")
            values.append(value)
        return values

    def _scan(self, table: ExternalTable) -> Tuple[pd.DataFrame, List[str], int]:
        """Parse the external table's files, applying its reject policy."""
        fmt = self.file_formats[table.file_format]
        policy = table.reject
        rows: List[List[Any]] = []
        reasons: List[str] = []
        processed = 0

        for number, line in self._read_records(table, fmt):
            processed += 1
            try:
                fields = parse_delimited_line(line, fmt.field_terminator, fmt.string_delimiter)
                rows.append(self._convert(fields, table, fmt))
            except ValueError as e:
                reasons.append(f"line {number}: {e}")

            check = policy.type == "VALUE" or processed % (policy.sample_value or 1) == 0
            if reasons and check and policy.exceeded(len(reasons), processed):
                raise RejectThresholdExceededError(
                    f"Query aborted: the maximum reject threshold ({policy.describe()}) was reached "
                    f"while reading {table.qualified_name}: {len(reasons)} rows rejected "
                    f"out of total {processed} rows processed",
                    table=table.qualified_name,
                    rejected=len(reasons),
                    processed=processed,
                    policy=policy.describe(),
                    reasons=reasons,
                )

        if policy.type == "PERCENTAGE" and policy.exceeded(len(reasons), processed):
            raise RejectThresholdExceededError(
                f"Query aborted: the maximum reject threshold ({policy.describe()}) was reached "
                f"while reading {table.qualified_name}",
                table=table.qualified_name,
                rejected=len(reasons),
                processed=processed,
                policy=policy.describe(),
                reasons=reasons,
            )

        frame = pd.DataFrame(rows, columns=table.column_names)
        for column in table.columns:
            dtype = _pandas_dtype(column)
            if dtype:
                frame[column.name] = frame[column.name].astype(dtype)
        return frame, reasons, processed

    def _distribute(self, frame: pd.DataFrame, target: TargetTable) -> Dict[int, List[pd.DataFrame]]:
        dist = target.distribution
        nodes = range(self._node_count)
        if dist.kind == "REPLICATE":
            return {node: [frame.copy()] for node in nodes}

        if dist.kind == "HASH":
            column = next(c for c in frame.columns if c.lower() == (dist.column or "").lower())
            assignment = frame[column].map(lambda v: _hash_node(v, self._node_count))
        else:
            assignment = pd.Series(range(len(frame)), index=frame.index) % self._node_count

        return {
            node: [frame[assignment == node].reset_index(drop=True)]
            for node in nodes
        }

    def _create_table_as_select(self, target: TargetTable, source: ExternalTable) -> LoadStats:
        frame, reasons, processed = self._scan(source)
        self.last_rejects = reasons
        if reasons:
            logger.warning(
                "Rejected %d of %d rows loading %s (first: %s)",
                len(reasons),
                processed,
                target.qualified_name,
                reasons[0],
            )

        table = _LocalTable(
            definition=target,
            columns=list(frame.columns),
            fragments=self._distribute(frame, target),
        )
        with self._lock:
            self.tables[self._key(target.qualified_name)] = table
        return LoadStats(rows_loaded=len(frame), rows_rejected=len(reasons), reject_reasons=reasons)

    # -- table maintenance and inspection --------------------------------

    def _table(self, name: str) -> _LocalTable:
        try:
            return self.tables[self._key(name)]
        except KeyError:
            raise MigrationError(f"Table {name} does not exist") from None

    def rebuild_indexes(self, target: TargetTable) -> None:
        with self._lock:
            table = self._table(target.qualified_name)
            table.fragments = {node: [table.node_frame(node)] for node in table.fragments}
            table.rebuilt = True

    def row_count(self, name: str) -> int:
        table = self._table(name)
        if table.definition.distribution.kind == "REPLICATE":
            return len(table.node_frame(0))
        return sum(len(table.node_frame(node)) for node in table.fragments)

    def space_used(self, name: str) -> List[NodeUsage]:
        table = self._table(name)
        columnstore = table.definition.index != "HEAP"
        usage = []
        for node in sorted(table.fragments):
            frame = table.node_frame(node)
            data_kb = math.ceil(int(frame.memory_usage(deep=True, index=False).sum()) / 1024)
            segments = len(table.fragments[node])
            index_kb = _PAGE_KB * segments if columnstore and len(frame) else 0
            unused_kb = 0 if table.rebuilt else _PAGE_KB * segments
            usage.append(
                NodeUsage(
                    node_id=node,
                    rows=len(frame),
                    reserved_kb=data_kb + index_kb + unused_kb,
                    data_kb=data_kb,
                    index_kb=index_kb,
                    unused_kb=unused_kb,
                    distribution_id=node,
                )
            )
        return usage

    def read_table(self, name: str) -> pd.DataFrame:
        """All rows of a loaded table (one copy for replicated tables)."""
        table = self._table(name)
        if table.definition.distribution.kind == "REPLICATE":
            return table.node_frame(0)
        frames = [table.node_frame(node) for node in sorted(table.fragments)]
        return pd.concat(frames, ignore_index=True)
