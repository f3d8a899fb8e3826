"""Dedicated SQL pool backend over pyodbc."""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Sequence

from migration.lib.errors import AlreadyExistsError, RejectThresholdExceededError
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.polybase import (
    MASTER_KEY_NAME,
    ExternalDataSource,
    ExternalTable,
    ScopedCredential,
    TargetTable,
    generate_credential_ddl,
    generate_ctas_ddl,
    generate_data_source_ddl,
    generate_external_table_ddl,
    generate_file_format_ddl,
    generate_master_key_ddl,
    generate_rebuild_ddl,
    generate_verification_sql,
    quote_name,
    split_name,
)
from migration.lib.verify import NodeUsage
from migration.lib.warehouse.base import LoadStats, ObjectKind, WarehouseBackend

logger = logging.getLogger(__name__)

__all__ = ["SqlWarehouse"]

_EXISTS_QUERIES = {
    ObjectKind.MASTER_KEY: "SELECT COUNT(*) FROM sys.symmetric_keys WHERE name = ?",
    ObjectKind.CREDENTIAL: "SELECT COUNT(*) FROM sys.database_scoped_credentials WHERE name = ?",
    ObjectKind.DATA_SOURCE: "SELECT COUNT(*) FROM sys.external_data_sources WHERE name = ?",
    ObjectKind.FILE_FORMAT: "SELECT COUNT(*) FROM sys.external_file_formats WHERE name = ?",
    ObjectKind.EXTERNAL_TABLE: (
        "SELECT COUNT(*) FROM sys.external_tables t "
        "JOIN sys.schemas s ON t.schema_id = s.schema_id "
        "WHERE s.name = ? AND t.name = ?"
    ),
    ObjectKind.TABLE: (
        "SELECT COUNT(*) FROM sys.tables t "
        "JOIN sys.schemas s ON t.schema_id = s.schema_id "
        "WHERE s.name = ? AND t.name = ? AND t.is_external = 0"
    ),
}

_REJECT_PATTERN = re.compile(r"(\d+) rows rejected out of total (\d+) rows processed", re.IGNORECASE)
_ALREADY_EXISTS_MARKERS = ("already exists", "there is already an object named")


class SqlWarehouse(WarehouseBackend):
    """Runs the PolyBase DDL against a dedicated SQL pool.

    Example:
        >>> con = get_warehouse_connection("synapse", {"host": "...", "database": "dw"})
        >>> warehouse = SqlWarehouse(con)
        >>> warehouse.create_master_key()

    The connection must be in autocommit mode. pyodbc connections are not
    shared across threads; give each parallel migration its own.
    """

    def __init__(self, connection: Any, *, default_schema: str = "dbo", owns_connection: bool = False) -> None:
        super().__init__()
        self.connection = connection
        self.owns_connection = owns_connection
        self.default_schema = default_schema
        self._node_count: Optional[int] = None

    @property
    def name(self) -> str:
        return "synapse"

    @property
    def node_count(self) -> int:
        if self._node_count is None:
            rows = self._query("SELECT COUNT(*) FROM sys.dm_pdw_nodes WHERE type = 'COMPUTE'")
            self._node_count = int(rows[0][0]) if rows else 0
        return self._node_count

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> Any:
        logger.debug("Executing: %s", sql)
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql, *params)
        except Exception as e:
            cursor.close()
            raise self._translate(e, sql) from e
        return cursor

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[Any]:
        cursor = self._execute(sql, params)
        try:
            return list(cursor.fetchall())
        finally:
            cursor.close()

    def _run(self, sql: str) -> None:
        self._execute(sql).close()

    def _translate(self, error: Exception, sql: str) -> Exception:
        """Map driver errors to migration errors where one fits."""
        text = str(error)
        lowered = text.lower()
        if "maximum reject threshold" in lowered:
            match = _REJECT_PATTERN.search(text)
            rejected, processed = (int(match.group(1)), int(match.group(2))) if match else (0, 0)
            return RejectThresholdExceededError(
                "Load aborted: the maximum reject threshold was reached",
                rejected=rejected,
                processed=processed,
                reasons=[text],
            )
        if any(marker in lowered for marker in _ALREADY_EXISTS_MARKERS):
            return AlreadyExistsError(text, details={"statement": sql.splitlines()[0]})
        return error

    def _split(self, name: str) -> List[str]:
        schema, table = split_name(name)
        return [schema or self.default_schema, table]

    def exists(self, kind: ObjectKind, name: Optional[str] = None) -> bool:
        query = _EXISTS_QUERIES[kind]
        if kind == ObjectKind.MASTER_KEY:
            params: List[Any] = [MASTER_KEY_NAME]
        elif kind in (ObjectKind.TABLE, ObjectKind.EXTERNAL_TABLE):
            params = self._split(name or "")
        else:
            params = [name]
        rows = self._query(query, params)
        return bool(rows and rows[0][0])

    def _create_master_key(self, password: Optional[str]) -> None:
        self._run(generate_master_key_ddl(password, guard=False))

    def _create_credential(self, credential: ScopedCredential) -> None:
        self._run(generate_credential_ddl(credential, guard=False))

    def _create_data_source(self, data_source: ExternalDataSource) -> None:
        self._run(generate_data_source_ddl(data_source, guard=False))

    def _create_file_format(self, file_format: DelimitedTextFormat) -> None:
        self._run(generate_file_format_ddl(file_format, guard=False))

    def _create_external_table(self, table: ExternalTable) -> None:
        self._run(generate_external_table_ddl(table, guard=False))

    def _create_table_as_select(self, target: TargetTable, source: ExternalTable) -> LoadStats:
        self._run(generate_ctas_ddl(target, source))
        # PolyBase does not report sub-threshold rejects to the client
        return LoadStats(rows_loaded=self.row_count(target.qualified_name), rows_rejected=None)

    def rebuild_indexes(self, target: TargetTable) -> None:
        self._run(generate_rebuild_ddl(target))

    def drop_table(self, name: str) -> None:
        self._run(f"DROP TABLE {quote_name(name)};")

    def drop_external_table(self, name: str) -> None:
        self._run(f"DROP EXTERNAL TABLE {quote_name(name)};")

    def row_count(self, name: str) -> int:
        rows = self._query(f"SELECT COUNT_BIG(*) FROM {quote_name(name)};")
        return int(rows[0][0])

    def space_used(self, name: str) -> List[NodeUsage]:
        schema, table = self._split(name)
        target = TargetTable(name=table, schema=schema)
        rows = self._query(generate_verification_sql(target)[1])
        # ROWS, RESERVED_SPACE, DATA_SPACE, INDEX_SPACE, UNUSED_SPACE, PDW_NODE_ID, DISTRIBUTION_ID
        return [
            NodeUsage(
                node_id=int(row[5]),
                rows=int(row[0]),
                reserved_kb=int(row[1]),
                data_kb=int(row[2]),
                index_kb=int(row[3]),
                unused_kb=int(row[4]),
                distribution_id=int(row[6]),
            )
            for row in rows
        ]

    def close(self) -> None:
        if self.owns_connection:
            self.connection.close()
