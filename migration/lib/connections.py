"""Connection registry for source databases and the warehouse.

Source databases are opened as Ibis backends so the inflation runs in the
database. The warehouse is opened through pyodbc because PolyBase DDL is
plain T-SQL the Ibis backends do not model.

Connections are registered by name and reused, so several migrations
reading from the same database share one connection.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict

import ibis

from migration.lib.env import expand_env_vars
from migration.lib.errors import ConfigurationError
from migration.lib.polybase import split_name
from migration.lib.resilience import RetryConfig, retry_operation

logger = logging.getLogger(__name__)

__all__ = [
    "build_odbc_connection_string",
    "close_all_connections",
    "close_connection",
    "get_connection",
    "get_connection_count",
    "get_warehouse_connection",
    "list_connections",
    "open_table",
    "table_exists",
]

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"

# Connection registry - keyed by connection name
_connections: Dict[str, Any] = {}
_lock = threading.Lock()


def get_connection(
    connection_name: str,
    source_type: str,
    options: Dict[str, Any],
) -> ibis.BaseBackend:
    """Get or create a source connection by name.

    Args:
        connection_name: Unique name for this connection
        source_type: ``mssql`` or ``duckdb``
        options: Connection options (host, database, user, password, ...)

    Example:
        >>> con = get_connection(
        ...     "contoso",
        ...     "mssql",
        ...     {"host": "sql01", "database": "ContosoRetailDW"},
        ... )
    """
    with _lock:
        if connection_name in _connections:
            logger.debug("Reusing existing connection: %s", connection_name)
            return _connections[connection_name]

        logger.info("Creating new connection: %s", connection_name)

        if source_type == "mssql":
            con = _create_mssql_connection(options)
        elif source_type == "duckdb":
            con = ibis.duckdb.connect(expand_env_vars(options.get("database", ":memory:")))
        else:
            raise ConfigurationError(
                f"Unsupported source type: {source_type}",
                field="source.type",
                value=source_type,
                suggestion="Use mssql or duckdb.",
            )

        _connections[connection_name] = con
        return con


def _create_mssql_connection(options: Dict[str, Any]) -> ibis.BaseBackend:
    """Create an MSSQL connection.

    Supports environment variable substitution for credentials.
    """
    host = expand_env_vars(options.get("host", ""))
    database = expand_env_vars(options.get("database", ""))
    user = expand_env_vars(options.get("user", ""))
    password = expand_env_vars(options.get("password", ""))
    port = options.get("port", 1433)
    driver = options.get("driver", DEFAULT_DRIVER)

    return ibis.mssql.connect(
        host=host,
        port=port,
        database=database,
        user=user if user else None,
        password=password if password else None,
        driver=driver,
    )


def build_odbc_connection_string(options: Dict[str, Any]) -> str:
    """Build a pyodbc connection string for a dedicated SQL pool.

    Example:
        >>> build_odbc_connection_string({"host": "myws.sql.azuresynapse.net", "database": "dw"})
        'DRIVER={ODBC Driver 18 for SQL Server};SERVER=tcp:myws.sql.azuresynapse.net,1433;...'
    """
    host = expand_env_vars(options.get("host", ""))
    database = expand_env_vars(options.get("database", ""))
    if not host or not database:
        raise ConfigurationError(
            "Warehouse host and database are required",
            field="warehouse",
            details={"host": host or "<missing>", "database": database or "<missing>"},
        )

    user = expand_env_vars(options.get("user", ""))
    password = expand_env_vars(options.get("password", ""))
    port = options.get("port", 1433)
    driver = options.get("driver", DEFAULT_DRIVER)

    parts = [
        f"DRIVER={{{driver}}}",
        f"SERVER=tcp:{host},{port}",
        f"DATABASE={database}",
    ]
    if user:
        parts.append(f"UID={user}")
        parts.append(f"PWD={password}")
    else:
        parts.append("Authentication=ActiveDirectoryDefault")
    parts.append(f"Encrypt={'yes' if options.get('encrypt', True) else 'no'}")
    parts.append(f"TrustServerCertificate={'yes' if options.get('trust_server_certificate') else 'no'}")
    parts.append(f"Connection Timeout={int(options.get('timeout', 30))}")
    return ";".join(parts) + ";"


def _open_odbc(conn_str: str, retry: RetryConfig) -> Any:
    import pyodbc

    return retry_operation(
        lambda: pyodbc.connect(conn_str, autocommit=True),
        retry,
        "warehouse connect",
    )


def get_warehouse_connection(connection_name: str, options: Dict[str, Any]) -> Any:
    """Get or create a pyodbc connection to the warehouse.

    The connection runs in autocommit mode; the PolyBase DDL statements
    cannot run inside a user transaction.
    """
    with _lock:
        if connection_name in _connections:
            logger.debug("Reusing existing connection: %s", connection_name)
            return _connections[connection_name]

        logger.info("Connecting to warehouse %s", connection_name)
        con = _open_odbc(build_odbc_connection_string(options), RetryConfig.from_options(options))
        _connections[connection_name] = con
        return con


def close_connection(connection_name: str) -> None:
    """Close a specific connection."""
    with _lock:
        con = _connections.pop(connection_name, None)
    if con is None:
        return
    try:
        if hasattr(con, "disconnect"):
            con.disconnect()
        elif hasattr(con, "close"):
            con.close()
        logger.info("Closed connection: %s", connection_name)
    except Exception as e:
        logger.warning("Error closing connection %s: %s", connection_name, e)


def close_all_connections() -> None:
    """Clean up all connections.

    Call at end of a run to release database resources.
    """
    for name in list(_connections.keys()):
        close_connection(name)
    logger.info("All connections closed")


def list_connections() -> list[str]:
    """List all active connection names."""
    return list(_connections.keys())


def get_connection_count() -> int:
    return len(_connections)


def table_exists(con: ibis.BaseBackend, name: str) -> bool:
    """Check for a ``schema.table`` or bare table name on an Ibis backend."""
    schema, table = split_name(name)
    if schema:
        return table in con.list_tables(database=schema)
    return table in con.list_tables()


def open_table(con: ibis.BaseBackend, name: str) -> ibis.Table:
    """Open a ``schema.table`` or bare table name on an Ibis backend."""
    schema, table = split_name(name)
    return con.table(table, database=schema) if schema else con.table(table)
