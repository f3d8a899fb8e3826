"""Warehouse backends.

Usage:
    from migration.lib.warehouse import LocalWarehouse, SqlWarehouse

    # In-process engine (local runs and tests)
    warehouse = LocalWarehouse(node_count=4)

    # Dedicated SQL pool
    warehouse = SqlWarehouse(get_warehouse_connection("synapse", options))
"""

from migration.lib.warehouse.base import LoadStats, ObjectKind, WarehouseBackend
from migration.lib.warehouse.local import LocalWarehouse
from migration.lib.warehouse.sql import SqlWarehouse

__all__ = [
    "LoadStats",
    "LocalWarehouse",
    "ObjectKind",
    "SqlWarehouse",
    "WarehouseBackend",
]
