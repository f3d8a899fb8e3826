"""SQL Server to dedicated SQL pool migration through PolyBase.

Inflates a reference table into a larger dataset, exports it to
delimited text in blob storage, and loads it with external tables and
CTAS.

Usage:
    python -m migration run contoso.yaml
    python -m migration script contoso.yaml
"""

from migration.lib.inflate import InflationSpec, inflate_table
from migration.lib.export import export_table
from migration.lib.orchestrator import LoadOrchestrator, LoadState

__all__ = [
    "InflationSpec",
    "LoadOrchestrator",
    "LoadState",
    "export_table",
    "inflate_table",
]
