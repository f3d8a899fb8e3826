"""Migration library modules.

This package contains the building blocks of a migration: dataset
inflation, export to staged files, PolyBase DDL generation, warehouse
backends and the load orchestrator.
"""

from migration.lib.config_loader import MigrationConfig, MigrationSpec, load_config, validate_config
from migration.lib.connections import close_all_connections, get_connection, get_warehouse_connection
from migration.lib.env import expand_env_vars, expand_options, find_unset_vars, load_env_file
from migration.lib.errors import (
    AlreadyExistsError,
    AlreadyInitializedError,
    ConfigurationError,
    KeyCollisionError,
    MigrationError,
    RejectThresholdExceededError,
    SkewWarning,
    StepFailedError,
    TransferError,
)
from migration.lib.export import StagedFile, export_from_connection, export_table, serialize_rows
from migration.lib.file_format import DateFormat, DelimitedTextFormat
from migration.lib.inflate import (
    InflationResult,
    InflationSpec,
    build_inflated,
    generate_inflation_sql,
    inflate_frame,
    inflate_table,
)
from migration.lib.orchestrator import LoadOrchestrator, LoadResult, LoadState, StepOutcome
from migration.lib.polybase import (
    Distribution,
    ExternalColumn,
    ExternalDataSource,
    ExternalTable,
    LoadPlan,
    RejectPolicy,
    ScopedCredential,
    TargetTable,
    generate_load_script,
)
from migration.lib.runner import MigrationResult, MigrationRunner, run_migration, run_migrations_parallel
from migration.lib.storage import get_storage
from migration.lib.verify import NodeUsage, VerificationReport, verify_target
from migration.lib.warehouse import LocalWarehouse, SqlWarehouse, WarehouseBackend

__all__ = [
    # Config
    "MigrationConfig",
    "MigrationSpec",
    "load_config",
    "validate_config",
    # Connections
    "close_all_connections",
    "get_connection",
    "get_warehouse_connection",
    # Env
    "expand_env_vars",
    "expand_options",
    "find_unset_vars",
    "load_env_file",
    # Errors
    "AlreadyExistsError",
    "AlreadyInitializedError",
    "ConfigurationError",
    "KeyCollisionError",
    "MigrationError",
    "RejectThresholdExceededError",
    "SkewWarning",
    "StepFailedError",
    "TransferError",
    # Inflate / export
    "InflationResult",
    "InflationSpec",
    "build_inflated",
    "generate_inflation_sql",
    "inflate_frame",
    "inflate_table",
    "StagedFile",
    "export_from_connection",
    "export_table",
    "serialize_rows",
    "DateFormat",
    "DelimitedTextFormat",
    # Load
    "Distribution",
    "ExternalColumn",
    "ExternalDataSource",
    "ExternalTable",
    "LoadPlan",
    "RejectPolicy",
    "ScopedCredential",
    "TargetTable",
    "generate_load_script",
    "LoadOrchestrator",
    "LoadResult",
    "LoadState",
    "StepOutcome",
    "NodeUsage",
    "VerificationReport",
    "verify_target",
    "LocalWarehouse",
    "SqlWarehouse",
    "WarehouseBackend",
    # Runner
    "MigrationResult",
    "MigrationRunner",
    "run_migration",
    "run_migrations_parallel",
    "get_storage",
]
