"""Migration runner.

Runs the three stages for each configured table: inflate the source
table, export it to a staged file, then drive the PolyBase load. Tables
are independent, so several can migrate in parallel as long as no two
load the same target.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import ibis

from migration.lib.config_loader import MigrationConfig, MigrationSpec
from migration.lib.connections import close_all_connections, get_connection, get_warehouse_connection
from migration.lib.errors import ConfigurationError
from migration.lib.export import StagedFile, export_from_connection, open_staged_file
from migration.lib.inflate import InflationResult, inflate_table
from migration.lib.orchestrator import LoadOrchestrator, LoadResult, LoadState
from migration.lib.storage import StorageBackend, get_storage
from migration.lib.warehouse import LocalWarehouse, SqlWarehouse, WarehouseBackend

logger = logging.getLogger(__name__)

__all__ = [
    "MigrationResult",
    "MigrationRunner",
    "check_unique_targets",
    "run_migration",
    "run_migrations_parallel",
]


class MigrationResult:
    """Structured result from one table's migration."""

    def __init__(
        self,
        name: str,
        success: bool,
        *,
        inflation: Optional[InflationResult] = None,
        staged: Optional[StagedFile] = None,
        load: Optional[LoadResult] = None,
        elapsed_seconds: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.name = name
        self.success = success
        self.inflation = inflation
        self.staged = staged
        self.load = load
        self.elapsed_seconds = elapsed_seconds
        self.error = error

    @property
    def state_reached(self) -> Optional[str]:
        """Last load state reached, for resuming a failed run."""
        if self.load is not None:
            return self.load.state.label
        return getattr(self.error, "state_reached", None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "inflation": self.inflation.to_dict() if self.inflation else None,
            "staged": self.staged.to_dict() if self.staged else None,
            "load": self.load.to_dict() if self.load else None,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "error": self.error.to_dict() if hasattr(self.error, "to_dict") else (str(self.error) if self.error else None),
        }

    def __repr__(self) -> str:
        status = "SUCCESS" if self.success else "FAILED"
        rows = self.load.report.row_count if self.load and self.load.report else 0
        return f"MigrationResult({self.name}, {status}, rows={rows}, elapsed={self.elapsed_seconds:.2f}s)"


def run_migration(
    migration: MigrationSpec,
    *,
    source: Optional[ibis.BaseBackend],
    storage: StorageBackend,
    warehouse: WarehouseBackend,
    skip_inflate: bool = False,
    skip_export: bool = False,
    resume_from: Optional[Union[LoadState, str]] = None,
    source_lock: Optional[threading.Lock] = None,
) -> MigrationResult:
    """Inflate, export and load one table.

    Failures are captured on the result rather than raised, so a batch
    keeps going; the error carries the state a re-run can resume from.

    Example:
        result = run_migration(migration, source=con, storage=storage, warehouse=LocalWarehouse())
        if not result.success:
            print(result.error)
    """
    start = time.time()
    fmt = migration.plan.file_format
    inflation: Optional[InflationResult] = None
    staged: Optional[StagedFile] = None
    lock = source_lock or threading.Lock()

    try:
        if resume_from is not None:
            skip_inflate = skip_export = True

        with lock:
            if migration.inflate and not skip_inflate:
                if source is None:
                    raise ConfigurationError("A source connection is required to inflate", field="source")
                inflation = inflate_table(source, migration.inflate, replace=migration.replace_inflated)

            if skip_export:
                staged = open_staged_file(storage, migration.export_path, fmt)
            else:
                if source is None:
                    raise ConfigurationError("A source connection is required to export", field="source")
                staged = export_from_connection(
                    source,
                    migration.export_table,
                    storage,
                    migration.export_path,
                    fmt,
                    order_by=migration.order_by,
                )

        orchestrator = LoadOrchestrator(
            migration.plan,
            warehouse,
            start_state=resume_from or LoadState.UNCONFIGURED,
            expected_rows=staged.row_count,
        )
        load = orchestrator.run()
        elapsed = time.time() - start
        logger.info("Migration %s completed in %.2fs", migration.name, elapsed)
        return MigrationResult(
            migration.name,
            True,
            inflation=inflation,
            staged=staged,
            load=load,
            elapsed_seconds=elapsed,
        )

    except Exception as e:
        elapsed = time.time() - start
        logger.error("Migration %s failed: %s", migration.name, e)
        return MigrationResult(
            migration.name,
            False,
            inflation=inflation,
            staged=staged,
            elapsed_seconds=elapsed,
            error=e,
        )


def check_unique_targets(migrations: Iterable[MigrationSpec]) -> None:
    """Reject two migrations loading the same target table.

    Raises:
        ConfigurationError: On a duplicate target
    """
    seen: Dict[str, str] = {}
    for migration in migrations:
        key = migration.target_name.lower()
        if key in seen:
            raise ConfigurationError(
                f"Migrations {seen[key]} and {migration.name} both load {migration.target_name}",
                field="target",
                value=migration.target_name,
                suggestion="Give each migration its own target table.",
            )
        seen[key] = migration.name


def run_migrations_parallel(
    migrations: List[MigrationSpec],
    run_one: Callable[[MigrationSpec], MigrationResult],
    *,
    max_workers: int = 4,
) -> List[MigrationResult]:
    """Run independent migrations on a thread pool.

    Results come back in the order of ``migrations``.

    Raises:
        ConfigurationError: If two migrations target the same table
    """
    check_unique_targets(migrations)
    if max_workers <= 1 or len(migrations) <= 1:
        return [run_one(m) for m in migrations]

    logger.info("Running %d migrations with %d workers", len(migrations), max_workers)
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="migration") as pool:
        return list(pool.map(run_one, migrations))


class MigrationRunner:
    """Runs the migrations of a configuration file.

    Example:
        config = load_config("contoso.yaml")
        with MigrationRunner(config, local=True) as runner:
            results = runner.run(parallel=2)
    """

    def __init__(
        self,
        config: MigrationConfig,
        *,
        local: bool = False,
        node_count: int = 4,
        source: Optional[ibis.BaseBackend] = None,
        warehouse: Optional[WarehouseBackend] = None,
        storage: Optional[StorageBackend] = None,
    ) -> None:
        self.config = config
        self.local = local
        self._source = source
        self._storage = storage
        self._source_lock = threading.Lock()
        if warehouse is None and local:
            warehouse = LocalWarehouse(node_count=node_count, storage_options=config.storage_options)
        self._warehouse = warehouse

    @property
    def source(self) -> ibis.BaseBackend:
        if self._source is None:
            options = self.config.source
            self._source = get_connection(options["connection"], options["type"], options)
        return self._source

    @property
    def storage(self) -> StorageBackend:
        if self._storage is None:
            self._storage = get_storage(self.config.storage_location, **self.config.storage_options)
        return self._storage

    def warehouse_for(self, migration: MigrationSpec) -> WarehouseBackend:
        """Warehouse backend for one migration.

        Dedicated SQL pool migrations each get their own connection so
        they can run on separate threads.
        """
        if self._warehouse is not None:
            return self._warehouse
        options = self.config.warehouse
        connection = get_warehouse_connection(f"{options['connection']}:{migration.name}", options)
        return SqlWarehouse(connection)

    def select(self, names: Optional[List[str]] = None) -> List[MigrationSpec]:
        if not names:
            return list(self.config.migrations)
        return [self.config.get(name) for name in names]

    def run(
        self,
        names: Optional[List[str]] = None,
        *,
        parallel: int = 1,
        skip_inflate: bool = False,
        skip_export: bool = False,
        resume_from: Optional[Union[LoadState, str]] = None,
    ) -> List[MigrationResult]:
        """Run the selected migrations (all by default)."""
        migrations = self.select(names)
        needs_source = resume_from is None and not (skip_inflate and skip_export)

        def run_one(migration: MigrationSpec) -> MigrationResult:
            try:
                warehouse = self.warehouse_for(migration)
                source = self.source if needs_source else None
            except Exception as e:
                logger.error("Migration %s could not connect: %s", migration.name, e)
                return MigrationResult(migration.name, False, error=e)
            return run_migration(
                migration,
                source=source,
                storage=self.storage,
                warehouse=warehouse,
                skip_inflate=skip_inflate,
                skip_export=skip_export,
                resume_from=resume_from,
                source_lock=self._source_lock,
            )

        return run_migrations_parallel(migrations, run_one, max_workers=parallel)

    def close(self) -> None:
        if self._warehouse is not None:
            self._warehouse.close()
        close_all_connections()

    def __enter__(self) -> "MigrationRunner":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
