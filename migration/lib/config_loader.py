"""YAML configuration loader for migrations.

Example YAML (contoso.yaml):
    source:
      connection: contoso
      type: mssql
      host: ${SOURCE_HOST}
      database: ContosoRetailDW

    warehouse:
      connection: synapse
      host: ${SYNAPSE_HOST}
      database: ContosoDW

    storage:
      location: wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net/
      account_key: ${AZURE_STORAGE_KEY}

    credential:
      name: AzureStorageCredential

    data_source:
      name: AzureStorage

    file_format:
      name: TextFileFormat
      field_terminator: "|"
      date_format: yyyy-MM-dd HH:mm:ss.fff

    migrations:
      - name: product
        inflate: {source: dbo.DimProduct, target: dbo.DimProduct_Inflated,
                  key_column: ProductKey, multipliers: [1, 50], offset: 1000}
        export: {path: /DimProduct/DimProduct.txt, order_by: ProductKey}
        external_table:
          schema: asb
          columns:
            - {name: ProductKey, type: INT, nullable: false}
            - {name: ProductName, type: NVARCHAR(500)}
        target: {schema: cso, name: DimProduct, distribution: HASH(ProductKey)}

Usage:
    from migration.lib.config_loader import load_config
    config = load_config("./contoso.yaml")
    for migration in config.migrations:
        print(migration.plan.target.qualified_name)
"""

from __future__ import annotations

import logging
import os
import posixpath
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from migration.lib.env import expand_options, find_unset_vars
from migration.lib.errors import ConfigurationError, MigrationError
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.inflate import InflationSpec
from migration.lib.polybase import (
    Distribution,
    ExternalColumn,
    ExternalDataSource,
    ExternalTable,
    LoadPlan,
    RejectPolicy,
    ScopedCredential,
    TargetTable,
    split_name,
)
from migration.lib.storage import is_cloud_location

logger = logging.getLogger(__name__)

__all__ = [
    "MigrationConfig",
    "MigrationSpec",
    "load_config",
    "parse_config",
    "validate_config",
]

SOURCE_TYPES = ("mssql", "duckdb")


@dataclass
class MigrationSpec:
    """One table's migration: optional inflation, export, and load plan."""

    name: str
    plan: LoadPlan
    export_table: str
    export_path: str
    order_by: Optional[List[str]] = None
    inflate: Optional[InflationSpec] = None
    replace_inflated: bool = False

    @property
    def target_name(self) -> str:
        return self.plan.target.qualified_name


@dataclass
class MigrationConfig:
    """Parsed configuration file."""

    source: Dict[str, Any]
    warehouse: Dict[str, Any]
    storage: Dict[str, Any]
    migrations: List[MigrationSpec] = field(default_factory=list)
    config_path: Optional[Path] = None

    @property
    def storage_location(self) -> str:
        return str(self.storage["location"])

    @property
    def storage_options(self) -> Dict[str, Any]:
        return {k: v for k, v in self.storage.items() if k != "location"}

    def get(self, name: str) -> MigrationSpec:
        for migration in self.migrations:
            if migration.name == name:
                return migration
        raise ConfigurationError(
            f"No migration named {name!r}",
            field="migrations",
            value=name,
            suggestion=f"Available: {', '.join(m.name for m in self.migrations)}",
        )


def _resolve_path(path: str, config_dir: Path) -> str:
    """Resolve relative local paths against the config file's directory.

    Blob URIs and absolute paths are unchanged.
    """
    if not path or is_cloud_location(path) or "://" in path or os.path.isabs(path):
        return path
    resolved = (config_dir / path).resolve()
    # keep the trailing slash: it marks a folder location
    return str(resolved) + ("/" if path.endswith("/") else "")


def _section(config: Dict[str, Any], name: str, required: bool = True) -> Dict[str, Any]:
    value = config.get(name)
    if value is None:
        if required:
            raise ConfigurationError(f"'{name}' section is required", field=name)
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{name}' must be a mapping", field=name, value=type(value).__name__)
    return value


def _require(section: Dict[str, Any], key: str, where: str) -> Any:
    if section.get(key) in (None, ""):
        raise ConfigurationError(f"{where}.{key} is required", field=f"{where}.{key}")
    return section[key]


def _order_by(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _load_inflation(section: Dict[str, Any], where: str) -> InflationSpec:
    known = {
        "source",
        "target",
        "key_column",
        "multipliers",
        "offset",
        "text_columns",
        "suffix_template",
        "include_source",
        "key_type",
        "replace",
    }
    unknown = set(section) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {where} option(s): {', '.join(sorted(unknown))}",
            field=where,
        )
    return InflationSpec(
        source=_require(section, "source", where),
        target=_require(section, "target", where),
        key_column=_require(section, "key_column", where),
        multipliers=tuple(section.get("multipliers", (1, 1))),  # type: ignore[arg-type]
        offset=int(section.get("offset", 1000)),
        text_columns=section.get("text_columns"),
        suffix_template=section.get("suffix_template", "_{i}"),
        include_source=bool(section.get("include_source", True)),
        key_type=str(section.get("key_type", "INT")),
    )


def _load_migration(
    entry: Dict[str, Any],
    *,
    index: int,
    credential: ScopedCredential,
    data_source: ExternalDataSource,
    file_format: DelimitedTextFormat,
) -> MigrationSpec:
    where = f"migrations[{index}]"
    name = _require(entry, "name", where)
    where = f"migrations.{name}"

    target_section = _section(entry, "target")
    target_schema, target_name = split_name(_require(target_section, "name", f"{where}.target"))
    target = TargetTable(
        name=target_name,
        schema=target_section.get("schema") or target_schema or "dbo",
        distribution=Distribution.parse(target_section.get("distribution", "ROUND_ROBIN")),
        index=target_section.get("index", "CLUSTERED COLUMNSTORE INDEX"),
    )

    inflate = None
    inflate_section = _section(entry, "inflate", required=False)
    if inflate_section:
        inflate = _load_inflation(inflate_section, f"{where}.inflate")

    export_section = _section(entry, "export", required=False)
    export_table = export_section.get("table") or (inflate.target if inflate else None)
    if not export_table:
        raise ConfigurationError(
            f"{where}.export.table is required when there is no inflate section",
            field=f"{where}.export.table",
        )
    export_path = export_section.get("path") or f"/{target.name}/{target.name}.txt"
    if not export_path.startswith("/"):
        export_path = "/" + export_path

    ext_section = _section(entry, "external_table")
    columns_raw = ext_section.get("columns")
    if not columns_raw or not isinstance(columns_raw, list):
        raise ConfigurationError(
            f"{where}.external_table.columns must be a non-empty list",
            field=f"{where}.external_table.columns",
        )
    external_table = ExternalTable(
        name=ext_section.get("name") or f"{target.name}_external",
        schema=ext_section.get("schema", "dbo"),
        columns=[ExternalColumn.from_dict(c) for c in columns_raw],
        location=ext_section.get("location") or posixpath.dirname(export_path) + "/",
        data_source=data_source.name,
        file_format=file_format.name,
        reject=RejectPolicy.from_dict(ext_section.get("reject")),
    )

    verify_section = _section(entry, "verify", required=False)
    plan = LoadPlan(
        name=name,
        credential=credential,
        data_source=data_source,
        file_format=file_format,
        external_table=external_table,
        target=target,
        replace_target=bool(target_section.get("replace", False)),
        drop_external_after_load=bool(ext_section.get("drop_after_load", False)),
        skew_tolerance=float(verify_section.get("skew_tolerance", 0.1)),
        expected_rows=verify_section.get("expected_rows"),
    )

    return MigrationSpec(
        name=name,
        plan=plan,
        export_table=export_table,
        export_path=export_path,
        order_by=_order_by(export_section.get("order_by")),
        inflate=inflate,
        replace_inflated=bool(inflate_section.get("replace", False)),
    )


def parse_config(config: Dict[str, Any], config_dir: Optional[Path] = None) -> MigrationConfig:
    """Build a MigrationConfig from an already-parsed YAML mapping.

    Raises:
        ConfigurationError: If any section is missing or invalid
    """
    config_dir = config_dir or Path.cwd()
    config = expand_options(config)

    source = dict(_section(config, "source"))
    source.setdefault("connection", "source")
    source_type = str(source.get("type", "mssql")).lower()
    if source_type not in SOURCE_TYPES:
        raise ConfigurationError(
            f"Invalid source.type '{source_type}'. Valid options: {', '.join(SOURCE_TYPES)}",
            field="source.type",
        )
    source["type"] = source_type
    if source_type == "duckdb" and source.get("database"):
        source["database"] = _resolve_path(source["database"], config_dir)

    warehouse = dict(_section(config, "warehouse", required=False))
    warehouse.setdefault("connection", "warehouse")

    storage = dict(_section(config, "storage"))
    storage["location"] = _resolve_path(_require(storage, "location", "storage"), config_dir)

    credential_section = _section(config, "credential", required=False)
    credential = ScopedCredential(
        name=credential_section.get("name", "AzureStorageCredential"),
        identity=credential_section.get("identity", "user"),
        secret=str(credential_section.get("secret") or storage.get("account_key") or ""),
        master_key_password=credential_section.get("master_key_password"),
    )

    data_source_section = _section(config, "data_source", required=False)
    data_source = ExternalDataSource(
        name=data_source_section.get("name", "AzureStorage"),
        location=data_source_section.get("location", storage["location"]),
        credential=credential.name,
        type=data_source_section.get("type", "HADOOP"),
    )

    file_format = DelimitedTextFormat.from_dict(_section(config, "file_format", required=False))

    entries = config.get("migrations")
    if not entries or not isinstance(entries, list):
        raise ConfigurationError("'migrations' must be a non-empty list", field="migrations")

    migrations = []
    seen_names = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"migrations[{index}] must be a mapping", field="migrations")
        migration = _load_migration(
            entry,
            index=index,
            credential=credential,
            data_source=data_source,
            file_format=file_format,
        )
        if migration.name in seen_names:
            raise ConfigurationError(f"Duplicate migration name {migration.name!r}", field="migrations")
        seen_names.add(migration.name)
        migrations.append(migration)

    return MigrationConfig(
        source=source,
        warehouse=warehouse,
        storage=storage,
        migrations=migrations,
    )


def load_config(config_path: Union[str, Path]) -> MigrationConfig:
    """Load a migration configuration file.

    Raises:
        ConfigurationError: If the configuration is invalid
        FileNotFoundError: If the file doesn't exist
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

    if not raw:
        raise ConfigurationError("Empty configuration file")
    if not isinstance(raw, dict):
        raise ConfigurationError("Configuration must be a mapping at the top level")

    config = parse_config(raw, config_path.parent.resolve())
    config.config_path = config_path
    logger.debug("Loaded %d migration(s) from %s", len(config.migrations), config_path)
    return config


def validate_config(config_path: Union[str, Path]) -> List[str]:
    """Validate a configuration file without running anything.

    Returns:
        List of validation errors (empty if valid)
    """
    errors: List[str] = []

    try:
        config = load_config(config_path)
        targets: Dict[str, str] = {}
        for migration in config.migrations:
            key = migration.target_name.lower()
            if key in targets:
                errors.append(
                    f"{migration.name}: target {migration.target_name} is also "
                    f"loaded by {targets[key]}"
                )
            targets[key] = migration.name

        credential = config.migrations[0].plan.credential
        referenced = [config.source, config.warehouse, config.storage, credential.secret, credential.master_key_password]
        for name in find_unset_vars(referenced):
            errors.append(f"Environment variable {name} is not set")
    except MigrationError as e:
        errors.append(str(e))
    except FileNotFoundError as e:
        errors.append(str(e))

    return errors
