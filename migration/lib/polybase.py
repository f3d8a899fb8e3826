"""PolyBase catalog objects and T-SQL generation.

Models the objects a PolyBase load creates in a dedicated SQL pool and
renders the DDL for each of them:

1. Master key + database scoped credential
2. External data source (TYPE = HADOOP over a blob container)
3. External file format (DELIMITEDTEXT)
4. External table over the staged file
5. CTAS into a distributed target table
6. Index rebuild
7. Verification queries

Usage:
    from migration.lib.polybase import LoadPlan, generate_load_script

    script = generate_load_script(plan)
    Path("load.sql").write_text(script)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from migration.lib.errors import ConfigurationError
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.sqltypes import SqlType, parse_sql_type
from migration.lib.storage.uri import is_cloud_location, parse_location

__all__ = [
    "Distribution",
    "ExternalColumn",
    "ExternalDataSource",
    "ExternalTable",
    "LoadPlan",
    "RejectPolicy",
    "ScopedCredential",
    "TargetTable",
    "generate_credential_ddl",
    "generate_ctas_ddl",
    "generate_data_source_ddl",
    "generate_drop_external_table_ddl",
    "generate_external_table_ddl",
    "generate_file_format_ddl",
    "generate_load_script",
    "generate_master_key_ddl",
    "generate_rebuild_ddl",
    "generate_verification_sql",
    "quote_name",
    "split_name",
]

MASTER_KEY_NAME = "##MS_DatabaseMasterKey##"

INDEX_TYPES = ("CLUSTERED COLUMNSTORE INDEX", "HEAP")

_DISTRIBUTION_PATTERN = re.compile(
    r"^\s*(?:HASH\s*\(\s*\[?(?P<column>[^\]\)\s]+)\]?\s*\)|(?P<kind>ROUND_ROBIN|REPLICATE))\s*$",
    re.IGNORECASE,
)


def split_name(name: str) -> Tuple[Optional[str], str]:
    """Split ``schema.table`` (brackets optional) into its parts."""
    parts = [p.strip().strip("[]") for p in name.split(".")]
    if len(parts) == 1:
        return None, parts[0]
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    raise ConfigurationError(f"Invalid object name: {name!r}", field="name", value=name)


def quote_name(name: str) -> str:
    """Bracket-quote a one- or two-part object name.

    Example:
        >>> quote_name("dbo.FactOnlineSales")
        '[dbo].[FactOnlineSales]'
    """
    schema, table = split_name(name)
    quoted = "[" + table.replace("]", "]]") + "]"
    if schema:
        return "[" + schema.replace("]", "]]") + "]." + quoted
    return quoted


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


# ---------------------------------------------------------------------------
# Catalog objects
# ---------------------------------------------------------------------------


@dataclass
class ScopedCredential:
    """Database scoped credential holding the storage account secret.

    For storage account keys the identity is arbitrary; PolyBase only
    reads the secret.
    """

    name: str
    secret: str = field(default="", repr=False)
    identity: str = "user"
    master_key_password: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Credential name is required", field="credential.name")


@dataclass
class ExternalDataSource:
    """Named external data source over a blob container."""

    name: str
    location: str
    credential: Optional[str] = None
    type: str = "HADOOP"

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Data source name is required", field="data_source.name")
        if is_cloud_location(self.location) or "://" in self.location:
            parse_location(self.location)
        elif not self.location:
            raise ConfigurationError("Data source location is required", field="data_source.location")
        self.type = self.type.upper()
        if self.type != "HADOOP":
            raise ConfigurationError(
                f"Unsupported data source type: {self.type}",
                field="data_source.type",
                value=self.type,
                suggestion="Dedicated SQL pools load blob storage with TYPE = HADOOP.",
            )

    @property
    def is_cloud(self) -> bool:
        return is_cloud_location(self.location)


@dataclass
class ExternalColumn:
    """One positional column of an external table."""

    name: str
    type: str
    nullable: bool = True

    _sql_type: SqlType = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Column name is required", field="columns.name")
        self._sql_type = parse_sql_type(self.type)

    @property
    def sql_type(self) -> SqlType:
        return self._sql_type

    @property
    def ddl(self) -> str:
        null = "NULL" if self.nullable else "NOT NULL"
        return f"{quote_name(self.name)} {self._sql_type.ddl} {null}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExternalColumn":
        if "name" not in data or "type" not in data:
            raise ConfigurationError(
                "Each column needs a name and a type",
                field="columns",
                value=data,
            )
        return cls(name=data["name"], type=data["type"], nullable=bool(data.get("nullable", True)))


@dataclass
class RejectPolicy:
    """How many malformed rows a load tolerates.

    VALUE: abort once more than ``value`` rows are rejected.
    PERCENTAGE: abort once more than ``value`` percent of rows are
    rejected, checked after every ``sample_value`` rows.
    """

    type: str = "VALUE"
    value: float = 0
    sample_value: Optional[int] = None

    def __post_init__(self) -> None:
        self.type = self.type.upper()
        if self.type == "VALUE":
            if self.value < 0 or int(self.value) != self.value:
                raise ConfigurationError(
                    "REJECT_VALUE must be a non-negative integer",
                    field="reject.value",
                    value=self.value,
                )
            self.value = int(self.value)
            if self.sample_value is not None:
                raise ConfigurationError(
                    "REJECT_SAMPLE_VALUE only applies to REJECT_TYPE = PERCENTAGE",
                    field="reject.sample_value",
                )
        elif self.type == "PERCENTAGE":
            if not 0 <= self.value <= 100:
                raise ConfigurationError(
                    "REJECT_VALUE must be between 0 and 100 for PERCENTAGE",
                    field="reject.value",
                    value=self.value,
                )
            if not self.sample_value or self.sample_value < 1:
                raise ConfigurationError(
                    "REJECT_SAMPLE_VALUE is required for REJECT_TYPE = PERCENTAGE",
                    field="reject.sample_value",
                    value=self.sample_value,
                )
        else:
            raise ConfigurationError(
                f"Unknown reject type: {self.type}",
                field="reject.type",
                value=self.type,
                suggestion="Use VALUE or PERCENTAGE.",
            )

    def exceeded(self, rejected: int, processed: int) -> bool:
        """True if ``rejected`` out of ``processed`` rows breaks the policy."""
        if self.type == "VALUE":
            return rejected > self.value
        if processed == 0:
            return False
        return rejected * 100.0 / processed > self.value

    def describe(self) -> str:
        if self.type == "VALUE":
            return f"VALUE {self.value}"
        return f"PERCENTAGE {self.value} (sample {self.sample_value})"

    @property
    def clauses(self) -> List[str]:
        value = self.value if self.type == "VALUE" else _number(self.value)
        lines = [f"REJECT_TYPE = {self.type}", f"REJECT_VALUE = {value}"]
        if self.type == "PERCENTAGE":
            lines.append(f"REJECT_SAMPLE_VALUE = {self.sample_value}")
        return lines

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RejectPolicy":
        if not data:
            return cls()
        return cls(
            type=str(data.get("type", "VALUE")),
            value=data.get("value", 0),
            sample_value=data.get("sample_value"),
        )


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


@dataclass
class ExternalTable:
    """An external table bound to a staged file."""

    name: str
    columns: List[ExternalColumn]
    location: str
    data_source: str
    file_format: str
    schema: str = "dbo"
    reject: RejectPolicy = field(default_factory=RejectPolicy)

    def __post_init__(self) -> None:
        if not self.columns:
            raise ConfigurationError(
                "External table needs at least one column",
                table=self.qualified_name,
                field="columns",
            )
        seen = set()
        for column in self.columns:
            key = column.name.lower()
            if key in seen:
                raise ConfigurationError(
                    f"Duplicate column {column.name!r}",
                    table=self.qualified_name,
                    field="columns",
                )
            seen.add(key)
        if not self.location:
            raise ConfigurationError("External table location is required", table=self.qualified_name, field="location")

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]


@dataclass(frozen=True)
class Distribution:
    """Table distribution: HASH(column), ROUND_ROBIN or REPLICATE."""

    kind: str = "ROUND_ROBIN"
    column: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "Distribution":
        """Parse a distribution clause.

        Example:
            >>> Distribution.parse("HASH(ProductKey)")
            Distribution(kind='HASH', column='ProductKey')
        """
        match = _DISTRIBUTION_PATTERN.match(text or "")
        if not match:
            raise ConfigurationError(
                f"Malformed distribution: {text!r}",
                field="distribution",
                value=text,
                suggestion="Use HASH(column), ROUND_ROBIN or REPLICATE.",
            )
        if match.group("column"):
            return cls("HASH", match.group("column"))
        return cls(match.group("kind").upper())

    @property
    def clause(self) -> str:
        if self.kind == "HASH":
            return f"HASH({quote_name(self.column or '')})"
        return self.kind

    def __str__(self) -> str:
        return f"HASH({self.column})" if self.kind == "HASH" else self.kind


@dataclass
class TargetTable:
    """The distributed table created by CTAS."""

    name: str
    schema: str = "dbo"
    distribution: Distribution = field(default_factory=Distribution)
    index: str = "CLUSTERED COLUMNSTORE INDEX"

    def __post_init__(self) -> None:
        if isinstance(self.distribution, str):
            self.distribution = Distribution.parse(self.distribution)
        self.index = " ".join(self.index.upper().split())
        if self.index not in INDEX_TYPES:
            raise ConfigurationError(
                f"Unsupported table index: {self.index}",
                table=self.qualified_name,
                field="index",
                suggestion=f"Use one of: {', '.join(INDEX_TYPES)}",
            )

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass
class LoadPlan:
    """Everything the load of one staged file needs.

    Cross-checks that the objects reference each other by name.
    """

    name: str
    credential: ScopedCredential
    data_source: ExternalDataSource
    file_format: DelimitedTextFormat
    external_table: ExternalTable
    target: TargetTable
    replace_target: bool = False
    drop_external_after_load: bool = False
    skew_tolerance: float = 0.1
    expected_rows: Optional[int] = None

    def __post_init__(self) -> None:
        if self.data_source.credential and self.data_source.credential != self.credential.name:
            raise ConfigurationError(
                f"Data source {self.data_source.name} uses credential "
                f"{self.data_source.credential}, plan defines {self.credential.name}",
                table=self.name,
                field="data_source.credential",
            )
        if self.external_table.data_source != self.data_source.name:
            raise ConfigurationError(
                f"External table uses data source {self.external_table.data_source}, "
                f"plan defines {self.data_source.name}",
                table=self.name,
                field="external_table.data_source",
            )
        if self.external_table.file_format != self.file_format.name:
            raise ConfigurationError(
                f"External table uses file format {self.external_table.file_format}, "
                f"plan defines {self.file_format.name}",
                table=self.name,
                field="external_table.file_format",
            )
        dist = self.target.distribution
        if dist.kind == "HASH":
            names = {c.lower() for c in self.external_table.column_names}
            if (dist.column or "").lower() not in names:
                raise ConfigurationError(
                    f"Distribution column {dist.column} is not an external table column",
                    table=self.name,
                    field="target.distribution",
                    value=str(dist),
                )
        if self.skew_tolerance < 0:
            raise ConfigurationError("skew_tolerance must not be negative", field="verify.skew_tolerance")


# ---------------------------------------------------------------------------
# DDL generation
# ---------------------------------------------------------------------------


def generate_master_key_ddl(password: Optional[str] = None, *, guard: bool = True) -> str:
    """CREATE MASTER KEY, optionally guarded by an existence check."""
    statement = "CREATE MASTER KEY"
    if password:
        statement += f" ENCRYPTION BY PASSWORD = {_literal(password)}"
    statement += ";"
    if not guard:
        return statement
    return (
        f"IF NOT EXISTS (SELECT * FROM sys.symmetric_keys WHERE name = '{MASTER_KEY_NAME}')\n"
        f"    {statement}"
    )


def generate_credential_ddl(
    credential: ScopedCredential,
    *,
    guard: bool = True,
    reveal_secret: bool = True,
) -> str:
    """CREATE DATABASE SCOPED CREDENTIAL for the storage secret."""
    secret = credential.secret if reveal_secret else "<storage account key>"
    statement = (
        f"CREATE DATABASE SCOPED CREDENTIAL {quote_name(credential.name)}\n"
        f"WITH IDENTITY = {_literal(credential.identity)},\n"
        f"     SECRET = {_literal(secret)};"
    )
    if not guard:
        return statement
    return (
        f"IF NOT EXISTS (SELECT * FROM sys.database_scoped_credentials "
        f"WHERE name = {_literal(credential.name)})\n"
        + _indent(statement)
    )


def generate_data_source_ddl(data_source: ExternalDataSource, *, guard: bool = True) -> str:
    """CREATE EXTERNAL DATA SOURCE over the blob location."""
    options = [
        f"TYPE = {data_source.type}",
        f"LOCATION = {_literal(data_source.location)}",
    ]
    if data_source.credential:
        options.append(f"CREDENTIAL = {quote_name(data_source.credential)}")
    statement = (
        f"CREATE EXTERNAL DATA SOURCE {quote_name(data_source.name)}\n"
        f"WITH (\n" + ",\n".join(f"    {o}" for o in options) + "\n);"
    )
    if not guard:
        return statement
    return (
        f"IF NOT EXISTS (SELECT * FROM sys.external_data_sources "
        f"WHERE name = {_literal(data_source.name)})\n"
        + _indent(statement)
    )


def generate_file_format_ddl(file_format: DelimitedTextFormat, *, guard: bool = True) -> str:
    """CREATE EXTERNAL FILE FORMAT for delimited text."""
    options = [
        f"FIELD_TERMINATOR = {_literal(file_format.field_terminator)}",
        f"STRING_DELIMITER = {_literal(file_format.string_delimiter)}",
    ]
    if file_format.date_format:
        options.append(f"DATE_FORMAT = {_literal(file_format.date_format)}")
    options.append(f"USE_TYPE_DEFAULT = {'TRUE' if file_format.use_type_default else 'FALSE'}")
    if file_format.first_row > 1:
        options.append(f"FIRST_ROW = {file_format.first_row}")
    options.append(f"ENCODING = {_literal(file_format.encoding)}")

    statement = (
        f"CREATE EXTERNAL FILE FORMAT {quote_name(file_format.name)}\n"
        f"WITH (\n"
        f"    FORMAT_TYPE = DELIMITEDTEXT,\n"
        f"    FORMAT_OPTIONS (\n"
        + ",\n".join(f"        {o}" for o in options)
        + "\n    )\n);"
    )
    if not guard:
        return statement
    return (
        f"IF NOT EXISTS (SELECT * FROM sys.external_file_formats "
        f"WHERE name = {_literal(file_format.name)})\n"
        + _indent(statement)
    )


def generate_drop_external_table_ddl(table: ExternalTable) -> str:
    return (
        f"IF OBJECT_ID({_literal(table.qualified_name)}) IS NOT NULL\n"
        f"    DROP EXTERNAL TABLE {quote_name(table.qualified_name)};"
    )


def generate_external_table_ddl(table: ExternalTable, *, guard: bool = True) -> str:
    """CREATE EXTERNAL TABLE over the staged file.

    With ``guard`` the table is dropped first if it exists; external
    tables hold no data so recreating them is safe.
    """
    columns = ",\n".join(f"    {c.ddl}" for c in table.columns)
    options = [
        f"LOCATION = {_literal(table.location)}",
        f"DATA_SOURCE = {quote_name(table.data_source)}",
        f"FILE_FORMAT = {quote_name(table.file_format)}",
        *table.reject.clauses,
    ]
    statement = (
        f"CREATE EXTERNAL TABLE {quote_name(table.qualified_name)} (\n"
        f"{columns}\n"
        f")\n"
        f"WITH (\n" + ",\n".join(f"    {o}" for o in options) + "\n);"
    )
    if not guard:
        return statement
    return generate_drop_external_table_ddl(table) + "\n\n" + statement


def generate_ctas_ddl(
    target: TargetTable,
    source: ExternalTable,
    *,
    replace: bool = False,
) -> str:
    """CREATE TABLE AS SELECT from the external table into the target."""
    qualified = quote_name(target.qualified_name)
    statement = (
        f"CREATE TABLE {qualified}\n"
        f"WITH (\n"
        f"    DISTRIBUTION = {target.distribution.clause},\n"
        f"    {target.index}\n"
        f")\n"
        f"AS SELECT * FROM {quote_name(source.qualified_name)}\n"
        f"OPTION (LABEL = {_literal('CTAS : Load ' + qualified)});"
    )
    if not replace:
        return statement
    return (
        f"IF OBJECT_ID({_literal(target.qualified_name)}, 'U') IS NOT NULL\n"
        f"    DROP TABLE {qualified};\n\n" + statement
    )


def generate_rebuild_ddl(target: TargetTable) -> str:
    return f"ALTER INDEX ALL ON {quote_name(target.qualified_name)} REBUILD;"


def generate_verification_sql(target: TargetTable) -> List[str]:
    """Row count and per-distribution space usage queries."""
    return [
        f"SELECT COUNT_BIG(*) AS row_count FROM {quote_name(target.qualified_name)};",
        f"DBCC PDW_SHOWSPACEUSED({_literal(target.qualified_name)});",
    ]


def generate_load_script(plan: LoadPlan, *, reveal_secrets: bool = False) -> str:
    """Render the full load as one T-SQL script.

    Every setup statement is guarded so the script can be re-run. Secrets
    are masked unless ``reveal_secrets`` is set.
    """
    target = plan.target
    password = plan.credential.master_key_password
    if password and not reveal_secrets:
        password = "<master key password>"
    sections = [
        (
            "1. Master key and database scoped credential",
            generate_master_key_ddl(password)
            + "\n\n"
            + generate_credential_ddl(plan.credential, reveal_secret=reveal_secrets),
        ),
        ("2. External data source", generate_data_source_ddl(plan.data_source)),
        ("3. External file format", generate_file_format_ddl(plan.file_format)),
        ("4. External table", generate_external_table_ddl(plan.external_table)),
        (
            f"5. Load {target.qualified_name} ({target.distribution}, {target.index})",
            generate_ctas_ddl(target, plan.external_table, replace=plan.replace_target),
        ),
        ("6. Rebuild indexes", generate_rebuild_ddl(target)),
        ("7. Verify", "\n".join(generate_verification_sql(target))),
    ]
    if plan.drop_external_after_load:
        sections.insert(
            5,
            ("5b. Drop external table", f"DROP EXTERNAL TABLE {quote_name(plan.external_table.qualified_name)};"),
        )

    lines = [f"-- PolyBase load: {plan.name}", ""]
    for title, body in sections:
        lines.append(f"-- {title}")
        lines.append(body)
        lines.append("")
    return "\n".join(lines)


def _indent(text: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line if line else line for line in text.splitlines())
