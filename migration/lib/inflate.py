"""Dataset inflation.

Multiplies a small reference table into a larger one: every source row is
copied once per multiplier ``i`` with its key shifted by ``i * offset`` and
a suffix appended to its text columns. Used to turn a sample database into
a dataset big enough to exercise distribution and columnstore behaviour.

The work is expressed as an Ibis query so it runs inside the source
database (SQL Server, DuckDB, ...) rather than in Python.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import ibis
import ibis.expr.types as ir
import pandas as pd

from migration.lib.connections import open_table, table_exists
from migration.lib.errors import AlreadyExistsError, ConfigurationError, KeyCollisionError
from migration.lib.polybase import quote_name, split_name
from migration.lib.sqltypes import INTEGER_RANGES

logger = logging.getLogger(__name__)

__all__ = [
    "InflationResult",
    "InflationSpec",
    "build_inflated",
    "check_offset",
    "generate_inflation_sql",
    "inflate_frame",
    "inflate_table",
]

_IBIS_KEY_TYPES = {
    "TINYINT": "uint8",
    "SMALLINT": "int16",
    "INT": "int32",
    "BIGINT": "int64",
}


@dataclass
class InflationSpec:
    """What to inflate and how.

    Example:
        spec = InflationSpec(
            source="dbo.DimProduct",
            target="dbo.DimProduct_Inflated",
            key_column="ProductKey",
            multipliers=(1, 50),
            offset=1000,
            text_columns=["EnglishProductName"],
        )
    """

    source: str
    target: str
    key_column: str
    multipliers: Tuple[int, int] = (1, 1)
    offset: int = 1000
    text_columns: Optional[List[str]] = None  # None = every string column but the key
    suffix_template: str = "_{i}"
    include_source: bool = True
    key_type: str = "INT"

    def __post_init__(self) -> None:
        self.multipliers = tuple(self.multipliers)  # type: ignore[assignment]
        if len(self.multipliers) != 2:
            raise ConfigurationError(
                "multipliers must be a [lo, hi] pair",
                field="multipliers",
                value=self.multipliers,
            )
        lo, hi = self.multipliers
        if lo < 1:
            raise ConfigurationError("Multiplier range must start at 1 or above", field="multipliers", value=self.multipliers)
        if hi < lo:
            raise ConfigurationError("Multiplier range is empty", field="multipliers", value=self.multipliers)
        if self.offset <= 0:
            raise ConfigurationError("offset must be positive", field="offset", value=self.offset)
        self.key_type = self.key_type.upper()
        if self.key_type not in INTEGER_RANGES:
            raise ConfigurationError(
                f"Unsupported key type: {self.key_type}",
                field="key_type",
                value=self.key_type,
                suggestion=f"Use one of: {', '.join(INTEGER_RANGES)}",
            )
        if self.source == self.target:
            raise ConfigurationError("Inflation target must differ from its source", field="target", value=self.target)
        try:
            self.suffix_template.format(i=1)
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid suffix template: {e}",
                field="suffix_template",
                value=self.suffix_template,
            ) from e

    @property
    def copies(self) -> int:
        lo, hi = self.multipliers
        return hi - lo + 1

    def suffix(self, i: int) -> str:
        return self.suffix_template.format(i=i)


@dataclass
class InflationResult:
    """Outcome of one inflation run."""

    source: str
    target: str
    source_rows: int
    synthetic_rows: int
    total_rows: int
    key_range: Tuple[Optional[int], Optional[int]] = (None, None)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "source_rows": self.source_rows,
            "synthetic_rows": self.synthetic_rows,
            "total_rows": self.total_rows,
            "key_range": list(self.key_range),
        }


def check_offset(spec: InflationSpec, min_key: Optional[int], max_key: Optional[int]) -> None:
    """Validate the offset against the source key range.

    Raises:
        KeyCollisionError: If shifted keys could collide
        ConfigurationError: If the largest synthetic key overflows the key type
    """
    if max_key is None or min_key is None:
        return

    required = max(max_key, max_key - min_key)
    if spec.offset <= required:
        raise KeyCollisionError(
            f"Offset {spec.offset} is too small for keys {min_key}..{max_key}",
            table=spec.source,
            key_column=spec.key_column,
            offset=spec.offset,
            max_key=required,
        )

    low, high = INTEGER_RANGES[spec.key_type]
    _, hi = spec.multipliers
    largest = hi * spec.offset + max_key
    if largest > high or min_key < low:
        raise ConfigurationError(
            f"Synthetic key {largest} overflows {spec.key_type}",
            field="offset",
            value=spec.offset,
            details={"max_key": max_key, "multiplier_hi": hi},
            suggestion="Lower the multiplier range or offset, or use key_type BIGINT.",
        )


def _resolve_text_columns(table: ir.Table, spec: InflationSpec) -> List[str]:
    schema = table.schema()
    if spec.text_columns is None:
        return [
            name
            for name, dtype in schema.items()
            if dtype.is_string() and name != spec.key_column
        ]

    missing = [c for c in spec.text_columns if c not in schema]
    if missing:
        raise ConfigurationError(
            f"Text columns not found in {spec.source}: {', '.join(missing)}",
            field="text_columns",
            value=missing,
        )
    non_text = [c for c in spec.text_columns if not schema[c].is_string()]
    if non_text:
        raise ConfigurationError(
            f"Columns are not text: {', '.join(non_text)}",
            field="text_columns",
            value=non_text,
        )
    if spec.key_column in spec.text_columns:
        raise ConfigurationError("The key column cannot be a text column", field="text_columns")
    return list(spec.text_columns)


def build_inflated(table: ir.Table, spec: InflationSpec) -> ir.Table:
    """Build the inflated table expression.

    The result is the source rows (when ``include_source``) followed by one
    shifted copy per multiplier, all with the key cast to ``key_type``.
    """
    schema = table.schema()
    if spec.key_column not in schema:
        raise ConfigurationError(
            f"Key column {spec.key_column!r} not found in {spec.source}",
            field="key_column",
            value=spec.key_column,
        )
    if not schema[spec.key_column].is_integer():
        raise ConfigurationError(
            f"Key column {spec.key_column!r} must be an integer column",
            field="key_column",
            details={"type": str(schema[spec.key_column])},
        )

    text_columns = _resolve_text_columns(table, spec)
    key = table[spec.key_column]
    key_dtype = _IBIS_KEY_TYPES[spec.key_type]

    parts: List[ir.Table] = []
    if spec.include_source:
        parts.append(table.mutate(**{spec.key_column: key.cast(key_dtype)}))

    lo, hi = spec.multipliers
    for i in range(lo, hi + 1):
        shifted: Dict[str, Any] = {
            spec.key_column: (key.cast("int64") + i * spec.offset).cast(key_dtype),
        }
        suffix = spec.suffix(i)
        for column in text_columns:
            shifted[column] = table[column].concat(suffix)
        parts.append(table.mutate(**shifted))

    if len(parts) == 1:
        return parts[0]
    return ibis.union(*parts)


def _key_stats(table: ir.Table, key_column: str) -> Tuple[int, Optional[int], Optional[int]]:
    stats = table.aggregate(
        rows=table.count(),
        min_key=table[key_column].min(),
        max_key=table[key_column].max(),
    ).to_pandas()
    row = stats.iloc[0]
    rows = int(row["rows"])
    if rows == 0 or pd.isna(row["max_key"]):
        return rows, None, None
    return rows, int(row["min_key"]), int(row["max_key"])


def _check_unique(expr: ir.Table, spec: InflationSpec) -> Tuple[int, Optional[int], Optional[int]]:
    stats = expr.aggregate(
        rows=expr.count(),
        keys=expr[spec.key_column].nunique(),
        min_key=expr[spec.key_column].min(),
        max_key=expr[spec.key_column].max(),
    ).to_pandas()
    row = stats.iloc[0]
    rows, keys = int(row["rows"]), int(row["keys"])
    if rows != keys:
        raise KeyCollisionError(
            f"Inflated keys are not unique ({keys} distinct keys for {rows} rows)",
            table=spec.target,
            key_column=spec.key_column,
            offset=spec.offset,
            suggestion="Check the source key column for duplicates or NULLs.",
        )
    if rows == 0:
        return rows, None, None
    return rows, int(row["min_key"]), int(row["max_key"])


def inflate_table(
    con: ibis.BaseBackend,
    spec: InflationSpec,
    *,
    replace: bool = False,
) -> InflationResult:
    """Inflate ``spec.source`` into a new table ``spec.target``.

    The source is never modified. Re-running against an existing target
    raises AlreadyExistsError unless ``replace`` is set.

    Raises:
        AlreadyExistsError: If the target exists and replace is False
        KeyCollisionError: If the offset is too small or keys collide
        ConfigurationError: If the inflation settings do not fit the source table
    """
    target_schema, target_name = split_name(spec.target)

    if table_exists(con, spec.target):
        if not replace:
            raise AlreadyExistsError(
                f"Inflation target {spec.target} already exists",
                object_type="TABLE",
                name=spec.target,
                suggestion="Drop the target table or re-run with replace=True.",
            )
        logger.info("Dropping existing inflation target %s", spec.target)
        if target_schema:
            con.drop_table(target_name, database=target_schema)
        else:
            con.drop_table(target_name)

    source = open_table(con, spec.source)
    source_rows, min_key, max_key = _key_stats(source, spec.key_column)
    check_offset(spec, min_key, max_key)

    expr = build_inflated(source, spec)
    total_rows, out_min, out_max = _check_unique(expr, spec)

    logger.info(
        "Inflating %s -> %s: %d rows x %d copies (offset %d)",
        spec.source,
        spec.target,
        source_rows,
        spec.copies,
        spec.offset,
    )
    if target_schema:
        con.create_table(target_name, expr, database=target_schema)
    else:
        con.create_table(target_name, expr)

    result = InflationResult(
        source=spec.source,
        target=spec.target,
        source_rows=source_rows,
        synthetic_rows=source_rows * spec.copies,
        total_rows=total_rows,
        key_range=(out_min, out_max),
    )
    logger.info("Inflated %s: %d rows written", spec.target, result.total_rows)
    return result


def inflate_frame(df: pd.DataFrame, spec: InflationSpec) -> pd.DataFrame:
    """Inflate an in-memory DataFrame, returning rows ordered by key."""
    if df.empty:
        return df.copy()

    keys = df[spec.key_column]
    check_offset(spec, int(keys.min()), int(keys.max()))

    expr = build_inflated(ibis.memtable(df), spec)
    _check_unique(expr, spec)
    return expr.order_by(spec.key_column).to_pandas()


def generate_inflation_sql(spec: InflationSpec, columns: Sequence[str], text_columns: Sequence[str]) -> str:
    """Render the inflation as a T-SQL script for the source database.

    Args:
        spec: Inflation spec
        columns: All source columns, in table order
        text_columns: Columns that get the suffix appended
    """
    lo, hi = spec.multipliers
    source = quote_name(spec.source)
    target = quote_name(spec.target)
    column_list = ", ".join(quote_name(c) for c in columns)

    prefix, _, tail = spec.suffix_template.partition("{i}")
    has_counter = "{i}" in spec.suffix_template

    select_items = []
    for column in columns:
        quoted = quote_name(column)
        if column == spec.key_column:
            select_items.append(f"{quoted} + @i * {spec.offset}")
        elif column in text_columns:
            pieces = [quoted]
            if prefix:
                pieces.append(f"N'{_escape(prefix)}'")
            if has_counter:
                pieces.append("CAST(@i AS NVARCHAR(10))")
            if tail:
                pieces.append(f"N'{_escape(tail)}'")
            select_items.append(" + ".join(pieces))
        else:
            select_items.append(quoted)
    select_list = ",\n            ".join(select_items)

    seed = (
        f"SELECT * INTO {target} FROM {source};"
        if spec.include_source
        else f"SELECT TOP 0 * INTO {target} FROM {source};"
    )

    return (
        f"-- Inflate {spec.source} into {spec.target} "
        f"(multipliers {lo}..{hi}, key offset {spec.offset})\n"
        f"IF OBJECT_ID(N'{_escape(spec.target)}', N'U') IS NOT NULL\n"
        f"    THROW 50001, N'{_escape(spec.target)} already exists', 1;\n"
        f"{seed}\n"
        f"DECLARE @i INT = {lo};\n"
        f"WHILE @i <= {hi}\n"
        f"BEGIN\n"
        f"    INSERT INTO {target} ({column_list})\n"
        f"    SELECT {select_list}\n"
        f"    FROM {source};\n"
        f"    SET @i += 1;\n"
        f"END;\n"
    )


def _escape(text: str) -> str:
    return text.replace("'", "''")
