"""SQL Server / Synapse column types.

Parses T-SQL type declarations such as ``NVARCHAR(50)`` or
``DECIMAL(19,4)`` and converts delimited-text field values into Python
values the way a PolyBase reader does: a value that does not fit the
declared type is a row-level reject, not a hard failure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from migration.lib.errors import ConfigurationError

if TYPE_CHECKING:
    from migration.lib.file_format import DateFormat

__all__ = [
    "INTEGER_RANGES",
    "SqlType",
    "parse_sql_type",
]

INTEGER_RANGES: Dict[str, Tuple[int, int]] = {
    "TINYINT": (0, 255),
    "SMALLINT": (-(2**15), 2**15 - 1),
    "INT": (-(2**31), 2**31 - 1),
    "BIGINT": (-(2**63), 2**63 - 1),
}

STRING_TYPES = {"CHAR", "NCHAR", "VARCHAR", "NVARCHAR"}
DECIMAL_TYPES = {"DECIMAL", "NUMERIC"}
MONEY_TYPES = {"MONEY", "SMALLMONEY"}
FLOAT_TYPES = {"FLOAT", "REAL"}
DATETIME_TYPES = {"DATETIME", "DATETIME2", "SMALLDATETIME"}

_TYPE_PATTERN = re.compile(
    r"^\s*([A-Za-z0-9_]+)\s*(?:\(\s*(MAX|\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$",
    re.IGNORECASE,
)

_INTEGER_TEXT = re.compile(r"^[+-]?\d+$")

_BIT_VALUES = {"1": True, "0": False, "true": True, "false": False}


@dataclass(frozen=True)
class SqlType:
    """A parsed column type declaration."""

    name: str
    length: Optional[int] = None  # None means MAX for string types
    precision: Optional[int] = None
    scale: Optional[int] = None

    @property
    def ddl(self) -> str:
        """Render the type as it appears in a column definition."""
        if self.name in STRING_TYPES:
            return f"{self.name}({'MAX' if self.length is None else self.length})"
        if self.name in DECIMAL_TYPES:
            return f"{self.name}({self.precision},{self.scale})"
        return self.name

    @property
    def is_string(self) -> bool:
        return self.name in STRING_TYPES

    @property
    def is_integer(self) -> bool:
        return self.name in INTEGER_RANGES

    @property
    def is_temporal(self) -> bool:
        return self.name == "DATE" or self.name in DATETIME_TYPES

    def default(self) -> Any:
        """Value substituted for a missing field when USE_TYPE_DEFAULT is on."""
        if self.is_string:
            return ""
        if self.is_temporal:
            return date(1900, 1, 1) if self.name == "DATE" else datetime(1900, 1, 1)
        if self.name == "BIT":
            return False
        if self.name in DECIMAL_TYPES or self.name in MONEY_TYPES:
            return Decimal(0)
        if self.name in FLOAT_TYPES:
            return 0.0
        return 0

    def coerce(self, text: str, date_format: Optional["DateFormat"] = None) -> Any:
        """Convert a field's text into a value of this type.

        Raises:
            ValueError: If the text is not a valid value for the type
        """
        if self.is_string:
            if self.length is not None and len(text) > self.length:
                raise ValueError(
                    f"value of length {len(text)} exceeds {self.ddl}"
                )
            return text

        if self.is_integer:
            stripped = text.strip()
            if not _INTEGER_TEXT.match(stripped):
                raise ValueError(f"invalid {self.name} value {text!r}")
            value = int(stripped)
            low, high = INTEGER_RANGES[self.name]
            if not low <= value <= high:
                raise ValueError(f"{value} out of range for {self.name}")
            return value

        if self.name == "BIT":
            try:
                return _BIT_VALUES[text.strip().lower()]
            except KeyError:
                raise ValueError(f"invalid BIT value {text!r}") from None

        if self.name in DECIMAL_TYPES or self.name in MONEY_TYPES:
            try:
                value = Decimal(text.strip())
            except InvalidOperation:
                raise ValueError(f"invalid {self.name} value {text!r}") from None
            if not value.is_finite():
                raise ValueError(f"invalid {self.name} value {text!r}")
            if self.name in DECIMAL_TYPES:
                digits = len(value.as_tuple().digits)
                exponent = value.as_tuple().exponent
                fraction = -exponent if isinstance(exponent, int) and exponent < 0 else 0
                whole = max(digits - fraction, 0)
                scale = self.scale or 0
                if whole > (self.precision or 18) - scale:
                    raise ValueError(f"{value} overflows {self.ddl}")
                return value.quantize(Decimal(1).scaleb(-scale))
            return value

        if self.name in FLOAT_TYPES:
            return float(text.strip())

        if self.is_temporal:
            stripped = text.strip()
            if date_format is not None:
                parsed = date_format.parse(stripped)
            else:
                parsed = datetime.fromisoformat(stripped)
            return parsed.date() if self.name == "DATE" else parsed

        raise ValueError(f"unsupported type {self.name}")


def parse_sql_type(declaration: str) -> SqlType:
    """Parse a T-SQL type declaration.

    Raises:
        ConfigurationError: If the declaration is malformed or unsupported

    Example:
        >>> parse_sql_type("nvarchar(50)")
        SqlType(name='NVARCHAR', length=50, precision=None, scale=None)
    """
    match = _TYPE_PATTERN.match(declaration or "")
    if not match:
        raise ConfigurationError(
            f"Malformed column type: {declaration!r}",
            field="type",
            value=declaration,
        )

    name = match.group(1).upper()
    size, scale = match.group(2), match.group(3)

    if name in STRING_TYPES:
        if size is None:
            return SqlType(name, length=1)
        if size.upper() == "MAX":
            if name in {"CHAR", "NCHAR"}:
                raise ConfigurationError(f"{name}(MAX) is not a valid type", field="type", value=declaration)
            return SqlType(name, length=None)
        return SqlType(name, length=int(size))

    if name in DECIMAL_TYPES:
        precision = int(size) if size and size.upper() != "MAX" else 18
        return SqlType(name, precision=precision, scale=int(scale) if scale else 0)

    if size is not None and name not in {"FLOAT", "DATETIME2"}:
        raise ConfigurationError(
            f"Type {name} does not take a size",
            field="type",
            value=declaration,
        )

    if (
        name in INTEGER_RANGES
        or name in MONEY_TYPES
        or name in FLOAT_TYPES
        or name in DATETIME_TYPES
        or name in {"BIT", "DATE"}
    ):
        return SqlType(name)

    raise ConfigurationError(
        f"Unsupported column type: {declaration!r}",
        field="type",
        value=declaration,
        suggestion="Use an integer, decimal, float, bit, date/time or character type.",
    )
