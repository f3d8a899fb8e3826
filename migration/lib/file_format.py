"""Delimited-text file format shared by the export and load stages.

The exported file and the external file format declared in the warehouse
must agree exactly: the same field terminator, string delimiter and date
pattern. Both stages therefore read them from one DelimitedTextFormat.

Date patterns use the PolyBase DATE_FORMAT notation
(``yyyy-MM-dd HH:mm:ss.fff``), not strftime.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd

from migration.lib.errors import ConfigurationError

__all__ = ["DateFormat", "DelimitedTextFormat", "DEFAULT_DATE_FORMAT"]

DEFAULT_DATE_FORMAT = "yyyy-MM-dd HH:mm:ss.fff"

_TOKEN_PATTERN = re.compile(r"yyyy|yy|MM|dd|HH|hh|mm|ss|fffffff|ffffff|fff|tt")

# Letters that only make sense as part of a token
_TOKEN_LETTERS = set("yMdHhmsft")

_ENCODINGS = {"UTF8": "utf-8", "UTF16": "utf-16"}


def _twelve_hour(dt: datetime) -> str:
    return f"{(dt.hour % 12) or 12:02d}"


_FORMATTERS: Dict[str, Callable[[datetime], str]] = {
    "yyyy": lambda dt: f"{dt.year:04d}",
    "yy": lambda dt: f"{dt.year % 100:02d}",
    "MM": lambda dt: f"{dt.month:02d}",
    "dd": lambda dt: f"{dt.day:02d}",
    "HH": lambda dt: f"{dt.hour:02d}",
    "hh": _twelve_hour,
    "mm": lambda dt: f"{dt.minute:02d}",
    "ss": lambda dt: f"{dt.second:02d}",
    "fff": lambda dt: f"{dt.microsecond // 1000:03d}",
    "ffffff": lambda dt: f"{dt.microsecond:06d}",
    "fffffff": lambda dt: f"{dt.microsecond * 10:07d}",
    "tt": lambda dt: "PM" if dt.hour >= 12 else "AM",
}

_PARSE_GROUPS: Dict[str, str] = {
    "yyyy": r"(?P<year>\d{4})",
    "yy": r"(?P<year2>\d{2})",
    "MM": r"(?P<month>\d{2})",
    "dd": r"(?P<day>\d{2})",
    "HH": r"(?P<hour>\d{2})",
    "hh": r"(?P<hour12>\d{2})",
    "mm": r"(?P<minute>\d{2})",
    "ss": r"(?P<second>\d{2})",
    "fff": r"(?P<millis>\d{3})",
    "ffffff": r"(?P<micros>\d{6})",
    "fffffff": r"(?P<ticks>\d{7})",
    "tt": r"(?P<ampm>AM|PM)",
}


class DateFormat:
    """A compiled PolyBase date pattern.

    Example:
        >>> fmt = DateFormat("yyyy-MM-dd HH:mm:ss.fff")
        >>> fmt.format(datetime(2024, 3, 5, 14, 7, 9, 250000))
        '2024-03-05 14:07:09.250'
        >>> fmt.parse("2024-03-05 14:07:09.250")
        datetime.datetime(2024, 3, 5, 14, 7, 9, 250000)
    """

    def __init__(self, pattern: str):
        self.pattern = pattern
        self._parts = self._tokenize(pattern)
        regex = "".join(
            _PARSE_GROUPS[value] if is_token else re.escape(value)
            for is_token, value in self._parts
        )
        self._regex = re.compile(f"^{regex}$")

    @staticmethod
    def _tokenize(pattern: str) -> List[Tuple[bool, str]]:
        if not pattern:
            raise ConfigurationError("Date format must not be empty", field="date_format")

        parts: List[Tuple[bool, str]] = []
        seen = set()
        pos = 0
        for match in _TOKEN_PATTERN.finditer(pattern):
            literal = pattern[pos:match.start()]
            if literal:
                parts.append((False, literal))
            token = match.group(0)
            if token in seen:
                raise ConfigurationError(
                    f"Date format repeats {token!r}",
                    field="date_format",
                    value=pattern,
                )
            seen.add(token)
            parts.append((True, token))
            pos = match.end()
        if pos < len(pattern):
            parts.append((False, pattern[pos:]))

        for is_token, value in parts:
            if not is_token and _TOKEN_LETTERS.intersection(value):
                raise ConfigurationError(
                    f"Unsupported date format element in {pattern!r}",
                    field="date_format",
                    value=pattern,
                    suggestion="Supported elements: yyyy yy MM dd HH hh mm ss fff ffffff fffffff tt",
                )
        if "hh" in seen and "tt" not in seen:
            raise ConfigurationError(
                "12-hour format 'hh' requires an AM/PM marker 'tt'",
                field="date_format",
                value=pattern,
            )
        return parts

    def format(self, value: Any) -> str:
        """Render a date or datetime according to the pattern."""
        if isinstance(value, pd.Timestamp):
            value = value.to_pydatetime()
        elif isinstance(value, date) and not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        return "".join(
            _FORMATTERS[part](value) if is_token else part
            for is_token, part in self._parts
        )

    def parse(self, text: str) -> datetime:
        """Parse text written in this pattern.

        Raises:
            ValueError: If the text does not match the pattern
        """
        match = self._regex.match(text)
        if not match:
            raise ValueError(f"{text!r} does not match date format {self.pattern!r}")
        groups = {k: v for k, v in match.groupdict().items() if v is not None}

        year = int(groups["year"]) if "year" in groups else 2000 + int(groups.get("year2", "0"))
        if "hour12" in groups:
            hour = int(groups["hour12"])
            if not 1 <= hour <= 12:
                raise ValueError(f"invalid 12-hour value in {text!r}")
            hour = hour % 12 + (12 if groups.get("ampm") == "PM" else 0)
        else:
            hour = int(groups.get("hour", "0"))

        if "ticks" in groups:
            micros = int(groups["ticks"]) // 10
        elif "micros" in groups:
            micros = int(groups["micros"])
        else:
            micros = int(groups.get("millis", "0")) * 1000

        return datetime(
            year,
            int(groups.get("month", "1")),
            int(groups.get("day", "1")),
            hour,
            int(groups.get("minute", "0")),
            int(groups.get("second", "0")),
            micros,
        )

    def __repr__(self) -> str:
        return f"DateFormat({self.pattern!r})"


@dataclass
class DelimitedTextFormat:
    """Delimited-text parsing rules (an EXTERNAL FILE FORMAT).

    Example:
        fmt = DelimitedTextFormat(
            name="TextFileFormat",
            field_terminator="|",
            string_delimiter="",
            date_format="yyyy-MM-dd HH:mm:ss.fff",
        )
    """

    name: str = "TextFileFormat"
    field_terminator: str = "|"
    string_delimiter: str = ""
    date_format: Optional[str] = DEFAULT_DATE_FORMAT
    use_type_default: bool = False
    first_row: int = 1
    encoding: str = "UTF8"

    _date: Optional[DateFormat] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("File format name is required", field="name")
        if not self.field_terminator:
            raise ConfigurationError("Field terminator must not be empty", field="field_terminator")
        if "\n" in self.field_terminator or "\r" in self.field_terminator:
            raise ConfigurationError(
                "Field terminator must not contain a line break",
                field="field_terminator",
                value=repr(self.field_terminator),
            )
        if len(self.string_delimiter) > 1:
            raise ConfigurationError(
                "String delimiter must be a single character or empty",
                field="string_delimiter",
                value=self.string_delimiter,
            )
        if self.string_delimiter and self.string_delimiter in self.field_terminator:
            raise ConfigurationError(
                "String delimiter must differ from the field terminator",
                field="string_delimiter",
                value=self.string_delimiter,
            )
        if self.first_row < 1:
            raise ConfigurationError("FIRST_ROW must be at least 1", field="first_row", value=self.first_row)
        self.encoding = self.encoding.upper().replace("-", "")
        if self.encoding not in _ENCODINGS:
            raise ConfigurationError(
                f"Unsupported encoding: {self.encoding}",
                field="encoding",
                value=self.encoding,
                suggestion="Use UTF8 or UTF16.",
            )
        if self.date_format:
            self._date = DateFormat(self.date_format)

    @property
    def dates(self) -> Optional[DateFormat]:
        """Compiled date pattern, or None for ISO-8601 dates."""
        return self._date

    @property
    def python_encoding(self) -> str:
        return _ENCODINGS[self.encoding]

    def format_value(self, value: Any) -> str:
        """Render one field value exactly as it is written to the file."""
        if value is None or value is pd.NaT or value is pd.NA:
            return ""
        if isinstance(value, float) and math.isnan(value):
            return ""
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (datetime, date, pd.Timestamp)):
            if self._date is not None:
                return self._date.format(value)
            return value.isoformat(sep=" ") if isinstance(value, datetime) else value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, float):
            return repr(float(value))
        if isinstance(value, int):
            return str(value)
        if hasattr(value, "item"):
            # numpy scalars
            return self.format_value(value.item())
        text = str(value)
        if self.string_delimiter:
            return f"{self.string_delimiter}{text}{self.string_delimiter}"
        return text

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> "DelimitedTextFormat":
        """Build from a YAML mapping."""
        known = {
            "name",
            "field_terminator",
            "string_delimiter",
            "date_format",
            "use_type_default",
            "first_row",
            "encoding",
        }
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown file_format option(s): {', '.join(sorted(unknown))}",
                field="file_format",
            )
        return cls(**options)
