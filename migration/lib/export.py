"""Export tables to delimited text in object storage.

The staged file is what the external table reads, so every value is
written exactly as the external file format declares it: the field
terminator between fields, strings wrapped in the string delimiter, and
dates in DATE_FORMAT. A value the format cannot express becomes a row
reject at load time, not an export failure.

Each staged file gets a ``_<name>.sha256`` sidecar. The leading underscore
keeps PolyBase from reading the sidecar as data when the external table
points at the folder.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

import ibis
import ibis.expr.types as ir
import pandas as pd

from migration.lib.connections import open_table
from migration.lib.errors import MigrationError, TransferError
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.storage import StorageBackend

logger = logging.getLogger(__name__)

__all__ = [
    "StagedFile",
    "checksum_path",
    "export_from_connection",
    "export_table",
    "open_staged_file",
    "serialize_rows",
]

OrderBy = Optional[Union[str, Sequence[str]]]


@dataclass
class StagedFile:
    """A delimited file written to storage for one table."""

    location: str
    relative_path: str
    row_count: int
    bytes_written: int
    checksum: str
    file_format: str
    written_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "relative_path": self.relative_path,
            "row_count": self.row_count,
            "bytes_written": self.bytes_written,
            "checksum": self.checksum,
            "file_format": self.file_format,
            "written_at": self.written_at,
        }


def checksum_path(path: str) -> str:
    """Sidecar path for a staged file: ``dir/_name.sha256``."""
    directory, name = posixpath.split(path)
    return posixpath.join(directory, f"_{name}.sha256")


def _header_lines(columns: List[str], file_format: DelimitedTextFormat) -> List[str]:
    if file_format.first_row <= 1:
        return []
    return [file_format.field_terminator.join(columns)] + [""] * (file_format.first_row - 2)


def serialize_rows(df: pd.DataFrame, file_format: DelimitedTextFormat) -> str:
    """Render a DataFrame as delimited text, one ``\\n``-terminated line per row.

    Example:
        >>> fmt = DelimitedTextFormat(field_terminator="|")
        >>> serialize_rows(pd.DataFrame({"id": [1], "name": ["Bike"]}), fmt)
        '1|Bike\\n'
    """
    terminator = file_format.field_terminator
    fmt_value = file_format.format_value

    lines = _header_lines([str(c) for c in df.columns], file_format)
    for row in df.itertuples(index=False, name=None):
        lines.append(terminator.join(fmt_value(value) for value in row))
    return "".join(line + "\n" for line in lines)


def _normalize_order(order_by: OrderBy) -> List[str]:
    if order_by is None:
        return []
    if isinstance(order_by, str):
        return [order_by]
    return list(order_by)


def _to_frame(data: Union[ir.Table, pd.DataFrame], order_by: OrderBy) -> pd.DataFrame:
    columns = _normalize_order(order_by)
    if isinstance(data, pd.DataFrame):
        if columns:
            return data.sort_values(columns, kind="mergesort").reset_index(drop=True)
        return data
    if columns:
        data = data.order_by([ibis.asc(c) for c in columns])
    df = data.to_pandas()
    # pandas widens integer columns holding NULLs to float64; 10 must stay "10"
    for name, dtype in data.schema().items():
        if dtype.is_integer() and df[name].dtype.kind == "f":
            df[name] = df[name].astype("Int64")
    return df


def export_table(
    data: Union[ir.Table, pd.DataFrame],
    storage: StorageBackend,
    path: str,
    file_format: DelimitedTextFormat,
    *,
    order_by: OrderBy = None,
) -> StagedFile:
    """Serialize a table and upload it as a staged file.

    Args:
        data: Ibis table expression or DataFrame
        storage: Storage backend rooted at the external data source location
        path: File path relative to the storage root (the external table LOCATION)
        file_format: Format the external table will read the file with
        order_by: Column(s) to sort by; row order is unspecified without it

    Raises:
        TransferError: If the upload fails. Nothing is retried; re-run the export.
    """
    df = _to_frame(data, order_by)
    text = serialize_rows(df, file_format)
    payload = text.encode(file_format.python_encoding)
    checksum = hashlib.sha256(payload).hexdigest()

    logger.info(
        "Exporting %d rows (%d bytes) to %s",
        len(df),
        len(payload),
        storage.get_full_path(path),
    )
    _write(storage, path, payload)
    sidecar = f"{checksum}  {posixpath.basename(path)}\n".encode("utf-8")
    _write(storage, checksum_path(path), sidecar)

    staged = StagedFile(
        location=storage.get_full_path(path),
        relative_path=path,
        row_count=len(df),
        bytes_written=len(payload),
        checksum=checksum,
        file_format=file_format.name,
    )
    logger.info("Staged %s: %d rows, sha256 %s", staged.location, staged.row_count, checksum[:12])
    return staged


def _write(storage: StorageBackend, path: str, payload: bytes) -> None:
    location = storage.get_full_path(path)
    try:
        result = storage.write_bytes(path, payload)
    except Exception as e:
        raise TransferError(f"Upload to {location} failed", location=location, cause=e) from e
    if not result.success:
        raise TransferError(
            f"Upload to {location} failed: {result.error}",
            location=location,
            details={"error": result.error},
        )


def export_from_connection(
    con: ibis.BaseBackend,
    table_name: str,
    storage: StorageBackend,
    path: str,
    file_format: DelimitedTextFormat,
    *,
    order_by: OrderBy = None,
) -> StagedFile:
    """Export a table straight from an Ibis connection."""
    return export_table(open_table(con, table_name), storage, path, file_format, order_by=order_by)


def open_staged_file(
    storage: StorageBackend,
    path: str,
    file_format: DelimitedTextFormat,
) -> StagedFile:
    """Describe a previously staged file, checking it against its sidecar.

    Raises:
        MigrationError: If the file is missing or its checksum does not match
    """
    location = storage.get_full_path(path)
    if not storage.exists(path):
        raise MigrationError(
            f"Staged file {location} not found",
            suggestion="Run the export before loading.",
        )

    payload = storage.read_bytes(path)
    checksum = hashlib.sha256(payload).hexdigest()
    sidecar = checksum_path(path)
    if storage.exists(sidecar):
        expected = storage.read_text(sidecar).split()[0]
        if expected != checksum:
            raise MigrationError(
                f"Checksum mismatch for {location}",
                details={"expected": expected, "actual": checksum},
                suggestion="The staged file changed after export; re-run the export.",
            )
    else:
        logger.warning("No checksum sidecar for %s", location)

    text = payload.decode(file_format.python_encoding)
    row_count = max(text.count("\n") - (file_format.first_row - 1), 0)
    return StagedFile(
        location=location,
        relative_path=path,
        row_count=row_count,
        bytes_written=len(payload),
        checksum=checksum,
        file_format=file_format.name,
    )
