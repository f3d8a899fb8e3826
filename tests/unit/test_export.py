"""Tests for exporting tables to staged delimited files."""

import hashlib
from datetime import datetime
from unittest.mock import MagicMock

import pandas as pd
import pytest

from migration.lib.errors import MigrationError, TransferError
from migration.lib.export import (
    checksum_path,
    export_from_connection,
    export_table,
    open_staged_file,
    serialize_rows,
)
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.orchestrator import LoadOrchestrator
from migration.lib.polybase import ExternalColumn
from migration.lib.storage import LocalStorage, StorageResult
from migration.lib.warehouse import LocalWarehouse


class TestSerializeRows:
    """Tests for serialize_rows."""

    def test_pipe_delimited(self, product_frame, pipe_format):
        text = serialize_rows(product_frame, pipe_format)
        assert text == "1|Bike|199.5\n2|Helmet|35.0\n3|Lock|12.25\n"

    def test_nulls_are_empty_fields(self, pipe_format):
        df = pd.DataFrame({"ProductKey": [1], "Color": [None], "Weight": [float("nan")]})
        assert serialize_rows(df, pipe_format) == "1||\n"

    def test_header_row_when_first_row_is_two(self, product_frame):
        fmt = DelimitedTextFormat(first_row=2)
        lines = serialize_rows(product_frame, fmt).splitlines()
        assert lines[0] == "ProductKey|ProductName|UnitPrice"
        assert len(lines) == 4

    def test_dates_and_string_delimiter(self):
        fmt = DelimitedTextFormat(
            field_terminator=",",
            string_delimiter='"',
            date_format="yyyy-MM-dd",
        )
        df = pd.DataFrame({"DateKey": [datetime(2009, 1, 1)], "Name": ["Bike, red"]})
        assert serialize_rows(df, fmt) == '2009-01-01,"Bike, red"\n'


class TestExportTable:
    """Tests for export_table."""

    def test_writes_file_and_sidecar(self, product_frame, pipe_format, staging, staging_dir):
        staged = export_table(product_frame, staging, "/DimProduct/DimProduct.txt", pipe_format)

        data_file = staging_dir / "DimProduct" / "DimProduct.txt"
        payload = data_file.read_bytes()
        assert staged.row_count == 3
        assert staged.bytes_written == len(payload)
        assert staged.checksum == hashlib.sha256(payload).hexdigest()
        assert staged.file_format == "TextFileFormat"

        sidecar = (staging_dir / "DimProduct" / "_DimProduct.txt.sha256").read_text()
        assert sidecar == f"{staged.checksum}  DimProduct.txt\n"

    def test_order_by(self, pipe_format, staging, staging_dir):
        df = pd.DataFrame({"ProductKey": [3, 1, 2], "ProductName": ["c", "a", "b"]})
        export_table(df, staging, "/p/p.txt", pipe_format, order_by="ProductKey")
        assert (staging_dir / "p" / "p.txt").read_text() == "1|a\n2|b\n3|c\n"

    def test_export_from_connection(self, duckdb_con, product_frame, pipe_format, staging, staging_dir):
        duckdb_con.create_table("DimProduct", product_frame)
        staged = export_from_connection(
            duckdb_con,
            "DimProduct",
            staging,
            "/DimProduct/DimProduct.txt",
            pipe_format,
            order_by=["ProductKey"],
        )
        assert staged.row_count == 3
        assert (staging_dir / "DimProduct" / "DimProduct.txt").read_text().startswith("1|Bike|")

    def test_nullable_integer_column_keeps_integer_text(self, duckdb_con, pipe_format, staging, staging_dir):
        """NULLs in an integer column do not turn its values into floats."""
        df = pd.DataFrame({"k": [1, 2, 3], "sub": pd.array([10, None, 30], dtype="Int64")})
        duckdb_con.create_table("DimProduct", df)
        export_from_connection(duckdb_con, "DimProduct", staging, "/DimProduct/DimProduct.txt", pipe_format, order_by="k")
        assert (staging_dir / "DimProduct" / "DimProduct.txt").read_text() == "1|10\n2|\n3|30\n"

    def test_nullable_integer_column_loads(self, duckdb_con, pipe_format, staging, make_plan):
        """A staged nullable INT column loads with no rejects."""
        df = pd.DataFrame({"k": [1, 2, 3], "sub": pd.array([10, None, 30], dtype="Int64")})
        duckdb_con.create_table("DimProduct", df)
        staged = export_from_connection(
            duckdb_con, "DimProduct", staging, "/DimProduct/DimProduct.txt", pipe_format, order_by="k"
        )
        plan = make_plan(
            columns=[ExternalColumn("k", "INT", nullable=False), ExternalColumn("sub", "INT")],
            distribution="ROUND_ROBIN",
        )
        warehouse = LocalWarehouse()

        result = LoadOrchestrator(plan, warehouse, expected_rows=staged.row_count).run()

        assert result.success
        assert result.report.missing_rows == 0
        loaded = warehouse.read_table("cso.DimProduct").sort_values("k")
        assert loaded["sub"].tolist()[0] == 10
        assert loaded["sub"].isna().tolist() == [False, True, False]

    def test_failed_upload_raises_transfer_error(self, product_frame, pipe_format):
        storage = MagicMock()
        storage.get_full_path.side_effect = lambda p: f"wasbs://c@a.blob.core.windows.net{p}"
        storage.write_bytes.return_value = StorageResult(success=False, path="/x.txt", error="403 Forbidden")

        with pytest.raises(TransferError) as exc_info:
            export_table(product_frame, storage, "/x.txt", pipe_format)
        assert "403 Forbidden" in str(exc_info.value)
        # the sidecar is never written after a failed upload
        assert storage.write_bytes.call_count == 1

    def test_upload_exception_is_not_retried(self, product_frame, pipe_format):
        storage = MagicMock()
        storage.get_full_path.side_effect = lambda p: p
        storage.write_bytes.side_effect = ConnectionError("connection reset")

        with pytest.raises(TransferError) as exc_info:
            export_table(product_frame, storage, "/x.txt", pipe_format)
        assert exc_info.value.details["cause_type"] == "ConnectionError"
        assert storage.write_bytes.call_count == 1


class TestOpenStagedFile:
    """Tests for reopening a staged file for a resumed load."""

    def test_reads_back_row_count(self, product_frame, pipe_format, staging):
        staged = export_table(product_frame, staging, "/DimProduct/DimProduct.txt", pipe_format)
        reopened = open_staged_file(staging, "/DimProduct/DimProduct.txt", pipe_format)
        assert reopened.row_count == 3
        assert reopened.checksum == staged.checksum

    def test_header_rows_not_counted(self, product_frame, staging):
        fmt = DelimitedTextFormat(first_row=2)
        export_table(product_frame, staging, "/p/p.txt", fmt)
        assert open_staged_file(staging, "/p/p.txt", fmt).row_count == 3

    def test_checksum_mismatch(self, product_frame, pipe_format, staging, staging_dir):
        export_table(product_frame, staging, "/DimProduct/DimProduct.txt", pipe_format)
        (staging_dir / "DimProduct" / "DimProduct.txt").write_text("tampered\n")
        with pytest.raises(MigrationError, match="Checksum mismatch"):
            open_staged_file(staging, "/DimProduct/DimProduct.txt", pipe_format)

    def test_missing_file(self, pipe_format, staging):
        with pytest.raises(MigrationError, match="not found"):
            open_staged_file(staging, "/nothing.txt", pipe_format)

    def test_checksum_path(self):
        assert checksum_path("/DimProduct/DimProduct.txt") == "/DimProduct/_DimProduct.txt.sha256"
        assert checksum_path("DimProduct.txt") == "_DimProduct.txt.sha256"

    def test_missing_sidecar_is_tolerated(self, tmp_path, pipe_format):
        storage = LocalStorage(str(tmp_path))
        storage.write_text("/p/p.txt", "1|a\n")
        assert open_staged_file(storage, "/p/p.txt", pipe_format).row_count == 1
