"""Pytest configuration and fixtures."""

from pathlib import Path
from typing import List, Optional

import ibis
import pandas as pd
import pytest

from migration.lib.connections import close_all_connections
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.polybase import (
    ExternalColumn,
    ExternalDataSource,
    ExternalTable,
    LoadPlan,
    RejectPolicy,
    ScopedCredential,
    TargetTable,
)
from migration.lib.storage import LocalStorage

PRODUCT_COLUMNS = [
    ExternalColumn("ProductKey", "INT", nullable=False),
    ExternalColumn("ProductName", "NVARCHAR(50)"),
    ExternalColumn("UnitPrice", "MONEY"),
]


@pytest.fixture(autouse=True)
def clean_connections():
    """Keep the connection registry empty between tests."""
    close_all_connections()
    yield
    close_all_connections()


@pytest.fixture
def pipe_format() -> DelimitedTextFormat:
    """Pipe-delimited format without string delimiters."""
    return DelimitedTextFormat(name="TextFileFormat", field_terminator="|")


@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def staging(staging_dir: Path) -> LocalStorage:
    """Local staging folder standing in for the blob container."""
    return LocalStorage(str(staging_dir) + "/")


@pytest.fixture
def product_frame() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "ProductKey": [1, 2, 3],
            "ProductName": ["Bike", "Helmet", "Lock"],
            "UnitPrice": [199.5, 35.0, 12.25],
        }
    )


@pytest.fixture
def duckdb_con():
    """In-memory DuckDB source database."""
    con = ibis.duckdb.connect()
    yield con
    con.disconnect()


@pytest.fixture
def make_plan(staging_dir: Path, pipe_format: DelimitedTextFormat):
    """Factory for load plans over the staging folder."""

    def _make(
        name: str = "product",
        *,
        columns: Optional[List[ExternalColumn]] = None,
        location: str = "/DimProduct/",
        distribution: str = "HASH(ProductKey)",
        index: str = "CLUSTERED COLUMNSTORE INDEX",
        reject: Optional[RejectPolicy] = None,
        file_format: Optional[DelimitedTextFormat] = None,
        target_name: str = "DimProduct",
        replace_target: bool = False,
        drop_external_after_load: bool = False,
    ) -> LoadPlan:
        fmt = file_format or pipe_format
        credential = ScopedCredential("AzureStorageCredential", secret="s3cr3t")
        data_source = ExternalDataSource(
            "AzureStorage",
            location=str(staging_dir) + "/",
            credential=credential.name,
        )
        external = ExternalTable(
            name=f"{target_name}_external",
            schema="asb",
            columns=list(columns or PRODUCT_COLUMNS),
            location=location,
            data_source=data_source.name,
            file_format=fmt.name,
            reject=reject or RejectPolicy(),
        )
        return LoadPlan(
            name=name,
            credential=credential,
            data_source=data_source,
            file_format=fmt,
            external_table=external,
            target=TargetTable(name=target_name, schema="cso", distribution=distribution, index=index),
            replace_target=replace_target,
            drop_external_after_load=drop_external_after_load,
        )

    return _make



LOCAL_CONFIG = """
source:
  connection: test_source
  type: duckdb
  database: ./source.duckdb

storage:
  location: ./staging/

credential:
  name: AzureStorageCredential
  secret: ${TEST_STORAGE_KEY}

file_format:
  name: TextFileFormat
  field_terminator: "|"
  date_format: yyyy-MM-dd HH:mm:ss.fff

migrations:
  - name: product
    inflate:
      source: DimProduct
      target: DimProduct_Inflated
      key_column: ProductKey
      multipliers: [1, 4]
      offset: 1000
    export:
      path: /DimProduct/DimProduct.txt
      order_by: ProductKey
    external_table:
      schema: asb
      columns:
        - {name: ProductKey, type: INT, nullable: false}
        - {name: ProductName, type: NVARCHAR(60)}
        - {name: UnitPrice, type: MONEY}
    target:
      schema: cso
      name: DimProduct
      distribution: REPLICATE

  - name: sales
    export:
      table: FactOnlineSales
      path: /FactOnlineSales/FactOnlineSales.txt
    external_table:
      schema: asb
      reject: {type: VALUE, value: 10}
      columns:
        - {name: OnlineSalesKey, type: INT, nullable: false}
        - {name: ProductKey, type: INT}
        - {name: SalesAmount, type: MONEY}
        - {name: DateKey, type: DATETIME}
    target:
      schema: cso
      name: FactOnlineSales
      distribution: HASH(OnlineSalesKey)
"""


@pytest.fixture
def migration_config(tmp_path: Path, monkeypatch) -> Path:
    """A two-table local configuration over a DuckDB source file."""
    monkeypatch.setenv("TEST_STORAGE_KEY", "local-key")

    con = ibis.duckdb.connect(str(tmp_path / "source.duckdb"))
    con.create_table(
        "DimProduct",
        pd.DataFrame(
            {
                "ProductKey": list(range(1, 11)),
                "ProductName": [f"Product {i}" for i in range(1, 11)],
                "UnitPrice": [float(i) + 0.5 for i in range(1, 11)],
            }
        ),
    )
    con.create_table(
        "FactOnlineSales",
        pd.DataFrame(
            {
                "OnlineSalesKey": list(range(1, 401)),
                "ProductKey": [i % 10 + 1 for i in range(400)],
                "SalesAmount": [round(i * 1.25, 2) for i in range(400)],
                "DateKey": pd.date_range("2009-01-01", periods=400, freq="h"),
            }
        ),
    )
    con.disconnect()

    path = tmp_path / "migration.yaml"
    path.write_text(LOCAL_CONFIG, encoding="utf-8")
    return path
