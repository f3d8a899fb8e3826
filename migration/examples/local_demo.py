"""
Example Migration: Contoso on one machine
=========================================
Runs the full inflate -> export -> PolyBase load workflow offline, with a
DuckDB file standing in for ContosoRetailDW and the in-process warehouse
standing in for the dedicated SQL pool.

This example shows:
- Inflating DimProduct 51x with shifted keys
- Exporting to pipe-delimited staged files with checksum sidecars
- Loading a REPLICATE dimension and a HASH-distributed fact table
- Reading the verification report

To run:
    python -m migration.examples.local_demo

Or through the CLI once the sample data exists:
    python -m migration run migration/examples/local_contoso.yaml --local
"""

from datetime import datetime, timedelta
from pathlib import Path

import ibis
import pandas as pd

from migration.lib.config_loader import load_config
from migration.lib.logging import setup_logging
from migration.lib.runner import MigrationRunner

EXAMPLE_DIR = Path(__file__).parent
SAMPLE_DIR = EXAMPLE_DIR / "sample_data"
CONFIG = EXAMPLE_DIR / "local_contoso.yaml"

BRANDS = ["Contoso", "Litware", "Adventure Works", "Fabrikam", "Proseware"]


def create_sample_data(products: int = 200, sales: int = 5000, directory: Path = SAMPLE_DIR) -> Path:
    """Create a small ContosoRetailDW-shaped DuckDB database."""
    directory.mkdir(parents=True, exist_ok=True)
    database = directory / "contoso.duckdb"
    con = ibis.duckdb.connect(str(database))

    start = datetime(2009, 1, 1)
    product_df = pd.DataFrame(
        {
            "ProductKey": range(1, products + 1),
            "ProductName": [f"Product {i}" for i in range(1, products + 1)],
            "BrandName": [BRANDS[i % len(BRANDS)] for i in range(products)],
            "UnitPrice": [round(9.99 + i * 1.5, 2) for i in range(products)],
            "AvailableForSaleDate": [start + timedelta(days=i) for i in range(products)],
        }
    )
    sales_df = pd.DataFrame(
        {
            "OnlineSalesKey": range(1, sales + 1),
            "ProductKey": [(i * 7) % products + 1 for i in range(sales)],
            "SalesQuantity": [i % 5 + 1 for i in range(sales)],
            "SalesAmount": [round((i % 5 + 1) * 19.99, 2) for i in range(sales)],
        }
    )
    con.create_table("DimProduct", product_df, overwrite=True)
    con.create_table("FactOnlineSales", sales_df, overwrite=True)
    con.disconnect()
    return database


def main() -> None:
    setup_logging()
    create_sample_data()

    config = load_config(CONFIG)
    with MigrationRunner(config, local=True, node_count=4) as runner:
        results = runner.run(parallel=2)

    for result in results:
        print(result)
        if result.load and result.load.report:
            report = result.load.report
            print(f"  {report.summary()}")
            for node, usage in report.by_node().items():
                print(f"    node {node}: {usage.rows:,} rows, {usage.reserved_kb:,} KB reserved")
        if result.error:
            print(f"  error: {result.error}")


if __name__ == "__main__":
    main()
