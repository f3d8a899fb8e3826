"""End-to-end migration of the Contoso example on the in-process warehouse.

Covers the full workflow the command line drives:
    1. Inflate DimProduct 51x in the DuckDB source
    2. Export both tables to pipe-delimited staged files
    3. Load them through the seven PolyBase steps
    4. Verify row counts and distribution
"""

from __future__ import annotations

import hashlib
import logging

import ibis
import pytest

from migration.__main__ import main
from migration.lib.config_loader import load_config
from migration.lib.orchestrator import LoadState
from migration.lib.runner import MigrationRunner
from migration.lib.warehouse import LocalWarehouse


class TestContosoMigration:
    """Full offline migration of the example configuration."""

    def test_full_migration(self, contoso_workspace):
        """Both tables reach Verified with every row accounted for."""
        config = load_config(contoso_workspace)
        warehouse = LocalWarehouse(node_count=4)

        with MigrationRunner(config, warehouse=warehouse) as runner:
            results = runner.run(parallel=2)

        product, sales = results
        assert product.success, product.error
        assert sales.success, sales.error

        # 40 source rows plus 50 shifted copies
        assert product.inflation.total_rows == 40 * 51
        assert product.load.state is LoadState.VERIFIED
        assert warehouse.row_count("cso.DimProduct") == 2040
        assert sales.load.report.row_count == 2000
        assert sales.load.report.missing_rows == 0

        # replicated dimension: a full copy on every node
        assert [n.rows for n in product.load.report.nodes] == [2040] * 4

        # hash-distributed fact: every node gets a share
        assert all(n.rows > 0 for n in sales.load.report.nodes)
        assert sum(n.rows for n in sales.load.report.nodes) == 2000

    def test_inflated_keys_and_names(self, contoso_workspace):
        """Inflated rows keep the source untouched and carry suffixed names."""
        config = load_config(contoso_workspace)
        with MigrationRunner(config, local=True) as runner:
            runner.run(["product"])
            source = runner.source
            inflated = source.table("DimProduct_Inflated").to_pandas()
            original = source.table("DimProduct").count().execute()

        assert original == 40
        assert inflated["ProductKey"].is_unique
        assert inflated["ProductKey"].max() == 50 * 1000 + 40
        row = inflated[inflated["ProductKey"] == 7 * 1000 + 12].iloc[0]
        assert row["ProductName"] == "Product 12_7"
        assert row["BrandName"].endswith("_7")

    def test_staged_file_matches_sidecar(self, contoso_workspace):
        """The sidecar holds the SHA-256 of the staged bytes."""
        config = load_config(contoso_workspace)
        with MigrationRunner(config, local=True) as runner:
            result = runner.run(["online_sales"])[0]

        staged_dir = contoso_workspace.parent / "sample_data" / "staging" / "FactOnlineSales"
        payload = (staged_dir / "FactOnlineSales.txt").read_bytes()
        sidecar = (staged_dir / "_FactOnlineSales.txt.sha256").read_text().split()[0]
        assert hashlib.sha256(payload).hexdigest() == sidecar == result.staged.checksum
        assert payload.decode("utf-8").splitlines()[0] == "1|1|1|19.99"

    def test_rerun_is_idempotent(self, contoso_workspace):
        """A second run re-inflates and reloads because the example sets replace."""
        config = load_config(contoso_workspace)
        warehouse = LocalWarehouse()
        with MigrationRunner(config, warehouse=warehouse) as runner:
            first = runner.run()
            second = runner.run()

        assert all(r.success for r in first + second)
        statuses = {s.step: s.status for s in second[0].load.steps}
        assert statuses["create_credential"] == "skipped"
        assert statuses["create_external_table"] == "replaced"
        assert warehouse.row_count("cso.DimProduct") == 2040

    def test_cli_run(self, contoso_workspace, monkeypatch, capsys):
        """The command line runs the same configuration."""
        monkeypatch.chdir(contoso_workspace.parent)
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        try:
            code = main(["run", str(contoso_workspace), "--local", "--parallel", "2"])
        finally:
            root.handlers[:] = handlers
            root.setLevel(level)
        assert code == 0
        out = capsys.readouterr().out
        assert "cso.DimProduct: 2,040 rows" in out
        assert "cso.FactOnlineSales: 2,000 rows" in out

    @pytest.mark.parametrize("nodes", [1, 3, 8])
    def test_node_counts(self, contoso_workspace, nodes):
        """Loads work for any node count."""
        config = load_config(contoso_workspace)
        with MigrationRunner(config, local=True, node_count=nodes) as runner:
            result = runner.run(["online_sales"])[0]
        assert len(result.load.report.nodes) == nodes
        assert result.load.report.row_count == 2000


def test_source_database_is_readable(contoso_workspace):
    """Sample data generation writes both source tables."""
    con = ibis.duckdb.connect(str(contoso_workspace.parent / "sample_data" / "contoso.duckdb"))
    try:
        assert set(con.list_tables()) >= {"DimProduct", "FactOnlineSales"}
    finally:
        con.disconnect()
