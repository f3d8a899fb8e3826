"""Tests for PolyBase catalog objects and DDL generation."""

import pytest

from migration.lib.errors import ConfigurationError
from migration.lib.file_format import DelimitedTextFormat
from migration.lib.polybase import (
    Distribution,
    ExternalColumn,
    ExternalDataSource,
    ExternalTable,
    RejectPolicy,
    ScopedCredential,
    TargetTable,
    generate_credential_ddl,
    generate_ctas_ddl,
    generate_data_source_ddl,
    generate_external_table_ddl,
    generate_file_format_ddl,
    generate_load_script,
    generate_master_key_ddl,
    generate_rebuild_ddl,
    generate_verification_sql,
    quote_name,
    split_name,
)

BLOB = "wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net/"


class TestNames:
    """Tests for object name helpers."""

    def test_split_name(self):
        assert split_name("dbo.DimProduct") == ("dbo", "DimProduct")
        assert split_name("[cso].[FactOnlineSales]") == ("cso", "FactOnlineSales")
        assert split_name("DimProduct") == (None, "DimProduct")

    def test_split_name_rejects_three_parts(self):
        with pytest.raises(ConfigurationError):
            split_name("db.dbo.DimProduct")

    def test_quote_name_escapes_brackets(self):
        assert quote_name("dbo.Odd]Name") == "[dbo].[Odd]]Name]"


class TestDistribution:
    """Tests for Distribution.parse."""

    @pytest.mark.parametrize(
        "text,kind,column",
        [
            ("HASH(ProductKey)", "HASH", "ProductKey"),
            ("hash ( [ProductKey] )", "HASH", "ProductKey"),
            ("ROUND_ROBIN", "ROUND_ROBIN", None),
            ("replicate", "REPLICATE", None),
        ],
    )
    def test_parse(self, text, kind, column):
        dist = Distribution.parse(text)
        assert dist.kind == kind
        assert dist.column == column

    @pytest.mark.parametrize("text", ["HASH()", "HASH(a, b)", "RANDOM", ""])
    def test_malformed(self, text):
        with pytest.raises(ConfigurationError, match="Malformed distribution"):
            Distribution.parse(text)

    def test_clause_quotes_column(self):
        assert Distribution.parse("HASH(ProductKey)").clause == "HASH([ProductKey])"
        assert str(Distribution.parse("HASH(ProductKey)")) == "HASH(ProductKey)"


class TestRejectPolicy:
    """Tests for RejectPolicy validation and threshold checks."""

    def test_value_threshold(self):
        policy = RejectPolicy("VALUE", 2)
        assert not policy.exceeded(2, 100)
        assert policy.exceeded(3, 100)

    def test_percentage_threshold(self):
        policy = RejectPolicy("PERCENTAGE", 10, sample_value=100)
        assert not policy.exceeded(10, 100)
        assert policy.exceeded(11, 100)
        assert not policy.exceeded(0, 0)

    def test_percentage_requires_sample(self):
        with pytest.raises(ConfigurationError, match="REJECT_SAMPLE_VALUE"):
            RejectPolicy("PERCENTAGE", 5)

    def test_value_rejects_sample(self):
        with pytest.raises(ConfigurationError):
            RejectPolicy("VALUE", 5, sample_value=100)

    def test_value_must_be_integer(self):
        with pytest.raises(ConfigurationError):
            RejectPolicy("VALUE", 1.5)

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="Unknown reject type"):
            RejectPolicy("ROWS", 1)

    def test_clauses(self):
        assert RejectPolicy().clauses == ["REJECT_TYPE = VALUE", "REJECT_VALUE = 0"]
        assert RejectPolicy("percentage", 2.5, sample_value=1000).clauses == [
            "REJECT_TYPE = PERCENTAGE",
            "REJECT_VALUE = 2.5",
            "REJECT_SAMPLE_VALUE = 1000",
        ]


class TestCatalogObjects:
    """Tests for catalog object validation."""

    def test_data_source_validates_blob_location(self):
        with pytest.raises(ConfigurationError, match="Malformed storage location"):
            ExternalDataSource("AzureStorage", "wasbs://no-account-here")

    def test_data_source_requires_hadoop(self):
        with pytest.raises(ConfigurationError, match="TYPE = HADOOP"):
            ExternalDataSource("AzureStorage", BLOB, type="BLOB_STORAGE")

    def test_external_table_rejects_duplicate_columns(self):
        with pytest.raises(ConfigurationError, match="Duplicate column"):
            ExternalTable(
                name="x",
                columns=[ExternalColumn("Key", "INT"), ExternalColumn("key", "INT")],
                location="/x/",
                data_source="AzureStorage",
                file_format="TextFileFormat",
            )

    def test_target_table_index(self):
        assert TargetTable("t", index="heap").index == "HEAP"
        with pytest.raises(ConfigurationError, match="Unsupported table index"):
            TargetTable("t", index="CLUSTERED INDEX")

    def test_plan_checks_hash_column(self, make_plan):
        with pytest.raises(ConfigurationError, match="not an external table column"):
            make_plan(distribution="HASH(CustomerKey)")


class TestDdl:
    """Tests for the generated T-SQL."""

    def test_master_key_guarded(self):
        ddl = generate_master_key_ddl("P@ss")
        assert "sys.symmetric_keys" in ddl
        assert "##MS_DatabaseMasterKey##" in ddl
        assert "CREATE MASTER KEY ENCRYPTION BY PASSWORD = 'P@ss';" in ddl

    def test_master_key_unguarded(self):
        assert generate_master_key_ddl(guard=False) == "CREATE MASTER KEY;"

    def test_credential_masks_secret(self):
        credential = ScopedCredential("AzureStorageCredential", secret="abc'123")
        assert "abc''123" in generate_credential_ddl(credential)
        masked = generate_credential_ddl(credential, reveal_secret=False)
        assert "abc" not in masked
        assert "<storage account key>" in masked

    def test_data_source(self):
        ddl = generate_data_source_ddl(ExternalDataSource("AzureStorage", BLOB, "AzureStorageCredential"))
        assert "CREATE EXTERNAL DATA SOURCE [AzureStorage]" in ddl
        assert "TYPE = HADOOP" in ddl
        assert f"LOCATION = '{BLOB}'" in ddl
        assert "CREDENTIAL = [AzureStorageCredential]" in ddl

    def test_file_format(self):
        fmt = DelimitedTextFormat(
            name="TextFileFormat",
            field_terminator="|",
            date_format="yyyy-MM-dd HH:mm:ss.fff",
            first_row=2,
        )
        ddl = generate_file_format_ddl(fmt, guard=False)
        assert "FORMAT_TYPE = DELIMITEDTEXT" in ddl
        assert "FIELD_TERMINATOR = '|'" in ddl
        assert "STRING_DELIMITER = ''" in ddl
        assert "DATE_FORMAT = 'yyyy-MM-dd HH:mm:ss.fff'" in ddl
        assert "USE_TYPE_DEFAULT = FALSE" in ddl
        assert "FIRST_ROW = 2" in ddl
        assert "ENCODING = 'UTF8'" in ddl

    def test_external_table(self, make_plan):
        plan = make_plan(reject=RejectPolicy("VALUE", 5))
        ddl = generate_external_table_ddl(plan.external_table)
        assert ddl.startswith("IF OBJECT_ID('asb.DimProduct_external') IS NOT NULL")
        assert "CREATE EXTERNAL TABLE [asb].[DimProduct_external]" in ddl
        assert "[ProductKey] INT NOT NULL" in ddl
        assert "[ProductName] NVARCHAR(50) NULL" in ddl
        assert "LOCATION = '/DimProduct/'" in ddl
        assert "REJECT_VALUE = 5" in ddl

    @pytest.mark.parametrize(
        "distribution,index,expected",
        [
            ("HASH(ProductKey)", "CLUSTERED COLUMNSTORE INDEX", "DISTRIBUTION = HASH([ProductKey])"),
            ("ROUND_ROBIN", "HEAP", "DISTRIBUTION = ROUND_ROBIN"),
            ("REPLICATE", "CLUSTERED COLUMNSTORE INDEX", "DISTRIBUTION = REPLICATE"),
        ],
    )
    def test_ctas(self, make_plan, distribution, index, expected):
        plan = make_plan(distribution=distribution, index=index)
        ddl = generate_ctas_ddl(plan.target, plan.external_table)
        assert ddl.startswith("CREATE TABLE [cso].[DimProduct]")
        assert expected in ddl
        assert f"    {index}\n" in ddl
        assert "AS SELECT * FROM [asb].[DimProduct_external]" in ddl
        assert "OPTION (LABEL = 'CTAS : Load [cso].[DimProduct]');" in ddl

    def test_ctas_replace_drops_first(self, make_plan):
        plan = make_plan()
        ddl = generate_ctas_ddl(plan.target, plan.external_table, replace=True)
        assert ddl.index("DROP TABLE [cso].[DimProduct]") < ddl.index("CREATE TABLE")

    def test_rebuild_and_verify(self, make_plan):
        target = make_plan().target
        assert generate_rebuild_ddl(target) == "ALTER INDEX ALL ON [cso].[DimProduct] REBUILD;"
        count, space = generate_verification_sql(target)
        assert "COUNT_BIG(*)" in count
        assert space == "DBCC PDW_SHOWSPACEUSED('cso.DimProduct');"

    def test_load_script_orders_steps(self, make_plan):
        plan = make_plan(drop_external_after_load=True)
        script = generate_load_script(plan)
        positions = [
            script.index("CREATE MASTER KEY"),
            script.index("CREATE DATABASE SCOPED CREDENTIAL"),
            script.index("CREATE EXTERNAL DATA SOURCE"),
            script.index("CREATE EXTERNAL FILE FORMAT"),
            script.index("CREATE EXTERNAL TABLE"),
            script.index("CREATE TABLE [cso]"),
            script.index("DROP EXTERNAL TABLE [asb].[DimProduct_external];\n\n-- 6."),
            script.index("ALTER INDEX ALL"),
            script.index("DBCC PDW_SHOWSPACEUSED"),
        ]
        assert positions == sorted(positions)
        assert "s3cr3t" not in script
        assert "s3cr3t" in generate_load_script(plan, reveal_secrets=True)

    def test_load_script_masks_master_key_password(self, make_plan):
        """A configured password is masked, not dropped from the statement."""
        plan = make_plan()
        plan.credential.master_key_password = "P@ss"
        masked = generate_load_script(plan)
        assert "CREATE MASTER KEY ENCRYPTION BY PASSWORD = '<master key password>';" in masked
        assert "P@ss" not in masked
        assert "ENCRYPTION BY PASSWORD = 'P@ss';" in generate_load_script(plan, reveal_secrets=True)

    def test_load_script_without_password(self, make_plan):
        assert "    CREATE MASTER KEY;" in generate_load_script(make_plan())
