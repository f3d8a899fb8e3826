"""Tests for environment expansion, logging and retry helpers."""

import json
import logging
from unittest.mock import MagicMock

import pytest

from migration.lib.env import expand_env_vars, expand_options, find_unset_vars, get_config_value, load_env_file
from migration.lib.logging import JSONFormatter, get_migration_logger
from migration.lib.resilience import RetryConfig, retry_operation, with_retry


class TestEnvExpansion:
    """Tests for ${VAR} expansion."""

    def test_expands_both_syntaxes(self, monkeypatch):
        monkeypatch.setenv("SYNAPSE_HOST", "myws.sql.azuresynapse.net")
        monkeypatch.setenv("DB", "ContosoDW")
        assert expand_env_vars("${SYNAPSE_HOST}/$DB") == "myws.sql.azuresynapse.net/ContosoDW"

    def test_missing_left_alone(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert expand_env_vars("${NOT_SET_ANYWHERE}") == "${NOT_SET_ANYWHERE}"

    def test_missing_strict(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        with pytest.raises(KeyError):
            expand_env_vars("${NOT_SET_ANYWHERE}", strict=True)

    def test_expand_options_recurses(self, monkeypatch):
        monkeypatch.setenv("AZURE_STORAGE_KEY", "abc")
        options = {
            "storage": {"account_key": "${AZURE_STORAGE_KEY}"},
            "migrations": [{"name": "${AZURE_STORAGE_KEY}"}, 3],
            "port": 1433,
        }
        expanded = expand_options(options)
        assert expanded["storage"]["account_key"] == "abc"
        assert expanded["migrations"] == [{"name": "abc"}, 3]
        assert expanded["port"] == 1433

    def test_get_config_value_falls_back_to_env(self, monkeypatch):
        monkeypatch.setenv("AZURE_STORAGE_ACCOUNT", "fromenv")
        assert get_config_value({}, "account_name", "AZURE_STORAGE_ACCOUNT") == "fromenv"
        assert get_config_value({"account_name": "opt"}, "account_name", "AZURE_STORAGE_ACCOUNT") == "opt"

    def test_load_env_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MIGRATION_TEST_VAR", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("MIGRATION_TEST_VAR=loaded\n")
        assert load_env_file(env_file) is True
        assert expand_env_vars("${MIGRATION_TEST_VAR}") == "loaded"
        monkeypatch.delenv("MIGRATION_TEST_VAR", raising=False)


class TestLogging:
    """Tests for JSONFormatter and MigrationLogger."""

    def test_json_formatter(self):
        record = logging.LogRecord("migration.lib.export", logging.INFO, __file__, 10, "Staged %d rows", (5,), None)
        data = json.loads(JSONFormatter().format(record))
        assert data["level"] == "INFO"
        assert data["logger"] == "migration.lib.export"
        assert data["message"] == "Staged 5 rows"

    def test_json_formatter_lifts_context(self):
        """Migration context lands at the top level of the JSON object."""
        record = logging.LogRecord("migration.lib.orchestrator", logging.INFO, __file__, 10, "loaded", (), None)
        record.migration = "product"
        record.step = "load"
        data = json.loads(JSONFormatter(exclude_fields=["step"], include_location=True).format(record))
        assert data["migration"] == "product"
        assert "step" not in data
        assert data["at"].endswith(":10")
        assert data["timestamp"].endswith("Z")

    def test_per_call_extra_overrides_context(self, caplog):
        log = get_migration_logger("migration.test")
        log.set_context(migration="product", step="load")
        with caplog.at_level(logging.INFO, logger="migration.test"):
            log.info("verifying", extra={"step": "verify"})
        assert caplog.records[-1].step == "verify"
        assert caplog.records[-1].migration == "product"

    def test_context_and_metric(self, caplog):
        log = get_migration_logger("migration.test")
        log.set_context(migration="product", step="load")
        with caplog.at_level(logging.INFO, logger="migration.test"):
            log.metric("rows_loaded", 51, unit="rows")
        record = caplog.records[-1]
        assert record.metric_name == "rows_loaded"
        assert record.metric_value == 51
        assert record.metric_unit == "rows"
        assert record.migration == "product"

    def test_clear_context(self):
        log = get_migration_logger("migration.test")
        log.set_context(migration="product")
        log.clear_context()
        assert log.context == {}


class TestRetry:
    """Tests for retry helpers."""

    def test_retry_operation_succeeds_after_failures(self):
        operation = MagicMock(side_effect=[ConnectionError("a"), ConnectionError("b"), "ok"])
        config = RetryConfig(max_attempts=3, backoff_seconds=0.0, jitter=False)
        assert retry_operation(operation, config, "connect") == "ok"
        assert operation.call_count == 3

    def test_retry_operation_reraises(self):
        operation = MagicMock(side_effect=ConnectionError("down"))
        with pytest.raises(ConnectionError):
            retry_operation(operation, RetryConfig(max_attempts=2, backoff_seconds=0.0, jitter=False))
        assert operation.call_count == 2

    def test_with_retry_only_retries_listed_exceptions(self):
        calls = []

        @with_retry(max_attempts=3, backoff_seconds=0.0, jitter=False, retry_exceptions=(ConnectionError,))
        def read():
            calls.append(1)
            raise FileNotFoundError("gone")

        with pytest.raises(FileNotFoundError):
            read()
        assert len(calls) == 1

    def test_none_config(self):
        assert RetryConfig.none().max_attempts == 1

    def test_from_options(self):
        config = RetryConfig.from_options({"connect_attempts": "5", "connect_backoff_seconds": 0.5})
        assert config.max_attempts == 5
        assert config.backoff_seconds == 0.5
        assert RetryConfig.from_options({}).max_attempts == 3


class TestFindUnsetVars:
    """Tests for find_unset_vars."""

    def test_nested_and_deduplicated(self, monkeypatch):
        monkeypatch.delenv("A_UNSET", raising=False)
        monkeypatch.delenv("B_UNSET", raising=False)
        options = expand_options({"x": "${A_UNSET}", "y": [{"z": "$B_UNSET/${A_UNSET}"}], "n": 1})
        assert find_unset_vars(options) == ["A_UNSET", "B_UNSET"]

    def test_nothing_left(self, monkeypatch):
        monkeypatch.setenv("SET_VAR", "v")
        assert find_unset_vars(expand_options({"x": "${SET_VAR}"})) == []
