"""Tests for storage backends and blob locations."""

from unittest.mock import MagicMock

import pytest

from migration.lib.errors import ConfigurationError
from migration.lib.storage import (
    BlobStorage,
    LocalStorage,
    get_storage,
    is_cloud_location,
    parse_location,
)


class TestParseLocation:
    """Tests for blob location parsing."""

    def test_parses_wasbs(self):
        loc = parse_location("wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net/")
        assert loc.scheme == "wasbs"
        assert loc.container == "contosoretaildw"
        assert loc.account == "contosoretaildw"
        assert loc.path == ""
        assert loc.root == "wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net"

    def test_join_relative_path(self):
        loc = parse_location("abfss://data@acct.dfs.core.windows.net/contoso/")
        assert loc.join("/DimProduct/") == "abfss://data@acct.dfs.core.windows.net/contoso/DimProduct/"

    @pytest.mark.parametrize(
        "uri",
        [
            "contosoretaildw.blob.core.windows.net",
            "https://acct.blob.core.windows.net/data",
            "wasbs://Bad_Container@acct.blob.core.windows.net/",
            "wasbs://ab@acct.blob.core.windows.net/",
        ],
    )
    def test_malformed(self, uri):
        with pytest.raises(ConfigurationError):
            parse_location(uri)

    def test_is_cloud_location(self):
        assert is_cloud_location("wasbs://c@a.blob.core.windows.net/")
        assert not is_cloud_location("/tmp/staging/")


class TestLocalStorage:
    """Tests for LocalStorage."""

    def test_write_read_with_leading_slash(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        result = storage.write_text("/DimProduct/DimProduct.txt", "1|Bike\n")
        assert result.success
        assert result.bytes_written == 7
        assert storage.exists("/DimProduct/DimProduct.txt")
        assert (tmp_path / "DimProduct" / "DimProduct.txt").read_text() == "1|Bike\n"

    def test_list_files_sorted_with_pattern(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.write_text("/f/b.txt", "b")
        storage.write_text("/f/a.txt", "a")
        storage.write_text("/f/_a.txt.sha256", "x")
        assert [f.path for f in storage.list_files("/f/")] == ["_a.txt.sha256", "a.txt", "b.txt"]
        assert [f.path for f in storage.list_files("/f/", "*.txt")] == ["a.txt", "b.txt"]

    def test_overwrite_leaves_no_partial_file(self, tmp_path):
        """Writes are renamed into place; only the final file remains."""
        storage = LocalStorage(str(tmp_path))
        storage.write_text("/f/a.txt", "first")
        storage.write_text("/f/a.txt", "second")
        assert storage.read_text("/f/a.txt") == "second"
        assert [p.name for p in (tmp_path / "f").iterdir()] == ["a.txt"]

    def test_list_missing_folder(self, tmp_path):
        assert LocalStorage(str(tmp_path)).list_files("/nope/") == []

    def test_delete(self, tmp_path):
        storage = LocalStorage(str(tmp_path))
        storage.write_text("x.txt", "x")
        assert storage.delete("x.txt") is True
        assert storage.delete("x.txt") is False


class TestGetStorage:
    """Tests for get_storage backend selection."""

    def test_local_path(self, tmp_path):
        assert isinstance(get_storage(str(tmp_path)), LocalStorage)

    def test_blob_uri(self):
        storage = get_storage("wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net/", account_key="k")
        assert isinstance(storage, BlobStorage)
        assert storage.get_full_path("/DimProduct/DimProduct.txt") == (
            "wasbs://contosoretaildw@contosoretaildw.blob.core.windows.net/DimProduct/DimProduct.txt"
        )

    def test_blob_path_includes_container_and_prefix(self):
        storage = BlobStorage("wasbs://data@acct.blob.core.windows.net/contoso")
        assert storage._blob_path("/DimProduct/x.txt") == "data/contoso/DimProduct/x.txt"


class TestBlobStorage:
    """Tests for BlobStorage against a mocked adlfs filesystem."""

    @pytest.fixture
    def storage(self):
        storage = BlobStorage("wasbs://data@acct.blob.core.windows.net/contoso", account_key="k")
        storage._fs = MagicMock()
        return storage

    def test_credentials_from_options_and_env(self, monkeypatch):
        monkeypatch.setenv("AZURE_STORAGE_SAS_TOKEN", "?sv=2022&sig=x")
        for name in ("AZURE_STORAGE_ACCOUNT", "AZURE_STORAGE_KEY", "AZURE_STORAGE_CONNECTION_STRING", "AZURE_CLIENT_ID"):
            monkeypatch.delenv(name, raising=False)
        kwargs = BlobStorage("wasbs://data@acct.blob.core.windows.net/", account_key="k").credentials()
        assert kwargs == {"account_name": "acct", "account_key": "k", "sas_token": "sv=2022&sig=x"}

    def test_write_uploads_whole_blob(self, storage):
        result = storage.write_bytes("/DimProduct/DimProduct.txt", b"1|Bike\n")
        storage.fs.pipe_file.assert_called_once_with("data/contoso/DimProduct/DimProduct.txt", b"1|Bike\n")
        assert result.success
        assert result.path == "wasbs://data@acct.blob.core.windows.net/contoso/DimProduct/DimProduct.txt"

    def test_write_failure_is_reported(self, storage):
        storage.fs.pipe_file.side_effect = OSError("403 AuthorizationFailure")
        result = storage.write_bytes("/x.txt", b"x")
        assert not result.success
        assert "AuthorizationFailure" in result.error

    def test_list_files_skips_folders(self, storage):
        storage.fs.ls.return_value = [
            {"name": "data/contoso/DimProduct/b.txt", "type": "file", "size": 2},
            {"name": "data/contoso/DimProduct/sub", "type": "directory"},
            {"name": "data/contoso/DimProduct/a.txt", "type": "file", "size": 1},
        ]
        assert [f.path for f in storage.list_files("/DimProduct/")] == ["a.txt", "b.txt"]

    def test_read_retries_transient_errors(self, storage, monkeypatch):
        monkeypatch.setattr("tenacity.nap.time.sleep", lambda seconds: None)
        storage.fs.cat_file.side_effect = [ConnectionError("reset"), b"1|Bike\n"]
        assert storage.read_bytes("/DimProduct/DimProduct.txt") == b"1|Bike\n"
        assert storage.fs.cat_file.call_count == 2
