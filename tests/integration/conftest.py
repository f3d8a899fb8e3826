"""Integration test fixtures.

Provides a copy of the offline Contoso example (configuration plus a
generated DuckDB source) in a temporary directory, so a test can run the
complete inflate -> export -> load workflow without touching the example
folder.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from migration.examples.local_demo import CONFIG, create_sample_data
from migration.lib.connections import close_all_connections


@pytest.fixture
def contoso_workspace(tmp_path: Path) -> Path:
    """Example configuration plus a 40-product, 2,000-sale source database."""
    config = tmp_path / CONFIG.name
    shutil.copy(CONFIG, config)
    create_sample_data(products=40, sales=2000, directory=tmp_path / "sample_data")
    yield config
    close_all_connections()
