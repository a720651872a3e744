"""Shared fixtures."""

from pathlib import Path

import pytest

from arb_gnucash_importer.config import ImporterConfig

from factories import ALICE


@pytest.fixture
def importer_config() -> ImporterConfig:
    """Configuration with fast retries and an API key set."""
    return ImporterConfig(
        addresses=[ALICE],
        api={"api_key": "test-key"},
        fetch={
            "requests_per_second": 1000,
            "burst": 100,
            "max_attempts": 3,
            "backoff_base_seconds": 0,
            "backoff_max_seconds": 0,
        },
    )


@pytest.fixture
def write_file(tmp_path: Path):
    """Write a text file under tmp_path and return its path."""

    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write
