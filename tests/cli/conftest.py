"""Shared fixtures for dhportal CLI tests."""

from __future__ import annotations
import os
from pathlib import Path
import pytest
from typer.testing import CliRunner


API_URL = "http://portal.test"


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def env(tmp_path: Path) -> dict[str, str | None]:
    """Environment isolated from the caller's DHPORTAL_* variables."""
    values: dict[str, str | None] = {
        key: None for key in os.environ if key.startswith("DHPORTAL_")
    }
    values.update(
        {
            "DHPORTAL_API_URL": API_URL,
            "DHPORTAL_CLI_CONFIG": str(tmp_path / "cli.toml"),
            "NO_COLOR": "1",
            "COLUMNS": "200",
        }
    )
    return values
