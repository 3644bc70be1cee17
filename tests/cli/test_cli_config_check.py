"""Tests for the ``dhportal config check`` command."""

from __future__ import annotations
from pathlib import Path
from typer.testing import CliRunner
from dhportal_saml_cli.main import app
from tests.saml_test_utils import BASE_SETTINGS


def _saml_env(env: dict[str, str | None]) -> dict[str, str | None]:
    env.update({f"DHPORTAL_{key}": value for key, value in BASE_SETTINGS.items()})
    return env


def test_config_check_accepts_valid_settings(
    runner: CliRunner, env: dict[str, str | None]
) -> None:
    result = runner.invoke(app, ["config", "check"], env=_saml_env(env))

    assert result.exit_code == 0, result.stdout
    assert "https://sp.example" in result.stdout
    assert "Configuration is valid." in result.stdout
    assert BASE_SETTINGS["SECRET_SALT"] not in result.stdout


def test_config_check_reports_invalid_settings(
    runner: CliRunner, env: dict[str, str | None]
) -> None:
    values = _saml_env(env)
    values["DHPORTAL_SP_ENTITY_ID"] = None

    result = runner.invoke(app, ["config", "check"], env=values)

    assert result.exit_code == 1
    assert "Configuration invalid:" in result.stdout
    assert "SP_ENTITY_ID" in result.stdout


def test_config_check_warns_about_broken_metadata(
    runner: CliRunner, env: dict[str, str | None], tmp_path: Path
) -> None:
    broken = tmp_path / "idp.xml"
    broken.write_text("<md:EntityDescriptor", encoding="utf-8")
    values = _saml_env(env)
    values["DHPORTAL_METADATA_FILES"] = str(broken)

    lenient = runner.invoke(app, ["config", "check"], env=values)
    strict = runner.invoke(app, ["config", "check", "--strict"], env=values)

    assert lenient.exit_code == 0, lenient.stdout
    assert "Warning:" in lenient.stdout
    assert strict.exit_code == 1
    assert "Configuration is valid." not in strict.stdout
