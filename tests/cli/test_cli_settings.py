"""Tests for CLI configuration resolution."""

from __future__ import annotations
from pathlib import Path
import pytest
from dhportal_saml_cli.config import (
    ProfileNotFoundError,
    load_profiles,
    resolve_settings,
)
from dhportal_saml_cli.errors import CLIConfigurationError


def _write_config(path: Path) -> Path:
    path.write_text(
        """
[profiles.staging]
api_url = "https://staging.portal.example/"
admin_password = "from-profile"
timeout = 3
verify_tls = false

[profiles.local]
api_url = "http://localhost:9000"
""",
        encoding="utf-8",
    )
    return path


def test_defaults_apply_without_configuration(tmp_path: Path) -> None:
    settings = resolve_settings(
        api_url=None, profile=None, config_path=tmp_path / "missing.toml", env={}
    )

    assert settings.api_url == "http://localhost:8000"
    assert settings.admin_password is None
    assert settings.timeout == 10.0
    assert settings.verify_tls is True


def test_profile_values_are_used(tmp_path: Path) -> None:
    config = _write_config(tmp_path / "cli.toml")

    settings = resolve_settings(
        api_url=None, profile="staging", config_path=config, env={}
    )

    assert settings.api_url == "https://staging.portal.example"
    assert settings.admin_password == "from-profile"
    assert settings.timeout == 3.0
    assert settings.verify_tls is False


def test_options_override_environment_and_profile(tmp_path: Path) -> None:
    config = _write_config(tmp_path / "cli.toml")
    env = {
        "DHPORTAL_API_URL": "https://env.portal.example",
        "DHPORTAL_PROFILE": "staging",
        "DHPORTAL_ADMIN_PASSWORD": "from-env",
    }

    from_env = resolve_settings(api_url=None, profile=None, config_path=config, env=env)
    from_option = resolve_settings(
        api_url="https://cli.portal.example",
        profile=None,
        admin_password="from-option",
        config_path=config,
        env=env,
    )

    assert from_env.profile == "staging"
    assert from_env.api_url == "https://env.portal.example"
    assert from_env.admin_password == "from-env"
    assert from_option.api_url == "https://cli.portal.example"
    assert from_option.admin_password == "from-option"


def test_config_path_can_come_from_environment(tmp_path: Path) -> None:
    config = _write_config(tmp_path / "custom.toml")

    settings = resolve_settings(
        api_url=None,
        profile="staging",
        env={"DHPORTAL_CLI_CONFIG": str(config)},
    )

    assert settings.config_path == config
    assert settings.admin_password == "from-profile"


def test_unknown_profile_is_reported(tmp_path: Path) -> None:
    config = _write_config(tmp_path / "cli.toml")

    with pytest.raises(ProfileNotFoundError, match="absent"):
        resolve_settings(api_url=None, profile="absent", config_path=config, env={})


def test_invalid_toml_is_a_configuration_error(tmp_path: Path) -> None:
    path = tmp_path / "cli.toml"
    path.write_text("[profiles.staging\napi_url = 1", encoding="utf-8")

    with pytest.raises(CLIConfigurationError, match="not valid TOML"):
        load_profiles(path)


def test_non_table_profiles_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "cli.toml"
    path.write_text('[profiles]\nloose = "value"\n', encoding="utf-8")

    assert load_profiles(path) == {}
