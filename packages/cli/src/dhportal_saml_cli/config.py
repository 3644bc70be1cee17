"""Configuration helpers for the dhportal CLI."""

from __future__ import annotations
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from dhportal_saml_cli.errors import CLIConfigurationError


API_URL_ENV = "DHPORTAL_API_URL"
PROFILE_ENV = "DHPORTAL_PROFILE"
CONFIG_PATH_ENV = "DHPORTAL_CLI_CONFIG"
ADMIN_PASSWORD_ENV = "DHPORTAL_ADMIN_PASSWORD"

_DEFAULT_API_URL = "http://localhost:8000"
_DEFAULT_TIMEOUT = 10.0


@dataclass(slots=True)
class ProfileConfig:
    """Configuration declared within a named CLI profile."""

    api_url: str | None = None
    admin_password: str | None = None
    timeout: float | None = None
    verify_tls: bool | None = None


@dataclass(slots=True)
class CLISettings:
    """Resolved CLI configuration after applying precedence rules."""

    api_url: str
    admin_password: str | None
    profile: str | None
    config_path: Path
    timeout: float = _DEFAULT_TIMEOUT
    verify_tls: bool = True


class ProfileNotFoundError(CLIConfigurationError):
    """Raised when a requested profile cannot be located."""


def _default_config_path() -> Path:
    config_home = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return config_home / "dhportal" / "cli.toml"


def load_profiles(path: Path) -> Mapping[str, ProfileConfig]:
    """Return profiles defined in the provided configuration file."""
    if not path.exists():
        return {}

    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        msg = f"CLI config {path} is not valid TOML: {exc}"
        raise CLIConfigurationError(msg) from exc

    raw_profiles = data.get("profiles", {})
    profiles: dict[str, ProfileConfig] = {}
    for name, payload in raw_profiles.items():
        if not isinstance(payload, dict):
            continue
        timeout = payload.get("timeout")
        verify = payload.get("verify_tls")
        profiles[name] = ProfileConfig(
            api_url=payload.get("api_url"),
            admin_password=payload.get("admin_password"),
            timeout=float(timeout) if timeout is not None else None,
            verify_tls=bool(verify) if verify is not None else None,
        )
    return profiles


def resolve_settings(
    *,
    api_url: str | None,
    profile: str | None,
    admin_password: str | None = None,
    timeout: float | None = None,
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CLISettings:
    """Combine CLI options, environment variables, and profiles."""
    env = dict(os.environ if env is None else env)

    profile_name = profile or env.get(PROFILE_ENV)
    resolved_config_path = config_path or Path(
        env.get(CONFIG_PATH_ENV, _default_config_path())
    )

    profiles = load_profiles(resolved_config_path)
    profile_config: ProfileConfig | None = None
    if profile_name:
        profile_config = profiles.get(profile_name)
        if profile_config is None:
            msg = f"Profile '{profile_name}' not found in {resolved_config_path}"
            raise ProfileNotFoundError(msg)

    resolved_api_url = (
        api_url
        or env.get(API_URL_ENV)
        or (profile_config.api_url if profile_config else None)
        or _DEFAULT_API_URL
    )
    resolved_password = (
        admin_password
        or env.get(ADMIN_PASSWORD_ENV)
        or (profile_config.admin_password if profile_config else None)
    )
    resolved_timeout = (
        timeout
        or (profile_config.timeout if profile_config else None)
        or _DEFAULT_TIMEOUT
    )
    verify_tls = True
    if profile_config and profile_config.verify_tls is not None:
        verify_tls = profile_config.verify_tls

    return CLISettings(
        api_url=resolved_api_url.rstrip("/"),
        admin_password=resolved_password,
        profile=profile_name,
        config_path=resolved_config_path,
        timeout=resolved_timeout,
        verify_tls=verify_tls,
    )


__all__ = [
    "ADMIN_PASSWORD_ENV",
    "API_URL_ENV",
    "CONFIG_PATH_ENV",
    "CLISettings",
    "PROFILE_ENV",
    "ProfileConfig",
    "ProfileNotFoundError",
    "load_profiles",
    "resolve_settings",
]
