"""Runtime configuration helpers for the SAML service provider."""

from __future__ import annotations
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast
from dynaconf import Dynaconf
from dhportal_saml.errors import ConfigurationError


StoreType = Literal["inmemory", "sqlite"]
"""Supported session store backends."""

SameSite = Literal["lax", "strict", "none"]
"""Accepted values for the session cookie SameSite attribute."""

SIGNATURE_ALGORITHMS: dict[str, str] = {
    "rsa-sha256": "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256",
    "rsa-sha384": "http://www.w3.org/2001/04/xmldsig-more#rsa-sha384",
    "rsa-sha512": "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512",
}
"""Short signing algorithm names mapped to their XML-DSig identifiers."""

NAMEID_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"

ENV_PREFIX = "DHPORTAL"

_PLACEHOLDER_SECRETS = frozenset(
    {
        "defaultsecretsalt",
        "production-secret-salt-must-be-changed",
        "dhportal-secret-salt-for-development-only",
        "production-admin-password",
        "admin123",
        "123",
    }
)

_DEFAULTS: dict[str, object] = {
    "ENV": "development",
    "BASE_URL": "http://localhost:8000",
    "TECH_CONTACT_NAME": "Portal Administrator",
    "TECH_CONTACT_EMAIL": None,
    "DEBUG": False,
    "SHOW_ERRORS": False,
    "TRUSTED_URL_DOMAINS": [],
    "SP_AUTH_SOURCE": "default-sp",
    "SP_SLO_URL": None,
    "SP_NAMEID_POLICY": NAMEID_EMAIL,
    "SP_SIGN_AUTHNREQUEST": False,
    "SP_SIGN_LOGOUT": False,
    "SP_REDIRECT_SIGN": False,
    "SP_SIGNATURE_ALGORITHM": "rsa-sha256",
    "VALIDATE_RESPONSE": True,
    "VALIDATE_ASSERTION": True,
    "ALLOW_UNSOLICITED": False,
    "PRUNE_EXPIRED_CERTIFICATES": False,
    "CLOCK_SKEW_SECONDS": 180,
    "REQUEST_TTL_SECONDS": 900,
    "SESSION_DURATION": 28800,
    "SESSION_COOKIE_NAME": "SimpleSAMLSessionID",
    "SESSION_COOKIE_PATH": "/",
    "SESSION_COOKIE_DOMAIN": None,
    "SESSION_COOKIE_SECURE": None,
    "SESSION_COOKIE_HTTPONLY": True,
    "SESSION_COOKIE_SAMESITE": "lax",
    "STORE_TYPE": "inmemory",
    "STORE_SQLITE_PATH": ".dhportal/sessions.sqlite",
    "SESSION_SWEEP_INTERVAL_SECONDS": 0,
    "DEFAULT_IDP": None,
    "METADATA_FILES": [],
    "METADATA_URLS": [],
    "METADATA_TIMEOUT": 10.0,
    "METADATA_RETRIES": 3,
    "METADATA_BACKOFF_SECONDS": 0.5,
}


@dataclass(frozen=True)
class ServiceProviderSettings:
    """Hosted service provider identity and protocol policy."""

    entity_id: str
    acs_url: str
    slo_url: str | None
    auth_source: str
    name_id_policy: str | None
    sign_authnrequest: bool
    sign_logout: bool
    redirect_sign: bool
    signature_algorithm: str
    private_key: str | None
    certificate: str | None
    validate_response: bool
    validate_assertion: bool

    @property
    def signature_algorithm_uri(self) -> str:
        """Return the XML-DSig identifier of the signing algorithm."""
        return SIGNATURE_ALGORITHMS[self.signature_algorithm]

    @property
    def can_sign(self) -> bool:
        """Return True when key material for outgoing signatures is present."""
        return bool(self.private_key and self.certificate)


@dataclass(frozen=True)
class SessionSettings:
    """Session lifetime, cookie parameters and storage backend."""

    duration: int
    cookie_name: str
    cookie_path: str
    cookie_domain: str | None
    cookie_secure: bool
    cookie_httponly: bool
    cookie_samesite: SameSite
    store_type: StoreType
    sqlite_path: str | None
    sweep_interval: int


@dataclass(frozen=True)
class MetadataSettings:
    """Where identity provider metadata is loaded from."""

    files: tuple[str, ...]
    urls: tuple[str, ...]
    timeout: float
    retries: int
    backoff_seconds: float
    default_idp: str | None
    idp_entity_id: str | None
    idp_sso_url: str | None
    idp_slo_url: str | None
    idp_certificate: str | None


@dataclass(frozen=True)
class SamlSettings:
    """Resolved, validated configuration passed to every component."""

    environment: str
    base_url: str
    secret_salt: str
    admin_password: str
    technical_contact_name: str
    technical_contact_email: str | None
    debug: bool
    show_errors: bool
    trusted_url_domains: tuple[str, ...]
    allow_unsolicited: bool
    prune_expired_certificates: bool
    clock_skew_seconds: int
    request_ttl_seconds: int
    sp: ServiceProviderSettings
    session: SessionSettings
    metadata: MetadataSettings

    @property
    def is_production(self) -> bool:
        """Return True for the production deployment mode."""
        return self.environment == "production"

    def redacted(self) -> dict[str, Any]:
        """Return a summary safe for logs and diagnostics output."""
        return {
            "environment": self.environment,
            "base_url": self.base_url,
            "secret_salt": "set" if self.secret_salt else "missing",
            "admin_password": "set" if self.admin_password else "missing",
            "debug": self.debug,
            "sp_entity_id": self.sp.entity_id,
            "sp_acs_url": self.sp.acs_url,
            "sp_slo_url": self.sp.slo_url,
            "auth_source": self.sp.auth_source,
            "sign_authnrequest": self.sp.sign_authnrequest,
            "validate_response": self.sp.validate_response,
            "validate_assertion": self.sp.validate_assertion,
            "allow_unsolicited": self.allow_unsolicited,
            "session_duration": self.session.duration,
            "store_type": self.session.store_type,
            "default_idp": self.metadata.default_idp,
            "metadata_sources": len(self.metadata.files) + len(self.metadata.urls),
        }


def _build_loader() -> Dynaconf:
    """Create a Dynaconf loader wired to environment variables and an optional file."""
    settings_file = os.environ.get(f"{ENV_PREFIX}_SETTINGS_FILE")
    environment = os.environ.get(f"{ENV_PREFIX}_ENV", str(_DEFAULTS["ENV"]))
    if not settings_file:
        return Dynaconf(
            envvar_prefix=ENV_PREFIX,
            settings_files=[],  # env vars only
            load_dotenv=True,
            environments=False,
        )
    return Dynaconf(
        envvar_prefix=ENV_PREFIX,
        settings_files=[settings_file],
        load_dotenv=True,
        environments=True,
        env=environment,
    )


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    candidate = str(value).strip()
    return candidate or None


def _require_str(source: Mapping[str, Any], key: str) -> str:
    value = _coerce_optional_str(source.get(key))
    if value is None:
        msg = f"{ENV_PREFIX}_{key} must be set."
        raise ConfigurationError(msg)
    return value


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off", ""}:
            return False
    msg = f"{ENV_PREFIX}_{key} must be a boolean."
    raise ConfigurationError(msg)


def _parse_int(value: Any, key: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool):
        msg = f"{ENV_PREFIX}_{key} must be an integer."
        raise ConfigurationError(msg)
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        msg = f"{ENV_PREFIX}_{key} must be an integer."
        raise ConfigurationError(msg) from exc
    if number < minimum:
        msg = f"{ENV_PREFIX}_{key} must be at least {minimum}."
        raise ConfigurationError(msg)
    return number


def _parse_float(value: Any, key: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        msg = f"{ENV_PREFIX}_{key} must be a number."
        raise ConfigurationError(msg) from exc
    if number <= 0:
        msg = f"{ENV_PREFIX}_{key} must be greater than zero."
        raise ConfigurationError(msg)
    return number


def _parse_str_sequence(value: Any, key: str) -> tuple[str, ...]:
    """Accept lists, JSON arrays, or comma separated strings."""
    if value is None:
        return ()
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return ()
        if stripped.startswith("["):
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError as exc:
                msg = f"{ENV_PREFIX}_{key} is not a valid JSON list."
                raise ConfigurationError(msg) from exc
        else:
            value = stripped.split(",")
    if not isinstance(value, (list, tuple)):
        msg = f"{ENV_PREFIX}_{key} must be a list of strings."
        raise ConfigurationError(msg)
    items = [str(item).strip() for item in value]
    return tuple(item for item in items if item)


def _read_key_material(value: Any, key: str) -> str | None:
    """Return PEM text given inline PEM, base64 body, or a file path."""
    text = _coerce_optional_str(value)
    if text is None:
        return None
    if text.startswith("-----BEGIN"):
        return text
    looks_like_path = text.startswith(("/", "~", "./", "../")) or text.endswith(
        (".pem", ".crt", ".cer", ".key")
    )
    if not looks_like_path:
        return text
    path = Path(text).expanduser()
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"{ENV_PREFIX}_{key} file {path} cannot be read."
        raise ConfigurationError(msg) from exc


def _check_secret(value: str, key: str, *, environment: str, min_length: int) -> str:
    if environment == "production" and value.lower() in _PLACEHOLDER_SECRETS:
        msg = f"{ENV_PREFIX}_{key} still uses a placeholder value in production."
        raise ConfigurationError(msg)
    if len(value) < min_length:
        msg = f"{ENV_PREFIX}_{key} must be at least {min_length} characters."
        raise ConfigurationError(msg)
    return value


def _normalize_settings(source: Any) -> dict[str, object]:
    """Validate raw settings and fill defaults; fail fast on bad input."""

    def get(key: str) -> Any:
        value = source.get(key)
        return _DEFAULTS.get(key) if value is None else value

    normalized: dict[str, object] = {}
    environment = str(get("ENV")).strip().lower()
    normalized["ENV"] = environment
    normalized["BASE_URL"] = str(get("BASE_URL")).rstrip("/")

    normalized["SECRET_SALT"] = _check_secret(
        _require_str(source, "SECRET_SALT"),
        "SECRET_SALT",
        environment=environment,
        min_length=16,
    )
    normalized["ADMIN_PASSWORD"] = _check_secret(
        _require_str(source, "ADMIN_PASSWORD"),
        "ADMIN_PASSWORD",
        environment=environment,
        min_length=1,
    )
    normalized["TECH_CONTACT_NAME"] = str(get("TECH_CONTACT_NAME"))
    normalized["TECH_CONTACT_EMAIL"] = _coerce_optional_str(get("TECH_CONTACT_EMAIL"))

    for key in (
        "DEBUG",
        "SHOW_ERRORS",
        "SP_SIGN_AUTHNREQUEST",
        "SP_SIGN_LOGOUT",
        "SP_REDIRECT_SIGN",
        "VALIDATE_RESPONSE",
        "VALIDATE_ASSERTION",
        "ALLOW_UNSOLICITED",
        "PRUNE_EXPIRED_CERTIFICATES",
        "SESSION_COOKIE_HTTPONLY",
    ):
        normalized[key] = _parse_bool(get(key), key)

    normalized["TRUSTED_URL_DOMAINS"] = _parse_str_sequence(
        get("TRUSTED_URL_DOMAINS"), "TRUSTED_URL_DOMAINS"
    )

    normalized["SP_ENTITY_ID"] = _require_str(source, "SP_ENTITY_ID")
    normalized["SP_ACS_URL"] = _require_str(source, "SP_ACS_URL")
    normalized["SP_SLO_URL"] = _coerce_optional_str(get("SP_SLO_URL"))
    normalized["SP_AUTH_SOURCE"] = str(get("SP_AUTH_SOURCE"))
    normalized["SP_NAMEID_POLICY"] = _coerce_optional_str(get("SP_NAMEID_POLICY"))

    algorithm = str(get("SP_SIGNATURE_ALGORITHM")).strip().lower()
    if algorithm.startswith("http"):
        reverse = {uri: name for name, uri in SIGNATURE_ALGORITHMS.items()}
        algorithm = reverse.get(algorithm, algorithm)
    if algorithm not in SIGNATURE_ALGORITHMS:
        choices = ", ".join(sorted(SIGNATURE_ALGORITHMS))
        msg = f"{ENV_PREFIX}_SP_SIGNATURE_ALGORITHM must be one of {choices}."
        raise ConfigurationError(msg)
    normalized["SP_SIGNATURE_ALGORITHM"] = algorithm

    private_key = _read_key_material(get("SP_PRIVATE_KEY"), "SP_PRIVATE_KEY")
    certificate = _read_key_material(get("SP_CERTIFICATE"), "SP_CERTIFICATE")
    wants_signing = (
        normalized["SP_SIGN_AUTHNREQUEST"]
        or normalized["SP_SIGN_LOGOUT"]
        or normalized["SP_REDIRECT_SIGN"]
    )
    if wants_signing and not (private_key and certificate):
        msg = (
            f"{ENV_PREFIX}_SP_PRIVATE_KEY and {ENV_PREFIX}_SP_CERTIFICATE must be set "
            "when request signing is enabled."
        )
        raise ConfigurationError(msg)
    normalized["SP_PRIVATE_KEY"] = private_key
    normalized["SP_CERTIFICATE"] = certificate

    normalized["CLOCK_SKEW_SECONDS"] = _parse_int(
        get("CLOCK_SKEW_SECONDS"), "CLOCK_SKEW_SECONDS"
    )
    normalized["REQUEST_TTL_SECONDS"] = _parse_int(
        get("REQUEST_TTL_SECONDS"), "REQUEST_TTL_SECONDS", minimum=1
    )
    normalized["SESSION_DURATION"] = _parse_int(
        get("SESSION_DURATION"), "SESSION_DURATION", minimum=1
    )
    normalized["SESSION_SWEEP_INTERVAL_SECONDS"] = _parse_int(
        get("SESSION_SWEEP_INTERVAL_SECONDS"), "SESSION_SWEEP_INTERVAL_SECONDS"
    )

    normalized["SESSION_COOKIE_NAME"] = str(get("SESSION_COOKIE_NAME"))
    normalized["SESSION_COOKIE_PATH"] = str(get("SESSION_COOKIE_PATH"))
    normalized["SESSION_COOKIE_DOMAIN"] = _coerce_optional_str(
        get("SESSION_COOKIE_DOMAIN")
    )
    secure_raw = get("SESSION_COOKIE_SECURE")
    if secure_raw is None:
        secure = environment == "production"
    else:
        secure = _parse_bool(secure_raw, "SESSION_COOKIE_SECURE")
    normalized["SESSION_COOKIE_SECURE"] = secure
    samesite = str(get("SESSION_COOKIE_SAMESITE")).strip().lower()
    if samesite not in {"lax", "strict", "none"}:
        msg = f"{ENV_PREFIX}_SESSION_COOKIE_SAMESITE must be lax, strict or none."
        raise ConfigurationError(msg)
    if samesite == "none" and not secure:
        msg = "SameSite=None session cookies must also be secure."
        raise ConfigurationError(msg)
    normalized["SESSION_COOKIE_SAMESITE"] = samesite

    store_type = str(get("STORE_TYPE")).strip().lower()
    if store_type not in {"inmemory", "sqlite"}:
        msg = f"{ENV_PREFIX}_STORE_TYPE must be either 'inmemory' or 'sqlite'."
        raise ConfigurationError(msg)
    normalized["STORE_TYPE"] = store_type
    if store_type == "sqlite":
        normalized["STORE_SQLITE_PATH"] = str(get("STORE_SQLITE_PATH"))
    else:
        normalized["STORE_SQLITE_PATH"] = None

    normalized["DEFAULT_IDP"] = _coerce_optional_str(get("DEFAULT_IDP"))
    normalized["IDP_ENTITY_ID"] = _coerce_optional_str(get("IDP_ENTITY_ID"))
    normalized["IDP_SSO_URL"] = _coerce_optional_str(get("IDP_SSO_URL"))
    normalized["IDP_SLO_URL"] = _coerce_optional_str(get("IDP_SLO_URL"))
    normalized["IDP_CERT"] = _read_key_material(get("IDP_CERT"), "IDP_CERT")
    if normalized["IDP_ENTITY_ID"] and not normalized["IDP_SSO_URL"]:
        msg = f"{ENV_PREFIX}_IDP_SSO_URL must be set together with IDP_ENTITY_ID."
        raise ConfigurationError(msg)
    normalized["METADATA_FILES"] = _parse_str_sequence(
        get("METADATA_FILES"), "METADATA_FILES"
    )
    normalized["METADATA_URLS"] = _parse_str_sequence(
        get("METADATA_URLS"), "METADATA_URLS"
    )
    normalized["METADATA_TIMEOUT"] = _parse_float(
        get("METADATA_TIMEOUT"), "METADATA_TIMEOUT"
    )
    normalized["METADATA_RETRIES"] = _parse_int(
        get("METADATA_RETRIES"), "METADATA_RETRIES"
    )
    normalized["METADATA_BACKOFF_SECONDS"] = _parse_float(
        get("METADATA_BACKOFF_SECONDS"), "METADATA_BACKOFF_SECONDS"
    )
    return normalized


def _to_saml_settings(values: Mapping[str, Any]) -> SamlSettings:
    """Convert normalized key/value settings into the typed settings tree."""
    sp = ServiceProviderSettings(
        entity_id=values["SP_ENTITY_ID"],
        acs_url=values["SP_ACS_URL"],
        slo_url=values["SP_SLO_URL"],
        auth_source=values["SP_AUTH_SOURCE"],
        name_id_policy=values["SP_NAMEID_POLICY"],
        sign_authnrequest=values["SP_SIGN_AUTHNREQUEST"],
        sign_logout=values["SP_SIGN_LOGOUT"],
        redirect_sign=values["SP_REDIRECT_SIGN"],
        signature_algorithm=values["SP_SIGNATURE_ALGORITHM"],
        private_key=values["SP_PRIVATE_KEY"],
        certificate=values["SP_CERTIFICATE"],
        validate_response=values["VALIDATE_RESPONSE"],
        validate_assertion=values["VALIDATE_ASSERTION"],
    )
    session = SessionSettings(
        duration=values["SESSION_DURATION"],
        cookie_name=values["SESSION_COOKIE_NAME"],
        cookie_path=values["SESSION_COOKIE_PATH"],
        cookie_domain=values["SESSION_COOKIE_DOMAIN"],
        cookie_secure=values["SESSION_COOKIE_SECURE"],
        cookie_httponly=values["SESSION_COOKIE_HTTPONLY"],
        cookie_samesite=cast(SameSite, values["SESSION_COOKIE_SAMESITE"]),
        store_type=cast(StoreType, values["STORE_TYPE"]),
        sqlite_path=values["STORE_SQLITE_PATH"],
        sweep_interval=values["SESSION_SWEEP_INTERVAL_SECONDS"],
    )
    metadata = MetadataSettings(
        files=tuple(values["METADATA_FILES"]),
        urls=tuple(values["METADATA_URLS"]),
        timeout=values["METADATA_TIMEOUT"],
        retries=values["METADATA_RETRIES"],
        backoff_seconds=values["METADATA_BACKOFF_SECONDS"],
        default_idp=values["DEFAULT_IDP"] or values["IDP_ENTITY_ID"],
        idp_entity_id=values["IDP_ENTITY_ID"],
        idp_sso_url=values["IDP_SSO_URL"],
        idp_slo_url=values["IDP_SLO_URL"],
        idp_certificate=values["IDP_CERT"],
    )
    return SamlSettings(
        environment=values["ENV"],
        base_url=values["BASE_URL"],
        secret_salt=values["SECRET_SALT"],
        admin_password=values["ADMIN_PASSWORD"],
        technical_contact_name=values["TECH_CONTACT_NAME"],
        technical_contact_email=values["TECH_CONTACT_EMAIL"],
        debug=values["DEBUG"],
        show_errors=values["SHOW_ERRORS"],
        trusted_url_domains=tuple(values["TRUSTED_URL_DOMAINS"]),
        allow_unsolicited=values["ALLOW_UNSOLICITED"],
        prune_expired_certificates=values["PRUNE_EXPIRED_CERTIFICATES"],
        clock_skew_seconds=values["CLOCK_SKEW_SECONDS"],
        request_ttl_seconds=values["REQUEST_TTL_SECONDS"],
        sp=sp,
        session=session,
        metadata=metadata,
    )


@lru_cache(maxsize=1)
def _load_settings() -> Dynaconf:
    """Load settings once and cache the normalized Dynaconf instance."""
    normalized = Dynaconf(
        envvar_prefix=ENV_PREFIX,
        settings_files=[],
        load_dotenv=False,
        environments=False,
    )
    for key, value in _normalize_settings(_build_loader()).items():
        normalized.set(key, value)
    return normalized


def get_settings(*, refresh: bool = False) -> Dynaconf:
    """Return the cached Dynaconf settings, reloading them if requested."""
    if refresh:
        _load_settings.cache_clear()
    return _load_settings()


def load_saml_settings(*, refresh: bool = False) -> SamlSettings:
    """Load the typed settings tree from Dynaconf and environment variables."""
    settings = get_settings(refresh=refresh)
    return _to_saml_settings({key: settings.get(key) for key in _all_keys()})


def settings_from_mapping(values: Mapping[str, Any]) -> SamlSettings:
    """Build settings from a plain mapping using the same validation rules."""
    upper = {str(key).upper(): value for key, value in values.items()}
    return _to_saml_settings(_normalize_settings(upper))


def _all_keys() -> tuple[str, ...]:
    return (
        *_DEFAULTS,
        "SECRET_SALT",
        "ADMIN_PASSWORD",
        "SP_ENTITY_ID",
        "SP_ACS_URL",
        "SP_PRIVATE_KEY",
        "SP_CERTIFICATE",
        "IDP_ENTITY_ID",
        "IDP_SSO_URL",
        "IDP_SLO_URL",
        "IDP_CERT",
    )


__all__ = [
    "MetadataSettings",
    "NAMEID_EMAIL",
    "SIGNATURE_ALGORITHMS",
    "SameSite",
    "SamlSettings",
    "ServiceProviderSettings",
    "SessionSettings",
    "StoreType",
    "get_settings",
    "load_saml_settings",
    "settings_from_mapping",
]
