"""FastAPI dependencies shared by the SAML routers."""

from __future__ import annotations
import secrets
from typing import Annotated
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from dhportal_saml.config import SamlSettings
from dhportal_saml.engine import ServiceProvider


ADMIN_USERNAME = "admin"

_basic_auth = HTTPBasic(auto_error=False)


def get_saml_settings(request: Request) -> SamlSettings:
    """Return the settings the application was created with."""
    return request.app.state.settings


def get_service_provider(request: Request) -> ServiceProvider:
    """Return the protocol engine bound to the application."""
    return request.app.state.service_provider


def get_session_id(request: Request) -> str | None:
    """Return the session identifier carried by the session cookie."""
    settings = get_saml_settings(request)
    return request.cookies.get(settings.session.cookie_name) or None


SettingsDep = Annotated[SamlSettings, Depends(get_saml_settings)]
ServiceProviderDep = Annotated[ServiceProvider, Depends(get_service_provider)]
SessionIdDep = Annotated[str | None, Depends(get_session_id)]


def require_admin(
    settings: SettingsDep,
    credentials: Annotated[HTTPBasicCredentials | None, Depends(_basic_auth)],
) -> str:
    """Guard diagnostics behind HTTP Basic with the admin password."""
    if credentials is not None:
        user_ok = secrets.compare_digest(
            credentials.username.encode("utf-8"), ADMIN_USERNAME.encode("utf-8")
        )
        password_ok = secrets.compare_digest(
            credentials.password.encode("utf-8"),
            settings.admin_password.encode("utf-8"),
        )
        if user_ok and password_ok:
            return credentials.username
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Administrator credentials required",
        headers={"WWW-Authenticate": "Basic"},
    )


AdminDep = Annotated[str, Depends(require_admin)]


__all__ = [
    "ADMIN_USERNAME",
    "AdminDep",
    "ServiceProviderDep",
    "SessionIdDep",
    "SettingsDep",
    "get_saml_settings",
    "get_service_provider",
    "get_session_id",
    "require_admin",
]
