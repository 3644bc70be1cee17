"""SAML service provider endpoints: login, ACS, logout, SLS and metadata."""

from __future__ import annotations
from typing import Annotated
from fastapi import APIRouter, Form, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from dhportal_saml.config import SamlSettings
from dhportal_saml.errors import SessionError
from dhportal_saml.types import Binding
from dhportal_saml_backend.app.dependencies import (
    ServiceProviderDep,
    SessionIdDep,
    SettingsDep,
)
from dhportal_saml_backend.app.errors import clear_session_cookie
from dhportal_saml_backend.app.schemas.saml import AuthStatusResponse


router = APIRouter()

SAML_METADATA_MEDIA_TYPE = "application/samlmetadata+xml"


def _set_session_cookie(
    response: Response, settings: SamlSettings, session_id: str
) -> None:
    cookie = settings.session
    response.set_cookie(
        cookie.cookie_name,
        session_id,
        max_age=cookie.duration,
        path=cookie.cookie_path,
        domain=cookie.cookie_domain,
        secure=cookie.cookie_secure,
        httponly=cookie.cookie_httponly,
        samesite=cookie.cookie_samesite,
    )


def _home(settings: SamlSettings) -> str:
    return f"{settings.base_url}/"


@router.get("/login")
def login(
    service_provider: ServiceProviderDep,
    settings: SettingsDep,
    session_id: SessionIdDep,
    idp: Annotated[str | None, Query()] = None,
    return_to: Annotated[str | None, Query(alias="ReturnTo")] = None,
    binding: Annotated[str, Query()] = "redirect",
) -> Response:
    """Send the browser to the IdP with a fresh AuthnRequest."""
    url, request = service_provider.initiate_login(
        settings.sp.entity_id,
        idp,
        return_to,
        binding=binding,
        session_id=session_id,
    )
    response: Response
    if request.post_form is not None:
        response = HTMLResponse(request.post_form)
    else:
        response = RedirectResponse(url, status_code=status.HTTP_302_FOUND)
    _set_session_cookie(response, settings, request.session_id)
    return response


def _complete_login(
    service_provider: ServiceProviderDep,
    settings: SamlSettings,
    raw: str,
    binding: Binding,
    relay_state: str | None,
) -> Response:
    result = service_provider.consume_response(raw, binding, relay_state=relay_state)
    response = RedirectResponse(
        result.relay_state or _home(settings), status_code=status.HTTP_303_SEE_OTHER
    )
    _set_session_cookie(response, settings, result.session_id)
    return response


@router.post("/acs")
def assertion_consumer_post(
    service_provider: ServiceProviderDep,
    settings: SettingsDep,
    saml_response: Annotated[str, Form(alias="SAMLResponse")],
    relay_state: Annotated[str | None, Form(alias="RelayState")] = None,
) -> Response:
    """Consume an HTTP-POST bound ``Response``."""
    return _complete_login(
        service_provider, settings, saml_response, Binding.POST, relay_state
    )


@router.get("/acs")
def assertion_consumer_redirect(
    service_provider: ServiceProviderDep,
    settings: SettingsDep,
    saml_response: Annotated[str, Query(alias="SAMLResponse")],
    relay_state: Annotated[str | None, Query(alias="RelayState")] = None,
) -> Response:
    """Consume an HTTP-Redirect bound ``Response``."""
    return _complete_login(
        service_provider, settings, saml_response, Binding.REDIRECT, relay_state
    )


@router.get("/logout")
def logout(
    service_provider: ServiceProviderDep,
    settings: SettingsDep,
    session_id: SessionIdDep,
    return_to: Annotated[str | None, Query(alias="ReturnTo")] = None,
) -> Response:
    """Start single logout for the current session."""
    return_to = service_provider.check_relay_state(return_to)
    if session_id is None:
        return RedirectResponse(return_to or _home(settings), status.HTTP_302_FOUND)
    try:
        session = service_provider.sessions.get(session_id)
    except SessionError:
        response = RedirectResponse(return_to or _home(settings), status.HTTP_302_FOUND)
        clear_session_cookie(response, settings)
        return response
    if not session.is_authenticated:
        service_provider.sessions.terminate(session_id)
        response = RedirectResponse(return_to or _home(settings), status.HTTP_302_FOUND)
        clear_session_cookie(response, settings)
        return response
    url = service_provider.initiate_logout(session_id, return_to)
    response = RedirectResponse(url, status_code=status.HTTP_302_FOUND)
    if url == (return_to or _home(settings)):
        clear_session_cookie(response, settings)
    return response


def _single_logout(
    request: Request,
    service_provider: ServiceProviderDep,
    settings: SamlSettings,
    binding: Binding,
    saml_request: str | None,
    saml_response: str | None,
    relay_state: str | None,
) -> Response:
    query_string = request.url.query if binding is Binding.REDIRECT else None
    if saml_response:
        result = service_provider.consume_logout_response(
            saml_response, binding, query_string=query_string
        )
        target = result.relay_state or _home(settings)
    elif saml_request:
        target = service_provider.consume_logout_request(
            saml_request, binding, relay_state=relay_state, query_string=query_string
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="SAMLRequest or SAMLResponse is required",
        )
    response = RedirectResponse(target, status_code=status.HTTP_303_SEE_OTHER)
    clear_session_cookie(response, settings)
    return response


@router.get("/sls")
def single_logout_redirect(
    request: Request,
    service_provider: ServiceProviderDep,
    settings: SettingsDep,
    saml_request: Annotated[str | None, Query(alias="SAMLRequest")] = None,
    saml_response: Annotated[str | None, Query(alias="SAMLResponse")] = None,
    relay_state: Annotated[str | None, Query(alias="RelayState")] = None,
) -> Response:
    """Handle logout messages on the HTTP-Redirect binding."""
    return _single_logout(
        request,
        service_provider,
        settings,
        Binding.REDIRECT,
        saml_request,
        saml_response,
        relay_state,
    )


@router.post("/sls")
def single_logout_post(
    request: Request,
    service_provider: ServiceProviderDep,
    settings: SettingsDep,
    saml_request: Annotated[str | None, Form(alias="SAMLRequest")] = None,
    saml_response: Annotated[str | None, Form(alias="SAMLResponse")] = None,
    relay_state: Annotated[str | None, Form(alias="RelayState")] = None,
) -> Response:
    """Handle logout messages on the HTTP-POST binding."""
    return _single_logout(
        request,
        service_provider,
        settings,
        Binding.POST,
        saml_request,
        saml_response,
        relay_state,
    )


@router.get("/metadata")
def service_provider_metadata(service_provider: ServiceProviderDep) -> Response:
    """Publish SAML metadata for the hosted SP."""
    return Response(
        content=service_provider.sp_metadata(), media_type=SAML_METADATA_MEDIA_TYPE
    )


@router.get("/status", response_model=AuthStatusResponse)
def authentication_status(
    service_provider: ServiceProviderDep, session_id: SessionIdDep
) -> AuthStatusResponse:
    """Return the attributes released for the current session."""
    if session_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated"
        )
    session = service_provider.sessions.get(session_id)
    if not session.is_authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated"
        )
    return AuthStatusResponse(
        authenticated=True,
        auth_source=session.auth_source,
        name_id=session.name_id,
        idp_entity_id=session.idp_entity_id,
        attributes=session.attributes,
        created_at=session.created_at,
        expires_at=session.expires_at,
    )


__all__ = ["SAML_METADATA_MEDIA_TYPE", "router"]
