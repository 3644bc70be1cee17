"""Translate SAML errors into HTTP responses at the protocol boundary."""

from __future__ import annotations
from urllib.parse import urlencode
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse, Response
from dhportal_saml.config import SamlSettings
from dhportal_saml.errors import SamlError, SessionExpiredError
from dhportal_saml_backend.app.logging_config import get_logger


logger = get_logger(__name__)


def error_payload(exc: SamlError, settings: SamlSettings) -> dict[str, object]:
    """Build the JSON error body; details only when errors are shown."""
    error: dict[str, object] = {"code": exc.code, "message": exc.public_message}
    if settings.show_errors and not settings.is_production:
        error["detail"] = exc.message
    return {"error": error}


def clear_session_cookie(response: Response, settings: SamlSettings) -> None:
    """Expire the session cookie on ``response``."""
    response.delete_cookie(
        settings.session.cookie_name,
        path=settings.session.cookie_path,
        domain=settings.session.cookie_domain,
    )


async def saml_error_handler(request: Request, exc: SamlError) -> Response:
    """Log the failure and answer with a generic error or a fresh login."""
    settings: SamlSettings = request.app.state.settings
    logger.warning(
        "SAML request failed: %s",
        exc.message,
        extra={
            "event": "saml_error",
            "status": exc.status_code,
            "code": exc.code,
            "path": request.url.path,
        },
    )
    if isinstance(exc, SessionExpiredError) and request.method == "GET":
        query = urlencode({"ReturnTo": request.url.path})
        response: Response = RedirectResponse(
            f"/saml/login?{query}", status_code=status.HTTP_303_SEE_OTHER
        )
        clear_session_cookie(response, settings)
        return response
    return JSONResponse(
        status_code=exc.status_code, content=error_payload(exc, settings)
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the SAML error handler on ``app``."""
    app.add_exception_handler(SamlError, saml_error_handler)


__all__ = [
    "clear_session_cookie",
    "error_payload",
    "register_exception_handlers",
    "saml_error_handler",
]
