"""Backend entrypoint package for the portal SAML service provider."""

from fastapi import FastAPI
from dhportal_saml_backend.app.factory import create_app as _create_app


def create_app() -> FastAPI:
    """Return a FastAPI application configured from the environment."""
    return _create_app()


__all__ = ["create_app"]
