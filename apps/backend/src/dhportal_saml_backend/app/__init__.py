"""FastAPI application entrypoint for the portal SAML service provider."""

from __future__ import annotations
from typing import Any
from dhportal_saml.config import get_settings, load_saml_settings
from dhportal_saml_backend.app.factory import create_app


def __getattr__(name: str) -> Any:
    # Settings are validated when the ASGI app is first requested, not on import.
    if name == "app":
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["app", "create_app", "get_settings", "load_saml_settings"]


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("dhportal_saml_backend.app:app", host="0.0.0.0", port=8000)
