"""Shared pytest fixtures for backend tests."""

from __future__ import annotations
import pytest
from fastapi.testclient import TestClient
from dhportal_saml.engine import ServiceProvider
from dhportal_saml_backend.app.factory import create_app


@pytest.fixture
def client(service_provider: ServiceProvider) -> TestClient:
    """Create a test client bound to the preloaded service provider."""
    app = create_app(service_provider=service_provider, load_metadata=False)
    return TestClient(app, follow_redirects=False)
