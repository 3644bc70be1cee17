"""Configure the test environment for the portal SAML service provider."""

from __future__ import annotations
import pytest
from dhportal_saml.engine import ServiceProvider
from dhportal_saml.metadata import DEFAULT_ALIAS, MetadataStore
from tests.saml_test_utils import (
    IDP_ENTITY_ID,
    FakeClock,
    Identity,
    generate_identity,
    idp_descriptor,
    make_settings,
)


@pytest.fixture(scope="session")
def idp_identity() -> Identity:
    return generate_identity("idp.example")


@pytest.fixture(scope="session")
def rollover_identity() -> Identity:
    return generate_identity("idp.example rollover")


@pytest.fixture(scope="session")
def sp_identity() -> Identity:
    return generate_identity("sp.example")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def metadata_store(idp_identity: Identity) -> MetadataStore:
    store = MetadataStore([idp_descriptor(idp_identity)])
    store.set_alias(DEFAULT_ALIAS, IDP_ENTITY_ID)
    return store


@pytest.fixture()
def service_provider(
    metadata_store: MetadataStore, clock: FakeClock
) -> ServiceProvider:
    return ServiceProvider.from_settings(make_settings(), metadata_store, clock=clock)
