"""Tests for the SAML HTTP endpoints."""

from __future__ import annotations
import base64
from urllib.parse import parse_qs, urlsplit
import pytest
from fastapi.testclient import TestClient
from lxml import etree
from dhportal_saml.bindings import decode_and_inflate, deflate_and_encode
from dhportal_saml.engine import ServiceProvider
from dhportal_saml.errors import GENERIC_AUTH_FAILURE
from dhportal_saml.metadata import MetadataStore
from dhportal_saml_backend.app.factory import create_app
from tests.saml_test_utils import (
    EPPN,
    IDP_ENTITY_ID,
    IDP_SLO_URL,
    IDP_SSO_URL,
    FakeClock,
    Identity,
    build_idp_logout_request,
    build_logout_response,
    build_response,
    make_settings,
)


COOKIE = "SimpleSAMLSessionID"


def _sent_message(location: str, parameter: str) -> etree._Element:
    query = parse_qs(urlsplit(location).query)
    return etree.fromstring(decode_and_inflate(query[parameter][0]))


def _sign_in(client: TestClient, identity: Identity, clock: FakeClock) -> str:
    started = client.get("/saml/login", params={"ReturnTo": "/dashboard"})
    request_id = _sent_message(started.headers["location"], "SAMLRequest").get("ID")
    xml = build_response(
        signer=identity, sign_response=True, now=clock.now, in_response_to=request_id
    )
    finished = client.post(
        "/saml/acs",
        data={
            "SAMLResponse": base64.b64encode(xml).decode("ascii"),
            "RelayState": "/dashboard",
        },
    )
    assert finished.status_code == 303
    return finished.headers["location"]


def test_login_redirects_to_idp_and_sets_cookie(client: TestClient) -> None:
    response = client.get("/saml/login", params={"ReturnTo": "/dashboard"})

    assert response.status_code == 302
    assert response.headers["location"].startswith(f"{IDP_SSO_URL}?SAMLRequest=")
    assert COOKIE in response.cookies
    assert "httponly" in response.headers["set-cookie"].lower()


def test_login_with_post_binding_returns_form(client: TestClient) -> None:
    response = client.get("/saml/login", params={"binding": "post"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")
    assert f'action="{IDP_SSO_URL}/post"' in response.text


def test_login_rejects_untrusted_return_url(client: TestClient) -> None:
    response = client.get("/saml/login", params={"ReturnTo": "https://evil.example/"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "saml.invalid_relay_state"


def test_login_rejects_unknown_binding(client: TestClient) -> None:
    response = client.get("/saml/login", params={"binding": "bogus"})

    assert response.status_code == 400
    assert response.json()["error"] == {
        "code": "saml.invalid_binding",
        "message": "Unsupported SAML binding",
    }


def test_acs_authenticates_session(
    client: TestClient, idp_identity: Identity, clock: FakeClock
) -> None:
    location = _sign_in(client, idp_identity, clock)

    assert location == "/dashboard"
    status = client.get("/saml/status")
    assert status.status_code == 200
    payload = status.json()
    assert payload["authenticated"] is True
    assert payload["attributes"] == {EPPN: ["alice@example.edu"]}
    assert payload["idp_entity_id"] == IDP_ENTITY_ID


def test_acs_failure_returns_generic_error(client: TestClient) -> None:
    response = client.post("/saml/acs", data={"SAMLResponse": "%%%"})

    assert response.status_code == 401
    assert response.json() == {
        "error": {"code": "saml.invalid_response", "message": GENERIC_AUTH_FAILURE}
    }


def test_acs_failure_shows_detail_when_enabled(
    metadata_store: MetadataStore, clock: FakeClock
) -> None:
    engine = ServiceProvider.from_settings(
        make_settings(SHOW_ERRORS=True), metadata_store, clock=clock
    )
    client = TestClient(
        create_app(service_provider=engine, load_metadata=False),
        follow_redirects=False,
    )

    response = client.post("/saml/acs", data={"SAMLResponse": "%%%"})

    assert response.json()["error"]["detail"]


def test_status_requires_authentication(client: TestClient) -> None:
    response = client.get("/saml/status")

    assert response.status_code == 401
    assert response.json() == {"detail": "Not authenticated"}


def test_forged_session_cookies_are_not_retained(
    client: TestClient, service_provider: ServiceProvider
) -> None:
    for index in range(50):
        client.cookies.set(COOKIE, f"forged-{index}")
        response = client.get("/saml/status")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "saml.session_not_found"

    assert service_provider.sessions._locks == {}


def test_expired_session_restarts_login(
    client: TestClient, service_provider: ServiceProvider, clock: FakeClock
) -> None:
    session = service_provider.sessions.create("default-sp")
    client.cookies.set(COOKIE, session.session_id)
    clock.advance(service_provider.sessions.duration.total_seconds() + 1)

    response = client.get("/saml/status")

    assert response.status_code == 303
    assert response.headers["location"] == "/saml/login?ReturnTo=%2Fsaml%2Fstatus"
    assert "max-age=0" in response.headers["set-cookie"].lower()


def test_logout_round_trip(
    client: TestClient, idp_identity: Identity, clock: FakeClock
) -> None:
    _sign_in(client, idp_identity, clock)

    started = client.get("/saml/logout")
    assert started.status_code == 302
    assert started.headers["location"].startswith(f"{IDP_SLO_URL}?SAMLRequest=")
    logout_id = _sent_message(started.headers["location"], "SAMLRequest").get("ID")

    answer = build_logout_response(in_response_to=logout_id, now=clock.now)
    finished = client.get(
        "/saml/sls", params={"SAMLResponse": deflate_and_encode(answer)}
    )

    assert finished.status_code == 303
    assert finished.headers["location"] == "https://sp.example/"
    assert "max-age=0" in finished.headers["set-cookie"].lower()


def test_logout_without_session_goes_home(client: TestClient) -> None:
    response = client.get("/saml/logout")

    assert response.status_code == 302
    assert response.headers["location"] == "https://sp.example/"


def test_idp_initiated_logout_answers_idp(
    client: TestClient,
    service_provider: ServiceProvider,
    idp_identity: Identity,
    clock: FakeClock,
) -> None:
    _sign_in(client, idp_identity, clock)
    request = build_idp_logout_request(name_id="alice@example.edu", now=clock.now)

    response = client.get(
        "/saml/sls",
        params={"SAMLRequest": deflate_and_encode(request), "RelayState": "bye"},
    )

    assert response.status_code == 303
    assert response.headers["location"].startswith(f"{IDP_SLO_URL}?SAMLResponse=")
    assert service_provider.sessions.find_by_subject(
        IDP_ENTITY_ID, "alice@example.edu"
    ) == []


def test_sls_requires_a_message(client: TestClient) -> None:
    response = client.get("/saml/sls")

    assert response.status_code == 400


def test_metadata_endpoint(client: TestClient) -> None:
    response = client.get("/saml/metadata")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/samlmetadata+xml")
    root = etree.fromstring(response.content)
    assert root.get("entityID") == "https://sp.example"


def test_health_is_public(client: TestClient) -> None:
    response = client.get("/system/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.parametrize(
    "auth", [None, ("admin", "wrong-password"), ("root", "unit-test-admin")]
)
def test_system_info_requires_admin(
    client: TestClient, auth: tuple[str, str] | None
) -> None:
    response = client.get("/system/info", auth=auth)

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Basic"


def test_system_info_reports_metadata(client: TestClient) -> None:
    response = client.get("/system/info", auth=("admin", "unit-test-admin"))

    assert response.status_code == 200
    payload = response.json()
    assert [entity["entity_id"] for entity in payload["entities"]] == [IDP_ENTITY_ID]
    assert payload["entities"][0]["slo_locations"] == [IDP_SLO_URL]
    assert payload["settings"]["admin_password"] == "set"
    assert payload["metadata_errors"] == []
    assert payload["pending_requests"] == 0
