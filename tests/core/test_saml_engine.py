"""End-to-end tests for the service provider protocol engine."""

from __future__ import annotations
import base64
import threading
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit
import pytest
from lxml import etree
from dhportal_saml.bindings import decode_and_inflate, deflate_and_encode
from dhportal_saml.engine import AuthnRequest, ServiceProvider
from dhportal_saml.errors import (
    ExpiredAssertionError,
    InvalidBindingError,
    InvalidRelayStateError,
    InvalidResponseError,
    InvalidSignatureError,
    ReplayError,
    SessionNotFoundError,
    SessionStateError,
    UnknownIdPError,
    UnknownSPError,
    UnsolicitedResponseError,
)
from dhportal_saml.metadata import DEFAULT_ALIAS, MetadataStore
from dhportal_saml.sessions import SessionState
from dhportal_saml.types import Binding
from tests.saml_test_utils import (
    ACS_URL,
    EPPN,
    IDP_ENTITY_ID,
    IDP_SLO_URL,
    IDP_SSO_URL,
    SP_ENTITY_ID,
    FakeClock,
    Identity,
    build_idp_logout_request,
    build_logout_response,
    build_response,
    generate_identity,
    idp_descriptor,
    make_settings,
)


def _post(xml: bytes) -> str:
    return base64.b64encode(xml).decode("ascii")


def _query_message(url: str, parameter: str) -> etree._Element:
    query = parse_qs(urlsplit(url).query)
    return etree.fromstring(decode_and_inflate(query[parameter][0]))


def _engine(
    clock: FakeClock, *identities: Identity, slo: bool = True, **settings
) -> ServiceProvider:
    store = MetadataStore([idp_descriptor(*identities, slo=slo)])
    store.set_alias(DEFAULT_ALIAS, IDP_ENTITY_ID)
    return ServiceProvider.from_settings(make_settings(**settings), store, clock=clock)


def _login(
    engine: ServiceProvider, identity: Identity, clock: FakeClock
) -> tuple[AuthnRequest, str]:
    _, request = engine.initiate_login(SP_ENTITY_ID, relay_state="/dashboard")
    response = build_response(
        signer=identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
    )
    result = engine.consume_response(_post(response))
    return request, result.session_id


def test_redirect_login_round_trip(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    url, request = service_provider.initiate_login(
        SP_ENTITY_ID, relay_state="/dashboard"
    )

    assert url.startswith(f"{IDP_SSO_URL}?SAMLRequest=")
    assert parse_qs(urlsplit(url).query)["RelayState"] == ["/dashboard"]
    sent = _query_message(url, "SAMLRequest")
    assert sent.get("ID") == request.request_id
    assert sent.get("AssertionConsumerServiceURL") == ACS_URL
    waiting = service_provider.sessions.get(request.session_id)
    assert waiting.state is SessionState.PENDING_AUTHN

    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
    )
    result = service_provider.consume_response(_post(response))

    assert result.attributes == {EPPN: ["alice@example.edu"]}
    assert result.relay_state == "/dashboard"
    assert result.issuer == IDP_ENTITY_ID
    assert result.session_id == request.session_id
    session = service_provider.sessions.get(result.session_id)
    assert session.is_authenticated
    assert session.name_id == "alice@example.edu"
    assert len(service_provider.pending) == 0


def test_post_binding_login_renders_form(service_provider: ServiceProvider) -> None:
    url, request = service_provider.initiate_login(
        SP_ENTITY_ID, relay_state="/home", binding="post"
    )

    assert url == f"{IDP_SSO_URL}/post"
    assert request.binding is Binding.POST
    assert request.post_form is not None
    assert 'name="SAMLRequest"' in request.post_form
    assert 'value="/home"' in request.post_form


def test_login_reuses_unauthenticated_session(
    service_provider: ServiceProvider,
) -> None:
    session = service_provider.sessions.create("default-sp")

    _, request = service_provider.initiate_login(
        SP_ENTITY_ID, session_id=session.session_id
    )

    assert request.session_id == session.session_id


def test_unsupported_binding_is_rejected(service_provider: ServiceProvider) -> None:
    with pytest.raises(InvalidBindingError) as excinfo:
        service_provider.initiate_login(SP_ENTITY_ID, binding="artifact")

    assert excinfo.value.status_code == 400
    assert len(service_provider.pending) == 0


def test_answer_to_superseded_request_gets_its_own_session(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, first = service_provider.initiate_login(SP_ENTITY_ID, relay_state="/first")
    _, second = service_provider.initiate_login(
        SP_ENTITY_ID, relay_state="/second", session_id=first.session_id
    )
    assert second.session_id == first.session_id

    result = service_provider.consume_response(
        _post(
            build_response(
                signer=idp_identity,
                sign_response=True,
                now=clock.now,
                in_response_to=first.request_id,
            )
        )
    )

    assert result.session_id != first.session_id
    assert result.relay_state == "/first"
    assert service_provider.sessions.get(result.session_id).is_authenticated
    waiting = service_provider.sessions.get(first.session_id)
    assert waiting.state is SessionState.PENDING_AUTHN
    assert waiting.pending_request_id == second.request_id

    later = service_provider.consume_response(
        _post(
            build_response(
                signer=idp_identity,
                sign_response=True,
                now=clock.now,
                in_response_to=second.request_id,
            )
        )
    )
    assert later.session_id == first.session_id
    assert later.relay_state == "/second"


def test_response_replay_is_rejected(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = _post(
        build_response(
            signer=idp_identity,
            sign_response=True,
            now=clock.now,
            in_response_to=request.request_id,
        )
    )
    service_provider.consume_response(response)

    with pytest.raises(ReplayError):
        service_provider.consume_response(response)


def test_untrusted_signature_leaves_session_unauthenticated(
    service_provider: ServiceProvider, clock: FakeClock
) -> None:
    intruder = generate_identity("intruder.example")
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = build_response(
        signer=intruder,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
    )

    with pytest.raises(InvalidSignatureError):
        service_provider.consume_response(_post(response))

    session = service_provider.sessions.get(request.session_id)
    assert session.state is SessionState.UNAUTHENTICATED
    assert session.attributes == {}
    assert len(service_provider.pending) == 0


def test_failed_response_retires_the_request_it_answers(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    intruder = generate_identity("intruder.example")
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    forged, genuine = (
        build_response(
            signer=signer,
            sign_response=True,
            now=clock.now,
            in_response_to=request.request_id,
        )
        for signer in (intruder, idp_identity)
    )

    with pytest.raises(InvalidSignatureError):
        service_provider.consume_response(_post(forged))
    with pytest.raises(ReplayError):
        service_provider.consume_response(_post(genuine))

    session = service_provider.sessions.get(request.session_id)
    assert session.state is SessionState.UNAUTHENTICATED


def test_modified_response_is_rejected(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
    ).replace(b"alice@example.edu", b"mallory@example.edu")

    with pytest.raises(InvalidSignatureError):
        service_provider.consume_response(_post(response))


def test_expired_assertion_is_rejected(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
    )
    clock.advance(600)

    with pytest.raises(ExpiredAssertionError):
        service_provider.consume_response(_post(response))
    state = service_provider.sessions.get(request.session_id).state
    assert state is SessionState.UNAUTHENTICATED


def test_clock_skew_is_tolerated(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
    )
    clock.advance(400)

    result = service_provider.consume_response(_post(response))

    assert result.session_id == request.session_id


def test_expired_request_cannot_be_answered(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    clock.advance(901)
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
    )

    with pytest.raises(UnsolicitedResponseError, match="expired"):
        service_provider.consume_response(_post(response))


def test_rollover_certificate_is_accepted(
    idp_identity: Identity, rollover_identity: Identity, clock: FakeClock
) -> None:
    engine = _engine(clock, idp_identity, rollover_identity)

    _, session_id = _login(engine, rollover_identity, clock)

    assert engine.sessions.get(session_id).is_authenticated


def test_unsolicited_response_is_rejected_by_default(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    response = build_response(
        signer=idp_identity, sign_response=True, now=clock.now, in_response_to=None
    )

    with pytest.raises(UnsolicitedResponseError):
        service_provider.consume_response(_post(response))


def test_unsolicited_response_when_allowed(
    idp_identity: Identity, clock: FakeClock
) -> None:
    engine = _engine(clock, idp_identity, ALLOW_UNSOLICITED=True)
    first = build_response(
        signer=idp_identity, sign_response=True, now=clock.now, in_response_to=None
    )
    second = build_response(
        signer=idp_identity, sign_response=True, now=clock.now, in_response_to=None
    )

    trusted = engine.consume_response(_post(first), relay_state="/welcome")
    untrusted = engine.consume_response(
        _post(second), relay_state="https://evil.example/"
    )

    assert trusted.relay_state == "/welcome"
    assert untrusted.relay_state is None
    assert engine.sessions.get(trusted.session_id).is_authenticated


def test_unknown_issuer_is_rejected(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=None,
        issuer="https://stranger.example",
    )

    with pytest.raises(UnknownIdPError):
        service_provider.consume_response(_post(response))


def test_audience_mismatch_is_rejected(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
        audience="https://other-sp.example",
    )

    with pytest.raises(InvalidResponseError, match="audience"):
        service_provider.consume_response(_post(response))


def test_signature_requirements_follow_settings(
    idp_identity: Identity, clock: FakeClock
) -> None:
    strict = _engine(clock, idp_identity)
    _, request = strict.initiate_login(SP_ENTITY_ID)
    unsigned_assertion = build_response(
        signer=None,
        sign_response=True,
        response_signer=idp_identity,
        now=clock.now,
        in_response_to=request.request_id,
    )
    with pytest.raises(InvalidSignatureError, match="Assertion is not signed"):
        strict.consume_response(_post(unsigned_assertion))

    relaxed = _engine(clock, idp_identity, VALIDATE_ASSERTION=False)
    _, request = relaxed.initiate_login(SP_ENTITY_ID)
    unsigned_assertion = build_response(
        signer=None,
        sign_response=True,
        response_signer=idp_identity,
        now=clock.now,
        in_response_to=request.request_id,
    )
    assert relaxed.consume_response(_post(unsigned_assertion)).name_id


def test_unsigned_response_requires_opt_out(
    idp_identity: Identity, clock: FakeClock
) -> None:
    strict = _engine(clock, idp_identity)
    _, request = strict.initiate_login(SP_ENTITY_ID)
    unsigned = build_response(
        signer=idp_identity, now=clock.now, in_response_to=request.request_id
    )
    with pytest.raises(InvalidSignatureError, match="Response is not signed"):
        strict.consume_response(_post(unsigned))

    relaxed = _engine(clock, idp_identity, VALIDATE_RESPONSE=False)
    _, request = relaxed.initiate_login(SP_ENTITY_ID)
    unsigned = build_response(
        signer=idp_identity, now=clock.now, in_response_to=request.request_id
    )
    result = relaxed.consume_response(_post(unsigned))
    assert result.attributes[EPPN] == ["alice@example.edu"]


def test_error_status_is_reported(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
        status="urn:oasis:names:tc:SAML:2.0:status:Responder",
    )

    with pytest.raises(InvalidResponseError, match="status"):
        service_provider.consume_response(_post(response))


def test_session_lifetime_is_capped_by_idp(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    cap = clock.now + timedelta(minutes=20)
    response = build_response(
        signer=idp_identity,
        sign_response=True,
        now=clock.now,
        in_response_to=request.request_id,
        session_not_on_or_after=cap,
    )

    result = service_provider.consume_response(_post(response))

    assert service_provider.sessions.get(result.session_id).expires_at == cap


def test_concurrent_consumption_authenticates_once(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)
    response = _post(
        build_response(
            signer=idp_identity,
            sign_response=True,
            now=clock.now,
            in_response_to=request.request_id,
        )
    )
    barrier = threading.Barrier(6)
    outcomes: list[str] = []
    lock = threading.Lock()

    def consume() -> None:
        barrier.wait()
        try:
            service_provider.consume_response(response)
        except ReplayError:
            result = "replay"
        else:
            result = "ok"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=consume) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("replay") == 5
    assert service_provider.sessions.get(request.session_id).is_authenticated


def test_unknown_service_provider_is_rejected(
    service_provider: ServiceProvider,
) -> None:
    with pytest.raises(UnknownSPError):
        service_provider.initiate_login("https://unknown-sp.example")


def test_relay_state_must_stay_on_trusted_hosts(
    service_provider: ServiceProvider,
) -> None:
    assert service_provider.check_relay_state("/path?x=1") == "/path?x=1"
    assert (
        service_provider.check_relay_state("https://sp.example/next")
        == "https://sp.example/next"
    )
    with pytest.raises(InvalidRelayStateError):
        service_provider.initiate_login(
            SP_ENTITY_ID, relay_state="https://evil.example/phish"
        )
    with pytest.raises(InvalidRelayStateError):
        service_provider.check_relay_state("javascript:alert(1)")


def test_trusted_domains_extend_relay_state(
    idp_identity: Identity, clock: FakeClock
) -> None:
    engine = _engine(clock, idp_identity, TRUSTED_URL_DOMAINS="docs.example")

    target = "https://docs.example/a"
    assert engine.check_relay_state(target) == target


def test_sp_initiated_logout_round_trip(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, session_id = _login(service_provider, idp_identity, clock)

    url = service_provider.initiate_logout(session_id, "/goodbye")

    assert url.startswith(f"{IDP_SLO_URL}?SAMLRequest=")
    sent = _query_message(url, "SAMLRequest")
    assert sent.findtext("{*}NameID") == "alice@example.edu"
    assert sent.findtext("{*}SessionIndex") == "_idp-session-1"
    pending = service_provider.sessions.get(session_id)
    assert pending.state is SessionState.PENDING_LOGOUT

    answer = build_logout_response(in_response_to=sent.get("ID"), now=clock.now)
    result = service_provider.consume_logout_response(deflate_and_encode(answer))

    assert result.success is True
    assert result.relay_state == "/goodbye"
    assert result.session_id == session_id
    with pytest.raises(SessionNotFoundError):
        service_provider.sessions.get(session_id)


def test_logout_without_slo_endpoint_is_local(
    idp_identity: Identity, clock: FakeClock
) -> None:
    engine = _engine(clock, idp_identity, slo=False)
    _, session_id = _login(engine, idp_identity, clock)

    assert engine.initiate_logout(session_id) == "https://sp.example/"
    with pytest.raises(SessionNotFoundError):
        engine.sessions.get(session_id)


def test_logout_requires_authenticated_session(
    service_provider: ServiceProvider,
) -> None:
    _, request = service_provider.initiate_login(SP_ENTITY_ID)

    with pytest.raises(SessionStateError):
        service_provider.initiate_logout(request.session_id)


def test_idp_initiated_logout_ends_matching_sessions(
    service_provider: ServiceProvider, idp_identity: Identity, clock: FakeClock
) -> None:
    _, session_id = _login(service_provider, idp_identity, clock)
    request = build_idp_logout_request(
        name_id="alice@example.edu", now=clock.now, session_index="_idp-session-1"
    )

    url = service_provider.consume_logout_request(
        deflate_and_encode(request), "redirect", relay_state="done"
    )

    assert url.startswith(f"{IDP_SLO_URL}?SAMLResponse=")
    assert parse_qs(urlsplit(url).query)["RelayState"] == ["done"]
    answer = _query_message(url, "SAMLResponse")
    assert answer.get("InResponseTo") == etree.fromstring(request).get("ID")
    with pytest.raises(SessionNotFoundError):
        service_provider.sessions.get(session_id)


def test_sp_metadata_describes_hosted_sp(service_provider: ServiceProvider) -> None:
    root = etree.fromstring(service_provider.sp_metadata())

    assert root.get("entityID") == SP_ENTITY_ID
    services = root.iter("{*}AssertionConsumerService")
    locations = [node.get("Location") for node in services]
    assert locations == [ACS_URL]
