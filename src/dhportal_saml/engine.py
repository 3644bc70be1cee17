"""Service provider protocol engine: login, response validation and logout."""

from __future__ import annotations
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from urllib.parse import urlsplit
from lxml import etree
from dhportal_saml.bindings import (
    build_redirect_query,
    decode_message,
    encode_post,
    extract_redirect_signature,
    render_post_form,
    signed_redirect_url,
)
from dhportal_saml.config import SamlSettings
from dhportal_saml.errors import (
    ExpiredAssertionError,
    InvalidRelayStateError,
    InvalidResponseError,
    InvalidSignatureError,
    LogoutError,
    SamlError,
    SessionError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionStateError,
    UnknownSPError,
    UnsolicitedResponseError,
)
from dhportal_saml.messages import (
    AssertionContent,
    build_authn_request,
    build_logout_request,
    build_logout_response,
    find_assertion,
    load_message,
    message_issuer,
    new_message_id,
    read_assertion,
    read_status,
    serialize,
)
from dhportal_saml.metadata import (
    DEFAULT_ALIAS,
    EntityDescriptor,
    MetadataStore,
    build_sp_descriptor,
    render_sp_metadata,
)
from dhportal_saml.sessions import (
    AssertionReplayCache,
    BaseSessionStore,
    Clock,
    PendingRequestTable,
    Session,
    SessionState,
    create_session_store,
    utcnow,
)
from dhportal_saml.types import NS_ASSERTION, NS_PROTOCOL, Binding
from dhportal_saml.xmlsec import (
    Certificate,
    has_signature,
    sign_element,
    sign_query,
    trusted_signing_certificates,
    verify_query,
    verify_signed_element,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthnRequest:
    """An AuthnRequest as sent to the IdP."""

    request_id: str
    issuer: str
    destination: str
    name_id_policy: str | None
    created_at: datetime
    expires_at: datetime
    relay_state: str | None
    binding: Binding
    session_id: str
    xml: bytes = field(repr=False)
    post_form: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class AssertionResult:
    """Identity and attributes established by a validated response."""

    name_id: str | None
    name_id_format: str | None
    attributes: Mapping[str, list[str]]
    not_before: datetime | None
    not_on_or_after: datetime | None
    issuer: str
    in_response_to: str | None
    assertion_id: str
    session_index: str | None
    session_not_on_or_after: datetime | None
    session_id: str
    relay_state: str | None


@dataclass(frozen=True)
class LogoutResult:
    """Outcome of a logout round trip."""

    success: bool
    session_id: str | None
    relay_state: str | None
    status: str | None = None


class ServiceProvider:
    """Protocol engine for the hosted SP.

    The engine holds no per-call state of its own; everything mutable lives in
    the session store and the pending-request table, both of which serialize
    concurrent access per key.
    """

    def __init__(
        self,
        settings: SamlSettings,
        metadata: MetadataStore,
        sessions: BaseSessionStore,
        *,
        pending: PendingRequestTable | None = None,
        replay_cache: AssertionReplayCache | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Wire the engine to its stores."""
        self.settings = settings
        self.metadata = metadata
        self.sessions = sessions
        self._clock = clock or utcnow
        self.pending = pending or PendingRequestTable(
            ttl_seconds=settings.request_ttl_seconds, clock=self._clock
        )
        self._replay_cache = replay_cache or AssertionReplayCache(clock=self._clock)
        self._sp = build_sp_descriptor(settings)
        self._skew = timedelta(seconds=settings.clock_skew_seconds)

    @classmethod
    def from_settings(
        cls,
        settings: SamlSettings,
        metadata: MetadataStore | None = None,
        *,
        clock: Clock | None = None,
    ) -> ServiceProvider:
        """Build an engine with the session backend chosen by settings."""
        return cls(
            settings,
            metadata or MetadataStore(),
            create_session_store(settings.session, clock=clock),
            clock=clock,
        )

    @property
    def descriptor(self) -> EntityDescriptor:
        """Descriptor of the hosted SP."""
        return self._sp

    # Login

    def initiate_login(
        self,
        sp_entity_id: str,
        idp_entity_id: str | None = None,
        relay_state: str | None = None,
        *,
        binding: Binding | str = Binding.REDIRECT,
        session_id: str | None = None,
    ) -> tuple[str, AuthnRequest]:
        """Start SP-initiated login and return where to send the browser."""
        self._require_hosted_sp(sp_entity_id)
        relay_state = self.check_relay_state(relay_state)
        idp = self.metadata.lookup(idp_entity_id or DEFAULT_ALIAS, "IdP")
        endpoint = idp.endpoint("sso", Binding.parse(binding))
        if endpoint is None:  # pragma: no cover - validate() guarantees one
            raise InvalidResponseError(f"IdP {idp.entity_id} has no SSO endpoint")
        session = self._session_for_login(session_id)

        sp = self.settings.sp
        now = self._clock()
        request_id = new_message_id()
        embed_signature = sp.sign_authnrequest and endpoint.binding is Binding.POST
        element = build_authn_request(
            request_id=request_id,
            issuer=sp.entity_id,
            destination=endpoint.location,
            acs_url=sp.acs_url,
            issue_instant=now,
            name_id_policy=sp.name_id_policy,
            signed=embed_signature,
        )
        if embed_signature:
            element = self._sign(element)
        xml = serialize(element)

        pending = self.pending.add(
            request_id,
            kind="authn",
            sp_entity_id=sp.entity_id,
            idp_entity_id=idp.entity_id,
            session_id=session.session_id,
            relay_state=relay_state,
        )
        try:
            self.sessions.begin_authentication(
                session.session_id, request_id=request_id, relay_state=relay_state
            )
        except SessionError:
            self.pending.discard(request_id)
            raise

        post_form = None
        if endpoint.binding is Binding.REDIRECT:
            url = self._redirect_url(
                endpoint.location,
                "SAMLRequest",
                xml,
                relay_state,
                sign=sp.sign_authnrequest or sp.redirect_sign,
            )
        else:
            url = endpoint.location
            post_form = render_post_form(
                url,
                {"SAMLRequest": encode_post(xml), "RelayState": relay_state},
                title="Signing in",
            )
        logger.info(
            "Issued AuthnRequest",
            extra={
                "event": "authn_request",
                "request_id": request_id,
                "issuer": idp.entity_id,
                "binding": endpoint.binding.name.lower(),
            },
        )
        request = AuthnRequest(
            request_id=request_id,
            issuer=sp.entity_id,
            destination=endpoint.location,
            name_id_policy=sp.name_id_policy,
            created_at=pending.created_at,
            expires_at=pending.expires_at,
            relay_state=relay_state,
            binding=endpoint.binding,
            session_id=session.session_id,
            xml=xml,
            post_form=post_form,
        )
        return url, request

    def _session_for_login(self, session_id: str | None) -> Session:
        if session_id:
            try:
                session = self.sessions.get(session_id)
            except SessionError:
                pass
            else:
                if session.state in {
                    SessionState.UNAUTHENTICATED,
                    SessionState.PENDING_AUTHN,
                }:
                    return session
        return self.sessions.create(self.settings.sp.auth_source)

    def consume_response(
        self,
        raw_response: str,
        binding: Binding | str = Binding.POST,
        *,
        relay_state: str | None = None,
    ) -> AssertionResult:
        """Validate an IdP ``Response`` and authenticate the linked session.

        Nothing is authenticated unless every check passes; on any failure the
        session waiting for the answered request returns to unauthenticated.
        """
        request_id: str | None = None
        issuer: str | None = None
        try:
            xml = decode_message(raw_response, binding)
            response = load_message(xml, "Response")
            request_id = response.get("InResponseTo")
            issuer = message_issuer(response) or message_issuer(find_assertion(response))
            if not issuer:
                raise InvalidResponseError("Response names no issuer")
            idp = self.metadata.lookup(issuer, "IdP")
            result = self._validate_response(response, idp)
        except SamlError as exc:
            self._abandon_request(request_id)
            logger.warning(
                "Authentication failed: %s",
                exc.message,
                extra={
                    "event": "authn_failed",
                    "status": "error",
                    "code": exc.code,
                    "request_id": request_id,
                    "issuer": issuer,
                },
            )
            raise
        if result.in_response_to is None and relay_state:
            try:
                relay_state = self.check_relay_state(relay_state)
            except InvalidRelayStateError:
                logger.warning("Dropped untrusted relay state on unsolicited response")
                relay_state = None
            result = replace(result, relay_state=relay_state)
        logger.info(
            "Authentication succeeded",
            extra={
                "event": "authn_success",
                "status": "ok",
                "request_id": result.in_response_to,
                "issuer": result.issuer,
            },
        )
        return result

    def _validate_response(
        self, response: etree._Element, idp: EntityDescriptor
    ) -> AssertionResult:
        sp = self.settings.sp
        now = self._clock()
        certificates = self._trust_set(idp, now)

        response_signed = has_signature(response)
        if response_signed:
            response, _ = verify_signed_element(response, certificates)
        elif sp.validate_response:
            raise InvalidSignatureError("Response is not signed")

        status = read_status(response)
        if not status.is_success:
            msg = f"IdP returned status {status.code} ({status.sub_code})"
            raise InvalidResponseError(msg)
        destination = response.get("Destination")
        if destination and destination != sp.acs_url:
            raise InvalidResponseError(f"Response destination {destination} is not ours")

        assertion = find_assertion(response)
        if has_signature(assertion):
            assertion, _ = verify_signed_element(assertion, certificates)
        elif sp.validate_assertion or not response_signed:
            raise InvalidSignatureError("Assertion is not signed")
        content = read_assertion(assertion)
        if content.issuer and content.issuer != idp.entity_id:
            raise InvalidResponseError("Assertion issuer does not match the response")
        self._check_conditions(content, now)

        request_id = response.get("InResponseTo")
        if (
            request_id
            and content.subject_in_response_to
            and content.subject_in_response_to != request_id
        ):
            raise InvalidResponseError("Subject confirmation answers another request")
        request_id = request_id or content.subject_in_response_to
        expires_at = content.not_on_or_after or content.subject_not_on_or_after or now

        session_id: str | None = None
        relay_state: str | None = None
        if request_id:
            waiting = self.pending.peek(request_id, include_expired=True)
            try:
                pending = self.pending.consume(request_id, kind="authn")
            except UnsolicitedResponseError:
                if waiting is not None and waiting.session_id:
                    self.sessions.fail_authentication(waiting.session_id, request_id)
                raise
            try:
                if pending.idp_entity_id != idp.entity_id:
                    raise UnsolicitedResponseError("Request was sent to a different IdP")
                self._replay_cache.check_and_store(content.assertion_id, expires_at)
            except SamlError:
                if pending.session_id:
                    self.sessions.fail_authentication(pending.session_id, request_id)
                raise
            session_id = pending.session_id
            relay_state = pending.relay_state
        else:
            if not self._allows_unsolicited(idp):
                raise UnsolicitedResponseError("Unsolicited responses are not accepted")
            self._replay_cache.check_and_store(content.assertion_id, expires_at)

        session = self._authenticate(session_id, request_id, idp, content)
        return AssertionResult(
            name_id=content.name_id,
            name_id_format=content.name_id_format,
            attributes=session.attributes,
            not_before=content.not_before,
            not_on_or_after=expires_at,
            issuer=idp.entity_id,
            in_response_to=request_id,
            assertion_id=content.assertion_id,
            session_index=content.session_index,
            session_not_on_or_after=content.session_not_on_or_after,
            session_id=session.session_id,
            relay_state=relay_state,
        )

    def _check_conditions(self, content: AssertionContent, now: datetime) -> None:
        sp = self.settings.sp
        if content.not_before and now + self._skew < content.not_before:
            raise ExpiredAssertionError("Assertion is not yet valid")
        for bound in (content.not_on_or_after, content.subject_not_on_or_after):
            if bound and now - self._skew >= bound:
                raise ExpiredAssertionError("Assertion validity window has ended")
        if content.not_on_or_after is None and content.subject_not_on_or_after is None:
            raise InvalidResponseError("Assertion does not bound its validity")
        if content.audiences and sp.entity_id not in content.audiences:
            raise InvalidResponseError("Assertion audience does not include this SP")
        if content.recipient and content.recipient != sp.acs_url:
            raise InvalidResponseError("Subject confirmation recipient is not our ACS")

    def _authenticate(
        self,
        session_id: str | None,
        request_id: str | None,
        idp: EntityDescriptor,
        content: AssertionContent,
    ) -> Session:
        details = {
            "attributes": content.attributes,
            "name_id": content.name_id,
            "name_id_format": content.name_id_format,
            "session_index": content.session_index,
            "idp_entity_id": idp.entity_id,
            "not_on_or_after": content.session_not_on_or_after,
        }
        if session_id is not None:
            try:
                return self.sessions.complete_authentication(
                    session_id, request_id=request_id, **details
                )
            except (SessionNotFoundError, SessionExpiredError):
                logger.info("Login session vanished; starting a new one")
            except SessionStateError:
                logger.info("Login session awaits another request; starting a new one")
        fresh = self.sessions.create(self.settings.sp.auth_source)
        return self.sessions.complete_authentication(
            fresh.session_id, request_id=None, **details
        )

    def _abandon_request(self, request_id: str | None) -> None:
        if not request_id:
            return
        pending = self.pending.peek(request_id, include_expired=True)
        if pending is None:
            return
        self.pending.discard(request_id)
        if pending.session_id:
            self.sessions.fail_authentication(pending.session_id, request_id)

    def _allows_unsolicited(self, idp: EntityDescriptor) -> bool:
        if idp.allow_unsolicited is not None:
            return idp.allow_unsolicited
        return self.settings.allow_unsolicited

    # Logout

    def initiate_logout(self, session_id: str, relay_state: str | None = None) -> str:
        """Send the IdP a ``LogoutRequest`` for the session.

        When the IdP has no HTTP-Redirect single logout endpoint the session
        is ended locally and the return URL is given back directly.
        """
        relay_state = self.check_relay_state(relay_state)
        session = self.sessions.get(session_id)
        if not session.is_authenticated or not session.idp_entity_id:
            raise SessionStateError("Only authenticated sessions can log out")
        idp = self.metadata.lookup(session.idp_entity_id, "IdP")
        endpoint = idp.endpoint("slo", Binding.REDIRECT)
        if endpoint is None or endpoint.binding is not Binding.REDIRECT:
            self.sessions.terminate(session_id)
            logger.info(
                "Logged out locally",
                extra={"event": "logout_local", "issuer": idp.entity_id},
            )
            return relay_state or f"{self.settings.base_url}/"

        sp = self.settings.sp
        logout_id = new_message_id()
        element = build_logout_request(
            request_id=logout_id,
            issuer=sp.entity_id,
            destination=endpoint.location,
            issue_instant=self._clock(),
            name_id=session.name_id or "",
            name_id_format=session.name_id_format,
            session_index=session.session_index,
        )
        self.pending.add(
            logout_id,
            kind="logout",
            sp_entity_id=sp.entity_id,
            idp_entity_id=idp.entity_id,
            session_id=session_id,
            relay_state=relay_state,
        )
        try:
            self.sessions.begin_logout(session_id, logout_id=logout_id)
        except SessionError:
            self.pending.discard(logout_id)
            raise
        logger.info(
            "Issued LogoutRequest",
            extra={"event": "logout_request", "request_id": logout_id},
        )
        return self._redirect_url(
            endpoint.location,
            "SAMLRequest",
            serialize(element),
            relay_state,
            sign=sp.sign_logout or idp.sign_logout or sp.redirect_sign,
        )

    def consume_logout_response(
        self,
        raw: str,
        binding: Binding | str = Binding.REDIRECT,
        *,
        query_string: str | None = None,
    ) -> LogoutResult:
        """Match a ``LogoutResponse`` to its request and end the session."""
        try:
            root = load_message(decode_message(raw, binding), "LogoutResponse")
        except InvalidResponseError as exc:
            raise LogoutError(exc.message) from exc
        idp = self._message_idp(root)
        root = self._verify_message(root, idp, "SAMLResponse", binding, query_string)
        request_id = root.get("InResponseTo")
        if not request_id:
            raise LogoutError("LogoutResponse does not reference a request")
        try:
            pending = self.pending.consume(request_id, kind="logout")
        except UnsolicitedResponseError as exc:
            raise LogoutError(exc.message) from exc
        if pending.idp_entity_id != idp.entity_id:
            raise LogoutError("LogoutResponse came from a different IdP")
        status = read_status(root)
        if pending.session_id:
            try:
                self.sessions.terminate(pending.session_id)
            except SessionError:
                logger.debug("Session already ended before the LogoutResponse")
        logger.info(
            "Logout completed",
            extra={
                "event": "logout_response",
                "status": "ok" if status.is_success else "partial",
                "request_id": request_id,
                "issuer": idp.entity_id,
            },
        )
        return LogoutResult(
            success=status.is_success,
            session_id=pending.session_id,
            relay_state=pending.relay_state,
            status=status.code,
        )

    def consume_logout_request(
        self,
        raw: str,
        binding: Binding | str = Binding.REDIRECT,
        *,
        relay_state: str | None = None,
        query_string: str | None = None,
    ) -> str:
        """Handle IdP-initiated logout and return the ``LogoutResponse`` URL."""
        try:
            root = load_message(decode_message(raw, binding), "LogoutRequest")
        except InvalidResponseError as exc:
            raise LogoutError(exc.message) from exc
        idp = self._message_idp(root)
        root = self._verify_message(root, idp, "SAMLRequest", binding, query_string)
        name_id = root.findtext(f"{{{NS_ASSERTION}}}NameID")
        if not name_id:
            raise LogoutError("LogoutRequest names no subject")
        session_index = root.findtext(f"{{{NS_PROTOCOL}}}SessionIndex")
        ended = 0
        for session in self.sessions.find_by_subject(
            idp.entity_id, name_id.strip(), session_index
        ):
            try:
                self.sessions.terminate(session.session_id)
            except SessionError:
                continue
            ended += 1
        endpoint = idp.endpoint("slo", Binding.REDIRECT)
        if endpoint is None or endpoint.binding is not Binding.REDIRECT:
            raise LogoutError(f"IdP {idp.entity_id} has no redirect logout endpoint")
        sp = self.settings.sp
        element = build_logout_response(
            response_id=new_message_id(),
            issuer=sp.entity_id,
            destination=endpoint.location,
            in_response_to=root.get("ID", ""),
            issue_instant=self._clock(),
        )
        logger.info(
            "IdP-initiated logout ended %d sessions",
            ended,
            extra={"event": "logout_request_received", "issuer": idp.entity_id},
        )
        return self._redirect_url(
            endpoint.location,
            "SAMLResponse",
            serialize(element),
            relay_state,
            sign=sp.sign_logout or idp.sign_logout or sp.redirect_sign,
        )

    def _message_idp(self, root: etree._Element) -> EntityDescriptor:
        issuer = message_issuer(root)
        if not issuer:
            raise LogoutError("Logout message names no issuer")
        return self.metadata.lookup(issuer, "IdP")

    def _verify_message(
        self,
        root: etree._Element,
        idp: EntityDescriptor,
        parameter: str,
        binding: Binding | str,
        query_string: str | None,
    ) -> etree._Element:
        certificates = self._trust_set(idp, self._clock())
        if has_signature(root):
            signed, _ = verify_signed_element(root, certificates)
            return signed
        if Binding.parse(binding) is Binding.REDIRECT and query_string:
            detached = extract_redirect_signature(query_string, parameter)
            if detached is not None:
                verify_query(
                    detached.signed_part,
                    detached.signature,
                    algorithm_uri=detached.sig_alg,
                    certificates=certificates,
                )
                return root
        if idp.validate_logout:
            raise InvalidSignatureError("Logout message is not signed")
        return root

    # Shared helpers

    def sp_metadata(self) -> bytes:
        """Return SAML metadata describing the hosted SP."""
        return render_sp_metadata(
            self._sp,
            authn_requests_signed=self.settings.sp.sign_authnrequest,
            want_assertions_signed=self.settings.sp.validate_assertion,
            contact_name=self.settings.technical_contact_name,
            contact_email=self.settings.technical_contact_email,
        )

    def check_relay_state(self, relay_state: str | None) -> str | None:
        """Accept relative paths and URLs on the portal or a trusted domain."""
        if not relay_state:
            return None
        parts = urlsplit(relay_state)
        if not parts.scheme and not parts.netloc:
            return relay_state
        trusted = {urlsplit(self.settings.base_url).hostname}
        trusted.update(self.settings.trusted_url_domains)
        if parts.scheme in {"http", "https"} and parts.hostname in trusted:
            return relay_state
        raise InvalidRelayStateError(f"Relay state host {parts.hostname} is not trusted")

    def _require_hosted_sp(self, sp_entity_id: str) -> None:
        if sp_entity_id != self._sp.entity_id:
            raise UnknownSPError(sp_entity_id)

    def _trust_set(self, idp: EntityDescriptor, now: datetime) -> list[Certificate]:
        return trusted_signing_certificates(
            idp.signing_certificates,
            prune_expired=self.settings.prune_expired_certificates,
            now=now,
        )

    def _sign(self, element: etree._Element) -> etree._Element:
        sp = self.settings.sp
        if not sp.can_sign:  # pragma: no cover - rejected by configuration
            raise InvalidSignatureError("SP signing key is not configured")
        return sign_element(
            element,
            private_key=sp.private_key or "",
            certificate=sp.certificate or "",
            algorithm=sp.signature_algorithm,
        )

    def _redirect_url(
        self,
        location: str,
        parameter: str,
        xml: bytes,
        relay_state: str | None,
        *,
        sign: bool,
    ) -> str:
        sp = self.settings.sp
        sig_alg = sp.signature_algorithm_uri if sign and sp.can_sign else None
        query = build_redirect_query(
            parameter, xml, relay_state=relay_state, sig_alg=sig_alg
        )
        signature = None
        if sig_alg:
            signature = sign_query(
                query, private_key=sp.private_key or "", algorithm_uri=sig_alg
            )
        return signed_redirect_url(location, query, signature)


__all__ = [
    "AssertionResult",
    "AuthnRequest",
    "LogoutResult",
    "ServiceProvider",
]
