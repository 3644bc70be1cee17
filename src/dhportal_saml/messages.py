"""Build and read SAML 2.0 protocol messages with lxml."""

from __future__ import annotations
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from lxml import etree
from dhportal_saml.errors import InvalidResponseError
from dhportal_saml.types import (
    CM_BEARER,
    NAMEID_UNSPECIFIED,
    NS_ASSERTION,
    NS_DSIG,
    NS_PROTOCOL,
    STATUS_SUCCESS,
    Binding,
)
from dhportal_saml.xmlsec import XmlParseError, parse_xml


_P = f"{{{NS_PROTOCOL}}}"
_A = f"{{{NS_ASSERTION}}}"
_NSMAP = {"samlp": NS_PROTOCOL, "saml": NS_ASSERTION}


def new_message_id() -> str:
    """Return a fresh protocol message ID carrying 256 bits of randomness."""
    # IDs must be valid xs:ID values, which cannot start with a digit.
    return f"_{secrets.token_hex(32)}"


def format_instant(moment: datetime) -> str:
    """Render a timestamp in the UTC ``xs:dateTime`` form used by SAML."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_instant(value: str | None) -> datetime | None:
    """Parse an ``xs:dateTime`` attribute value into an aware datetime."""
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidResponseError(f"Timestamp {value!r} is not valid") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def serialize(element: etree._Element) -> bytes:
    """Serialize a message without an XML declaration."""
    return etree.tostring(element, encoding="UTF-8", xml_declaration=False)


def _signature_placeholder(parent: etree._Element) -> None:
    placeholder = etree.SubElement(parent, f"{{{NS_DSIG}}}Signature", nsmap={"ds": NS_DSIG})
    placeholder.set("Id", "placeholder")


def build_authn_request(
    *,
    request_id: str,
    issuer: str,
    destination: str,
    acs_url: str,
    issue_instant: datetime,
    name_id_policy: str | None = None,
    protocol_binding: Binding = Binding.POST,
    signed: bool = False,
) -> etree._Element:
    """Build an ``AuthnRequest`` element.

    When ``signed`` is set a signature placeholder follows ``Issuer`` so the
    enveloped signature lands where the schema requires it.
    """
    root = etree.Element(f"{_P}AuthnRequest", nsmap=_NSMAP)
    root.set("ID", request_id)
    root.set("Version", "2.0")
    root.set("IssueInstant", format_instant(issue_instant))
    root.set("Destination", destination)
    root.set("AssertionConsumerServiceURL", acs_url)
    root.set("ProtocolBinding", protocol_binding.value)
    etree.SubElement(root, f"{_A}Issuer").text = issuer
    if signed:
        _signature_placeholder(root)
    if name_id_policy:
        policy = etree.SubElement(root, f"{_P}NameIDPolicy")
        policy.set("Format", name_id_policy)
        policy.set("AllowCreate", "true")
    return root


def build_logout_request(
    *,
    request_id: str,
    issuer: str,
    destination: str,
    issue_instant: datetime,
    name_id: str,
    name_id_format: str | None = None,
    session_index: str | None = None,
    signed: bool = False,
) -> etree._Element:
    """Build a ``LogoutRequest`` naming the subject and session to end."""
    root = etree.Element(f"{_P}LogoutRequest", nsmap=_NSMAP)
    root.set("ID", request_id)
    root.set("Version", "2.0")
    root.set("IssueInstant", format_instant(issue_instant))
    root.set("Destination", destination)
    etree.SubElement(root, f"{_A}Issuer").text = issuer
    if signed:
        _signature_placeholder(root)
    subject = etree.SubElement(root, f"{_A}NameID")
    subject.text = name_id
    if name_id_format:
        subject.set("Format", name_id_format)
    if session_index:
        etree.SubElement(root, f"{_P}SessionIndex").text = session_index
    return root


def build_logout_response(
    *,
    response_id: str,
    issuer: str,
    destination: str,
    in_response_to: str,
    issue_instant: datetime,
    status: str = STATUS_SUCCESS,
) -> etree._Element:
    """Build a ``LogoutResponse`` answering an IdP-initiated logout."""
    root = etree.Element(f"{_P}LogoutResponse", nsmap=_NSMAP)
    root.set("ID", response_id)
    root.set("Version", "2.0")
    root.set("IssueInstant", format_instant(issue_instant))
    root.set("Destination", destination)
    root.set("InResponseTo", in_response_to)
    etree.SubElement(root, f"{_A}Issuer").text = issuer
    status_node = etree.SubElement(root, f"{_P}Status")
    etree.SubElement(status_node, f"{_P}StatusCode").set("Value", status)
    return root


def load_message(data: bytes, expected: str) -> etree._Element:
    """Parse ``data`` and require a ``samlp`` root element named ``expected``."""
    try:
        root = parse_xml(data)
    except XmlParseError as exc:
        raise InvalidResponseError(str(exc)) from exc
    if root.tag != f"{_P}{expected}":
        raise InvalidResponseError(f"Expected samlp:{expected}, got {root.tag}")
    if root.get("Version") != "2.0":
        raise InvalidResponseError("Only SAML 2.0 messages are accepted")
    if not root.get("ID"):
        raise InvalidResponseError(f"samlp:{expected} has no ID")
    return root


def message_issuer(element: etree._Element) -> str | None:
    """Return the direct ``saml:Issuer`` of a message or assertion."""
    issuer = element.find(f"{_A}Issuer")
    if issuer is None or not issuer.text:
        return None
    return issuer.text.strip()


@dataclass(frozen=True)
class MessageStatus:
    """Top-level and nested status codes of a response."""

    code: str | None
    sub_code: str | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        """Return True for ``urn:...:status:Success``."""
        return self.code == STATUS_SUCCESS


def read_status(element: etree._Element) -> MessageStatus:
    """Extract the status block of a ``Response`` or ``LogoutResponse``."""
    status = element.find(f"{_P}Status")
    if status is None:
        return MessageStatus(code=None)
    code = status.find(f"{_P}StatusCode")
    sub = code.find(f"{_P}StatusCode") if code is not None else None
    message = status.findtext(f"{_P}StatusMessage")
    return MessageStatus(
        code=code.get("Value") if code is not None else None,
        sub_code=sub.get("Value") if sub is not None else None,
        message=message.strip() if message else None,
    )


def find_assertion(response: etree._Element) -> etree._Element:
    """Return the single plaintext assertion of a ``Response``."""
    assertions = response.findall(f"{_A}Assertion")
    if not assertions:
        if response.find(f"{_A}EncryptedAssertion") is not None:
            raise InvalidResponseError("Encrypted assertions are not supported")
        raise InvalidResponseError("Response carries no assertion")
    if len(assertions) > 1:
        raise InvalidResponseError("Response carries more than one assertion")
    return assertions[0]


@dataclass
class AssertionContent:
    """Fields read from an already verified ``saml:Assertion``."""

    assertion_id: str
    issuer: str | None
    name_id: str | None
    name_id_format: str | None
    not_before: datetime | None
    not_on_or_after: datetime | None
    audiences: list[str] = field(default_factory=list)
    recipient: str | None = None
    subject_in_response_to: str | None = None
    subject_not_on_or_after: datetime | None = None
    session_index: str | None = None
    session_not_on_or_after: datetime | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)


def read_assertion(assertion: etree._Element) -> AssertionContent:
    """Read subject, conditions, authn statement and attributes."""
    assertion_id = assertion.get("ID")
    if not assertion_id:
        raise InvalidResponseError("Assertion has no ID")
    subject = assertion.find(f"{_A}Subject")
    name_id = name_id_format = None
    recipient = subject_irt = subject_expiry = None
    if subject is not None:
        name_node = subject.find(f"{_A}NameID")
        if name_node is not None and name_node.text:
            name_id = name_node.text.strip()
            name_id_format = name_node.get("Format", NAMEID_UNSPECIFIED)
        for confirmation in subject.findall(f"{_A}SubjectConfirmation"):
            if confirmation.get("Method") != CM_BEARER:
                continue
            data = confirmation.find(f"{_A}SubjectConfirmationData")
            if data is not None:
                recipient = data.get("Recipient")
                subject_irt = data.get("InResponseTo")
                subject_expiry = parse_instant(data.get("NotOnOrAfter"))
            break
        else:
            raise InvalidResponseError("Assertion has no bearer subject confirmation")

    conditions = assertion.find(f"{_A}Conditions")
    not_before = not_on_or_after = None
    audiences: list[str] = []
    if conditions is not None:
        not_before = parse_instant(conditions.get("NotBefore"))
        not_on_or_after = parse_instant(conditions.get("NotOnOrAfter"))
        for audience in conditions.iter(f"{_A}Audience"):
            if audience.text:
                audiences.append(audience.text.strip())

    session_index = session_expiry = None
    statement = assertion.find(f"{_A}AuthnStatement")
    if statement is not None:
        session_index = statement.get("SessionIndex")
        session_expiry = parse_instant(statement.get("SessionNotOnOrAfter"))

    attributes: dict[str, list[str]] = {}
    for attribute in assertion.iter(f"{_A}Attribute"):
        name = attribute.get("Name")
        if not name:
            continue
        values = attributes.setdefault(name, [])
        for value in attribute.findall(f"{_A}AttributeValue"):
            values.append((value.text or "").strip())

    return AssertionContent(
        assertion_id=assertion_id,
        issuer=message_issuer(assertion),
        name_id=name_id,
        name_id_format=name_id_format,
        not_before=not_before,
        not_on_or_after=not_on_or_after,
        audiences=audiences,
        recipient=recipient,
        subject_in_response_to=subject_irt,
        subject_not_on_or_after=subject_expiry,
        session_index=session_index,
        session_not_on_or_after=session_expiry,
        attributes=attributes,
    )


__all__ = [
    "AssertionContent",
    "MessageStatus",
    "build_authn_request",
    "build_logout_request",
    "build_logout_response",
    "find_assertion",
    "format_instant",
    "load_message",
    "message_issuer",
    "new_message_id",
    "parse_instant",
    "read_assertion",
    "read_status",
    "serialize",
]
