"""XML parsing and signature helpers backed by lxml, signxml and cryptography.

Signature construction and verification are delegated entirely to signxml;
this module only decides which certificates are trusted and in which order
they are tried, and makes sure callers continue with the signed content
rather than the raw document.
"""

from __future__ import annotations
import base64
import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal
from cryptography import x509
from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree
from signxml import (
    CanonicalizationMethod,
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
    XMLSigner,
    XMLVerifier,
)
from signxml.exceptions import SignXMLException
from dhportal_saml.config import SIGNATURE_ALGORITHMS
from dhportal_saml.errors import InvalidSignatureError
from dhportal_saml.types import NS_DSIG


logger = logging.getLogger(__name__)

CertificateUse = Literal["signing", "encryption", "both"]

_SIGNXML_METHODS = {
    "rsa-sha256": (SignatureMethod.RSA_SHA256, DigestAlgorithm.SHA256),
    "rsa-sha384": (SignatureMethod.RSA_SHA384, DigestAlgorithm.SHA384),
    "rsa-sha512": (SignatureMethod.RSA_SHA512, DigestAlgorithm.SHA512),
}

_QUERY_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    SIGNATURE_ALGORITHMS["rsa-sha256"]: hashes.SHA256,
    SIGNATURE_ALGORITHMS["rsa-sha384"]: hashes.SHA384,
    SIGNATURE_ALGORITHMS["rsa-sha512"]: hashes.SHA512,
}


class XmlParseError(ValueError):
    """Raised when a document is not well-formed or uses forbidden constructs."""


def _parser() -> etree.XMLParser:
    # Parsers are not shared between threads.
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        remove_comments=True,
        huge_tree=False,
    )


def parse_xml(data: bytes | str) -> etree._Element:
    """Parse untrusted XML with entity expansion and network access disabled."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    try:
        root = etree.fromstring(data, parser=_parser())
    except etree.XMLSyntaxError as exc:
        raise XmlParseError(f"Malformed XML document: {exc}") from exc
    if root.getroottree().docinfo.doctype:
        raise XmlParseError("XML documents with a DOCTYPE are not accepted")
    return root


@dataclass(frozen=True, slots=True)
class Certificate:
    """An X.509 certificate taken from metadata or configuration."""

    pem: str
    fingerprint: str
    subject: str
    not_valid_after: datetime
    use: CertificateUse = "both"

    @classmethod
    def from_text(cls, text: str, *, use: CertificateUse = "both") -> Certificate:
        """Load a PEM document or a bare base64 certificate body."""
        pem = _normalize_pem(text)
        try:
            cert = x509.load_pem_x509_certificate(pem.encode("ascii"))
        except (ValueError, UnicodeEncodeError) as exc:
            raise ValueError("Certificate could not be parsed") from exc
        fingerprint = cert.fingerprint(hashes.SHA256()).hex()
        return cls(
            pem=pem,
            fingerprint=fingerprint,
            subject=cert.subject.rfc4514_string(),
            not_valid_after=cert.not_valid_after_utc,
            use=use,
        )

    @property
    def body(self) -> str:
        """Return the base64 body without PEM armour, as used in metadata."""
        lines = self.pem.strip().splitlines()
        return "".join(line for line in lines if not line.startswith("-----"))

    @property
    def can_sign(self) -> bool:
        """Return True when the certificate may be used to verify signatures."""
        return self.use in {"signing", "both"}

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True once the certificate validity period has ended."""
        current = now or datetime.now(tz=UTC)
        return current >= self.not_valid_after

    def public_key(self) -> rsa.RSAPublicKey:
        """Return the RSA public key embedded in the certificate."""
        key = x509.load_pem_x509_certificate(self.pem.encode("ascii")).public_key()
        if not isinstance(key, rsa.RSAPublicKey):
            raise InvalidSignatureError("Only RSA certificates are supported")
        return key


def _normalize_pem(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("-----BEGIN"):
        return stripped + "\n"
    body = "".join(stripped.split())
    try:
        base64.b64decode(body, validate=True)
    except ValueError as exc:
        raise ValueError("Certificate body is not valid base64") from exc
    wrapped = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN CERTIFICATE-----\n{wrapped}\n-----END CERTIFICATE-----\n"


def trusted_signing_certificates(
    certificates: Sequence[Certificate],
    *,
    prune_expired: bool,
    now: datetime | None = None,
) -> list[Certificate]:
    """Return the ordered trust set used for verification."""
    trusted = [cert for cert in certificates if cert.can_sign]
    if prune_expired:
        trusted = [cert for cert in trusted if not cert.is_expired(now)]
    return trusted


def sign_element(
    element: etree._Element,
    *,
    private_key: str,
    certificate: str,
    algorithm: str = "rsa-sha256",
) -> etree._Element:
    """Return an enveloped-signed copy of ``element`` referencing its ``ID``.

    A ``<ds:Signature Id="placeholder"/>`` child, when present, marks where the
    signature is inserted; otherwise it is appended as the last child.
    """
    try:
        method, digest = _SIGNXML_METHODS[algorithm]
    except KeyError as exc:
        raise ValueError(f"Unsupported signature algorithm {algorithm!r}") from exc
    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=method,
        digest_algorithm=digest,
        c14n_algorithm=CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0,
    )
    reference = element.get("ID")
    return signer.sign(
        element,
        key=private_key.encode("utf-8"),
        cert=certificate,
        reference_uri=f"#{reference}" if reference else None,
        id_attribute="ID",
    )


def has_signature(element: etree._Element) -> bool:
    """Return True when ``element`` carries its own enveloped signature."""
    return element.find(f"{{{NS_DSIG}}}Signature") is not None


def verify_signed_element(
    element: etree._Element,
    certificates: Sequence[Certificate],
) -> tuple[etree._Element, Certificate]:
    """Verify ``element`` against each trusted certificate in order.

    Returns the signed content as produced by the verifier together with the
    certificate that verified it. The first certificate that verifies wins.
    """
    if not certificates:
        raise InvalidSignatureError("No trusted certificate is configured for issuer")
    expected_id = element.get("ID")
    # Verified standalone so a signature elsewhere in the tree is never used.
    document = etree.tostring(element)
    for certificate in certificates:
        try:
            result = XMLVerifier().verify(
                document,
                x509_cert=certificate.pem,
                id_attribute="ID",
                expect_references=1,
            )
        except (SignXMLException, ValueError) as exc:
            logger.debug(
                "Signature did not verify with certificate %s: %s",
                certificate.fingerprint[:16],
                exc,
            )
            continue
        signed = result.signed_xml
        if signed is None or signed.get("ID") != expected_id:
            raise InvalidSignatureError("Signature does not cover the signed element")
        return signed, certificate
    raise InvalidSignatureError("Signature does not verify with any trusted certificate")


def sign_query(query: str, *, private_key: str, algorithm_uri: str) -> str:
    """Sign a redirect-binding query string and return the base64 signature."""
    hash_type = _QUERY_HASHES.get(algorithm_uri)
    if hash_type is None:
        raise ValueError(f"Unsupported SigAlg {algorithm_uri!r}")
    key = serialization.load_pem_private_key(private_key.encode("utf-8"), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Only RSA private keys are supported")
    signature = key.sign(query.encode("utf-8"), padding.PKCS1v15(), hash_type())
    return base64.b64encode(signature).decode("ascii")


def verify_query(
    signed_part: str,
    signature: str,
    *,
    algorithm_uri: str,
    certificates: Sequence[Certificate],
) -> Certificate:
    """Verify a redirect-binding signature against the ordered trust set."""
    hash_type = _QUERY_HASHES.get(algorithm_uri)
    if hash_type is None:
        raise InvalidSignatureError(f"Unsupported SigAlg {algorithm_uri!r}")
    try:
        raw_signature = base64.b64decode(signature, validate=True)
    except ValueError as exc:
        raise InvalidSignatureError("Redirect signature is not valid base64") from exc
    payload = signed_part.encode("utf-8")
    for certificate in certificates:
        try:
            certificate.public_key().verify(
                raw_signature, payload, padding.PKCS1v15(), hash_type()
            )
        except CryptoInvalidSignature:
            continue
        return certificate
    raise InvalidSignatureError("Redirect signature does not verify")


__all__ = [
    "Certificate",
    "CertificateUse",
    "XmlParseError",
    "has_signature",
    "parse_xml",
    "sign_element",
    "sign_query",
    "trusted_signing_certificates",
    "verify_query",
    "verify_signed_element",
]
