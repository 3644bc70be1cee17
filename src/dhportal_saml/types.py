"""Type aliases and protocol constants for SAML 2.0 processing."""

from __future__ import annotations
from enum import StrEnum
from typing import Literal
from dhportal_saml.errors import InvalidBindingError


Role = Literal["SP", "IdP"]


class Binding(StrEnum):
    """HTTP bindings supported for protocol messages."""

    REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
    POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"

    @classmethod
    def parse(cls, value: str | Binding) -> Binding:
        """Accept a full URN or the short names ``redirect``/``post``."""
        if isinstance(value, Binding):
            return value
        lowered = value.strip().lower()
        if lowered in {"redirect", "http-redirect"}:
            return cls.REDIRECT
        if lowered in {"post", "http-post"}:
            return cls.POST
        try:
            return cls(value.strip())
        except ValueError:
            msg = f"Unsupported SAML binding {value!r}"
            raise InvalidBindingError(msg) from None


NS_PROTOCOL = "urn:oasis:names:tc:SAML:2.0:protocol"
NS_ASSERTION = "urn:oasis:names:tc:SAML:2.0:assertion"
NS_METADATA = "urn:oasis:names:tc:SAML:2.0:metadata"
NS_DSIG = "http://www.w3.org/2000/09/xmldsig#"

NAMESPACES = {
    "samlp": NS_PROTOCOL,
    "saml": NS_ASSERTION,
    "md": NS_METADATA,
    "ds": NS_DSIG,
}

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
STATUS_REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
CM_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"
NAMEID_UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"

__all__ = [
    "Binding",
    "CM_BEARER",
    "NAMEID_UNSPECIFIED",
    "NAMESPACES",
    "NS_ASSERTION",
    "NS_DSIG",
    "NS_METADATA",
    "NS_PROTOCOL",
    "Role",
    "STATUS_REQUESTER",
    "STATUS_SUCCESS",
]
