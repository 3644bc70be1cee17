"""Error taxonomy shared by the SAML service provider components."""

from __future__ import annotations


GENERIC_AUTH_FAILURE = "Authentication failed"


class SamlError(Exception):
    """Base error carrying a stable code and the HTTP status to report."""

    code = "saml.error"
    status_code = 400
    public_message = "SAML processing failed"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        """Store the detailed message and an optional code override."""
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ConfigurationError(SamlError, ValueError):
    """Raised at startup when required settings are absent or malformed."""

    code = "saml.configuration"
    status_code = 500
    public_message = "Service is misconfigured"


class MetadataError(SamlError):
    """Raised when an entity descriptor is incomplete for its declared role."""

    code = "saml.metadata"
    status_code = 500
    public_message = "Identity provider metadata is unavailable"

    def __init__(self, message: str, *, entity_id: str | None = None) -> None:
        """Record the entity the failure applies to."""
        super().__init__(message)
        self.entity_id = entity_id


class EntityNotFoundError(SamlError, LookupError):
    """Raised when a metadata lookup does not match any descriptor."""

    code = "saml.unknown_entity"
    status_code = 404
    public_message = "Unknown SAML entity"

    def __init__(self, entity_id: str) -> None:
        """Build the message from the missing entity identifier."""
        super().__init__(f"No metadata registered for entity {entity_id!r}")
        self.entity_id = entity_id


class UnknownIdPError(EntityNotFoundError):
    """Identity provider is not present in the metadata store."""

    code = "saml.unknown_idp"
    public_message = "Unknown identity provider"


class UnknownSPError(EntityNotFoundError):
    """Service provider is not the hosted entity."""

    code = "saml.unknown_sp"
    public_message = "Unknown service provider"


class AuthenticationFailure(SamlError):
    """Per-request authentication failure; never retried automatically."""

    code = "saml.authentication_failed"
    status_code = 401
    public_message = GENERIC_AUTH_FAILURE


class InvalidResponseError(AuthenticationFailure):
    """Response is malformed, unsuccessful, or addressed to another party."""

    code = "saml.invalid_response"


class InvalidSignatureError(AuthenticationFailure):
    """Signature is missing where required or fails every trusted certificate."""

    code = "saml.invalid_signature"


class ExpiredAssertionError(AuthenticationFailure):
    """Assertion validity window does not contain the current time."""

    code = "saml.expired_assertion"


class UnsolicitedResponseError(AuthenticationFailure):
    """Response does not answer a live AuthnRequest issued by this SP."""

    code = "saml.unsolicited_response"


class ReplayError(AuthenticationFailure):
    """Request ID or assertion ID was already consumed."""

    code = "saml.replay"


class InvalidBindingError(SamlError, ValueError):
    """Binding name is neither HTTP-Redirect nor HTTP-POST."""

    code = "saml.invalid_binding"
    status_code = 400
    public_message = "Unsupported SAML binding"


class InvalidRelayStateError(SamlError):
    """Relay state points at a host outside the trusted URL domains."""

    code = "saml.invalid_relay_state"
    status_code = 400
    public_message = "Return URL is not allowed"


class SessionError(SamlError):
    """Base class for session tracker failures."""

    code = "saml.session"
    status_code = 401
    public_message = "Session is not valid"


class SessionNotFoundError(SessionError):
    """No session exists for the identifier."""

    code = "saml.session_not_found"


class SessionExpiredError(SessionError):
    """Session passed its expiry; the caller must re-authenticate."""

    code = "saml.session_expired"
    public_message = "Session has expired"


class SessionStateError(SessionError):
    """Requested transition is not allowed from the current session state."""

    code = "saml.session_state"
    status_code = 409


class LogoutError(SamlError):
    """Logout response could not be matched or reported a failure."""

    code = "saml.logout_failed"
    public_message = "Logout failed"


__all__ = [
    "GENERIC_AUTH_FAILURE",
    "AuthenticationFailure",
    "ConfigurationError",
    "EntityNotFoundError",
    "ExpiredAssertionError",
    "InvalidBindingError",
    "InvalidRelayStateError",
    "InvalidResponseError",
    "InvalidSignatureError",
    "LogoutError",
    "MetadataError",
    "ReplayError",
    "SamlError",
    "SessionError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "SessionStateError",
    "UnknownIdPError",
    "UnknownSPError",
    "UnsolicitedResponseError",
]
