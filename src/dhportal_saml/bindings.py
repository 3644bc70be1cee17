"""SAML 2.0 HTTP-Redirect and HTTP-POST binding codecs."""

from __future__ import annotations
import base64
import binascii
import html
import zlib
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit
from dhportal_saml.errors import InvalidResponseError
from dhportal_saml.types import Binding


_MAX_INFLATED_BYTES = 1024 * 1024


@dataclass(frozen=True, slots=True)
class RedirectSignature:
    """Detached signature parameters carried on a redirect-binding query."""

    signed_part: str
    sig_alg: str
    signature: str


def deflate_and_encode(xml: bytes) -> str:
    """Raw DEFLATE the message and base64 it for the redirect binding."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    deflated = compressor.compress(xml) + compressor.flush()
    return base64.b64encode(deflated).decode("ascii")


def decode_and_inflate(value: str) -> bytes:
    """Reverse :func:`deflate_and_encode`, bounding the inflated size."""
    try:
        raw = base64.b64decode(value, validate=False)
        decompressor = zlib.decompressobj(-15)
        inflated = decompressor.decompress(raw, _MAX_INFLATED_BYTES)
    except (binascii.Error, zlib.error, ValueError) as exc:
        raise InvalidResponseError("Redirect binding payload is not valid") from exc
    if decompressor.unconsumed_tail:
        raise InvalidResponseError("Redirect binding payload is too large")
    return inflated


def encode_post(xml: bytes) -> str:
    """Base64 encode a message for the HTTP-POST binding."""
    return base64.b64encode(xml).decode("ascii")


def decode_post(value: str) -> bytes:
    """Decode an HTTP-POST binding form value."""
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidResponseError("POST binding payload is not valid base64") from exc


def build_redirect_query(
    parameter: str,
    xml: bytes,
    *,
    relay_state: str | None = None,
    sig_alg: str | None = None,
) -> str:
    """Return the ordered query string covered by a redirect signature."""
    parts = [f"{parameter}={quote(deflate_and_encode(xml), safe='')}"]
    if relay_state:
        parts.append(f"RelayState={quote(relay_state, safe='')}")
    if sig_alg:
        parts.append(f"SigAlg={quote(sig_alg, safe='')}")
    return "&".join(parts)


def append_query(url: str, query: str) -> str:
    """Append ``query`` to ``url`` preserving any existing parameters."""
    scheme, netloc, path, existing, fragment = urlsplit(url)
    combined = f"{existing}&{query}" if existing else query
    return urlunsplit((scheme, netloc, path, combined, fragment))


def signed_redirect_url(url: str, query: str, signature: str | None) -> str:
    """Complete a redirect URL, appending the signature when present."""
    if signature:
        query = f"{query}&{urlencode({'Signature': signature})}"
    return append_query(url, query)


def extract_redirect_signature(
    query_string: str, parameter: str
) -> RedirectSignature | None:
    """Rebuild the signed portion of an incoming redirect query.

    The signed part must be taken from the raw, still URL-encoded query in
    the order ``SAMLxxx``, ``RelayState``, ``SigAlg``.
    """
    raw: dict[str, str] = {}
    for item in query_string.split("&"):
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        raw.setdefault(key, value)
    if "Signature" not in raw or "SigAlg" not in raw or parameter not in raw:
        return None
    ordered = [f"{parameter}={raw[parameter]}"]
    if "RelayState" in raw:
        ordered.append(f"RelayState={raw['RelayState']}")
    ordered.append(f"SigAlg={raw['SigAlg']}")
    decoded = dict(parse_qsl(query_string, keep_blank_values=True))
    return RedirectSignature(
        signed_part="&".join(ordered),
        sig_alg=decoded["SigAlg"],
        signature=decoded["Signature"],
    )


def decode_message(raw: str, binding: Binding | str) -> bytes:
    """Decode a protocol message received on ``binding``."""
    resolved = Binding.parse(binding)
    if not raw:
        raise InvalidResponseError("Protocol message is empty")
    if resolved is Binding.REDIRECT:
        return decode_and_inflate(raw)
    return decode_post(raw)


def render_post_form(
    action: str, fields: Mapping[str, str | None], *, title: str = "Continue"
) -> str:
    """Return an auto-submitting HTML form for the HTTP-POST binding."""
    inputs = "\n".join(
        f'      <input type="hidden" name="{html.escape(name)}" '
        f'value="{html.escape(value)}"/>'
        for name, value in fields.items()
        if value is not None
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "  <head><meta charset=\"utf-8\"/>"
        f"<title>{html.escape(title)}</title></head>\n"
        '  <body onload="document.forms[0].submit()">\n'
        f'    <form method="post" action="{html.escape(action)}">\n'
        f"{inputs}\n"
        "      <noscript><button type=\"submit\">Continue</button></noscript>\n"
        "    </form>\n"
        "  </body>\n"
        "</html>\n"
    )


__all__ = [
    "RedirectSignature",
    "append_query",
    "build_redirect_query",
    "decode_and_inflate",
    "decode_message",
    "decode_post",
    "deflate_and_encode",
    "encode_post",
    "extract_redirect_signature",
    "render_post_form",
    "signed_redirect_url",
]
