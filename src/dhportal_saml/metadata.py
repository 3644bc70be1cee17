"""Entity descriptor store for hosted SP and remote IdP metadata."""

from __future__ import annotations
import asyncio
import json
import logging
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any
import httpx
from lxml import etree
from dhportal_saml.config import SamlSettings
from dhportal_saml.errors import MetadataError, UnknownIdPError, UnknownSPError
from dhportal_saml.types import NS_DSIG, NS_METADATA, NS_PROTOCOL, Binding, Role
from dhportal_saml.xmlsec import Certificate, CertificateUse, XmlParseError, parse_xml


logger = logging.getLogger(__name__)

DEFAULT_ALIAS = "__DEFAULT__"

_MD = f"{{{NS_METADATA}}}"
_DS = f"{{{NS_DSIG}}}"


@dataclass(frozen=True, slots=True)
class Endpoint:
    """Protocol endpoint location with its binding."""

    location: str
    binding: Binding = Binding.REDIRECT


@dataclass(frozen=True)
class EntityDescriptor:
    """Immutable description of an SP or IdP as loaded from metadata."""

    entity_id: str
    role: Role
    sso_endpoints: tuple[Endpoint, ...] = ()
    slo_endpoints: tuple[Endpoint, ...] = ()
    acs_endpoints: tuple[Endpoint, ...] = ()
    certificates: tuple[Certificate, ...] = ()
    name_id_formats: tuple[str, ...] = ()
    name: str | None = None
    allow_unsolicited: bool | None = None
    validate_logout: bool = False
    sign_logout: bool = False

    @property
    def signing_certificates(self) -> tuple[Certificate, ...]:
        """Certificates usable for signature verification, in metadata order."""
        return tuple(cert for cert in self.certificates if cert.can_sign)

    def endpoint(self, kind: str, binding: Binding | None = None) -> Endpoint | None:
        """Return the endpoint of ``kind`` preferring ``binding`` when given."""
        endpoints: tuple[Endpoint, ...] = getattr(self, f"{kind}_endpoints")
        if binding is not None:
            for endpoint in endpoints:
                if endpoint.binding is binding:
                    return endpoint
        return endpoints[0] if endpoints else None

    def validate(self) -> None:
        """Raise :class:`MetadataError` when required parts are missing."""
        if not self.entity_id:
            raise MetadataError("Entity descriptor has no entity ID")
        if self.role == "IdP":
            if not self.sso_endpoints:
                msg = f"IdP {self.entity_id} declares no SingleSignOnService endpoint"
                raise MetadataError(msg, entity_id=self.entity_id)
            if not self.signing_certificates:
                msg = f"IdP {self.entity_id} declares no signing certificate"
                raise MetadataError(msg, entity_id=self.entity_id)
        elif self.role == "SP":
            if not self.acs_endpoints:
                msg = f"SP {self.entity_id} declares no AssertionConsumerService"
                raise MetadataError(msg, entity_id=self.entity_id)
        else:
            msg = f"Entity {self.entity_id} has unknown role {self.role!r}"
            raise MetadataError(msg, entity_id=self.entity_id)


@dataclass(frozen=True)
class _Snapshot:
    descriptors: Mapping[tuple[str, Role], EntityDescriptor]
    aliases: Mapping[str, str]


@dataclass
class ParsedMetadata:
    """Descriptors and alias names extracted from one metadata source."""

    descriptors: list[EntityDescriptor] = field(default_factory=list)
    aliases: dict[str, str] = field(default_factory=dict)
    errors: list[MetadataError] = field(default_factory=list)


class MetadataStore:
    """Read-mostly store of entity descriptors with atomic reloads.

    Readers take the current snapshot reference once and never lock; writers
    build a complete replacement snapshot and swap the reference.
    """

    def __init__(self, descriptors: Iterable[EntityDescriptor] = ()) -> None:
        """Create a store, optionally seeded with validated descriptors."""
        self._write_lock = threading.Lock()
        self._snapshot = _Snapshot(MappingProxyType({}), MappingProxyType({}))
        self.errors: list[MetadataError] = []
        seed = list(descriptors)
        if seed:
            self.replace(seed)

    def load(self, source: Any, *, strict: bool = True) -> set[EntityDescriptor]:
        """Parse ``source`` and add its descriptors to the store.

        Valid descriptors are always published. When ``strict`` is set and any
        descriptor in the source was invalid, a :class:`MetadataError` naming
        the failing entities is raised after publishing the valid ones.
        """
        parsed = parse_metadata(source)
        with self._write_lock:
            current = self._snapshot
            descriptors = dict(current.descriptors)
            aliases = dict(current.aliases)
            for descriptor in parsed.descriptors:
                descriptors[(descriptor.entity_id, descriptor.role)] = descriptor
            aliases.update(parsed.aliases)
            self._publish(descriptors, aliases)
            self.errors.extend(parsed.errors)
        _raise_collected(parsed.errors, strict=strict)
        return set(parsed.descriptors)

    def replace(
        self,
        descriptors: Iterable[EntityDescriptor],
        aliases: Mapping[str, str] | None = None,
    ) -> None:
        """Replace the whole descriptor set in a single swap."""
        staged: dict[tuple[str, Role], EntityDescriptor] = {}
        for descriptor in descriptors:
            descriptor.validate()
            staged[(descriptor.entity_id, descriptor.role)] = descriptor
        with self._write_lock:
            self._publish(staged, dict(aliases or {}))
            self.errors = []

    def reload(
        self,
        *sources: Any,
        strict: bool = False,
        aliases: Mapping[str, str] | None = None,
    ) -> set[EntityDescriptor]:
        """Rebuild the store from ``sources`` and swap it in wholesale."""
        combined = ParsedMetadata()
        for source in sources:
            try:
                parsed = parse_metadata(source)
            except MetadataError as exc:
                combined.errors.append(exc)
                continue
            combined.descriptors.extend(parsed.descriptors)
            combined.aliases.update(parsed.aliases)
            combined.errors.extend(parsed.errors)
        combined.aliases.update(aliases or {})
        staged = {(d.entity_id, d.role): d for d in combined.descriptors}
        with self._write_lock:
            self._publish(staged, combined.aliases)
            self.errors = list(combined.errors)
        _raise_collected(combined.errors, strict=strict)
        return set(combined.descriptors)

    def lookup(self, entity_id: str, role: Role) -> EntityDescriptor:
        """Return the descriptor for ``entity_id`` in ``role``."""
        snapshot = self._snapshot
        resolved = snapshot.aliases.get(entity_id, entity_id)
        descriptor = snapshot.descriptors.get((resolved, role))
        if descriptor is None:
            if role == "IdP":
                raise UnknownIdPError(entity_id)
            raise UnknownSPError(entity_id)
        return descriptor

    def entities(self, role: Role | None = None) -> list[EntityDescriptor]:
        """Return the descriptors currently published, optionally by role."""
        snapshot = self._snapshot
        return [
            descriptor
            for descriptor in snapshot.descriptors.values()
            if role is None or descriptor.role == role
        ]

    def set_alias(self, alias: str, entity_id: str) -> None:
        """Point ``alias`` (for example ``__DEFAULT__``) at ``entity_id``."""
        with self._write_lock:
            aliases = dict(self._snapshot.aliases)
            aliases[alias] = entity_id
            self._publish(dict(self._snapshot.descriptors), aliases)

    def _publish(
        self,
        descriptors: Mapping[tuple[str, Role], EntityDescriptor],
        aliases: Mapping[str, str],
    ) -> None:
        self._snapshot = _Snapshot(
            MappingProxyType(dict(descriptors)), MappingProxyType(dict(aliases))
        )

    async def reload_remote(
        self,
        urls: Sequence[str],
        *,
        timeout: float = 10.0,
        retries: int = 3,
        backoff_seconds: float = 0.5,
        extra_sources: Sequence[Any] = (),
        aliases: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> set[EntityDescriptor]:
        """Fetch remote metadata documents and swap them in with local sources.

        A URL that cannot be fetched is recorded as an error for that source;
        the remaining sources are still published.
        """
        sources: list[Any] = list(extra_sources)
        failures: list[MetadataError] = []
        for url in urls:
            try:
                sources.append(
                    await fetch_remote_metadata(
                        url,
                        timeout=timeout,
                        retries=retries,
                        backoff_seconds=backoff_seconds,
                        client=client,
                    )
                )
            except MetadataError as exc:
                logger.error("Remote metadata unavailable: %s", exc)
                failures.append(exc)
        loaded = self.reload(*sources, strict=False, aliases=aliases)
        with self._write_lock:
            self.errors.extend(failures)
        return loaded


def _raise_collected(errors: Sequence[MetadataError], *, strict: bool) -> None:
    for error in errors:
        logger.warning("Skipped invalid metadata: %s", error)
    if strict and errors:
        if len(errors) == 1:
            raise errors[0]
        names = ", ".join(str(error.entity_id) for error in errors)
        raise MetadataError(f"Invalid metadata for entities: {names}")


async def fetch_remote_metadata(
    url: str,
    *,
    timeout: float = 10.0,
    retries: int = 3,
    backoff_seconds: float = 0.5,
    client: httpx.AsyncClient | None = None,
) -> bytes:
    """Download a metadata document with bounded retries and backoff.

    Transport failures and 5xx responses are retried ``retries`` times with
    exponential backoff; 4xx responses fail immediately.
    """
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    last_error: Exception | None = None
    try:
        for attempt in range(retries + 1):
            try:
                response = await http.get(url, timeout=timeout)
            except httpx.TransportError as exc:
                last_error = exc
            else:
                if response.status_code < 500:
                    if response.is_error:
                        msg = f"Metadata request to {url} failed with {response.status_code}"
                        raise MetadataError(msg)
                    return response.content
                last_error = httpx.HTTPStatusError(
                    f"Server error {response.status_code}",
                    request=response.request,
                    response=response,
                )
            if attempt < retries:
                delay = backoff_seconds * (2**attempt)
                logger.info(
                    "Retrying metadata fetch from %s in %.2fs (attempt %d/%d)",
                    url,
                    delay,
                    attempt + 1,
                    retries,
                )
                await asyncio.sleep(delay)
    finally:
        if owns_client:
            await http.aclose()
    msg = f"Metadata could not be fetched from {url}: {last_error}"
    raise MetadataError(msg)


def parse_metadata(source: Any) -> ParsedMetadata:
    """Parse any supported metadata source into descriptors.

    Supported sources are descriptor instances (or iterables of them),
    mappings in the ``saml20-idp-remote`` array shape (a single entity or a
    mapping of alias to entity), SAML metadata XML as bytes/str, and paths to
    ``.xml`` or ``.json`` files.
    """
    if isinstance(source, EntityDescriptor):
        return _collect([source])
    if isinstance(source, Path) or (
        isinstance(source, str) and not source.lstrip().startswith("<")
    ):
        return _parse_path(Path(source))
    if isinstance(source, (bytes, str)):
        return _parse_xml_document(source)
    if isinstance(source, Mapping):
        return _parse_mapping_source(source)
    if isinstance(source, Iterable):
        items = list(source)
        if all(isinstance(item, EntityDescriptor) for item in items):
            return _collect(items)
    msg = f"Unsupported metadata source type {type(source).__name__}"
    raise MetadataError(msg)


def _collect(descriptors: Iterable[EntityDescriptor]) -> ParsedMetadata:
    parsed = ParsedMetadata()
    for descriptor in descriptors:
        try:
            descriptor.validate()
        except MetadataError as exc:
            parsed.errors.append(exc)
            continue
        parsed.descriptors.append(descriptor)
    return parsed


def _parse_path(path: Path) -> ParsedMetadata:
    try:
        content = path.expanduser().read_bytes()
    except OSError as exc:
        raise MetadataError(f"Metadata file {path} cannot be read") from exc
    if path.suffix.lower() == ".json":
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise MetadataError(f"Metadata file {path} is not valid JSON") from exc
        if not isinstance(data, Mapping):
            raise MetadataError(f"Metadata file {path} must contain an object")
        return _parse_mapping_source(data)
    return _parse_xml_document(content)


def _parse_mapping_source(source: Mapping[str, Any]) -> ParsedMetadata:
    if "entityid" in source or "entityID" in source:
        return _collect_mapping({None: source})
    entries = {key: value for key, value in source.items() if isinstance(value, Mapping)}
    if not entries:
        raise MetadataError("Metadata mapping does not contain any entity")
    return _collect_mapping(entries)


def _collect_mapping(entries: Mapping[str | None, Mapping[str, Any]]) -> ParsedMetadata:
    parsed = ParsedMetadata()
    for alias, entry in entries.items():
        try:
            descriptor = descriptor_from_mapping(entry)
            descriptor.validate()
        except MetadataError as exc:
            parsed.errors.append(exc)
            continue
        except ValueError as exc:
            entity_id = str(entry.get("entityid") or alias)
            parsed.errors.append(MetadataError(str(exc), entity_id=entity_id))
            continue
        parsed.descriptors.append(descriptor)
        if alias and alias != descriptor.entity_id:
            parsed.aliases[alias] = descriptor.entity_id
    return parsed


def _mapping_endpoints(value: Any) -> tuple[Endpoint, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (Endpoint(location=value),)
    if isinstance(value, Mapping):
        value = [value]
    endpoints: list[Endpoint] = []
    for item in value:
        if isinstance(item, str):
            endpoints.append(Endpoint(location=item))
            continue
        location = item.get("Location") or item.get("location")
        if not location:
            continue
        binding = item.get("Binding") or item.get("binding") or Binding.REDIRECT
        endpoints.append(Endpoint(location=str(location), binding=Binding.parse(binding)))
    return tuple(endpoints)


def _mapping_certificates(entry: Mapping[str, Any]) -> tuple[Certificate, ...]:
    certificates: list[Certificate] = []
    for key in entry.get("keys") or ():
        text = key.get("X509Certificate")
        if not text:
            continue
        signing = bool(key.get("signing", True))
        encryption = bool(key.get("encryption", False))
        use: CertificateUse = "both"
        if signing and not encryption:
            use = "signing"
        elif encryption and not signing:
            use = "encryption"
        certificates.append(Certificate.from_text(str(text), use=use))
    cert_data = entry.get("certData")
    if cert_data:
        certificates.append(Certificate.from_text(str(cert_data)))
    return tuple(certificates)


def descriptor_from_mapping(entry: Mapping[str, Any]) -> EntityDescriptor:
    """Build a descriptor from a ``saml20-idp-remote`` style mapping."""
    entity_id = str(entry.get("entityid") or entry.get("entityID") or "").strip()
    role_raw = str(entry.get("role", "IdP"))
    role: Role = "SP" if role_raw.lower() == "sp" else "IdP"
    name = entry.get("name")
    if isinstance(name, Mapping):
        name = name.get("en") or next(iter(name.values()), None)
    formats = entry.get("NameIDFormat") or ()
    if isinstance(formats, str):
        formats = (formats,)
    allow_unsolicited = entry.get("allow_unsolicited")
    return EntityDescriptor(
        entity_id=entity_id,
        role=role,
        sso_endpoints=_mapping_endpoints(entry.get("SingleSignOnService")),
        slo_endpoints=_mapping_endpoints(entry.get("SingleLogoutService")),
        acs_endpoints=_mapping_endpoints(entry.get("AssertionConsumerService")),
        certificates=_mapping_certificates(entry),
        name_id_formats=tuple(str(item) for item in formats),
        name=str(name) if name else None,
        allow_unsolicited=None if allow_unsolicited is None else bool(allow_unsolicited),
        validate_logout=bool(entry.get("validate.logout", False)),
        sign_logout=bool(entry.get("sign.logout", False)),
    )


def _parse_xml_document(data: bytes | str) -> ParsedMetadata:
    try:
        root = parse_xml(data)
    except XmlParseError as exc:
        raise MetadataError(str(exc)) from exc
    if root.tag == f"{_MD}EntitiesDescriptor":
        entities = root.iter(f"{_MD}EntityDescriptor")
    elif root.tag == f"{_MD}EntityDescriptor":
        entities = iter([root])
    else:
        raise MetadataError(f"Unexpected metadata root element {root.tag}")
    parsed = ParsedMetadata()
    for entity in entities:
        entity_id = entity.get("entityID", "")
        role_elements = (
            ("IdP", entity.find(f"{_MD}IDPSSODescriptor")),
            ("SP", entity.find(f"{_MD}SPSSODescriptor")),
        )
        found = False
        for role, element in role_elements:
            if element is None:
                continue
            found = True
            try:
                descriptor = _descriptor_from_xml(entity_id, role, element)
                descriptor.validate()
            except MetadataError as exc:
                parsed.errors.append(exc)
                continue
            except ValueError as exc:
                parsed.errors.append(MetadataError(str(exc), entity_id=entity_id))
                continue
            parsed.descriptors.append(descriptor)
        if not found:
            msg = f"Entity {entity_id} has no IdP or SP role descriptor"
            parsed.errors.append(MetadataError(msg, entity_id=entity_id))
    return parsed


def _xml_endpoints(element: etree._Element, tag: str) -> tuple[Endpoint, ...]:
    endpoints: list[Endpoint] = []
    for node in element.findall(f"{_MD}{tag}"):
        location = node.get("Location")
        binding = node.get("Binding")
        if not location or binding not in {b.value for b in Binding}:
            continue
        endpoints.append(Endpoint(location=location, binding=Binding(binding)))
    return tuple(endpoints)


def _descriptor_from_xml(
    entity_id: str, role: Role, element: etree._Element
) -> EntityDescriptor:
    certificates: list[Certificate] = []
    for key in element.findall(f"{_MD}KeyDescriptor"):
        use_attr = key.get("use")
        use: CertificateUse = "both"
        if use_attr in {"signing", "encryption"}:
            use = use_attr  # type: ignore[assignment]
        for cert in key.iter(f"{_DS}X509Certificate"):
            if cert.text and cert.text.strip():
                certificates.append(Certificate.from_text(cert.text, use=use))
    formats = tuple(
        node.text.strip()
        for node in element.findall(f"{_MD}NameIDFormat")
        if node.text and node.text.strip()
    )
    return EntityDescriptor(
        entity_id=entity_id,
        role=role,
        sso_endpoints=_xml_endpoints(element, "SingleSignOnService"),
        slo_endpoints=_xml_endpoints(element, "SingleLogoutService"),
        acs_endpoints=_xml_endpoints(element, "AssertionConsumerService"),
        certificates=tuple(certificates),
        name_id_formats=formats,
    )


def idp_descriptor_from_settings(settings: SamlSettings) -> EntityDescriptor | None:
    """Build the single IdP declared through ``DHPORTAL_IDP_*`` settings."""
    meta = settings.metadata
    if not meta.idp_entity_id or not meta.idp_sso_url:
        return None
    certificates: tuple[Certificate, ...] = ()
    if meta.idp_certificate:
        try:
            certificates = (Certificate.from_text(meta.idp_certificate, use="signing"),)
        except ValueError as exc:
            msg = f"IdP certificate for {meta.idp_entity_id} is invalid"
            raise MetadataError(msg, entity_id=meta.idp_entity_id) from exc
    slo = (Endpoint(meta.idp_slo_url),) if meta.idp_slo_url else ()
    return EntityDescriptor(
        entity_id=meta.idp_entity_id,
        role="IdP",
        sso_endpoints=(Endpoint(meta.idp_sso_url),),
        slo_endpoints=slo,
        certificates=certificates,
        name_id_formats=(settings.sp.name_id_policy,) if settings.sp.name_id_policy else (),
    )


def build_sp_descriptor(settings: SamlSettings) -> EntityDescriptor:
    """Describe the hosted service provider from settings."""
    sp = settings.sp
    certificates: tuple[Certificate, ...] = ()
    if sp.certificate:
        certificates = (Certificate.from_text(sp.certificate, use="signing"),)
    slo = (Endpoint(sp.slo_url, Binding.REDIRECT),) if sp.slo_url else ()
    return EntityDescriptor(
        entity_id=sp.entity_id,
        role="SP",
        acs_endpoints=(Endpoint(sp.acs_url, Binding.POST),),
        slo_endpoints=slo,
        certificates=certificates,
        name_id_formats=(sp.name_id_policy,) if sp.name_id_policy else (),
        name=sp.auth_source,
        sign_logout=sp.sign_logout,
    )


def render_sp_metadata(
    descriptor: EntityDescriptor,
    *,
    authn_requests_signed: bool = False,
    want_assertions_signed: bool = True,
    contact_name: str | None = None,
    contact_email: str | None = None,
) -> bytes:
    """Render SAML 2.0 metadata for the hosted service provider."""
    nsmap = {"md": NS_METADATA, "ds": NS_DSIG}
    root = etree.Element(f"{_MD}EntityDescriptor", nsmap=nsmap)
    root.set("entityID", descriptor.entity_id)
    sp = etree.SubElement(root, f"{_MD}SPSSODescriptor")
    sp.set("AuthnRequestsSigned", "true" if authn_requests_signed else "false")
    sp.set("WantAssertionsSigned", "true" if want_assertions_signed else "false")
    sp.set("protocolSupportEnumeration", NS_PROTOCOL)
    for cert in descriptor.certificates:
        key = etree.SubElement(sp, f"{_MD}KeyDescriptor")
        if cert.use != "both":
            key.set("use", cert.use)
        info = etree.SubElement(key, f"{_DS}KeyInfo")
        data = etree.SubElement(info, f"{_DS}X509Data")
        etree.SubElement(data, f"{_DS}X509Certificate").text = cert.body
    for endpoint in descriptor.slo_endpoints:
        node = etree.SubElement(sp, f"{_MD}SingleLogoutService")
        node.set("Binding", endpoint.binding.value)
        node.set("Location", endpoint.location)
    for name_id_format in descriptor.name_id_formats:
        etree.SubElement(sp, f"{_MD}NameIDFormat").text = name_id_format
    for index, endpoint in enumerate(descriptor.acs_endpoints):
        node = etree.SubElement(sp, f"{_MD}AssertionConsumerService")
        node.set("Binding", endpoint.binding.value)
        node.set("Location", endpoint.location)
        node.set("index", str(index))
        if index == 0:
            node.set("isDefault", "true")
    if contact_name or contact_email:
        contact = etree.SubElement(root, f"{_MD}ContactPerson")
        contact.set("contactType", "technical")
        if contact_name:
            etree.SubElement(contact, f"{_MD}GivenName").text = contact_name
        if contact_email:
            etree.SubElement(contact, f"{_MD}EmailAddress").text = f"mailto:{contact_email}"
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", pretty_print=True)


def local_sources(settings: SamlSettings) -> list[Any]:
    """Return the metadata files and the environment-declared IdP."""
    sources: list[Any] = [Path(path) for path in settings.metadata.files]
    descriptor = idp_descriptor_from_settings(settings)
    if descriptor is not None:
        sources.append(descriptor)
    return sources


async def load_from_settings(
    store: MetadataStore,
    settings: SamlSettings,
    *,
    client: httpx.AsyncClient | None = None,
) -> set[EntityDescriptor]:
    """Populate ``store`` from every configured metadata source."""
    meta = settings.metadata
    aliases = {DEFAULT_ALIAS: meta.default_idp} if meta.default_idp else None
    sources = local_sources(settings)
    if meta.urls:
        loaded = await store.reload_remote(
            meta.urls,
            timeout=meta.timeout,
            retries=meta.retries,
            backoff_seconds=meta.backoff_seconds,
            extra_sources=sources,
            aliases=aliases,
            client=client,
        )
    else:
        loaded = store.reload(*sources, aliases=aliases)
    logger.info(
        "Loaded %d metadata entities (%d errors)", len(loaded), len(store.errors)
    )
    return loaded


__all__ = [
    "DEFAULT_ALIAS",
    "Endpoint",
    "EntityDescriptor",
    "MetadataStore",
    "ParsedMetadata",
    "build_sp_descriptor",
    "descriptor_from_mapping",
    "fetch_remote_metadata",
    "idp_descriptor_from_settings",
    "load_from_settings",
    "local_sources",
    "parse_metadata",
    "render_sp_metadata",
]
