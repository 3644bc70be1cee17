"""System health and SAML diagnostics routes."""

from __future__ import annotations
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from fastapi import APIRouter
from dhportal_saml_backend.app.dependencies import (
    AdminDep,
    ServiceProviderDep,
    SettingsDep,
)
from dhportal_saml_backend.app.schemas.system import (
    MetadataEntitySummary,
    SystemInfoResponse,
)


public_router = APIRouter()
router = APIRouter()


def _read_current_version(package: str) -> str | None:
    try:
        return package_version(package)
    except PackageNotFoundError:
        return None


@public_router.get("/system/health")
def get_system_health() -> dict[str, str]:
    """Return a lightweight unauthenticated health status."""
    return {"status": "ok"}


@router.get("/system/info", response_model=SystemInfoResponse)
def get_system_info(
    _admin: AdminDep,
    settings: SettingsDep,
    service_provider: ServiceProviderDep,
) -> SystemInfoResponse:
    """Return redacted settings and the published metadata entities."""
    entities = [
        MetadataEntitySummary(
            entity_id=descriptor.entity_id,
            role=descriptor.role,
            name=descriptor.name,
            sso_locations=[endpoint.location for endpoint in descriptor.sso_endpoints],
            slo_locations=[endpoint.location for endpoint in descriptor.slo_endpoints],
            certificate_fingerprints=[
                cert.fingerprint for cert in descriptor.certificates
            ],
            certificates_expire_at=[
                cert.not_valid_after for cert in descriptor.certificates
            ],
        )
        for descriptor in service_provider.metadata.entities()
    ]
    return SystemInfoResponse(
        version=_read_current_version("dhportal-saml"),
        settings=settings.redacted(),
        entities=entities,
        metadata_errors=[error.message for error in service_provider.metadata.errors],
        pending_requests=len(service_provider.pending),
        checked_at=datetime.now(tz=UTC),
    )


__all__ = ["public_router", "router"]
