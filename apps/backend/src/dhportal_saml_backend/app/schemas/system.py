"""Schemas for system health and SAML diagnostics responses."""

from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel


class MetadataEntitySummary(BaseModel):
    """One entity currently published by the metadata store."""

    entity_id: str
    role: str
    name: str | None = None
    sso_locations: list[str]
    slo_locations: list[str]
    certificate_fingerprints: list[str]
    certificates_expire_at: list[datetime]


class SystemInfoResponse(BaseModel):
    """Redacted configuration and metadata state of the deployment."""

    version: str | None = None
    settings: dict[str, object]
    entities: list[MetadataEntitySummary]
    metadata_errors: list[str]
    pending_requests: int
    checked_at: datetime
