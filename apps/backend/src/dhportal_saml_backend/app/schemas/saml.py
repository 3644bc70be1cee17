"""Schemas for SAML session status responses."""

from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel


class AuthStatusResponse(BaseModel):
    """Attributes of the caller's authenticated session."""

    authenticated: bool
    auth_source: str
    name_id: str | None = None
    idp_entity_id: str | None = None
    attributes: dict[str, list[str]]
    created_at: datetime
    expires_at: datetime
