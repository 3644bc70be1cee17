"""Application factory for the SAML service provider backend."""

from __future__ import annotations
import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import httpx
from fastapi import FastAPI
from dhportal_saml.config import SamlSettings, load_saml_settings
from dhportal_saml.engine import ServiceProvider
from dhportal_saml.metadata import load_from_settings
from dhportal_saml_backend.app.errors import register_exception_handlers
from dhportal_saml_backend.app.logging_config import get_logger
from dhportal_saml_backend.app.routers import saml as saml_routes
from dhportal_saml_backend.app.routers import system as system_routes


logger = get_logger(__name__)


async def _sweep_periodically(service_provider: ServiceProvider, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        removed = await asyncio.to_thread(service_provider.sessions.sweep)
        service_provider.pending.purge()
        logger.debug("Session sweep removed %d sessions", removed)


def create_app(
    settings: SamlSettings | None = None,
    *,
    service_provider: ServiceProvider | None = None,
    load_metadata: bool | None = None,
    metadata_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Metadata is loaded during startup from the configured files, URLs and
    single-IdP variables unless an already populated engine is supplied.
    """
    resolved = settings or (
        service_provider.settings if service_provider else load_saml_settings()
    )
    engine = service_provider or ServiceProvider.from_settings(resolved)
    should_load = service_provider is None if load_metadata is None else load_metadata

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if should_load:
            await load_from_settings(engine.metadata, resolved, client=metadata_client)
        sweeper: asyncio.Task[None] | None = None
        if resolved.session.sweep_interval > 0:
            sweeper = asyncio.create_task(
                _sweep_periodically(engine, resolved.session.sweep_interval)
            )
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper

    app = FastAPI(
        title="DH Portal SAML Service Provider",
        lifespan=lifespan,
        debug=resolved.debug and not resolved.is_production,
    )
    app.state.settings = resolved
    app.state.service_provider = engine
    register_exception_handlers(app)
    app.include_router(saml_routes.router, prefix="/saml", tags=["saml"])
    app.include_router(system_routes.public_router, tags=["system"])
    app.include_router(system_routes.router, tags=["system"])
    logger.info(
        "Service provider ready",
        extra={"event": "startup", "sp_entity_id": resolved.sp.entity_id},
    )
    return app


__all__ = ["create_app"]
