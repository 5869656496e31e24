"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from controlplane.config import Settings
from controlplane.routes import health, root

__all__ = ["create_app"]

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Announce when the routing table is live and when it is torn down."""
    logger.info("%s %s: routes ready", app.title, app.version)
    yield
    logger.info("%s: application shutdown complete", app.title)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the routing table: health paths plus the root placeholder."""
    settings = settings or Settings()
    application = FastAPI(
        title=settings.app_name,
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
    )
    health.add_health_routes(application, settings.health_paths)
    root.add_root_route(application)
    return application
