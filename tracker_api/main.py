"""Tracker webhook service: FastAPI entry point.

Registers middleware, the webhook router and lifecycle hooks. Run with::

    uvicorn tracker_api.main:app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tracker_api.middleware import OrganizationMiddleware
from tracker_api.webhooks import router as webhooks_router
from tracker_core.config import IntegrationsConfig
from tracker_core.observability.logging_setup import configure_logging

VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def create_app(config: IntegrationsConfig | None = None) -> FastAPI:
    """Build the app. Reads TRACKER_* environment variables when no config is given."""
    config = config or IntegrationsConfig.from_env()

    # -----------------------------------------------------------------------
    # Lifespan
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup/shutdown hooks."""
        configure_logging(config.log_level, config.service_name)
        logger.info(
            "Tracker webhook service started",
            extra={"providers": sorted(app.state.webhook_handlers)},
        )
        yield
        logger.info("Tracker webhook service shutting down")

    # -----------------------------------------------------------------------
    # App
    # -----------------------------------------------------------------------

    app = FastAPI(
        title="Tracker Webhooks",
        description="Inbound webhook verification and dispatch for task trackers",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.webhook_handlers = config.webhooks.build_handlers()

    app.add_middleware(OrganizationMiddleware)
    app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "version": VERSION,
            "providers": sorted(app.state.webhook_handlers),
        }

    return app


app = create_app()
