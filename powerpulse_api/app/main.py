"""
Main entrypoint for the PowerPulse delivery API.

This module assembles the FastAPI application, sets up logging and
includes versioned routers.  The ``create_app`` function builds and
configures the app, which is then instantiated at module import time as
``app``::

    uvicorn powerpulse_api.app.main:app --reload

On startup the database migrations are applied and, unless
``SCHEDULER_ENABLED`` is false, the in-process delivery scheduler is
started; it is stopped again on shutdown.
"""

import logging

from fastapi import FastAPI

from .api.v1.router import router as v1_router
from .core.config import settings
from .core.db import init_db
from .core.logging_config import setup_logging
from .services.scheduler import delivery_scheduler


def create_app() -> FastAPI:
    """Create and configure a FastAPI application.

    Returns
    -------
    FastAPI
        A configured FastAPI application instance.
    """
    # Logging first so that everything below can log.
    setup_logging(settings.log_level, settings.log_file)

    app = FastAPI(title=settings.project_name, version=settings.api_version)
    app.include_router(v1_router, prefix="/api/v1")

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {"status": "ok", "scheduler_running": delivery_scheduler.running}

    @app.on_event("startup")
    async def startup_event() -> None:
        init_db()
        if settings.scheduler_enabled:
            delivery_scheduler.start()
        else:
            logging.getLogger(__name__).info("Delivery scheduler disabled by configuration")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        delivery_scheduler.stop()

    return app


# Create the application instance at import time so that tools such as
# uvicorn can discover it without calling create_app manually.
app = create_app()
