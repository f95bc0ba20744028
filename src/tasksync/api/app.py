"""FastAPI application for tasksync."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import ConfigModel, load_config
from ..services import SyncServices, build_services
from .dependencies import error_body
from .routes import sync_router, tasks_router


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def create_app(config: Optional[ConfigModel] = None,
               services: Optional[SyncServices] = None) -> FastAPI:
    """Create the API application.

    Args:
        config: Configuration to build services from; loaded from disk if omitted
        services: Prebuilt service graph, takes precedence over ``config``

    Returns:
        Configured FastAPI application
    """
    if services is None:
        services = build_services(config or load_config())
    config = services.config

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start and stop the periodic sync."""
        logger.info(f"Starting tasksync API (database: {services.store.db_path})")

        scheduler = None
        if config.auto_sync:
            scheduler = services.create_scheduler()
            scheduler.start()
        app.state.scheduler = scheduler

        yield

        if scheduler is not None:
            await scheduler.stop()
        logger.info("Shutting down tasksync API")

    app = FastAPI(
        title="tasksync",
        description="Local-first task manager with outbox synchronization",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.scheduler = None

    app.include_router(tasks_router)
    app.include_router(sync_router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_body(request, "Internal server error"),
        )

    return app
