"""
Main FastAPI application.

Builds the orchestrator from settings, starts its background jobs for the
lifetime of the app and mounts the v1 query endpoints.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from datahub.api.v1 import sources
from datahub.core.config import get_settings
from datahub.orchestrator import DataServiceOrchestrator, build_default_orchestrator

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(orchestrator: Optional[DataServiceOrchestrator] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (built from settings if None)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        logger.info("Starting datahub")
        logger.info(f"Log level: {settings.log_level}")

        app.state.orchestrator = orchestrator or build_default_orchestrator(settings)
        status = app.state.orchestrator.get_configuration_status()
        logger.info(f"Registered sources: {', '.join(status['registered_sources']) or 'none'}")
        if status["missing_credentials"]:
            logger.warning(f"Missing API keys for: {', '.join(status['missing_credentials'])}")

        await app.state.orchestrator.start()
        yield

        logger.info("Shutting down")
        await app.state.orchestrator.stop()

    app = FastAPI(
        title="datahub",
        description="Unified access layer for Canadian economic and housing data providers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(sources.router, prefix="/api/v1")

    @app.get("/")
    def root():
        return {"service": "datahub", "version": "0.1.0", "docs": "/docs"}

    return app


app = create_app()
