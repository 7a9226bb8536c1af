"""
AccelStream Main Application

FastAPI application entry point exposing the stream orchestrator.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from accelstream import __version__
from accelstream.config import load_config
from accelstream.streaming.orchestrator import (
    StreamOrchestrator,
    get_orchestrator,
    set_orchestrator,
)

# Logger
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown tasks:
    - Load configuration
    - Probe capabilities and restore cached state
    - Start network telemetry
    - Stop sessions and pipelines on shutdown
    """
    logger.info(f"Starting AccelStream v{__version__}")

    config = load_config()
    logger.info(f"Configuration loaded, server port: {config.server.port}")

    orchestrator = StreamOrchestrator(config)
    set_orchestrator(orchestrator)
    app.state.orchestrator = orchestrator

    await orchestrator.start()
    logger.info("AccelStream started successfully")

    yield

    logger.info("Shutting down AccelStream")
    try:
        await get_orchestrator().stop()
    except Exception as e:
        logger.warning(f"Error stopping orchestrator: {e}")
    set_orchestrator(None)
    logger.info("AccelStream shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        use_lifespan: Start the orchestrator with the app (disabled in tests
            that install their own orchestrator)

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="AccelStream",
        description="Hardware-accelerated stream orchestration",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    from accelstream.api import api_router, health_router
    app.include_router(api_router)
    app.include_router(health_router)

    @app.get("/api/version")
    async def version_info() -> dict:
        """Get version information."""
        return {"name": "AccelStream", "version": __version__}

    return app


def main() -> None:
    """
    Main entry point for running the server.

    Called when running `python -m accelstream` or via the CLI.
    """
    import uvicorn
    from accelstream.utils.logging_setup import log_system_info, setup_logging

    config = load_config()
    setup_logging(config.logging)
    log_system_info()

    logger.info(f"Starting AccelStream v{__version__}")

    uvicorn.run(
        create_app(),
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
    )


if __name__ == "__main__":
    main()
