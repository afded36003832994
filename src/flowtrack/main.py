"""FlowTrack main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowtrack import __version__
from flowtrack.api import router
from flowtrack.api.deps import validate_auth_config
from flowtrack.config import settings
from flowtrack.db.base import Database
from flowtrack.search.client import SearchIndexClient
from flowtrack.search.synchronizer import IndexSynchronizer

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("flowtrack")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting FlowTrack server...")
    logger.info(f"Environment: {settings.env.value}")

    # Validate authentication configuration (fail fast if insecure)
    validate_auth_config()

    database = Database(settings.database_url, echo=settings.debug)
    await database.init()
    app.state.database = database
    logger.info("Database initialized")

    # The index is optional; the service runs without it
    index_client = SearchIndexClient.from_settings(settings)
    await index_client.start()
    synchronizer = IndexSynchronizer.from_settings(settings, index_client)
    await synchronizer.start()
    app.state.index_client = index_client
    app.state.synchronizer = synchronizer

    yield

    # Cleanup, in reverse order of startup
    logger.info("Shutting down FlowTrack server...")
    await synchronizer.stop()
    await index_client.close()
    await database.close()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="FlowTrack",
    description="Workflow task tracking with event-sourced stage analytics",
    version=__version__,
    lifespan=lifespan,
)

# Explicit allowlist, no wildcards with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)

app.include_router(router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "flowtrack.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
