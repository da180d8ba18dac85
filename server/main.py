"""
Operational HTTP surface for the workflow queue worker.

Serves health and read-only queue / execution inspection. Queue processing
itself runs in ``worker.py``; this process only runs the recovery sweeper.
"""

from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from core.container import container
from core.health import get_health_status, set_startup_time
from core.logging import configure_logging, get_logger
from routers import ops

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow queue ops server")
    set_startup_time()

    await container.database().startup()

    recovery_sweeper = container.recovery_sweeper()
    if settings.recovery_enabled:
        await recovery_sweeper.start()

    logger.info("Services started successfully")
    yield

    # Shutdown
    if settings.recovery_enabled:
        await recovery_sweeper.stop()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="Workflow Queue Worker",
    version="0.1.0",
    description="Durable task queue and workflow execution worker",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)

app.include_router(ops.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    health = await get_health_status(container.database(), container.queue(), settings,
                                    container.storage())
    health["environment"] = "development" if settings.debug else "production"
    health["timestamp"] = datetime.now().isoformat()
    return health


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting ops server", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
