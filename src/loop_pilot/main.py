"""Loop Pilot - FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from loop_pilot import __version__
from loop_pilot.api.loops import router as loops_router
from loop_pilot.config import settings
from loop_pilot.core import orchestrator as orchestrator_module

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"Starting {settings.app_name}...")

    settings.workspaces_path.mkdir(parents=True, exist_ok=True)
    orchestrator = orchestrator_module.get_orchestrator()
    logger.info(f"Loaded {len(orchestrator.config.repos)} configured repo(s)")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    try:
        await orchestrator.shutdown()
    except Exception as e:
        logger.error(f"Error shutting down orchestrator: {e}")


app = FastAPI(
    title=settings.app_name,
    description="Autonomous coding-agent loops over GitHub repositories",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(loops_router)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    orchestrator = orchestrator_module.get_orchestrator()

    return {
        "status": "healthy",
        "version": __version__,
        "active_processes": orchestrator.supervisor.count(),
        "active_drives": orchestrator.pool.active_count(),
    }


def run() -> None:
    """Console entry point."""
    import uvicorn

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "loop_pilot.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
