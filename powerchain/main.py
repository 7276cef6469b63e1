"""PowerChain main application."""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from sqlalchemy.engine import make_url

from powerchain import __version__
from powerchain.api.routes import cascades, dependencies, inactivity_rules, logs, nodes, ws
from powerchain.config import settings
from powerchain.core.cascade_engine import cascade_engine
from powerchain.core.inactivity_monitor import inactivity_monitor
from powerchain.core.scheduler import job_scheduler
from powerchain.core.websocket import event_broadcaster
from powerchain.db.database import close_db, init_db

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _ensure_sqlite_directory(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting PowerChain...")

    _ensure_sqlite_directory(settings.database.url)
    await init_db()
    logger.info("Database initialized")

    if settings.cascade.reconcile_on_startup:
        await cascade_engine.reconcile_orphaned_cascades()

    job_scheduler.start()
    if settings.monitor.enabled:
        inactivity_monitor.start()
        logger.info(
            f"Inactivity monitor running every {settings.monitor.interval_seconds}s"
        )

    logger.info(f"PowerChain ready on http://{settings.host}:{settings.port}")

    yield

    # Cleanup
    logger.info("Shutting down PowerChain...")

    inactivity_monitor.stop()
    job_scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")

    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title="PowerChain",
    description="Dependency-aware power orchestration for homelab fleets",
    version=__version__,
    lifespan=lifespan,
)

# Mount API routes
app.include_router(nodes.router, prefix="/api/v1", tags=["nodes"])
app.include_router(dependencies.router, prefix="/api/v1", tags=["dependencies"])
app.include_router(cascades.router, prefix="/api/v1", tags=["cascades"])
app.include_router(inactivity_rules.router, prefix="/api/v1", tags=["inactivity-rules"])
app.include_router(logs.router, prefix="/api/v1", tags=["logs"])
app.include_router(ws.router, prefix="/api/v1", tags=["events"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "scheduler_running": job_scheduler.is_running(),
        "monitor_enabled": settings.monitor.enabled,
        "event_clients": event_broadcaster.get_connection_count(),
    }


def main():
    """Run the application."""
    import uvicorn
    uvicorn.run(
        "powerchain.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )


if __name__ == "__main__":
    main()
