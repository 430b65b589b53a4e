"""Main application entry point."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from multiscraper import __version__
from multiscraper.api.deps import require_admin
from multiscraper.api.routes import notifications, products, queries, retailers, users
from multiscraper.config import settings
from multiscraper.db.seed import seed_retailers
from multiscraper.db.session import AsyncSessionLocal, engine, init_db
from multiscraper.errors import PersistenceError
from multiscraper.logging_config import setup_logging
from multiscraper.worker.scheduler import query_scheduler
from multiscraper.worker.tasks import task_runner

setup_logging()
logger = logging.getLogger(__name__)

_startup_task: Optional[asyncio.Task] = None


async def _schedule_existing_queries():
    """First-run and arm every active query without holding up startup."""
    try:
        count = await query_scheduler.schedule_all_active_queries()
        logger.info(f"Scheduled {count} existing queries")
    except PersistenceError as e:
        logger.error(f"Could not schedule existing queries, discovery will retry: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global _startup_task

    # Startup
    logger.info("Starting MultiScraper...")

    try:
        await init_db()
    except PersistenceError as e:
        logger.critical(f"Database unavailable, exiting: {e}")
        sys.exit(1)

    async with AsyncSessionLocal() as db:
        await seed_retailers(db)

    await task_runner.initialize()

    await query_scheduler.start(schedule_queries=False)
    _startup_task = asyncio.create_task(_schedule_existing_queries())
    logger.info("Scheduler started")

    yield

    # Shutdown: timers stop before the database goes away
    logger.info("Shutting down...")

    if _startup_task and not _startup_task.done():
        _startup_task.cancel()
        try:
            await _startup_task
        except asyncio.CancelledError:
            pass

    query_scheduler.shutdown()
    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="MultiScraper",
    description="Scheduled retailer searches with new-listing and price-drop notifications",
    version=__version__,
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(retailers.router)
app.include_router(users.router)
app.include_router(queries.router)
app.include_router(products.router)
app.include_router(notifications.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "scheduler_running": query_scheduler.running,
        "scheduled_queries": len(query_scheduler.scheduled_query_ids()),
    }


@app.get("/scheduler/jobs", dependencies=[Depends(require_admin)])
async def scheduler_jobs():
    """Next and last run of every scheduled query."""
    return {"jobs": query_scheduler.job_status()}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


def run():
    """Console entry point."""
    uvicorn.run(
        "multiscraper.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
