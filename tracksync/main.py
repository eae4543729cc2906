"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from tracksync.api import attachments, bulk, dashboard, events, issues, mutations, projects, sync
from tracksync.config import settings
from tracksync.context import SyncContext, build_context
from tracksync.scheduler import SyncScheduler
from tracksync.services.bulk import BulkOperationCoordinator
from tracksync.services.sync_engine import SyncEngine

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(context: Optional[SyncContext] = None, *, start_scheduler: bool = True) -> FastAPI:
    """Build the application around a sync context (the configured one by default)"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        # Startup
        logger.info("Starting Redmine sync service")
        ctx = context or build_context(settings)
        engine = SyncEngine(ctx)
        recovered = engine.recover()
        if recovered["requeued"] or recovered["ambiguous_creates"]:
            logger.info(f"Recovered interrupted mutations: {recovered}")
        ctx.notifier.start()

        scheduler = SyncScheduler(engine, ctx.settings.sync_interval_minutes)
        if start_scheduler:
            scheduler.start()

        app.state.engine = engine
        app.state.bulk = BulkOperationCoordinator(engine)
        app.state.scheduler = scheduler
        yield
        # Shutdown
        logger.info("Stopping Redmine sync service")
        scheduler.stop()
        engine.shutdown()
        ctx.notifier.stop()

    app = FastAPI(
        title="Redmine Sync Service",
        description="Offline-first cache and change queue for a Redmine tracker",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Include API routers
    app.include_router(sync.router)
    app.include_router(mutations.router)
    app.include_router(bulk.router)
    app.include_router(issues.router)
    app.include_router(projects.router)
    app.include_router(attachments.router)
    app.include_router(events.router)
    app.include_router(dashboard.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "Redmine Sync"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tracksync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
