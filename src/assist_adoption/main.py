"""Main FastAPI application for Assist Adoption."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from .api.routes import router as api_router
from .config import get_settings
from .database.connection import db_manager
from .database.migrations import create_tables
from .observability.logging import configure_logging
from .services.container import build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()

    # Configure structured logging
    configure_logging(
        environment=settings.environment,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    # Initialize database
    db_manager.initialize()

    # Create tables if they don't exist
    await create_tables()

    services = build_services(settings, db_manager.get_session_factory())
    app.state.services = services

    # Background consumer for per-user aggregation messages
    app.state.worker_stop = asyncio.Event()
    app.state.worker_task = None
    if settings.enable_aggregation_worker:
        await services.queue.create_if_not_exists()
        app.state.worker_task = asyncio.create_task(
            services.worker.run(app.state.worker_stop)
        )
        logger.info("Aggregation worker enabled on %s", services.queue.name)

    logger.info("%s v%s started", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)
    logger.info("Database: Connected")

    yield

    # Shutdown
    logger.info("Shutting down Assist Adoption...")

    app.state.worker_stop.set()
    if app.state.worker_task is not None:
        await app.state.worker_task
        logger.info("Aggregation worker stopped")

    # Close database connections
    await db_manager.close()
    logger.info("Database connections closed")

    logger.info("Assist Adoption shutdown complete")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Assistant adoption tracking: usage aggregation, streaks and key rotation",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "endpoints": {
                "health": "/health",
                "key_rotation": "/api/v1/admin/key-rotation?mode=prepare|confirm",
                "daily_snapshots": "POST /api/v1/admin/daily-snapshots",
                "agent_totals": "POST /api/v1/admin/agent-totals/{day}",
                "webhook": "POST /api/v1/webhook",
            },
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/health/live")
    async def health_live():
        """Liveness probe: process is running."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def health_ready(request: Request):
        """Readiness probe: DB reachable and ingestion state readable."""
        checks = {}

        try:
            from .database.connection import get_db_context
            async with get_db_context() as session:
                from sqlalchemy import text
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            logger.exception("Readiness database check failed")
            return Response(
                content='{"status":"not_ready","checks":{"database":"error"}}',
                status_code=503,
                media_type="application/json",
            )

        services = getattr(request.app.state, "services", None)
        if services is not None:
            checks["ingestion"] = "paused" if await services.pause_state.is_paused() else "running"
        task = getattr(request.app.state, "worker_task", None)
        checks["worker"] = "running" if task is not None and not task.done() else "disabled"

        return {"status": "ready", "checks": checks}

    # Prometheus metrics endpoint
    if settings.enable_metrics:
        @app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from .observability.metrics import generate_metrics_text
            return PlainTextResponse(
                generate_metrics_text(), media_type="text/plain; version=0.0.4; charset=utf-8"
            )

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "assist_adoption.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
