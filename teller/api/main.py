"""
Main FastAPI application for the teller.
Serves the x402 intake endpoints and, when enabled, runs the background
ingestion and provisioning loops in-process.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from teller.core.config import settings as default_settings, Settings
from teller.core.database import init_database, is_initialized, close_database, DatabaseManager
from teller.core.logging import setup_logging
from teller.api.middleware import add_middleware
from teller.api.schemas.common import HealthCheckResponse
from teller.api.routes import accounts, gas, queue, leaderboard
from teller.scheduler.main import TellerService
from teller.services.queue_service import PriorityQueue


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings
    logger.info("Starting teller API server", agent=settings.agent_name)

    owns_database = not is_initialized()
    if owns_database:
        await init_database(settings.database_url)

    service = None
    service_task = None
    if settings.background_tasks_enabled:
        try:
            service = TellerService(settings=settings, queue=app.state.queue)
            await service.initialize()
            service_task = asyncio.create_task(service.start())
            app.state.service = service
            logger.info("Background services started")
        except Exception as e:
            logger.error("Failed to start background services", error=str(e))
            service = None

    yield

    logger.info("Shutting down teller API server")

    try:
        if service is not None:
            await service.stop()
        if service_task is not None:
            await service_task
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))

    if owns_database:
        await close_database()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = settings or default_settings

    setup_logging(settings=settings)

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Moltbank teller: pay USDC on BASE to open an NXT Layer account or buy a "
            "multi-chain gas bundle. Paid endpoints answer 402 with payment "
            "instructions until a payment reference is supplied."
        ),
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.queue = PriorityQueue()

    add_middleware(app, settings)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
    )
    async def health_check():
        """Liveness probe; 503 when the database is unreachable."""
        if not await DatabaseManager.health_check():
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "status": "unhealthy",
                    "agent": settings.agent_name,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "services": {"database": "unhealthy", "api": "healthy"},
                },
            )

        service = getattr(app.state, "service", None)
        return HealthCheckResponse(
            agent=settings.agent_name,
            version=settings.app_version,
            services={
                "database": "healthy",
                "api": "healthy",
                "worker": "running" if service is not None and service.running else "stopped",
            },
        )

    app.include_router(accounts.router)
    app.include_router(gas.router)
    app.include_router(queue.router)
    app.include_router(leaderboard.router)

    return app


app = create_app()
