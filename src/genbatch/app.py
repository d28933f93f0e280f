"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from genbatch.api.routes import batch, edit, generate, video
from genbatch.core import timezone  # noqa: F401  (sets TZ=UTC)
from genbatch.core.config import Settings, configure_logging
from genbatch.core.database import setup_db_session
from genbatch.models.batch import BatchKind, BatchStatus
from genbatch.repositories.job_store import JobStore
from genbatch.services.generation_log import GenerationLogService
from genbatch.services.providers.registry import build_providers
from genbatch.services.qstash import QStashPublisher
from genbatch.services.storage.pinata_storage import PinataStorage
from genbatch.uow import create_uow_factory

logger = structlog.get_logger()

# How long shutdown waits for in-flight generation runs to log their items
SHUTDOWN_GRACE_SECONDS = 30


async def mark_orphaned_video_batches(uow_factory) -> int:
    """Persist video batches left running by a previous process as interrupted.

    Their pollers died with that process; marking them interrupted makes them
    resumable from the API.

    Returns:
        Number of batches marked
    """
    marked = 0
    async with await uow_factory() as uow:
        for snapshot in await uow.batch_snapshots.list_recent(kind=BatchKind.VIDEO.value):
            if snapshot.status != BatchStatus.RUNNING:
                continue
            snapshot.settle()
            await uow.batch_snapshots.save(snapshot)
            marked += 1
    return marked


def init_app_state(app: FastAPI, settings: Settings, session_factory, job_store: JobStore) -> None:
    """Build every shared service and store it on app.state for the dependencies."""
    uow_factory = create_uow_factory(session_factory)
    providers = build_providers(settings)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.job_store = job_store
    app.state.providers = providers
    app.state.video_provider = providers["kie"]
    app.state.storage = PinataStorage(settings.pinata_jwt, settings.pinata_gateway)
    app.state.publisher = QStashPublisher(
        token=settings.qstash_token,
        base_url=settings.qstash_url,
        public_base_url=settings.public_base_url,
        retries=settings.qstash_retries,
    )
    app.state.log_service = GenerationLogService(uow_factory, usd_to_ils=settings.usd_to_ils)
    app.state.background_tasks = set()
    app.state.video_pollers = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, initialize database and redis clients, build services
    - Shutdown: Stop video pollers (persisted as interrupted), let in-flight
      generation runs finish logging, close clients
    """
    settings: Settings = app.state.settings

    # Configure logging
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    job_store = JobStore.from_url(settings.redis_url, ttl_seconds=settings.batch_ttl_seconds)
    init_app_state(app, settings, session_factory, job_store)

    try:
        marked = await mark_orphaned_video_batches(app.state.uow_factory)
        if marked:
            logger.info("startup.video_batches_interrupted", count=marked)
    except Exception as e:
        # Log error but don't prevent startup - batches can still be resumed manually
        logger.error(
            "startup.video_recovery_failed",
            error=str(e),
            error_type=type(e).__name__,
        )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")

    # Pollers persist their batch as interrupted so it can be resumed after restart
    for poller in list(app.state.video_pollers.values()):
        await poller.stop()
    app.state.video_pollers.clear()

    pending = list(app.state.background_tasks)
    if pending:
        _, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE_SECONDS)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)

    await job_store.close()
    await app.state.video_provider.aclose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="genbatch API",
        description="Resumable batch generation of AI images and videos",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register API routers (prefixes are set in the router definitions)
    app.include_router(generate.router)
    app.include_router(batch.router)
    app.include_router(video.router)
    app.include_router(edit.router)

    # Health check endpoint with database and redis validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database and redis connectivity test.

        Returns:
            200: {"status": "healthy"} if both connections succeed
            503: {"status": "unhealthy", "error": {...}} otherwise
        """
        try:
            # Test database connection with simple query
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            await app.state.job_store.ping()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            # Log error and return unhealthy status
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
