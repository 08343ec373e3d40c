"""FastAPI application factory."""

# Import timezone enforcement (sets TZ=UTC)
import asyncio
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from unigen.api.routes import generations, providers
from unigen.core import timezone  # noqa: F401
from unigen.core.config import Settings, configure_logging
from unigen.core.database import setup_db_session
from unigen.services.generation.orchestrator import TaskOrchestrator
from unigen.uow import create_uow_factory
from unigen.workers.generation_worker import run_generation_worker

logger = structlog.get_logger()

RESTART_DELAY_SECONDS = 1


def create_resilient_worker(
    coro_func, orchestrator, settings, worker_name: str, shutdown_event: asyncio.Event
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., run_generation_worker)
        orchestrator: TaskOrchestrator shared with the API
        settings: Application settings
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY_SECONDS,
                exc_info=exc,
            )
        else:
            # Worker loops never return on their own
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY_SECONDS,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY_SECONDS)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func(orchestrator, settings))
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func(orchestrator, settings))
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: configure logging, build the session/UoW factories and the
      orchestrator, start the generation worker
    - Shutdown: stop the worker
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    orchestrator = TaskOrchestrator.from_settings(uow_factory, settings)

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.orchestrator = orchestrator

    shutdown_event = asyncio.Event()

    worker_task = create_resilient_worker(
        run_generation_worker, orchestrator, settings, "generation", shutdown_event
    )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        storage_enabled=settings.storage_enabled,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    worker_task.cancel()
    await asyncio.gather(worker_task, return_exceptions=True)


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="UniGen API",
        description="Multi-provider image, video and audio generation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(generations.router)
    app.include_router(providers.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with await app.state.uow_factory() as uow:
                result = await uow.session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
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
