"""FastAPI application factory."""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware

from reelcast.api.routes import videos
from reelcast.core.config import Settings, configure_logging
from reelcast.core.database import get_database
from reelcast.services.job_queue import VideoJobQueue
from reelcast.services.storage import create_storage
from reelcast.uow import create_uow_factory
from reelcast.workers.video_worker import VideoWorkerPool, run_cleanup_loop

logger = structlog.get_logger()

RESTART_DELAY = 1  # Fixed 1 second delay between restarts


def create_resilient_worker(
    coro_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    tasks: dict[str, asyncio.Task],
) -> asyncio.Task:
    """Run a background loop and restart it if it crashes.

    ``tasks[worker_name]`` always holds the current task, so shutdown can await
    the restarted instance rather than the original one.

    Args:
        coro_factory: Zero-argument callable returning the worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        tasks: Registry of running worker tasks

    Returns:
        Initial task handle
    """

    def on_worker_done(task: asyncio.Task):
        # Check if shutdown was requested
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        # Check if task was cancelled (normal shutdown)
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
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            # Check again if shutdown was requested during sleep
            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            start()

        asyncio.create_task(restart_worker())

    def start() -> asyncio.Task:
        task = asyncio.create_task(coro_factory(), name=worker_name)
        task.add_done_callback(on_worker_done)
        tasks[worker_name] = task
        return task

    return start()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, connect the database, build storage, start workers
    - Shutdown: Drain the worker pool, stop cleanup, close database connections
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    database = get_database(settings)
    session_factory = await database.connect()
    job_queue = VideoJobQueue(create_uow_factory(session_factory))
    storage = create_storage(settings)

    # Store in app.state for access in routes
    app.state.database = database
    app.state.job_queue = job_queue
    app.state.storage = storage
    app.state.worker_pool = None

    shutdown_event = asyncio.Event()
    tasks: dict[str, asyncio.Task] = {}

    if settings.run_video_worker:
        pool = VideoWorkerPool(job_queue, storage, settings)
        app.state.worker_pool = pool
        create_resilient_worker(pool.run, "video_worker", shutdown_event, tasks)

    create_resilient_worker(
        lambda: run_cleanup_loop(job_queue, settings.video_job_cleanup_interval_seconds),
        "video_job_cleanup",
        shutdown_event,
        tasks,
    )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        storage_backend=settings.storage_backend,
        video_worker=settings.run_video_worker,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    # Let in-flight renders finish; the cleanup loop has nothing to drain
    if app.state.worker_pool is not None:
        app.state.worker_pool.stop()
    if "video_job_cleanup" in tasks:
        tasks["video_job_cleanup"].cancel()

    await asyncio.gather(*tasks.values(), return_exceptions=True)
    await database.close()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment when omitted

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Reelcast API",
        description="Text overlay rendering queue for short videos",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(videos.router)  # Videos router has prefix="/api/videos" in definition

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy"} if database connection fails
        """
        database = getattr(app.state, "database", None)
        if database is not None and database.is_connected and await database.ping():
            logger.debug("health_check.success")
            return {"status": "healthy"}

        logger.error("health_check.failed")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy"}

    return app


# Create app instance for uvicorn
app = create_app()
