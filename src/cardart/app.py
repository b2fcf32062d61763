"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Response, status
from sqlalchemy import text

from cardart.api.routes import images
from cardart.core import timezone  # noqa: F401
from cardart.core.config import Settings, configure_logging
from cardart.core.database import setup_db_session
from cardart.uow import create_uow_factory
from cardart.workers.image_worker import ImageWorker, is_queue_healthy, open_worker_context

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: configure logging, create the session factory, start the image worker
    - Shutdown: drain the worker and release its resources
    """
    settings: Settings = app.state.settings
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    app.state.session_factory = session_factory
    app.state.uow_factory = create_uow_factory(session_factory)
    app.state.worker = None

    if app.state.start_worker:
        context = await open_worker_context(settings, session_factory=session_factory)
        worker = ImageWorker(context)
        await worker.start()
        app.state.worker = worker

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        worker=app.state.worker is not None,
    )

    yield

    logger.info("application.shutdown")
    if app.state.worker is not None:
        clean = await app.state.worker.shutdown(settings.shutdown_timeout_seconds)
        if not clean:
            logger.error("application.worker_shutdown_forced")
    else:
        engine = session_factory.kw.get("bind")
        if engine is not None:
            await engine.dispose()


def create_app(settings: Optional[Settings] = None, start_worker: bool = True) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Application settings (loaded from the environment when omitted)
        start_worker: Host the image worker inside the application lifespan

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Card Image Pipeline API",
        description="Image ingestion and normalization for catalog prints",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.start_worker = start_worker

    app.include_router(images.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check with database connectivity and queue failure rate.

        Returns:
            200: {"status": "healthy", "queue": {...}}
            503: {"status": "unhealthy", ...} if the database is unreachable or
                more than half of finished jobs failed
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            async with await app.state.uow_factory() as uow:
                counts = await uow.jobs.counts()
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

        if not is_queue_healthy(counts):
            failed_ratio = counts["failed"] / (counts["completed"] + counts["failed"] + 1)
            logger.warning("health_check.queue_unhealthy", failed_ratio=failed_ratio, **counts)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": "HighFailureRate",
                    "message": f"High failure rate: {round(failed_ratio * 100)}%",
                },
                "queue": counts,
            }

        logger.debug("health_check.success")
        return {"status": "healthy", "queue": counts}

    return app
