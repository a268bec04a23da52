"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from genflow import __version__
from genflow.api.routes import events, jobs, ledger, webhooks
from genflow.core import timezone  # noqa: F401  # Import sets TZ=UTC
from genflow.core.config import Settings, configure_logging
from genflow.core.database import init_models, setup_db_session
from genflow.engine import GenerationOrchestrator
from genflow.services.events import EventPublisher
from genflow.services.jobs import JobService
from genflow.services.providers.registry import build_adapters
from genflow.services.storage import LocalAssetStorage
from genflow.uow import create_uow_factory

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, build the job store, adapters, engines and
      services, start one engine per enabled provider
    - Shutdown: Signal all engines, wait for the grace period, dispose the pool

    Provider misconfiguration raises ConfigurationError here and aborts startup.
    """
    settings: Settings = app.state.settings

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    engine = session_factory.kw["bind"]
    if settings.database_url.startswith("sqlite"):
        # Local runs without Alembic
        await init_models(engine)

    uow_factory = create_uow_factory(session_factory)
    publisher = EventPublisher()
    storage = LocalAssetStorage(settings.storage_dir, settings.storage_public_prefix)
    adapters = build_adapters(settings)

    orchestrator = GenerationOrchestrator.from_adapters(
        adapters, uow_factory, publisher, storage, settings
    )
    job_service = JobService(
        adapters, uow_factory, publisher, on_created=orchestrator.notify_created
    )

    # Store in app.state for access in routes
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.publisher = publisher
    app.state.orchestrator = orchestrator
    app.state.job_service = job_service

    await orchestrator.start()
    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    await orchestrator.stop()
    await engine.dispose()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use (loaded from the environment when omitted)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="genflow",
        description="Generation job orchestration core",
        version=__version__,
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

    # Register API routers
    app.include_router(jobs.router)
    app.include_router(ledger.router)
    app.include_router(events.router)
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy", "providers": [...]} if the database answers
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {
                "status": "healthy",
                "providers": [kind.value for kind in app.state.orchestrator.engines],
            }

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
