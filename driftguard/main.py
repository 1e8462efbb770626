import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from driftguard.api.routes import alerts as alerts_router
from driftguard.api.routes import audit as audit_router
from driftguard.api.routes import drift as drift_router
from driftguard.core.config import Settings, settings as default_settings
from driftguard.core.database import build_engine, build_session_factory, create_db_and_tables
from driftguard.core.observability import initialize_metrics, setup_tracing
from driftguard.services.monitoring import MonitoringService

# Configure logging
logging.basicConfig(
    level=logging.INFO if default_settings.DEBUG else logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    The lifespan creates the database tables and one MonitoringService for
    the process, and stops it on shutdown.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = build_engine(settings)
        await create_db_and_tables(engine)

        monitoring = MonitoringService(settings, build_session_factory(engine))
        await monitoring.start()
        app.state.monitoring = monitoring
        logger.info(f"{settings.PROJECT_NAME} started in {settings.ENVIRONMENT}")
        try:
            yield
        finally:
            await monitoring.stop()
            app.state.monitoring = None
            await engine.dispose()
            logger.info(f"{settings.PROJECT_NAME} stopped")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Configuration drift detection, security alerting and tamper-evident audit API",
        version=settings.VERSION,
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
        lifespan=lifespan,
    )

    # Set up observability
    initialize_metrics(app)
    setup_tracing(settings)

    app.include_router(drift_router.router, prefix=f"{settings.API_V1_STR}/drift", tags=["Drift Detection"])
    app.include_router(alerts_router.router, prefix=f"{settings.API_V1_STR}/alerts", tags=["Security Alerts"])
    app.include_router(audit_router.router, prefix=f"{settings.API_V1_STR}/audit", tags=["Audit Ledger"])

    @app.get(f"{settings.API_V1_STR}/health", tags=["Health"])
    async def health_check():
        monitoring = getattr(app.state, "monitoring", None)
        return {
            "status": "ok" if monitoring is not None and monitoring.scheduler.running else "starting",
            "version": settings.VERSION,
            "environment": settings.ENVIRONMENT,
        }

    return app


app = create_app()
