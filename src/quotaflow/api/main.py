"""FastAPI application factory and main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from quotaflow import __version__
from quotaflow.api.middleware.exception_handler import setup_exception_handlers
from quotaflow.api.middleware.logging import LoggingMiddleware
from quotaflow.api.middleware.metrics import MetricsMiddleware
from quotaflow.api.routes import billing, health, quota
from quotaflow.billing.reconciler import UpgradeNotifier
from quotaflow.core.config import Settings, get_settings
from quotaflow.core.database import Database
from quotaflow.core.logging import configure_logging, get_logger
from quotaflow.core.rate_limiter import IngressRateLimiter

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the database handle on startup and dispose it on shutdown."""
    database: Database = app.state.database
    logger.info("application_startup", app_name=app.title, version=__version__)
    database.connect()
    yield
    logger.info("application_shutdown")
    await database.dispose()


def create_app(
    settings: Settings | None = None,
    *,
    database: Database | None = None,
    upgrade_notifier: UpgradeNotifier | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings (defaults to the cached environment settings)
        database: Database handle; built from settings when omitted
        upgrade_notifier: Hook called after paid upgrades

    Returns:
        Configured application
    """
    settings = settings or get_settings()

    configure_logging(
        json_logs=settings.is_production,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Plan quotas and subscription lifecycle reconciliation",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.state.database = database or Database.from_settings(settings)
    app.state.rate_limiter = IngressRateLimiter(
        settings.webhook_rate_limit_per_minute,
        settings.webhook_rate_limit_burst,
    )
    app.state.upgrade_notifier = upgrade_notifier

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)

    setup_exception_handlers(app)

    app.include_router(health.router, tags=["Health"])
    app.include_router(
        billing.router,
        prefix=f"{settings.api_v1_prefix}/billing",
        tags=["Billing"],
    )
    app.include_router(
        quota.router,
        prefix=f"{settings.api_v1_prefix}/quota",
        tags=["Quota"],
    )

    return app


app = create_app()
