from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from kitchen_api.core.settings import settings
from .api.routes import api_router
from .core.errors import register_exception_handlers
from .core.logging import configure_logging
from .services.loyalty import ProfileEvents


APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Kitchen API starting",
        environment=settings.environment,
        stripe_webhooks_configured=bool(settings.stripe_webhook_secret),
    )
    try:
        yield
    finally:
        logger.info("Kitchen API stopped")


def create_app() -> FastAPI:
    """Application factory for the kitchen rewards API."""
    configure_logging(
        service_name="kitchen-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Kitchen Rewards API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.profile_events = ProfileEvents()

    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
