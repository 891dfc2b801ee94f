"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.middleware.error_handler import error_handler_middleware
from src.api.middleware.latency_logging import latency_logging_middleware
from src.api.routes import cart, catalog, health, webhooks
from src.api.routes.checkout import orders_router, router as checkout_router
from src.core.config import get_settings
from src.core.rate_limiter import init_rate_limiter, shutdown_rate_limiter
from src.core.stripe import configure_stripe

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Configures Stripe and starts the rate limiter sweep on startup; stops
    the sweep on shutdown.
    """
    settings = get_settings()
    logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)

    configure_stripe()
    logger.info("Stripe SDK configured (test mode: %s)", settings.is_stripe_test_mode)

    await init_rate_limiter()
    logger.info("Rate limiter initialized")

    yield

    await shutdown_rate_limiter()
    logger.info("Rate limiter shutdown")
    logger.info("Shutting down %s", settings.app_name)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Storefront API",
        description="Catalog, cart, checkout and order history backend",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handler (catches everything raised below it)
    app.add_middleware(BaseHTTPMiddleware, dispatch=error_handler_middleware)

    # Latency logging
    app.add_middleware(BaseHTTPMiddleware, dispatch=latency_logging_middleware)

    # Health routes at root level (no prefix)
    app.include_router(health.router)

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(catalog.router)
    api_v1_router.include_router(cart.router)
    api_v1_router.include_router(checkout_router)
    api_v1_router.include_router(orders_router)
    api_v1_router.include_router(webhooks.router)
    app.include_router(api_v1_router)

    return app


# Create application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
