"""
FastAPI Application Factory

Creates the webhook ingress application around a tracking service.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from commerce_tracking.config import get_settings
from commerce_tracking.config.logging import configure_logging
from commerce_tracking.errors import AuthenticationError, TrackingError
from commerce_tracking.service import TrackingService, install_exception_hooks
from commerce_tracking.serving.api.middleware import (
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from commerce_tracking.serving.api.routes import (
    WebhookProcessor,
    health_router,
    webhooks_router,
)

logger = structlog.get_logger(__name__)


def create_app(
    service: Optional[TrackingService] = None,
    exception_hooks: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        service: Wired tracking service; built from the environment when omitted
        exception_hooks: Exit the process on uncaught and unhandled task errors

    Returns:
        Configured FastAPI app instance
    """
    if service is None:
        settings = get_settings()
        configure_logging(settings.monitoring)
        service = TrackingService(settings)
    settings = service.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting tracking service", env=settings.app_env, version=settings.version)
        if exception_hooks:
            install_exception_hooks()
        await service.start()

        yield

        logger.info("Shutting down...")
        await service.stop()

    app = FastAPI(
        title="Commerce Tracking Service",
        description="Webhook ingress and operational tracking for the storefront",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.webhooks = WebhookProcessor(service)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)

    @app.exception_handler(AuthenticationError)
    async def authentication_failed(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    @app.exception_handler(TrackingError)
    async def tracking_failed(request: Request, exc: TrackingError):
        return await _internal_error(request, exc)

    @app.exception_handler(Exception)
    async def unexpected_failure(request: Request, exc: Exception):
        return await _internal_error(request, exc)

    app.include_router(health_router, tags=["Health"])
    app.include_router(webhooks_router, tags=["Webhooks"])

    return app


async def _internal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled request error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    service: TrackingService = request.app.state.service
    await service.notifier.send_system_error_alert(
        "api",
        str(exc),
        severity="high",
        context={"Path": request.url.path, "Method": request.method},
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )
