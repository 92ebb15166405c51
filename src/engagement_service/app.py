"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from engagement_service.config import get_settings
from engagement_service.core.exceptions import register_exception_handlers
from engagement_service.core.lifespan import lifespan
from engagement_service.core.middleware import RequestValidationMiddleware
from engagement_service.routers import directory, escrow, health, payments, requests


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(requests.router, tags=["Requests"])
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(escrow.router, tags=["Escrow"])
    app.include_router(directory.router, tags=["Directory"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
