"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from bounty_board_service.config import get_settings
from bounty_board_service.core.exceptions import register_exception_handlers
from bounty_board_service.core.lifespan import lifespan
from bounty_board_service.core.middleware import RequestValidationMiddleware
from bounty_board_service.routers import health, installations, tasks, users


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
    app.include_router(tasks.router, tags=["Tasks"])
    app.include_router(users.router, tags=["Users"])
    app.include_router(installations.router, tags=["Installations"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )

    return app
