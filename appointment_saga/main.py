"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from appointment_saga.api.v1.router import api_router
from appointment_saga.config import Settings, get_settings
from appointment_saga.context import ServiceContext, build_context
from appointment_saga.core.exceptions import AppException
from appointment_saga.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from appointment_saga.middleware.logging import LoggingMiddleware, configure_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Builds the service context on startup unless one was injected, and
    releases its connections on shutdown.
    """
    settings: Settings = app.state.settings
    logger.info("application_startup", environment=settings.environment)

    owns_context = getattr(app.state, "context", None) is None
    if owns_context:
        app.state.context = build_context(settings)

    if not await app.state.context.appointments.ping():
        logger.error("primary_store_unreachable")

    yield

    logger.info("application_shutdown")
    if owns_context:
        await app.state.context.close()


def create_app(
    settings: Settings | None = None,
    context: ServiceContext | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings (defaults to environment settings)
        context: Pre-built service context, used by tests and embedded runs

    Returns:
        Configured application
    """
    settings = settings or (context.settings if context else get_settings())

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Medical appointment booking for Peru and Chile",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(api_router, prefix=settings.api_v1_prefix)

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=False,
        excluded_handlers=["/docs", "/redoc", "/openapi.json"],
        registry=CollectorRegistry(),
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    @app.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Welcome message."""
        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


def get_app() -> FastAPI:
    """Application factory for ``uvicorn --factory``."""
    configure_logging()
    return create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "appointment_saga.main:get_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
