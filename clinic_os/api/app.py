"""FastAPI application for clinic_os."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_os import __version__
from clinic_os.api.middleware import APIKeyMiddleware, RequestLoggingMiddleware
from clinic_os.api.routes import health, realtime, sessions
from clinic_os.config import get_settings
from clinic_os.core.database import get_session_factory, init_db
from clinic_os.events import InMemoryBroadcaster, create_dispatcher_from_settings
from clinic_os.scheduling.errors import (
    InvalidState,
    NotFound,
    SchedulingError,
    SlotUnavailable,
    Unauthorized,
    ValidationError,
)
from clinic_os.scheduling.service import SchedulingService

logger = logging.getLogger(__name__)

# Checked in order; subclasses inherit their parent's status.
ERROR_STATUS: list[tuple[type[SchedulingError], int]] = [
    (ValidationError, 400),
    (NotFound, 404),
    (Unauthorized, 403),
    (InvalidState, 409),
    (SlotUnavailable, 409),
]


def status_for(exc: SchedulingError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting clinic_os API")

    settings = get_settings()
    await init_db()

    broadcaster = InMemoryBroadcaster()
    app.state.broadcaster = broadcaster
    app.state.scheduling_service = SchedulingService(
        get_session_factory(),
        settings=settings,
        dispatcher=create_dispatcher_from_settings(settings, broadcaster),
    )

    logger.info("clinic_os API started successfully")

    yield

    logger.info("Shutting down clinic_os API")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="clinic_os API",
        description="Therapy session scheduling and lifecycle management",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    if settings.api_key:
        app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)

    app.include_router(health.router, tags=["health"])
    app.include_router(sessions.router, prefix="/api/v1", tags=["sessions"])
    app.include_router(realtime.router, prefix="/api/v1")

    @app.exception_handler(SchedulingError)
    async def scheduling_exception_handler(request: Request, exc: SchedulingError):
        status = status_for(exc)
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} ({exc.message})")
        return JSONResponse(
            status_code=status,
            content={"error": exc.code, "detail": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.debug_mode else None,
            },
        )

    return app
