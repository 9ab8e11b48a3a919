"""FastAPI application for the edgesync central node.

This module creates and configures the FastAPI application with:
- The /sync API used by edge nodes
- Uniform ``{success: false, error}`` error bodies
- Optional maintenance scheduler bound to the app lifespan

Usage:
    uvicorn edgesync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from edgesync.core.config import CentralSettings
from edgesync.core.errors import AuthenticationError, ValidationError
from edgesync.server.api.router import router as api_router
from edgesync.server.database import Database
from edgesync.server.ratelimit import RateLimiter
from edgesync.server.scheduler import MaintenanceScheduler

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path | None, level: int = logging.INFO) -> None:
    """Configure logging to output to both file and stdout.

    Args:
        log_path: Path to the log file, or None for stdout only.
        level: Log level of the edgesync loggers.
    """
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(log_format)

    # Root logger for edgesync
    root_logger = logging.getLogger("edgesync")
    root_logger.setLevel(level)

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_path is None:
        return

    # File handler
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def register_exception_handlers(application: FastAPI) -> None:
    """Map errors to ``{success: false, error}`` responses."""

    @application.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @application.exception_handler(RequestValidationError)
    async def request_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        if errors:
            first = errors[0]
            location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
        else:
            message = "invalid request"
        return _error(status.HTTP_400_BAD_REQUEST, message)

    @application.exception_handler(AuthenticationError)
    async def authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
        return _error(status.HTTP_401_UNAUTHORIZED, str(exc))

    @application.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    @application.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal server error")


def create_app(
    db: Database,
    settings: CentralSettings | None = None,
    rate_limiter: RateLimiter | None = None,
    scheduler: MaintenanceScheduler | None = None,
) -> FastAPI:
    """Create FastAPI application with custom database and settings.

    Args:
        db: Database instance.
        settings: Central settings (defaults to CentralSettings()).
        rate_limiter: Registration rate limiter (built from settings if omitted).
        scheduler: Optional maintenance scheduler started with the app.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or CentralSettings()
    if rate_limiter is None:
        rate_limiter = RateLimiter(
            limit=settings.register_rate_limit,
            window=settings.register_rate_window,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        logger.info("=" * 60)
        logger.info("EdgeSync Central Starting")
        logger.info("=" * 60)
        logger.info("  Database:  %s", db.path)
        logger.info("  Window:    %ss", settings.timestamp_window)
        logger.info("  Scheduler: %s", "enabled" if scheduler else "disabled")
        logger.info("=" * 60)
        if scheduler:
            scheduler.start()

        yield

        if scheduler:
            scheduler.stop()
        logger.info("EdgeSync Central shutting down")

    application = FastAPI(
        title="EdgeSync Central",
        description="Central node of the edge/central record sync engine",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.settings = settings
    application.state.rate_limiter = rate_limiter

    register_exception_handlers(application)
    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    settings = CentralSettings.from_env()
    setup_logging(settings.log_path)
    db = Database(settings.db_path)
    return create_app(
        db=db,
        settings=settings,
        scheduler=MaintenanceScheduler(
            db,
            offline_limit_days=settings.offline_limit_days,
            command_retention_days=settings.command_retention_days,
        ),
    )
