"""FastAPI application factory with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.ext.asyncio import AsyncEngine

from reelforge.api.routes import admin_router, daemon_router, storage_router
from reelforge.config import Settings
from reelforge.control_plane.storage import StorageService
from reelforge.control_plane.store import ControlPlaneStore, StoreError
from reelforge.db import build_engine, build_session_factory, init_database

logger = logging.getLogger(__name__)


def create_app(settings: Settings, engine: Optional[AsyncEngine] = None) -> FastAPI:
    """Build the control-plane app.

    Args:
        settings: Loaded settings; the API password doubles as the grant key.
        engine: Pre-built engine (tests share one with their fixtures).
            Built from ``settings.storage.database_url`` when omitted.
    """
    owns_engine = engine is None
    engine = engine or build_engine(settings.storage.database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        Startup:
            - Initialize database schema

        Shutdown:
            - Close database connections
        """
        logger.info("Starting reelforge control plane...")
        await init_database(engine)
        logger.info("Control plane startup complete")

        yield

        logger.info("Shutting down reelforge control plane...")
        if owns_engine:
            await engine.dispose()
        logger.info("Control plane shutdown complete")

    app = FastAPI(
        title="reelforge control plane",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = ControlPlaneStore(build_session_factory(engine))
    app.state.storage = StorageService(
        settings.storage.media_dir,
        settings.api.password,
        settings.api.storage_url,
    )

    app.include_router(daemon_router)
    app.include_router(storage_router)
    app.include_router(admin_router)
    app.mount(
        "/media",
        StaticFiles(directory=str(settings.storage.media_dir), check_dir=False),
        name="media",
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        """Translate store errors (not found, locked, invalid) to their HTTP status."""
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler to prevent stack traces in API responses."""
        logger.error(
            f"Unhandled exception in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}"
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc),
            },
        )

    return app
