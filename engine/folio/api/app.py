"""
FastAPI application factory for Folio.

This module creates the FastAPI app with:
- CORS configuration for the web client
- Workspace lifecycle management
- FolioError -> JSON error mapping
- REST routes under /api/v1
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import ServerConfig
from ..errors import (
    CardinalityViolationError,
    ConcurrentModificationError,
    CorruptHierarchyError,
    FolioError,
    InvalidMoveError,
    NotArchivedError,
    NotFoundError,
    ReadOnlyMirrorError,
    SyncCycleError,
    ValidationError,
)
from ..workspace import Workspace
from .config import Settings
from .routes import router

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases
ERROR_STATUS: tuple[tuple[type[FolioError], int], ...] = (
    (NotFoundError, 404),
    (InvalidMoveError, 409),
    (SyncCycleError, 422),
    (CardinalityViolationError, 409),
    (ConcurrentModificationError, 409),
    (CorruptHierarchyError, 500),
    (NotArchivedError, 409),
    (ReadOnlyMirrorError, 409),
    (ValidationError, 422),
)


def status_for(error: FolioError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def folio_error_handler(request: Request, exc: FolioError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{exc.code}: {exc.message}", extra={"path": request.url.path, "details": exc.details})
    return JSONResponse(status_code=status, content=exc.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error: {exc}", exc_info=exc, extra={"path": request.url.path})
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "error_code": "INTERNAL", "details": {}},
    )


def create_app(workspace: Workspace | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        workspace: Workspace to serve; built from the environment if omitted
        settings: HTTP settings; loaded from the environment if omitted
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage workspace lifecycle."""
        ws = app.state.workspace
        if ws is None:
            ws = Workspace.from_config(ServerConfig.from_env())
            app.state.workspace = ws
        await ws.open()

        yield

        await ws.close()

    app = FastAPI(
        title=settings.title,
        description="Hierarchical pages, synced blocks and relational databases.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.workspace = workspace
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(FolioError, folio_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        ws = app.state.workspace
        return {
            "status": "healthy",
            "service": "folio",
            "version": __version__,
            "workspace_open": bool(ws and ws.is_open),
        }

    return app
