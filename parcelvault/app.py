"""
FastAPI application entry point for the parcel backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from parcelvault.config import get_settings
from parcelvault.dependencies import (
    get_backup_scheduler,
    get_blob_store,
    get_db_client,
    shutdown_backup_scheduler,
)
from parcelvault.errors import ParcelVaultError
from parcelvault.routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if get_settings().scheduler_autostart:
        try:
            get_backup_scheduler().initialize_from_settings(
                get_db_client(), get_blob_store().configured
            )
        except Exception:
            # The API still serves requests without automatic backups.
            logger.exception("Failed to initialize backup scheduler")
    yield
    shutdown_backup_scheduler()


async def handle_parcelvault_error(request: Request, exc: ParcelVaultError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="ParcelVault Backend (FastAPI)", version="0.1.0", lifespan=lifespan)
    app.add_exception_handler(ParcelVaultError, handle_parcelvault_error)
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
