import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import Settings, get_settings
from .core.dependencies import build_coordinator
from .core.errors import register_error_handlers
from .core.logging import configure_logging
from .routers import data, health, migrate, records
from .services.persistence_service import PersistenceCoordinator

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    if app.state.coordinator is None:
        app.state.coordinator = build_coordinator(settings)
    coordinator: PersistenceCoordinator = app.state.coordinator

    log.info(
        "Starting in %s mode (data file %s, MongoDB %s)",
        coordinator.mode.value,
        coordinator.file_store.path,
        settings.safe_mongodb_uri(),
    )
    await coordinator.start()
    yield
    log.info("Shutting down")
    await coordinator.close()


def create_app(
    settings: Optional[Settings] = None,
    coordinator: Optional[PersistenceCoordinator] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Garage Records Backend",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or ["*"],
        allow_credentials="*" not in (settings.cors_origins or ["*"]),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    # The front-end reads and writes the whole dataset on both /data and /api/data
    app.include_router(data.router, tags=["data"])
    app.include_router(data.router, prefix=settings.api_prefix, tags=["data"])
    app.include_router(records.router, prefix=settings.api_prefix, tags=["records"])
    app.include_router(migrate.router, prefix=settings.api_prefix, tags=["migrate"])
    app.include_router(health.router, tags=["health"])
    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run("garage_api.main:create_app", factory=True, host="0.0.0.0", port=settings.port)
