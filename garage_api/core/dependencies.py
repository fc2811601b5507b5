"""
Dependency wiring for the FastAPI app.
"""

from fastapi import Request

from .config import Settings, StorageMode
from .database import MongoStore
from .file_store import FileStore
from ..services.persistence_service import PersistenceCoordinator


def build_coordinator(settings: Settings) -> PersistenceCoordinator:
    remote = None
    if settings.storage_mode is not StorageMode.LOCAL:
        remote = MongoStore(
            settings.mongodb_uri,
            settings.mongodb_db,
            connect_timeout=settings.connect_timeout_seconds,
            operation_timeout=settings.operation_timeout_seconds,
        )
    return PersistenceCoordinator(
        settings.storage_mode,
        FileStore(settings.data_file),
        remote,
        failure_threshold=settings.remote_failure_threshold,
        reconnect_interval=settings.reconnect_interval_seconds,
        strict=settings.strict_validation,
    )


def get_coordinator(request: Request) -> PersistenceCoordinator:
    """The coordinator owned by the running app, set up in its lifespan."""
    return request.app.state.coordinator
