import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from ..core.dependencies import get_coordinator
from ..core.errors import PersistenceFailure, StorageError
from ..models.storage import ImportResponse
from ..services.persistence_service import PersistenceCoordinator
from ..services.sync_service import import_dataset

router = APIRouter()
log = logging.getLogger(__name__)


@router.post("/migrate", response_model=ImportResponse)
async def migrate(payload: Any = Body(None), coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    try:
        return await import_dataset(coordinator, payload)
    except StorageError:
        raise
    except Exception as exc:
        log.exception("Import failed")
        raise PersistenceFailure(str(exc)) from exc
