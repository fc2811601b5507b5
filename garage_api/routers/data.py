import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from ..core.dependencies import get_coordinator
from ..core.errors import PersistenceFailure, StorageError
from ..models.dataset import Dataset
from ..models.storage import SyncResponse
from ..services.persistence_service import PersistenceCoordinator
from ..services.sync_service import sync_dataset

router = APIRouter()
log = logging.getLogger(__name__)


@router.get("/data", response_model=Dataset)
async def load_data(coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    try:
        dataset = await coordinator.load_all()
    except StorageError:
        raise
    except Exception as exc:
        log.exception("Failed to load data")
        raise PersistenceFailure(str(exc)) from exc
    log.info("Data loaded: %s", dataset.counts())
    return dataset


@router.post("/data", response_model=SyncResponse)
async def save_data(
    payload: Any = Body(None),
    coordinator: PersistenceCoordinator = Depends(get_coordinator),
):
    try:
        return await sync_dataset(coordinator, payload)
    except StorageError:
        raise
    except Exception as exc:
        log.exception("Failed to synchronize data")
        raise PersistenceFailure(str(exc)) from exc
