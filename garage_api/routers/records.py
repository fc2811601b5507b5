import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from ..core.dependencies import get_coordinator
from ..core.errors import PersistenceFailure, StorageError
from ..models.dataset import RecordKind
from ..models.storage import DeleteResponse
from ..services.persistence_service import PersistenceCoordinator

router = APIRouter()
log = logging.getLogger(__name__)


async def _upsert(coordinator: PersistenceCoordinator, kind: RecordKind, payload: Any) -> Dict[str, Any]:
    try:
        saved = await coordinator.upsert_one(kind, payload)
    except StorageError:
        raise
    except Exception as exc:
        log.exception("Failed to save %s", kind.value)
        raise PersistenceFailure(str(exc)) from exc
    log.info("Saved %s %s", kind.value, saved.get("id"))
    return saved


async def _delete(coordinator: PersistenceCoordinator, kind: RecordKind, record_id: int) -> DeleteResponse:
    try:
        removed = await coordinator.delete_one(kind, record_id)
    except StorageError:
        raise
    except Exception as exc:
        log.exception("Failed to delete %s %s", kind.value, record_id)
        raise PersistenceFailure(str(exc)) from exc
    label = kind.value.capitalize()
    if removed:
        log.info("Deleted %s %s", kind.value, record_id)
        return DeleteResponse(success=True, message=f"{label} deleted")
    return DeleteResponse(success=True, message=f"{label} {record_id} not found, nothing deleted")


@router.post("/clients")
async def save_client(payload: Any = Body(None), coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    return await _upsert(coordinator, RecordKind.CLIENT, payload)


@router.post("/quotes")
async def save_quote(payload: Any = Body(None), coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    return await _upsert(coordinator, RecordKind.QUOTE, payload)


@router.post("/invoices")
async def save_invoice(payload: Any = Body(None), coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    return await _upsert(coordinator, RecordKind.INVOICE, payload)


@router.delete("/clients/{record_id}", response_model=DeleteResponse)
async def delete_client(record_id: int, coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    return await _delete(coordinator, RecordKind.CLIENT, record_id)


@router.delete("/quotes/{record_id}", response_model=DeleteResponse)
async def delete_quote(record_id: int, coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    return await _delete(coordinator, RecordKind.QUOTE, record_id)


@router.delete("/invoices/{record_id}", response_model=DeleteResponse)
async def delete_invoice(record_id: int, coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    return await _delete(coordinator, RecordKind.INVOICE, record_id)
