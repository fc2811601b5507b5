import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..core.dependencies import get_coordinator
from ..models.storage import HealthResponse
from ..services.persistence_service import PersistenceCoordinator

router = APIRouter()
log = logging.getLogger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health(coordinator: PersistenceCoordinator = Depends(get_coordinator)):
    try:
        counts = await coordinator.counts()
    except Exception as exc:
        log.exception("Health check failed")
        return JSONResponse(status_code=500, content={"status": "ERROR", "error": str(exc)})

    status = coordinator.status()
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mode": coordinator.mode.value,
        "mongodb": status.state.value,
        "mongodbReason": status.reason,
        "data": counts,
    }
