import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from ..core.errors import InvalidInput, PersistenceFailure, StorageError
from ..models.dataset import RecordKind
from ..models.storage import ImportKindResult, ImportRecordResult, ImportResponse, OutcomeStatus, SyncResponse
from .persistence_service import PersistenceCoordinator, parse_record

log = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def sync_dataset(coordinator: PersistenceCoordinator, payload: Any) -> SyncResponse:
    """Full sync: replace both stores with the client's working set."""
    result = await coordinator.replace_all(payload)
    mongo = result.storage.mongo.status
    if mongo is OutcomeStatus.SAVED:
        message = "Data synchronized"
    elif mongo is OutcomeStatus.SKIPPED:
        message = "Data saved to local file"
    else:
        message = "Data saved to local file, MongoDB sync failed"
    return SyncResponse(
        success=True,
        message=message,
        timestamp=_now(),
        storage=result.storage,
        saved=result.dataset.counts(),
    )


async def _import_one(coordinator: PersistenceCoordinator, kind: RecordKind, item: Any) -> ImportRecordResult:
    record_id = item.get("id") if isinstance(item, dict) else None
    try:
        record = parse_record(kind, item, strict=coordinator.strict)
        await coordinator.insert_remote(kind, record)
    except StorageError as exc:
        return ImportRecordResult(id=record_id, inserted=False, error=f"{exc.kind}: {exc.detail}")
    except Exception as exc:
        log.exception("Import of %s %s failed", kind.value, record_id)
        return ImportRecordResult(id=record_id, inserted=False, error=f"internal_error: {exc}")
    return ImportRecordResult(id=record_id, inserted=True)


async def import_dataset(coordinator: PersistenceCoordinator, payload: Any) -> ImportResponse:
    """
    One-shot import of existing records into MongoDB.

    Each record is inserted on its own and failures are collected rather than
    aborting the run. Not idempotent: records already present come back as
    ``duplicate_record`` failures, so this is meant to run once against an
    empty or partially filled database.
    """
    if not isinstance(payload, dict):
        raise InvalidInput("expected an object with clients, quotes and invoices arrays")
    collections: Dict[RecordKind, list] = {}
    for kind in RecordKind:
        items = payload.get(kind.collection) or []
        if not isinstance(items, list):
            raise InvalidInput(f"{kind.collection} must be an array")
        collections[kind] = items

    if not coordinator.remote_connected:
        status = coordinator.status()
        raise PersistenceFailure(f"import needs a connected MongoDB ({status.reason or status.state.value})")

    log.info("Starting import: %s", {k.collection: len(v) for k, v in collections.items()})
    results: Dict[str, ImportKindResult] = {}
    for kind, items in collections.items():
        settled = await asyncio.gather(
            *(_import_one(coordinator, kind, item) for item in items),
            return_exceptions=True,
        )
        outcomes = [
            ImportRecordResult(
                id=item.get("id") if isinstance(item, dict) else None,
                inserted=False,
                error=f"internal_error: {outcome}",
            )
            if isinstance(outcome, BaseException)
            else outcome
            for item, outcome in zip(items, settled)
        ]
        inserted = sum(1 for o in outcomes if o.inserted)
        results[kind.collection] = ImportKindResult(
            success=inserted,
            errors=len(outcomes) - inserted,
            records=list(outcomes),
        )

    summary = {name: (r.success, r.errors) for name, r in results.items()}
    log.info("Import finished (inserted, failed): %s", summary)
    return ImportResponse(success=True, message="Import finished", results=results)
