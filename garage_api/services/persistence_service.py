"""
Decides, per operation, which store serves it.

Hybrid mode reads from MongoDB while it is connected and falls back to the
local data file on any remote error. Bulk replaces always write the file
first, so one durable copy exists even when the remote write never completes.
Record-level writes go to MongoDB only while it is connected; the file
catches up on the next bulk replace.

Remote state policy: a dropped connection demotes the remote to unavailable
at once; timeouts and other errors demote it after ``failure_threshold``
consecutive failures. While unavailable, a background task reconnects every
``reconnect_interval`` seconds.
"""

import asyncio
import logging
from collections import Counter
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TypeVar

from pydantic import ValidationError

from ..core.config import StorageMode
from ..core.database import ConnectionState, RemoteStatus, RemoteStore
from ..core.errors import (
    InvalidInput,
    OperationTimeout,
    PersistenceFailure,
    RemoteUnavailable,
    RemoteWriteError,
    StorageError,
)
from ..core.file_store import FileStore
from ..models.dataset import Dataset, Record, RecordKind, keep_created, today
from ..models.storage import StorageOutcomes, StoreOutcome

log = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that say something about the health of the remote connection
_REMOTE_FAILURES = (OperationTimeout, RemoteUnavailable, RemoteWriteError)


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg')}" if location else err.get("msg", ""))
    return "; ".join(parts)


def _record_id(kind: RecordKind, value: Any) -> int:
    if value is None:
        raise InvalidInput(f"{kind.value} id is required")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        with suppress(ValueError):
            return int(value)
    raise InvalidInput(f"{kind.value} id must be an integer, got {value!r}")


def parse_record(kind: RecordKind, payload: Any, strict: bool = True, creating: bool = True) -> Record:
    """
    Validate one record and normalize its id to an int.

    With ``creating`` off (record upserts) a missing creation date is left
    out, so the store can keep the one it already has.
    """
    if not isinstance(payload, dict):
        raise InvalidInput(f"{kind.value} must be a JSON object")
    payload = {**payload, "id": _record_id(kind, payload.get("id"))}
    if not strict:
        return payload
    try:
        record = kind.model.model_validate(payload).model_dump(mode="json")
    except ValidationError as exc:
        raise InvalidInput(f"invalid {kind.value}: {_summarize(exc)}") from exc
    if record.get(kind.created_field) is None:
        record.pop(kind.created_field, None)
        if creating:
            record[kind.created_field] = today()
    return record


def parse_dataset(payload: Any, strict: bool = True) -> Dataset:
    if not isinstance(payload, dict):
        raise InvalidInput("expected an object with clients, quotes and invoices arrays")
    not_lists = [kind.collection for kind in RecordKind if not isinstance(payload.get(kind.collection), list)]
    if not_lists:
        raise InvalidInput(f"{', '.join(not_lists)} must be arrays")

    collections: Dict[str, List[Record]] = {}
    for kind in RecordKind:
        records = []
        for index, item in enumerate(payload[kind.collection]):
            try:
                records.append(parse_record(kind, item, strict))
            except InvalidInput as exc:
                raise InvalidInput(f"{kind.collection}[{index}]: {exc.detail}") from exc
        dupes = sorted(str(i) for i, n in Counter(r["id"] for r in records).items() if n > 1)
        if dupes:
            raise InvalidInput(f"duplicate {kind.value} ids: {', '.join(dupes)}")
        collections[kind.collection] = records
    return Dataset(**collections)


@dataclass
class ReplaceResult:
    dataset: Dataset
    storage: StorageOutcomes


class PersistenceCoordinator:
    def __init__(
        self,
        mode: StorageMode,
        file_store: FileStore,
        remote: Optional[RemoteStore] = None,
        *,
        failure_threshold: int = 3,
        reconnect_interval: float = 0.0,
        strict: bool = True,
    ):
        if mode is not StorageMode.LOCAL and remote is None:
            raise ValueError(f"storage mode '{mode.value}' needs a remote store")
        self.mode = mode
        self.file_store = file_store
        self.remote = remote if mode is not StorageMode.LOCAL else None
        self.failure_threshold = failure_threshold
        self.reconnect_interval = reconnect_interval
        self.strict = strict
        self._status = RemoteStatus(ConnectionState.NOT_ATTEMPTED)
        self._consecutive_failures = 0
        self._reconnect_task: Optional[asyncio.Task] = None

    # -- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        try:
            await self.file_store.initialize()
        except StorageError as exc:
            log.error("Local data file unusable at startup: %s", exc.detail, extra={"store": "file"})

        if self.remote is None:
            log.info("Storage mode local: using %s only", self.file_store.path, extra={"store": "file"})
            return

        self._status = await self.remote.connect()
        if self.remote_connected:
            return
        if self.mode is StorageMode.REMOTE:
            raise PersistenceFailure(f"MongoDB is required in remote mode: {self._status.reason}")
        log.warning(
            "MongoDB unavailable, serving from local data file %s",
            self.file_store.path,
            extra={"store": "file"},
        )
        self._start_reconnect()

    async def close(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._reconnect_task
            self._reconnect_task = None
        if self.remote is not None:
            await self.remote.close()

    @property
    def remote_connected(self) -> bool:
        return self.remote is not None and self._status.state is ConnectionState.CONNECTED

    def status(self) -> RemoteStatus:
        return self._status

    # -- remote state --------------------------------------------------

    def _start_reconnect(self) -> None:
        if self.remote is None or self.reconnect_interval <= 0:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self.remote_connected:
            await asyncio.sleep(self.reconnect_interval)
            status = await self.remote.connect()
            self._status = status
            if status.state is ConnectionState.CONNECTED:
                self._consecutive_failures = 0
                log.info("MongoDB connection restored", extra={"store": "mongo"})

    def _demote(self, reason: str) -> None:
        self._status = RemoteStatus(ConnectionState.UNAVAILABLE, reason)
        self._consecutive_failures = 0
        log.warning("MongoDB marked unavailable: %s", reason, extra={"store": "mongo"})
        self._start_reconnect()

    def _record_failure(self, exc: StorageError) -> None:
        if isinstance(exc, RemoteUnavailable):
            self._demote(exc.detail)
            return
        self._consecutive_failures += 1
        if self.failure_threshold and self._consecutive_failures >= self.failure_threshold:
            self._demote(f"{self._consecutive_failures} consecutive failures, last: {exc.detail}")

    async def _remote_call(self, op) -> Any:
        try:
            result = await op
        except _REMOTE_FAILURES as exc:
            self._record_failure(exc)
            raise
        except StorageError:
            raise
        except Exception as exc:
            log.exception("Unexpected error from the remote store", extra={"store": "mongo"})
            failure = RemoteWriteError(f"{type(exc).__name__}: {exc}")
            self._record_failure(failure)
            raise failure from exc
        self._consecutive_failures = 0
        return result

    def _unavailable(self) -> PersistenceFailure:
        return PersistenceFailure(f"MongoDB unavailable: {self._status.reason or self._status.state.value}")

    # -- local file ----------------------------------------------------

    async def _load_file(self) -> Dataset:
        try:
            return await self.file_store.load()
        except StorageError as exc:
            log.error("Local data file unreadable, serving empty dataset: %s", exc.detail, extra={"store": "file"})
            return Dataset()

    async def _update_file(self, mutate: Callable[[Dataset], T]) -> T:
        try:
            return await self.file_store.update(mutate)
        except StorageError as exc:
            log.error("Local data file update failed: %s", exc.detail, extra={"store": "file"})
            raise PersistenceFailure(exc.detail) from exc

    # -- operations ----------------------------------------------------

    async def load_all(self) -> Dataset:
        if self.remote_connected:
            try:
                clients, quotes, invoices = await self._remote_call(
                    asyncio.gather(*(self.remote.find_all(kind) for kind in RecordKind))
                )
                return Dataset(clients=clients, quotes=quotes, invoices=invoices)
            except StorageError as exc:
                if self.mode is StorageMode.REMOTE:
                    raise PersistenceFailure(exc.detail) from exc
                log.warning("MongoDB read failed, serving local data file: %s", exc.detail, extra={"store": "mongo"})
        elif self.mode is StorageMode.REMOTE:
            raise self._unavailable()
        return await self._load_file()

    async def _save_file(self, dataset: Dataset) -> StoreOutcome:
        if self.mode is StorageMode.REMOTE:
            return StoreOutcome.skipped("remote mode")
        try:
            await self.file_store.save(dataset)
        except StorageError as exc:
            log.error("Local data file write failed: %s", exc.detail, extra={"store": "file"})
            return StoreOutcome.failed(exc.detail)
        return StoreOutcome.saved()

    async def _replace_remote(self, dataset: Dataset) -> StoreOutcome:
        if self.remote is None:
            return StoreOutcome.skipped("local mode")
        if not self.remote_connected:
            reason = f"MongoDB unavailable: {self._status.reason or self._status.state.value}"
            if self.mode is StorageMode.REMOTE:
                return StoreOutcome.failed(reason)
            return StoreOutcome.skipped(reason)
        try:
            await self._remote_call(self.remote.replace_all(dataset))
        except StorageError as exc:
            log.warning("MongoDB replace failed: %s", exc.detail, extra={"store": "mongo"})
            return StoreOutcome.failed(exc.detail)
        return StoreOutcome.saved()

    async def replace_all(self, payload: Any) -> ReplaceResult:
        dataset = parse_dataset(payload, strict=self.strict)
        counts = dataset.counts()
        log.info("Replacing dataset: %s", counts)

        file_outcome = await self._save_file(dataset)
        mongo_outcome = await self._replace_remote(dataset)
        storage = StorageOutcomes(file=file_outcome, mongo=mongo_outcome)

        durable = mongo_outcome if self.mode is StorageMode.REMOTE else file_outcome
        if not durable.ok:
            raise PersistenceFailure(
                durable.error or "no durable copy was written",
                extra={"storage": storage.model_dump(mode="json")},
            )
        log.info("Dataset replaced (file=%s, mongo=%s)", file_outcome.status.value, mongo_outcome.status.value)
        return ReplaceResult(dataset=dataset, storage=storage)

    async def upsert_one(self, kind: RecordKind, payload: Any) -> Record:
        record = parse_record(kind, payload, strict=self.strict, creating=False)
        if self.remote_connected:
            try:
                return await self._remote_call(self.remote.upsert_one(kind, record))
            except StorageError as exc:
                if self.mode is StorageMode.REMOTE:
                    raise PersistenceFailure(exc.detail) from exc
                log.warning(
                    "MongoDB upsert of %s %s failed, writing local data file: %s",
                    kind.value, record["id"], exc.detail,
                    extra={"store": "mongo"},
                )
        elif self.mode is StorageMode.REMOTE:
            raise self._unavailable()

        def apply(dataset: Dataset) -> Record:
            records = dataset.records(kind)
            for index, existing in enumerate(records):
                if existing.get("id") == record["id"]:
                    records[index] = keep_created(kind, record, existing)
                    return records[index]
            records.append(keep_created(kind, record))
            return records[-1]

        return await self._update_file(apply)

    async def delete_one(self, kind: RecordKind, record_id: int) -> bool:
        if self.remote_connected:
            try:
                return await self._remote_call(self.remote.delete_one(kind, record_id))
            except StorageError as exc:
                if self.mode is StorageMode.REMOTE:
                    raise PersistenceFailure(exc.detail) from exc
                log.warning(
                    "MongoDB delete of %s %s failed, writing local data file: %s",
                    kind.value, record_id, exc.detail,
                    extra={"store": "mongo"},
                )
        elif self.mode is StorageMode.REMOTE:
            raise self._unavailable()

        def apply(dataset: Dataset) -> bool:
            records = dataset.records(kind)
            kept = [r for r in records if r.get("id") != record_id]
            removed = len(kept) != len(records)
            records[:] = kept
            return removed

        return await self._update_file(apply)

    async def insert_remote(self, kind: RecordKind, record: Record) -> Record:
        """Plain insert into MongoDB, failing on an existing id."""
        if not self.remote_connected:
            raise self._unavailable()
        return await self._remote_call(self.remote.insert_one(kind, record))

    async def counts(self) -> Dict[str, int]:
        if self.remote_connected:
            try:
                totals = await self._remote_call(
                    asyncio.gather(*(self.remote.count_all(kind) for kind in RecordKind))
                )
                return {kind.collection: total for kind, total in zip(RecordKind, totals)}
            except StorageError as exc:
                if self.mode is StorageMode.REMOTE:
                    raise PersistenceFailure(exc.detail) from exc
                log.warning("MongoDB count failed, counting local data file: %s", exc.detail, extra={"store": "mongo"})
        elif self.mode is StorageMode.REMOTE:
            raise self._unavailable()
        return (await self._load_file()).counts()
