"""
MongoDB adapter for the clients, quotes and invoices collections.

Connection state is not kept here: ``connect`` reports a ``RemoteStatus`` and
the persistence coordinator decides what to do with it. Every data operation
runs under its own timeout and is never retried.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar

from bson.errors import BSONError
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from .errors import DuplicateRecord, OperationTimeout, RemoteUnavailable, RemoteWriteError, StorageError
from ..models.dataset import Dataset, Record, RecordKind, keep_created

log = logging.getLogger(__name__)

T = TypeVar("T")

# MongoDB "IllegalOperation": transactions on a standalone server
_ILLEGAL_OPERATION = 20


class ConnectionState(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    CONNECTED = "connected"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class RemoteStatus:
    state: ConnectionState
    reason: Optional[str] = None


class RemoteStore(Protocol):
    """Operations the coordinator needs from the remote document store."""

    async def connect(self) -> RemoteStatus:
        ...

    async def find_all(self, kind: RecordKind) -> List[Record]:
        ...

    async def count_all(self, kind: RecordKind) -> int:
        ...

    async def replace_all(self, dataset: Dataset) -> None:
        ...

    async def upsert_one(self, kind: RecordKind, record: Record) -> Record:
        ...

    async def insert_one(self, kind: RecordKind, record: Record) -> Record:
        ...

    async def delete_one(self, kind: RecordKind, record_id: int) -> bool:
        ...

    async def close(self) -> None:
        ...


def _diagnose(error_msg: str) -> Optional[str]:
    lowered = error_msg.lower()
    if "timed out" in lowered or "timeout" in lowered:
        return "server unreachable within the connect timeout (host down, wrong host, or IP not allow-listed)"
    if "authentication" in lowered or "auth failed" in lowered:
        return "authentication failed (check the user and password in MONGODB_URI)"
    if "connection refused" in lowered:
        return "connection refused (wrong host/port or server not running)"
    if "dns" in lowered or "srv" in lowered:
        return "DNS/SRV lookup failed (check the cluster host name)"
    return None


def _transactions_unsupported(exc: BaseException) -> bool:
    if not isinstance(exc, OperationFailure):
        return False
    return exc.code == _ILLEGAL_OPERATION or "transaction numbers" in str(exc).lower()


class MongoStore:
    def __init__(
        self,
        uri: str,
        db_name: str,
        connect_timeout: float = 5.0,
        operation_timeout: float = 3.0,
    ):
        self.uri = uri
        self.db_name = db_name
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self._client: Optional[AsyncIOMotorClient] = None

    def _collection(self, kind: RecordKind):
        if self._client is None:
            raise RemoteUnavailable("MongoDB client is not connected")
        return self._client[self.db_name][kind.collection]

    async def _run(self, action: str, op: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(op, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            raise OperationTimeout(f"{action} exceeded {self.operation_timeout}s") from exc
        except DuplicateKeyError as exc:
            raise DuplicateRecord(f"{action}: {exc}") from exc
        except ConnectionFailure as exc:
            raise RemoteUnavailable(f"{action}: {exc}") from exc
        except PyMongoError as exc:
            raise RemoteWriteError(f"{action}: {exc}") from exc
        except (BSONError, OverflowError) as exc:
            # Raised client side: ids wider than 8 bytes, unencodable values, undecodable replies
            raise RemoteWriteError(f"{action}: BSON error: {exc}") from exc
        except StorageError:
            raise
        except Exception as exc:
            log.exception("Unexpected driver error during %s", action, extra={"store": "mongo"})
            raise RemoteWriteError(f"{action}: {type(exc).__name__}: {exc}") from exc

    async def _ensure_indexes(self) -> None:
        for kind in RecordKind:
            try:
                await self._collection(kind).create_index("id", unique=True)
            except OperationFailure as exc:
                # Existing duplicate ids; data stays readable, inserts are just not guarded.
                log.warning("Could not create unique id index on %s: %s", kind.collection, exc, extra={"store": "mongo"})

    async def connect(self) -> RemoteStatus:
        timeout_ms = int(self.connect_timeout * 1000)
        try:
            if self._client is None:
                self._client = AsyncIOMotorClient(
                    self.uri,
                    serverSelectionTimeoutMS=timeout_ms,
                    connectTimeoutMS=timeout_ms,
                    appname="garage_backend",
                )
            await asyncio.wait_for(self._client.admin.command("ping"), timeout=self.connect_timeout)
            await asyncio.wait_for(self._ensure_indexes(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            reason = f"connection attempt exceeded {self.connect_timeout}s"
            log.warning("MongoDB unavailable: %s", reason, extra={"store": "mongo"})
            return RemoteStatus(ConnectionState.UNAVAILABLE, reason)
        except PyMongoError as exc:
            reason = str(exc)
            hint = _diagnose(reason)
            log.warning("MongoDB unavailable: %s", reason, extra={"store": "mongo"})
            if hint:
                log.warning("Diagnosis: %s", hint, extra={"store": "mongo"})
            return RemoteStatus(ConnectionState.UNAVAILABLE, reason)

        log.info("Connected to MongoDB database '%s'", self.db_name, extra={"store": "mongo"})
        return RemoteStatus(ConnectionState.CONNECTED)

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            log.info("MongoDB connection closed", extra={"store": "mongo"})

    async def find_all(self, kind: RecordKind) -> List[Record]:
        cursor = self._collection(kind).find({}, {"_id": 0}).sort("id", 1)
        return await self._run(f"find {kind.collection}", cursor.to_list(length=None))

    async def count_all(self, kind: RecordKind) -> int:
        return await self._run(f"count {kind.collection}", self._collection(kind).count_documents({}))

    async def _delete_then_insert(self, dataset: Dataset, completed: List[str], session=None) -> None:
        for kind in RecordKind:
            await self._collection(kind).delete_many({}, session=session)
            completed.append(f"deleted {kind.collection}")
        for kind in RecordKind:
            records = dataset.records(kind)
            if records:
                await self._collection(kind).insert_many([dict(r) for r in records], session=session)
            completed.append(f"inserted {len(records)} {kind.collection}")

    async def _replace_in_transaction(self, dataset: Dataset) -> None:
        async with await self._client.start_session() as session:
            async with session.start_transaction():
                await self._delete_then_insert(dataset, [], session=session)

    async def replace_all(self, dataset: Dataset) -> None:
        if self._client is None:
            raise RemoteUnavailable("MongoDB client is not connected")
        try:
            await self._run("replace all", self._replace_in_transaction(dataset))
            return
        except RemoteWriteError as exc:
            if not _transactions_unsupported(exc.__cause__):
                raise
        log.warning(
            "MongoDB deployment does not support transactions, replacing without one",
            extra={"store": "mongo"},
        )
        completed: List[str] = []
        try:
            await self._run("replace all", self._delete_then_insert(dataset, completed))
        except (OperationTimeout, RemoteUnavailable, RemoteWriteError, DuplicateRecord) as exc:
            steps = ", ".join(completed) or "nothing"
            raise type(exc)(f"{exc.detail} (completed before failure: {steps})") from exc

    async def upsert_one(self, kind: RecordKind, record: Record) -> Record:
        collection = self._collection(kind)
        action = f"upsert {kind.value} {record.get('id')}"
        existing = None
        if record.get(kind.created_field) is None:
            existing = await self._run(
                action,
                collection.find_one({"id": record["id"]}, {kind.created_field: 1, "_id": 0}),
            )
        doc = keep_created(kind, record, existing)
        saved = await self._run(
            action,
            collection.find_one_and_replace(
                {"id": doc["id"]},
                doc,
                projection={"_id": 0},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            ),
        )
        return saved or dict(doc)

    async def insert_one(self, kind: RecordKind, record: Record) -> Record:
        doc: Dict[str, Any] = dict(record)
        await self._run(f"insert {kind.value} {record.get('id')}", self._collection(kind).insert_one(doc))
        doc.pop("_id", None)
        return doc

    async def delete_one(self, kind: RecordKind, record_id: int) -> bool:
        result = await self._run(
            f"delete {kind.value} {record_id}",
            self._collection(kind).delete_one({"id": record_id}),
        )
        return result.deleted_count > 0
