import copy
from typing import Dict, List, Optional

import bson
import pytest

from garage_api.core.config import StorageMode
from garage_api.core.database import ConnectionState, RemoteStatus
from garage_api.core.errors import DuplicateRecord
from garage_api.core.file_store import FileStore
from garage_api.models.dataset import Dataset, Record, RecordKind, keep_created
from garage_api.services.persistence_service import PersistenceCoordinator


class InMemoryRemoteStore:
    """Remote store double with switchable connectivity and failures."""

    def __init__(self, connect_status: Optional[RemoteStatus] = None, encode_documents: bool = False):
        self.connect_status = connect_status or RemoteStatus(ConnectionState.CONNECTED)
        # Encode written documents to BSON the way the driver does before sending them
        self.encode_documents = encode_documents
        self.collections: Dict[RecordKind, List[Record]] = {kind: [] for kind in RecordKind}
        self.fail_with: Optional[Exception] = None
        self.calls: List[str] = []
        self.connect_attempts = 0
        self.closed = False

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    def _encode(self, *records: Record) -> None:
        if self.encode_documents:
            for record in records:
                bson.encode(record)

    def seed(self, kind: RecordKind, *records: Record) -> None:
        self.collections[kind].extend(copy.deepcopy(list(records)))

    async def connect(self) -> RemoteStatus:
        self.connect_attempts += 1
        return self.connect_status

    async def find_all(self, kind: RecordKind) -> List[Record]:
        self._check("find_all")
        return sorted(copy.deepcopy(self.collections[kind]), key=lambda r: r["id"])

    async def count_all(self, kind: RecordKind) -> int:
        self._check("count_all")
        return len(self.collections[kind])

    async def replace_all(self, dataset: Dataset) -> None:
        self._check("replace_all")
        for kind in RecordKind:
            self._encode(*dataset.records(kind))
        for kind in RecordKind:
            self.collections[kind] = copy.deepcopy(dataset.records(kind))

    async def upsert_one(self, kind: RecordKind, record: Record) -> Record:
        self._check("upsert_one")
        self._encode(record)
        records = self.collections[kind]
        for index, existing in enumerate(records):
            if existing["id"] == record["id"]:
                records[index] = copy.deepcopy(keep_created(kind, record, existing))
                return copy.deepcopy(records[index])
        records.append(copy.deepcopy(keep_created(kind, record)))
        return copy.deepcopy(records[-1])

    async def insert_one(self, kind: RecordKind, record: Record) -> Record:
        self._check("insert_one")
        self._encode(record)
        if any(r["id"] == record["id"] for r in self.collections[kind]):
            raise DuplicateRecord(f"insert {kind.value} {record['id']}: E11000 duplicate key")
        self.collections[kind].append(copy.deepcopy(record))
        return copy.deepcopy(record)

    async def delete_one(self, kind: RecordKind, record_id: int) -> bool:
        self._check("delete_one")
        before = len(self.collections[kind])
        self.collections[kind] = [r for r in self.collections[kind] if r["id"] != record_id]
        return len(self.collections[kind]) != before

    async def close(self) -> None:
        self.closed = True


def client_record(record_id: int = 1, **overrides) -> Record:
    record = {
        "id": record_id,
        "firstName": "Jean",
        "lastName": "Martin",
        "email": "jean.martin@example.com",
        "phone": "0601020304",
        "address": "12 rue des Lilas, Lyon",
        "createdAt": "2024-03-01",
        "vehicles": [
            {
                "id": 1,
                "brand": "Peugeot",
                "model": "308",
                "year": "2019",
                "plate": "AB-123-CD",
                "vin": "VF3LBHNZ6KS123456",
            }
        ],
    }
    record.update(overrides)
    return record


def quote_record(record_id: int = 1, **overrides) -> Record:
    record = {
        "id": record_id,
        "number": f"DEV-2024-{record_id:03d}",
        "clientId": 1,
        "vehicleId": 1,
        "services": [{"serviceId": 3, "quantity": 1, "price": 89.9}],
        "interventionDate": "2024-03-10",
        "notes": "",
        "total": 89.9,
        "status": "pending",
        "date": "2024-03-02",
    }
    record.update(overrides)
    return record


def invoice_record(record_id: int = 1, **overrides) -> Record:
    record = quote_record(record_id, number=f"FAC-2024-{record_id:03d}", status="unpaid")
    record.update(overrides)
    return record


def dataset_payload(clients=(), quotes=(), invoices=()) -> dict:
    return {"clients": list(clients), "quotes": list(quotes), "invoices": list(invoices)}


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "data.json"


@pytest.fixture
def file_store(data_file):
    return FileStore(data_file)


@pytest.fixture
def remote():
    return InMemoryRemoteStore()


@pytest.fixture
def make_coordinator(file_store, remote):
    def _make(mode: StorageMode = StorageMode.HYBRID, **kwargs) -> PersistenceCoordinator:
        kwargs.setdefault("reconnect_interval", 0.0)
        store = None if mode is StorageMode.LOCAL else remote
        return PersistenceCoordinator(mode, file_store, store, **kwargs)

    return _make
