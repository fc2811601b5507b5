import asyncio
import copy
import logging
from contextlib import asynccontextmanager

import bson
import pytest
from bson import ObjectId
from bson.errors import InvalidBSON
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure
from pymongo.results import DeleteResult

from garage_api.core.database import ConnectionState, MongoStore, _diagnose, _transactions_unsupported
from garage_api.core.errors import DuplicateRecord, OperationTimeout, RemoteUnavailable, RemoteWriteError
from garage_api.models.dataset import Dataset, RecordKind, today

from conftest import client_record, invoice_record, quote_record


def test_transactions_unsupported_detects_standalone_error():
    standalone = OperationFailure(
        "Transaction numbers are only allowed on a replica set member or mongos", code=20
    )

    assert _transactions_unsupported(standalone)
    assert not _transactions_unsupported(OperationFailure("not primary", code=10107))
    assert not _transactions_unsupported(ValueError("other"))


@pytest.mark.parametrize(
    "message, expected",
    [
        ("localhost:27017: timed out", "unreachable"),
        ("bad auth : Authentication failed.", "authentication"),
        ("[Errno 111] Connection refused", "refused"),
        ("something else entirely", None),
    ],
)
def test_diagnose(message, expected):
    hint = _diagnose(message)

    if expected is None:
        assert hint is None
    else:
        assert expected in hint


@pytest.mark.asyncio
async def test_operations_before_connect_raise_unavailable():
    store = MongoStore("mongodb://127.0.0.1:1", "garage_test")

    with pytest.raises(RemoteUnavailable):
        await store.find_all(RecordKind.CLIENT)
    with pytest.raises(RemoteUnavailable):
        await store.replace_all(Dataset())


@pytest.mark.asyncio
async def test_connect_to_unreachable_server_reports_unavailable():
    store = MongoStore("mongodb://127.0.0.1:1", "garage_test", connect_timeout=0.3, operation_timeout=0.3)

    status = await store.connect()
    await store.close()

    assert status.state is ConnectionState.UNAVAILABLE
    assert status.reason


@pytest.mark.asyncio
async def test_connect_with_malformed_uri_reports_unavailable():
    store = MongoStore("mongodb+srv://cluster.example.net:27017", "garage_test", connect_timeout=0.3)

    status = await store.connect()

    assert status.state is ConnectionState.UNAVAILABLE


# -- data paths against an in-process motor stand-in ----------------------

_STANDALONE = OperationFailure(
    "Transaction numbers are only allowed on a replica set member or mongos", code=20
)


def _matches(doc, query):
    return all(doc.get(key) == value for key, value in query.items())


def _project(doc, projection):
    if not projection:
        return copy.deepcopy(doc)
    included = [key for key, on in projection.items() if on and key != "_id"]
    out = {key: doc[key] for key in included if key in doc} if included else dict(doc)
    if not projection.get("_id", 1):
        out.pop("_id", None)
    return copy.deepcopy(out)


class FakeCursor:
    def __init__(self, collection, docs):
        self._collection = collection
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d[key], reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        await self._collection._touch("find")
        return self._docs


class FakeCollection:
    """Just enough of a motor collection: unique ``id`` index, BSON encoding, sessions."""

    def __init__(self, client, name):
        self.client = client
        self.name = name
        self.docs = []

    async def _touch(self, op, session=None):
        self.client.calls.append((op, self.name))
        await asyncio.sleep(self.client.delay)
        if session is not None and not self.client.transactions:
            raise _STANDALONE
        if self.client.fail_on == (op, self.name):
            raise self.client.fail_with

    def _store(self, doc):
        bson.encode(doc)
        if any(d["id"] == doc["id"] for d in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: id_1")
        doc.setdefault("_id", ObjectId())
        self.docs.append(copy.deepcopy(doc))

    async def delete_many(self, query, session=None):
        await self._touch("delete_many", session)
        kept = [d for d in self.docs if not _matches(d, query)]
        removed = len(self.docs) - len(kept)
        self.docs = kept
        return DeleteResult({"n": removed, "ok": 1}, True)

    async def insert_many(self, documents, session=None):
        await self._touch("insert_many", session)
        for doc in documents:
            self._store(doc)

    async def insert_one(self, document, session=None):
        await self._touch("insert_one", session)
        self._store(document)

    def find(self, query=None, projection=None):
        return FakeCursor(self, [_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def find_one(self, query, projection=None):
        await self._touch("find_one")
        found = next((d for d in self.docs if _matches(d, query)), None)
        return _project(found, projection) if found is not None else None

    async def find_one_and_replace(self, query, replacement, projection=None, upsert=False,
                                   return_document=ReturnDocument.BEFORE):
        await self._touch("find_one_and_replace")
        bson.encode(replacement)
        index = next((i for i, d in enumerate(self.docs) if _matches(d, query)), None)
        before = self.docs[index] if index is not None else None
        if before is None and not upsert:
            return None
        after = copy.deepcopy(replacement)
        after["_id"] = before["_id"] if before is not None else ObjectId()
        if index is None:
            self.docs.append(after)
        else:
            self.docs[index] = after
        chosen = after if return_document == ReturnDocument.AFTER else before
        return _project(chosen, projection) if chosen is not None else None

    async def delete_one(self, query, session=None):
        await self._touch("delete_one", session)
        index = next((i for i, d in enumerate(self.docs) if _matches(d, query)), None)
        if index is not None:
            del self.docs[index]
        return DeleteResult({"n": 0 if index is None else 1, "ok": 1}, True)

    async def count_documents(self, query):
        await self._touch("count_documents")
        return sum(1 for d in self.docs if _matches(d, query))


class FakeSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    @asynccontextmanager
    async def start_transaction(self):
        yield


class FakeDatabase:
    def __init__(self, client):
        self.client = client
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection(self.client, name))


class FakeMotorClient:
    def __init__(self, transactions=True, delay=0.0):
        self.transactions = transactions
        self.delay = delay
        self.fail_on = None
        self.fail_with = None
        self.calls = []
        self.closed = False
        self._databases = {}

    def __getitem__(self, name):
        return self._databases.setdefault(name, FakeDatabase(self))

    async def start_session(self):
        return FakeSession()

    def close(self):
        self.closed = True


def connected_store(client, **kwargs):
    store = MongoStore("mongodb://db.example.net:27017", "garage_test", **kwargs)
    store._client = client
    return store


def stored(client, kind):
    return client["garage_test"][kind.collection].docs


@pytest.mark.asyncio
async def test_upsert_twice_is_idempotent():
    client = FakeMotorClient()
    store = connected_store(client)

    first = await store.upsert_one(RecordKind.CLIENT, client_record(1))
    object_id = stored(client, RecordKind.CLIENT)[0]["_id"]
    second = await store.upsert_one(RecordKind.CLIENT, client_record(1))

    assert first == second == client_record(1)
    assert len(stored(client, RecordKind.CLIENT)) == 1
    assert stored(client, RecordKind.CLIENT)[0]["_id"] == object_id


@pytest.mark.asyncio
async def test_upsert_keeps_stored_creation_date():
    client = FakeMotorClient()
    store = connected_store(client)
    await store.upsert_one(RecordKind.QUOTE, quote_record(1, date="2023-05-05"))
    update = quote_record(1, total=150.0)
    del update["date"]
    fresh = quote_record(2)
    del fresh["date"]

    saved = await store.upsert_one(RecordKind.QUOTE, update)
    created = await store.upsert_one(RecordKind.QUOTE, fresh)

    assert (saved["total"], saved["date"]) == (150.0, "2023-05-05")
    assert created["date"] == today()


@pytest.mark.asyncio
async def test_replace_all_runs_in_a_transaction():
    client = FakeMotorClient()
    store = connected_store(client)
    await store.upsert_one(RecordKind.CLIENT, client_record(9))
    dataset = Dataset(clients=[client_record(1), client_record(2)], invoices=[invoice_record(1)])

    await store.replace_all(dataset)

    assert [c["id"] for c in await store.find_all(RecordKind.CLIENT)] == [1, 2]
    assert [i["id"] for i in await store.find_all(RecordKind.INVOICE)] == [1]
    assert all("_id" not in r for r in dataset.clients)
    assert ("insert_many", "quotes") not in client.calls


@pytest.mark.asyncio
async def test_replace_all_without_transaction_support_falls_back(caplog):
    client = FakeMotorClient(transactions=False)
    store = connected_store(client)

    with caplog.at_level(logging.WARNING, logger="garage_api.core.database"):
        await store.replace_all(Dataset(quotes=[quote_record(1), quote_record(2)]))

    assert [q["id"] for q in await store.find_all(RecordKind.QUOTE)] == [1, 2]
    assert "does not support transactions" in caplog.text


@pytest.mark.asyncio
async def test_replace_all_without_transaction_reports_completed_steps():
    client = FakeMotorClient(transactions=False)
    store = connected_store(client)
    client.fail_on = ("insert_many", "quotes")
    client.fail_with = OperationFailure("disk full", code=14031)

    with pytest.raises(RemoteWriteError) as exc_info:
        await store.replace_all(Dataset(clients=[client_record(1)], quotes=[quote_record(1)]))

    assert exc_info.value.detail.endswith(
        "(completed before failure: deleted clients, deleted quotes, deleted invoices, inserted 1 clients)"
    )
    assert [c["id"] for c in stored(client, RecordKind.CLIENT)] == [1]
    assert stored(client, RecordKind.QUOTE) == []


@pytest.mark.asyncio
async def test_replace_all_with_unencodable_id_is_a_remote_write_error():
    store = connected_store(FakeMotorClient())

    with pytest.raises(RemoteWriteError) as exc_info:
        await store.replace_all(Dataset(clients=[client_record(10**20)]))

    assert "BSON error" in exc_info.value.detail
    assert isinstance(exc_info.value.__cause__, OverflowError)


@pytest.mark.asyncio
async def test_insert_one_strips_object_id_and_rejects_duplicates():
    client = FakeMotorClient()
    store = connected_store(client)
    record = invoice_record(3)

    saved = await store.insert_one(RecordKind.INVOICE, record)

    assert "_id" not in saved
    assert "_id" not in record
    assert "_id" in stored(client, RecordKind.INVOICE)[0]
    with pytest.raises(DuplicateRecord):
        await store.insert_one(RecordKind.INVOICE, invoice_record(3))


@pytest.mark.asyncio
async def test_delete_one_reports_whether_a_record_was_removed():
    client = FakeMotorClient()
    store = connected_store(client)
    await store.insert_one(RecordKind.CLIENT, client_record(1))

    assert await store.delete_one(RecordKind.CLIENT, 1) is True
    assert await store.delete_one(RecordKind.CLIENT, 1) is False
    assert await store.count_all(RecordKind.CLIENT) == 0


@pytest.mark.asyncio
async def test_find_all_sorts_by_id_without_object_ids():
    store = connected_store(FakeMotorClient())
    for record_id in (3, 1, 2):
        await store.insert_one(RecordKind.QUOTE, quote_record(record_id))

    quotes = await store.find_all(RecordKind.QUOTE)

    assert [q["id"] for q in quotes] == [1, 2, 3]
    assert all("_id" not in q for q in quotes)


@pytest.mark.asyncio
async def test_slow_operation_times_out():
    store = connected_store(FakeMotorClient(delay=0.2), operation_timeout=0.05)

    with pytest.raises(OperationTimeout):
        await store.count_all(RecordKind.CLIENT)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected",
    [
        (AutoReconnect("db.example.net:27017: connection closed"), RemoteUnavailable),
        (OperationFailure("not primary", code=10107), RemoteWriteError),
        (InvalidBSON("objsize too large"), RemoteWriteError),
        (RuntimeError("cannot schedule new futures after shutdown"), RemoteWriteError),
    ],
)
async def test_driver_errors_become_storage_errors(error, expected):
    client = FakeMotorClient()
    store = connected_store(client)
    client.fail_on = ("find", "clients")
    client.fail_with = error

    with pytest.raises(expected):
        await store.find_all(RecordKind.CLIENT)


@pytest.mark.asyncio
async def test_close_releases_client():
    client = FakeMotorClient()
    store = connected_store(client)

    await store.close()

    assert client.closed
    with pytest.raises(RemoteUnavailable):
        await store.count_all(RecordKind.CLIENT)
