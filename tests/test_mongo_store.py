from types import SimpleNamespace

import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from pothichor.errors import PersistenceError
from pothichor.store import MEALS, ORDERS, PAST_ORDERS, MemoryDocumentStore, MongoDocumentStore, _translate_errors


def _write_conflict():
    return OperationFailure(
        "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
    )


class FakeCursor:
    def __init__(self, backing, name, filters):
        self._backing = backing
        self._name = name
        self._filters = filters
        self._sort = None
        self._limit = None

    def sort(self, spec):
        self._sort = spec
        return self

    def limit(self, count):
        self._limit = count
        return self

    def __iter__(self):
        return iter(self._backing.find(self._name, self._filters, sort=self._sort, limit=self._limit))


class FakeCollection:
    """pymongo-shaped collection over the in-process store; can inject labelled failures."""

    def __init__(self, client, name):
        self._client = client
        self._backing = client.backing
        self.name = name

    def _maybe_fail(self, operation):
        queued = self._client.failures.get((self.name, operation))
        if queued:
            raise queued.pop(0)

    def insert_one(self, document, session=None):
        self._maybe_fail("insert_one")
        try:
            self._backing.insert(self.name, document)
        except PersistenceError as exc:
            raise DuplicateKeyError(str(exc)) from exc
        return SimpleNamespace(inserted_id=document["_id"])

    def find_one(self, filters, session=None):
        return self._backing.get(self.name, filters["_id"])

    def find(self, filters):
        return FakeCursor(self._backing, self.name, filters)

    def update_one(self, filters, update, upsert=False, session=None):
        matched = self._backing.update(self.name, filters["_id"], update["$set"], upsert=upsert)
        return SimpleNamespace(matched_count=int(matched), upserted_id=None)

    def find_one_and_update(self, filters, update, return_document=None, session=None):
        self._maybe_fail("find_one_and_update")
        return self._backing.find_one_and_update(self.name, filters, update)

    def create_index(self, keys):
        return "_".join(field for field, _ in keys)


class FakeDatabase:
    def __init__(self, client, name):
        self._client = client
        self.name = name

    def __getitem__(self, collection):
        return FakeCollection(self._client, collection)


class FakeSession:
    """Retries the callback on TransientTransactionError the way ClientSession.with_transaction does."""

    def __init__(self, client):
        self._client = client

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def with_transaction(self, callback):
        while True:
            self._client.attempts += 1
            try:
                return self._client.backing.run_transaction(lambda _: callback(self))
            except OperationFailure as exc:
                if not exc.has_error_label("TransientTransactionError"):
                    raise


class FakeMongoClient:
    def __init__(self):
        self.backing = MemoryDocumentStore()
        self.failures = {}
        self.attempts = 0

    def fail_next(self, collection, operation, error):
        self.failures.setdefault((collection, operation), []).append(error)

    def start_session(self):
        return FakeSession(self)

    def __getitem__(self, name):
        return FakeDatabase(self, name)


@pytest.fixture
def mongo_client():
    return FakeMongoClient()


@pytest.fixture
def store(mongo_client):
    return MongoDocumentStore(client=mongo_client, database_name="pothichor")


def test_write_conflict_during_order_is_retried(market, house, student, make_draft, mongo_client, store):
    meal = market.listings.create_listing(house, make_draft(quantity_prepared=3))
    mongo_client.fail_next(MEALS, "find_one_and_update", _write_conflict())

    receipt = market.ordering.place_order(student, meal.id, 1)

    assert mongo_client.attempts == 2
    assert receipt.meal.orders_accepted == 1
    assert store.get(MEALS, meal.id)["orders_accepted"] == 1
    assert len(store.get(MEALS, meal.id)["orders"]) == 1
    assert [order["_id"] for order in store.find(ORDERS)] == [receipt.order.id]


def test_conflict_after_reservation_rolls_back_before_retry(market, house, student, make_draft, mongo_client, store):
    meal = market.listings.create_listing(house, make_draft(quantity_prepared=2))
    mongo_client.fail_next(ORDERS, "insert_one", _write_conflict())

    receipt = market.ordering.place_order(student, meal.id, 2)

    assert mongo_client.attempts == 2
    assert receipt.meal.orders_accepted == 2
    assert store.get(MEALS, meal.id)["orders_accepted"] == 2
    assert len(store.find(ORDERS)) == 1


def test_write_conflict_during_settlement_is_retried(market, house, make_draft, clock, mongo_client, store):
    meal = market.listings.create_listing(house, make_draft())
    clock.advance(hours=5)
    mongo_client.fail_next(MEALS, "find_one_and_update", _write_conflict())

    settled = market.listings.run_completion_sweep(house.id)

    assert [record.id for record in settled] == [meal.id]
    assert store.get(PAST_ORDERS, meal.id) is not None
    assert store.get(MEALS, meal.id)["settled"] is True


def test_non_transient_failure_is_a_persistence_error(market, house, student, make_draft, mongo_client, store):
    meal = market.listings.create_listing(house, make_draft())
    mongo_client.fail_next(MEALS, "find_one_and_update", OperationFailure("not authorized", code=13))

    with pytest.raises(PersistenceError) as excinfo:
        market.ordering.place_order(student, meal.id, 1)

    assert excinfo.value.reason == PersistenceError.PERMISSION_DENIED
    assert mongo_client.attempts == 1
    assert store.get(MEALS, meal.id)["orders_accepted"] == 0
    assert store.find(ORDERS) == []


def test_labelled_errors_pass_through_inside_a_session():
    conflict = _write_conflict()

    with pytest.raises(OperationFailure) as excinfo:
        with _translate_errors("conditional update in meals", session=object()):
            raise conflict

    assert excinfo.value is conflict

    with pytest.raises(PersistenceError):
        with _translate_errors("conditional update in meals"):
            raise _write_conflict()
