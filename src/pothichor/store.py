"""Document store used by every marketplace component.

Two backends share one small interface: MongoDB through pymongo for deployments and an
in-process store for local development and tests. Filters use the MongoDB query shape
(plain equality plus ``$gt``/``$gte``/``$lt``/``$lte``/``$ne``/``$in``) and updates use
``$set``/``$inc``/``$push``, so callers never branch on the backend.
"""

from __future__ import annotations

import copy
import logging
import operator
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, TypeVar

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from .errors import PersistenceError

logger = logging.getLogger(__name__)

USERS = "users"
MEALS = "meals"
ORDERS = "orders"
PAST_ORDERS = "pastOrders"
REMINDERS = "scheduledReminders"

SortSpec = Sequence[Tuple[str, int]]

# MongoDB error codes that mean the caller is not allowed to do this.
_UNAUTHORIZED_CODES = {13, 18, 8000}
_TRANSIENT_LABEL = "TransientTransactionError"
_UNKNOWN_COMMIT_LABEL = "UnknownTransactionCommitResult"

T = TypeVar("T")


class DocumentStore:
    """Interface shared by the MongoDB and in-process backends."""

    backend_name = "abstract"

    def insert(self, collection: str, document: Dict[str, Any], *, session: Any = None) -> str:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str, *, session: Any = None) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def find(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> bool:
        """Merge ``fields`` into the document (last write wins). Returns True if one matched."""
        raise NotImplementedError

    def find_one_and_update(
        self,
        collection: str,
        filters: Mapping[str, Any],
        update: Mapping[str, Mapping[str, Any]],
        *,
        session: Any = None,
    ) -> Optional[Dict[str, Any]]:
        """Atomically apply ``update`` to the first match and return it post-update, or None."""
        raise NotImplementedError

    def run_transaction(self, callback: Callable[[Any], T]) -> T:
        """
        Run ``callback(session)`` as one all-or-nothing unit and return its result.

        The callback may be invoked more than once when the backend retries a
        transient conflict, so it must not have side effects outside the store.
        """
        raise NotImplementedError


# --------------------------------------------------------------------------- #
# MongoDB
# --------------------------------------------------------------------------- #


@contextmanager
def _translate_errors(operation: str, session: Any = None) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        # Inside a transaction these are retried by with_transaction, which needs the labels.
        if session is not None and (
            exc.has_error_label(_TRANSIENT_LABEL) or exc.has_error_label(_UNKNOWN_COMMIT_LABEL)
        ):
            raise
        raise _persistence_error(operation, exc) from exc


def _persistence_error(operation: str, exc: PyMongoError) -> PersistenceError:
    if isinstance(exc, DuplicateKeyError):
        reason = PersistenceError.DUPLICATE
    elif isinstance(exc, OperationFailure):
        reason = (
            PersistenceError.PERMISSION_DENIED
            if exc.code in _UNAUTHORIZED_CODES
            else PersistenceError.UNKNOWN
        )
    elif isinstance(exc, ConnectionFailure):
        reason = PersistenceError.NETWORK_BLOCKED
    else:
        reason = PersistenceError.UNKNOWN
    return PersistenceError(f"{operation}: {exc}", reason=reason)


class MongoDocumentStore(DocumentStore):
    """pymongo-backed store. Transactions need a replica set (Atlas clusters have one)."""

    backend_name = "mongodb"

    def __init__(
        self,
        url: str | None = None,
        database_name: str = "pothichor",
        *,
        client: MongoClient | None = None,
        server_selection_timeout_ms: int = 5000,
    ):
        if client is None:
            if not url:
                raise ValueError("MongoDB URL missing. Set DATABASE_URL or pass url=...")
            client = MongoClient(
                url,
                tz_aware=True,
                serverSelectionTimeoutMS=server_selection_timeout_ms,
            )
        self._client = client
        self._db = client[database_name]

    @property
    def name(self) -> str:
        return self._db.name

    def ensure_indexes(self) -> None:
        with _translate_errors("ensure_indexes"):
            self._db[MEALS].create_index([("house_id", ASCENDING)])
            self._db[MEALS].create_index([("order_deadline", ASCENDING)])
            self._db[ORDERS].create_index([("student_id", ASCENDING), ("created_at", DESCENDING)])
            self._db[PAST_ORDERS].create_index([("house_id", ASCENDING), ("pickup_time", DESCENDING)])
            self._db[REMINDERS].create_index(
                [("recipient_email", ASCENDING), ("sent", ASCENDING), ("reminder_time", ASCENDING)]
            )

    def insert(self, collection: str, document: Dict[str, Any], *, session: Any = None) -> str:
        with _translate_errors(f"insert into {collection}", session):
            self._db[collection].insert_one(document, session=session)
        return str(document["_id"])

    def get(self, collection: str, doc_id: str, *, session: Any = None) -> Optional[Dict[str, Any]]:
        with _translate_errors(f"get {collection}/{doc_id}", session):
            return self._db[collection].find_one({"_id": doc_id}, session=session)

    def find(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with _translate_errors(f"find in {collection}"):
            cursor = self._db[collection].find(dict(filters or {}))
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> bool:
        with _translate_errors(f"update {collection}/{doc_id}", session):
            result = self._db[collection].update_one(
                {"_id": doc_id}, {"$set": dict(fields)}, upsert=upsert, session=session
            )
        return bool(result.matched_count or result.upserted_id is not None)

    def find_one_and_update(
        self,
        collection: str,
        filters: Mapping[str, Any],
        update: Mapping[str, Mapping[str, Any]],
        *,
        session: Any = None,
    ) -> Optional[Dict[str, Any]]:
        with _translate_errors(f"conditional update in {collection}", session):
            return self._db[collection].find_one_and_update(
                dict(filters),
                {op: dict(fields) for op, fields in update.items()},
                return_document=ReturnDocument.AFTER,
                session=session,
            )

    def run_transaction(self, callback: Callable[[Any], T]) -> T:
        try:
            with self._client.start_session() as session:
                return session.with_transaction(callback)
        except PyMongoError as exc:
            raise _persistence_error("transaction", exc) from exc


# --------------------------------------------------------------------------- #
# In-process
# --------------------------------------------------------------------------- #


_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$eq": operator.eq,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


def _is_operator_block(condition: Any) -> bool:
    return isinstance(condition, Mapping) and bool(condition) and all(
        str(key).startswith("$") for key in condition
    )


def _matches(document: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for field, condition in filters.items():
        value = document.get(field)
        if not _is_operator_block(condition):
            if value != condition:
                return False
            continue
        for op, operand in condition.items():
            if op == "$ne":
                if value == operand:
                    return False
            elif op == "$in":
                if value not in operand:
                    return False
            elif op in _COMPARATORS:
                if value is None or not _COMPARATORS[op](value, operand):
                    return False
            else:
                raise ValueError(f"Unsupported filter operator {op!r}")
    return True


def _apply_update(document: Dict[str, Any], update: Mapping[str, Mapping[str, Any]]) -> None:
    for op, fields in update.items():
        if op == "$set":
            document.update(copy.deepcopy(dict(fields)))
        elif op == "$inc":
            for field, delta in fields.items():
                document[field] = document.get(field, 0) + delta
        elif op == "$push":
            for field, value in fields.items():
                document.setdefault(field, []).append(copy.deepcopy(value))
        else:
            raise ValueError(f"Unsupported update operator {op!r}")


class MemoryDocumentStore(DocumentStore):
    """
    Thread-safe in-process store.

    One re-entrant lock guards every collection; a transaction holds it for the whole
    callback and restores the pre-transaction snapshot if the body raises.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def insert(self, collection: str, document: Dict[str, Any], *, session: Any = None) -> str:
        doc_id = str(document["_id"])
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise PersistenceError(
                    f"insert into {collection}: duplicate _id {doc_id}",
                    reason=PersistenceError.DUPLICATE,
                )
            docs[doc_id] = copy.deepcopy(document)
        return doc_id

    def get(self, collection: str, doc_id: str, *, session: Any = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collection(collection).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def find(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            results = [
                copy.deepcopy(doc)
                for doc in self._collection(collection).values()
                if _matches(doc, filters or {})
            ]
        for field, direction in reversed(list(sort or [])):
            results.sort(
                key=lambda doc: (doc.get(field) is None, doc.get(field)),
                reverse=direction == DESCENDING,
            )
        if limit:
            results = results[:limit]
        return results

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Mapping[str, Any],
        *,
        upsert: bool = False,
        session: Any = None,
    ) -> bool:
        with self._lock:
            docs = self._collection(collection)
            document = docs.get(doc_id)
            if document is None:
                if not upsert:
                    return False
                document = docs[doc_id] = {"_id": doc_id}
            _apply_update(document, {"$set": fields})
            return True

    def find_one_and_update(
        self,
        collection: str,
        filters: Mapping[str, Any],
        update: Mapping[str, Mapping[str, Any]],
        *,
        session: Any = None,
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            for document in self._collection(collection).values():
                if _matches(document, filters):
                    _apply_update(document, update)
                    return copy.deepcopy(document)
        return None

    def run_transaction(self, callback: Callable[[Any], T]) -> T:
        with self._lock:
            snapshot = copy.deepcopy(self._collections)
            try:
                return callback(None)
            except BaseException:
                self._collections = snapshot
                raise


def open_store(database_url: str | None, database_name: str = "pothichor") -> DocumentStore:
    if not database_url:
        logger.warning("DATABASE_URL not set; using the in-process store (data is lost on restart)")
        return MemoryDocumentStore()
    store = MongoDocumentStore(database_url, database_name)
    try:
        store.ensure_indexes()
    except PersistenceError as exc:
        logger.warning("Could not create MongoDB indexes on %s: %s", database_name, exc)
    return store
