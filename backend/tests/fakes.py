"""
In-memory stand-in for the parts of the Motor API the settlement core uses.

Supports equality / $in / $ne / $gt / $gte / $lt / $lte / $exists filters,
$set / $inc / $push ($each) / $setOnInsert updates, unique indexes and
sessions. A transaction snapshots every collection on entry and restores
the snapshot when its block raises, like a server-side abort.
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError


_MISSING = object()


def _get_path(doc: Dict[str, Any], path: str):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _set_path(doc: Dict[str, Any], path: str, value: Any):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(operand):
                    return False
            elif op == "$in":
                if value is _MISSING or value not in operand:
                    return False
            elif op == "$ne":
                if value is not _MISSING and value == operand:
                    return False
            elif op in ("$gt", "$gte", "$lt", "$lte"):
                if value is _MISSING or value is None:
                    return False
                if op == "$gt" and not value > operand:
                    return False
                if op == "$gte" and not value >= operand:
                    return False
                if op == "$lt" and not value < operand:
                    return False
                if op == "$lte" and not value <= operand:
                    return False
            else:
                raise NotImplementedError(f"Unsupported operator {op}")
        return True

    if value is _MISSING:
        return condition is None
    if isinstance(value, list) and not isinstance(condition, list):
        return condition in value
    return value == condition


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if not _matches_condition(_get_path(doc, key), condition):
            return False
    return True


def apply_update(doc: Dict[str, Any], update: Dict[str, Any], inserting: bool = False):
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
        elif op == "$setOnInsert":
            if inserting:
                for path, value in fields.items():
                    _set_path(doc, path, copy.deepcopy(value))
        elif op == "$inc":
            for path, value in fields.items():
                current = _get_path(doc, path)
                _set_path(doc, path, (0 if current is _MISSING else current) + value)
        elif op == "$push":
            for path, value in fields.items():
                current = _get_path(doc, path)
                items = list(current) if current is not _MISSING else []
                if isinstance(value, dict) and "$each" in value:
                    items.extend(copy.deepcopy(value["$each"]))
                else:
                    items.append(copy.deepcopy(value))
                _set_path(doc, path, items)
        else:
            raise NotImplementedError(f"Unsupported update operator {op}")


class FakeResult:
    def __init__(self, **kwargs):
        self.__dict__.update(kwargs)


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs
        self._skip = 0
        self._limit = None

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, field_direction in reversed(keys):
            self._docs.sort(
                key=lambda d: (
                    _get_path(d, field) in (_MISSING, None),
                    _get_path(d, field) if _get_path(d, field) not in (_MISSING, None) else 0
                ),
                reverse=field_direction == -1
            )
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def _results(self):
        docs = self._docs[self._skip:]
        return docs[:self._limit] if self._limit else docs

    async def to_list(self, length=None):
        docs = self._results()
        return docs[:length] if length else docs

    def __aiter__(self):
        self._iter = iter(self._results())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique_indexes: List[List[str]] = []
        self.failures: Dict[str, Exception] = {}

    # -- test helpers -------------------------------------------------------

    def seed(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return copy.deepcopy(doc)

    def fail_next(self, operation: str, error: Exception):
        """Make the next call of `operation` raise `error`."""
        self.failures[operation] = error

    def _maybe_fail(self, operation: str):
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def _check_unique(self, candidate: Dict[str, Any], ignore_id=None):
        for other in self.docs:
            if other["_id"] == ignore_id:
                continue
            if other["_id"] == candidate["_id"]:
                raise DuplicateKeyError(f"E11000 duplicate key _id in {self.name}")
            for fields in self.unique_indexes:
                values = [_get_path(candidate, f) for f in fields]
                if all(v is not _MISSING for v in values) and values == [_get_path(other, f) for f in fields]:
                    raise DuplicateKeyError(f"E11000 duplicate key {fields} in {self.name}")

    def _find_stored(self, query) -> Optional[Dict[str, Any]]:
        for doc in self.docs:
            if matches(doc, query):
                return doc
        return None

    # -- Motor API ------------------------------------------------------------

    async def create_index(self, keys, unique=False, name=None, **kwargs):
        if unique:
            self.unique_indexes.append([field for field, _ in keys])
        return name

    async def insert_one(self, doc: Dict[str, Any], session=None):
        self._maybe_fail("insert_one")
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        stored = copy.deepcopy(doc)
        self._check_unique(stored)
        self.docs.append(stored)
        return FakeResult(inserted_id=stored["_id"])

    async def find_one(self, query=None, session=None, **kwargs):
        self._maybe_fail("find_one")
        found = self._find_stored(query)
        return copy.deepcopy(found) if found is not None else None

    def find(self, query=None, session=None, **kwargs):
        return FakeCursor([copy.deepcopy(d) for d in self.docs if matches(d, query)])

    async def count_documents(self, query=None, session=None):
        return len([d for d in self.docs if matches(d, query)])

    async def update_one(self, query, update, upsert=False, session=None):
        self._maybe_fail("update_one")
        doc = self._find_stored(query)
        if doc is None:
            if not upsert:
                return FakeResult(matched_count=0, modified_count=0, upserted_id=None)
            doc = self._new_upsert_doc(query, update)
            self.docs.append(doc)
            return FakeResult(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        updated = copy.deepcopy(doc)
        apply_update(updated, update)
        self._check_unique(updated, ignore_id=doc["_id"])
        doc.clear()
        doc.update(updated)
        return FakeResult(matched_count=1, modified_count=1, upserted_id=None)

    def _new_upsert_doc(self, query, update):
        doc = {
            key: value for key, value in (query or {}).items()
            if not (isinstance(value, dict) and any(k.startswith("$") for k in value))
        }
        apply_update(doc, update, inserting=True)
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc)
        return doc

    async def find_one_and_update(self, query, update, upsert=False,
                                  return_document=ReturnDocument.BEFORE, session=None, **kwargs):
        self._maybe_fail("find_one_and_update")
        doc = self._find_stored(query)
        if doc is None:
            if not upsert:
                return None
            doc = self._new_upsert_doc(query, update)
            self.docs.append(doc)
            return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else None
        before = copy.deepcopy(doc)
        apply_update(doc, update)
        return copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before

    async def replace_one(self, query, replacement, session=None):
        doc = self._find_stored(query)
        if doc is None:
            return FakeResult(matched_count=0, modified_count=0)
        doc_id = doc["_id"]
        doc.clear()
        doc.update(copy.deepcopy(replacement))
        doc["_id"] = doc_id
        return FakeResult(matched_count=1, modified_count=1)

    async def delete_one(self, query, session=None):
        doc = self._find_stored(query)
        if doc is None:
            return FakeResult(deleted_count=0)
        self.docs.remove(doc)
        return FakeResult(deleted_count=1)


class FakeDatabase:
    def __init__(self, name: str = "test_settlement"):
        self.name = name
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def snapshot(self):
        return {name: copy.deepcopy(c.docs) for name, c in self.collections.items()}

    def restore(self, snapshot):
        for name, collection in self.collections.items():
            collection.docs = snapshot.get(name, [])


class FakeTransaction:
    def __init__(self, session: "FakeSession"):
        self.session = session

    async def __aenter__(self):
        self.session.client.transactions_started += 1
        self._snapshot = self.session.client.db.snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.session.client.db.restore(self._snapshot)
            self.session.client.transactions_aborted += 1
        return False


class FakeSession:
    def __init__(self, client: "FakeMongoClient"):
        self.client = client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def start_transaction(self):
        return FakeTransaction(self)


class FakeAdmin:
    def __init__(self, client: "FakeMongoClient"):
        self.client = client
        self.hello_calls = 0

    async def command(self, name: str):
        self.hello_calls += 1
        if self.client.hello_error is not None:
            raise self.client.hello_error
        return dict(self.client.hello_reply)


class FakeMongoClient:
    """
    replica_set=True answers `hello` like a replica set member, so
    transactions are detected as supported.
    """

    def __init__(self, replica_set: bool = True, hello_error: Optional[Exception] = None):
        self.db = FakeDatabase()
        self.admin = FakeAdmin(self)
        self.hello_reply = {"isWritablePrimary": True, "setName": "rs0"} if replica_set else {"isWritablePrimary": True}
        self.hello_error = hello_error
        self.transactions_started = 0
        self.transactions_aborted = 0

    def __getitem__(self, name: str) -> FakeDatabase:
        return self.db

    async def start_session(self):
        return FakeSession(self)

    def close(self):
        pass


# =============================================================================
# SEED HELPERS
# =============================================================================

def seed_booking(db: FakeDatabase, **overrides) -> Dict[str, Any]:
    booking = {
        "_id": ObjectId(),
        "bookingNumber": "BK000001",
        "subdealer": None,
        "model": None,
        "payment": {"type": "CASH", "financer": None},
        "totalAmount": 10000.0,
        "discountedAmount": 10000.0,
        "receivedAmount": 0.0,
        "balanceAmount": 10000.0,
        "priceComponents": [],
        "ledgerEntries": [],
        "receipts": [],
        "createdAt": datetime(2024, 5, 1, 10, 0, 0),
    }
    booking.update(overrides)
    return db["bookings"].seed(booking)


def seed_cash_location(db: FakeDatabase, status: str = "active") -> Dict[str, Any]:
    return db["cashlocations"].seed({"name": "Showroom Counter", "status": status})


def seed_bank(db: FakeDatabase, status: str = "active") -> Dict[str, Any]:
    return db["banks"].seed({"name": "HDFC Current A/c", "status": status})


def seed_finance_provider(db: FakeDatabase, is_active: bool = True) -> Dict[str, Any]:
    return db["financeproviders"].seed({"name": "Bajaj Finance", "is_active": is_active})


def seed_subdealer(db: FakeDatabase) -> Dict[str, Any]:
    return db["subdealers"].seed({"name": "Ravi Motors", "status": "active"})


def seed_model(db: FakeDatabase, model_type: str = "EV") -> Dict[str, Any]:
    return db["models"].seed({"model_name": "Zoom 125", "type": model_type})


def seed_header(db: FakeDatabase, header_key: str, header_type: str = "EV", is_discount: bool = False) -> Dict[str, Any]:
    return db["headers"].seed({"header_key": header_key, "type": header_type, "is_discount": is_discount})
