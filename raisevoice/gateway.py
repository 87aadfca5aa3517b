# PersistenceGateway: the single shared store every engine component goes through.
#
# Paths are "<collection>" or "<collection>/<key>". MemoryGateway backs tests and
# embedded use; MongoGateway is the production store.

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import MONGODB_DB, MONGODB_URL, push_key
from .errors import Conflict, PersistenceError

logger = logging.getLogger(__name__)

OnChange = Callable[[str, Optional[dict]], None]


def split_path(path: str) -> Tuple[str, Optional[str]]:
    parts = [p for p in path.strip("/").split("/")]
    if not parts or any(not p for p in parts) or len(parts) > 2:
        raise ValueError(f"Invalid store path: {path!r}")
    return parts[0], parts[1] if len(parts) == 2 else None


def _document_key(path: str) -> Tuple[str, str]:
    collection, key = split_path(path)
    if key is None:
        raise ValueError(f"Operation requires a document path, got {path!r}")
    return collection, key


class PersistenceGateway(ABC):
    """Store contract consumed by the engine.

    ``read``/``write``/``merge``/``append``/``delete``/``subscribe`` mirror a
    realtime document store. ``create``, ``query``, ``update`` and ``increment``
    add the create-if-absent, filtered read, compare-and-set and atomic counter
    the engine needs to keep check-then-act sequences safe.
    """

    @abstractmethod
    def read(self, path: str) -> Optional[Any]: ...

    @abstractmethod
    def write(self, path: str, value: dict) -> None: ...

    @abstractmethod
    def create(self, path: str, value: dict) -> bool:
        """Write only when the document is absent; False if it already exists."""

    @abstractmethod
    def merge(self, path: str, fields: dict) -> None:
        """Shallow field merge; creates the document when absent."""

    def append(self, path: str) -> str:
        """Reserve a creation-ordered key under a collection; the caller writes it."""
        collection, key = split_path(path)
        if key is not None:
            raise ValueError(f"append expects a collection path, got {path!r}")
        return push_key()

    @abstractmethod
    def delete(self, path: str) -> None: ...

    @abstractmethod
    def subscribe(self, path: str, on_change: OnChange) -> Callable[[], None]: ...

    @abstractmethod
    def query(self, path: str, child: str, equal_to: Any) -> Dict[str, dict]: ...

    @abstractmethod
    def update(self, path: str, fields: Optional[dict] = None,
               push: Optional[Dict[str, List[Any]]] = None,
               expect: Optional[dict] = None) -> bool: ...

    @abstractmethod
    def increment(self, path: str, field: str, delta: int,
                  floor: Optional[int] = None, extra: Optional[dict] = None) -> Optional[int]: ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------
class MemoryGateway(PersistenceGateway):
    def __init__(self):
        self._data: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.RLock()
        self._subscribers: Dict[str, List[OnChange]] = {}

    def read(self, path):
        collection, key = split_path(path)
        with self._lock:
            docs = self._data.get(collection)
            if docs is None:
                return None
            if key is None:
                return copy.deepcopy(docs) if docs else None
            doc = docs.get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def write(self, path, value):
        collection, key = _document_key(path)
        with self._lock:
            self._data.setdefault(collection, {})[key] = copy.deepcopy(value)
        self._publish(collection, key, value)

    def create(self, path, value):
        collection, key = _document_key(path)
        with self._lock:
            docs = self._data.setdefault(collection, {})
            if key in docs:
                return False
            docs[key] = copy.deepcopy(value)
        self._publish(collection, key, value)
        return True

    def merge(self, path, fields):
        collection, key = _document_key(path)
        with self._lock:
            doc = self._data.setdefault(collection, {}).setdefault(key, {})
            doc.update(copy.deepcopy(fields))
            snapshot = copy.deepcopy(doc)
        self._publish(collection, key, snapshot)

    def delete(self, path):
        collection, key = split_path(path)
        with self._lock:
            if key is None:
                removed = list(self._data.pop(collection, {}))
            else:
                removed = [key] if self._data.get(collection, {}).pop(key, None) is not None else []
        for k in removed:
            self._publish(collection, k, None)

    def query(self, path, child, equal_to):
        collection, key = split_path(path)
        if key is not None:
            raise ValueError(f"query expects a collection path, got {path!r}")
        with self._lock:
            docs = self._data.get(collection, {})
            return {k: copy.deepcopy(d) for k, d in sorted(docs.items())
                    if d.get(child) == equal_to}

    def update(self, path, fields=None, push=None, expect=None):
        collection, key = _document_key(path)
        with self._lock:
            doc = self._data.get(collection, {}).get(key)
            if doc is None:
                return False
            for name, value in (expect or {}).items():
                if doc.get(name) != value:
                    return False
            doc.update(copy.deepcopy(fields or {}))
            for name, items in (push or {}).items():
                doc.setdefault(name, []).extend(copy.deepcopy(items))
            snapshot = copy.deepcopy(doc)
        self._publish(collection, key, snapshot)
        return True

    def increment(self, path, field, delta, floor=None, extra=None):
        collection, key = _document_key(path)
        with self._lock:
            doc = self._data.get(collection, {}).get(key)
            if doc is None:
                return None
            value = doc.get(field, 0) + delta
            if floor is not None and value < floor:
                return None
            doc[field] = value
            doc.update(copy.deepcopy(extra or {}))
            snapshot = copy.deepcopy(doc)
        self._publish(collection, key, snapshot)
        return value

    def subscribe(self, path, on_change):
        split_path(path)
        path = path.strip("/")
        with self._lock:
            self._subscribers.setdefault(path, []).append(on_change)

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(path, [])
                if on_change in callbacks:
                    callbacks.remove(on_change)
        return unsubscribe

    def _publish(self, collection: str, key: str, value: Optional[dict]):
        with self._lock:
            callbacks = (list(self._subscribers.get(collection, []))
                         + list(self._subscribers.get(f"{collection}/{key}", [])))
        for callback in callbacks:
            callback(f"{collection}/{key}", copy.deepcopy(value))


# ---------------------------------------------------------------------------
# MongoDB store
# ---------------------------------------------------------------------------
def _strip(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


@contextmanager
def _guard(op: str, path: str):
    try:
        yield
    except DuplicateKeyError as e:
        logger.warning("Store conflict on %s %s: %s", op, path, e)
        raise Conflict(f"{op} {path}: {e}") from e
    except PyMongoError as e:
        logger.error("Store error on %s %s: %s", op, path, e)
        raise PersistenceError(f"{op} {path}: {e}") from e


class MongoGateway(PersistenceGateway):
    def __init__(self, db, client: Optional[MongoClient] = None):
        self.db = db
        self.client = client

    @classmethod
    def connect(cls, url: str = MONGODB_URL, name: str = MONGODB_DB) -> "MongoGateway":
        client = MongoClient(url, tz_aware=True)
        return cls(client[name], client)

    def ensure_indexes(self):
        with _guard("create_index", "*"):
            self.db.users.create_index("is_admin")
            self.db.grievances.create_index("submitter_id")
            self.db.grievances.create_index("status")
            self.db.grievances.create_index("created_at")
            self.db.credit_requests.create_index("status")
            self.db.credit_requests.create_index(
                "requester_id", unique=True, name="one_pending_request_per_user",
                partialFilterExpression={"status": "pending"})
            self.db.notifications.create_index(
                [("recipient_id", ASCENDING), ("created_at", ASCENDING)])
        logger.info("Database indexes ensured on %s", self.db.name)

    def close(self):
        if self.client is not None:
            self.client.close()

    def read(self, path):
        collection, key = split_path(path)
        with _guard("read", path):
            if key is None:
                docs = {d["_id"]: _strip(d) for d in self.db[collection].find().sort("_id", ASCENDING)}
                return docs or None
            return _strip(self.db[collection].find_one({"_id": key}))

    def write(self, path, value):
        collection, key = _document_key(path)
        with _guard("write", path):
            self.db[collection].replace_one({"_id": key}, {**value, "_id": key}, upsert=True)

    def create(self, path, value):
        collection, key = _document_key(path)
        with _guard("create", path):
            try:
                self.db[collection].insert_one({**value, "_id": key})
            except DuplicateKeyError:
                return False
        return True

    def merge(self, path, fields):
        collection, key = _document_key(path)
        with _guard("merge", path):
            self.db[collection].update_one({"_id": key}, {"$set": fields}, upsert=True)

    def delete(self, path):
        collection, key = split_path(path)
        with _guard("delete", path):
            if key is None:
                self.db[collection].delete_many({})
            else:
                self.db[collection].delete_one({"_id": key})

    def query(self, path, child, equal_to):
        collection, key = split_path(path)
        if key is not None:
            raise ValueError(f"query expects a collection path, got {path!r}")
        with _guard("query", path):
            cursor = self.db[collection].find({child: equal_to}).sort("_id", ASCENDING)
            return {d["_id"]: _strip(d) for d in cursor}

    def update(self, path, fields=None, push=None, expect=None):
        collection, key = _document_key(path)
        flt = {"_id": key, **(expect or {})}
        ops: Dict[str, Any] = {}
        if fields:
            ops["$set"] = fields
        if push:
            ops["$push"] = {name: {"$each": items} for name, items in push.items()}
        with _guard("update", path):
            if not ops:
                return self.db[collection].find_one(flt, {"_id": 1}) is not None
            return self.db[collection].update_one(flt, ops).matched_count == 1

    def increment(self, path, field, delta, floor=None, extra=None):
        collection, key = _document_key(path)
        flt: Dict[str, Any] = {"_id": key}
        if floor is not None:
            flt[field] = {"$gte": floor - delta}
        ops: Dict[str, Any] = {"$inc": {field: delta}}
        if extra:
            ops["$set"] = extra
        with _guard("increment", path):
            doc = self.db[collection].find_one_and_update(
                flt, ops, return_document=ReturnDocument.AFTER)
        return doc[field] if doc else None

    def subscribe(self, path, on_change):
        collection, key = split_path(path)
        pipeline = [{"$match": {"documentKey._id": key}}] if key else []
        with _guard("subscribe", path):
            stream = self.db[collection].watch(pipeline, full_document="updateLookup")

        def pump():
            try:
                for change in stream:
                    doc_key = change["documentKey"]["_id"]
                    on_change(f"{collection}/{doc_key}", _strip(change.get("fullDocument")))
            except PyMongoError as e:
                if stream.alive:
                    logger.error("Change stream on %s stopped: %s", path, e)

        threading.Thread(target=pump, name=f"watch:{path}", daemon=True).start()
        return stream.close
