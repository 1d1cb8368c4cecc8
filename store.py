"""
Entity store over the MongoDB collections.

Every write is validated against the collection's pydantic schema before it
reaches the database. State-changing operations that span documents run inside
``EntityStore.atomic()``; single-document state transitions go through
``transition()``, a compare-and-set whose filter carries the expected prior
state.
"""
import logging
import math
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_documents
from errors import Conflict, DispatchError, Internal, NotFound, ValidationFailed
from schemas import Bin, Collector, Truck, WasteRequest

logger = logging.getLogger(__name__)

SCHEMAS = {
    "wasterequest": WasteRequest,
    "bin": Bin,
    "collector": Collector,
    "truck": Truck,
}

LABELS = {
    "wasterequest": "Request",
    "bin": "Bin",
    "collector": "Collector",
    "truck": "Truck",
}

UNIQUE_FIELDS = {
    "truck": ("plate_number",),
    "collector": ("email", "driver_license"),
}


# ------------------------
# Helpers
# ------------------------
class PyObjectId(ObjectId):
    @classmethod
    def validate(cls, v):
        if isinstance(v, ObjectId):
            return v
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid ObjectId")
        return ObjectId(v)


def parse_id(value, label: str = "Document") -> ObjectId:
    """An id that is not even well-formed cannot resolve to anything."""
    try:
        return PyObjectId.validate(value)
    except (TypeError, ValueError):
        raise NotFound(f"{label} not found")


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    # convert datetimes to isoformat
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        if isinstance(v, list):
            doc[k] = [serialize_doc(i) if isinstance(i, dict) else i for i in v]
        if isinstance(v, dict):
            doc[k] = serialize_doc(v)
    return doc


def validate_document(name: str, data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return SCHEMAS[name].model_validate(data).model_dump()
    except ValidationError as exc:
        raise ValidationFailed.from_pydantic(exc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityStore:
    """CRUD over the dispatch collections.

    Args:
        db: a pymongo ``Database`` (or anything with the same surface).
        use_transactions: run each ``atomic()`` unit inside a Mongo
            multi-document transaction. Needs a replica set.
    """

    def __init__(self, db, use_transactions: bool = False) -> None:
        self.db = db
        self.use_transactions = use_transactions
        self._lock = threading.RLock()
        self._local = threading.local()

    # ------------------------
    # Atomic units
    # ------------------------
    @contextmanager
    def atomic(self):
        """Serialise a unit of work; nested units join the outermost one."""
        with self._lock:
            depth = getattr(self._local, "depth", 0)
            self._local.depth = depth + 1
            try:
                if depth:
                    yield
                elif self.use_transactions:
                    with self._storage_errors():
                        with self.db.client.start_session() as session:
                            with session.start_transaction():
                                self._local.session = session
                                try:
                                    yield
                                finally:
                                    self._local.session = None
                else:
                    with self._storage_errors():
                        yield
            finally:
                self._local.depth = depth

    @contextmanager
    def _storage_errors(self):
        try:
            yield
        except DispatchError:
            raise
        except PyMongoError as exc:
            logger.exception("Storage failure")
            raise Internal("Storage failure", cause=exc) from exc

    @contextmanager
    def _reading(self):
        with self._lock:
            if getattr(self._local, "depth", 0):
                yield
            else:
                with self._storage_errors():
                    yield

    def _local_session(self):
        return getattr(self._local, "session", None)

    def _kw(self) -> Dict[str, Any]:
        session = self._local_session()
        return {"session": session} if session is not None else {}

    def collection(self, name: str):
        if self.db is None:
            raise Internal("Database not configured")
        return self.db[name]

    # ------------------------
    # Reads
    # ------------------------
    def get_by_id(self, name: str, doc_id) -> Dict[str, Any]:
        oid = parse_id(doc_id, LABELS[name])
        with self._reading():
            doc = self.collection(name).find_one({"_id": oid}, **self._kw())
        if not doc:
            raise NotFound(f"{LABELS[name]} not found")
        return doc

    def find_one(self, name: str, filter_dict: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._reading():
            return self.collection(name).find_one(filter_dict, **self._kw())

    def find(self, name: str, filter_dict: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._reading():
            self.collection(name)
            return get_documents(self.db, name, filter_dict, session=self._local_session())

    def find_by_ids(self, name: str, ids: Iterable[str]) -> List[Dict[str, Any]]:
        oids = [ObjectId(i) for i in ids if ObjectId.is_valid(i)]
        if not oids:
            return []
        return self.find(name, {"_id": {"$in": oids}})

    def count(self, name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        with self._reading():
            return self.collection(name).count_documents(filter_dict or {}, **self._kw())

    def aggregate(self, name: str, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        with self._reading():
            return list(self.collection(name).aggregate(pipeline, **self._kw()))

    def list(self, name: str, filter_dict: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 10,
             sort_by: str = "created_at", sort_order: str = "desc") -> Dict[str, Any]:
        """One page of documents plus pagination metadata."""
        page = max(1, int(page))
        limit = max(1, min(100, int(limit)))
        skip = (page - 1) * limit
        direction = DESCENDING if sort_order == "desc" else ASCENDING
        filter_dict = filter_dict or {}
        with self._reading():
            coll = self.collection(name)
            items = list(coll.find(filter_dict, **self._kw()).sort(sort_by, direction).skip(skip).limit(limit))
            total = coll.count_documents(filter_dict, **self._kw())
        return {
            "items": items,
            "pagination": {
                "current_page": page,
                "total_pages": math.ceil(total / limit) if total else 0,
                "total": total,
                "has_next": skip + len(items) < total,
                "has_prev": page > 1,
            },
        }

    # ------------------------
    # Writes
    # ------------------------
    def create(self, name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = validate_document(name, data)
        with self.atomic():
            self._check_unique(name, doc)
            self.collection(name)
            try:
                new_id = create_document(self.db, name, doc, session=self._local_session())
            except DuplicateKeyError:
                raise Conflict(f"{LABELS[name]} already exists")
            return self.get_by_id(name, new_id)

    def update(self, name: str, doc_id, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``patch`` without touching any field it does not name."""
        with self.atomic():
            existing = self.get_by_id(name, doc_id)
            if not patch:
                return existing
            merged = {k: v for k, v in existing.items() if k != "_id"}
            merged.update(patch)
            validated = validate_document(name, merged)
            changes = {k: validated[k] for k in patch if k in validated}
            self._check_unique(name, changes, exclude_id=existing["_id"])
            changes["updated_at"] = utcnow()
            try:
                return self.collection(name).find_one_and_update(
                    {"_id": existing["_id"]},
                    {"$set": changes},
                    return_document=ReturnDocument.AFTER,
                    **self._kw(),
                )
            except DuplicateKeyError:
                raise Conflict(f"{LABELS[name]} already exists")

    def transition(self, name: str, doc_id, expected: Dict[str, Any], changes: Dict[str, Any],
                   extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Compare-and-set: apply ``changes`` only if the document still matches
        ``expected``. Returns the updated document, or None if the precondition
        no longer holds (or the document is gone)."""
        oid = parse_id(doc_id, LABELS[name])
        ops: Dict[str, Any] = {"$set": dict(changes, updated_at=utcnow())}
        if extra:
            ops.update(extra)
        with self.atomic():
            return self.collection(name).find_one_and_update(
                dict(expected, _id=oid),
                ops,
                return_document=ReturnDocument.AFTER,
                **self._kw(),
            )

    def delete(self, name: str, doc_id, expected: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Remove a document, optionally only while it still matches ``expected``."""
        oid = parse_id(doc_id, LABELS[name])
        with self.atomic():
            coll = self.collection(name)
            doc = coll.find_one_and_delete(dict(expected or {}, _id=oid), **self._kw())
            if not doc and expected and coll.find_one({"_id": oid}, **self._kw()):
                raise Conflict(f"{LABELS[name]} changed concurrently")
        if not doc:
            raise NotFound(f"{LABELS[name]} not found")
        return doc

    def _check_unique(self, name: str, values: Dict[str, Any], exclude_id: Optional[ObjectId] = None) -> None:
        for field in UNIQUE_FIELDS.get(name, ()):
            if values.get(field) is None:
                continue
            query: Dict[str, Any] = {field: values[field]}
            if exclude_id is not None:
                query["_id"] = {"$ne": exclude_id}
            if self.collection(name).find_one(query, **self._kw()):
                raise Conflict(f"{LABELS[name]} with this {field.replace('_', ' ')} already exists")
