"""
Database helpers

The MongoDB handle is built from the environment and handed to the
application explicitly; nothing in the dispatch core reaches for a global.

Collections (lowercased schema class names):
- WasteRequest -> "wasterequest"
- Bin -> "bin"
- Collector -> "collector"
- Truck -> "truck"
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient


def get_database(url: Optional[str] = None, name: Optional[str] = None):
    """Connect using DATABASE_URL / DATABASE_NAME. Returns None when unset."""
    url = url or os.getenv("DATABASE_URL")
    name = name or os.getenv("DATABASE_NAME")
    if not url or not name:
        return None
    client = MongoClient(url, tz_aware=True)
    return client[name]


def transactions_enabled() -> bool:
    return os.getenv("MONGO_TRANSACTIONS", "0").lower() in ("1", "true", "yes")


def _session_kwargs(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


def create_document(db, collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict, **_session_kwargs(session))
    return str(result.inserted_id)


def get_documents(db, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, session=None) -> List[Dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    cursor = db[collection_name].find(filter_dict or {}, **_session_kwargs(session))
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(db) -> None:
    db["truck"].create_index([("plate_number", ASCENDING)], unique=True)
    db["truck"].create_index([("assigned_to", ASCENDING)])
    db["truck"].create_index([("status", ASCENDING)])
    db["collector"].create_index([("email", ASCENDING)], unique=True)
    db["collector"].create_index([("driver_license", ASCENDING)], unique=True)
    db["collector"].create_index([("city", ASCENDING), ("status", ASCENDING)])
    db["bin"].create_index([("city", ASCENDING), ("status", ASCENDING)])
    db["bin"].create_index([("assigned_to", ASCENDING)])
    db["bin"].create_index([("request_id", ASCENDING)])
    db["bin"].create_index([("reported_at", DESCENDING)])
    db["wasterequest"].create_index([("user_id", ASCENDING)])
    db["wasterequest"].create_index([("status", ASCENDING)])
    db["wasterequest"].create_index([("category", ASCENDING)])
