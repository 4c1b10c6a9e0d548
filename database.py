"""
Document store access.

Each schema in schemas.py maps to a MongoDB collection named after the lowercased
class name. Cross-document references are stored as plain string ids.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import NotFound, StoreUnavailable

logger = logging.getLogger(__name__)

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = _client[config.DATABASE_NAME]


def get_db() -> Database:
    """Request dependency: the configured database or a 503."""
    if db is None:
        raise StoreUnavailable()
    return db


def utcnow() -> datetime:
    # naive UTC, the form pymongo hands back on read
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Union[str, ObjectId], what: str = "Record") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise NotFound(f"{what} not found")
    return ObjectId(str(value))


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: Optional[list] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(doc) for doc in cursor]


def get_document(database: Database, collection_name: str, doc_id: Union[str, ObjectId],
                 what: str = "Record") -> dict:
    doc = database[collection_name].find_one({"_id": to_object_id(doc_id, what)})
    if doc is None:
        raise NotFound(f"{what} not found")
    return doc


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Turn a raw document into a JSON-friendly dict with a string `id`."""
    if doc is None:
        return None
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc["_id"])
    return out


def ensure_indexes(database: Database) -> None:
    database["trip"].create_index([("trip_id", ASCENDING)], unique=True)
    database["trip"].create_index([("driver_id", ASCENDING), ("status", ASCENDING)])
    database["trip"].create_index([("created_at", DESCENDING)])
    database["ongoingtrip"].create_index([("trip_ref", ASCENDING)], unique=True)
    database["notification"].create_index([("driver_id", ASCENDING), ("created_at", DESCENDING)])
    database["notification"].create_index([("manager_id", ASCENDING), ("created_at", DESCENDING)])
    database["parcel"].create_index([("trip_id", ASCENDING), ("status", ASCENDING)])


class CompensationLog:
    """
    Inverse writes for a multi-document transition.

    The store has no multi-document transactions here, so every successful write
    records how to undo itself. On failure the inverses replay newest first.
    """

    def __init__(self, label: str):
        self.label = label
        self._undo: List[Callable[[], Any]] = []

    def record(self, undo: Callable[[], Any]) -> None:
        self._undo.append(undo)

    def restore(self, collection, filter_dict: Dict, fields: Dict) -> None:
        """Record an undo that sets `fields` back on the documents matching the filter."""
        self.record(lambda: collection.update_many(filter_dict, {"$set": fields}))

    def delete(self, collection, doc_id: ObjectId) -> None:
        self.record(lambda: collection.delete_one({"_id": doc_id}))

    def rollback(self) -> None:
        while self._undo:
            undo = self._undo.pop()
            try:
                undo()
            except Exception:
                # keep unwinding, the caller still gets the first error
                logger.exception(f"Compensating write failed during {self.label}")


@contextmanager
def compensating(label: str):
    log = CompensationLog(label)
    try:
        yield log
    except Exception as e:
        logger.warning(f"Rolling back {label}: {e}")
        log.rollback()
        raise
