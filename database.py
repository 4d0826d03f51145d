"""
Database Helper Functions

MongoDB helpers shared by the services. Every helper takes the Database
handle explicitly; the handle itself is created once per process by
`connect()` and injected into the services.
"""

from datetime import datetime, timezone
import logging
from typing import Union, Optional, Dict, Any, List

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database

logger = logging.getLogger(__name__)

# Collection names follow the schema class names, lowercased
PRODUCTS = "product"
CATEGORIES = "category"
ORDERS = "order"
USERS = "user"


def connect(database_url: str, database_name: str) -> Database:
    client = MongoClient(database_url, serverSelectionTimeoutMS=5000, tz_aware=True)
    return client[database_name]


def ensure_indexes(db: Database) -> None:
    db[PRODUCTS].create_index([("productId", ASCENDING)], unique=True)
    db[PRODUCTS].create_index([("externalCloverId", ASCENDING)], unique=True, sparse=True)
    db[CATEGORIES].create_index([("name", ASCENDING)], unique=True)
    db[CATEGORIES].create_index([("cloverId", ASCENDING)], unique=True, sparse=True)
    db[ORDERS].create_index([("userId", ASCENDING)])
    logger.info("Database indexes ensured on %s", db.name)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId, None]) -> Optional[ObjectId]:
    """Parse an id coming from the outside; None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def _to_dict(data: Union[BaseModel, dict]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


# CRUD helpers

def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    payload = _to_dict(data)
    now = utcnow()
    payload['created_at'] = now
    payload['updated_at'] = now
    result = db[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: Optional[list] = None,
                  skip: Optional[int] = None) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(int(skip))
    if limit:
        cursor = cursor.limit(int(limit))
    return [serialize_doc(doc) for doc in cursor]


def get_raw_by_id(db: Database, collection_name: str, _id: Union[str, ObjectId]) -> Optional[dict]:
    oid = to_object_id(_id)
    if oid is None:
        return None
    return db[collection_name].find_one({"_id": oid})


def get_document_by_id(db: Database, collection_name: str, _id: Union[str, ObjectId]) -> Optional[dict]:
    return serialize_doc(get_raw_by_id(db, collection_name, _id))


def update_document(db: Database, collection_name: str, _id: Union[str, ObjectId], update_data: Dict[str, Any]) -> bool:
    oid = to_object_id(_id)
    if oid is None:
        return False
    update = {"$set": _to_dict(update_data)}
    update["$set"]["updated_at"] = utcnow()
    result = db[collection_name].update_one({"_id": oid}, update)
    return result.matched_count > 0


def delete_document(db: Database, collection_name: str, _id: Union[str, ObjectId]) -> bool:
    oid = to_object_id(_id)
    if oid is None:
        return False
    result = db[collection_name].delete_one({"_id": oid})
    return result.deleted_count > 0


# Utility

def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    """Convert ObjectIds (top level, nested lists and dicts) to strings."""
    if not doc:
        return None
    return _serialize(doc)


def _serialize(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value
