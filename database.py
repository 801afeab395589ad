"""
Database access helpers

A single MongoDB database handle shared by the whole app. Collections are
named after the lowercased schema class (User -> "user", Car -> "car", ...).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import Config

logger = logging.getLogger(__name__)

client = None
db = None

if Config.DATABASE_URL:
    try:
        client = MongoClient(Config.DATABASE_URL)
        db = client[Config.DATABASE_NAME]
    except Exception as e:
        logger.error(f"Failed to initialize database client: {e}")
        client = None
        db = None


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def now() -> datetime:
    # Naive UTC, which is what pymongo hands back on reads
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(value: str, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(value)


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True)
    database["chat"].create_index("chat_id", unique=True)
    database["chat"].create_index([("participants", ASCENDING), ("type", ASCENDING)])
    database["review"].create_index("booking_id", unique=True)
    database["review"].create_index([("car_id", ASCENDING), ("created_at", DESCENDING)])
    database["booking"].create_index([("car_id", ASCENDING), ("status", ASCENDING)])
    database["booking"].create_index("user_id")
    database["message"].create_index([("chat_id", ASCENDING), ("created_at", DESCENDING)])


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id")) if doc.get("_id") else None
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = isoformat(v)
        elif isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc
