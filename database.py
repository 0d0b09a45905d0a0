"""
MongoDB access for the coffee shop backend.

`db` is a module level handle to the configured database, or None when
DATABASE_URL / DATABASE_NAME are not set. Routes receive it through the
`get_db` dependency so tests can swap in another database.
"""
import os
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))
MONGO_TRANSACTIONS = os.getenv("MONGO_TRANSACTIONS", "false").lower() in ("1", "true", "yes")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_db():
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data, database=None) -> str:
    """Insert a document (dict or pydantic model) stamped with created_at/updated_at."""
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, database=None):
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    database["product"].create_index([("name", ASCENDING)], unique=True)
    database["product"].create_index([("category", ASCENDING)])
    database["product"].create_index([("price", ASCENDING)])
    database["product"].create_index([("featured", ASCENDING)])
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["inventoryrecord"].create_index([("product", ASCENDING), ("created_at", DESCENDING)])
    database["inventoryrecord"].create_index([("product", ASCENDING), ("sequence", ASCENDING)], unique=True)
    database["inventoryrecord"].create_index([("operator", ASCENDING)])
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING)])


def sort_spec(sort: Optional[str], allowed, default):
    """Turn "price,-name" into a pymongo sort list, ignoring unknown fields."""
    if not sort:
        return default
    spec = []
    for field in sort.split(","):
        field = field.strip()
        direction = ASCENDING
        if field.startswith("-"):
            field, direction = field[1:], DESCENDING
        if field in allowed:
            spec.append((field, direction))
    return spec or default


def to_str_id(doc):
    if doc is None:
        return None
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d
