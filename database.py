"""
MongoDB access

`db` is the configured database handle, or None when DATABASE_URL is not set.
Helpers accept an explicit `database` so request handlers and tests can pass
their own handle.
"""
import os
from typing import Any, Dict, Optional, Union

import structlog
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, TEXT, MongoClient

from schemas import utcnow

logger = structlog.get_logger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "shop")

client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def _resolve(database):
    database = database if database is not None else db
    if database is None:
        raise RuntimeError("Database not configured")
    return database


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    """Insert one document stamped with created_at/updated_at and return its id."""
    database = _resolve(database)
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database=None):
    database = _resolve(database)
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database=None):
    database = _resolve(database)
    database["user"].create_index("email", unique=True)
    database["category"].create_index("slug", unique=True)
    database["cart"].create_index("user", unique=True)
    product = database["product"]
    product.create_index("sku", unique=True)
    product.create_index("category")
    product.create_index("price")
    product.create_index([("ratings.average", DESCENDING)])
    product.create_index([("created_at", DESCENDING)])
    product.create_index([("inventory.quantity", ASCENDING)])
    product.create_index([("name", TEXT), ("description", TEXT)])
    logger.info("indexes_ensured", database=database.name)
