"""
MongoDB access for the drone services API.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; routes call
ensure_db() before touching it. Documents are plain dicts, collection names
are the lowercased schema class names (Booking -> "booking").
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import ValidationError, PersistenceError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db = None
if DATABASE_URL and DATABASE_NAME:
    try:
        _client = MongoClient(DATABASE_URL)
        db = _client[DATABASE_NAME]
    except Exception:
        logger.exception("Could not create MongoDB client")
        db = None


def utcnow() -> datetime:
    # Naive UTC, which is what pymongo hands back for stored dates
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def ensure_db():
    if db is None:
        raise PersistenceError("Database not configured")


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id")


def with_id(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    ensure_db()
    if isinstance(data, BaseModel):
        data = data.model_dump()
    else:
        data = dict(data)
    now = utcnow()
    data.setdefault("created_at", now)
    data["updated_at"] = now
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def parse_sort(sort: str, allowed: List[str], default: str = "created_at"):
    """Turn "-created_at" style sort strings into a pymongo sort spec."""
    direction = ASCENDING
    field = sort or ""
    if field.startswith("-"):
        direction = DESCENDING
        field = field[1:]
    if field not in allowed:
        return [(default, DESCENDING)]
    return [(field, direction)]


def paginate(page: int, limit: int, total: int) -> dict:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_count": total,
        "limit": limit,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def ensure_indexes():
    if db is None:
        return
    try:
        db["booking"].create_index([("email", ASCENDING), ("date", ASCENDING)])
        db["booking"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
        db["booking"].create_index("mission_id")
        db["invitation"].create_index("token", unique=True)
        db["invitation"].create_index([("email", ASCENDING), ("status", ASCENDING)])
        db["invitation"].create_index("expires_at")
        db["user"].create_index("email")
        db["promo"].create_index([("start_date", ASCENDING), ("end_date", ASCENDING), ("is_active", ASCENDING)])
    except Exception:
        logger.exception("Index creation failed")
