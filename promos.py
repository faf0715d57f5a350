"""
Promo lifecycle.

A promo is a time-boxed percentage discount. Active promos never overlap, so
at any moment there is at most one promo in effect.
"""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from bookings import PACKAGE_PRICES, sanitize
from database import create_document, db, ensure_db, oid, paginate, to_utc_naive, utcnow, with_id
from errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from schemas import Promo, PromoCreateRequest, PromoUpdateRequest

logger = logging.getLogger(__name__)

PROMO_STATUSES = ["active", "inactive", "expired", "upcoming"]


def calculate_discounted_price(price, discount_percentage) -> int:
    """Price after discount, rounded half up to a whole amount."""
    price = Decimal(str(price))
    discount = price * Decimal(str(discount_percentage)) / Decimal(100)
    return int((price - discount).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def is_currently_active(promo: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return bool(promo.get("is_active")) and promo["start_date"] <= now <= promo["end_date"]


def serialize(promo: dict) -> dict:
    doc = with_id(dict(promo))
    doc["is_currently_active"] = is_currently_active(promo)
    return doc


def _check_discount(value):
    if value is None or value < 1 or value > 100:
        raise ValidationError("Discount percentage must be between 1 and 100")


def _check_window(start: datetime, end: datetime):
    if end <= start:
        raise ValidationError("End date must be after start date")


def find_overlapping(start: datetime, end: datetime, exclude_id=None) -> Optional[dict]:
    query = {"is_active": True, "start_date": {"$lte": end}, "end_date": {"$gte": start}}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return db["promo"].find_one(query)


def _reject_overlap(start: datetime, end: datetime, exclude_id=None):
    if find_overlapping(start, end, exclude_id):
        raise ConflictError("There is already an active promo during this time period", title="Promo overlap")


def create_promo(payload: PromoCreateRequest, created_by: str) -> dict:
    ensure_db()
    if not payload.name or payload.discount_percentage is None or not payload.start_date or not payload.end_date:
        raise ValidationError("All fields are required")
    _check_discount(payload.discount_percentage)
    start = to_utc_naive(payload.start_date)
    end = to_utc_naive(payload.end_date)
    _check_window(start, end)
    if payload.is_active:
        _reject_overlap(start, end)

    promo = Promo(
        name=sanitize(payload.name),
        description=sanitize(payload.description) if payload.description else None,
        discount_percentage=payload.discount_percentage,
        start_date=start,
        end_date=end,
        is_active=payload.is_active,
        created_by=created_by,
    )
    try:
        promo_id = create_document("promo", promo)
    except PyMongoError:
        logger.exception("Promo insert failed")
        raise PersistenceError("Failed to create promo")
    logger.info(f"Promo '{promo.name}' ({promo.discount_percentage}%) created by {created_by}")
    return serialize(db["promo"].find_one({"_id": oid(promo_id)}))


def list_promos(status: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
    ensure_db()
    if page < 1 or limit < 1 or limit > 100:
        raise ValidationError("Page must be 1 or greater and limit between 1 and 100")
    now = utcnow()
    if status == "active":
        query = {"is_active": True, "start_date": {"$lte": now}, "end_date": {"$gte": now}}
    elif status == "inactive":
        query = {"is_active": False}
    elif status == "expired":
        query = {"is_active": True, "end_date": {"$lt": now}}
    elif status == "upcoming":
        query = {"is_active": True, "start_date": {"$gt": now}}
    elif status:
        raise ValidationError("Status must be one of: " + ", ".join(PROMO_STATUSES))
    else:
        query = {}
    total = db["promo"].count_documents(query)
    cursor = db["promo"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {"promos": [serialize(p) for p in cursor], "pagination": paginate(page, limit, total)}


def get_promo(promo_id: str) -> dict:
    ensure_db()
    promo = db["promo"].find_one({"_id": oid(promo_id)})
    if not promo:
        raise NotFoundError("Promo not found")
    return serialize(promo)


def update_promo(promo_id: str, payload: PromoUpdateRequest, updated_by: str) -> dict:
    ensure_db()
    _id = oid(promo_id)
    promo = db["promo"].find_one({"_id": _id})
    if not promo:
        raise NotFoundError("Promo not found")
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("At least one field must be provided for update")

    sets = {}
    if "name" in fields:
        if not fields["name"]:
            raise ValidationError("Name cannot be empty")
        sets["name"] = sanitize(fields["name"])
    if "description" in fields:
        sets["description"] = sanitize(fields["description"])
    if "discount_percentage" in fields:
        _check_discount(fields["discount_percentage"])
        sets["discount_percentage"] = fields["discount_percentage"]
    for key in ("start_date", "end_date"):
        if fields.get(key) is not None:
            sets[key] = to_utc_naive(fields[key])
    if fields.get("is_active") is not None:
        sets["is_active"] = fields["is_active"]

    start = sets.get("start_date", promo["start_date"])
    end = sets.get("end_date", promo["end_date"])
    _check_window(start, end)
    if sets.get("is_active", promo.get("is_active")):
        _reject_overlap(start, end, exclude_id=_id)

    sets["updated_at"] = utcnow()
    db["promo"].update_one({"_id": _id}, {"$set": sets})
    logger.info(f"Promo {promo_id} updated by {updated_by}")
    return serialize(db["promo"].find_one({"_id": _id}))


def delete_promo(promo_id: str, deleted_by: str) -> dict:
    ensure_db()
    _id = oid(promo_id)
    promo = db["promo"].find_one({"_id": _id})
    if not promo:
        raise NotFoundError("Promo not found")
    db["promo"].delete_one({"_id": _id})
    logger.info(f"Promo {promo_id} deleted by {deleted_by}")
    return serialize(promo)


def get_active_promo(now: Optional[datetime] = None) -> Optional[dict]:
    ensure_db()
    now = now or utcnow()
    return db["promo"].find_one(
        {"is_active": True, "start_date": {"$lte": now}, "end_date": {"$gte": now}},
        sort=[("created_at", DESCENDING)],
    )


def active_promo_summary() -> dict:
    promo = get_active_promo()
    pricing = {}
    for package, price in PACKAGE_PRICES.items():
        pricing[package] = {
            "original": price,
            "discounted": calculate_discounted_price(price, promo["discount_percentage"]) if promo else price,
        }
    if not promo:
        return {"has_active_promo": False, "promo": None, "pricing": pricing}
    return {
        "has_active_promo": True,
        "promo": {
            "id": str(promo["_id"]),
            "name": promo["name"],
            "description": promo.get("description"),
            "discount_percentage": promo["discount_percentage"],
            "start_date": promo["start_date"],
            "end_date": promo["end_date"],
            "is_currently_active": True,
        },
        "pricing": pricing,
    }
