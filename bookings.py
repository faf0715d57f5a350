"""
Booking record lifecycle.

Customer bookings come from the public form and must identify the customer
and respect the advance-notice rule. Missions (source zeitview/manual) are
staff-entered work and are exempt from both.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from pydantic import ValidationError as SchemaError
from pymongo.errors import DuplicateKeyError, PyMongoError

import emails
from config import BOOKING_MIN_ADVANCE_DAYS
from database import (
    create_document,
    db,
    ensure_db,
    oid,
    paginate,
    parse_sort,
    to_utc_naive,
    utcnow,
    with_id,
)
from errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from schemas import (
    BOOKING_STATUSES,
    PACKAGES,
    SERVICES,
    Booking,
    BookingRequest,
    BookingUpdate,
    MissionRequest,
    StatusChange,
)

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[\d\s\-()]{10,}$")
TAG_RE = re.compile(r"<[^>]*>")
MISSION_ID_RE = re.compile(r"^DBM\d+$")

PACKAGE_PRICES = {"basic": 199, "standard": 399, "premium": 799}
MISSION_SOURCES = ["zeitview", "manual"]

# Identity placeholders for missions, which have no customer
MISSION_NAME = "Mission"
MISSION_EMAIL = "missions@no-reply.invalid"
MISSION_PHONE = "0000000000"

MAX_LOCATION = 200
MAX_DETAILS = 1000
MAX_NAME = 100
MAX_ADMIN_NOTES = 500

CUSTOMER_SOURCE = {"$nin": MISSION_SOURCES}


def sanitize(value):
    if not isinstance(value, str):
        return value
    return TAG_RE.sub("", value.strip())


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value))


def duration_label(booking: dict) -> str:
    if booking.get("duration"):
        return booking["duration"]
    return emails.PACKAGE_DURATIONS.get(booking.get("package"), "To be determined")


def _check_lengths(location: str, details: str, name: Optional[str]):
    if len(location) > MAX_LOCATION:
        raise ValidationError(f"Location cannot exceed {MAX_LOCATION} characters")
    if len(details) > MAX_DETAILS:
        raise ValidationError(f"Details cannot exceed {MAX_DETAILS} characters")
    if name is not None and len(name) > MAX_NAME:
        raise ValidationError(f"Name cannot exceed {MAX_NAME} characters")


def _check_service(service: Optional[str], package: Optional[str]):
    if service not in SERVICES:
        raise ValidationError("Please select a valid service type", title="Invalid service")
    if package and package not in PACKAGES:
        raise ValidationError("Please select a valid package type", title="Invalid package")


def validate_customer_booking(payload: BookingRequest, now: Optional[datetime] = None) -> dict:
    """Validate a public booking submission and return the cleaned fields."""
    if not all([payload.service, payload.date, payload.location, payload.name, payload.email, payload.phone]):
        raise ValidationError("Please fill in all required fields", title="Missing required fields")

    data = {
        "service": sanitize(payload.service),
        "package": sanitize(payload.package) or None,
        "location": sanitize(payload.location),
        "details": sanitize(payload.details) or "",
        "duration": sanitize(payload.duration) or None,
        "name": sanitize(payload.name),
        "email": sanitize(payload.email).lower(),
        "phone": sanitize(payload.phone),
    }

    if not is_valid_email(data["email"]):
        raise ValidationError("Please provide a valid email address", title="Invalid email")
    if not PHONE_RE.match(data["phone"]):
        raise ValidationError("Please provide a valid phone number", title="Invalid phone number")

    date = to_utc_naive(payload.date)
    min_date = (now or utcnow()) + timedelta(days=BOOKING_MIN_ADVANCE_DAYS)
    if date < min_date:
        raise ValidationError(
            f"Booking date must be at least {BOOKING_MIN_ADVANCE_DAYS} days from today", title="Invalid date"
        )
    data["date"] = date

    _check_service(data["service"], data["package"])
    if not data["location"] or not data["name"]:
        raise ValidationError("Please fill in all required fields", title="Missing required fields")
    _check_lengths(data["location"], data["details"], data["name"])
    data["estimated_price"] = PACKAGE_PRICES.get(data["package"])
    return data


def find_same_day_booking(email: str, date: datetime) -> Optional[dict]:
    start = date.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return db["booking"].find_one({
        "email": email,
        "source": CUSTOMER_SOURCE,
        "date": {"$gte": start, "$lt": end},
    })


def booking_doc(**fields) -> dict:
    try:
        return Booking(**fields).model_dump(by_alias=True)
    except SchemaError as exc:
        raise ValidationError(exc.errors()[0]["msg"])


def _insert(doc: dict) -> str:
    try:
        return create_document("booking", doc)
    except DuplicateKeyError:
        raise ConflictError("A booking with similar details already exists", title="Duplicate booking")
    except PyMongoError:
        logger.exception("Booking insert failed")
        raise PersistenceError("Something went wrong while processing your booking. Please try again.")


def create_booking(payload: BookingRequest, ip_address: Optional[str] = None,
                   user_agent: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    ensure_db()
    data = validate_customer_booking(payload, now=now)

    if find_same_day_booking(data["email"], data["date"]):
        raise ConflictError(
            "You already have a booking for this date. Please choose a different date.",
            title="Duplicate booking",
        )

    doc = booking_doc(source="customer", status="pending", ip_address=ip_address, user_agent=user_agent, **data)
    booking_id = _insert(doc)
    doc["_id"] = booking_id
    logger.info(f"Booking {booking_id} created for {data['email']} ({data['service']})")

    user = db["user"].find_one({"email": data["email"]})
    has_account = user is not None
    email_sent = False
    if has_account:
        if user.get("notifications", {}).get("booking_confirmations", True):
            email_sent = emails.send_booking_confirmation(doc, has_account=True)
    else:
        email_sent = emails.send_booking_confirmation(doc, has_account=False)

    message = "Booking submitted successfully! We will contact you soon to confirm the details."
    if email_sent:
        message += " A confirmation email has been sent."
    return {
        "success": True,
        "message": message,
        "booking": {
            "id": booking_id,
            "service": doc["service"],
            "date": doc["date"],
            "location": doc["location"],
            "status": doc["status"],
            "estimated_price": doc["estimated_price"],
        },
        "has_account": has_account,
        "email_sent": email_sent,
    }


def _non_negative(value, label: str):
    if value is not None and value < 0:
        raise ValidationError(f"{label} must be a positive number")
    return value


def create_mission(payload: MissionRequest, created_by: str) -> dict:
    ensure_db()
    source = payload.source or "manual"
    if source not in MISSION_SOURCES:
        raise ValidationError(f"Mission source must be one of: {', '.join(MISSION_SOURCES)}")
    if not payload.service or not payload.date or not payload.location:
        raise ValidationError("Service, date and location are required", title="Missing required fields")

    service = sanitize(payload.service)
    package = sanitize(payload.package) or None
    _check_service(service, package)
    location = sanitize(payload.location)
    details = sanitize(payload.details) or ""
    name = sanitize(payload.name) or MISSION_NAME
    _check_lengths(location, details, name)

    email = (sanitize(payload.email) or MISSION_EMAIL).lower()
    if not is_valid_email(email):
        raise ValidationError("Please provide a valid email address", title="Invalid email")

    status = payload.status or "pending"
    if status not in BOOKING_STATUSES:
        raise ValidationError("Status must be one of: " + ", ".join(BOOKING_STATUSES), title="Invalid status")

    mission_id = sanitize(payload.mission_id) or None
    if mission_id:
        if not MISSION_ID_RE.match(mission_id):
            raise ValidationError("Mission ID must follow the format DBM followed by digits")
        if db["booking"].find_one({"mission_id": mission_id}):
            raise ConflictError(f"Mission {mission_id} already exists", title="Duplicate mission")

    doc = booking_doc(
        source=source,
        mission_id=mission_id,
        service=service,
        package=package,
        date=to_utc_naive(payload.date),
        location=location,
        details=details,
        name=name,
        email=email,
        phone=sanitize(payload.phone) or MISSION_PHONE,
        estimated_price=PACKAGE_PRICES.get(package),
        payout=_non_negative(payload.payout, "Payout"),
        travel_distance=_non_negative(payload.travel_distance, "Travel distance"),
        travel_time=_non_negative(payload.travel_time, "Travel time"),
        coordinates=payload.coordinates,
        accepted_at=to_utc_naive(payload.accepted_at) if payload.accepted_at else None,
        status=status,
        created_by=created_by,
    )
    booking_id = _insert(doc)
    logger.info(f"Mission {mission_id or booking_id} ({source}) created by {created_by}")
    return with_id(db["booking"].find_one({"_id": oid(booking_id)}))


def build_filter(status: Optional[str] = None, service: Optional[str] = None, source: Optional[str] = None,
                 email: Optional[str] = None, date_from: Optional[datetime] = None,
                 date_to: Optional[datetime] = None) -> dict:
    query = {}
    if status:
        query["status"] = status
    if service:
        query["service"] = service
    if source == "customer":
        query["source"] = CUSTOMER_SOURCE
    elif source:
        query["source"] = source
    if email:
        query["email"] = {"$regex": re.escape(email), "$options": "i"}
    if date_from or date_to:
        query["date"] = {}
        if date_from:
            query["date"]["$gte"] = to_utc_naive(date_from)
        if date_to:
            query["date"]["$lte"] = to_utc_naive(date_to)
    return query


def _check_page(page: int, limit: int):
    if page < 1:
        raise ValidationError("Page must be 1 or greater")
    if limit < 1 or limit > 100:
        raise ValidationError("Limit must be between 1 and 100")


def _status_stats(match: dict, value_expr) -> dict:
    pipeline = [
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_value": {"$sum": value_expr}}},
    ]
    return {
        row["_id"]: {"count": row["count"], "total_value": row.get("total_value") or 0}
        for row in db["booking"].aggregate(pipeline)
    }


def list_bookings(query: dict, page: int = 1, limit: int = 50, sort: str = "-created_at") -> dict:
    ensure_db()
    _check_page(page, limit)
    try:
        total = db["booking"].count_documents(query)
        cursor = (
            db["booking"].find(query)
            .sort(parse_sort(sort, ["created_at", "date", "status"]))
            .skip((page - 1) * limit)
            .limit(limit)
        )
        bookings = [with_id(d) for d in cursor]
        stats = _status_stats({}, {"$ifNull": ["$estimated_price", 0]})
    except PyMongoError:
        logger.exception("Admin bookings fetch failed")
        raise PersistenceError("Failed to fetch bookings")
    return {"bookings": bookings, "pagination": paginate(page, limit, total), "stats": stats}


def update_booking(booking_id: str, update: BookingUpdate, changed_by: str) -> dict:
    ensure_db()
    _id = oid(booking_id)
    fields = update.model_dump(exclude_unset=True)
    updates = {}

    if "status" in fields:
        if fields["status"] not in BOOKING_STATUSES:
            raise ValidationError("Status must be one of: " + ", ".join(BOOKING_STATUSES), title="Invalid status")
        updates["status"] = fields["status"]
    if "estimated_price" in fields:
        updates["estimated_price"] = _non_negative(fields["estimated_price"], "Estimated price")
    if "final_price" in fields:
        updates["final_price"] = _non_negative(fields["final_price"], "Final price")
    if "admin_notes" in fields:
        notes = fields["admin_notes"]
        if notes is None:
            raise ValidationError("Admin notes must be a string")
        if len(notes) > MAX_ADMIN_NOTES:
            raise ValidationError(f"Admin notes cannot exceed {MAX_ADMIN_NOTES} characters")
        updates["admin_notes"] = notes.strip()

    if not updates:
        raise ValidationError("At least one field must be provided for update", title="No updates provided")

    existing = db["booking"].find_one({"_id": _id})
    if not existing:
        raise NotFoundError("The specified booking does not exist")

    now = utcnow()
    change = {"$set": dict(updates, updated_at=now)}
    # Any status may follow any other; every change is kept in status_history
    if "status" in updates and updates["status"] != existing.get("status"):
        entry = StatusChange.model_validate({
            "from": existing.get("status"),
            "to": updates["status"],
            "changed_by": changed_by,
            "changed_at": now,
        })
        change["$push"] = {"status_history": entry.model_dump(by_alias=True)}
    try:
        db["booking"].update_one({"_id": _id}, change)
    except PyMongoError:
        logger.exception("Booking update failed")
        raise PersistenceError("Failed to update booking")
    logger.info(f"Booking {booking_id} updated by {changed_by}: {sorted(updates)}")
    return {"booking": with_id(db["booking"].find_one({"_id": _id})), "updated_fields": list(updates)}


def delete_booking(booking_id: str, deleted_by: str) -> dict:
    ensure_db()
    _id = oid(booking_id)
    existing = db["booking"].find_one({"_id": _id})
    if not existing:
        raise NotFoundError("The specified booking does not exist")
    db["booking"].delete_one({"_id": _id})
    logger.info(f"Booking {booking_id} deleted by {deleted_by}")
    return with_id(existing)


def user_bookings(email: str, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
    ensure_db()
    _check_page(page, limit)
    base = {"email": email.lower(), "source": CUSTOMER_SOURCE}
    query = dict(base)
    if status:
        if status not in BOOKING_STATUSES:
            raise ValidationError("Status must be one of: " + ", ".join(BOOKING_STATUSES), title="Invalid status")
        query["status"] = status
    total = db["booking"].count_documents(query)
    cursor = db["booking"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    bookings = []
    for d in cursor:
        d.pop("ip_address", None)
        d.pop("user_agent", None)
        d["duration"] = duration_label(d)
        bookings.append(with_id(d))
    stats = _status_stats(base, {"$ifNull": ["$final_price", {"$ifNull": ["$estimated_price", 0]}]})
    return {"bookings": bookings, "pagination": paginate(page, limit, total), "stats": stats}
