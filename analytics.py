import logging
from datetime import datetime, timedelta
from typing import Optional

from pymongo.errors import PyMongoError

from bookings import MISSION_SOURCES
from database import db, ensure_db, to_utc_naive, utcnow
from errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

SERVICE_NAMES = {
    "aerial-photography": "Aerial Photography",
    "drone-videography": "Drone Videography",
    "mapping-surveying": "Mapping & Surveying",
    "real-estate": "Real Estate",
    "inspection": "Inspection",
    "event-coverage": "Event Coverage",
    "custom": "Custom",
}
MONTHS = ["", "Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90, "365d": 365}

PAYOUT = {"$ifNull": ["$payout", 0]}


def _label(value: Optional[str]) -> str:
    return (value or "unknown").replace("-", " ").title()


def _breakdown(field: str):
    return list(db["booking"].aggregate([
        {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
    ]))


def booking_analytics(now: Optional[datetime] = None) -> dict:
    ensure_db()
    now = now or utcnow()
    try:
        total = db["booking"].count_documents({})
        totals = list(db["booking"].aggregate([
            {"$group": {"_id": None, "total": {"$sum": PAYOUT}, "avg": {"$avg": PAYOUT}}},
        ]))
        recent = list(
            db["booking"].find(
                {}, {"service": 1, "location": 1, "status": 1, "created_at": 1, "name": 1, "email": 1, "source": 1}
            ).sort("created_at", -1).limit(10)
        )
        services = _breakdown("service")
        statuses = _breakdown("status")
        sources = _breakdown("source")
        locations = list(db["booking"].aggregate([
            {"$match": {"location": {"$exists": True, "$ne": ""}}},
            {"$group": {"_id": "$location", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": 10},
        ]))
        monthly = list(db["booking"].aggregate([
            {"$match": {"created_at": {"$gte": now - timedelta(days=183)}}},
            {"$group": {
                "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
                "bookings": {"$sum": 1},
                "revenue": {"$sum": PAYOUT},
            }},
            {"$sort": {"_id.year": 1, "_id.month": 1}},
        ]))
    except PyMongoError:
        logger.exception("Booking analytics query failed")
        raise PersistenceError("Failed to fetch analytics data")

    summary = totals[0] if totals else {}
    for doc in recent:
        doc["id"] = str(doc.pop("_id"))
    return {
        "total_stats": {
            "total_bookings": total,
            "total_revenue": summary.get("total") or 0,
            "avg_payout": int(round(summary.get("avg") or 0)),
        },
        "recent_activity": recent,
        "service_breakdown": [
            {
                "service": SERVICE_NAMES.get(row["_id"], row["_id"]),
                "count": row["count"],
                "percentage": int(round(row["count"] / total * 100)) if total else 0,
            }
            for row in services
        ],
        "status_breakdown": [{"status": _label(row["_id"]), "count": row["count"]} for row in statuses],
        "source_breakdown": [{"source": _label(row["_id"]), "count": row["count"]} for row in sources],
        "location_stats": [{"location": row["_id"], "count": row["count"]} for row in locations],
        "monthly_stats": [
            {
                "month": MONTHS[row["_id"]["month"]],
                "year": row["_id"]["year"],
                "bookings": row["bookings"],
                "revenue": row["revenue"],
            }
            for row in monthly
        ],
    }


def mission_window(start_date: Optional[datetime], end_date: Optional[datetime], period: str = "30d",
                   now: Optional[datetime] = None):
    if start_date or end_date:
        return (to_utc_naive(start_date) if start_date else None, to_utc_naive(end_date) if end_date else None)
    if period not in PERIOD_DAYS:
        raise ValidationError("Period must be one of: " + ", ".join(PERIOD_DAYS))
    end = now or utcnow()
    return end - timedelta(days=PERIOD_DAYS[period]), end


def mission_analytics(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                      period: str = "30d", source: Optional[str] = None, status: Optional[str] = None,
                      now: Optional[datetime] = None) -> dict:
    ensure_db()
    start, end = mission_window(start_date, end_date, period, now)
    match = {"source": {"$in": MISSION_SOURCES}}
    if source:
        if source not in MISSION_SOURCES:
            raise ValidationError("Source must be one of: " + ", ".join(MISSION_SOURCES))
        match["source"] = source
    if status:
        match["status"] = status
    if start or end:
        match["date"] = {}
        if start:
            match["date"]["$gte"] = start
        if end:
            match["date"]["$lte"] = end

    try:
        summary_rows = list(db["booking"].aggregate([
            {"$match": match},
            {"$group": {
                "_id": None,
                "total_missions": {"$sum": 1},
                "total_payout": {"$sum": PAYOUT},
                "avg_payout": {"$avg": "$payout"},
                "avg_travel_distance": {"$avg": "$travel_distance"},
                "avg_travel_time": {"$avg": "$travel_time"},
            }},
        ]))
        status_rows = list(db["booking"].aggregate([
            {"$match": match},
            {"$group": {"_id": {"source": "$source", "status": "$status"}, "count": {"$sum": 1}}},
        ]))
        source_rows = list(db["booking"].aggregate([
            {"$match": match},
            {"$group": {
                "_id": "$source",
                "count": {"$sum": 1},
                "total_payout": {"$sum": PAYOUT},
                "avg_payout": {"$avg": "$payout"},
                "avg_travel_distance": {"$avg": "$travel_distance"},
                "avg_travel_time": {"$avg": "$travel_time"},
            }},
        ]))
        trend = list(db["booking"].aggregate([
            {"$match": dict(match, accepted_at={"$ne": None})},
            {"$group": {
                "_id": {
                    "year": {"$year": "$accepted_at"},
                    "month": {"$month": "$accepted_at"},
                    "day": {"$dayOfMonth": "$accepted_at"},
                },
                "count": {"$sum": 1},
                "total_payout": {"$sum": PAYOUT},
                "avg_payout": {"$avg": "$payout"},
            }},
            {"$sort": {"_id.year": 1, "_id.month": 1, "_id.day": 1}},
        ]))
        perf_rows = list(db["booking"].aggregate([
            {"$match": match},
            {"$group": {
                "_id": None,
                "total_missions": {"$sum": 1},
                "completed_missions": {"$sum": {"$cond": [{"$eq": ["$status", "completed"]}, 1, 0]}},
                "cancelled_missions": {"$sum": {"$cond": [{"$eq": ["$status", "cancelled"]}, 1, 0]}},
                "in_progress_missions": {"$sum": {"$cond": [{"$eq": ["$status", "in-progress"]}, 1, 0]}},
                "total_revenue": {"$sum": PAYOUT},
                "total_travel_distance": {"$sum": {"$ifNull": ["$travel_distance", 0]}},
                "total_travel_time": {"$sum": {"$ifNull": ["$travel_time", 0]}},
                "min_payout": {"$min": "$payout"},
                "max_payout": {"$max": "$payout"},
                "min_travel_distance": {"$min": "$travel_distance"},
                "max_travel_distance": {"$max": "$travel_distance"},
            }},
        ]))
    except PyMongoError:
        logger.exception("Mission analytics query failed")
        raise PersistenceError("Failed to fetch mission analytics")

    status_counts = {}
    per_source_status = {}
    for row in status_rows:
        key = row["_id"]
        status_counts[key["status"]] = status_counts.get(key["status"], 0) + row["count"]
        per_source_status.setdefault(key["source"], {})[key["status"]] = row["count"]

    summary = summary_rows[0] if summary_rows else {}
    summary.pop("_id", None)
    perf = perf_rows[0] if perf_rows else {}
    perf.pop("_id", None)

    total = perf.get("total_missions", 0)
    distance = perf.get("total_travel_distance", 0)
    completion_rate = round(perf.get("completed_missions", 0) / total * 100, 2) if total else 0
    revenue_per_mile = round(perf.get("total_revenue", 0) / distance, 2) if distance else 0

    return {
        "summary": {
            "total_missions": summary.get("total_missions", 0),
            "total_payout": summary.get("total_payout", 0),
            "avg_payout": summary.get("avg_payout") or 0,
            "avg_travel_distance": summary.get("avg_travel_distance") or 0,
            "avg_travel_time": summary.get("avg_travel_time") or 0,
            "status_counts": status_counts,
            "completion_rate": completion_rate,
            "revenue_per_mile": revenue_per_mile,
        },
        "source_breakdown": {
            row["_id"]: {
                "count": row["count"],
                "total_payout": row.get("total_payout") or 0,
                "avg_payout": row.get("avg_payout") or 0,
                "avg_travel_distance": row.get("avg_travel_distance") or 0,
                "avg_travel_time": row.get("avg_travel_time") or 0,
                "status_counts": per_source_status.get(row["_id"], {}),
            }
            for row in source_rows
        },
        "daily_trend": [
            {
                "date": f"{row['_id']['year']:04d}-{row['_id']['month']:02d}-{row['_id']['day']:02d}",
                "count": row["count"],
                "total_payout": row["total_payout"],
                "avg_payout": row.get("avg_payout") or 0,
            }
            for row in trend
        ],
        "performance_metrics": perf,
        "filters": {"start_date": start, "end_date": end, "source": source, "status": status, "period": period},
        "metadata": {"generated_at": utcnow(), "currency": "USD", "distance_unit": "miles", "time_unit": "minutes"},
    }
