from io import BytesIO

from openpyxl import Workbook

from bookings import duration_label
from database import db, ensure_db

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADERS = [
    "ID", "Source", "Mission ID", "Service", "Package", "Duration", "Date", "Location", "Name", "Email",
    "Phone", "Status", "Estimated Price", "Final Price", "Payout", "Travel Distance", "Travel Time",
    "Admin Notes", "Created",
]


def _cell(value):
    return "" if value is None else value


def build_bookings_workbook(query: dict) -> BytesIO:
    ensure_db()
    wb = Workbook()
    ws = wb.active
    ws.title = "Bookings"
    ws.append(HEADERS)

    for d in db["booking"].find(query).sort("created_at", -1):
        ws.append([_cell(v) for v in [
            str(d["_id"]), d.get("source", "customer"), d.get("mission_id"), d.get("service"), d.get("package"),
            duration_label(d), d.get("date"), d.get("location"), d.get("name"), d.get("email"),
            d.get("phone"), d.get("status"), d.get("estimated_price"), d.get("final_price"), d.get("payout"),
            d.get("travel_distance"), d.get("travel_time"), d.get("admin_notes"), d.get("created_at"),
        ]])

    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio
