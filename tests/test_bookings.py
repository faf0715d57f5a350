from datetime import datetime, timedelta

import pytest

import bookings
from database import utcnow
from errors import ValidationError
from schemas import BookingRequest, MissionRequest


def booking_payload(days_ahead=10, **overrides):
    payload = {
        "service": "aerial-photography",
        "package": "basic",
        "date": (utcnow() + timedelta(days=days_ahead)).isoformat(),
        "location": "Lake Tahoe, CA",
        "details": "Sunset shots of the shoreline",
        "name": "Jane Doe",
        "email": "jane@example.com",
        "phone": "+1 (555) 123-4567",
    }
    payload.update(overrides)
    return payload


def test_customer_booking_is_created_pending_with_package_price(client, db, sent_emails):
    resp = client.post("/bookings", json=booking_payload())
    assert resp.status_code == 201
    body = resp.json()
    assert body["booking"]["status"] == "pending"
    assert body["booking"]["estimated_price"] == 199
    assert body["has_account"] is False
    assert body["email_sent"] is True

    stored = db["booking"].find_one({"email": "jane@example.com"})
    assert stored["source"] == "customer"
    assert stored["user_agent"] == "testclient"
    assert [m["to"] for m in sent_emails] == ["jane@example.com"]
    assert "/login" in sent_emails[0]["html"]


def test_booking_exactly_seven_days_ahead_is_accepted():
    now = datetime(2030, 1, 1, 12, 0, 0)
    payload = BookingRequest(**dict(booking_payload(), date=now + timedelta(days=7)))
    data = bookings.validate_customer_booking(payload, now=now)
    assert data["date"] == now + timedelta(days=7)


def test_booking_under_seven_days_ahead_is_rejected():
    now = datetime(2030, 1, 1, 12, 0, 0)
    payload = BookingRequest(**dict(booking_payload(), date=now + timedelta(days=7) - timedelta(seconds=1)))
    with pytest.raises(ValidationError) as exc:
        bookings.validate_customer_booking(payload, now=now)
    assert "at least 7 days" in exc.value.message


def test_booking_route_rejects_short_notice(client):
    resp = client.post("/bookings", json=booking_payload(days_ahead=3))
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid date"


@pytest.mark.parametrize("field,value,error", [
    ("email", "not-an-email", "Invalid email"),
    ("phone", "12345", "Invalid phone number"),
    ("service", "skywriting", "Invalid service"),
    ("package", "platinum", "Invalid package"),
    ("location", "", "Missing required fields"),
])
def test_booking_validation_errors(client, field, value, error):
    resp = client.post("/bookings", json=booking_payload(**{field: value}))
    assert resp.status_code == 400
    assert resp.json()["error"] == error


def test_booking_length_limits(client):
    resp = client.post("/bookings", json=booking_payload(location="x" * 201))
    assert resp.status_code == 400
    assert "200" in resp.json()["message"]


def test_booking_strings_are_sanitized(client, db):
    resp = client.post("/bookings", json=booking_payload(location="<b>Lake</b> Tahoe ", name="<script>x</script>Jane"))
    assert resp.status_code == 201
    stored = db["booking"].find_one({})
    assert stored["location"] == "Lake Tahoe"
    assert stored["name"] == "xJane"


def test_same_day_booking_for_same_email_conflicts(client):
    day = (utcnow() + timedelta(days=12)).replace(hour=8, minute=0, second=0, microsecond=0)
    first = client.post("/bookings", json=booking_payload(date=day.isoformat()))
    assert first.status_code == 201
    second = client.post(
        "/bookings",
        json=booking_payload(date=day.replace(hour=18).isoformat(), service="inspection", location="Reno"),
    )
    assert second.status_code == 409
    assert second.json()["error"] == "Duplicate booking"


def test_next_day_booking_for_same_email_is_fine(client):
    day = (utcnow() + timedelta(days=12)).replace(hour=23, minute=30)
    assert client.post("/bookings", json=booking_payload(date=day.isoformat())).status_code == 201
    next_day = (day + timedelta(days=1)).replace(hour=0, minute=30)
    assert client.post("/bookings", json=booking_payload(date=next_day.isoformat())).status_code == 201


def test_account_holder_with_confirmations_off_gets_no_email(client, make_user, sent_emails):
    make_user("jane@example.com", notifications={"booking_confirmations": False})
    resp = client.post("/bookings", json=booking_payload())
    assert resp.status_code == 201
    assert resp.json()["has_account"] is True
    assert resp.json()["email_sent"] is False
    assert sent_emails == []


def test_email_failure_does_not_fail_booking(client, monkeypatch):
    import emails

    def broken(*args, **kwargs):
        raise OSError("smtp down")

    monkeypatch.setattr(emails, "send_email", broken)
    resp = client.post("/bookings", json=booking_payload())
    assert resp.status_code == 201
    assert resp.json()["email_sent"] is False


def test_mission_is_exempt_from_advance_notice_and_identity(admin):
    mission = bookings.create_mission(
        MissionRequest(
            source="zeitview",
            mission_id="DBM1001",
            service="inspection",
            date=utcnow() + timedelta(days=1),
            location="Solar farm, NV",
            payout=250,
            travel_distance=42.5,
            travel_time=55,
        ),
        created_by=admin["email"],
    )
    assert mission["status"] == "pending"
    assert mission["name"] == bookings.MISSION_NAME
    assert mission["email"] == bookings.MISSION_EMAIL
    assert mission["phone"] == bookings.MISSION_PHONE


def test_stored_documents_share_the_booking_shape(client, db, admin):
    client.post("/bookings", json=booking_payload())
    bookings.create_mission(
        MissionRequest(
            service="mapping-surveying",
            date=utcnow() + timedelta(days=1),
            location="Quarry",
            coordinates={"lat": 39.1, "lng": -120.0},
        ),
        created_by=admin["email"],
    )
    customer = db["booking"].find_one({"source": "customer"})
    mission = db["booking"].find_one({"source": "manual"})
    assert set(customer) == set(mission)
    assert customer["created_by"] is None
    assert customer["payout"] is None
    assert mission["coordinates"] == {"lat": 39.1, "lng": -120.0}
    assert mission["created_by"] == "admin@org.com"
    assert mission["estimated_price"] is None


def test_booking_doc_enforces_field_rules():
    fields = dict(service="inspection", date=utcnow(), location="Site", name="Mission",
                  email=bookings.MISSION_EMAIL, phone=bookings.MISSION_PHONE)
    assert bookings.booking_doc(**fields)["status_history"] == []
    with pytest.raises(ValidationError):
        bookings.booking_doc(payout=-1, **fields)
    with pytest.raises(ValidationError):
        bookings.booking_doc(**dict(fields, service="skywriting"))


def test_mission_rules(client, admin_headers):
    base = {
        "source": "manual",
        "mission_id": "DBM77",
        "service": "mapping-surveying",
        "date": (utcnow() - timedelta(days=2)).isoformat(),
        "location": "Quarry",
    }
    assert client.post("/admin/missions", json=base, headers=admin_headers).status_code == 201
    assert client.post("/admin/missions", json=base, headers=admin_headers).status_code == 409
    bad_id = client.post("/admin/missions", json=dict(base, mission_id="M-77"), headers=admin_headers)
    assert bad_id.status_code == 400
    customer = client.post("/admin/missions", json=dict(base, mission_id=None, source="customer"), headers=admin_headers)
    assert customer.status_code == 400
    negative = client.post("/admin/missions", json=dict(base, mission_id=None, payout=-5), headers=admin_headers)
    assert negative.status_code == 400


def test_admin_update_records_status_history(client, admin_headers, db):
    client.post("/bookings", json=booking_payload())
    booking_id = str(db["booking"].find_one({})["_id"])

    resp = client.patch(
        f"/admin/bookings/{booking_id}",
        json={"status": "confirmed", "final_price": 180, "admin_notes": "  call first  "},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert set(body["updated_fields"]) == {"status", "final_price", "admin_notes"}
    assert body["booking"]["admin_notes"] == "call first"

    # Backward moves are allowed and audited
    client.patch(f"/admin/bookings/{booking_id}", json={"status": "pending"}, headers=admin_headers)
    history = db["booking"].find_one({})["status_history"]
    assert [(h["from"], h["to"]) for h in history] == [("pending", "confirmed"), ("confirmed", "pending")]
    assert history[0]["changed_by"] == "admin@org.com"


@pytest.mark.parametrize("update", [
    {},
    {"status": "archived"},
    {"estimated_price": -1},
    {"admin_notes": "x" * 501},
])
def test_admin_update_validation(client, admin_headers, db, update):
    client.post("/bookings", json=booking_payload())
    booking_id = str(db["booking"].find_one({})["_id"])
    resp = client.patch(f"/admin/bookings/{booking_id}", json=update, headers=admin_headers)
    assert resp.status_code == 400


def test_admin_update_unknown_and_malformed_ids(client, admin_headers):
    assert client.patch("/admin/bookings/000000000000000000000000", json={"status": "confirmed"},
                        headers=admin_headers).status_code == 404
    assert client.patch("/admin/bookings/not-an-id", json={"status": "confirmed"},
                        headers=admin_headers).status_code == 400


def test_admin_delete_booking(client, admin_headers, db):
    client.post("/bookings", json=booking_payload())
    booking_id = str(db["booking"].find_one({})["_id"])
    resp = client.delete(f"/admin/bookings/{booking_id}", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["deleted_booking"]["id"] == booking_id
    assert db["booking"].count_documents({}) == 0
    assert client.delete(f"/admin/bookings/{booking_id}", headers=admin_headers).status_code == 404


def test_admin_list_filters_paginates_and_counts(client, admin_headers):
    for i, package in enumerate(["basic", "standard", "premium"]):
        client.post("/bookings", json=booking_payload(days_ahead=10 + i, package=package, email=f"c{i}@example.com"))

    resp = client.get("/admin/bookings", params={"limit": 2}, headers=admin_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["bookings"]) == 2
    assert body["pagination"]["total_count"] == 3
    assert body["pagination"]["has_next_page"] is True
    assert body["stats"]["pending"] == {"count": 3, "total_value": 199 + 399 + 799}

    resp = client.get("/admin/bookings", params={"email": "C1@EXAMPLE"}, headers=admin_headers)
    assert [b["email"] for b in resp.json()["bookings"]] == ["c1@example.com"]

    assert client.get("/admin/bookings", params={"limit": 500}, headers=admin_headers).status_code == 400


def test_admin_routes_need_admin(client, make_user, auth):
    assert client.get("/admin/bookings").status_code == 401
    pilot = make_user("pilot@example.com", role="pilot")
    assert client.get("/admin/bookings", headers=auth(pilot)).status_code == 403


def test_export_returns_spreadsheet(client, admin_headers):
    client.post("/bookings", json=booking_payload())
    resp = client.get("/admin/bookings/export", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/vnd.openxmlformats")
    assert resp.content[:2] == b"PK"


def test_user_sees_only_own_customer_bookings(client, make_user, auth):
    jane = make_user("jane@example.com")
    client.post("/bookings", json=booking_payload())
    client.post("/bookings", json=booking_payload(email="other@example.com"))

    resp = client.get("/user/bookings", headers=auth(jane))
    assert resp.status_code == 200
    body = resp.json()
    assert [b["email"] for b in body["bookings"]] == ["jane@example.com"]
    assert body["bookings"][0]["duration"] == "1 hour"
    assert "ip_address" not in body["bookings"][0]
    assert body["stats"]["pending"]["total_value"] == 199
