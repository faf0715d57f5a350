from datetime import timedelta

import pytest

import promos
from database import utcnow
from errors import ConflictError, ValidationError
from schemas import PromoCreateRequest, PromoUpdateRequest


def promo_payload(start_offset=-1, end_offset=5, **overrides):
    now = utcnow()
    payload = {
        "name": "Spring Sale",
        "description": "Ten percent off every package",
        "discount_percentage": 10,
        "start_date": (now + timedelta(days=start_offset)).isoformat(),
        "end_date": (now + timedelta(days=end_offset)).isoformat(),
    }
    payload.update(overrides)
    return payload


@pytest.mark.parametrize("price,discount,expected", [
    (199, 10, 179),
    (199, 100, 0),
    (199, 1, 197),
    (150, 1, 149),
    (399, 25, 299),
    (10, 5, 10),
])
def test_discounted_price_rounds_half_up(price, discount, expected):
    assert promos.calculate_discounted_price(price, discount) == expected


def test_create_and_fetch_promo(client, admin_headers):
    resp = client.post("/admin/promos", json=promo_payload(), headers=admin_headers)
    assert resp.status_code == 201
    promo = resp.json()
    assert promo["is_currently_active"] is True
    assert promo["created_by"] == "admin@org.com"

    fetched = client.get(f"/admin/promos/{promo['id']}", headers=admin_headers)
    assert fetched.json()["name"] == "Spring Sale"


def test_overlapping_active_promo_is_rejected(client, admin_headers):
    assert client.post("/admin/promos", json=promo_payload(), headers=admin_headers).status_code == 201
    resp = client.post(
        "/admin/promos", json=promo_payload(start_offset=3, end_offset=10, name="Overlap"), headers=admin_headers
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "Promo overlap"


def test_disjoint_and_inactive_promos_are_allowed(admin):
    promos.create_promo(PromoCreateRequest(**promo_payload()), admin["email"])
    promos.create_promo(PromoCreateRequest(**promo_payload(start_offset=6, end_offset=9, name="Later")), admin["email"])
    draft = promos.create_promo(
        PromoCreateRequest(**promo_payload(name="Draft", is_active=False)), admin["email"]
    )
    assert draft["is_active"] is False
    assert draft["is_currently_active"] is False


def test_activating_an_overlapping_draft_conflicts(admin):
    promos.create_promo(PromoCreateRequest(**promo_payload()), admin["email"])
    draft = promos.create_promo(PromoCreateRequest(**promo_payload(name="Draft", is_active=False)), admin["email"])
    with pytest.raises(ConflictError):
        promos.update_promo(draft["id"], PromoUpdateRequest(is_active=True), admin["email"])


def test_updating_a_promo_does_not_conflict_with_itself(admin):
    promo = promos.create_promo(PromoCreateRequest(**promo_payload()), admin["email"])
    updated = promos.update_promo(
        promo["id"], PromoUpdateRequest(discount_percentage=20, end_date=utcnow() + timedelta(days=8)), admin["email"]
    )
    assert updated["discount_percentage"] == 20


@pytest.mark.parametrize("overrides", [
    {"discount_percentage": 0},
    {"discount_percentage": 101},
    {"name": ""},
    {"start_offset": 5, "end_offset": 1},
])
def test_promo_validation(admin, overrides):
    start = overrides.pop("start_offset", -1)
    end = overrides.pop("end_offset", 5)
    with pytest.raises(ValidationError):
        promos.create_promo(PromoCreateRequest(**promo_payload(start, end, **overrides)), admin["email"])


def test_update_requires_a_field(admin):
    promo = promos.create_promo(PromoCreateRequest(**promo_payload()), admin["email"])
    with pytest.raises(ValidationError):
        promos.update_promo(promo["id"], PromoUpdateRequest(), admin["email"])


def test_active_summary_without_promo(client):
    body = client.get("/promo/active").json()
    assert body["has_active_promo"] is False
    assert body["pricing"]["basic"] == {"original": 199, "discounted": 199}


def test_active_summary_reports_discounted_prices(client, admin):
    promos.create_promo(PromoCreateRequest(**promo_payload()), admin["email"])
    body = client.get("/promo/active").json()
    assert body["has_active_promo"] is True
    assert body["promo"]["discount_percentage"] == 10
    assert body["pricing"]["basic"] == {"original": 199, "discounted": 179}
    assert body["pricing"]["premium"]["discounted"] == 719


def test_upcoming_promo_is_not_active_yet(client, admin):
    promos.create_promo(PromoCreateRequest(**promo_payload(start_offset=2, end_offset=4)), admin["email"])
    assert client.get("/promo/active").json()["has_active_promo"] is False


def test_list_filters_by_status(client, admin_headers, admin):
    promos.create_promo(PromoCreateRequest(**promo_payload(name="Now")), admin["email"])
    promos.create_promo(PromoCreateRequest(**promo_payload(-10, -6, name="Past")), admin["email"])
    promos.create_promo(PromoCreateRequest(**promo_payload(7, 9, name="Soon")), admin["email"])
    promos.create_promo(PromoCreateRequest(**promo_payload(name="Off", is_active=False)), admin["email"])

    def names(status):
        resp = client.get("/admin/promos", params={"status": status}, headers=admin_headers)
        return [p["name"] for p in resp.json()["promos"]]

    assert names("active") == ["Now"]
    assert names("expired") == ["Past"]
    assert names("upcoming") == ["Soon"]
    assert names("inactive") == ["Off"]
    assert client.get("/admin/promos", headers=admin_headers).json()["pagination"]["total_count"] == 4
    assert client.get("/admin/promos", params={"status": "bogus"}, headers=admin_headers).status_code == 400


def test_delete_promo(client, admin_headers, admin):
    promo = promos.create_promo(PromoCreateRequest(**promo_payload()), admin["email"])
    assert client.delete(f"/admin/promos/{promo['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/admin/promos/{promo['id']}", headers=admin_headers).status_code == 404
