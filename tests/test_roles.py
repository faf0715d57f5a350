import pytest

import roles
from errors import AuthorizationError, ValidationError


@pytest.fixture
def allow_lists(monkeypatch):
    monkeypatch.setenv("CLIENT_EMAILS", "client@example.com, both@example.com, admin@org.com")
    monkeypatch.setenv("PILOT_EMAILS", "pilot@example.com, both@example.com, admin@org.com")
    roles.clear_cache()


def test_role_resolution_order(allow_lists):
    # Admin allow-list is checked before the client and pilot lists
    assert roles.get_user_role("ADMIN@org.com") == roles.ADMIN
    assert roles.get_user_role("client@example.com") == roles.CLIENT
    assert roles.get_user_role("pilot@example.com") == roles.PILOT
    # Client wins when an email sits in both lists
    assert roles.get_user_role("both@example.com") == roles.CLIENT
    assert roles.get_user_role("nobody@example.com") == roles.USER
    assert roles.get_user_role(None) == roles.USER


def test_admin_list_beats_persisted_role(monkeypatch, make_user):
    monkeypatch.setenv("USE_DATABASE_ROLES", "true")
    make_user("admin@org.com", role="client")
    assert roles.get_user_role("admin@org.com") == roles.ADMIN


def test_persisted_role_used_when_enabled(monkeypatch, make_user):
    make_user("dbpilot@example.com", role="pilot")
    assert roles.get_user_role("dbpilot@example.com") == roles.USER
    roles.clear_cache()
    monkeypatch.setenv("USE_DATABASE_ROLES", "true")
    assert roles.get_user_role("dbpilot@example.com") == roles.PILOT


def test_resolved_roles_are_cached_until_cleared(monkeypatch):
    assert roles.get_user_role("late@example.com") == roles.USER
    monkeypatch.setenv("CLIENT_EMAILS", "late@example.com")
    assert roles.get_user_role("late@example.com") == roles.USER
    roles.clear_cache()
    assert roles.get_user_role("late@example.com") == roles.CLIENT


def test_zero_ttl_disables_cache(monkeypatch):
    monkeypatch.setenv("ROLE_CACHE_TTL", "0")
    assert roles.get_user_role("late@example.com") == roles.USER
    monkeypatch.setenv("PILOT_EMAILS", "late@example.com")
    assert roles.get_user_role("late@example.com") == roles.PILOT


def test_permissions(allow_lists):
    assert roles.has_permission("admin@org.com", "manage_users")
    assert roles.has_permission("pilot@example.com", "upload_assets")
    assert not roles.has_permission("client@example.com", "upload_assets")
    assert roles.has_any_permission("client@example.com", ["upload_assets", "create_jobs"])
    assert not roles.has_all_permissions("client@example.com", ["upload_assets", "create_jobs"])
    assert roles.get_user_permissions("nobody@example.com") == ["view_profile", "edit_profile"]
    assert roles.get_role_permissions("owner") == []


def test_navigation_adds_users_only_for_org_admins():
    org_nav = [item["name"] for item in roles.get_navigation(roles.ADMIN, "admin@org.com")]
    assert org_nav[3] == "Users"
    outside_nav = [item["name"] for item in roles.get_navigation(roles.ADMIN, "outside-admin@partner.com")]
    assert "Users" not in outside_nav
    assert roles.get_navigation("unknown")[-1]["name"] == "Profile"


def test_persisted_admin_counts_only_on_org_domain(make_user):
    org = make_user("boss@org.com", role="admin")
    outside = make_user("boss@partner.com", role="admin")
    assert roles.is_admin("boss@org.com", org)
    assert not roles.is_admin("boss@partner.com", outside)
    assert not roles.is_admin(None)


def test_check_assignable():
    roles.check_assignable("pilot", "x@example.com")
    with pytest.raises(ValidationError):
        roles.check_assignable("owner", "x@example.com")
    with pytest.raises(AuthorizationError):
        roles.check_assignable("admin", "x@example.com")


def test_change_role_route_records_history(client, admin_headers, make_user):
    user = make_user("worker@example.com", role="user")
    resp = client.patch(
        f"/admin/users/{user['_id']}/role",
        json={"role": "pilot", "reason": "Passed certification"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["role"] == "pilot"
    assert "password_hash" not in resp.json()

    history = client.get(f"/admin/users/{user['_id']}/role-history", headers=admin_headers).json()
    assert history["current_role"] == "pilot"
    assert history["role_history"][0]["reason"] == "Passed certification"
    assert history["role_history"][0]["changed_by"] == "admin@org.com"
    assert "invitation_id" not in history["role_history"][0]


def test_change_role_rejections(client, admin_headers, make_user):
    user = make_user("worker@example.com", role="pilot")
    path = f"/admin/users/{user['_id']}/role"
    assert client.patch(path, json={"role": "pilot"}, headers=admin_headers).status_code == 400
    assert client.patch(path, json={"role": "owner"}, headers=admin_headers).status_code == 400
    assert client.patch(path, json={"role": "admin"}, headers=admin_headers).status_code == 403
    missing = "/admin/users/000000000000000000000000/role"
    assert client.patch(missing, json={"role": "client"}, headers=admin_headers).status_code == 404


def test_user_management_is_reserved_to_org_admins(client, make_user, auth):
    outsider = make_user("outside-admin@partner.com", role="user")
    headers = auth(outsider)
    assert client.get("/admin/bookings", headers=headers).status_code == 200
    assert client.get("/admin/users", headers=headers).status_code == 403


def test_stale_token_role_is_not_trusted(client, make_user, auth):
    demoted = make_user("former@partner.com", role="admin")
    assert client.get("/admin/bookings", headers=auth(demoted)).status_code == 403


def test_stored_admin_outside_org_domain_is_a_plain_user(client, monkeypatch, make_user, auth):
    outsider = make_user("x@partner.com", role="admin")
    assert roles.session_role(outsider) == roles.USER
    me = client.get("/auth/me", headers=auth(outsider)).json()
    assert me["role"] == "user"
    assert "manage_users" not in me["permissions"]

    monkeypatch.setenv("USE_DATABASE_ROLES", "true")
    roles.clear_cache()
    assert roles.get_user_role("x@partner.com") == roles.USER
    assert client.get("/admin/bookings", headers=auth(outsider)).status_code == 403
    # Allow-listed admins keep the role wherever their mailbox lives
    assert roles.get_user_role("outside-admin@partner.com") == roles.ADMIN
