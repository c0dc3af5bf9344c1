from app.cms.db import session_scope
from app.cms.models import AuditEvent
from conftest import PASSWORD, login, signup_member

NEW_PASSWORD = "violet-lantern-harbor"


def test_staff_profile_read_and_partial_update(client):
    assert client.get("/api/admin/profile").status_code == 401
    h = login(client)
    r = client.get("/api/admin/profile")
    assert r.json["email"] == "admin@example.com"
    assert r.json["profile"]["title"] is None
    assert r.json["profile"]["updated_at"] is None

    r = client.put(
        "/api/admin/profile",
        json={"display_name": "  Ada Admin ", "title": "Operations", "avatar_url": "https://cdn.example.com/a.png"},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["profile"]["display_name"] == "Ada Admin"
    assert r.json["profile"]["title"] == "Operations"

    r = client.patch("/api/admin/profile", json={"company": "Acme"}, headers=h)
    profile = r.json["profile"]
    assert (profile["title"], profile["company"], profile["display_name"]) == ("Operations", "Acme", "Ada Admin")
    assert client.get("/api/admin/me/context").json["user"]["display_name"] == "Ada Admin"

    r = client.put("/api/admin/profile", json={"avatar_url": "javascript:alert(1)"}, headers=h)
    assert r.status_code == 400
    r = client.put("/api/admin/profile", json={"display_name": "x" * 300}, headers=h)
    assert r.status_code == 400
    assert client.get("/api/admin/profile").json["profile"]["avatar_url"] == "https://cdn.example.com/a.png"


def test_staff_password_change_follows_policy(app, client):
    h = login(client)
    cases = [
        ({"current_password": "wrong-password-123", "new_password": NEW_PASSWORD}, "Current password is incorrect."),
        ({"new_password": NEW_PASSWORD}, "Current password is incorrect."),
        ({"current_password": PASSWORD, "new_password": "short"}, "Password must be at least 12 characters."),
        ({"current_password": PASSWORD, "new_password": PASSWORD}, "New password must differ from the current one."),
    ]
    for body, error in cases:
        r = client.put("/api/admin/profile", json=body, headers=h)
        assert r.status_code == 400
        assert r.json["error"] == error

    r = client.put("/api/admin/profile", json={"current_password": PASSWORD, "new_password": NEW_PASSWORD}, headers=h)
    assert r.status_code == 200
    fresh = app.test_client()
    assert fresh.post("/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD}).status_code == 401
    login(fresh, email="admin@example.com", password=NEW_PASSWORD)

    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert "auth.password_change" in actions


def test_members_cannot_use_staff_profile(client):
    h, _ = signup_member(client)
    assert client.get("/api/admin/profile").status_code == 403
    assert client.put("/api/admin/profile", json={"title": "Boss"}, headers=h).status_code == 403


def test_member_profile_rename_syncs_crm_contact(app, client):
    h, signup = signup_member(client)
    r = client.get("/api/members/profile")
    assert r.json == {"email": "member@example.com", "display_name": "Mia Member", "contact_id": signup["contact_id"]}

    r = client.put("/api/members/profile", json={"display_name": "Mia Maker"}, headers=h)
    assert r.status_code == 200
    assert r.json["display_name"] == "Mia Maker"
    assert r.json["contact_id"] == signup["contact_id"]

    admin = app.test_client()
    login(admin)
    assert admin.get(f"/api/crm/contacts/{signup['contact_id']}").json["full_name"] == "Mia Maker"

    staff = app.test_client()
    staff_h = login(staff)
    assert staff.put("/api/members/profile", json={"display_name": "x"}, headers=staff_h).status_code == 403


def test_member_profile_relinks_when_contact_was_trashed(app, client):
    h, signup = signup_member(client)
    admin = app.test_client()
    ah = login(admin)
    assert admin.delete(f"/api/crm/contacts/{signup['contact_id']}", headers=ah).status_code == 200

    r = client.put("/api/members/profile", json={"display_name": "Mia Returned"}, headers=h)
    assert r.status_code == 200
    new_id = r.json["contact_id"]
    assert new_id != signup["contact_id"]
    contact = admin.get(f"/api/crm/contacts/{new_id}").json
    assert contact["email"] == "member@example.com"
    assert contact["full_name"] == "Mia Returned"


def test_member_password_change(app, client):
    h, _ = signup_member(client)
    r = client.put(
        "/api/members/profile",
        json={"current_password": PASSWORD, "new_password": "member"},
        headers=h,
    )
    assert r.status_code == 400
    r = client.put(
        "/api/members/profile",
        json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
        headers=h,
    )
    assert r.status_code == 200
    login(app.test_client(), email="member@example.com", password=NEW_PASSWORD)
