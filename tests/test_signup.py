from app.cms.db import session_scope
from app.cms.models import User
from app.cms.modules.automations import ensure_member_in_crm
from app.cms.modules.crm.models import CrmContact
from app.cms.modules.memberships.models import Member
from conftest import PASSWORD, login, signup_member


def test_signup_creates_user_contact_and_member(app, client):
    _, body = signup_member(client, email="New.Member@Example.com", display_name="New Member")
    with session_scope(app) as s:
        user = s.get(User, body["user_id"])
        assert user.email == "new.member@example.com"
        assert user.user_type == "member"
        contact = s.get(CrmContact, body["contact_id"])
        assert contact.status == "new"
        assert contact.source == "member_signup"
        assert contact.full_name == "New Member"
        member = s.query(Member).filter(Member.user_id == user.id).one()
        assert member.contact_id == contact.id


def test_signup_links_existing_contact(app, client):
    h = login(client)
    existing = client.post("/api/crm/contacts", json={"email": "known@example.com", "full_name": "Old"}, headers=h).json
    client.get("/auth/logout")

    _, body = signup_member(client, email="known@example.com", display_name="Known Person")
    assert body["contact_id"] == existing["id"]
    with session_scope(app) as s:
        assert s.get(CrmContact, existing["id"]).full_name == "Known Person"
        assert s.query(CrmContact).count() == 1


def test_signup_duplicate_email(client):
    signup_member(client)
    r = client.post("/api/auth/signup", json={"email": "member@example.com", "password": PASSWORD})
    assert r.status_code == 409
    r = client.post("/api/auth/signup", json={"email": "ADMIN@example.com", "password": PASSWORD})
    assert r.status_code == 409


def test_signup_rejects_weak_password_and_bad_email(client):
    r = client.post("/api/auth/signup", json={"email": "weak@example.com", "password": "short"})
    assert r.status_code == 400
    assert "at least 12" in r.json["error"]
    r = client.post("/api/auth/signup", json={"email": "not-an-email", "password": PASSWORD})
    assert r.status_code == 400


def test_signed_up_member_is_logged_in_but_not_staff(client):
    signup_member(client)
    ctx = client.get("/api/admin/me/context").json
    assert ctx["user"]["type"] == "member"
    assert ctx["features"] == []
    assert client.get("/admin/dashboard").status_code == 403
    assert client.get("/api/crm/contacts").status_code == 403


def test_ensure_member_in_crm_requires_email(app):
    with session_scope(app) as s:
        result = ensure_member_in_crm(s, "  ")
        assert result.error == "Email is required"
        assert result.contact is None
