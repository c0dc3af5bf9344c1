from app.cms.db import session_scope
from app.cms.models import CodeSnippet, Feature, RoleFeature, TenantSite
from conftest import login


def _set_mode(app, mode, **extra):
    with session_scope(app) as s:
        site = s.query(TenantSite).one()
        site.site_mode = mode
        for k, v in extra.items():
            setattr(site, k, v)


def test_site_mode_get_and_put(client):
    h = login(client)
    assert client.get("/api/settings/site-mode").json["site_mode"] == "live"
    r = client.put("/api/settings/site-mode", json={"site_mode": "coming_soon"}, headers=h)
    assert r.json == {"success": True, "site_mode": "coming_soon"}
    r = client.put("/api/settings/site-mode", json={"site_mode": "paused"}, headers=h)
    assert r.status_code == 400


def test_locked_site_mode_blocks_site_admin(app, client):
    _set_mode(app, "coming_soon", site_mode_locked=True, site_mode_locked_reason="Invoice overdue")
    h = login(client)
    r = client.put("/api/settings/site-mode", json={"site_mode": "live"}, headers=h)
    assert r.status_code == 403
    assert r.json["locked"] is True
    assert r.json["error"] == "Invoice overdue"

    sup = app.test_client()
    sh = login(sup, "super")
    r = sup.put("/api/settings/site-mode", json={"site_mode": "live"}, headers=sh)
    assert r.status_code == 200


def test_coming_soon_redirects_public_pages(app, client):
    _set_mode(app, "coming_soon", coming_soon_message="Back in spring")
    r = client.get("/")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/coming-soon")

    page = client.get("/coming-soon")
    assert page.status_code == 200
    assert b"Back in spring" in page.data

    # API, health and admin stay reachable.
    assert client.get("/health").status_code == 200
    assert client.get("/api/public/content/post").status_code == 200

    login(client)
    assert client.get("/").status_code == 200


def test_coming_soon_snippet_overrides_message(app, client):
    with session_scope(app) as s:
        snip = CodeSnippet(title="Splash", code="<h1>Launching soon</h1>")
        s.add(snip)
        s.flush()
        site = s.query(TenantSite).one()
        site.site_mode = "coming_soon"
        site.coming_soon_message = "plain message"
        site.coming_soon_snippet_id = snip.id
    r = client.get("/coming-soon")
    assert b"<h1>Launching soon</h1>" in r.data
    assert b"plain message" not in r.data


def test_membership_setting_validation(client):
    h = login(client)
    assert client.get("/api/settings/membership").json == {"membership_enabled": True}
    r = client.put("/api/settings/membership", json={"membership_enabled": "no"}, headers=h)
    assert r.status_code == 400


def test_key_value_settings(client):
    h = login(client)
    statuses = client.get("/api/settings/crm_contact_statuses").json["value"]
    assert [x["slug"] for x in statuses] == ["new", "contacted", "archived"]

    new = statuses + [{"slug": "qualified", "label": "Qualified"}]
    r = client.put("/api/settings/crm_contact_statuses", json={"value": new}, headers=h)
    assert r.status_code == 200
    r = client.post("/api/crm/contacts", json={"email": "q@example.com", "status": "qualified"}, headers=h)
    assert r.status_code == 201

    r = client.put("/api/settings/crm_note_types", json={"value": []}, headers=h)
    assert r.status_code == 400
    r = client.put("/api/settings/crm_contact_statuses", json={"value": [{"slug": "a"}, {"slug": "a"}]}, headers=h)
    assert r.status_code == 400
    assert client.get("/api/settings/secret_sauce").status_code == 404


def test_team_management(client):
    h = login(client)
    team = client.get("/api/settings/team").json["team"]
    assert {t["role_slug"] for t in team} == {"admin", "editor", "viewer"}

    r = client.post("/api/settings/team", json={"email": "nobody@example.com", "role_slug": "creator"}, headers=h)
    assert r.status_code == 201
    assert r.json["role_slug"] == "creator"
    r = client.post("/api/settings/team", json={"email": "ghost@example.com", "role_slug": "creator"}, headers=h)
    assert r.status_code == 404
    r = client.post("/api/settings/team", json={"email": "nobody@example.com", "role_slug": "superadmin"}, headers=h)
    assert r.status_code == 400
    r = client.post("/api/settings/team", json={"email": "super@example.com", "role_slug": "editor"}, headers=h)
    assert r.status_code == 400


def test_settings_feature_alone_cannot_change_site_switches(app):
    with session_scope(app) as s:
        settings = s.query(Feature).filter(Feature.slug == "settings").one()
        s.add(RoleFeature(role_slug="editor", feature_id=settings.id, is_enabled=True))

    editor = app.test_client()
    h = login(editor, "editor")
    assert editor.get("/api/settings/site-mode").status_code == 200
    r = editor.put("/api/settings/site-mode", json={"site_mode": "coming_soon"}, headers=h)
    assert r.status_code == 403
    r = editor.put("/api/settings/membership", json={"membership_enabled": False}, headers=h)
    assert r.status_code == 403
    with session_scope(app) as s:
        site = s.query(TenantSite).one()
        assert (site.site_mode, site.membership_enabled) == ("live", True)
