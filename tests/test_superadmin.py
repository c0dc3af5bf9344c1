from conftest import login, signup_member


def _super(app):
    c = app.test_client()
    return c, login(c, "super")


def _feature_id(client, slug):
    features = client.get("/api/super/features").json["features"]
    return next(f["id"] for f in features if f["slug"] == slug)


def _assignment_id(client, email):
    return next(a["id"] for a in client.get("/api/super/users").json["assignments"] if a["email"] == email)


def test_create_site_defaults_and_validation(app):
    c, h = _super(app)
    r = c.post("/api/super/sites", json={"name": "Acme Corp", "schema_name": "client_acme"}, headers=h)
    assert r.status_code == 201
    site = r.json
    assert site["slug"] == "acme-corp"
    assert site["site_mode"] == "coming_soon"
    assert site["membership_enabled"] is True
    assert site["provisioned"] is False

    r = c.post("/api/super/sites", json={"name": "Again", "schema_name": "client_acme"}, headers=h)
    assert r.status_code == 400
    r = c.post("/api/super/sites", json={"name": "Bad", "schema_name": "client-acme"}, headers=h)
    assert r.status_code == 400
    r = c.post("/api/super/sites", json={"schema_name": "client_x"}, headers=h)
    assert r.json["error"] == "Name is required."

    names = [x["name"] for x in c.get("/api/super/sites").json["sites"]]
    assert names == ["Acme Corp", "Test Site"]
    assert c.get("/api/super/sites?status=deleted").status_code == 400


def test_update_site_keeps_schema(app):
    c, h = _super(app)
    site_id = c.post("/api/super/sites", json={"name": "Acme", "schema_name": "client_acme"}, headers=h).json["id"]
    r = c.put(f"/api/super/sites/{site_id}", json={"schema_name": "client_other"}, headers=h)
    assert r.status_code == 400
    r = c.put(f"/api/super/sites/{site_id}", json={"status": "archived", "membership_enabled": False}, headers=h)
    assert r.json["status"] == "archived"
    assert r.json["membership_enabled"] is False
    assert c.put("/api/super/sites/9999", json={"name": "x"}, headers=h).status_code == 404


def test_provision_site_schema(app):
    c, h = _super(app)
    r = c.post(
        "/api/super/sites",
        json={"name": "Beta", "schema_name": "client_beta", "provision": True},
        headers=h,
    )
    assert r.status_code == 201
    assert r.json["provisioned"] is True
    r = c.post(f"/api/super/sites/{r.json['id']}/provision", headers=h)
    assert r.json == {"success": True, "schema_name": "client_beta"}


def test_lock_and_unlock_site_mode(app):
    c, h = _super(app)
    site_id = c.get("/api/super/sites").json["sites"][0]["id"]
    r = c.post(
        f"/api/super/sites/{site_id}/site-mode/lock",
        json={"site_mode": "coming_soon", "reason": "Billing"},
        headers=h,
    )
    assert r.json["site_mode"] == "coming_soon"
    assert r.json["site_mode_locked"] is True
    assert r.json["site_mode_locked_reason"] == "Billing"

    admin = app.test_client()
    ah = login(admin)
    r = admin.put("/api/settings/site-mode", json={"site_mode": "live"}, headers=ah)
    assert r.status_code == 403

    r = c.post(f"/api/super/sites/{site_id}/site-mode/unlock", headers=h)
    assert r.json["site_mode_locked"] is False
    assert r.json["site_mode_locked_reason"] is None
    r = admin.put("/api/settings/site-mode", json={"site_mode": "live"}, headers=ah)
    assert r.status_code == 200


def test_site_features_restrict_roles(app):
    c, h = _super(app)
    site_id = c.get("/api/super/sites").json["sites"][0]["id"]
    r = c.put(f"/api/super/sites/{site_id}/features", json={"features": ["content", "nope"]}, headers=h)
    assert r.status_code == 400
    assert "nope" in r.json["error"]
    assert c.put(f"/api/super/sites/{site_id}/features", json={"features": "content"}, headers=h).status_code == 400

    r = c.put(f"/api/super/sites/{site_id}/features", json={"features": ["content", "superadmin"]}, headers=h)
    assert r.json["features"] == ["content"]
    assert c.get(f"/api/super/sites/{site_id}").json["features"] == ["content"]

    editor = app.test_client()
    login(editor, "editor")
    assert editor.get("/api/content").status_code == 200
    r = editor.get("/api/media")
    assert r.status_code == 403
    assert r.json["missing_feature"] == "library"


def test_custom_role_with_features(app):
    c, h = _super(app)
    r = c.post("/api/super/roles", json={"label": "Sales Analyst"}, headers=h)
    assert r.status_code == 201
    assert r.json["slug"] == "sales_analyst"
    assert r.json["is_system"] is False
    assert c.post("/api/super/roles", json={"slug": "editor"}, headers=h).status_code == 400
    assert c.post("/api/super/roles", json={"slug": "bad-slug!"}, headers=h).status_code == 400

    contacts_id = _feature_id(c, "contacts")
    super_id = _feature_id(c, "superadmin")
    r = c.put("/api/super/roles/sales_analyst/features", json={"feature_ids": [contacts_id, super_id]}, headers=h)
    assert r.json["feature_ids"] == [contacts_id]
    assert c.get("/api/super/roles/sales_analyst/features").json["feature_ids"] == [contacts_id]
    r = c.put("/api/super/roles/sales_analyst/features", json={"feature_ids": [99999]}, headers=h)
    assert r.status_code == 400

    site_id = c.get("/api/super/sites").json["sites"][0]["id"]
    r = c.post(
        "/api/super/users",
        json={"tenant_site_id": site_id, "role_slug": "sales_analyst", "email": "NOBODY@example.com"},
        headers=h,
    )
    assert r.status_code == 201
    assert r.json["email"] == "nobody@example.com"

    nobody = app.test_client()
    login(nobody, "nobody")
    assert nobody.get("/api/crm/contacts").status_code == 200
    assert nobody.get("/api/content").status_code == 403

    r = c.delete("/api/super/roles/sales_analyst", headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Role is still assigned to users."
    assert c.delete(f"/api/super/users/{_assignment_id(c, 'nobody@example.com')}", headers=h).json == {"success": True}
    assert c.delete("/api/super/roles/sales_analyst", headers=h).json == {"success": True}


def test_system_roles_cannot_be_deleted(app):
    c, h = _super(app)
    r = c.delete("/api/super/roles/editor", headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "System roles cannot be deleted."
    assert c.delete("/api/super/roles/ghost", headers=h).status_code == 404
    slugs = [x["slug"] for x in c.get("/api/super/roles").json["roles"]]
    assert set(slugs) >= {"admin", "editor", "creator", "viewer"}


def test_assign_user_validation(app, client):
    c, h = _super(app)
    site_id = c.get("/api/super/sites").json["sites"][0]["id"]
    cases = [
        ({"tenant_site_id": 9999, "role_slug": "editor", "email": "nobody@example.com"}, "Tenant site not found."),
        ({"tenant_site_id": site_id, "role_slug": "superadmin", "email": "nobody@example.com"}, "Role not found."),
        ({"tenant_site_id": site_id, "role_slug": "editor", "email": "ghost@example.com"}, "User not found."),
    ]
    for payload, error in cases:
        r = c.post("/api/super/users", json=payload, headers=h)
        assert r.status_code == 400
        assert r.json["error"] == error

    _, body = signup_member(client)
    r = c.post(
        "/api/super/users",
        json={"tenant_site_id": site_id, "role_slug": "editor", "user_id": body["user_id"]},
        headers=h,
    )
    assert r.json["error"] == "Member accounts cannot be assigned an admin role."


def test_reassigning_user_updates_role(app):
    c, h = _super(app)
    site_id = c.get("/api/super/sites").json["sites"][0]["id"]
    payload = {"tenant_site_id": site_id, "role_slug": "creator", "email": "viewer@example.com"}
    first = c.post("/api/super/users", json=payload, headers=h).json
    assert first["role_slug"] == "creator"
    listed = c.get(f"/api/super/users?site_id={site_id}").json["assignments"]
    assert [a["role_slug"] for a in listed if a["email"] == "viewer@example.com"] == ["creator"]
    assert c.get("/api/super/users?site_id=abc").status_code == 400


def test_snippets_crud_and_site_reference(app):
    c, h = _super(app)
    r = c.post("/api/super/snippets", json={"title": "Launch page", "type": "html", "code": "<h1>Soon</h1>"}, headers=h)
    assert r.status_code == 201
    snippet_id = r.json["id"]
    assert c.post("/api/super/snippets", json={"code": "x"}, headers=h).status_code == 400

    r = c.put(f"/api/super/snippets/{snippet_id}", json={"description": "Pre-launch"}, headers=h)
    assert r.json["description"] == "Pre-launch"
    assert r.json["title"] == "Launch page"
    assert [x["id"] for x in c.get("/api/super/snippets?type=html").json["snippets"]] == [snippet_id]
    assert c.get("/api/super/snippets?type=css").json["snippets"] == []

    site_id = c.get("/api/super/sites").json["sites"][0]["id"]
    r = c.put(f"/api/super/sites/{site_id}", json={"coming_soon_snippet_id": snippet_id}, headers=h)
    assert r.json["coming_soon_snippet_id"] == snippet_id
    assert c.put(f"/api/super/sites/{site_id}", json={"coming_soon_snippet_id": 9999}, headers=h).status_code == 400

    assert c.delete(f"/api/super/snippets/{snippet_id}", headers=h).json == {"success": True}
    assert c.get(f"/api/super/snippets/{snippet_id}").status_code == 404
    assert c.get(f"/api/super/sites/{site_id}").json["coming_soon_snippet_id"] is None


def test_super_overview_page(app):
    c, _ = _super(app)
    r = c.get("/admin/super")
    assert r.status_code == 200
    assert b"Test Site" in r.data


def test_dashboard_counts(app, client):
    h = login(client)
    client.post("/api/crm/contacts", json={"email": "lead@example.com"}, headers=h)
    counts = client.get("/api/admin/dashboard").json
    assert counts["contacts"] == 1
    assert counts["new_contacts"] == 1
    assert counts["media"] == 0

    member = app.test_client()
    signup_member(member)
    assert member.get("/api/admin/dashboard").status_code == 403
