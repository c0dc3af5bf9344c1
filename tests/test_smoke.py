from conftest import CSRF, PASSWORD, login


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_plain(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_login_and_admin_access(client):
    # Anonymous should be sent to the login page
    r = client.get("/admin/dashboard")
    assert r.status_code == 302
    assert "/auth/login" in r.headers["Location"]

    r = client.post("/auth/login", data={"email": "admin@example.com", "password": PASSWORD}, follow_redirects=False)
    assert r.status_code == 302

    r = client.get("/admin/dashboard")
    assert r.status_code == 200
    assert b"Dashboard" in r.data


def test_login_bad_password_flashes(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "nope"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"Invalid credentials" in r.data


def test_api_login_rejects_bad_credentials(client):
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "wrong-password"})
    assert r.status_code == 401
    assert r.json["error"] == "Invalid credentials"


def test_login_rate_limited_after_repeated_failures(client):
    for _ in range(5):
        client.post("/api/auth/login", json={"email": "admin@example.com", "password": "wrong-password"})
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
    assert r.status_code == 429


def test_me_context_requires_login(client):
    r = client.get("/api/admin/me/context")
    assert r.status_code == 401


def test_me_context_for_site_admin(client):
    login(client, "admin")
    r = client.get("/api/admin/me/context")
    assert r.status_code == 200
    body = r.json
    assert body["role"] == "admin"
    assert body["is_superadmin"] is False
    assert "contacts" in body["features"]
    assert "superadmin" not in body["features"]


def test_me_context_for_superadmin(client):
    login(client, "super")
    body = client.get("/api/admin/me/context").json
    assert body["role"] == "superadmin"
    assert body["features"] == "all"


def test_api_write_without_csrf_is_rejected(client):
    login(client, "admin")
    r = client.post("/api/crm/contacts", json={"email": "x@example.com"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]

    r = client.post("/api/crm/contacts", json={"email": "x@example.com"}, headers={"X-CSRF-Token": CSRF})
    assert r.status_code == 201


def test_api_unknown_route_returns_json_404(client):
    r = client.get("/api/does-not-exist")
    assert r.status_code == 404
    assert r.json["error"] == "Not found"


def test_logout_clears_session(client):
    login(client, "admin")
    r = client.get("/auth/logout")
    assert r.status_code == 302
    assert client.get("/api/admin/me/context").status_code == 401
