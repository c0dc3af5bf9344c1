import pytest
from werkzeug.security import generate_password_hash

from app.cms import auth, create_app
from app.cms.db import session_scope
from app.cms.models import Base, TenantSite, TenantUserAssignment, User
from app.cms.modules.content.service import ensure_core_types
from app.cms.rbac import ensure_system_roles

PASSWORD = "correct-horse-battery"
CSRF = "test-csrf-token"

USERS = {
    "super": ("super@example.com", "superadmin", None),
    "admin": ("admin@example.com", "admin", "admin"),
    "editor": ("editor@example.com", "admin", "editor"),
    "viewer": ("viewer@example.com", "admin", "viewer"),
    "nobody": ("nobody@example.com", "admin", None),
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("CLIENT_SCHEMA", "S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    monkeypatch.chdir(tmp_path)
    auth._login_attempts.clear()

    app = create_app()
    app.config["TESTING"] = True
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        ensure_system_roles(s)
        ensure_core_types(s)
        site = TenantSite(name="Test Site", slug="test-site", schema_name="public", site_mode="live")
        s.add(site)
        s.flush()
        for email, user_type, role in USERS.values():
            u = User(email=email, password_hash=generate_password_hash(PASSWORD), user_type=user_type, is_active=True)
            s.add(u)
            s.flush()
            if role:
                s.add(TenantUserAssignment(user_id=u.id, tenant_site_id=site.id, role_slug=role))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def login(client, who: str = "admin", *, email: str | None = None, password: str = PASSWORD) -> dict:
    """Sign in over the JSON API and return headers carrying a valid CSRF token."""
    r = client.post("/api/auth/login", json={"email": email or USERS[who][0], "password": password})
    assert r.status_code == 200, r.json
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    return {"X-CSRF-Token": CSRF}


def signup_member(client, email: str = "member@example.com", display_name: str | None = "Mia Member") -> tuple[dict, dict]:
    """Self-signup as a member; returns (csrf headers, signup response body)."""
    r = client.post(
        "/api/auth/signup",
        json={"email": email, "password": PASSWORD, "display_name": display_name},
    )
    assert r.status_code == 201, r.json
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    return {"X-CSRF-Token": CSRF}, r.json
