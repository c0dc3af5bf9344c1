"""Feature resolution and route gating."""
from app.cms.db import session_scope
from app.cms.models import Feature, TenantFeature, TenantSite, User
from app.cms.rbac import (
    can_access_feature,
    effective_feature_slugs,
    ordered_features,
    path_to_feature_slug,
    superadmin_feature_filtered,
)
from conftest import login


def test_can_access_feature_all_and_parent():
    assert can_access_feature("all", "contacts")
    assert can_access_feature(["crm"], "contacts")
    assert can_access_feature(["contacts"], "contacts")
    assert not can_access_feature(["contacts"], "forms")
    assert not can_access_feature(["settings"], "contacts")


def test_superadmin_slug_never_granted_by_features():
    assert not can_access_feature(["superadmin"], "superadmin")
    assert can_access_feature("all", "superadmin")


def test_path_to_feature_slug_most_specific_prefix():
    assert path_to_feature_slug("/admin/crm/forms/submissions") == "form_submissions"
    assert path_to_feature_slug("/admin/crm/forms/12") == "forms"
    assert path_to_feature_slug("/admin/crm/memberships/code-generator") == "code_generator"
    assert path_to_feature_slug("/admin/crm") == "crm"
    assert path_to_feature_slug("/admin/dashboard") is None
    assert path_to_feature_slug("/admin") is None
    assert path_to_feature_slug("/about") is None


def test_superadmin_feature_filtered_dedupes():
    assert superadmin_feature_filtered(["crm", " crm", "superadmin", "", "media"]) == ["crm", "media"]


def test_effective_features_intersect_tenant_and_role(app):
    with session_scope(app) as s:
        site = s.query(TenantSite).one()
        editor = s.query(User).filter(User.email == "editor@example.com").one()
        assert effective_feature_slugs(s, editor, site) == ["calendar", "content", "media"]

        s.add(TenantFeature(tenant_site_id=site.id, feature_slug="content"))
        s.flush()
        assert effective_feature_slugs(s, editor, site) == ["content"]

        nobody = s.query(User).filter(User.email == "nobody@example.com").one()
        assert effective_feature_slugs(s, nobody, site) == []
        assert effective_feature_slugs(s, None, site) == []

        sup = s.query(User).filter(User.email == "super@example.com").one()
        assert effective_feature_slugs(s, sup, site) == "all"


def test_ordered_features_roots_then_children(app):
    with session_scope(app) as s:
        ordered = [f.slug for f in ordered_features(s.query(Feature).all())]
    assert ordered.index("crm") < ordered.index("contacts") < ordered.index("forms")
    assert ordered.index("code_generator") < ordered.index("marketing")


def test_api_requires_login(client):
    r = client.get("/api/crm/contacts")
    assert r.status_code == 401
    assert r.json["error"] == "Unauthorized"


def test_api_forbidden_without_feature(client):
    login(client, "editor")
    r = client.get("/api/crm/contacts")
    assert r.status_code == 403
    assert r.json["missing_feature"] == "contacts"

    assert client.get("/api/content").status_code == 200


def test_unassigned_staff_is_forbidden_everywhere(client):
    login(client, "nobody")
    assert client.get("/api/content").status_code == 403
    assert client.get("/admin/crm/contacts").status_code == 403


def test_viewer_reaches_contacts_page(client):
    login(client, "viewer")
    r = client.get("/admin/crm/contacts")
    assert r.status_code == 200
    assert b"Contacts" in r.data


def test_superadmin_routes_need_superadmin(client):
    login(client, "admin")
    assert client.get("/api/super/sites").status_code == 403
    assert client.get("/admin/super").status_code == 403
