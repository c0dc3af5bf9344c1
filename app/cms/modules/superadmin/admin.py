from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, render_template, request
from sqlalchemy.exc import SQLAlchemyError

from app.cms.db import db_session
from app.cms.models import AdminRole, CodeSnippet, Feature, TenantSite, TenantUserAssignment
from app.cms.modules.settings.service import lock_site_mode
from app.cms.modules.superadmin.service import (
    SITE_STATUSES,
    assign_user,
    assignment_to_dict,
    create_role,
    create_site,
    create_snippet,
    delete_role,
    delete_snippet,
    feature_to_dict,
    list_assignments,
    list_sites,
    remove_assignment,
    role_feature_ids,
    role_to_dict,
    set_role_features,
    set_site_features,
    site_feature_slugs,
    site_to_dict,
    snippet_to_dict,
    update_site,
    update_snippet,
)
from app.cms.rbac import ordered_features, require_superadmin
from app.cms.tenancy import provision_tenant_schema
from app.cms.utils import clean_str, current_user, json_body, json_error, parse_id_list

bp = Blueprint("superadmin", __name__)
logger = logging.getLogger(__name__)


@bp.get("/admin/super")
@require_superadmin
def overview():
    s = db_session()
    return render_template(
        "admin/super/index.html",
        sites=list_sites(s),
        role_count=s.query(AdminRole).count(),
        feature_count=s.query(Feature).count(),
    )


# ---------- Tenant sites ----------


def _provision(site: TenantSite) -> None:
    engine = current_app.extensions["sqlalchemy_base_engine"]
    provision_tenant_schema(engine, site.schema_name)


@bp.get("/api/super/sites")
@require_superadmin
def api_sites_list():
    status = clean_str(request.args.get("status"))
    if status and status not in SITE_STATUSES:
        return json_error(f"Invalid status. Must be one of: {', '.join(SITE_STATUSES)}", 400)
    return jsonify({"sites": [site_to_dict(x) for x in list_sites(db_session(), status)]})


@bp.post("/api/super/sites")
@require_superadmin
def api_sites_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        site = create_site(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    provisioned = False
    if body.get("provision"):
        try:
            _provision(site)
            provisioned = True
        except SQLAlchemyError as e:
            logger.exception("Schema provisioning failed for %s: %s", site.schema_name, e)
            return json_error("Site created but schema provisioning failed", 500, site=site_to_dict(site))
    data = site_to_dict(site)
    data["provisioned"] = provisioned
    return jsonify(data), 201


@bp.get("/api/super/sites/<int:site_id>")
@require_superadmin
def api_sites_get(site_id: int):
    s = db_session()
    site = s.get(TenantSite, site_id)
    if site is None:
        return json_error("Site not found", 404)
    data = site_to_dict(site)
    data["features"] = site_feature_slugs(s, site)
    data["users"] = [assignment_to_dict(a) for a in list_assignments(s, site.id)]
    return jsonify(data)


@bp.put("/api/super/sites/<int:site_id>")
@require_superadmin
def api_sites_update(site_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    site = s.get(TenantSite, site_id)
    if site is None:
        return json_error("Site not found", 404)
    try:
        update_site(s, site, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(site_to_dict(site))


@bp.post("/api/super/sites/<int:site_id>/provision")
@require_superadmin
def api_sites_provision(site_id: int):
    site = db_session().get(TenantSite, site_id)
    if site is None:
        return json_error("Site not found", 404)
    try:
        _provision(site)
    except SQLAlchemyError as e:
        logger.exception("Schema provisioning failed for %s: %s", site.schema_name, e)
        return json_error("Schema provisioning failed", 500)
    return jsonify({"success": True, "schema_name": site.schema_name})


@bp.post("/api/super/sites/<int:site_id>/site-mode/lock")
@require_superadmin
def api_sites_lock(site_id: int):
    body = json_body() or {}
    s = db_session()
    site = s.get(TenantSite, site_id)
    if site is None:
        return json_error("Site not found", 404)
    mode = clean_str(body.get("site_mode"))
    if mode:
        if mode not in ("live", "coming_soon"):
            return json_error("Invalid site mode. Must be one of: live, coming_soon", 400)
        site.site_mode = mode
    lock_site_mode(s, site, current_user(), locked=True, reason=clean_str(body.get("reason")))
    s.commit()
    return jsonify(site_to_dict(site))


@bp.post("/api/super/sites/<int:site_id>/site-mode/unlock")
@require_superadmin
def api_sites_unlock(site_id: int):
    s = db_session()
    site = s.get(TenantSite, site_id)
    if site is None:
        return json_error("Site not found", 404)
    lock_site_mode(s, site, current_user(), locked=False)
    s.commit()
    return jsonify(site_to_dict(site))


@bp.get("/api/super/sites/<int:site_id>/features")
@require_superadmin
def api_site_features_get(site_id: int):
    s = db_session()
    site = s.get(TenantSite, site_id)
    if site is None:
        return json_error("Site not found", 404)
    return jsonify({"features": site_feature_slugs(s, site)})


@bp.put("/api/super/sites/<int:site_id>/features")
@require_superadmin
def api_site_features_put(site_id: int):
    body = json_body()
    slugs = body.get("features") if body else None
    if not isinstance(slugs, list):
        return json_error("features must be a list of slugs", 400)
    s = db_session()
    site = s.get(TenantSite, site_id)
    if site is None:
        return json_error("Site not found", 404)
    try:
        enabled = set_site_features(s, site, slugs, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"features": enabled})


# ---------- Roles and feature registry ----------


@bp.get("/api/super/features")
@require_superadmin
def api_features_list():
    features = ordered_features(db_session().query(Feature).all())
    return jsonify({"features": [feature_to_dict(f) for f in features]})


@bp.get("/api/super/roles")
@require_superadmin
def api_roles_list():
    roles = db_session().query(AdminRole).order_by(AdminRole.is_system.desc(), AdminRole.slug.asc()).all()
    return jsonify({"roles": [role_to_dict(r) for r in roles]})


@bp.post("/api/super/roles")
@require_superadmin
def api_roles_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        role = create_role(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(role_to_dict(role)), 201


def _role(slug: str) -> AdminRole | None:
    return db_session().query(AdminRole).filter(AdminRole.slug == slug).one_or_none()


@bp.delete("/api/super/roles/<slug>")
@require_superadmin
def api_roles_delete(slug: str):
    s = db_session()
    role = _role(slug)
    if role is None:
        return json_error("Role not found", 404)
    try:
        delete_role(s, role, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"success": True})


@bp.get("/api/super/roles/<slug>/features")
@require_superadmin
def api_role_features_get(slug: str):
    if _role(slug) is None:
        return json_error("Role not found", 404)
    return jsonify({"feature_ids": role_feature_ids(db_session(), slug)})


@bp.put("/api/super/roles/<slug>/features")
@require_superadmin
def api_role_features_put(slug: str):
    body = json_body()
    if body is None or not isinstance(body.get("feature_ids"), list):
        return json_error("feature_ids must be a list", 400)
    raw = body["feature_ids"]
    ids = parse_id_list(raw) if raw else []
    if ids is None:
        return json_error("feature_ids must contain ids", 400)
    s = db_session()
    role = _role(slug)
    if role is None:
        return json_error("Role not found", 404)
    try:
        enabled = set_role_features(s, role, ids, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"feature_ids": enabled})


# ---------- Tenant users ----------


@bp.get("/api/super/users")
@require_superadmin
def api_users_list():
    try:
        site_id = int(request.args["site_id"]) if request.args.get("site_id") else None
    except ValueError:
        return json_error("site_id must be an integer", 400)
    return jsonify({"assignments": [assignment_to_dict(a) for a in list_assignments(db_session(), site_id)]})


@bp.post("/api/super/users")
@require_superadmin
def api_users_assign():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        a = assign_user(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(assignment_to_dict(a)), 201


@bp.delete("/api/super/users/<int:assignment_id>")
@require_superadmin
def api_users_remove(assignment_id: int):
    s = db_session()
    a = s.get(TenantUserAssignment, assignment_id)
    if a is None:
        return json_error("Assignment not found", 404)
    remove_assignment(s, a, current_user())
    s.commit()
    return jsonify({"success": True})


# ---------- Code snippets ----------


@bp.get("/api/super/snippets")
@require_superadmin
def api_snippets_list():
    q = db_session().query(CodeSnippet)
    snippet_type = clean_str(request.args.get("type"))
    if snippet_type:
        q = q.filter(CodeSnippet.type == snippet_type)
    return jsonify({"snippets": [snippet_to_dict(x) for x in q.order_by(CodeSnippet.title.asc()).all()]})


@bp.post("/api/super/snippets")
@require_superadmin
def api_snippets_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        sn = create_snippet(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(snippet_to_dict(sn)), 201


@bp.get("/api/super/snippets/<int:snippet_id>")
@require_superadmin
def api_snippets_get(snippet_id: int):
    sn = db_session().get(CodeSnippet, snippet_id)
    if sn is None:
        return json_error("Snippet not found", 404)
    return jsonify(snippet_to_dict(sn))


@bp.put("/api/super/snippets/<int:snippet_id>")
@require_superadmin
def api_snippets_update(snippet_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    sn = s.get(CodeSnippet, snippet_id)
    if sn is None:
        return json_error("Snippet not found", 404)
    try:
        update_snippet(s, sn, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(snippet_to_dict(sn))


@bp.delete("/api/super/snippets/<int:snippet_id>")
@require_superadmin
def api_snippets_delete(snippet_id: int):
    s = db_session()
    sn = s.get(CodeSnippet, snippet_id)
    if sn is None:
        return json_error("Snippet not found", 404)
    delete_snippet(s, sn, current_user())
    s.commit()
    return jsonify({"success": True})
