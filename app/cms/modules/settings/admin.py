from __future__ import annotations

from flask import Blueprint, jsonify

from app.cms.audit import record_event
from app.cms.db import db_session
from app.cms.modules.settings.service import (
    ALLOWED_KEYS,
    SiteModeLockedError,
    get_setting,
    invite_team_member,
    list_team,
    set_setting,
    set_site_mode,
)
from app.cms.modules.superadmin.service import assignment_to_dict
from app.cms.rbac import SUPERADMIN_ROLE, require_feature, resolve_role
from app.cms.tenancy import current_tenant_site
from app.cms.utils import clean_str, current_user, isoformat, json_body, json_error

bp = Blueprint("settings", __name__)


def _site_or_error():
    site = current_tenant_site(db_session())
    if site is None:
        return None, json_error("Tenant site is not configured", 404)
    return site, None


def _is_site_admin() -> bool:
    s = db_session()
    return resolve_role(s, current_user(), current_tenant_site(s)) in (SUPERADMIN_ROLE, "admin")


# ---------- Site mode ----------


@bp.get("/api/settings/site-mode")
@require_feature("settings")
def api_site_mode_get():
    site, err = _site_or_error()
    if err:
        return err
    return jsonify(
        {
            "site_mode": site.site_mode,
            "locked": site.site_mode_locked,
            "locked_reason": site.site_mode_locked_reason,
            "locked_at": isoformat(site.site_mode_locked_at),
        }
    )


@bp.put("/api/settings/site-mode")
@require_feature("settings")
def api_site_mode_put():
    if not _is_site_admin():
        return json_error("Only site administrators can change the site mode", 403)
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    site, err = _site_or_error()
    if err:
        return err
    try:
        set_site_mode(s, site, clean_str(body.get("site_mode")) or "", current_user())
    except SiteModeLockedError as e:
        return json_error(str(e), 403, locked=True)
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"success": True, "site_mode": site.site_mode})


# ---------- Membership switch ----------


@bp.get("/api/settings/membership")
@require_feature("settings")
def api_membership_get():
    site, err = _site_or_error()
    if err:
        return err
    return jsonify({"membership_enabled": site.membership_enabled})


@bp.put("/api/settings/membership")
@require_feature("settings")
def api_membership_put():
    if not _is_site_admin():
        return json_error("Only site administrators can change membership settings", 403)
    body = json_body()
    if body is None or not isinstance(body.get("membership_enabled"), bool):
        return json_error("membership_enabled must be true or false", 400)
    s = db_session()
    site, err = _site_or_error()
    if err:
        return err
    site.membership_enabled = body["membership_enabled"]
    record_event(
        s,
        actor=current_user(),
        action="site.membership.update",
        entity_type="TenantSite",
        entity_id=str(site.id),
        metadata={"membership_enabled": site.membership_enabled},
    )
    s.commit()
    return jsonify({"success": True, "membership_enabled": site.membership_enabled})


# ---------- Team ----------


@bp.get("/api/settings/team")
@require_feature("users")
def api_team_list():
    site, err = _site_or_error()
    if err:
        return err
    return jsonify({"team": [assignment_to_dict(a) for a in list_team(db_session(), site)]})


@bp.post("/api/settings/team")
@require_feature("users")
def api_team_invite():
    if not _is_site_admin():
        return json_error("Only site administrators can manage the team", 403)
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    site, err = _site_or_error()
    if err:
        return err
    try:
        a = invite_team_member(
            s,
            site,
            email=str(body.get("email") or ""),
            role_slug=clean_str(body.get("role_slug")) or "",
            user=current_user(),
        )
    except LookupError as e:
        return json_error(str(e), 404)
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(assignment_to_dict(a)), 201


# ---------- Key/value settings ----------


@bp.get("/api/settings/<key>")
@require_feature("settings")
def api_setting_get(key: str):
    if key not in ALLOWED_KEYS:
        return json_error("Unknown setting", 404)
    return jsonify({"key": key, "value": get_setting(db_session(), key)})


@bp.put("/api/settings/<key>")
@require_feature("settings")
def api_setting_put(key: str):
    if key not in ALLOWED_KEYS:
        return json_error("Unknown setting", 404)
    body = json_body()
    if body is None or "value" not in body:
        return json_error("Body must be an object with a value", 400)
    s = db_session()
    try:
        row = set_setting(s, key, body["value"], current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"key": key, "value": row.value})
