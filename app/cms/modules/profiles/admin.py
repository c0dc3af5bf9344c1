from __future__ import annotations

from flask import Blueprint, jsonify

from app.cms.db import db_session
from app.cms.modules.memberships.service import member_for_user
from app.cms.modules.profiles.service import (
    ProfileSyncError,
    get_profile,
    profile_to_dict,
    update_member_profile,
    update_staff_profile,
)
from app.cms.rbac import require_login
from app.cms.utils import current_user, json_body, json_error

bp = Blueprint("profiles", __name__)


# ---------- Staff ----------


@bp.get("/api/admin/profile")
@require_login
def api_admin_profile_get():
    user = current_user()
    if user.is_member:
        return json_error("Forbidden", 403)
    return jsonify({"email": user.email, "profile": profile_to_dict(user, get_profile(db_session(), user))})


@bp.route("/api/admin/profile", methods=["PUT", "PATCH"])
@require_login
def api_admin_profile_put():
    user = current_user()
    if user.is_member:
        return json_error("Forbidden", 403)
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        profile = update_staff_profile(s, user, body)
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"email": user.email, "profile": profile_to_dict(user, profile)})


# ---------- Members ----------


def _member_payload(user, member) -> dict:
    return {"email": user.email, "display_name": user.display_name, "contact_id": member.contact_id if member else None}


@bp.get("/api/members/profile")
@require_login
def api_member_profile_get():
    user = current_user()
    if not user.is_member:
        return json_error("Only members have a member profile", 403)
    return jsonify(_member_payload(user, member_for_user(db_session(), user.id)))


@bp.put("/api/members/profile")
@require_login
def api_member_profile_put():
    user = current_user()
    if not user.is_member:
        return json_error("Only members have a member profile", 403)
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        member = update_member_profile(s, user, body)
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    except ProfileSyncError as e:
        s.rollback()
        return json_error(f"Failed to update member contact: {e}", 500)
    s.commit()
    return jsonify(_member_payload(user, member))
