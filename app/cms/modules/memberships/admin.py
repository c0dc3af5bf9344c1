from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from app.cms.db import db_session
from app.cms.modules.crm.models import CrmContact
from app.cms.modules.memberships.codes import CodeGenerationError
from app.cms.modules.memberships.models import ContactMag, Mag, MembershipCodeBatch
from app.cms.modules.memberships.service import (
    ASSIGNED_VIA,
    CodeRedemptionError,
    assign_mag,
    batch_codes,
    batch_to_dict,
    create_batch,
    create_mag,
    delete_mag,
    generate_codes,
    mag_to_dict,
    member_for_user,
    redeem_code,
    remove_mag,
    search_mags,
    update_mag,
)
from app.cms.rbac import require_feature, require_login
from app.cms.utils import clean_str, current_user, isoformat, json_body, json_error

bp = Blueprint("memberships", __name__)
logger = logging.getLogger(__name__)


def _max_attempts() -> int:
    return int(current_app.config.get("MAG_CODE_MAX_ATTEMPTS") or 5)


# ---------- MAGs ----------


@bp.get("/api/crm/mags")
@require_feature("memberships")
def api_mags_list():
    mags = search_mags(db_session(), clean_str(request.args.get("q")), clean_str(request.args.get("status")))
    return jsonify({"mags": [mag_to_dict(m) for m in mags]})


@bp.get("/api/crm/mags/search")
@require_feature("memberships")
def api_mags_search():
    q = clean_str(request.args.get("q"))
    mags = search_mags(db_session(), q, "active")[:20]
    return jsonify({"mags": [{"id": m.id, "name": m.name, "uid": m.uid} for m in mags]})


@bp.post("/api/crm/mags")
@require_feature("memberships")
def api_mags_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        mag = create_mag(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(mag_to_dict(mag)), 201


@bp.get("/api/crm/mags/<int:mag_id>")
@require_feature("memberships")
def api_mags_get(mag_id: int):
    s = db_session()
    mag = s.get(Mag, mag_id)
    if mag is None:
        return json_error("Membership not found", 404)
    data = mag_to_dict(mag)
    data["contact_count"] = s.query(ContactMag).filter(ContactMag.mag_id == mag.id).count()
    return jsonify(data)


@bp.put("/api/crm/mags/<int:mag_id>")
@require_feature("memberships")
def api_mags_update(mag_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    mag = s.get(Mag, mag_id)
    if mag is None:
        return json_error("Membership not found", 404)
    try:
        update_mag(s, mag, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(mag_to_dict(mag))


@bp.delete("/api/crm/mags/<int:mag_id>")
@require_feature("memberships")
def api_mags_delete(mag_id: int):
    s = db_session()
    mag = s.get(Mag, mag_id)
    if mag is None:
        return json_error("Membership not found", 404)
    try:
        delete_mag(s, mag, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"success": True})


# ---------- Contact assignments ----------


def _live_contact(contact_id: int) -> CrmContact | None:
    c = db_session().get(CrmContact, contact_id)
    return c if c is not None and c.deleted_at is None else None


@bp.get("/api/crm/contacts/<int:contact_id>/mags")
@require_feature("memberships")
def api_contact_mags(contact_id: int):
    contact = _live_contact(contact_id)
    if contact is None:
        return json_error("Contact not found", 404)
    return jsonify(
        {
            "mags": [
                {
                    "id": cm.mag_id,
                    "name": cm.mag.name,
                    "uid": cm.mag.uid,
                    "assigned_via": cm.assigned_via,
                    "assigned_at": isoformat(cm.assigned_at),
                }
                for cm in contact.mags
            ]
        }
    )


@bp.post("/api/crm/contacts/<int:contact_id>/mags")
@require_feature("memberships")
def api_contact_mags_assign(contact_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    contact = _live_contact(contact_id)
    if contact is None:
        return json_error("Contact not found", 404)
    try:
        mag = s.get(Mag, int(body.get("mag_id")))
    except (TypeError, ValueError):
        return json_error("mag_id is required", 400)
    if mag is None:
        return json_error("Membership not found", 404)
    assigned_via = clean_str(body.get("assigned_via")) or "admin"
    if assigned_via not in ASSIGNED_VIA:
        return json_error(f"Invalid assigned_via. Must be one of: {', '.join(ASSIGNED_VIA)}", 400)
    _, created = assign_mag(s, contact, mag, assigned_via=assigned_via, user=current_user())
    s.commit()
    return jsonify({"success": True, "created": created}), 201 if created else 200


@bp.delete("/api/crm/contacts/<int:contact_id>/mags/<int:mag_id>")
@require_feature("memberships")
def api_contact_mags_remove(contact_id: int, mag_id: int):
    s = db_session()
    contact = _live_contact(contact_id)
    if contact is None:
        return json_error("Contact not found", 404)
    if not remove_mag(s, contact, mag_id, current_user()):
        return json_error("Membership not assigned", 404)
    s.commit()
    return jsonify({"success": True})


# ---------- Code batches ----------


@bp.get("/api/crm/mags/batches")
@require_feature("code_generator")
def api_batches_list():
    s = db_session()
    q = s.query(MembershipCodeBatch)
    if request.args.get("mag_id"):
        try:
            q = q.filter(MembershipCodeBatch.mag_id == int(request.args["mag_id"]))
        except ValueError:
            return json_error("mag_id must be an integer", 400)
    batches = q.order_by(MembershipCodeBatch.created_at.desc()).all()
    return jsonify({"batches": [batch_to_dict(b) for b in batches]})


@bp.post("/api/crm/mags/batches")
@require_feature("code_generator")
def api_batches_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        batch = create_batch(s, body, current_user(), _max_attempts())
    except ValueError as e:
        return json_error(str(e), 400)
    except CodeGenerationError as e:
        s.rollback()
        logger.error("Multi-use code generation failed: %s", e)
        return json_error(str(e), 500)
    s.commit()
    return jsonify(batch_to_dict(batch)), 201


@bp.post("/api/crm/mags/batches/<int:batch_id>/generate")
@require_feature("code_generator")
def api_batches_generate(batch_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    batch = s.get(MembershipCodeBatch, batch_id)
    if batch is None:
        return json_error("Batch not found", 404)
    try:
        count = int(body.get("count") or 0)
    except (TypeError, ValueError):
        return json_error("count must be a number", 400)
    try:
        codes = generate_codes(s, batch, count, current_user(), _max_attempts())
    except ValueError as e:
        return json_error(str(e), 400)
    except CodeGenerationError as e:
        s.rollback()
        logger.error("Code generation failed for batch %s: %s", batch_id, e)
        return json_error(str(e), 500)
    s.commit()
    return jsonify({"success": True, "count": len(codes), "codes": codes}), 201


@bp.get("/api/crm/mags/batches/<int:batch_id>/codes")
@require_feature("code_generator")
def api_batches_codes(batch_id: int):
    s = db_session()
    batch = s.get(MembershipCodeBatch, batch_id)
    if batch is None:
        return json_error("Batch not found", 404)
    codes = batch_codes(s, batch)
    return jsonify(
        {
            "batch": batch_to_dict(batch),
            "codes": [
                {
                    "id": c.id,
                    "code": c.code_plain,
                    "status": c.status,
                    "redeemed_at": isoformat(c.redeemed_at),
                    "redeemed_by_member_id": c.redeemed_by_member_id,
                }
                for c in codes
            ],
        }
    )


# ---------- Member redemption ----------


@bp.post("/api/members/redeem-code")
@require_login
def api_redeem_code():
    user = current_user()
    if not user.is_member:
        return json_error("Only members can redeem codes", 403)
    body = json_body()
    code = clean_str(body.get("code")) if body else None
    if not code:
        return json_error("Code is required", 400)
    s = db_session()
    member = member_for_user(s, user.id)
    if member is None:
        return json_error("Member profile not found", 403)
    try:
        result = redeem_code(s, code, member)
    except CodeRedemptionError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(
        {
            "success": True,
            "already_assigned": result.already_assigned,
            "mag": {"id": result.mag.id, "name": result.mag.name, "uid": result.mag.uid},
        }
    )
