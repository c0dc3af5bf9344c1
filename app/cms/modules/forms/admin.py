from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.cms.db import db_session
from app.cms.modules.forms.models import Form, FormSubmission
from app.cms.modules.forms.service import (
    create_form,
    delete_form,
    form_to_dict,
    get_form_by_id_or_slug,
    set_submission_status,
    submission_to_dict,
    update_form,
)
from app.cms.rbac import require_feature
from app.cms.utils import clean_str, current_user, json_body, json_error

bp = Blueprint("forms", __name__)


@bp.get("/api/crm/forms")
@require_feature("forms")
def api_forms_list():
    s = db_session()
    forms = s.query(Form).order_by(Form.name.asc()).all()
    return jsonify({"forms": [form_to_dict(f) for f in forms]})


@bp.post("/api/crm/forms")
@require_feature("forms")
def api_forms_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        form = create_form(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(form_to_dict(form)), 201


@bp.get("/api/crm/forms/<ident>")
@require_feature("forms")
def api_forms_get(ident: str):
    form = get_form_by_id_or_slug(db_session(), ident)
    if form is None:
        return json_error("Form not found", 404)
    return jsonify(form_to_dict(form))


@bp.put("/api/crm/forms/<int:form_id>")
@require_feature("forms")
def api_forms_update(form_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    form = s.get(Form, form_id)
    if form is None:
        return json_error("Form not found", 404)
    try:
        update_form(s, form, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(form_to_dict(form))


@bp.delete("/api/crm/forms/<int:form_id>")
@require_feature("forms")
def api_forms_delete(form_id: int):
    s = db_session()
    form = s.get(Form, form_id)
    if form is None:
        return json_error("Form not found", 404)
    delete_form(s, form, current_user())
    s.commit()
    return jsonify({"success": True})


# ---------- Submissions ----------


def _submissions(form_id: int | None):
    s = db_session()
    q = s.query(FormSubmission)
    if form_id is not None:
        q = q.filter(FormSubmission.form_id == form_id)
    status = clean_str(request.args.get("status"))
    if status:
        q = q.filter(FormSubmission.status == status)
    return q.order_by(FormSubmission.created_at.desc(), FormSubmission.id.desc()).limit(500).all()


@bp.get("/api/crm/forms/submissions")
@require_feature("form_submissions")
def api_submissions_all():
    return jsonify({"submissions": [submission_to_dict(x) for x in _submissions(None)]})


@bp.get("/api/crm/forms/<int:form_id>/submissions")
@require_feature("form_submissions")
def api_submissions_for_form(form_id: int):
    if db_session().get(Form, form_id) is None:
        return json_error("Form not found", 404)
    return jsonify({"submissions": [submission_to_dict(x) for x in _submissions(form_id)]})


@bp.put("/api/crm/forms/submissions/<int:submission_id>")
@require_feature("form_submissions")
def api_submission_status(submission_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    sub = s.get(FormSubmission, submission_id)
    if sub is None:
        return json_error("Submission not found", 404)
    try:
        set_submission_status(s, sub, clean_str(body.get("status")) or "", current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(submission_to_dict(sub))
