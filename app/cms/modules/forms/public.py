from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.cms.db import db_session
from app.cms.modules.forms.service import get_form_by_id_or_slug, submit_form
from app.cms.ratelimit import client_identifier, rate_limited
from app.cms.utils import json_body, json_error

bp = Blueprint("forms_public", __name__)
logger = logging.getLogger(__name__)


@bp.post("/api/forms/<ident>/submit")
@rate_limited
def submit(ident: str):
    """Public form submission (no session, no CSRF token; rate limited per client)."""
    s = db_session()
    form = get_form_by_id_or_slug(s, ident)
    if form is None:
        return json_error("Form not found", 404)
    data = json_body()
    if data is None:
        return json_error("Request body must be a JSON object", 400)
    try:
        sub = submit_form(s, form, data, ip_address=request.remote_addr)
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    logger.info("Form %s submission %s from %s", form.slug, sub.id, client_identifier(request))
    return jsonify({"success": True, "message": form.success_message, "submission_id": sub.id})
