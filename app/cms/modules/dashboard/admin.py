from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from flask import Blueprint, abort, jsonify, render_template

from app.cms.db import db_session
from app.cms.rbac import current_effective_features, require_login, user_has_feature
from app.cms.utils import current_user, json_error

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

bp = Blueprint("dashboard", __name__)

UPCOMING_DAYS = 30


def dashboard_counts(s: "Session", *, now: datetime | None = None) -> dict[str, Any]:
    from app.cms.modules.content.models import Content
    from app.cms.modules.crm.models import CrmContact
    from app.cms.modules.crm.service import new_contact_count
    from app.cms.modules.events.service import events_in_range
    from app.cms.modules.forms.models import FormSubmission
    from app.cms.modules.media.models import Media

    now = now or datetime.utcnow()
    return {
        "contacts": s.query(CrmContact).filter(CrmContact.deleted_at.is_(None)).count(),
        "new_contacts": new_contact_count(s),
        "content": s.query(Content).count(),
        "published_content": s.query(Content).filter(Content.status == "published").count(),
        "media": s.query(Media).count(),
        "upcoming_events": len(events_in_range(s, now, now + timedelta(days=UPCOMING_DAYS))),
        "submissions": s.query(FormSubmission).count(),
        "new_submissions": s.query(FormSubmission).filter(FormSubmission.status == "new").count(),
    }


def _staff_only():
    if current_user().is_member:
        return json_error("Forbidden", 403)
    return None


@bp.get("/admin")
@bp.get("/admin/dashboard")
@require_login
def dashboard():
    if current_user().is_member:
        abort(403)
    return render_template(
        "admin/dashboard.html",
        counts=dashboard_counts(db_session()),
        effective=current_effective_features(),
        has_crm=user_has_feature(current_user(), "contacts"),
    )


@bp.get("/api/admin/dashboard")
@require_login
def api_dashboard():
    denied = _staff_only()
    if denied:
        return denied
    return jsonify(dashboard_counts(db_session()))
