from __future__ import annotations

from flask import Blueprint, jsonify

from app.cms.access import can_view, check_access, current_viewer, denied_response
from app.cms.db import db_session
from app.cms.modules.content.models import Content, ContentType
from app.cms.modules.content.service import content_query, content_to_dict, get_type
from app.cms.utils import json_error

bp = Blueprint("content_public", __name__)


def _required(c: Content) -> list[int]:
    return [c.required_mag_id] if c.required_mag_id else []


@bp.get("/api/public/content/<type_slug>")
def list_published(type_slug: str):
    """Published items of a type, without the ones the viewer may not see."""
    s = db_session()
    if get_type(s, type_slug) is None:
        return json_error("Content type not found", 404)
    viewer = current_viewer()
    items = content_query(s, type_slug=type_slug, status="published").order_by(Content.published_at.desc()).all()
    out = [content_to_dict(c, include_body=False) for c in items if can_view(viewer, c.access_level, _required(c))]
    return jsonify({"content": out})


@bp.get("/api/public/content/<type_slug>/<slug>")
def get_published(type_slug: str, slug: str):
    s = db_session()
    c = (
        s.query(Content)
        .join(ContentType, ContentType.id == Content.content_type_id)
        .filter(ContentType.slug == type_slug, Content.slug == slug, Content.status == "published")
        .one_or_none()
    )
    if c is None:
        return json_error("Not found", 404)
    result = check_access(
        current_viewer(),
        c.access_level,
        _required(c),
        visibility_mode=c.visibility_mode,
        restricted_message=c.restricted_message,
    )
    if not result.allowed:
        return denied_response(result)
    return jsonify(content_to_dict(c))
