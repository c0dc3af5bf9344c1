from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.cms.db import db_session
from app.cms.modules.content.models import Content, ContentType
from app.cms.modules.content.service import (
    content_query,
    content_to_dict,
    create_content,
    create_type,
    delete_content,
    delete_type,
    type_to_dict,
    update_content,
)
from app.cms.rbac import require_feature
from app.cms.utils import clean_str, current_user, json_body, json_error

bp = Blueprint("content", __name__)


# ---------- Content types ----------


@bp.get("/api/content-types")
@require_feature("content")
def api_types_list():
    s = db_session()
    types = s.query(ContentType).order_by(ContentType.display_order.asc(), ContentType.label.asc()).all()
    return jsonify({"types": [type_to_dict(t) for t in types]})


@bp.post("/api/content-types")
@require_feature("content")
def api_types_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        ct = create_type(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(type_to_dict(ct)), 201


@bp.delete("/api/content-types/<int:type_id>")
@require_feature("content")
def api_types_delete(type_id: int):
    s = db_session()
    ct = s.get(ContentType, type_id)
    if ct is None:
        return json_error("Content type not found", 404)
    try:
        delete_type(s, ct, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"success": True})


# ---------- Content ----------


def _list(type_slug: str | None):
    s = db_session()
    q = content_query(
        s,
        type_slug=type_slug or clean_str(request.args.get("type")),
        status=clean_str(request.args.get("status")),
        search=clean_str(request.args.get("q")),
    )
    items = q.order_by(Content.updated_at.desc(), Content.id.desc()).limit(500).all()
    return jsonify({"content": [content_to_dict(c, include_body=False) for c in items]})


def _create(type_slug: str | None):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        c = create_content(s, body, current_user(), type_slug=type_slug)
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(content_to_dict(c)), 201


def _get_item(content_id: int, type_slug: str | None) -> Content | None:
    c = db_session().get(Content, content_id)
    if c is None or (type_slug and c.content_type.slug != type_slug):
        return None
    return c


def _update(content_id: int, type_slug: str | None):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    c = _get_item(content_id, type_slug)
    if c is None:
        return json_error("Content not found", 404)
    try:
        update_content(s, c, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(content_to_dict(c))


def _delete(content_id: int, type_slug: str | None):
    s = db_session()
    c = _get_item(content_id, type_slug)
    if c is None:
        return json_error("Content not found", 404)
    delete_content(s, c, current_user())
    s.commit()
    return jsonify({"success": True})


@bp.get("/api/content")
@require_feature("content")
def api_content_list():
    return _list(None)


@bp.post("/api/content")
@require_feature("content")
def api_content_create():
    return _create(None)


@bp.get("/api/content/<int:content_id>")
@require_feature("content")
def api_content_get(content_id: int):
    c = _get_item(content_id, None)
    if c is None:
        return json_error("Content not found", 404)
    return jsonify(content_to_dict(c))


@bp.put("/api/content/<int:content_id>")
@require_feature("content")
def api_content_update(content_id: int):
    return _update(content_id, None)


@bp.delete("/api/content/<int:content_id>")
@require_feature("content")
def api_content_delete(content_id: int):
    return _delete(content_id, None)


# Posts are the "post"-typed view of content.


@bp.get("/api/posts")
@require_feature("content")
def api_posts_list():
    return _list("post")


@bp.post("/api/posts")
@require_feature("content")
def api_posts_create():
    return _create("post")


@bp.get("/api/posts/<int:post_id>")
@require_feature("content")
def api_posts_get(post_id: int):
    c = _get_item(post_id, "post")
    if c is None:
        return json_error("Post not found", 404)
    return jsonify(content_to_dict(c))


@bp.put("/api/posts/<int:post_id>")
@require_feature("content")
def api_posts_update(post_id: int):
    return _update(post_id, "post")


@bp.delete("/api/posts/<int:post_id>")
@require_feature("content")
def api_posts_delete(post_id: int):
    return _delete(post_id, "post")
