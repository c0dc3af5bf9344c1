from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from app.cms.db import db_session
from app.cms.modules.media.models import Gallery, Media
from app.cms.modules.media.service import (
    MEDIA_TYPES,
    add_video_url,
    create_gallery,
    delete_gallery,
    delete_media,
    gallery_to_dict,
    media_to_dict,
    set_gallery_items,
    set_media_mags,
    update_gallery,
    update_media,
    upload_media,
)
from app.cms.rbac import require_feature
from app.cms.storage import StorageError, storage_from_config
from app.cms.utils import clean_str, current_user, json_body, json_error

bp = Blueprint("media", __name__)
logger = logging.getLogger(__name__)


# ---------- Library ----------


@bp.get("/api/media")
@require_feature("library")
def api_media_list():
    s = db_session()
    q = s.query(Media)
    media_type = clean_str(request.args.get("type"))
    if media_type:
        if media_type not in MEDIA_TYPES:
            return json_error(f"Invalid type. Must be one of: {', '.join(MEDIA_TYPES)}", 400)
        q = q.filter(Media.media_type == media_type)
    search = clean_str(request.args.get("q"))
    if search:
        like = f"%{search}%"
        q = q.filter(Media.filename.ilike(like) | Media.title.ilike(like))
    storage = storage_from_config(current_app.config)
    items = q.order_by(Media.created_at.desc(), Media.id.desc()).limit(500).all()
    return jsonify({"media": [media_to_dict(m, storage) for m in items]})


@bp.post("/api/media")
@require_feature("library")
def api_media_upload():
    f = request.files.get("file")
    if not f or not f.filename:
        return json_error("No file uploaded", 400)
    s = db_session()
    storage = storage_from_config(current_app.config)
    try:
        m = upload_media(
            s,
            storage,
            schema=current_app.config.get("CLIENT_SCHEMA") or None,
            filename=f.filename,
            data=f.read(),
            content_type=f.mimetype,
            user=current_user(),
            alt_text=request.form.get("alt_text"),
            title=request.form.get("title"),
        )
    except ValueError as e:
        return json_error(str(e), 400)
    except StorageError as e:
        s.rollback()
        logger.exception("Media upload failed: %s", e)
        return json_error("Failed to store file", 500)
    s.commit()
    return jsonify(media_to_dict(m, storage)), 201


@bp.post("/api/media/video")
@require_feature("library")
def api_media_video():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        m = add_video_url(s, url=str(body.get("url") or ""), title=clean_str(body.get("title")), user=current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(media_to_dict(m)), 201


@bp.get("/api/media/<int:media_id>")
@require_feature("library")
def api_media_get(media_id: int):
    m = db_session().get(Media, media_id)
    if m is None:
        return json_error("Media not found", 404)
    return jsonify(media_to_dict(m, storage_from_config(current_app.config)))


@bp.put("/api/media/<int:media_id>")
@require_feature("library")
def api_media_update(media_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    m = s.get(Media, media_id)
    if m is None:
        return json_error("Media not found", 404)
    update_media(s, m, body, current_user())
    s.commit()
    return jsonify(media_to_dict(m))


@bp.put("/api/media/<int:media_id>/mags")
@require_feature("library")
def api_media_mags(media_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    m = s.get(Media, media_id)
    if m is None:
        return json_error("Media not found", 404)
    try:
        set_media_mags(s, m, body.get("mag_ids"), current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(media_to_dict(m))


@bp.delete("/api/media/<int:media_id>")
@require_feature("library")
def api_media_delete(media_id: int):
    s = db_session()
    m = s.get(Media, media_id)
    if m is None:
        return json_error("Media not found", 404)
    key = delete_media(s, m, current_user())
    s.commit()
    if key:
        try:
            storage_from_config(current_app.config).delete(key)
        except StorageError as e:
            logger.exception("Orphaned storage object %s after media delete: %s", key, e)
    return jsonify({"success": True})


# ---------- Galleries ----------


@bp.get("/api/galleries")
@require_feature("galleries")
def api_galleries_list():
    s = db_session()
    galleries = s.query(Gallery).order_by(Gallery.name.asc()).all()
    return jsonify({"galleries": [gallery_to_dict(g, with_items=False) for g in galleries]})


@bp.post("/api/galleries")
@require_feature("galleries")
def api_galleries_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        g = create_gallery(s, body, current_user())
        if "items" in body:
            set_gallery_items(s, g, body.get("items"), current_user())
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(gallery_to_dict(g, storage_from_config(current_app.config))), 201


@bp.get("/api/galleries/<int:gallery_id>")
@require_feature("galleries")
def api_galleries_get(gallery_id: int):
    g = db_session().get(Gallery, gallery_id)
    if g is None:
        return json_error("Gallery not found", 404)
    return jsonify(gallery_to_dict(g, storage_from_config(current_app.config)))


@bp.put("/api/galleries/<int:gallery_id>")
@require_feature("galleries")
def api_galleries_update(gallery_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    g = s.get(Gallery, gallery_id)
    if g is None:
        return json_error("Gallery not found", 404)
    try:
        update_gallery(s, g, body, current_user())
        if "items" in body:
            set_gallery_items(s, g, body.get("items"), current_user())
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(gallery_to_dict(g, storage_from_config(current_app.config)))


@bp.delete("/api/galleries/<int:gallery_id>")
@require_feature("galleries")
def api_galleries_delete(gallery_id: int):
    s = db_session()
    g = s.get(Gallery, gallery_id)
    if g is None:
        return json_error("Gallery not found", 404)
    delete_gallery(s, g, current_user())
    s.commit()
    return jsonify({"success": True})
