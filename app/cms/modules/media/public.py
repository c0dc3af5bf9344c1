from __future__ import annotations

from flask import Blueprint, abort, current_app, jsonify, send_file

from app.cms.access import can_view, check_access, current_viewer, denied_response
from app.cms.db import db_session
from app.cms.modules.media.models import Gallery, Media
from app.cms.modules.media.service import gallery_to_dict
from app.cms.storage import storage_from_config
from app.cms.utils import json_error

bp = Blueprint("media_public", __name__)


@bp.get("/api/public/galleries")
def list_galleries():
    s = db_session()
    viewer = current_viewer()
    galleries = s.query(Gallery).filter(Gallery.status == "published").order_by(Gallery.name.asc()).all()
    return jsonify(
        {"galleries": [gallery_to_dict(g, with_items=False) for g in galleries if can_view(viewer, g.access_level, g.mag_ids)]}
    )


@bp.get("/api/public/galleries/<slug>")
def get_gallery(slug: str):
    s = db_session()
    g = s.query(Gallery).filter(Gallery.slug == slug, Gallery.status == "published").one_or_none()
    if g is None:
        return json_error("Not found", 404)
    viewer = current_viewer()
    result = check_access(
        viewer,
        g.access_level,
        g.mag_ids,
        visibility_mode=g.visibility_mode,
        restricted_message=g.restricted_message,
    )
    if not result.allowed:
        return denied_response(result)
    data = gallery_to_dict(g, storage_from_config(current_app.config))
    # Items restricted to MAGs the viewer lacks are dropped from an otherwise visible gallery.
    data["items"] = [
        item for item, it in zip(data["items"], g.items) if not it.media.mag_ids or can_view(viewer, "mag", it.media.mag_ids)
    ]
    return jsonify(data)


@bp.get("/media/<int:media_id>/file")
def media_file(media_id: int):
    """Stream a stored media object, applying its MAG restrictions."""
    s = db_session()
    m = s.get(Media, media_id)
    if m is None or not m.storage_key:
        abort(404)
    if m.mag_ids and not can_view(current_viewer(), "mag", m.mag_ids):
        abort(404)
    storage = storage_from_config(current_app.config)
    return send_file(storage.open(m.storage_key), mimetype=m.content_type, download_name=m.filename)
