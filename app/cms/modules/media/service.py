from __future__ import annotations

import hashlib
import logging
import mimetypes
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from werkzeug.utils import secure_filename

from app.cms.access import ACCESS_LEVELS, VISIBILITY_MODES
from app.cms.audit import record_event
from app.cms.modules.media.models import Gallery, GalleryItem, GalleryMag, Media, MediaMag
from app.cms.tenancy import client_bucket
from app.cms.utils import clean_str, isoformat, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User
    from app.cms.storage import Storage

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "video", "document", "other")
GALLERY_STATUSES = ("draft", "published")


def file_digest(data: bytes) -> tuple[str, int]:
    return hashlib.sha256(data).hexdigest(), len(data)


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "upload.bin"


def media_type_for(content_type: str | None) -> str:
    ct = (content_type or "").lower()
    if ct.startswith("image/"):
        return "image"
    if ct.startswith("video/"):
        return "video"
    if ct.startswith(("application/pdf", "text/", "application/msword", "application/vnd.")):
        return "document"
    return "other"


def media_storage_key(schema: str | None, filename: str, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    return f"{client_bucket(schema)}/media/{now:%Y}/{now:%m}/{uuid.uuid4().hex}-{sanitize_upload_filename(filename)}"


def media_to_dict(m: Media, storage: "Storage | None" = None) -> dict[str, Any]:
    return {
        "id": m.id,
        "media_type": m.media_type,
        "filename": m.filename,
        "title": m.title,
        "alt_text": m.alt_text,
        "caption": m.caption,
        "content_type": m.content_type,
        "size_bytes": m.size_bytes,
        "sha256": m.sha256,
        "video_url": m.video_url,
        "url": m.video_url or (storage.public_url(m.storage_key) if storage and m.storage_key else None),
        "mag_ids": m.mag_ids,
        "created_at": isoformat(m.created_at),
    }


def upload_media(
    s: "Session",
    storage: "Storage",
    *,
    schema: str | None,
    filename: str,
    data: bytes,
    content_type: str | None,
    user: "User",
    alt_text: str | None = None,
    title: str | None = None,
) -> Media:
    if not data:
        raise ValueError("File is empty.")
    safe_name = sanitize_upload_filename(filename)
    content_type = content_type or mimetypes.guess_type(safe_name)[0] or "application/octet-stream"
    sha256, size = file_digest(data)
    key = media_storage_key(schema, safe_name)
    storage.put_bytes(key, data, content_type=content_type)

    now = datetime.utcnow()
    m = Media(
        media_type=media_type_for(content_type),
        filename=safe_name,
        storage_key=key,
        content_type=content_type,
        size_bytes=size,
        sha256=sha256,
        title=clean_str(title) or safe_name,
        alt_text=clean_str(alt_text),
        uploaded_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(m)
    s.flush()
    record_event(
        s,
        actor=user,
        action="media.upload",
        entity_type="Media",
        entity_id=str(m.id),
        metadata={"filename": safe_name, "size": size, "sha256": sha256},
    )
    logger.info("Stored media %s (%s bytes) at %s", m.id, size, key)
    return m


def add_video_url(s: "Session", *, url: str, title: str | None, user: "User") -> Media:
    url = (url or "").strip()
    if not url.startswith(("http://", "https://")):
        raise ValueError("A valid video URL is required.")
    now = datetime.utcnow()
    m = Media(
        media_type="video",
        filename=url.rsplit("/", 1)[-1][:255] or "video",
        storage_key=None,
        video_url=url,
        size_bytes=0,
        title=clean_str(title),
        uploaded_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    s.add(m)
    s.flush()
    record_event(s, actor=user, action="media.video_url", entity_type="Media", entity_id=str(m.id), metadata={"url": url})
    return m


def update_media(s: "Session", m: Media, payload: dict, user: "User") -> Media:
    for field in ("title", "alt_text", "caption"):
        if field in payload:
            setattr(m, field, clean_str(payload.get(field)))
    m.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="media.update", entity_type="Media", entity_id=str(m.id))
    return m


def delete_media(s: "Session", m: Media, user: "User") -> str | None:
    """Remove the row and its gallery slots; returns the storage key to drop once committed."""
    key = m.storage_key
    s.query(GalleryItem).filter(GalleryItem.media_id == m.id).delete(synchronize_session=False)
    record_event(s, actor=user, action="media.delete", entity_type="Media", entity_id=str(m.id), metadata={"filename": m.filename})
    s.delete(m)
    return key


def _mag_ids_from(s: "Session", raw: Any) -> list[int]:
    from app.cms.modules.memberships.models import Mag

    if not isinstance(raw, list):
        raise ValueError("mag_ids must be a list.")
    try:
        ids = sorted({int(v) for v in raw})
    except (TypeError, ValueError):
        raise ValueError("mag_ids must contain ids.")
    found = {r[0] for r in s.query(Mag.id).filter(Mag.id.in_(ids)).all()} if ids else set()
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValueError(f"Unknown membership ids: {', '.join(str(i) for i in missing)}")
    return ids


def set_media_mags(s: "Session", m: Media, raw_ids: Any, user: "User") -> Media:
    ids = _mag_ids_from(s, raw_ids)
    m.mag_links = []
    s.flush()
    m.mag_links = [MediaMag(mag_id=i) for i in ids]
    s.flush()
    record_event(s, actor=user, action="media.mags", entity_type="Media", entity_id=str(m.id), metadata={"mag_ids": ids})
    return m


# ---------- Galleries ----------


def gallery_to_dict(g: Gallery, storage: "Storage | None" = None, *, with_items: bool = True) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": g.id,
        "name": g.name,
        "slug": g.slug,
        "description": g.description,
        "status": g.status,
        "access_level": g.access_level,
        "visibility_mode": g.visibility_mode,
        "restricted_message": g.restricted_message,
        "mag_ids": g.mag_ids,
        "created_at": isoformat(g.created_at),
    }
    if with_items:
        data["items"] = [
            {"id": it.id, "media_id": it.media_id, "position": it.position, "caption": it.caption, "media": media_to_dict(it.media, storage)}
            for it in g.items
        ]
    return data


def _apply_gallery_payload(s: "Session", g: Gallery, payload: dict) -> None:
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValueError("Name is required.")
        g.name = name
    if "slug" in payload or not g.slug:
        slug = slugify(clean_str(payload.get("slug")) or g.name)
        clash = s.query(Gallery.id).filter(Gallery.slug == slug)
        if g.id is not None:
            clash = clash.filter(Gallery.id != g.id)
        if not slug or clash.first():
            raise ValueError(f"A gallery with slug {slug} already exists." if slug else "Slug is required.")
        g.slug = slug
    if "description" in payload:
        g.description = clean_str(payload.get("description"))
    if "status" in payload:
        status = clean_str(payload.get("status")) or "draft"
        if status not in GALLERY_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(GALLERY_STATUSES)}")
        g.status = status
    if "access_level" in payload:
        level = clean_str(payload.get("access_level")) or "public"
        if level not in ACCESS_LEVELS:
            raise ValueError(f"Invalid access level. Must be one of: {', '.join(ACCESS_LEVELS)}")
        g.access_level = level
    if "visibility_mode" in payload:
        mode = clean_str(payload.get("visibility_mode")) or "hidden"
        if mode not in VISIBILITY_MODES:
            raise ValueError(f"Invalid visibility mode. Must be one of: {', '.join(VISIBILITY_MODES)}")
        g.visibility_mode = mode
    if "restricted_message" in payload:
        g.restricted_message = clean_str(payload.get("restricted_message"))
    if "mag_ids" in payload:
        ids = _mag_ids_from(s, payload.get("mag_ids") or [])
        if g.id is not None:
            g.mag_links = []
            s.flush()
        g.mag_links = [GalleryMag(mag_id=i) for i in ids]


def create_gallery(s: "Session", payload: dict, user: "User") -> Gallery:
    if not clean_str(payload.get("name")):
        raise ValueError("Name is required.")
    g = Gallery(name="", slug="", status="draft", access_level="public", visibility_mode="hidden")
    _apply_gallery_payload(s, g, payload)
    s.add(g)
    s.flush()
    record_event(s, actor=user, action="gallery.create", entity_type="Gallery", entity_id=str(g.id), metadata={"slug": g.slug})
    return g


def update_gallery(s: "Session", g: Gallery, payload: dict, user: "User") -> Gallery:
    _apply_gallery_payload(s, g, payload)
    g.updated_at = datetime.utcnow()
    s.flush()
    record_event(s, actor=user, action="gallery.update", entity_type="Gallery", entity_id=str(g.id))
    return g


def set_gallery_items(s: "Session", g: Gallery, items: Any, user: "User") -> Gallery:
    """Replace the ordered item list. ``items`` is a list of media ids or {media_id, caption} objects."""
    if not isinstance(items, list):
        raise ValueError("items must be a list.")
    parsed: list[tuple[int, str | None]] = []
    for raw in items:
        if isinstance(raw, dict):
            media_id, caption = raw.get("media_id"), clean_str(raw.get("caption"))
        else:
            media_id, caption = raw, None
        try:
            parsed.append((int(media_id), caption))
        except (TypeError, ValueError):
            raise ValueError("Each item needs a media_id.")
    ids = [mid for mid, _ in parsed]
    if len(set(ids)) != len(ids):
        raise ValueError("A media item can appear only once per gallery.")
    found = {r[0] for r in s.query(Media.id).filter(Media.id.in_(ids)).all()} if ids else set()
    if len(found) != len(set(ids)):
        raise ValueError("Unknown media id in items.")

    g.items = []
    s.flush()
    g.items = [GalleryItem(media_id=mid, position=pos, caption=caption) for pos, (mid, caption) in enumerate(parsed)]
    g.updated_at = datetime.utcnow()
    s.flush()
    record_event(s, actor=user, action="gallery.items", entity_type="Gallery", entity_id=str(g.id), metadata={"count": len(parsed)})
    return g


def delete_gallery(s: "Session", g: Gallery, user: "User") -> None:
    record_event(s, actor=user, action="gallery.delete", entity_type="Gallery", entity_id=str(g.id), metadata={"slug": g.slug})
    s.delete(g)
