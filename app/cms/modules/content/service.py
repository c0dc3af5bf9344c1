from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.cms.access import apply_access_fields
from app.cms.audit import record_event
from app.cms.modules.content.models import Content, ContentType
from app.cms.utils import clean_str, isoformat, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User

CONTENT_STATUSES = ("draft", "published", "archived")
CORE_CONTENT_TYPES = (
    ("post", "Post", "Blog posts", 0),
    ("page", "Page", "Standalone pages", 1),
)


def ensure_core_types(s: "Session") -> None:
    existing = {r[0] for r in s.query(ContentType.slug).all()}
    for slug, label, description, order in CORE_CONTENT_TYPES:
        if slug not in existing:
            s.add(ContentType(slug=slug, label=label, description=description, is_core=True, display_order=order))
    s.flush()


def type_to_dict(ct: ContentType) -> dict[str, Any]:
    return {
        "id": ct.id,
        "slug": ct.slug,
        "label": ct.label,
        "description": ct.description,
        "is_core": ct.is_core,
        "display_order": ct.display_order,
    }


def content_to_dict(c: Content, *, include_body: bool = True) -> dict[str, Any]:
    data = {
        "id": c.id,
        "type": c.content_type.slug if c.content_type else None,
        "title": c.title,
        "slug": c.slug,
        "excerpt": c.excerpt,
        "status": c.status,
        "published_at": isoformat(c.published_at),
        "access_level": c.access_level,
        "required_mag_id": c.required_mag_id,
        "visibility_mode": c.visibility_mode,
        "restricted_message": c.restricted_message,
        "created_at": isoformat(c.created_at),
        "updated_at": isoformat(c.updated_at),
    }
    if include_body:
        data["body"] = c.body
    return data


def get_type(s: "Session", slug: str) -> ContentType | None:
    return s.query(ContentType).filter(ContentType.slug == slug).one_or_none()


# ---------- Content types ----------


def create_type(s: "Session", payload: dict, user: "User") -> ContentType:
    label = clean_str(payload.get("label"))
    if not label:
        raise ValueError("Label is required.")
    slug = slugify(clean_str(payload.get("slug")) or label, sep="_")
    if not slug:
        raise ValueError("Slug must contain letters or numbers.")
    if get_type(s, slug) is not None:
        raise ValueError(f"A content type with slug {slug} already exists.")
    ct = ContentType(
        slug=slug,
        label=label,
        description=clean_str(payload.get("description")),
        is_core=False,
        display_order=int(payload.get("display_order") or 0),
    )
    s.add(ct)
    s.flush()
    record_event(s, actor=user, action="content.type.create", entity_type="ContentType", entity_id=str(ct.id))
    return ct


def delete_type(s: "Session", ct: ContentType, user: "User") -> None:
    if ct.is_core:
        raise ValueError("Core content types cannot be deleted.")
    if s.query(Content.id).filter(Content.content_type_id == ct.id).first():
        raise ValueError("Content type is still in use.")
    record_event(s, actor=user, action="content.type.delete", entity_type="ContentType", entity_id=str(ct.id))
    s.delete(ct)


# ---------- Content ----------


def content_query(s: "Session", *, type_slug: str | None = None, status: str | None = None, search: str | None = None):
    q = s.query(Content)
    if type_slug:
        q = q.join(ContentType, ContentType.id == Content.content_type_id).filter(ContentType.slug == type_slug)
    if status:
        q = q.filter(Content.status == status)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Content.title.ilike(like), Content.slug.ilike(like)))
    return q


def _explicit_slug(raw: str) -> str:
    slug = slugify(clean_str(raw))
    if not slug:
        raise ValueError("Slug must contain letters or numbers.")
    return slug


def _title_slug(title: str, type_slug: str) -> str:
    """Slug derived from the title; titles with no ASCII letters or digits get a random one."""
    return slugify(title) or f"{type_slug}-{uuid.uuid4().hex[:8]}"


def _unique_slug(s: "Session", type_id: int, base: str, exclude_id: int | None = None) -> str:
    candidate, n = base, 2
    while True:
        q = s.query(Content.id).filter(Content.content_type_id == type_id, Content.slug == candidate)
        if exclude_id is not None:
            q = q.filter(Content.id != exclude_id)
        if not q.first():
            return candidate
        candidate = f"{base}-{n}"
        n += 1


def _set_status(c: Content, status: str) -> None:
    if status not in CONTENT_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(CONTENT_STATUSES)}")
    c.status = status
    if status == "published" and c.published_at is None:
        c.published_at = datetime.utcnow()


def create_content(s: "Session", payload: dict, user: "User", *, type_slug: str | None = None) -> Content:
    title = clean_str(payload.get("title"))
    if not title:
        raise ValueError("Title is required.")
    ct = get_type(s, type_slug or clean_str(payload.get("type")) or "")
    if ct is None:
        raise ValueError("Unknown content type.")
    if clean_str(payload.get("slug")):
        base = _explicit_slug(payload.get("slug"))
        if s.query(Content.id).filter(Content.content_type_id == ct.id, Content.slug == base).first():
            raise ValueError(f"Slug {base} is already used by another {ct.label.lower()}.")
        slug = base
    else:
        slug = _unique_slug(s, ct.id, _title_slug(title, ct.slug))

    now = datetime.utcnow()
    c = Content(
        content_type_id=ct.id,
        title=title,
        slug=slug,
        body=payload.get("body") if isinstance(payload.get("body"), str) else None,
        excerpt=clean_str(payload.get("excerpt")),
        status="draft",
        access_level="public",
        visibility_mode="hidden",
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    _set_status(c, clean_str(payload.get("status")) or "draft")
    apply_access_fields(s, c, payload)
    c.content_type = ct
    s.add(c)
    s.flush()
    record_event(
        s,
        actor=user,
        action="content.create",
        entity_type="Content",
        entity_id=str(c.id),
        metadata={"type": ct.slug, "slug": c.slug, "status": c.status},
    )
    return c


def update_content(s: "Session", c: Content, payload: dict, user: "User") -> Content:
    if "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            raise ValueError("Title is required.")
        c.title = title
    if "slug" in payload:
        if clean_str(payload.get("slug")):
            slug = _explicit_slug(payload.get("slug"))
        else:
            slug = _title_slug(c.title, c.content_type.slug)
        clash = (
            s.query(Content.id)
            .filter(Content.content_type_id == c.content_type_id, Content.slug == slug, Content.id != c.id)
            .first()
        )
        if clash:
            raise ValueError(f"Slug {slug} is already in use.")
        c.slug = slug
    if "body" in payload:
        c.body = payload.get("body") if isinstance(payload.get("body"), str) else None
    if "excerpt" in payload:
        c.excerpt = clean_str(payload.get("excerpt"))
    if "status" in payload:
        _set_status(c, clean_str(payload.get("status")) or "draft")
    apply_access_fields(s, c, payload)
    c.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="content.update", entity_type="Content", entity_id=str(c.id), metadata={"status": c.status})
    return c


def delete_content(s: "Session", c: Content, user: "User") -> None:
    record_event(s, actor=user, action="content.delete", entity_type="Content", entity_id=str(c.id), metadata={"slug": c.slug})
    s.delete(c)
