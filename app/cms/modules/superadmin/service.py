from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.cms.audit import record_event
from app.cms.models import (
    AdminRole,
    CodeSnippet,
    Feature,
    RoleFeature,
    TenantFeature,
    TenantSite,
    TenantUserAssignment,
    User,
)
from app.cms.rbac import (
    SUPERADMIN_FEATURE_SLUG,
    SUPERADMIN_ROLE,
    is_system_role,
    normalize_role_slug,
    role_exists,
    superadmin_feature_filtered,
)
from app.cms.tenancy import is_valid_schema_name
from app.cms.utils import clean_str, isoformat, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SITE_STATUSES = ("active", "inactive", "archived")


def site_to_dict(site: TenantSite) -> dict[str, Any]:
    return {
        "id": site.id,
        "name": site.name,
        "slug": site.slug,
        "schema_name": site.schema_name,
        "deployment_url": site.deployment_url,
        "description": site.description,
        "status": site.status,
        "site_mode": site.site_mode,
        "site_mode_locked": site.site_mode_locked,
        "site_mode_locked_by": site.site_mode_locked_by,
        "site_mode_locked_at": isoformat(site.site_mode_locked_at),
        "site_mode_locked_reason": site.site_mode_locked_reason,
        "coming_soon_message": site.coming_soon_message,
        "coming_soon_snippet_id": site.coming_soon_snippet_id,
        "membership_enabled": site.membership_enabled,
        "github_repo": site.github_repo,
        "notes": site.notes,
        "created_at": isoformat(site.created_at),
        "updated_at": isoformat(site.updated_at),
    }


def role_to_dict(role: AdminRole) -> dict[str, Any]:
    return {"id": role.id, "slug": role.slug, "label": role.label, "description": role.description, "is_system": role.is_system}


def feature_to_dict(f: Feature) -> dict[str, Any]:
    return {
        "id": f.id,
        "slug": f.slug,
        "label": f.label,
        "description": f.description,
        "parent_id": f.parent_id,
        "display_order": f.display_order,
        "is_enabled": f.is_enabled,
    }


def assignment_to_dict(a: TenantUserAssignment) -> dict[str, Any]:
    return {
        "id": a.id,
        "user_id": a.user_id,
        "email": a.user.email if a.user else None,
        "display_name": a.user.display_name if a.user else None,
        "tenant_site_id": a.tenant_site_id,
        "tenant_site_name": a.tenant_site.name if a.tenant_site else None,
        "role_slug": a.role_slug,
        "is_owner": a.is_owner,
        "created_at": isoformat(a.created_at),
    }


def snippet_to_dict(sn: CodeSnippet) -> dict[str, Any]:
    return {
        "id": sn.id,
        "title": sn.title,
        "type": sn.type,
        "description": sn.description,
        "code": sn.code,
        "created_at": isoformat(sn.created_at),
        "updated_at": isoformat(sn.updated_at),
    }


# ---------- Tenant sites ----------


def _apply_site_payload(s: "Session", site: TenantSite, payload: dict) -> None:
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValueError("Name is required.")
        site.name = name
    if "slug" in payload or not site.slug:
        slug = slugify(clean_str(payload.get("slug")) or site.name)
        clash = s.query(TenantSite.id).filter(TenantSite.slug == slug)
        if site.id is not None:
            clash = clash.filter(TenantSite.id != site.id)
        if not slug:
            raise ValueError("Slug is required.")
        if clash.first():
            raise ValueError(f"A site with slug {slug} already exists.")
        site.slug = slug
    if "status" in payload:
        status = clean_str(payload.get("status")) or "active"
        if status not in SITE_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(SITE_STATUSES)}")
        site.status = status
    for field in ("deployment_url", "description", "coming_soon_message", "github_repo", "notes"):
        if field in payload:
            setattr(site, field, clean_str(payload.get(field)))
    if "membership_enabled" in payload:
        site.membership_enabled = bool(payload.get("membership_enabled"))
    if "coming_soon_snippet_id" in payload:
        raw = payload.get("coming_soon_snippet_id")
        if raw in (None, ""):
            site.coming_soon_snippet_id = None
        else:
            snippet = s.get(CodeSnippet, int(raw))
            if snippet is None:
                raise ValueError("Snippet not found.")
            site.coming_soon_snippet_id = snippet.id
    if "site_mode" in payload:
        mode = clean_str(payload.get("site_mode"))
        if mode not in ("live", "coming_soon"):
            raise ValueError("Invalid site mode. Must be one of: live, coming_soon")
        site.site_mode = mode


def list_sites(s: "Session", status: str | None = None) -> list[TenantSite]:
    q = s.query(TenantSite)
    if status:
        q = q.filter(TenantSite.status == status)
    return q.order_by(TenantSite.name.asc()).all()


def create_site(s: "Session", payload: dict, user: User) -> TenantSite:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValueError("Name is required.")
    schema = clean_str(payload.get("schema_name"))
    if not is_valid_schema_name(schema):
        raise ValueError("Schema name must contain only letters, numbers and underscores.")
    if s.query(TenantSite.id).filter(TenantSite.schema_name == schema).first():
        raise ValueError(f"A site already uses schema {schema}.")
    now = datetime.utcnow()
    site = TenantSite(
        name=name,
        slug="",
        schema_name=schema,
        status="active",
        site_mode="coming_soon",
        site_mode_locked=False,
        membership_enabled=True,
        created_at=now,
        updated_at=now,
    )
    _apply_site_payload(s, site, payload)
    s.add(site)
    s.flush()
    record_event(
        s,
        actor=user,
        action="tenant_site.create",
        entity_type="TenantSite",
        entity_id=str(site.id),
        metadata={"schema": schema, "slug": site.slug},
    )
    return site


def update_site(s: "Session", site: TenantSite, payload: dict, user: User) -> TenantSite:
    if "schema_name" in payload and clean_str(payload.get("schema_name")) != site.schema_name:
        raise ValueError("The schema of an existing site cannot be changed.")
    _apply_site_payload(s, site, payload)
    site.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="tenant_site.update", entity_type="TenantSite", entity_id=str(site.id))
    return site


# ---------- Tenant features ----------


def site_feature_slugs(s: "Session", site: TenantSite) -> list[str]:
    return sorted(
        r[0] for r in s.query(TenantFeature.feature_slug).filter(TenantFeature.tenant_site_id == site.id).all()
    )


def set_site_features(s: "Session", site: TenantSite, slugs: list[str], user: User) -> list[str]:
    wanted = superadmin_feature_filtered([str(x) for x in slugs])
    known = {r[0] for r in s.query(Feature.slug).all()}
    unknown = [x for x in wanted if x not in known]
    if unknown:
        raise ValueError(f"Unknown feature slugs: {', '.join(unknown)}")
    s.query(TenantFeature).filter(TenantFeature.tenant_site_id == site.id).delete(synchronize_session=False)
    for slug in wanted:
        s.add(TenantFeature(tenant_site_id=site.id, feature_slug=slug))
    s.flush()
    record_event(
        s,
        actor=user,
        action="tenant_site.features",
        entity_type="TenantSite",
        entity_id=str(site.id),
        metadata={"features": wanted},
    )
    return sorted(wanted)


# ---------- Roles ----------


def create_role(s: "Session", payload: dict, user: User) -> AdminRole:
    slug = normalize_role_slug(payload.get("slug") or payload.get("label"))
    if not slug:
        raise ValueError("Role slug must contain only lowercase letters, numbers and underscores.")
    if slug == SUPERADMIN_ROLE or is_system_role(slug) or role_exists(s, slug):
        raise ValueError(f"Role {slug} already exists.")
    role = AdminRole(
        slug=slug,
        label=clean_str(payload.get("label")) or slug.replace("_", " ").title(),
        description=clean_str(payload.get("description")),
        is_system=False,
    )
    s.add(role)
    s.flush()
    record_event(s, actor=user, action="role.create", entity_type="AdminRole", entity_id=slug)
    return role


def delete_role(s: "Session", role: AdminRole, user: User) -> None:
    if role.is_system or is_system_role(role.slug):
        raise ValueError("System roles cannot be deleted.")
    if s.query(TenantUserAssignment.id).filter(TenantUserAssignment.role_slug == role.slug).first():
        raise ValueError("Role is still assigned to users.")
    s.query(RoleFeature).filter(RoleFeature.role_slug == role.slug).delete(synchronize_session=False)
    record_event(s, actor=user, action="role.delete", entity_type="AdminRole", entity_id=role.slug)
    s.delete(role)


def role_feature_ids(s: "Session", role_slug: str) -> list[int]:
    return sorted(
        r[0]
        for r in s.query(RoleFeature.feature_id)
        .filter(RoleFeature.role_slug == role_slug, RoleFeature.is_enabled.is_(True))
        .all()
    )


def set_role_features(s: "Session", role: AdminRole, feature_ids: list[int], user: User) -> list[int]:
    features = s.query(Feature).filter(Feature.id.in_(feature_ids)).all() if feature_ids else []
    if len(features) != len(set(feature_ids)):
        raise ValueError("Unknown feature id.")
    allowed = [f.id for f in features if f.slug != SUPERADMIN_FEATURE_SLUG]
    s.query(RoleFeature).filter(RoleFeature.role_slug == role.slug).delete(synchronize_session=False)
    for fid in allowed:
        s.add(RoleFeature(role_slug=role.slug, feature_id=fid, is_enabled=True))
    s.flush()
    record_event(
        s,
        actor=user,
        action="role.features",
        entity_type="AdminRole",
        entity_id=role.slug,
        metadata={"feature_ids": sorted(allowed)},
    )
    return sorted(allowed)


# ---------- Tenant users ----------


def list_assignments(s: "Session", site_id: int | None = None) -> list[TenantUserAssignment]:
    q = s.query(TenantUserAssignment)
    if site_id:
        q = q.filter(TenantUserAssignment.tenant_site_id == site_id)
    return q.order_by(TenantUserAssignment.tenant_site_id.asc(), TenantUserAssignment.created_at.asc()).all()


def assign_user(s: "Session", payload: dict, user: User) -> TenantUserAssignment:
    try:
        site = s.get(TenantSite, int(payload.get("tenant_site_id")))
    except (TypeError, ValueError):
        site = None
    if site is None:
        raise ValueError("Tenant site not found.")
    role_slug = normalize_role_slug(payload.get("role_slug"))
    if not role_slug or role_slug == SUPERADMIN_ROLE or not role_exists(s, role_slug):
        raise ValueError("Role not found.")

    account = None
    if payload.get("user_id") not in (None, ""):
        try:
            account = s.get(User, int(payload.get("user_id")))
        except (TypeError, ValueError):
            account = None
    elif clean_str(payload.get("email")):
        email = (clean_str(payload.get("email")) or "").lower()
        account = s.query(User).filter(User.email == email).one_or_none()
    if account is None:
        raise ValueError("User not found.")
    if account.is_member:
        raise ValueError("Member accounts cannot be assigned an admin role.")

    a = (
        s.query(TenantUserAssignment)
        .filter(TenantUserAssignment.user_id == account.id, TenantUserAssignment.tenant_site_id == site.id)
        .one_or_none()
    )
    if a is None:
        a = TenantUserAssignment(user_id=account.id, tenant_site_id=site.id, role_slug=role_slug)
        s.add(a)
    a.role_slug = role_slug
    a.is_owner = bool(payload.get("is_owner"))
    s.flush()
    record_event(
        s,
        actor=user,
        action="tenant_user.assign",
        entity_type="TenantUserAssignment",
        entity_id=str(a.id),
        metadata={"user_id": account.id, "site_id": site.id, "role": role_slug},
    )
    return a


def remove_assignment(s: "Session", a: TenantUserAssignment, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="tenant_user.remove",
        entity_type="TenantUserAssignment",
        entity_id=str(a.id),
        metadata={"user_id": a.user_id, "site_id": a.tenant_site_id},
    )
    s.delete(a)


# ---------- Code snippets ----------


def _apply_snippet_payload(sn: CodeSnippet, payload: dict) -> None:
    if "title" in payload or not sn.title:
        title = clean_str(payload.get("title"))
        if not title:
            raise ValueError("Title is required.")
        sn.title = title
    if "type" in payload:
        sn.type = clean_str(payload.get("type"))
    if "description" in payload:
        sn.description = clean_str(payload.get("description"))
    if "code" in payload:
        sn.code = payload.get("code") if isinstance(payload.get("code"), str) else ""


def create_snippet(s: "Session", payload: dict, user: User) -> CodeSnippet:
    now = datetime.utcnow()
    sn = CodeSnippet(title="", code="", created_at=now, updated_at=now)
    _apply_snippet_payload(sn, payload)
    s.add(sn)
    s.flush()
    record_event(s, actor=user, action="snippet.create", entity_type="CodeSnippet", entity_id=str(sn.id))
    return sn


def update_snippet(s: "Session", sn: CodeSnippet, payload: dict, user: User) -> CodeSnippet:
    _apply_snippet_payload(sn, payload)
    sn.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="snippet.update", entity_type="CodeSnippet", entity_id=str(sn.id))
    return sn


def delete_snippet(s: "Session", sn: CodeSnippet, user: User) -> None:
    s.query(TenantSite).filter(TenantSite.coming_soon_snippet_id == sn.id).update(
        {TenantSite.coming_soon_snippet_id: None}, synchronize_session=False
    )
    record_event(s, actor=user, action="snippet.delete", entity_type="CodeSnippet", entity_id=str(sn.id))
    s.delete(sn)
