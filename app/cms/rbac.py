"""
Role and feature gating.

A user's effective features for a tenant site are the tenant-enabled feature
slugs intersected with the slugs enabled for the user's role on that site.
Superadmins resolve to ``"all"``.
"""
from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Callable
from functools import wraps
from typing import Any, Literal

from flask import abort, g, jsonify, redirect, request, url_for
from sqlalchemy.orm import Session

from app.cms.models import AdminRole, Feature, RoleFeature, TenantFeature, TenantSite, TenantUserAssignment, User

SUPERADMIN_FEATURE_SLUG = "superadmin"
SUPERADMIN_ROLE = "superadmin"
SYSTEM_ROLE_SLUGS = ("admin", "editor", "creator", "viewer")

EffectiveFeatures = list[str] | Literal["all"]

# Sub-feature slug -> top-level slug that also grants it.
FEATURE_PARENT_SLUG: dict[str, str] = {
    "contacts": "crm",
    "forms": "crm",
    "form_submissions": "crm",
    "memberships": "crm",
    "code_generator": "crm",
    "lists": "marketing",
    "galleries": "media",
    "library": "media",
    "events": "calendar",
    "resources": "calendar",
    "general": "settings",
    "taxonomy": "settings",
    "customizer": "settings",
    "users": "settings",
}

# Most specific prefixes first.
_PATH_FEATURES: tuple[tuple[str, str], ...] = (
    ("/admin/content", "content"),
    ("/admin/media", "library"),
    ("/admin/galleries", "galleries"),
    ("/admin/crm/contacts", "contacts"),
    ("/admin/crm/forms/submissions", "form_submissions"),
    ("/admin/crm/forms", "forms"),
    ("/admin/crm/marketing", "marketing"),
    ("/admin/crm/lists", "lists"),
    ("/admin/crm/memberships/code-generator", "code_generator"),
    ("/admin/crm/memberships", "memberships"),
    ("/admin/crm", "crm"),
    ("/admin/events/resources", "resources"),
    ("/admin/events", "events"),
    ("/admin/settings/general", "general"),
    ("/admin/settings/taxonomy", "taxonomy"),
    ("/admin/settings/customizer", "customizer"),
    ("/admin/settings/users", "users"),
    ("/admin/settings", "settings"),
    ("/admin/super", SUPERADMIN_FEATURE_SLUG),
)

_ROLE_SLUG_RE = re.compile(r"^[a-z0-9_]+$")


def is_system_role(slug: str) -> bool:
    return slug in SYSTEM_ROLE_SLUGS


def normalize_role_slug(raw: str | None) -> str | None:
    slug = re.sub(r"\s+", "_", (raw or "").strip().lower())
    if not slug or not _ROLE_SLUG_RE.match(slug):
        return None
    return slug


def resolve_role(s: Session, user: User | None, site: TenantSite | None) -> str | None:
    if not user or not user.is_active:
        return None
    if user.is_superadmin:
        return SUPERADMIN_ROLE
    if site is None:
        return None
    assignment = (
        s.query(TenantUserAssignment)
        .filter(TenantUserAssignment.user_id == user.id, TenantUserAssignment.tenant_site_id == site.id)
        .one_or_none()
    )
    return assignment.role_slug if assignment else None


def role_feature_slugs(s: Session, role_slug: str) -> list[str]:
    rows = (
        s.query(Feature.slug)
        .join(RoleFeature, RoleFeature.feature_id == Feature.id)
        .filter(RoleFeature.role_slug == role_slug, RoleFeature.is_enabled.is_(True), Feature.is_enabled.is_(True))
        .all()
    )
    return sorted({r[0] for r in rows})


def tenant_feature_slugs(s: Session, site: TenantSite) -> list[str]:
    """Slugs switched on for the site; a site with no explicit rows gets every enabled feature."""
    rows = s.query(TenantFeature.feature_slug).filter(TenantFeature.tenant_site_id == site.id).all()
    if rows:
        return sorted({r[0] for r in rows})
    return sorted(r[0] for r in s.query(Feature.slug).filter(Feature.is_enabled.is_(True)).all())


def effective_feature_slugs(s: Session, user: User | None, site: TenantSite | None) -> EffectiveFeatures:
    if user and user.is_active and user.is_superadmin:
        return "all"
    if not user or site is None:
        return []
    role = resolve_role(s, user, site)
    if not role:
        return []
    role_slugs = set(role_feature_slugs(s, role))
    return [slug for slug in tenant_feature_slugs(s, site) if slug in role_slugs]


def can_access_feature(effective: EffectiveFeatures, required_slug: str) -> bool:
    if effective == "all":
        return True
    # The superadmin section is gated by account type, never by feature grants.
    if required_slug == SUPERADMIN_FEATURE_SLUG:
        return False
    if required_slug in effective:
        return True
    parent = FEATURE_PARENT_SLUG.get(required_slug)
    return bool(parent and parent in effective)


def path_to_feature_slug(path: str | None) -> str | None:
    if not path or not path.startswith("/admin"):
        return None
    if path in ("/admin", "/admin/") or path.startswith(("/admin/login", "/admin/dashboard", "/admin/settings/profile")):
        return None
    for prefix, slug in _PATH_FEATURES:
        if path == prefix or path.startswith(prefix + "/"):
            return slug
    return None


def ordered_features(features: list[Feature]) -> list[Feature]:
    """Roots first, each followed by its children; display_order then label; orphans last."""

    def key(f: Feature) -> tuple[int, str]:
        return (f.display_order, (f.label or f.slug).lower())

    roots = sorted((f for f in features if f.parent_id is None), key=key)
    result: list[Feature] = []
    for root in roots:
        result.append(root)
        result.extend(sorted((f for f in features if f.parent_id == root.id), key=key))
    used = {f.id for f in result}
    result.extend(sorted((f for f in features if f.id not in used), key=key))
    return result


def superadmin_feature_filtered(slugs: list[str]) -> list[str]:
    seen: list[str] = []
    for slug in (x.strip() for x in slugs):
        if slug and slug != SUPERADMIN_FEATURE_SLUG and slug not in seen:
            seen.append(slug)
    return seen


def role_exists(s: Session, slug: str) -> bool:
    return s.query(AdminRole.id).filter(AdminRole.slug == slug).first() is not None


# ---------- Request helpers / decorators ----------


def current_effective_features() -> EffectiveFeatures:
    """Effective features for g.current_user on this deployment's tenant site (cached per request)."""
    cached = getattr(g, "effective_features", None)
    if cached is not None:
        return cached
    from app.cms.db import db_session
    from app.cms.tenancy import current_tenant_site

    s = db_session()
    eff = effective_feature_slugs(s, getattr(g, "current_user", None), current_tenant_site(s))
    g.effective_features = eff
    return eff


def user_has_feature(user: User | None, slug: str) -> bool:
    if not user or not user.is_active:
        return False
    return can_access_feature(current_effective_features(), slug)


def _wants_json() -> bool:
    return request.path.startswith("/api/")


def _unauthenticated():
    if _wants_json():
        return jsonify({"error": "Unauthorized"}), 401
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def _forbidden(missing: str):
    g.missing_permission = missing
    if _wants_json():
        return jsonify({"error": "Forbidden", "missing_feature": missing}), 403
    abort(403)


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _unauthenticated()
        return fn(*args, **kwargs)

    return wrapped


def require_feature(feature_slug: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 / login redirect
            if not user or not user.is_active:
                return _unauthenticated()
            # Members never reach the admin console.
            if user.is_member or not user_has_feature(user, feature_slug):
                return _forbidden(feature_slug)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_superadmin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _unauthenticated()
        if not user.is_superadmin:
            return _forbidden(SUPERADMIN_FEATURE_SLUG)
        return fn(*args, **kwargs)

    return wrapped


# ---------- Registry seed ----------

# (slug, label, parent slug); order within a parent is display order.
DEFAULT_FEATURES: tuple[tuple[str, str, str | None], ...] = (
    ("crm", "CRM", None),
    ("contacts", "Contacts", "crm"),
    ("forms", "Forms", "crm"),
    ("form_submissions", "Form submissions", "crm"),
    ("memberships", "Memberships", "crm"),
    ("code_generator", "Code generator", "crm"),
    ("marketing", "Marketing", None),
    ("lists", "Lists", "marketing"),
    ("content", "Content", None),
    ("media", "Media", None),
    ("library", "Library", "media"),
    ("galleries", "Galleries", "media"),
    ("calendar", "Calendar", None),
    ("events", "Events", "calendar"),
    ("resources", "Resources", "calendar"),
    ("settings", "Settings", None),
    ("general", "General", "settings"),
    ("taxonomy", "Taxonomy", "settings"),
    ("customizer", "Customizer", "settings"),
    ("users", "Users", "settings"),
    (SUPERADMIN_FEATURE_SLUG, "Super admin", None),
)

DEFAULT_ROLE_FEATURES: dict[str, tuple[str, ...]] = {
    "editor": ("content", "media", "calendar"),
    "creator": ("content", "library"),
    "viewer": ("contacts",),
}


def ensure_feature_registry(s: Session) -> dict[str, Feature]:
    """Create missing registry rows; existing rows are left as they are."""
    by_slug = {f.slug: f for f in s.query(Feature).all()}
    order: dict[str | None, int] = defaultdict(int)
    for slug, label, parent_slug in DEFAULT_FEATURES:
        if slug not in by_slug:
            parent = by_slug.get(parent_slug) if parent_slug else None
            f = Feature(slug=slug, label=label, parent_id=parent.id if parent else None, display_order=order[parent_slug])
            s.add(f)
            s.flush()
            by_slug[slug] = f
        order[parent_slug] += 1
    return by_slug


def ensure_system_roles(s: Session) -> None:
    """System roles with their default grants; ``admin`` gets every feature except superadmin."""
    features = ensure_feature_registry(s)
    for slug in SYSTEM_ROLE_SLUGS:
        if not role_exists(s, slug):
            s.add(AdminRole(slug=slug, label=slug.title(), is_system=True))
    s.flush()
    for slug in SYSTEM_ROLE_SLUGS:
        if s.query(RoleFeature.id).filter(RoleFeature.role_slug == slug).first():
            continue
        grants = [f for f in features if f != SUPERADMIN_FEATURE_SLUG] if slug == "admin" else DEFAULT_ROLE_FEATURES.get(slug, ())
        for feature_slug in grants:
            s.add(RoleFeature(role_slug=slug, feature_id=features[feature_slug].id, is_enabled=True))
    s.flush()
