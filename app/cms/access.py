"""
Membership protection for public content, galleries, media and events.

With membership disabled on the tenant site everything is public. Otherwise
``public`` items are open, ``members`` items need a member account, and ``mag``
items need a member whose CRM contact holds the required MAG (an item without a
MAG only needs a member). Site admins and superadmins bypass every check.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import TenantSite, User

ACCESS_LEVELS = ("public", "members", "mag")
VISIBILITY_MODES = ("hidden", "message")


@dataclass(frozen=True)
class Viewer:
    membership_enabled: bool = True
    authenticated: bool = False
    is_member: bool = False
    can_bypass: bool = False
    mag_ids: frozenset[int] = field(default_factory=frozenset)


@dataclass(frozen=True)
class AccessResult:
    allowed: bool
    visibility_mode: str = "hidden"
    restricted_message: str | None = None


def build_viewer(s: "Session", user: "User | None", site: "TenantSite | None") -> Viewer:
    from app.cms.modules.memberships.service import contact_mag_ids, member_for_user
    from app.cms.rbac import resolve_role

    membership_enabled = True if site is None else bool(site.membership_enabled)
    if user is None or not user.is_active:
        return Viewer(membership_enabled=membership_enabled)
    role = resolve_role(s, user, site)
    can_bypass = user.is_superadmin or (not user.is_member and role == "admin")
    mag_ids: frozenset[int] = frozenset()
    if user.is_member:
        member = member_for_user(s, user.id)
        if member is not None:
            mag_ids = frozenset(contact_mag_ids(s, member.contact_id))
    return Viewer(
        membership_enabled=membership_enabled,
        authenticated=True,
        is_member=user.is_member,
        can_bypass=can_bypass,
        mag_ids=mag_ids,
    )


def can_view(viewer: Viewer, access_level: str | None, required_mag_ids: Iterable[int] = ()) -> bool:
    if not viewer.membership_enabled:
        return True
    level = access_level or "public"
    if level == "public":
        return True
    if viewer.can_bypass:
        return True
    if not viewer.authenticated:
        return False
    if level == "members":
        return viewer.is_member
    if level == "mag":
        required = {int(m) for m in required_mag_ids if m is not None}
        if not required:
            return viewer.is_member
        return viewer.is_member and bool(required & viewer.mag_ids)
    return False


def check_access(
    viewer: Viewer,
    access_level: str | None,
    required_mag_ids: Iterable[int] = (),
    *,
    visibility_mode: str | None = None,
    restricted_message: str | None = None,
) -> AccessResult:
    if can_view(viewer, access_level, required_mag_ids):
        return AccessResult(allowed=True)
    mode = visibility_mode if visibility_mode in VISIBILITY_MODES else "hidden"
    return AccessResult(allowed=False, visibility_mode=mode, restricted_message=restricted_message)


def current_viewer() -> Viewer:
    """Viewer for the current request (cached on ``g``)."""
    from flask import g

    from app.cms.db import db_session
    from app.cms.tenancy import current_tenant_site

    cached = getattr(g, "access_viewer", None)
    if cached is not None:
        return cached
    s = db_session()
    viewer = build_viewer(s, getattr(g, "current_user", None), current_tenant_site(s))
    g.access_viewer = viewer
    return viewer


def denied_response(result: AccessResult):
    """403 with the restricted message when the item advertises itself, else a plain 404."""
    from app.cms.utils import json_error

    if result.visibility_mode == "message":
        return json_error("Restricted", 403, message=result.restricted_message or "This content is for members only.")
    return json_error("Not found", 404)


def apply_access_fields(s: "Session", item: Any, payload: dict) -> None:
    """Validate and copy access gating fields (level, MAG, visibility, message) from a payload."""
    from app.cms.modules.memberships.models import Mag
    from app.cms.utils import clean_str

    if "access_level" in payload:
        level = clean_str(payload.get("access_level")) or "public"
        if level not in ACCESS_LEVELS:
            raise ValueError(f"Invalid access level. Must be one of: {', '.join(ACCESS_LEVELS)}")
        item.access_level = level
    if "required_mag_id" in payload:
        raw = payload.get("required_mag_id")
        if raw in (None, ""):
            item.required_mag_id = None
        else:
            try:
                mag = s.get(Mag, int(raw))
            except (TypeError, ValueError):
                mag = None
            if mag is None:
                raise ValueError("Membership not found.")
            item.required_mag_id = mag.id
    if "visibility_mode" in payload:
        mode = clean_str(payload.get("visibility_mode")) or "hidden"
        if mode not in VISIBILITY_MODES:
            raise ValueError(f"Invalid visibility mode. Must be one of: {', '.join(VISIBILITY_MODES)}")
        item.visibility_mode = mode
    if "restricted_message" in payload:
        item.restricted_message = clean_str(payload.get("restricted_message"))
