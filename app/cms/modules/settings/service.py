from __future__ import annotations

import copy
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.cms.audit import record_event
from app.cms.modules.settings.models import TenantSetting

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import TenantSite, TenantUserAssignment, User


SITE_MODES = ("live", "coming_soon")

DEFAULT_SETTINGS: dict[str, Any] = {
    "site_metadata": {"name": "", "description": ""},
    "crm_contact_statuses": [
        {"slug": "new", "label": "New", "color": "#2563eb"},
        {"slug": "contacted", "label": "Contacted", "color": "#16a34a"},
        {"slug": "archived", "label": "Archived", "color": "#6b7280"},
    ],
    "crm_note_types": [
        {"slug": "note", "label": "Note"},
        {"slug": "call", "label": "Call"},
        {"slug": "email", "label": "Email"},
        {"slug": "meeting", "label": "Meeting"},
        {"slug": "code_redemption", "label": "Code redemption"},
    ],
    "calendar_resource_types": [
        {"slug": "room", "label": "Room"},
        {"slug": "equipment", "label": "Equipment"},
    ],
}

# Keys editable through the generic settings endpoint.
ALLOWED_KEYS = tuple(DEFAULT_SETTINGS)


class SiteModeLockedError(Exception):
    pass


def get_setting(s: "Session", key: str) -> Any:
    row = s.query(TenantSetting).filter(TenantSetting.key == key).one_or_none()
    if row is not None and row.value is not None:
        return row.value
    return copy.deepcopy(DEFAULT_SETTINGS.get(key))


def _validate_slug_list(key: str, value: Any) -> None:
    if not isinstance(value, list) or not value:
        raise ValueError(f"{key} must be a non-empty list.")
    seen: set[str] = set()
    for item in value:
        if not isinstance(item, dict) or not str(item.get("slug") or "").strip():
            raise ValueError(f"Each {key} entry needs a slug.")
        slug = str(item["slug"]).strip()
        if slug in seen:
            raise ValueError(f"Duplicate slug in {key}: {slug}")
        seen.add(slug)


def validate_setting(key: str, value: Any) -> None:
    if key not in ALLOWED_KEYS:
        raise ValueError(f"Unknown setting: {key}")
    if key == "site_metadata":
        if not isinstance(value, dict):
            raise ValueError("site_metadata must be an object.")
        return
    _validate_slug_list(key, value)


def set_setting(s: "Session", key: str, value: Any, user: "User | None") -> TenantSetting:
    validate_setting(key, value)
    row = s.query(TenantSetting).filter(TenantSetting.key == key).one_or_none()
    if row is None:
        row = TenantSetting(key=key)
        s.add(row)
    row.value = value
    row.updated_at = datetime.utcnow()
    s.flush()
    record_event(s, actor=user, action="settings.update", entity_type="TenantSetting", entity_id=key)
    return row


def contact_status_slugs(s: "Session") -> list[str]:
    return [str(x["slug"]) for x in get_setting(s, "crm_contact_statuses") or []]


def note_type_slugs(s: "Session") -> list[str]:
    return [str(x["slug"]) for x in get_setting(s, "crm_note_types") or []]


def resource_type_slugs(s: "Session") -> list[str]:
    return [str(x["slug"]) for x in get_setting(s, "calendar_resource_types") or []]


# ---------- Site mode ----------


def set_site_mode(s: "Session", site: "TenantSite", mode: str, user: "User") -> "TenantSite":
    if mode not in SITE_MODES:
        raise ValueError(f"Invalid site mode. Must be one of: {', '.join(SITE_MODES)}")
    if site.site_mode_locked and not user.is_superadmin:
        raise SiteModeLockedError(site.site_mode_locked_reason or "Site mode is locked by a platform administrator.")
    old = site.site_mode
    site.site_mode = mode
    site.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="site.mode.update",
        entity_type="TenantSite",
        entity_id=str(site.id),
        metadata={"old": old, "new": mode},
    )
    return site


def lock_site_mode(s: "Session", site: "TenantSite", user: "User", *, locked: bool, reason: str | None = None) -> "TenantSite":
    site.site_mode_locked = locked
    site.site_mode_locked_by = user.id if locked else None
    site.site_mode_locked_at = datetime.utcnow() if locked else None
    site.site_mode_locked_reason = (reason or "").strip() or None if locked else None
    site.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="site.mode.lock" if locked else "site.mode.unlock",
        entity_type="TenantSite",
        entity_id=str(site.id),
        reason=site.site_mode_locked_reason,
    )
    return site


# ---------- Team ----------


def list_team(s: "Session", site: "TenantSite") -> list["TenantUserAssignment"]:
    from app.cms.models import TenantUserAssignment

    return (
        s.query(TenantUserAssignment)
        .filter(TenantUserAssignment.tenant_site_id == site.id)
        .order_by(TenantUserAssignment.created_at.asc())
        .all()
    )


def invite_team_member(
    s: "Session", site: "TenantSite", *, email: str, role_slug: str, user: "User"
) -> "TenantUserAssignment":
    """Give an existing staff account a role on this site (or change its role)."""
    from app.cms.models import TenantUserAssignment, User as UserModel
    from app.cms.rbac import SUPERADMIN_ROLE, role_exists

    email = (email or "").strip().lower()
    if not email:
        raise ValueError("Email is required.")
    if role_slug == SUPERADMIN_ROLE or not role_exists(s, role_slug):
        raise ValueError(f"Unknown role: {role_slug}")
    account = s.query(UserModel).filter(UserModel.email == email).one_or_none()
    if account is None:
        raise LookupError("No account exists with that email.")
    if account.is_member or account.is_superadmin:
        raise ValueError("Only staff accounts can be added to the team.")

    assignment = (
        s.query(TenantUserAssignment)
        .filter(TenantUserAssignment.user_id == account.id, TenantUserAssignment.tenant_site_id == site.id)
        .one_or_none()
    )
    if assignment is None:
        assignment = TenantUserAssignment(user_id=account.id, tenant_site_id=site.id, role_slug=role_slug)
        s.add(assignment)
    else:
        assignment.role_slug = role_slug
    s.flush()
    record_event(
        s,
        actor=user,
        action="team.assign",
        entity_type="TenantUserAssignment",
        entity_id=str(assignment.id),
        metadata={"email": email, "role": role_slug, "site_id": site.id},
    )
    return assignment
