"""
Self-service account profile for staff and members.

Staff edit their display name, a few profile details and their password.
Members edit their display name and password; the name is mirrored onto their
CRM contact so the tenant's contact list stays in step with the account.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from werkzeug.security import check_password_hash, generate_password_hash

from app.cms.audit import record_event
from app.cms.models import UserProfile
from app.cms.modules.automations import ensure_member_in_crm
from app.cms.modules.memberships.service import upsert_member
from app.cms.security import validate_password
from app.cms.utils import clean_str, isoformat

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User
    from app.cms.modules.memberships.models import Member

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("avatar_url", "title", "company", "phone", "bio")
DISPLAY_NAME_MAX = 255


class ProfileSyncError(Exception):
    pass


def profile_to_dict(user: "User", profile: UserProfile | None) -> dict[str, Any]:
    data: dict[str, Any] = {"user_id": user.id, "display_name": user.display_name}
    for field in PROFILE_FIELDS:
        data[field] = getattr(profile, field) if profile else None
    data["updated_at"] = isoformat(profile.updated_at) if profile else None
    return data


def get_profile(s: "Session", user: "User") -> UserProfile | None:
    return s.get(UserProfile, user.id)


def _set_display_name(user: "User", raw: Any) -> bool:
    name = clean_str(raw)
    if name and len(name) > DISPLAY_NAME_MAX:
        raise ValueError(f"Display name must be at most {DISPLAY_NAME_MAX} characters.")
    if name == user.display_name:
        return False
    user.display_name = name
    return True


def _check_avatar_url(value: str | None) -> None:
    if value and not value.startswith(("https://", "http://", "/")):
        raise ValueError("avatar_url must be an http(s) URL or a site path.")


def change_password(s: "Session", user: "User", current: Any, new: Any) -> None:
    current = str(current or "")
    new = str(new or "")
    if not current or not check_password_hash(user.password_hash, current):
        raise ValueError("Current password is incorrect.")
    if new == current:
        raise ValueError("New password must differ from the current one.")
    error = validate_password(new, email=user.email)
    if error:
        raise ValueError(error)
    user.password_hash = generate_password_hash(new)
    record_event(s, actor=user, action="auth.password_change", entity_type="User", entity_id=str(user.id))


def _apply_password(s: "Session", user: "User", payload: dict) -> bool:
    if not payload.get("new_password"):
        return False
    change_password(s, user, payload.get("current_password"), payload.get("new_password"))
    return True


def update_staff_profile(s: "Session", user: "User", payload: dict) -> UserProfile | None:
    """Partial update; keys absent from the payload are left alone."""
    changed: list[str] = []
    if "display_name" in payload and _set_display_name(user, payload.get("display_name")):
        changed.append("display_name")

    profile = get_profile(s, user)
    present = [f for f in PROFILE_FIELDS if f in payload]
    if present:
        if "avatar_url" in payload:
            _check_avatar_url(clean_str(payload.get("avatar_url")))
        if profile is None:
            profile = UserProfile(user_id=user.id)
            s.add(profile)
        for field in present:
            value = clean_str(payload.get(field))
            if getattr(profile, field) != value:
                setattr(profile, field, value)
                changed.append(field)
        profile.updated_at = datetime.utcnow()

    if _apply_password(s, user, payload):
        changed.append("password")
    if changed:
        record_event(
            s,
            actor=user,
            action="profile.update",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"fields": changed},
        )
    return profile


def update_member_profile(s: "Session", user: "User", payload: dict) -> "Member":
    """Update a member's name/password and re-sync their CRM contact."""
    renamed = "display_name" in payload and _set_display_name(user, payload.get("display_name"))
    changed_password = _apply_password(s, user, payload)

    ensured = ensure_member_in_crm(s, user.email, user.display_name)
    if ensured.error or ensured.contact is None:
        logger.warning("Member profile CRM sync failed for user %s: %s", user.id, ensured.error)
        raise ProfileSyncError(ensured.error or "Contact not found")
    member, _ = upsert_member(s, user.id, ensured.contact.id)

    if renamed or changed_password:
        record_event(
            s,
            actor=user,
            action="member.profile.update",
            entity_type="Member",
            entity_id=str(member.id),
            metadata={"contact_id": ensured.contact.id, "renamed": renamed, "password_changed": changed_password},
        )
    return member
