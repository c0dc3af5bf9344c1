"""
Signup-to-CRM synchronization.

A new member account must show up in the tenant CRM as a contact with status
``new`` and be linked to that contact through a ``members`` row. Both steps are
idempotent so the automation can be re-run for an existing account.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from app.cms.audit import record_event
from app.cms.modules.crm.service import create_contact, find_live_contact_by_email, normalize_email
from app.cms.modules.memberships.service import upsert_member

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User
    from app.cms.modules.crm.models import CrmContact
    from app.cms.modules.memberships.models import Member

logger = logging.getLogger(__name__)

STATUS_NEW = "new"
SOURCE_MEMBER_SIGNUP = "member_signup"


@dataclass
class EnsureMemberResult:
    contact: "CrmContact | None"
    created: bool
    error: str | None = None


@dataclass
class SignupResult:
    contact: "CrmContact | None"
    member: "Member | None"
    contact_created: bool = False
    error: str | None = None


def ensure_member_in_crm(s: "Session", email: str | None, display_name: str | None = None) -> EnsureMemberResult:
    """Find or create the CRM contact for a member; an existing contact only gets its full_name synced."""
    email = normalize_email(email)
    if not email:
        return EnsureMemberResult(contact=None, created=False, error="Email is required")
    full_name = (display_name or "").strip() or None

    existing = find_live_contact_by_email(s, email)
    if existing is not None:
        if full_name is not None and existing.full_name != full_name:
            existing.full_name = full_name
            existing.updated_at = datetime.utcnow()
        return EnsureMemberResult(contact=existing, created=False)

    try:
        contact = create_contact(
            s,
            {"email": email, "full_name": full_name, "status": STATUS_NEW},
            None,
            source=SOURCE_MEMBER_SIGNUP,
        )
    except ValueError as e:
        return EnsureMemberResult(contact=None, created=False, error=str(e))
    return EnsureMemberResult(contact=contact, created=True)


def on_member_signup(s: "Session", user: "User") -> SignupResult:
    ensured = ensure_member_in_crm(s, user.email, user.display_name)
    if ensured.error or ensured.contact is None:
        logger.warning("Signup CRM sync failed for user %s: %s", user.id, ensured.error)
        return SignupResult(contact=None, member=None, error=ensured.error or "Contact not created")

    member, _ = upsert_member(s, user.id, ensured.contact.id)
    record_event(
        s,
        actor=user,
        action="automation.member_signup",
        entity_type="Member",
        entity_id=str(member.id),
        metadata={"contact_id": ensured.contact.id, "contact_created": ensured.created},
    )
    logger.info(
        "Member signup synced to CRM (user=%s contact=%s created=%s)", user.id, ensured.contact.id, ensured.created
    )
    return SignupResult(contact=ensured.contact, member=member, contact_created=ensured.created)
