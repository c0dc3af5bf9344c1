from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_

from app.cms.audit import record_event
from app.cms.modules.memberships.codes import (
    DEFAULT_EXCLUDE_CHARS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RANDOM_LENGTH,
    MAX_RANDOM_LENGTH,
    MIN_RANDOM_LENGTH,
    assign_multi_use_code,
    generate_single_use_codes,
    hash_code,
)
from app.cms.modules.memberships.models import (
    ContactMag,
    Mag,
    Member,
    MembershipCode,
    MembershipCodeBatch,
    MembershipCodeRedemption,
)
from app.cms.utils import clean_str, isoformat, parse_datetime, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User
    from app.cms.modules.crm.models import CrmContact

logger = logging.getLogger(__name__)

MAG_STATUSES = ("active", "draft")
ASSIGNED_VIA = ("admin", "code", "form", "signup")
USE_TYPES = ("single_use", "multi_use")

REDEMPTION_NOTE_TYPE = "code_redemption"


class CodeRedemptionError(Exception):
    pass


@dataclass
class RedeemResult:
    mag: Mag
    already_assigned: bool


def mag_to_dict(mag: Mag) -> dict[str, Any]:
    return {
        "id": mag.id,
        "name": mag.name,
        "uid": mag.uid,
        "description": mag.description,
        "status": mag.status,
        "created_at": isoformat(mag.created_at),
    }


def batch_to_dict(batch: MembershipCodeBatch) -> dict[str, Any]:
    return {
        "id": batch.id,
        "mag_id": batch.mag_id,
        "mag_name": batch.mag.name if batch.mag else None,
        "name": batch.name,
        "use_type": batch.use_type,
        "code": batch.code_plain if batch.use_type == "multi_use" else None,
        "max_uses": batch.max_uses,
        "use_count": batch.use_count,
        "expires_at": isoformat(batch.expires_at),
        "prefix": batch.prefix,
        "suffix": batch.suffix,
        "random_length": batch.random_length,
        "exclude_chars": batch.exclude_chars,
        "created_at": isoformat(batch.created_at),
    }


# ---------- MAGs ----------


def search_mags(s: "Session", q: str | None = None, status: str | None = None) -> list[Mag]:
    query = s.query(Mag)
    if q:
        like = f"%{q}%"
        query = query.filter(or_(Mag.name.ilike(like), Mag.uid.ilike(like)))
    if status:
        query = query.filter(Mag.status == status)
    return query.order_by(Mag.name.asc()).all()


def validate_mag_payload(s: "Session", payload: dict, *, existing: Mag | None = None) -> list[str]:
    errors = []
    name = clean_str(payload.get("name"))
    if existing is None and not name:
        errors.append("Name is required.")
    status = clean_str(payload.get("status"))
    if status and status not in MAG_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(MAG_STATUSES)}")
    uid = clean_str(payload.get("uid"))
    if uid:
        q = s.query(Mag.id).filter(Mag.uid == uid)
        if existing is not None:
            q = q.filter(Mag.id != existing.id)
        if q.first():
            errors.append(f"A membership with uid {uid} already exists.")
    return errors


def create_mag(s: "Session", payload: dict, user: "User") -> Mag:
    errors = validate_mag_payload(s, payload)
    if errors:
        raise ValueError(" ".join(errors))
    name = clean_str(payload.get("name")) or ""
    now = datetime.utcnow()
    mag = Mag(
        name=name,
        uid=clean_str(payload.get("uid")) or slugify(name, sep="_"),
        description=clean_str(payload.get("description")),
        status=clean_str(payload.get("status")) or "active",
        created_at=now,
        updated_at=now,
    )
    if s.query(Mag.id).filter(Mag.uid == mag.uid).first():
        raise ValueError(f"A membership with uid {mag.uid} already exists.")
    s.add(mag)
    s.flush()
    record_event(s, actor=user, action="mag.create", entity_type="Mag", entity_id=str(mag.id), metadata={"uid": mag.uid})
    return mag


def update_mag(s: "Session", mag: Mag, payload: dict, user: "User") -> Mag:
    errors = validate_mag_payload(s, payload, existing=mag)
    if errors:
        raise ValueError(" ".join(errors))
    for field in ("name", "uid", "status"):
        value = clean_str(payload.get(field))
        if value:
            setattr(mag, field, value)
    if "description" in payload:
        mag.description = clean_str(payload.get("description"))
    mag.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="mag.update", entity_type="Mag", entity_id=str(mag.id))
    return mag


def delete_mag(s: "Session", mag: Mag, user: "User") -> None:
    """Remove a MAG with its contact assignments and gating references. Refused while code batches exist."""
    from app.cms.modules.content.models import Content
    from app.cms.modules.events.models import Event
    from app.cms.modules.media.models import GalleryMag, MediaMag

    if s.query(MembershipCodeBatch.id).filter(MembershipCodeBatch.mag_id == mag.id).first():
        raise ValueError("Membership still has code batches.")
    s.query(ContactMag).filter(ContactMag.mag_id == mag.id).delete(synchronize_session=False)
    s.query(MediaMag).filter(MediaMag.mag_id == mag.id).delete(synchronize_session=False)
    s.query(GalleryMag).filter(GalleryMag.mag_id == mag.id).delete(synchronize_session=False)
    for model in (Content, Event):
        s.query(model).filter(model.required_mag_id == mag.id).update({model.required_mag_id: None}, synchronize_session=False)
    record_event(s, actor=user, action="mag.delete", entity_type="Mag", entity_id=str(mag.id), metadata={"uid": mag.uid})
    s.delete(mag)


def assign_mag(s: "Session", contact: "CrmContact", mag: Mag, *, assigned_via: str = "admin", user: "User | None" = None) -> tuple[ContactMag, bool]:
    """Idempotent. Returns (assignment, created)."""
    if assigned_via not in ASSIGNED_VIA:
        raise ValueError(f"Invalid assigned_via: {assigned_via}")
    existing = (
        s.query(ContactMag).filter(ContactMag.contact_id == contact.id, ContactMag.mag_id == mag.id).one_or_none()
    )
    if existing is not None:
        return existing, False
    row = ContactMag(contact_id=contact.id, mag_id=mag.id, assigned_via=assigned_via)
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="mag.assign",
        entity_type="CrmContact",
        entity_id=str(contact.id),
        metadata={"mag_id": mag.id, "assigned_via": assigned_via},
    )
    return row, True


def remove_mag(s: "Session", contact: "CrmContact", mag_id: int, user: "User") -> bool:
    row = s.query(ContactMag).filter(ContactMag.contact_id == contact.id, ContactMag.mag_id == mag_id).one_or_none()
    if row is None:
        return False
    s.delete(row)
    record_event(
        s,
        actor=user,
        action="mag.unassign",
        entity_type="CrmContact",
        entity_id=str(contact.id),
        metadata={"mag_id": mag_id},
    )
    return True


def contact_mag_ids(s: "Session", contact_id: int) -> set[int]:
    return {r[0] for r in s.query(ContactMag.mag_id).filter(ContactMag.contact_id == contact_id).all()}


# ---------- Members ----------


def member_for_user(s: "Session", user_id: int) -> Member | None:
    return s.query(Member).filter(Member.user_id == user_id).one_or_none()


def upsert_member(s: "Session", user_id: int, contact_id: int) -> tuple[Member, bool]:
    member = member_for_user(s, user_id)
    if member is not None:
        if member.contact_id != contact_id:
            member.contact_id = contact_id
            member.updated_at = datetime.utcnow()
        return member, False
    member = Member(user_id=user_id, contact_id=contact_id, status="active")
    s.add(member)
    s.flush()
    return member, True


# ---------- Code batches ----------


def create_batch(s: "Session", payload: dict, user: "User", max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> MembershipCodeBatch:
    """Create a batch. Multi-use batches get their shared code immediately."""
    name = clean_str(payload.get("name"))
    if not name:
        raise ValueError("Name is required.")
    try:
        mag_id = int(payload.get("mag_id"))
    except (TypeError, ValueError):
        raise ValueError("mag_id is required.")
    mag = s.get(Mag, mag_id)
    if mag is None:
        raise ValueError("Membership not found.")
    use_type = clean_str(payload.get("use_type")) or "single_use"
    if use_type not in USE_TYPES:
        raise ValueError(f"Invalid use_type. Must be one of: {', '.join(USE_TYPES)}")
    try:
        random_length = int(payload.get("random_length") or DEFAULT_RANDOM_LENGTH)
    except (TypeError, ValueError):
        raise ValueError("random_length must be a number.")
    if not MIN_RANDOM_LENGTH <= random_length <= MAX_RANDOM_LENGTH:
        raise ValueError(f"random_length must be between {MIN_RANDOM_LENGTH} and {MAX_RANDOM_LENGTH}.")
    max_uses = payload.get("max_uses")
    if max_uses not in (None, ""):
        try:
            max_uses = int(max_uses)
        except (TypeError, ValueError):
            raise ValueError("max_uses must be a number.")
        if max_uses < 1:
            raise ValueError("max_uses must be at least 1.")
    else:
        max_uses = None
    try:
        expires_at = parse_datetime(payload.get("expires_at"))
    except ValueError:
        raise ValueError("expires_at must be an ISO-8601 timestamp.")

    exclude = payload.get("exclude_chars")
    batch = MembershipCodeBatch(
        mag_id=mag.id,
        name=name,
        use_type=use_type,
        max_uses=max_uses if use_type == "multi_use" else None,
        use_count=0,
        expires_at=expires_at,
        prefix=clean_str(payload.get("prefix")),
        suffix=clean_str(payload.get("suffix")),
        random_length=random_length,
        exclude_chars=DEFAULT_EXCLUDE_CHARS if exclude is None else str(exclude),
        created_by_user_id=user.id,
    )
    s.add(batch)
    s.flush()
    if use_type == "multi_use":
        assign_multi_use_code(s, batch, max_attempts, code=clean_str(payload.get("code")))

    record_event(
        s,
        actor=user,
        action="mag.batch.create",
        entity_type="MembershipCodeBatch",
        entity_id=str(batch.id),
        metadata={"mag_id": mag.id, "use_type": use_type},
    )
    return batch


def generate_codes(s: "Session", batch: MembershipCodeBatch, count: int, user: "User", max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> list[str]:
    codes = generate_single_use_codes(s, batch, count, max_attempts)
    record_event(
        s,
        actor=user,
        action="mag.codes.generate",
        entity_type="MembershipCodeBatch",
        entity_id=str(batch.id),
        metadata={"count": len(codes)},
    )
    return codes


def batch_codes(s: "Session", batch: MembershipCodeBatch) -> list[MembershipCode]:
    return s.query(MembershipCode).filter(MembershipCode.batch_id == batch.id).order_by(MembershipCode.id.asc()).all()


# ---------- Redemption ----------


def _note_redemption(s: "Session", contact: "CrmContact", mag: Mag) -> None:
    from app.cms.modules.crm.service import add_note

    add_note(s, contact, f"Membership code redeemed: {mag.name} ({mag.uid})", None, note_type=REDEMPTION_NOTE_TYPE)


def redeem_code(s: "Session", code: str, member: Member, *, now: datetime | None = None) -> RedeemResult:
    """
    Redeem a single-use or multi-use code for a member's contact.

    Idempotent: when the contact already holds the MAG, succeed without
    consuming the code. Raises CodeRedemptionError with a user-facing message.
    """
    now = now or datetime.utcnow()
    h = hash_code(code)
    contact = member.contact

    single = (
        s.query(MembershipCode)
        .filter(MembershipCode.code_hash == h, MembershipCode.status == "available")
        .one_or_none()
    )
    if single is not None:
        batch = single.batch
        if batch.expires_at is not None and batch.expires_at < now:
            raise CodeRedemptionError("Code expired")
        mag = batch.mag
        _, created = assign_mag(s, contact, mag, assigned_via="code")
        if not created:
            return RedeemResult(mag=mag, already_assigned=True)
        single.status = "redeemed"
        single.redeemed_at = now
        single.redeemed_by_member_id = member.id
        _note_redemption(s, contact, mag)
        record_event(
            s,
            actor=None,
            action="mag.code.redeem",
            entity_type="MembershipCode",
            entity_id=str(single.id),
            metadata={"member_id": member.id, "mag_id": mag.id},
        )
        return RedeemResult(mag=mag, already_assigned=False)

    multi = (
        s.query(MembershipCodeBatch)
        .filter(MembershipCodeBatch.code_hash == h, MembershipCodeBatch.use_type == "multi_use")
        .one_or_none()
    )
    if multi is not None:
        if multi.expires_at is not None and multi.expires_at < now:
            raise CodeRedemptionError("Code expired")
        if multi.max_uses is not None and multi.use_count >= multi.max_uses:
            raise CodeRedemptionError("Code has reached maximum uses")
        mag = multi.mag
        _, created = assign_mag(s, contact, mag, assigned_via="code")
        if not created:
            return RedeemResult(mag=mag, already_assigned=True)
        multi.use_count = (multi.use_count or 0) + 1
        s.add(MembershipCodeRedemption(batch_id=multi.id, member_id=member.id, contact_id=contact.id, redeemed_at=now))
        _note_redemption(s, contact, mag)
        record_event(
            s,
            actor=None,
            action="mag.code.redeem",
            entity_type="MembershipCodeBatch",
            entity_id=str(multi.id),
            metadata={"member_id": member.id, "mag_id": mag.id},
        )
        return RedeemResult(mag=mag, already_assigned=False)

    raise CodeRedemptionError("Invalid or already used code")
