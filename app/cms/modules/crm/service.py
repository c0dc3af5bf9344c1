from __future__ import annotations

import csv
import io
import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.cms.audit import record_event
from app.cms.modules.crm.models import (
    ContactCustomFieldValue,
    ContactMarketingList,
    CrmContact,
    CrmCustomField,
    CrmNote,
    MarketingList,
)
from app.cms.utils import clean_str, isoformat, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User

logger = logging.getLogger(__name__)

CONTACT_FIELDS = (
    "email",
    "phone",
    "first_name",
    "last_name",
    "full_name",
    "company",
    "address",
    "city",
    "state",
    "postal_code",
    "country",
    "status",
    "dnd_status",
    "source",
    "message",
    "external_crm_id",
)

CUSTOM_FIELD_TYPES = ("text", "textarea", "number", "date", "select", "checkbox", "email", "url")
_CUSTOM_FIELD_NAME_RE = re.compile(r"^[a-z0-9_]+$")

EXPORT_MAX_RECORDS = 10_000
EXPORT_CONTACT_FIELDS: tuple[tuple[str, str], ...] = (
    ("id", "ID"),
    ("email", "Email"),
    ("phone", "Phone"),
    ("first_name", "First name"),
    ("last_name", "Last name"),
    ("full_name", "Full name"),
    ("company", "Company"),
    ("address", "Address"),
    ("city", "City"),
    ("state", "State"),
    ("postal_code", "Postal code"),
    ("country", "Country"),
    ("status", "Status"),
    ("dnd_status", "Do not contact"),
    ("source", "Source"),
    ("message", "Message"),
    ("created_at", "Created"),
    ("updated_at", "Updated"),
)


class DuplicateContactError(Exception):
    def __init__(self, existing: CrmContact):
        super().__init__(f"A contact with email {existing.email} already exists.")
        self.existing = existing


class MergeError(Exception):
    pass


class DuplicateListError(Exception):
    def __init__(self, slug: str):
        super().__init__(f"A list with slug {slug} already exists.")
        self.slug = slug


def normalize_email(value: Any) -> str | None:
    email = clean_str(value)
    return email.lower() if email else None


def contact_to_dict(contact: CrmContact, *, detail: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {"id": contact.id}
    for field in CONTACT_FIELDS:
        data[field] = getattr(contact, field)
    data.update(
        {
            "display_name": contact.display_name,
            "form_id": contact.form_id,
            "deleted_at": isoformat(contact.deleted_at),
            "created_at": isoformat(contact.created_at),
            "updated_at": isoformat(contact.updated_at),
        }
    )
    if detail:
        data["notes"] = [note_to_dict(n) for n in contact.notes]
        data["custom_fields"] = {v.field.name: v.value for v in contact.custom_values}
        data["lists"] = [{"id": m.list_id, "name": m.marketing_list.name} for m in contact.list_memberships]
        data["mags"] = [
            {"id": cm.mag_id, "name": cm.mag.name, "uid": cm.mag.uid, "assigned_via": cm.assigned_via}
            for cm in contact.mags
        ]
    return data


def note_to_dict(note: CrmNote) -> dict[str, Any]:
    return {
        "id": note.id,
        "contact_id": note.contact_id,
        "body": note.body,
        "note_type": note.note_type,
        "created_by_user_id": note.created_by_user_id,
        "created_at": isoformat(note.created_at),
        "updated_at": isoformat(note.updated_at),
    }


# ---------- Contacts ----------


def contact_query(
    s: "Session",
    *,
    search: str | None = None,
    status: str | None = None,
    list_id: int | None = None,
    include_trashed: bool = False,
    trashed_only: bool = False,
):
    q = s.query(CrmContact)
    if trashed_only:
        q = q.filter(CrmContact.deleted_at.isnot(None))
    elif not include_trashed:
        q = q.filter(CrmContact.deleted_at.is_(None))
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                CrmContact.email.ilike(like),
                CrmContact.full_name.ilike(like),
                CrmContact.first_name.ilike(like),
                CrmContact.last_name.ilike(like),
                CrmContact.company.ilike(like),
                CrmContact.phone.ilike(like),
            )
        )
    if status:
        q = q.filter(CrmContact.status == status)
    if list_id:
        q = q.join(ContactMarketingList, ContactMarketingList.contact_id == CrmContact.id).filter(
            ContactMarketingList.list_id == list_id
        )
    return q


def find_live_contact_by_email(s: "Session", email: str | None) -> CrmContact | None:
    email = normalize_email(email)
    if not email:
        return None
    return (
        s.query(CrmContact)
        .filter(func.lower(CrmContact.email) == email, CrmContact.deleted_at.is_(None))
        .order_by(CrmContact.id.asc())
        .first()
    )


def _check_status(s: "Session", status: str) -> None:
    from app.cms.modules.settings.service import contact_status_slugs

    allowed = contact_status_slugs(s)
    if status not in allowed:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(allowed)}")


def validate_contact_payload(payload: dict) -> list[str]:
    errors = []
    has_name = any(clean_str(payload.get(k)) for k in ("full_name", "first_name", "last_name"))
    email = normalize_email(payload.get("email"))
    if not email and not has_name:
        errors.append("Email or name is required.")
    if email and "@" not in email:
        errors.append("Email address is invalid.")
    return errors


def create_contact(s: "Session", payload: dict, user: "User | None", *, source: str | None = None) -> CrmContact:
    errors = validate_contact_payload(payload)
    if errors:
        raise ValueError(" ".join(errors))
    email = normalize_email(payload.get("email"))
    existing = find_live_contact_by_email(s, email)
    if existing is not None:
        raise DuplicateContactError(existing)

    status = clean_str(payload.get("status")) or "new"
    _check_status(s, status)

    now = datetime.utcnow()
    contact = CrmContact(created_at=now, updated_at=now)
    for field in CONTACT_FIELDS:
        setattr(contact, field, clean_str(payload.get(field)))
    contact.email = email
    contact.status = status
    contact.source = clean_str(payload.get("source")) or source or "manual"
    if not contact.full_name and (contact.first_name or contact.last_name):
        contact.full_name = " ".join(p for p in (contact.first_name, contact.last_name) if p)
    s.add(contact)
    s.flush()

    record_event(
        s,
        actor=user,
        action="crm.contact.create",
        entity_type="CrmContact",
        entity_id=str(contact.id),
        metadata={"email": contact.email, "source": contact.source},
    )
    return contact


def update_contact(s: "Session", contact: CrmContact, payload: dict, user: "User") -> CrmContact:
    """Partial update: only keys present in the payload are touched."""
    changes: dict[str, Any] = {}
    for field in CONTACT_FIELDS:
        if field not in payload:
            continue
        new = normalize_email(payload[field]) if field == "email" else clean_str(payload[field])
        if field == "status":
            if not new:
                raise ValueError("Status cannot be blank.")
            _check_status(s, new)
        if field == "email" and new and new != contact.email:
            existing = find_live_contact_by_email(s, new)
            if existing is not None and existing.id != contact.id:
                raise DuplicateContactError(existing)
        old = getattr(contact, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(contact, field, new)

    if not contact.email and not contact.display_name.strip():
        raise ValueError("Email or name is required.")

    if changes:
        contact.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="crm.contact.update",
            entity_type="CrmContact",
            entity_id=str(contact.id),
            metadata={"changes": changes},
        )
    return contact


def trash_contacts(s: "Session", ids: list[int], user: "User") -> int:
    now = datetime.utcnow()
    contacts = s.query(CrmContact).filter(CrmContact.id.in_(ids), CrmContact.deleted_at.is_(None)).all()
    for c in contacts:
        c.deleted_at = now
        c.updated_at = now
    if contacts:
        record_event(
            s,
            actor=user,
            action="crm.contact.trash",
            entity_type="CrmContact",
            entity_id=",".join(str(c.id) for c in contacts),
            metadata={"count": len(contacts)},
        )
    return len(contacts)


def restore_contacts(s: "Session", ids: list[int], user: "User") -> int:
    contacts = s.query(CrmContact).filter(CrmContact.id.in_(ids), CrmContact.deleted_at.isnot(None)).all()
    now = datetime.utcnow()
    for c in contacts:
        c.deleted_at = None
        c.updated_at = now
    if contacts:
        record_event(
            s,
            actor=user,
            action="crm.contact.restore",
            entity_type="CrmContact",
            entity_id=",".join(str(c.id) for c in contacts),
            metadata={"count": len(contacts)},
        )
    return len(contacts)


def purge_trash(s: "Session", user: "User") -> int:
    """Permanently delete every trashed contact."""
    contacts = s.query(CrmContact).filter(CrmContact.deleted_at.isnot(None)).all()
    ids = [c.id for c in contacts]
    for c in contacts:
        s.delete(c)
    s.flush()
    record_event(
        s,
        actor=user,
        action="crm.contact.purge",
        entity_type="CrmContact",
        metadata={"count": len(ids), "ids": ids},
    )
    logger.info("Purged %s trashed contacts", len(ids))
    return len(ids)


def bulk_set_status(s: "Session", ids: list[int], status: str, user: "User") -> int:
    _check_status(s, status)
    contacts = s.query(CrmContact).filter(CrmContact.id.in_(ids), CrmContact.deleted_at.is_(None)).all()
    now = datetime.utcnow()
    for c in contacts:
        c.status = status
        c.updated_at = now
    record_event(
        s,
        actor=user,
        action="crm.contact.bulk_status",
        entity_type="CrmContact",
        metadata={"count": len(contacts), "status": status},
    )
    return len(contacts)


def new_contact_count(s: "Session") -> int:
    return (
        s.query(func.count(CrmContact.id))
        .filter(CrmContact.status == "new", CrmContact.deleted_at.is_(None))
        .scalar()
        or 0
    )


def merge_contacts(s: "Session", primary_id: int, secondary_id: int, user: "User") -> CrmContact:
    """
    Fold the secondary contact into the primary and delete the secondary.

    Blank primary fields are filled from the secondary; notes, MAGs, list
    memberships and custom field values move across without duplicates.
    Not reversible.
    """
    from app.cms.modules.memberships.models import ContactMag, Member

    if primary_id == secondary_id:
        raise MergeError("Cannot merge a contact with itself.")
    primary = s.get(CrmContact, primary_id)
    secondary = s.get(CrmContact, secondary_id)
    if primary is None or secondary is None:
        raise LookupError("Contact not found.")

    filled = []
    for field in CONTACT_FIELDS:
        if field == "status":
            continue
        if not getattr(primary, field) and getattr(secondary, field):
            setattr(primary, field, getattr(secondary, field))
            filled.append(field)
    if primary.form_id is None and secondary.form_id is not None:
        primary.form_id = secondary.form_id

    for note in list(secondary.notes):
        note.contact = primary

    primary_mags = {cm.mag_id for cm in primary.mags}
    for cm in list(secondary.mags):
        if cm.mag_id not in primary_mags:
            s.add(ContactMag(contact_id=primary.id, mag_id=cm.mag_id, assigned_via=cm.assigned_via))
            primary_mags.add(cm.mag_id)

    primary_lists = {m.list_id for m in primary.list_memberships}
    for m in list(secondary.list_memberships):
        if m.list_id not in primary_lists:
            s.add(ContactMarketingList(contact_id=primary.id, list_id=m.list_id))
            primary_lists.add(m.list_id)

    primary_values = {v.custom_field_id: v for v in primary.custom_values}
    for v in list(secondary.custom_values):
        existing = primary_values.get(v.custom_field_id)
        if existing is None:
            s.add(ContactCustomFieldValue(contact_id=primary.id, custom_field_id=v.custom_field_id, value=v.value))
        elif not existing.value and v.value:
            existing.value = v.value

    s.query(Member).filter(Member.contact_id == secondary.id).update(
        {Member.contact_id: primary.id}, synchronize_session=False
    )

    primary.updated_at = datetime.utcnow()
    s.flush()
    s.delete(secondary)
    s.flush()
    s.expire(primary)

    record_event(
        s,
        actor=user,
        action="crm.contact.merge",
        entity_type="CrmContact",
        entity_id=str(primary.id),
        metadata={"secondary_id": secondary_id, "filled_fields": filled},
    )
    return primary


def export_contacts_csv(s: "Session", contact_ids: list[int] | None, fields: list[str]) -> tuple[str, int]:
    """
    CSV for the selected contacts (or every live contact). ``fields`` are core
    keys from EXPORT_CONTACT_FIELDS or ``custom:<name>``. Returns (csv_text, row_count).
    """
    core_labels = dict(EXPORT_CONTACT_FIELDS)
    custom_fields = {f.name: f for f in s.query(CrmCustomField).all()}
    columns: list[tuple[str, str]] = []
    for key in fields:
        if key in core_labels:
            columns.append((key, core_labels[key]))
        elif key.startswith("custom:") and key[len("custom:"):] in custom_fields:
            cf = custom_fields[key[len("custom:"):]]
            columns.append((key, cf.label))
        else:
            raise ValueError(f"Unknown export field: {key}")
    if not columns:
        raise ValueError("Select at least one field to export.")

    q = s.query(CrmContact).filter(CrmContact.deleted_at.is_(None))
    if contact_ids:
        if len(contact_ids) > EXPORT_MAX_RECORDS:
            raise ValueError(f"Export is limited to {EXPORT_MAX_RECORDS} records.")
        q = q.filter(CrmContact.id.in_(contact_ids))
    contacts = q.order_by(CrmContact.id.asc()).limit(EXPORT_MAX_RECORDS).all()

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow([label for _, label in columns])
    for c in contacts:
        values_by_name = {v.field.name: v.value for v in c.custom_values}
        row = []
        for key, _ in columns:
            if key.startswith("custom:"):
                row.append(values_by_name.get(key[len("custom:"):]) or "")
                continue
            value = getattr(c, key)
            if isinstance(value, datetime):
                value = value.isoformat()
            row.append("" if value is None else value)
        writer.writerow(row)
    return buf.getvalue(), len(contacts)


# ---------- Notes ----------


def add_note(s: "Session", contact: CrmContact, body: str, user: "User | None", note_type: str | None = None) -> CrmNote:
    body = (body or "").strip()
    if not body:
        raise ValueError("Note body is required.")
    now = datetime.utcnow()
    note = CrmNote(
        contact_id=contact.id,
        body=body,
        note_type=clean_str(note_type),
        created_by_user_id=user.id if user else None,
        created_at=now,
        updated_at=now,
    )
    s.add(note)
    s.flush()
    record_event(
        s,
        actor=user,
        action="crm.note.create",
        entity_type="CrmNote",
        entity_id=str(note.id),
        metadata={"contact_id": contact.id, "note_type": note.note_type},
    )
    return note


def update_note(s: "Session", note: CrmNote, payload: dict, user: "User") -> CrmNote:
    if "body" in payload:
        body = (payload.get("body") or "").strip()
        if not body:
            raise ValueError("Note body is required.")
        note.body = body
    if "note_type" in payload:
        note.note_type = clean_str(payload.get("note_type"))
    note.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="crm.note.update", entity_type="CrmNote", entity_id=str(note.id))
    return note


def delete_note(s: "Session", note: CrmNote, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="crm.note.delete",
        entity_type="CrmNote",
        entity_id=str(note.id),
        metadata={"contact_id": note.contact_id},
    )
    s.delete(note)


# ---------- Custom fields ----------


def custom_field_to_dict(f: CrmCustomField) -> dict[str, Any]:
    return {
        "id": f.id,
        "name": f.name,
        "label": f.label,
        "field_type": f.field_type,
        "options": f.options,
        "is_required": f.is_required,
        "display_order": f.display_order,
    }


def validate_custom_field_payload(s: "Session", payload: dict, *, existing: CrmCustomField | None = None) -> list[str]:
    errors = []
    name = clean_str(payload.get("name")) if existing is None else existing.name
    if not name:
        errors.append("Name is required.")
    elif not _CUSTOM_FIELD_NAME_RE.match(name):
        errors.append("Name must contain only lowercase letters, numbers and underscores.")
    elif existing is None and s.query(CrmCustomField.id).filter(CrmCustomField.name == name).first():
        errors.append(f"A custom field named {name} already exists.")
    field_type = clean_str(payload.get("field_type")) or (existing.field_type if existing else "text")
    if field_type not in CUSTOM_FIELD_TYPES:
        errors.append(f"Invalid field type. Must be one of: {', '.join(CUSTOM_FIELD_TYPES)}")
    options = payload.get("options")
    if options is not None and not isinstance(options, list):
        errors.append("Options must be a list.")
    return errors


def create_custom_field(s: "Session", payload: dict, user: "User") -> CrmCustomField:
    errors = validate_custom_field_payload(s, payload)
    if errors:
        raise ValueError(" ".join(errors))
    name = clean_str(payload.get("name")) or ""
    field = CrmCustomField(
        name=name,
        label=clean_str(payload.get("label")) or name.replace("_", " ").title(),
        field_type=clean_str(payload.get("field_type")) or "text",
        options=payload.get("options"),
        is_required=bool(payload.get("is_required")),
        display_order=int(payload.get("display_order") or 0),
    )
    s.add(field)
    s.flush()
    record_event(s, actor=user, action="crm.custom_field.create", entity_type="CrmCustomField", entity_id=str(field.id))
    return field


def update_custom_field(s: "Session", field: CrmCustomField, payload: dict, user: "User") -> CrmCustomField:
    errors = validate_custom_field_payload(s, payload, existing=field)
    if errors:
        raise ValueError(" ".join(errors))
    if "label" in payload:
        field.label = clean_str(payload.get("label")) or field.label
    if "field_type" in payload:
        field.field_type = clean_str(payload.get("field_type")) or field.field_type
    if "options" in payload:
        field.options = payload.get("options")
    if "is_required" in payload:
        field.is_required = bool(payload.get("is_required"))
    if "display_order" in payload:
        field.display_order = int(payload.get("display_order") or 0)
    record_event(s, actor=user, action="crm.custom_field.update", entity_type="CrmCustomField", entity_id=str(field.id))
    return field


def set_custom_value(s: "Session", contact: CrmContact, field: CrmCustomField, value: Any) -> ContactCustomFieldValue:
    text_value = None if value is None else str(value)
    row = (
        s.query(ContactCustomFieldValue)
        .filter(ContactCustomFieldValue.contact_id == contact.id, ContactCustomFieldValue.custom_field_id == field.id)
        .one_or_none()
    )
    if row is None:
        row = ContactCustomFieldValue(contact_id=contact.id, custom_field_id=field.id, value=text_value)
        s.add(row)
    else:
        row.value = text_value
    s.flush()
    return row


def bulk_set_custom_value(s: "Session", ids: list[int], field: CrmCustomField, value: Any, user: "User") -> int:
    contacts = s.query(CrmContact).filter(CrmContact.id.in_(ids), CrmContact.deleted_at.is_(None)).all()
    for c in contacts:
        set_custom_value(s, c, field, value)
    record_event(
        s,
        actor=user,
        action="crm.custom_field.bulk_set",
        entity_type="CrmCustomField",
        entity_id=str(field.id),
        metadata={"count": len(contacts)},
    )
    return len(contacts)


# ---------- Marketing lists ----------


def list_to_dict(ml: MarketingList, *, with_members: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": ml.id,
        "name": ml.name,
        "slug": ml.slug,
        "description": ml.description,
        "member_count": len(ml.members),
        "created_at": isoformat(ml.created_at),
    }
    if with_members:
        data["members"] = [contact_to_dict(m.contact) for m in ml.members if m.contact.deleted_at is None]
    return data


def create_marketing_list(s: "Session", payload: dict, user: "User") -> MarketingList:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValueError("Name is required.")
    slug = slugify(clean_str(payload.get("slug")) or name)
    if not slug:
        raise ValueError("Slug is required.")
    if s.query(MarketingList.id).filter(MarketingList.slug == slug).first():
        raise DuplicateListError(slug)
    ml = MarketingList(name=name, slug=slug, description=clean_str(payload.get("description")))
    s.add(ml)
    s.flush()
    record_event(s, actor=user, action="crm.list.create", entity_type="MarketingList", entity_id=str(ml.id))
    return ml


def add_contacts_to_list(s: "Session", ml: MarketingList, contact_ids: list[int], user: "User | None") -> int:
    """Idempotent: existing memberships are left alone. Returns how many were added."""
    existing = {
        r[0]
        for r in s.query(ContactMarketingList.contact_id)
        .filter(ContactMarketingList.list_id == ml.id, ContactMarketingList.contact_id.in_(contact_ids))
        .all()
    }
    live = {r[0] for r in s.query(CrmContact.id).filter(CrmContact.id.in_(contact_ids)).all()}
    added = 0
    for cid in contact_ids:
        if cid in live and cid not in existing:
            s.add(ContactMarketingList(contact_id=cid, list_id=ml.id))
            existing.add(cid)
            added += 1
    s.flush()
    s.expire(ml)
    if added:
        record_event(
            s,
            actor=user,
            action="crm.list.add",
            entity_type="MarketingList",
            entity_id=str(ml.id),
            metadata={"count": added},
        )
    return added


def remove_contacts_from_list(s: "Session", ml: MarketingList, contact_ids: list[int], user: "User") -> int:
    removed = (
        s.query(ContactMarketingList)
        .filter(ContactMarketingList.list_id == ml.id, ContactMarketingList.contact_id.in_(contact_ids))
        .delete(synchronize_session=False)
    )
    s.expire(ml)
    if removed:
        record_event(
            s,
            actor=user,
            action="crm.list.remove",
            entity_type="MarketingList",
            entity_id=str(ml.id),
            metadata={"count": removed},
        )
    return removed


def delete_custom_field(s: "Session", field: CrmCustomField, user: "User") -> None:
    s.query(ContactCustomFieldValue).filter(ContactCustomFieldValue.custom_field_id == field.id).delete(
        synchronize_session=False
    )
    record_event(
        s,
        actor=user,
        action="crm.custom_field.delete",
        entity_type="CrmCustomField",
        entity_id=str(field.id),
        metadata={"name": field.name},
    )
    s.delete(field)


def delete_marketing_list(s: "Session", ml: MarketingList, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="crm.list.delete",
        entity_type="MarketingList",
        entity_id=str(ml.id),
        metadata={"slug": ml.slug},
    )
    s.delete(ml)
