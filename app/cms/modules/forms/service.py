from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.cms.audit import record_event
from app.cms.modules.forms.models import Form, FormSubmission
from app.cms.utils import clean_str, isoformat, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User

logger = logging.getLogger(__name__)

FIELD_TYPES = ("text", "textarea", "email", "phone", "number", "date", "select", "checkbox", "hidden", "url")
SUBMISSION_STATUSES = ("new", "reviewed", "archived")

# Submission keys copied onto a new contact when present.
_CONTACT_KEYS = ("first_name", "last_name", "full_name", "phone", "company", "message")


def form_to_dict(form: Form) -> dict[str, Any]:
    return {
        "id": form.id,
        "name": form.name,
        "slug": form.slug,
        "description": form.description,
        "fields": form.fields or [],
        "auto_assign_tags": form.auto_assign_tags or [],
        "auto_assign_mag_ids": form.auto_assign_mag_ids or [],
        "auto_assign_list_ids": form.auto_assign_list_ids or [],
        "settings": form.settings or {},
        "created_at": isoformat(form.created_at),
        "updated_at": isoformat(form.updated_at),
    }


def submission_to_dict(sub: FormSubmission) -> dict[str, Any]:
    return {
        "id": sub.id,
        "form_id": sub.form_id,
        "form_name": sub.form.name if sub.form else None,
        "contact_id": sub.contact_id,
        "data": sub.data or {},
        "status": sub.status,
        "created_at": isoformat(sub.created_at),
    }


def get_form_by_id_or_slug(s: "Session", ident: str) -> Form | None:
    ident = (ident or "").strip()
    if not ident:
        return None
    if ident.isdigit():
        form = s.get(Form, int(ident))
        if form is not None:
            return form
    return s.query(Form).filter(Form.slug == ident).one_or_none()


def _clean_fields(raw: Any) -> list[dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("fields must be a list.")
    out: list[dict[str, Any]] = []
    names: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError("Each field must be an object.")
        name = clean_str(item.get("name"))
        if not name:
            raise ValueError("Each field needs a name.")
        if name in names:
            raise ValueError(f"Duplicate field name: {name}")
        names.add(name)
        field_type = clean_str(item.get("type")) or "text"
        if field_type not in FIELD_TYPES:
            raise ValueError(f"Invalid field type for {name}: {field_type}")
        out.append(
            {
                "name": name,
                "label": clean_str(item.get("label")) or name,
                "type": field_type,
                "required": bool(item.get("required")),
                **({"options": item["options"]} if isinstance(item.get("options"), list) else {}),
            }
        )
    return out


def _clean_id_list(raw: Any, label: str) -> list[int]:
    if raw in (None, ""):
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{label} must be a list.")
    try:
        return sorted({int(v) for v in raw})
    except (TypeError, ValueError):
        raise ValueError(f"{label} must contain ids.")


def _apply_payload(s: "Session", form: Form, payload: dict) -> None:
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValueError("Name is required.")
        form.name = name
    if "slug" in payload or not form.slug:
        slug = slugify(clean_str(payload.get("slug")) or form.name)
        if not slug:
            raise ValueError("Slug is required.")
        clash = s.query(Form.id).filter(Form.slug == slug)
        if form.id is not None:
            clash = clash.filter(Form.id != form.id)
        if clash.first():
            raise ValueError(f"A form with slug {slug} already exists.")
        form.slug = slug
    if "description" in payload:
        form.description = clean_str(payload.get("description"))
    if "fields" in payload:
        form.fields = _clean_fields(payload.get("fields"))
    if "auto_assign_tags" in payload:
        tags = payload.get("auto_assign_tags") or []
        if not isinstance(tags, list):
            raise ValueError("auto_assign_tags must be a list.")
        form.auto_assign_tags = [str(t).strip() for t in tags if str(t).strip()]
    if "auto_assign_mag_ids" in payload:
        form.auto_assign_mag_ids = _clean_id_list(payload.get("auto_assign_mag_ids"), "auto_assign_mag_ids")
    if "auto_assign_list_ids" in payload:
        form.auto_assign_list_ids = _clean_id_list(payload.get("auto_assign_list_ids"), "auto_assign_list_ids")
    if "settings" in payload:
        settings = payload.get("settings") or {}
        if not isinstance(settings, dict):
            raise ValueError("settings must be an object.")
        form.settings = settings


def create_form(s: "Session", payload: dict, user: "User") -> Form:
    if not clean_str(payload.get("name")):
        raise ValueError("Name is required.")
    now = datetime.utcnow()
    form = Form(name="", slug="", fields=[], created_at=now, updated_at=now)
    _apply_payload(s, form, {"fields": [], **payload})
    s.add(form)
    s.flush()
    record_event(s, actor=user, action="form.create", entity_type="Form", entity_id=str(form.id), metadata={"slug": form.slug})
    return form


def update_form(s: "Session", form: Form, payload: dict, user: "User") -> Form:
    _apply_payload(s, form, payload)
    form.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="form.update", entity_type="Form", entity_id=str(form.id))
    return form


def delete_form(s: "Session", form: Form, user: "User") -> None:
    record_event(s, actor=user, action="form.delete", entity_type="Form", entity_id=str(form.id), metadata={"slug": form.slug})
    s.delete(form)


def missing_required_field(form: Form, data: dict) -> str | None:
    for field in form.fields or []:
        if not field.get("required"):
            continue
        value = data.get(field.get("name"))
        if value is None or value is False or (isinstance(value, str) and not value.strip()) or value == []:
            return str(field.get("name"))
    return None


def _sync_contact(s: "Session", form: Form, data: dict):
    """Upsert the submitter as a CRM contact and apply the form's auto-assignments."""
    from app.cms.modules.crm.models import MarketingList
    from app.cms.modules.crm.service import add_contacts_to_list, create_contact, find_live_contact_by_email, normalize_email
    from app.cms.modules.memberships.models import Mag
    from app.cms.modules.memberships.service import assign_mag

    email = normalize_email(data.get("email"))
    if not email or "@" not in email:
        return None
    contact = find_live_contact_by_email(s, email)
    if contact is None:
        payload = {k: data.get(k) for k in _CONTACT_KEYS if isinstance(data.get(k), str)}
        payload.update({"email": email, "status": "new"})
        if not any(payload.get(k) for k in ("full_name", "first_name", "last_name")) and isinstance(data.get("name"), str):
            payload["full_name"] = data["name"]
        contact = create_contact(s, payload, None, source="form")
        contact.form_id = form.id

    for mag_id in form.auto_assign_mag_ids or []:
        mag = s.get(Mag, int(mag_id))
        if mag is None:
            logger.warning("Form %s auto-assigns missing MAG %s", form.id, mag_id)
            continue
        assign_mag(s, contact, mag, assigned_via="form")
    for list_id in form.auto_assign_list_ids or []:
        ml = s.get(MarketingList, int(list_id))
        if ml is None:
            logger.warning("Form %s auto-assigns missing list %s", form.id, list_id)
            continue
        add_contacts_to_list(s, ml, [contact.id], None)
    return contact


def submit_form(s: "Session", form: Form, data: dict, *, ip_address: str | None = None) -> FormSubmission:
    """Store a public submission. Raises ValueError naming the first missing required field."""
    missing = missing_required_field(form, data)
    if missing:
        raise ValueError(f"Field {missing} is required")

    contact = _sync_contact(s, form, data)
    sub = FormSubmission(
        form_id=form.id,
        contact_id=contact.id if contact is not None else None,
        data=data,
        status="new",
        ip_address=ip_address,
    )
    s.add(sub)
    s.flush()
    record_event(
        s,
        actor=None,
        action="form.submit",
        entity_type="FormSubmission",
        entity_id=str(sub.id),
        metadata={"form_id": form.id, "contact_id": sub.contact_id},
    )
    return sub


def set_submission_status(s: "Session", sub: FormSubmission, status: str, user: "User") -> FormSubmission:
    if status not in SUBMISSION_STATUSES:
        raise ValueError(f"Invalid status. Must be one of: {', '.join(SUBMISSION_STATUSES)}")
    sub.status = status
    record_event(s, actor=user, action="form.submission.status", entity_type="FormSubmission", entity_id=str(sub.id), metadata={"status": status})
    return sub
