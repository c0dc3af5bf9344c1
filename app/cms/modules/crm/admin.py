from __future__ import annotations

import json
import logging
from datetime import datetime

from flask import Blueprint, Response, abort, flash, jsonify, redirect, render_template, request, url_for

from app.cms.db import db_session
from app.cms.modules.crm.models import CrmContact, CrmCustomField, CrmNote, MarketingList
from app.cms.modules.crm.importer import import_contacts_csv
from app.cms.modules.crm.service import (
    DuplicateContactError,
    DuplicateListError,
    EXPORT_CONTACT_FIELDS,
    MergeError,
    add_contacts_to_list,
    add_note,
    bulk_set_custom_value,
    bulk_set_status,
    contact_query,
    contact_to_dict,
    create_contact,
    create_custom_field,
    create_marketing_list,
    custom_field_to_dict,
    delete_custom_field,
    delete_marketing_list,
    delete_note,
    export_contacts_csv,
    list_to_dict,
    merge_contacts,
    new_contact_count,
    note_to_dict,
    purge_trash,
    remove_contacts_from_list,
    restore_contacts,
    set_custom_value,
    trash_contacts,
    update_contact,
    update_custom_field,
    update_note,
)
from app.cms.modules.settings.service import contact_status_slugs, note_type_slugs
from app.cms.rbac import require_feature
from app.cms.utils import clean_str, current_user, json_body, json_error, parse_id_list

bp = Blueprint("crm", __name__)
logger = logging.getLogger(__name__)

_PAGE_SIZE_MAX = 500


def _get_contact(contact_id: int, *, allow_trashed: bool = False) -> CrmContact | None:
    c = db_session().get(CrmContact, contact_id)
    if c is None or (c.deleted_at is not None and not allow_trashed):
        return None
    return c


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


# ---------- Pages ----------


@bp.get("/admin/crm/contacts")
@require_feature("contacts")
def contacts_page():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    status = (request.args.get("status") or "").strip()
    contacts = contact_query(s, search=search or None, status=status or None).order_by(CrmContact.created_at.desc()).limit(200).all()
    return render_template(
        "admin/crm/contacts.html",
        contacts=contacts,
        search=search,
        status_filter=status,
        statuses=contact_status_slugs(s),
        new_count=new_contact_count(s),
    )


@bp.get("/admin/crm/contacts/<int:contact_id>")
@require_feature("contacts")
def contact_page(contact_id: int):
    s = db_session()
    contact = _get_contact(contact_id, allow_trashed=True)
    if contact is None:
        abort(404)
    return render_template(
        "admin/crm/contact_detail.html",
        contact=contact,
        statuses=contact_status_slugs(s),
        note_types=note_type_slugs(s),
    )


@bp.post("/admin/crm/contacts/<int:contact_id>/notes")
@require_feature("contacts")
def contact_note_post(contact_id: int):
    s = db_session()
    contact = _get_contact(contact_id)
    if contact is None:
        abort(404)
    try:
        add_note(s, contact, request.form.get("body") or "", current_user(), request.form.get("note_type"))
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("crm.contact_page", contact_id=contact_id))
    s.commit()
    flash("Note added.", "success")
    return redirect(url_for("crm.contact_page", contact_id=contact_id))


@bp.get("/admin/crm/lists")
@require_feature("lists")
def lists_page():
    s = db_session()
    lists = s.query(MarketingList).order_by(MarketingList.name.asc()).all()
    return render_template("admin/crm/lists.html", lists=lists)


# ---------- Contacts API ----------


@bp.get("/api/crm/contacts")
@require_feature("contacts")
def api_contacts_list():
    s = db_session()
    try:
        list_id = int(request.args["list_id"]) if request.args.get("list_id") else None
        limit = min(int(request.args.get("limit") or 100), _PAGE_SIZE_MAX)
        offset = max(int(request.args.get("offset") or 0), 0)
    except ValueError:
        return json_error("list_id, limit and offset must be integers", 400)
    q = contact_query(
        s,
        search=clean_str(request.args.get("q")),
        status=clean_str(request.args.get("status")),
        list_id=list_id,
        include_trashed=_truthy(request.args.get("include_trashed")),
        trashed_only=_truthy(request.args.get("trashed")),
    )
    total = q.count()
    contacts = q.order_by(CrmContact.created_at.desc(), CrmContact.id.desc()).offset(offset).limit(limit).all()
    return jsonify({"contacts": [contact_to_dict(c) for c in contacts], "total": total})


@bp.post("/api/crm/contacts")
@require_feature("contacts")
def api_contacts_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        contact = create_contact(s, body, current_user())
    except DuplicateContactError as e:
        return json_error(str(e), 409, existing_id=e.existing.id)
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(contact_to_dict(contact, detail=True)), 201


@bp.get("/api/crm/contacts/new-count")
@require_feature("contacts")
def api_contacts_new_count():
    return jsonify({"count": new_contact_count(db_session())})


@bp.get("/api/crm/contacts/<int:contact_id>")
@require_feature("contacts")
def api_contact_get(contact_id: int):
    contact = _get_contact(contact_id, allow_trashed=True)
    if contact is None:
        return json_error("Contact not found", 404)
    return jsonify(contact_to_dict(contact, detail=True))


@bp.put("/api/crm/contacts/<int:contact_id>")
@bp.patch("/api/crm/contacts/<int:contact_id>")
@require_feature("contacts")
def api_contact_update(contact_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    contact = _get_contact(contact_id)
    if contact is None:
        return json_error("Contact not found", 404)
    try:
        update_contact(s, contact, body, current_user())
    except DuplicateContactError as e:
        return json_error(str(e), 409, existing_id=e.existing.id)
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(contact_to_dict(contact, detail=True))


@bp.delete("/api/crm/contacts/<int:contact_id>")
@require_feature("contacts")
def api_contact_delete(contact_id: int):
    s = db_session()
    if _get_contact(contact_id) is None:
        return json_error("Contact not found", 404)
    trash_contacts(s, [contact_id], current_user())
    s.commit()
    return jsonify({"success": True})


def _ids_from_body() -> tuple[list[int] | None, dict | None]:
    body = json_body()
    if body is None:
        return None, None
    return parse_id_list(body.get("ids") or body.get("contact_ids")), body


@bp.post("/api/crm/contacts/bulk-delete")
@require_feature("contacts")
def api_contacts_bulk_delete():
    ids, _ = _ids_from_body()
    if not ids:
        return json_error("ids must be a non-empty list of contact ids", 400)
    s = db_session()
    count = trash_contacts(s, ids, current_user())
    s.commit()
    return jsonify({"success": True, "count": count})


@bp.post("/api/crm/contacts/bulk-restore")
@require_feature("contacts")
def api_contacts_bulk_restore():
    ids, _ = _ids_from_body()
    if not ids:
        return json_error("ids must be a non-empty list of contact ids", 400)
    s = db_session()
    count = restore_contacts(s, ids, current_user())
    s.commit()
    return jsonify({"success": True, "count": count})


@bp.post("/api/crm/contacts/purge-trash")
@require_feature("contacts")
def api_contacts_purge_trash():
    s = db_session()
    count = purge_trash(s, current_user())
    s.commit()
    return jsonify({"success": True, "count": count})


@bp.post("/api/crm/contacts/bulk-status")
@require_feature("contacts")
def api_contacts_bulk_status():
    ids, body = _ids_from_body()
    if not ids or body is None:
        return json_error("ids must be a non-empty list of contact ids", 400)
    status = clean_str(body.get("status"))
    if not status:
        return json_error("status is required", 400)
    s = db_session()
    try:
        count = bulk_set_status(s, ids, status, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"success": True, "count": count})


@bp.post("/api/crm/contacts/merge")
@require_feature("contacts")
def api_contacts_merge():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    try:
        primary_id = int(body.get("primary_id"))
        secondary_id = int(body.get("secondary_id"))
    except (TypeError, ValueError):
        return json_error("primary_id and secondary_id are required", 400)
    s = db_session()
    try:
        primary = merge_contacts(s, primary_id, secondary_id, current_user())
    except MergeError as e:
        return json_error(str(e), 400)
    except LookupError as e:
        return json_error(str(e), 404)
    s.commit()
    return jsonify({"success": True, "contact": contact_to_dict(primary, detail=True)})


@bp.get("/api/crm/contacts/export/fields")
@require_feature("contacts")
def api_contacts_export_fields():
    s = db_session()
    custom = s.query(CrmCustomField).order_by(CrmCustomField.display_order.asc(), CrmCustomField.name.asc()).all()
    fields = [{"key": k, "label": label} for k, label in EXPORT_CONTACT_FIELDS]
    fields.extend({"key": f"custom:{f.name}", "label": f.label} for f in custom)
    return jsonify({"fields": fields})


@bp.post("/api/crm/contacts/export")
@require_feature("contacts")
def api_contacts_export():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    fields = body.get("fields")
    if not isinstance(fields, list) or not fields:
        return json_error("fields must be a non-empty list", 400)
    raw_ids = body.get("ids")
    ids = parse_id_list(raw_ids) if raw_ids else None
    if raw_ids and ids is None:
        return json_error("ids must be a list of contact ids", 400)
    try:
        text, count = export_contacts_csv(db_session(), ids, [str(f) for f in fields])
    except ValueError as e:
        return json_error(str(e), 400)
    filename = f"contacts-{datetime.utcnow().strftime('%Y%m%d-%H%M%S')}.csv"
    return Response(
        text,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"', "X-Export-Count": str(count)},
    )


@bp.post("/api/crm/contacts/import")
@require_feature("contacts")
def api_contacts_import():
    """Multipart ``file`` (plus optional ``mapping`` JSON / ``on_duplicate``) or JSON ``{"csv": ...}``."""
    upload = request.files.get("file")
    if upload is not None:
        if not upload.filename:
            return json_error("Choose a CSV file to import.", 400)
        data = upload.read()
        filename = upload.filename
        options: dict = dict(request.form)
        raw_mapping = options.get("mapping")
        if raw_mapping:
            try:
                options["mapping"] = json.loads(raw_mapping)
            except ValueError:
                return json_error("mapping must be a JSON object", 400)
    else:
        options = json_body() or {}
        text = options.get("csv")
        if not isinstance(text, str) or not text.strip():
            return json_error("Upload a CSV file or send its text as csv.", 400)
        data = text.encode("utf-8")
        filename = None
    mapping = options.get("mapping") or None
    if mapping is not None and not isinstance(mapping, dict):
        return json_error("mapping must be a JSON object", 400)

    s = db_session()
    try:
        result = import_contacts_csv(
            s,
            data,
            current_user(),
            mapping=mapping,
            on_duplicate=clean_str(options.get("on_duplicate")) or "skip",
            filename=filename,
        )
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    logger.info("Contact import: %s created, %s updated, %s skipped, %s failed", result.created, result.updated, result.skipped, len(result.errors))
    return jsonify(result.to_dict())


# ---------- Notes ----------


@bp.get("/api/crm/contacts/<int:contact_id>/notes")
@require_feature("contacts")
def api_notes_list(contact_id: int):
    s = db_session()
    if _get_contact(contact_id, allow_trashed=True) is None:
        return json_error("Contact not found", 404)
    notes = s.query(CrmNote).filter(CrmNote.contact_id == contact_id).order_by(CrmNote.created_at.desc()).all()
    return jsonify({"notes": [note_to_dict(n) for n in notes]})


@bp.post("/api/crm/contacts/<int:contact_id>/notes")
@require_feature("contacts")
def api_notes_create(contact_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    contact = _get_contact(contact_id)
    if contact is None:
        return json_error("Contact not found", 404)
    note_type = clean_str(body.get("note_type"))
    if note_type and note_type not in note_type_slugs(s):
        return json_error(f"Invalid note type. Must be one of: {', '.join(note_type_slugs(s))}", 400)
    try:
        note = add_note(s, contact, str(body.get("body") or ""), current_user(), note_type)
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(note_to_dict(note)), 201


def _get_note(contact_id: int, note_id: int) -> CrmNote | None:
    note = db_session().get(CrmNote, note_id)
    if note is None or note.contact_id != contact_id:
        return None
    return note


@bp.put("/api/crm/contacts/<int:contact_id>/notes/<int:note_id>")
@require_feature("contacts")
def api_notes_update(contact_id: int, note_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    note = _get_note(contact_id, note_id)
    if note is None:
        return json_error("Note not found", 404)
    try:
        update_note(s, note, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(note_to_dict(note))


@bp.delete("/api/crm/contacts/<int:contact_id>/notes/<int:note_id>")
@require_feature("contacts")
def api_notes_delete(contact_id: int, note_id: int):
    s = db_session()
    note = _get_note(contact_id, note_id)
    if note is None:
        return json_error("Note not found", 404)
    delete_note(s, note, current_user())
    s.commit()
    return jsonify({"success": True})


# ---------- Custom fields ----------


@bp.get("/api/crm/custom-fields")
@require_feature("contacts")
def api_custom_fields_list():
    s = db_session()
    fields = s.query(CrmCustomField).order_by(CrmCustomField.display_order.asc(), CrmCustomField.name.asc()).all()
    return jsonify({"fields": [custom_field_to_dict(f) for f in fields]})


@bp.post("/api/crm/custom-fields")
@require_feature("contacts")
def api_custom_fields_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        field = create_custom_field(s, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(custom_field_to_dict(field)), 201


@bp.put("/api/crm/custom-fields/<int:field_id>")
@require_feature("contacts")
def api_custom_fields_update(field_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    field = s.get(CrmCustomField, field_id)
    if field is None:
        return json_error("Custom field not found", 404)
    try:
        update_custom_field(s, field, body, current_user())
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(custom_field_to_dict(field))


@bp.delete("/api/crm/custom-fields/<int:field_id>")
@require_feature("contacts")
def api_custom_fields_delete(field_id: int):
    s = db_session()
    field = s.get(CrmCustomField, field_id)
    if field is None:
        return json_error("Custom field not found", 404)
    delete_custom_field(s, field, current_user())
    s.commit()
    return jsonify({"success": True})


@bp.put("/api/crm/contacts/<int:contact_id>/custom-fields")
@require_feature("contacts")
def api_contact_custom_values(contact_id: int):
    """Body: {"<field name>": value, ...}. Unknown names are rejected."""
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    contact = _get_contact(contact_id)
    if contact is None:
        return json_error("Contact not found", 404)
    fields = {f.name: f for f in s.query(CrmCustomField).all()}
    unknown = [k for k in body if k != "csrf_token" and k not in fields]
    if unknown:
        return json_error(f"Unknown custom fields: {', '.join(sorted(unknown))}", 400)
    for name, value in body.items():
        if name in fields:
            set_custom_value(s, contact, fields[name], value)
    s.commit()
    s.refresh(contact)
    return jsonify({"custom_fields": {v.field.name: v.value for v in contact.custom_values}})


@bp.post("/api/crm/custom-fields/<int:field_id>/bulk-set")
@require_feature("contacts")
def api_custom_fields_bulk_set(field_id: int):
    ids, body = _ids_from_body()
    if not ids or body is None:
        return json_error("ids must be a non-empty list of contact ids", 400)
    s = db_session()
    field = s.get(CrmCustomField, field_id)
    if field is None:
        return json_error("Custom field not found", 404)
    count = bulk_set_custom_value(s, ids, field, body.get("value"), current_user())
    s.commit()
    return jsonify({"success": True, "count": count})


# ---------- Marketing lists ----------


@bp.get("/api/crm/lists")
@require_feature("lists")
def api_lists_list():
    s = db_session()
    q = s.query(MarketingList)
    search = clean_str(request.args.get("q"))
    if search:
        q = q.filter(MarketingList.name.ilike(f"%{search}%"))
    return jsonify({"lists": [list_to_dict(ml) for ml in q.order_by(MarketingList.name.asc()).all()]})


@bp.post("/api/crm/lists")
@require_feature("lists")
def api_lists_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        ml = create_marketing_list(s, body, current_user())
    except DuplicateListError as e:
        return json_error(str(e), 409)
    except ValueError as e:
        return json_error(str(e), 400)
    s.commit()
    return jsonify(list_to_dict(ml)), 201


@bp.get("/api/crm/lists/<int:list_id>")
@require_feature("lists")
def api_lists_get(list_id: int):
    ml = db_session().get(MarketingList, list_id)
    if ml is None:
        return json_error("List not found", 404)
    return jsonify(list_to_dict(ml, with_members=True))


@bp.delete("/api/crm/lists/<int:list_id>")
@require_feature("lists")
def api_lists_delete(list_id: int):
    s = db_session()
    ml = s.get(MarketingList, list_id)
    if ml is None:
        return json_error("List not found", 404)
    delete_marketing_list(s, ml, current_user())
    s.commit()
    return jsonify({"success": True})


@bp.post("/api/crm/lists/<int:list_id>/contacts")
@require_feature("lists")
def api_lists_add_contacts(list_id: int):
    ids, _ = _ids_from_body()
    if not ids:
        return json_error("ids must be a non-empty list of contact ids", 400)
    s = db_session()
    ml = s.get(MarketingList, list_id)
    if ml is None:
        return json_error("List not found", 404)
    added = add_contacts_to_list(s, ml, ids, current_user())
    s.commit()
    return jsonify({"success": True, "added": added})


@bp.post("/api/crm/lists/<int:list_id>/contacts/remove")
@require_feature("lists")
def api_lists_remove_contacts(list_id: int):
    ids, _ = _ids_from_body()
    if not ids:
        return json_error("ids must be a non-empty list of contact ids", 400)
    s = db_session()
    ml = s.get(MarketingList, list_id)
    if ml is None:
        return json_error("List not found", 404)
    removed = remove_contacts_from_list(s, ml, ids, current_user())
    s.commit()
    return jsonify({"success": True, "removed": removed})


@bp.post("/api/crm/contacts/<int:contact_id>/lists/<int:list_id>")
@require_feature("lists")
def api_contact_list_add(contact_id: int, list_id: int):
    s = db_session()
    ml = s.get(MarketingList, list_id)
    if ml is None or _get_contact(contact_id) is None:
        return json_error("Contact or list not found", 404)
    added = add_contacts_to_list(s, ml, [contact_id], current_user())
    s.commit()
    return jsonify({"success": True, "added": added})


@bp.delete("/api/crm/contacts/<int:contact_id>/lists/<int:list_id>")
@require_feature("lists")
def api_contact_list_remove(contact_id: int, list_id: int):
    s = db_session()
    ml = s.get(MarketingList, list_id)
    if ml is None:
        return json_error("List not found", 404)
    removed = remove_contacts_from_list(s, ml, [contact_id], current_user())
    s.commit()
    return jsonify({"success": True, "removed": removed})
