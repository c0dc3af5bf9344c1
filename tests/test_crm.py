import csv
import io

from conftest import login


def _create(client, h, **payload):
    r = client.post("/api/crm/contacts", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json


def test_create_contact_defaults(client):
    h = login(client)
    c = _create(client, h, email="  Ada@Example.com ", first_name="Ada", last_name="Lovelace")
    assert c["email"] == "ada@example.com"
    assert c["status"] == "new"
    assert c["source"] == "manual"
    assert c["full_name"] == "Ada Lovelace"


def test_create_contact_requires_email_or_name(client):
    h = login(client)
    r = client.post("/api/crm/contacts", json={"company": "Acme"}, headers=h)
    assert r.status_code == 400
    assert "Email or name is required" in r.json["error"]


def test_duplicate_live_email_conflicts(client):
    h = login(client)
    first = _create(client, h, email="dup@example.com")
    r = client.post("/api/crm/contacts", json={"email": "DUP@example.com"}, headers=h)
    assert r.status_code == 409
    assert r.json["existing_id"] == first["id"]

    # A trashed contact no longer blocks the address.
    client.delete(f"/api/crm/contacts/{first['id']}", headers=h)
    _create(client, h, email="dup@example.com")


def test_invalid_status_rejected(client):
    h = login(client)
    r = client.post("/api/crm/contacts", json={"email": "s@example.com", "status": "bogus"}, headers=h)
    assert r.status_code == 400
    assert "Invalid status" in r.json["error"]


def test_list_and_search(client):
    h = login(client)
    _create(client, h, email="alice@example.com", company="Acme")
    _create(client, h, email="bob@example.com", company="Globex")
    body = client.get("/api/crm/contacts").json
    assert body["total"] == 2
    body = client.get("/api/crm/contacts?q=acme").json
    assert [c["email"] for c in body["contacts"]] == ["alice@example.com"]
    assert client.get("/api/crm/contacts?limit=abc").status_code == 400


def test_update_contact_partial(client):
    h = login(client)
    c = _create(client, h, email="u@example.com", phone="123")
    r = client.patch(f"/api/crm/contacts/{c['id']}", json={"status": "contacted"}, headers=h)
    assert r.status_code == 200
    assert r.json["status"] == "contacted"
    assert r.json["phone"] == "123"

    r = client.put(f"/api/crm/contacts/{c['id']}", json={"status": ""}, headers=h)
    assert r.status_code == 400


def test_trash_restore_purge(client):
    h = login(client)
    a = _create(client, h, email="a@example.com")
    b = _create(client, h, email="b@example.com")

    r = client.post("/api/crm/contacts/bulk-delete", json={"ids": [a["id"], b["id"]]}, headers=h)
    assert r.json == {"success": True, "count": 2}
    assert client.get("/api/crm/contacts").json["total"] == 0
    assert client.get("/api/crm/contacts?trashed=1").json["total"] == 2

    r = client.post("/api/crm/contacts/bulk-restore", json={"ids": [a["id"]]}, headers=h)
    assert r.json["count"] == 1

    r = client.post("/api/crm/contacts/purge-trash", json={}, headers=h)
    assert r.json["count"] == 1
    assert client.get(f"/api/crm/contacts/{b['id']}").status_code == 404
    assert client.get(f"/api/crm/contacts/{a['id']}").status_code == 200


def test_bulk_delete_requires_ids(client):
    h = login(client)
    r = client.post("/api/crm/contacts/bulk-delete", json={"ids": []}, headers=h)
    assert r.status_code == 400
    r = client.post("/api/crm/contacts/bulk-delete", json={"ids": ["x"]}, headers=h)
    assert r.status_code == 400


def test_bulk_status_and_new_count(client):
    h = login(client)
    ids = [_create(client, h, email=f"n{i}@example.com")["id"] for i in range(3)]
    assert client.get("/api/crm/contacts/new-count").json["count"] == 3
    r = client.post("/api/crm/contacts/bulk-status", json={"ids": ids[:2], "status": "archived"}, headers=h)
    assert r.json == {"success": True, "count": 2}
    assert client.get("/api/crm/contacts/new-count").json["count"] == 1

    r = client.post("/api/crm/contacts/bulk-status", json={"ids": ids, "status": "nope"}, headers=h)
    assert r.status_code == 400


def test_merge_fills_blanks_and_moves_notes(client):
    h = login(client)
    primary = _create(client, h, email="p@example.com")
    secondary = _create(client, h, email="s@example.com", phone="555-0100", company="Initech")
    client.post(f"/api/crm/contacts/{secondary['id']}/notes", json={"body": "Called about renewal"}, headers=h)

    r = client.post(
        "/api/crm/contacts/merge",
        json={"primary_id": primary["id"], "secondary_id": secondary["id"]},
        headers=h,
    )
    assert r.status_code == 200
    merged = r.json["contact"]
    assert merged["email"] == "p@example.com"
    assert merged["phone"] == "555-0100"
    assert merged["company"] == "Initech"
    assert [n["body"] for n in merged["notes"]] == ["Called about renewal"]
    assert client.get(f"/api/crm/contacts/{secondary['id']}").status_code == 404


def test_merge_errors(client):
    h = login(client)
    c = _create(client, h, email="m@example.com")
    r = client.post("/api/crm/contacts/merge", json={"primary_id": c["id"], "secondary_id": c["id"]}, headers=h)
    assert r.status_code == 400
    r = client.post("/api/crm/contacts/merge", json={"primary_id": c["id"], "secondary_id": 9999}, headers=h)
    assert r.status_code == 404
    r = client.post("/api/crm/contacts/merge", json={"primary_id": c["id"]}, headers=h)
    assert r.status_code == 400


def test_export_csv(client):
    h = login(client)
    a = _create(client, h, email="x1@example.com", first_name="X")
    _create(client, h, email="x2@example.com")
    client.post("/api/crm/custom-fields", json={"name": "tier", "label": "Tier"}, headers=h)
    client.put(f"/api/crm/contacts/{a['id']}/custom-fields", json={"tier": "gold"}, headers=h)

    r = client.post("/api/crm/contacts/export", json={"fields": ["email", "first_name", "custom:tier"]}, headers=h)
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert r.headers["X-Export-Count"] == "2"
    rows = list(csv.reader(io.StringIO(r.data.decode())))
    assert rows[0] == ["Email", "First name", "Tier"]
    assert rows[1] == ["x1@example.com", "X", "gold"]
    assert rows[2] == ["x2@example.com", "", ""]

    r = client.post("/api/crm/contacts/export", json={"fields": ["email"], "ids": [a["id"]]}, headers=h)
    assert r.headers["X-Export-Count"] == "1"

    r = client.post("/api/crm/contacts/export", json={"fields": ["password"]}, headers=h)
    assert r.status_code == 400


def test_export_fields_include_custom(client):
    h = login(client)
    client.post("/api/crm/custom-fields", json={"name": "shoe_size"}, headers=h)
    keys = [f["key"] for f in client.get("/api/crm/contacts/export/fields").json["fields"]]
    assert "email" in keys
    assert "custom:shoe_size" in keys


def test_notes_crud(client):
    h = login(client)
    c = _create(client, h, email="notes@example.com")
    url = f"/api/crm/contacts/{c['id']}/notes"

    r = client.post(url, json={"body": "First call", "note_type": "call"}, headers=h)
    assert r.status_code == 201
    note_id = r.json["id"]
    assert r.json["note_type"] == "call"

    assert client.post(url, json={"body": "   "}, headers=h).status_code == 400
    assert client.post(url, json={"body": "x", "note_type": "fax"}, headers=h).status_code == 400

    r = client.put(f"{url}/{note_id}", json={"body": "Edited"}, headers=h)
    assert r.json["body"] == "Edited"
    assert len(client.get(url).json["notes"]) == 1

    assert client.delete(f"{url}/{note_id}", headers=h).json == {"success": True}
    assert client.get(url).json["notes"] == []


def test_note_form_on_contact_page(client):
    h = login(client)
    c = _create(client, h, email="page@example.com")
    r = client.post(
        f"/admin/crm/contacts/{c['id']}/notes",
        data={"body": "From the page", "note_type": "note", "csrf_token": h["X-CSRF-Token"]},
        follow_redirects=True,
    )
    assert r.status_code == 200
    assert b"From the page" in r.data


def test_custom_fields_validation(client):
    h = login(client)
    r = client.post("/api/crm/custom-fields", json={"name": "Bad Name"}, headers=h)
    assert r.status_code == 400
    r = client.post("/api/crm/custom-fields", json={"name": "age", "field_type": "number"}, headers=h)
    assert r.status_code == 201
    assert r.json["label"] == "Age"
    assert client.post("/api/crm/custom-fields", json={"name": "age"}, headers=h).status_code == 400

    c = _create(client, h, email="cf@example.com")
    r = client.put(f"/api/crm/contacts/{c['id']}/custom-fields", json={"height": "2m"}, headers=h)
    assert r.status_code == 400


def test_custom_field_bulk_set(client):
    h = login(client)
    field = client.post("/api/crm/custom-fields", json={"name": "region"}, headers=h).json
    ids = [_create(client, h, email=f"r{i}@example.com")["id"] for i in range(2)]
    r = client.post(f"/api/crm/custom-fields/{field['id']}/bulk-set", json={"ids": ids, "value": "EU"}, headers=h)
    assert r.json["count"] == 2
    assert client.get(f"/api/crm/contacts/{ids[1]}").json["custom_fields"] == {"region": "EU"}


def test_marketing_lists(client):
    h = login(client)
    ml = client.post("/api/crm/lists", json={"name": "Newsletter"}, headers=h)
    assert ml.status_code == 201
    ml = ml.json
    assert ml["slug"] == "newsletter"
    assert client.post("/api/crm/lists", json={"name": "Newsletter"}, headers=h).status_code == 409

    ids = [_create(client, h, email=f"l{i}@example.com")["id"] for i in range(2)]
    r = client.post(f"/api/crm/lists/{ml['id']}/contacts", json={"ids": ids}, headers=h)
    assert r.json["added"] == 2
    r = client.post(f"/api/crm/lists/{ml['id']}/contacts", json={"ids": ids}, headers=h)
    assert r.json["added"] == 0

    assert client.get(f"/api/crm/contacts?list_id={ml['id']}").json["total"] == 2
    detail = client.get(f"/api/crm/lists/{ml['id']}").json
    assert detail["member_count"] == 2

    r = client.post(f"/api/crm/lists/{ml['id']}/contacts/remove", json={"ids": [ids[0]]}, headers=h)
    assert r.json["removed"] == 1
    assert client.get(f"/api/crm/lists/{ml['id']}").json["member_count"] == 1

    page = client.get("/admin/crm/lists")
    assert page.status_code == 200
    assert b"Newsletter" in page.data


def test_contacts_page_filters(client):
    h = login(client)
    _create(client, h, email="visible@example.com")
    _create(client, h, email="hidden@example.com", status="archived")
    r = client.get("/admin/crm/contacts?status=new")
    assert b"visible@example.com" in r.data
    assert b"hidden@example.com" not in r.data


IMPORT_CSV = (
    "Email,First Name,Last Name,Company,Tier,Favourite colour\n"
    "ada@example.com,Ada,Lovelace,Analytical,gold,blue\n"
    "grace@example.com,Grace,Hopper,,silver,\n"
    ",,,,,\n"
    "not-an-email,,,,,\n"
    "ADA@example.com,Ada,L,,,\n"
    ",,,Nameless Co,,\n"
)


def test_import_csv_creates_contacts_and_reports_rows(client):
    h = login(client)
    client.post("/api/crm/custom-fields", json={"name": "tier", "label": "Tier"}, headers=h)
    r = client.post(
        "/api/crm/contacts/import",
        data={"file": (io.BytesIO(IMPORT_CSV.encode("utf-8-sig")), "contacts.csv", "text/csv")},
        headers=h,
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    result = r.json
    assert (result["created"], result["updated"], result["skipped"], result["failed"], result["total"]) == (2, 0, 1, 2, 5)
    assert result["errors"] == [
        {"row": 5, "message": "Email address is invalid."},
        {"row": 7, "message": "Email or name is required."},
    ]
    assert result["columns"]["Tier"] == "custom:tier"
    assert result["ignored_columns"] == ["Favourite colour"]

    contacts = client.get("/api/crm/contacts?q=ada").json["contacts"]
    assert len(contacts) == 1
    ada = client.get(f"/api/crm/contacts/{contacts[0]['id']}").json
    assert ada["source"] == "import"
    assert ada["status"] == "new"
    assert ada["full_name"] == "Ada Lovelace"
    assert ada["custom_fields"] == {"tier": "gold"}
    assert [(n["body"], n["note_type"]) for n in ada["notes"]] == [("Imported", "import")]


def test_import_csv_updates_duplicates_when_asked(client):
    h = login(client)
    existing = _create(client, h, email="ada@example.com", first_name="Ada", status="contacted")
    body = {"csv": "email,phone,source\nada@example.com,555-0100,webinar\n", "on_duplicate": "update"}
    r = client.post("/api/crm/contacts/import", json=body, headers=h)
    assert (r.json["created"], r.json["updated"], r.json["skipped"]) == (0, 1, 0)
    ada = client.get(f"/api/crm/contacts/{existing['id']}").json
    assert ada["phone"] == "555-0100"
    assert ada["first_name"] == "Ada"
    assert ada["status"] == "contacted"
    assert ada["source"] == "manual"


def test_import_csv_explicit_mapping_and_validation(client):
    h = login(client)
    r = client.post(
        "/api/crm/contacts/import",
        json={"csv": "Correo,Nombre\nzoe@example.com,Zoe\n", "mapping": {"Correo": "email", "Nombre": "first_name"}},
        headers=h,
    )
    assert r.json["created"] == 1
    assert client.get("/api/crm/contacts?q=zoe").json["contacts"][0]["first_name"] == "Zoe"

    cases = [
        ({"csv": "Correo\nz@example.com\n", "mapping": {"Correo": "password"}}, "Unknown import field for column 'Correo': password"),
        ({"csv": "colour\nblue\n"}, "No CSV column matches a contact field."),
        ({"csv": "email,e-mail\na@example.com,b@example.com\n"}, "More than one column maps to email."),
        ({"csv": "email\na@example.com\n", "on_duplicate": "merge"}, "on_duplicate must be one of: skip, update"),
        ({"csv": "   "}, "Upload a CSV file or send its text as csv."),
        ({"csv": "email\n", "mapping": ["email"]}, "mapping must be a JSON object"),
    ]
    for body, error in cases:
        r = client.post("/api/crm/contacts/import", json=body, headers=h)
        assert r.status_code == 400
        assert r.json["error"] == error
    assert client.get("/api/crm/contacts").json["total"] == 1


def test_import_requires_contacts_feature(app):
    editor = app.test_client()
    h = login(editor, "editor")
    r = editor.post("/api/crm/contacts/import", json={"csv": "email\na@example.com\n"}, headers=h)
    assert r.status_code == 403
