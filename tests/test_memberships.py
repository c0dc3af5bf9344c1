import pytest

from app.cms.modules.memberships import codes
from app.cms.modules.memberships.codes import (
    CODE_ALPHABET,
    DEFAULT_EXCLUDE_CHARS,
    code_alphabet,
    generate_code_string,
    hash_code,
)
from conftest import login, signup_member


def test_alphabet_excludes_ambiguous_characters():
    alphabet = code_alphabet()
    for ch in DEFAULT_EXCLUDE_CHARS:
        assert ch not in alphabet
    assert set(alphabet) <= set(CODE_ALPHABET)
    assert code_alphabet("") == CODE_ALPHABET


def test_generate_code_string_shape():
    code = generate_code_string("VIP-", "-25", length=10)
    assert code.startswith("VIP-") and code.endswith("-25")
    body = code[len("VIP-"):-len("-25")]
    assert len(body) == 10
    assert all(ch in code_alphabet() for ch in body)


def test_generate_code_string_length_bounds():
    with pytest.raises(ValueError):
        generate_code_string(length=3)
    with pytest.raises(ValueError):
        generate_code_string(length=33)
    with pytest.raises(ValueError):
        code_alphabet(CODE_ALPHABET)


def test_hash_code_is_case_and_space_insensitive():
    assert hash_code("  AbC123 ") == hash_code("abc123")
    assert len(hash_code("x")) == 64


def _admin_with_mag(client, name="Gold Club"):
    h = login(client)
    r = client.post("/api/crm/mags", json={"name": name}, headers=h)
    assert r.status_code == 201, r.json
    return h, r.json


def test_mag_crud(client):
    h, mag = _admin_with_mag(client)
    assert mag["uid"] == "gold_club"
    assert mag["status"] == "active"
    assert client.post("/api/crm/mags", json={"name": "Gold Club"}, headers=h).status_code == 400

    r = client.put(f"/api/crm/mags/{mag['id']}", json={"status": "draft"}, headers=h)
    assert r.json["status"] == "draft"
    assert client.get("/api/crm/mags/search?q=gold").json["mags"] == []

    assert client.delete(f"/api/crm/mags/{mag['id']}", headers=h).json == {"success": True}
    assert client.get(f"/api/crm/mags/{mag['id']}").status_code == 404


def test_assign_mag_to_contact(client):
    h, mag = _admin_with_mag(client)
    contact = client.post("/api/crm/contacts", json={"email": "c@example.com"}, headers=h).json
    url = f"/api/crm/contacts/{contact['id']}/mags"
    r = client.post(url, json={"mag_id": mag["id"]}, headers=h)
    assert r.status_code == 201
    r = client.post(url, json={"mag_id": mag["id"]}, headers=h)
    assert r.status_code == 200
    assert r.json["created"] is False
    assert [m["assigned_via"] for m in client.get(url).json["mags"]] == ["admin"]
    assert client.delete(f"{url}/{mag['id']}", headers=h).status_code == 200
    assert client.delete(f"{url}/{mag['id']}", headers=h).status_code == 404


def test_single_use_batch_generate_and_list(client):
    h, mag = _admin_with_mag(client)
    r = client.post("/api/crm/mags/batches", json={"name": "Launch", "mag_id": mag["id"], "prefix": "GC-"}, headers=h)
    assert r.status_code == 201
    batch = r.json
    assert batch["use_type"] == "single_use"
    assert batch["code"] is None

    r = client.post(f"/api/crm/mags/batches/{batch['id']}/generate", json={"count": 5}, headers=h)
    assert r.status_code == 201
    codes = r.json["codes"]
    assert len(set(codes)) == 5
    assert all(c.startswith("GC-") for c in codes)

    listed = client.get(f"/api/crm/mags/batches/{batch['id']}/codes").json["codes"]
    assert sorted(c["code"] for c in listed) == sorted(codes)
    assert {c["status"] for c in listed} == {"available"}

    r = client.post(f"/api/crm/mags/batches/{batch['id']}/generate", json={"count": 0}, headers=h)
    assert r.status_code == 400


def test_batch_validation(client):
    h, mag = _admin_with_mag(client)
    base = {"name": "B", "mag_id": mag["id"]}
    assert client.post("/api/crm/mags/batches", json={**base, "random_length": 2}, headers=h).status_code == 400
    assert client.post("/api/crm/mags/batches", json={**base, "use_type": "forever"}, headers=h).status_code == 400
    assert client.post("/api/crm/mags/batches", json={**base, "mag_id": 999}, headers=h).status_code == 400
    assert client.post("/api/crm/mags/batches", json={**base, "expires_at": "soon"}, headers=h).status_code == 400
    r = client.post("/api/crm/mags/batches", json={**base, "expires_at": 1767225600}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "expires_at must be an ISO-8601 timestamp."
    r = client.post("/api/crm/mags/batches", json={**base, "use_type": "multi_use", "max_uses": 0}, headers=h)
    assert r.status_code == 400


def test_multi_use_batch_custom_code_must_be_unique(client):
    h, mag = _admin_with_mag(client)
    body = {"name": "Open", "mag_id": mag["id"], "use_type": "multi_use", "code": "WELCOME2026"}
    r = client.post("/api/crm/mags/batches", json=body, headers=h)
    assert r.status_code == 201
    assert r.json["code"] == "WELCOME2026"
    r = client.post("/api/crm/mags/batches", json={**body, "code": "welcome2026"}, headers=h)
    assert r.status_code == 400

    r = client.post(
        f"/api/crm/mags/batches/{client.get('/api/crm/mags/batches').json['batches'][0]['id']}/generate",
        json={"count": 1},
        headers=h,
    )
    assert r.status_code == 400


def _single_code(admin, h, mag_id, **batch):
    b = admin.post("/api/crm/mags/batches", json={"name": "S", "mag_id": mag_id, **batch}, headers=h).json
    return admin.post(f"/api/crm/mags/batches/{b['id']}/generate", json={"count": 1}, headers=h).json["codes"][0]


def test_redeem_single_use_code(app, client):
    admin = app.test_client()
    h, mag = _admin_with_mag(admin)
    code = _single_code(admin, h, mag["id"])

    mh, signup = signup_member(client)
    r = client.post("/api/members/redeem-code", json={"code": f"  {code.lower()} "}, headers=mh)
    assert r.status_code == 200, r.json
    assert r.json["already_assigned"] is False
    assert r.json["mag"]["id"] == mag["id"]

    detail = admin.get(f"/api/crm/contacts/{signup['contact_id']}").json
    assert [m["assigned_via"] for m in detail["mags"]] == ["code"]
    assert [n["note_type"] for n in detail["notes"]] == ["code_redemption"]

    # Consumed; a second member cannot use it.
    other = app.test_client()
    oh, _ = signup_member(other, email="other@example.com")
    r = other.post("/api/members/redeem-code", json={"code": code}, headers=oh)
    assert r.status_code == 400
    assert r.json["error"] == "Invalid or already used code"


def test_redeem_when_already_assigned_keeps_code(app, client):
    admin = app.test_client()
    h, mag = _admin_with_mag(admin)
    first = _single_code(admin, h, mag["id"])
    second = _single_code(admin, h, mag["id"])

    mh, _ = signup_member(client)
    assert client.post("/api/members/redeem-code", json={"code": first}, headers=mh).status_code == 200
    r = client.post("/api/members/redeem-code", json={"code": second}, headers=mh)
    assert r.status_code == 200
    assert r.json["already_assigned"] is True

    batches = admin.get("/api/crm/mags/batches").json["batches"]
    statuses = []
    for b in batches:
        statuses += [c["status"] for c in admin.get(f"/api/crm/mags/batches/{b['id']}/codes").json["codes"]]
    assert sorted(statuses) == ["available", "redeemed"]


def test_redeem_expired_code(app, client):
    admin = app.test_client()
    h, mag = _admin_with_mag(admin)
    code = _single_code(admin, h, mag["id"], expires_at="2000-01-01T00:00:00Z")
    mh, _ = signup_member(client)
    r = client.post("/api/members/redeem-code", json={"code": code}, headers=mh)
    assert r.status_code == 400
    assert r.json["error"] == "Code expired"


def test_multi_use_code_max_uses(app, client):
    admin = app.test_client()
    h, mag = _admin_with_mag(admin)
    admin.post(
        "/api/crm/mags/batches",
        json={"name": "Shared", "mag_id": mag["id"], "use_type": "multi_use", "max_uses": 1, "code": "SHARED-ONE"},
        headers=h,
    )

    mh, _ = signup_member(client)
    r = client.post("/api/members/redeem-code", json={"code": "shared-one"}, headers=mh)
    assert r.status_code == 200
    assert r.json["already_assigned"] is False

    other = app.test_client()
    oh, _ = signup_member(other, email="second@example.com")
    r = other.post("/api/members/redeem-code", json={"code": "SHARED-ONE"}, headers=oh)
    assert r.status_code == 400
    assert r.json["error"] == "Code has reached maximum uses"

    batch = admin.get("/api/crm/mags/batches").json["batches"][0]
    assert batch["use_count"] == 1


def test_redeem_requires_member(client):
    h = login(client)
    r = client.post("/api/members/redeem-code", json={"code": "anything"}, headers=h)
    assert r.status_code == 403


def test_redeem_invalid_and_blank(client):
    mh, _ = signup_member(client)
    assert client.post("/api/members/redeem-code", json={"code": ""}, headers=mh).status_code == 400
    r = client.post("/api/members/redeem-code", json={"code": "NOPE1234"}, headers=mh)
    assert r.json["error"] == "Invalid or already used code"


def _fixed_codes(monkeypatch, *values):
    it = iter(values)
    monkeypatch.setattr(codes, "generate_code_string", lambda *a, **k: next(it))


def test_generation_retries_after_hash_collision(client, monkeypatch):
    h, mag = _admin_with_mag(client)
    batch = client.post("/api/crm/mags/batches", json={"name": "Retry", "mag_id": mag["id"]}, headers=h).json
    _fixed_codes(monkeypatch, "AAAA1111", "aaaa1111", "BBBB2222")

    r = client.post(f"/api/crm/mags/batches/{batch['id']}/generate", json={"count": 2}, headers=h)
    assert r.status_code == 201
    assert r.json["codes"] == ["AAAA1111", "BBBB2222"]
    listed = client.get(f"/api/crm/mags/batches/{batch['id']}/codes").json["codes"]
    assert [c["code"] for c in listed] == ["AAAA1111", "BBBB2222"]


def test_generation_gives_up_without_partial_rows(client, monkeypatch):
    h, mag = _admin_with_mag(client)
    batch = client.post("/api/crm/mags/batches", json={"name": "Stuck", "mag_id": mag["id"]}, headers=h).json
    _fixed_codes(monkeypatch, *(["CCCC3333"] * 10))

    r = client.post(f"/api/crm/mags/batches/{batch['id']}/generate", json={"count": 3}, headers=h)
    assert r.status_code == 500
    assert r.json["error"] == "Could not generate a unique code after 5 attempts."
    assert client.get(f"/api/crm/mags/batches/{batch['id']}/codes").json["codes"] == []


def test_generation_retry_budget_comes_from_config(app, client, monkeypatch):
    app.config["MAG_CODE_MAX_ATTEMPTS"] = 2
    h, mag = _admin_with_mag(client)
    batch = client.post("/api/crm/mags/batches", json={"name": "Tight", "mag_id": mag["id"]}, headers=h).json
    _fixed_codes(monkeypatch, "DDDD4444", "DDDD4444", "DDDD4444", "EEEE5555")

    r = client.post(f"/api/crm/mags/batches/{batch['id']}/generate", json={"count": 2}, headers=h)
    assert r.json["error"] == "Could not generate a unique code after 2 attempts."
