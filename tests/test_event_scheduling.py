from datetime import datetime, timedelta

from app.cms.db import session_scope
from app.cms.models import User
from app.cms.modules.events.models import Event, EventParticipant, EventResource, Participant
from app.cms.modules.events.recurrence import synthetic_id
from app.cms.modules.events.service import delete_event
from conftest import login, signup_member

JAN1 = datetime(2026, 1, 1, 9, 0)


def _event(client, h, title, start, end, **extra):
    payload = {"title": title, "start_at": start, "end_at": end, **extra}
    r = client.post("/api/events", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json


def _contact_participant(client, h, email="guest@example.com", name="Gina Guest"):
    contact = client.post("/api/crm/contacts", json={"email": email, "full_name": name}, headers=h).json
    r = client.post("/api/events/participants", json={"source_type": "crm_contact", "source_id": contact["id"]}, headers=h)
    return r.json


def _user_id(app, email):
    with session_scope(app) as s:
        return s.query(User.id).filter(User.email == email).scalar()


def _conflicts(client, h, start, end, **body):
    r = client.post("/api/events/check-conflicts", json={"start_at": start, "end_at": end, **body}, headers=h)
    assert r.status_code == 200, r.json
    return r.json["conflicts"]


def test_resource_crud_and_type_validation(client):
    h = login(client)
    r = client.post("/api/events/resources", json={"name": "Room A", "resource_type": "room"}, headers=h)
    assert r.status_code == 201
    room = r.json
    assert room["is_exclusive"] is True
    assert room["metadata"] is None

    r = client.post("/api/events/resources", json={"name": "Van", "resource_type": "vehicle"}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "resource_type must be one of: room, equipment"
    assert client.post("/api/events/resources", json={"resource_type": "room"}, headers=h).status_code == 400
    r = client.post("/api/events/resources", json={"name": "X", "resource_type": "room", "metadata": [1]}, headers=h)
    assert r.status_code == 400

    r = client.put(
        f"/api/events/resources/{room['id']}",
        json={"is_exclusive": False, "metadata": {"capacity": 12}},
        headers=h,
    )
    assert r.json["is_exclusive"] is False
    assert r.json["metadata"] == {"capacity": 12}
    assert r.json["name"] == "Room A"
    assert client.put(f"/api/events/resources/{room['id']}", json={"is_exclusive": "yes"}, headers=h).status_code == 400

    assert [x["name"] for x in client.get("/api/events/resources").json["resources"]] == ["Room A"]
    assert client.delete(f"/api/events/resources/{room['id']}", headers=h).json == {"success": True}
    assert client.get(f"/api/events/resources/{room['id']}").status_code == 404


def test_resource_types_follow_settings(client):
    h = login(client)
    value = [{"slug": "room", "label": "Room"}, {"slug": "vehicle", "label": "Vehicle"}]
    assert client.put("/api/settings/calendar_resource_types", json={"value": value}, headers=h).status_code == 200
    r = client.post("/api/events/resources", json={"name": "Van", "resource_type": "vehicle"}, headers=h)
    assert r.status_code == 201
    r = client.post("/api/events/resources", json={"name": "Beamer", "resource_type": "equipment"}, headers=h)
    assert r.status_code == 400


def test_participants_from_contacts_and_team(app, client):
    h = login(client)
    p = _contact_participant(client, h)
    assert p["source_type"] == "crm_contact"
    assert p["display_name"] == "Gina Guest"
    r = client.post("/api/events/participants", json={"source_type": "crm_contact", "source_id": p["source_id"]}, headers=h)
    assert r.status_code == 200
    assert r.json["id"] == p["id"]

    editor_id = _user_id(app, "editor@example.com")
    r = client.post("/api/events/participants", json={"source_type": "team_member", "source_id": editor_id}, headers=h)
    assert r.status_code == 201
    assert r.json["display_name"] == "editor@example.com"

    _, signup = signup_member(app.test_client())
    r = client.post("/api/events/participants", json={"source_type": "team_member", "source_id": signup["user_id"]}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "Team member not found."
    r = client.post("/api/events/participants", json={"source_type": "vendor", "source_id": 1}, headers=h)
    assert r.status_code == 400
    r = client.post("/api/events/participants", json={"source_type": "crm_contact", "source_id": "abc"}, headers=h)
    assert r.status_code == 400
    r = client.post("/api/events/participants", json={"source_type": "crm_contact", "source_id": 9999}, headers=h)
    assert r.json["error"] == "Contact not found."

    listed = client.get("/api/events/participants").json["participants"]
    assert sorted(x["display_name"] for x in listed) == ["Gina Guest", "editor@example.com"]
    assert client.delete(f"/api/events/participants/{p['id']}", headers=h).json == {"success": True}
    assert client.delete(f"/api/events/participants/{p['id']}", headers=h).status_code == 404


def test_event_assignments(client):
    h = login(client)
    ev = _event(client, h, "Workshop", "2026-01-05T10:00:00Z", "2026-01-05T11:00:00Z")
    room = client.post("/api/events/resources", json={"name": "Room A", "resource_type": "room"}, headers=h).json
    contact = client.post("/api/crm/contacts", json={"email": "guest@example.com"}, headers=h).json

    r = client.post(
        f"/api/events/{ev['id']}/participants",
        json={"source_type": "crm_contact", "source_id": contact["id"]},
        headers=h,
    )
    assert r.status_code == 201
    pid = r.json["participant_id"]
    r = client.post(f"/api/events/{ev['id']}/participants", json={"participant_id": pid}, headers=h)
    assert r.status_code == 200
    assert r.json["added"] is False
    assert client.post(f"/api/events/{ev['id']}/participants", json={"participant_id": 999}, headers=h).status_code == 404
    assert client.post(f"/api/events/{ev['id']}/participants", json={}, headers=h).status_code == 400

    assert client.post(f"/api/events/{ev['id']}/resources", json={"resource_id": room["id"]}, headers=h).status_code == 201
    assert client.post(f"/api/events/{ev['id']}/resources", json={"resource_id": 999}, headers=h).status_code == 404
    assert client.get(f"/api/events/{ev['id']}/participants").json["participant_ids"] == [pid]
    assert client.get(f"/api/events/{ev['id']}/resources").json["resource_ids"] == [room["id"]]
    assert client.post("/api/events/999/resources", json={"resource_id": room["id"]}, headers=h).status_code == 404

    r = client.delete(f"/api/events/{ev['id']}/participants/{pid}", headers=h)
    assert r.json == {"success": True, "removed": 1}
    assert client.get(f"/api/events/{ev['id']}/participants").json["participant_ids"] == []
    client.delete(f"/api/events/resources/{room['id']}", headers=h)
    assert client.get(f"/api/events/{ev['id']}/resources").json["resource_ids"] == []


def test_conflicts_on_shared_participant_or_exclusive_resource(client):
    h = login(client)
    ev = _event(client, h, "Board meeting", "2026-01-05T10:00:00Z", "2026-01-05T11:00:00Z")
    p = _contact_participant(client, h)
    room = client.post("/api/events/resources", json={"name": "Room A", "resource_type": "room"}, headers=h).json
    projector = client.post(
        "/api/events/resources",
        json={"name": "Projector", "resource_type": "equipment", "is_exclusive": False},
        headers=h,
    ).json
    client.post(f"/api/events/{ev['id']}/participants", json={"participant_id": p["id"]}, headers=h)
    client.post(f"/api/events/{ev['id']}/resources", json={"resource_id": room["id"]}, headers=h)
    client.post(f"/api/events/{ev['id']}/resources", json={"resource_id": projector["id"]}, headers=h)

    found = _conflicts(client, h, "2026-01-05T10:30:00Z", "2026-01-05T11:30:00Z", participant_ids=[p["id"]])
    assert [c["event_id"] for c in found] == [ev["id"]]
    assert found[0]["participant_ids"] == [p["id"]]
    assert found[0]["resource_ids"] == []

    found = _conflicts(client, h, "2026-01-05T09:00:00Z", "2026-01-05T12:00:00Z", resource_ids=[room["id"]])
    assert found[0]["resource_ids"] == [room["id"]]
    assert _conflicts(client, h, "2026-01-05T10:00:00Z", "2026-01-05T11:00:00Z", resource_ids=[projector["id"]]) == []
    # Back-to-back bookings do not overlap.
    assert _conflicts(client, h, "2026-01-05T11:00:00Z", "2026-01-05T12:00:00Z", participant_ids=[p["id"]]) == []
    assert (
        _conflicts(
            client,
            h,
            "2026-01-05T10:30:00Z",
            "2026-01-05T11:30:00Z",
            participant_ids=[p["id"]],
            exclude_event_id=str(ev["id"]),
        )
        == []
    )

    found = _conflicts(
        client,
        h,
        "2026-01-05T10:30:00Z",
        "2026-01-05T11:30:00Z",
        participants=[{"source_type": "crm_contact", "source_id": p["source_id"]}],
    )
    assert len(found) == 1

    client.put(f"/api/events/{ev['id']}", json={"status": "cancelled"}, headers=h)
    assert _conflicts(client, h, "2026-01-05T10:30:00Z", "2026-01-05T11:30:00Z", participant_ids=[p["id"]]) == []


def test_conflicts_expand_recurring_series(client):
    h = login(client)
    ev = _event(
        client,
        h,
        "Standup",
        "2026-01-01T09:00:00Z",
        "2026-01-01T11:00:00Z",
        recurrence_rule="FREQ=DAILY;COUNT=30",
    )
    p = _contact_participant(client, h)
    client.post(f"/api/events/{ev['id']}/participants", json={"participant_id": p["id"]}, headers=h)

    found = _conflicts(client, h, "2026-01-15T10:00:00Z", "2026-01-15T10:15:00Z", participant_ids=[p["id"]])
    assert [c["occurrence_id"] for c in found] == [synthetic_id(ev["id"], datetime(2026, 1, 15, 9, 0))]
    assert found[0]["start_at"] == "2026-01-15T09:00:00"
    assert _conflicts(client, h, "2026-02-15T10:00:00Z", "2026-02-15T10:15:00Z", participant_ids=[p["id"]]) == []


def test_conflict_check_validation(client):
    h = login(client)
    cases = [
        ({"end_at": "2026-01-05T10:00:00Z"}, "start_at and end_at are required."),
        ({"start_at": "2026-01-05T10:00:00Z", "end_at": "2026-01-05T09:00:00Z"}, "end_at must be after start_at."),
        ({"start_at": "2020-01-01T00:00:00Z", "end_at": "2030-01-01T00:00:00Z"}, "The range must not span more than 366 days."),
        ({"start_at": "soon", "end_at": "2026-01-05T09:00:00Z"}, "start_at must be an ISO-8601 timestamp."),
        (
            {"start_at": "2026-01-05T09:00:00Z", "end_at": "2026-01-05T10:00:00Z", "resource_ids": "1"},
            "resource_ids must be a list of ids.",
        ),
    ]
    for body, error in cases:
        r = client.post("/api/events/check-conflicts", json=body, headers=h)
        assert r.status_code == 400
        assert r.json["error"] == error


def test_deleting_series_keeps_assignments_on_history(app):
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "admin@example.com").one()
        ev = Event(title="Standup", start_at=JAN1, end_at=JAN1 + timedelta(minutes=30), recurrence_rule="FREQ=DAILY;COUNT=5")
        p = Participant(source_type="team_member", source_id=user.id, display_name="Admin")
        s.add_all([ev, p])
        s.flush()
        s.add(EventParticipant(event_id=ev.id, participant_id=p.id))
        s.flush()
        old_id = ev.id

        assert delete_event(s, ev, user, now=JAN1 + timedelta(days=1, hours=1)) == 2
        s.flush()
        kept = [e.id for e in s.query(Event).all()]
        links = s.query(EventParticipant).all()
        assert sorted(link.event_id for link in links) == sorted(kept)
        assert all(link.event_id != old_id for link in links)
        assert s.query(EventResource).count() == 0


def test_scheduling_needs_calendar_feature(app):
    viewer = app.test_client()
    h = login(viewer, "viewer")
    assert viewer.get("/api/events/resources").status_code == 403
    r = viewer.post(
        "/api/events/check-conflicts",
        json={"start_at": "2026-01-05T10:00:00Z", "end_at": "2026-01-05T11:00:00Z"},
        headers=h,
    )
    assert r.status_code == 403

    editor = app.test_client()
    login(editor, "editor")
    assert editor.get("/api/events/resources").status_code == 200
