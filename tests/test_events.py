import time
from datetime import datetime, timedelta

import pytest

from app.cms.db import session_scope
from app.cms.models import User
from app.cms.modules.events.models import Event
from app.cms.modules.events.recurrence import (
    MAX_OCCURRENCES,
    epoch_ms,
    event_id_for_edit,
    expand_events,
    occurrence_starts,
    synthetic_id,
)
from app.cms.modules.events.service import MAX_RANGE_DAYS, delete_event, parse_range
from conftest import login

JAN1 = datetime(2026, 1, 1, 9, 0)


def _ev(id, start, *, hours=1, rule=None):
    return Event(id=id, title=f"e{id}", start_at=start, end_at=start + timedelta(hours=hours), recurrence_rule=rule)


def test_synthetic_ids_round_trip_to_real_id():
    sid = synthetic_id(42, JAN1)
    assert sid == f"42--{epoch_ms(JAN1)}"
    assert event_id_for_edit(sid) == "42"
    assert event_id_for_edit("42") == "42"
    assert epoch_ms(datetime(1970, 1, 1, 0, 0, 1)) == 1000


def test_expand_weekly_rule_within_range():
    weekly = _ev(1, JAN1, hours=2, rule="FREQ=WEEKLY;COUNT=10")
    one_off = _ev(2, JAN1 + timedelta(days=3))
    occ = expand_events([weekly, one_off], JAN1, JAN1 + timedelta(days=15))

    assert [o.id for o in occ] == [
        synthetic_id(1, JAN1),
        "2",
        synthetic_id(1, JAN1 + timedelta(days=7)),
        synthetic_id(1, JAN1 + timedelta(days=14)),
    ]
    assert all(o.end_at - o.start_at == timedelta(hours=2) for o in occ if o.event is weekly)
    assert occ[0].is_recurring and not occ[1].is_recurring


def test_expand_respects_utc_until():
    ev = _ev(1, JAN1, rule="RRULE:FREQ=DAILY;UNTIL=20260103T090000Z")
    occ = expand_events([ev], JAN1, JAN1 + timedelta(days=30))
    assert [o.start_at.day for o in occ] == [1, 2, 3]


def test_invalid_rule_shows_stored_row():
    ev = _ev(1, JAN1, rule="FREQ=SOMETIMES")
    occ = expand_events([ev], JAN1, JAN1 + timedelta(days=2))
    assert [o.id for o in occ] == ["1"]


def test_parse_range_defaults_and_errors():
    now = datetime(2026, 5, 10, 15, 30)
    start, end = parse_range(None, None, now=now)
    assert start == datetime(2026, 5, 10)
    assert end == datetime(2026, 6, 10)
    start, end = parse_range("2026-01-01T00:00:00Z", "2026-01-02T00:00:00+02:00")
    assert end == datetime(2026, 1, 1, 22, 0)
    with pytest.raises(ValueError):
        parse_range("2026-02-01T00:00:00", "2026-01-01T00:00:00")
    with pytest.raises(ValueError):
        parse_range("yesterday", None)


def test_delete_recurring_keeps_past_occurrences(app):
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "admin@example.com").one()
        ev = Event(title="Standup", start_at=JAN1, end_at=JAN1 + timedelta(minutes=30), recurrence_rule="FREQ=DAILY;COUNT=5")
        s.add(ev)
        s.flush()
        kept = delete_event(s, ev, user, now=JAN1 + timedelta(days=2, hours=1))
        s.flush()
        assert kept == 3
        rows = s.query(Event).order_by(Event.start_at).all()
        assert [r.start_at.day for r in rows] == [1, 2, 3]
        assert all(r.recurrence_rule is None for r in rows)


def test_delete_without_keep_past(app):
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "admin@example.com").one()
        ev = Event(title="Gone", start_at=JAN1, end_at=JAN1 + timedelta(hours=1), recurrence_rule="FREQ=DAILY;COUNT=5")
        s.add(ev)
        s.flush()
        assert delete_event(s, ev, user, keep_past=False, now=JAN1 + timedelta(days=10)) == 0
        s.flush()
        assert s.query(Event).count() == 0


def test_events_api_lists_occurrences_and_edits_by_synthetic_id(client):
    h = login(client, "editor")
    r = client.post(
        "/api/events",
        json={
            "title": "Yoga",
            "start_at": "2026-03-02T18:00:00Z",
            "end_at": "2026-03-02T19:00:00Z",
            "recurrence_rule": "FREQ=WEEKLY;BYDAY=MO",
            "status": "published",
        },
        headers=h,
    )
    assert r.status_code == 201, r.json
    event_id = r.json["id"]

    occ = client.get("/api/events?start=2026-03-01T00:00:00Z&end=2026-03-31T00:00:00Z").json["events"]
    assert len(occ) == 5
    assert occ[1]["id"].startswith(f"{event_id}--")
    assert occ[1]["start_at"] == "2026-03-09T18:00:00"

    r = client.put(f"/api/events/{occ[2]['id']}", json={"location": "Studio B"}, headers=h)
    assert r.status_code == 200
    assert r.json["id"] == str(event_id)
    assert client.get(f"/api/events/{event_id}").json["location"] == "Studio B"


def test_events_api_validation(client):
    h = login(client, "editor")
    assert client.post("/api/events", json={"title": "No start"}, headers=h).status_code == 400
    r = client.post(
        "/api/events",
        json={"title": "Backwards", "start_at": "2026-03-02T10:00:00", "end_at": "2026-03-02T09:00:00"},
        headers=h,
    )
    assert r.status_code == 400
    r = client.post(
        "/api/events",
        json={"title": "Bad rule", "start_at": "2026-03-02T10:00:00", "recurrence_rule": "FREQ=NEVER"},
        headers=h,
    )
    assert r.status_code == 400
    r = client.post("/api/events", json={"title": "All day", "start_at": "2026-03-02T00:00:00", "is_all_day": True}, headers=h)
    assert r.json["end_at"] == "2026-03-03T00:00:00"
    assert client.get("/api/events/abc").status_code == 404
    r = client.post("/api/events", json={"title": "Epoch", "start_at": 1767225600}, headers=h)
    assert r.json["error"] == "start_at must be an ISO-8601 timestamp."
    assert client.get("/api/events?start=2026-03-10&end=2026-03-01").status_code == 400


def test_public_events_only_published_public(app, client):
    h = login(client, "editor")
    base = {"start_at": "2026-04-01T10:00:00Z"}
    client.post("/api/events", json={"title": "Open day", "status": "published", **base}, headers=h)
    client.post("/api/events", json={"title": "Draft day", **base}, headers=h)
    client.post("/api/events", json={"title": "Members day", "status": "published", "access_level": "members", **base}, headers=h)

    r = app.test_client().get("/api/public/events?start=2026-04-01T00:00:00Z&end=2026-04-02T00:00:00Z")
    assert [e["title"] for e in r.json["events"]] == ["Open day"]


def test_delete_via_api_keeps_history(client):
    h = login(client, "editor")
    r = client.post(
        "/api/events",
        json={"title": "Old series", "start_at": "2020-01-01T10:00:00Z", "recurrence_rule": "FREQ=DAILY;COUNT=3"},
        headers=h,
    )
    event_id = r.json["id"]
    r = client.delete(f"/api/events/{event_id}", headers=h)
    assert r.json == {"success": True, "kept_past_occurrences": 3}
    occ = client.get("/api/events?start=2020-01-01T00:00:00Z&end=2020-01-05T00:00:00Z").json["events"]
    assert [o["title"] for o in occ] == ["Old series"] * 3
    assert all("--" not in o["id"] for o in occ)


def test_dense_rule_stops_at_occurrence_cap():
    started = time.perf_counter()
    starts = occurrence_starts("FREQ=MINUTELY", JAN1, JAN1, JAN1 + timedelta(days=3 * 365))
    assert len(starts) == MAX_OCCURRENCES
    assert starts[-1] == JAN1 + timedelta(minutes=MAX_OCCURRENCES - 1)
    assert time.perf_counter() - started < 2.0


def test_occurrences_stop_at_range_end():
    starts = occurrence_starts("FREQ=HOURLY", JAN1, JAN1 + timedelta(hours=2), JAN1 + timedelta(hours=4))
    assert starts == [JAN1 + timedelta(hours=h) for h in (2, 3, 4)]


def test_parse_range_rejects_wide_spans():
    start, end = parse_range("2026-01-01T00:00:00", "2027-01-02T00:00:00")
    assert (end - start).days == MAX_RANGE_DAYS
    with pytest.raises(ValueError, match="366 days"):
        parse_range("2020-01-01T00:00:00", "9999-12-31T00:00:00")


def test_wide_public_range_and_sub_hourly_rules_refused(app, client):
    h = login(client, "editor")
    r = client.post(
        "/api/events",
        json={"title": "Ticker", "start_at": "2026-03-02T10:00:00", "recurrence_rule": "FREQ=MINUTELY"},
        headers=h,
    )
    assert r.status_code == 400
    assert "hourly" in r.json["error"]

    r = app.test_client().get("/api/public/events?start=2020-01-01T00:00:00&end=9999-12-31T00:00:00")
    assert r.status_code == 400
    assert client.get("/api/events?start=2020-01-01T00:00:00&end=2022-01-01T00:00:00").status_code == 400
