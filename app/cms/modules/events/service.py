from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, or_

from app.cms.access import apply_access_fields
from app.cms.audit import record_event
from app.cms.modules.events.models import Event, EventParticipant, EventResource
from app.cms.modules.events.recurrence import Occurrence, expand_events, occurrence_starts, validate_rule
from app.cms.utils import clean_str, isoformat, parse_datetime

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User

EVENT_STATUSES = ("draft", "published", "cancelled")
DEFAULT_RANGE_DAYS = 31
MAX_RANGE_DAYS = 366


def occurrence_to_dict(o: Occurrence) -> dict[str, Any]:
    ev = o.event
    return {
        "id": o.id,
        "event_id": ev.id,
        "title": ev.title,
        "description": ev.description,
        "event_type": ev.event_type,
        "start_at": isoformat(o.start_at),
        "end_at": isoformat(o.end_at),
        "timezone": ev.timezone,
        "is_all_day": ev.is_all_day,
        "location": ev.location,
        "link_url": ev.link_url,
        "recurrence_rule": ev.recurrence_rule,
        "status": ev.status,
        "access_level": ev.access_level,
        "required_mag_id": ev.required_mag_id,
        "visibility_mode": ev.visibility_mode,
    }


def event_to_dict(ev: Event) -> dict[str, Any]:
    return occurrence_to_dict(Occurrence(event=ev, id=str(ev.id), start_at=ev.start_at, end_at=ev.end_at))


def parse_when(value: Any, label: str) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        raise ValueError(f"{label} must be an ISO-8601 timestamp.")


def parse_range(start_raw: str | None, end_raw: str | None, *, now: datetime | None = None) -> tuple[datetime, datetime]:
    start = parse_when(start_raw, "start") or (now or datetime.utcnow()).replace(hour=0, minute=0, second=0, microsecond=0)
    end = parse_when(end_raw, "end") or start + timedelta(days=DEFAULT_RANGE_DAYS)
    if end < start:
        raise ValueError("end must not be before start.")
    if end - start > timedelta(days=MAX_RANGE_DAYS):
        raise ValueError(f"The range must not span more than {MAX_RANGE_DAYS} days.")
    return start, end


def events_in_range(s: "Session", range_start: datetime, range_end: datetime, *, published_only: bool = False) -> list[Occurrence]:
    q = s.query(Event).filter(
        or_(
            and_(
                or_(Event.recurrence_rule.is_(None), Event.recurrence_rule == ""),
                Event.start_at <= range_end,
                Event.end_at >= range_start,
            ),
            and_(Event.recurrence_rule.isnot(None), Event.recurrence_rule != "", Event.start_at <= range_end),
        )
    )
    if published_only:
        q = q.filter(Event.status == "published")
    return expand_events(q.order_by(Event.start_at.asc()).all(), range_start, range_end)


def _apply_payload(s: "Session", ev: Event, payload: dict) -> None:
    if "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            raise ValueError("Title is required.")
        ev.title = title
    for field in ("description", "event_type", "location", "link_url"):
        if field in payload:
            setattr(ev, field, clean_str(payload.get(field)))
    if "timezone" in payload:
        ev.timezone = clean_str(payload.get("timezone")) or "UTC"
    if "is_all_day" in payload:
        ev.is_all_day = bool(payload.get("is_all_day"))
    if "start_at" in payload:
        ev.start_at = parse_when(payload.get("start_at"), "start_at")
    if "end_at" in payload:
        ev.end_at = parse_when(payload.get("end_at"), "end_at")
    if ev.start_at is None:
        raise ValueError("start_at is required.")
    if ev.end_at is None:
        ev.end_at = ev.start_at + (timedelta(days=1) if ev.is_all_day else timedelta(hours=1))
    if ev.end_at < ev.start_at:
        raise ValueError("end_at must not be before start_at.")
    if "recurrence_rule" in payload:
        rule = clean_str(payload.get("recurrence_rule"))
        validate_rule(rule, ev.start_at)
        ev.recurrence_rule = rule
    if "status" in payload:
        status = clean_str(payload.get("status")) or "draft"
        if status not in EVENT_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(EVENT_STATUSES)}")
        ev.status = status
    apply_access_fields(s, ev, payload)


def create_event(s: "Session", payload: dict, user: "User") -> Event:
    if not clean_str(payload.get("title")):
        raise ValueError("Title is required.")
    now = datetime.utcnow()
    ev = Event(
        title="",
        timezone="UTC",
        is_all_day=False,
        status="draft",
        access_level="public",
        visibility_mode="hidden",
        created_by_user_id=user.id,
        created_at=now,
        updated_at=now,
    )
    _apply_payload(s, ev, payload)
    s.add(ev)
    s.flush()
    record_event(s, actor=user, action="event.create", entity_type="Event", entity_id=str(ev.id), metadata={"title": ev.title})
    return ev


def update_event(s: "Session", ev: Event, payload: dict, user: "User") -> Event:
    _apply_payload(s, ev, payload)
    ev.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="event.update", entity_type="Event", entity_id=str(ev.id))
    return ev


def copy_assignments(s: "Session", source_event_id: int, target_event_id: int) -> None:
    people = s.query(EventParticipant.participant_id).filter(EventParticipant.event_id == source_event_id).all()
    rooms = s.query(EventResource.resource_id).filter(EventResource.event_id == source_event_id).all()
    for (pid,) in people:
        s.add(EventParticipant(event_id=target_event_id, participant_id=pid))
    for (rid,) in rooms:
        s.add(EventResource(event_id=target_event_id, resource_id=rid))


def clear_assignments(s: "Session", event_id: int) -> None:
    s.query(EventParticipant).filter(EventParticipant.event_id == event_id).delete(synchronize_session=False)
    s.query(EventResource).filter(EventResource.event_id == event_id).delete(synchronize_session=False)


def delete_event(s: "Session", ev: Event, user: "User", *, keep_past: bool = True, now: datetime | None = None) -> int:
    """
    Delete an event. For a recurring series, occurrences that already happened
    are kept as one-off events so history stays on the calendar. Returns how many
    were kept.
    """
    now = now or datetime.utcnow()
    kept = 0
    if keep_past and ev.recurrence_rule and ev.start_at < now:
        duration = ev.end_at - ev.start_at
        try:
            past = occurrence_starts(ev.recurrence_rule, ev.start_at, ev.start_at, now)
        except ValueError:
            past = []
        for start in past:
            if start + duration > now:
                continue
            one_off = Event(
                title=ev.title,
                description=ev.description,
                event_type=ev.event_type,
                start_at=start,
                end_at=start + duration,
                timezone=ev.timezone,
                is_all_day=ev.is_all_day,
                location=ev.location,
                link_url=ev.link_url,
                recurrence_rule=None,
                status=ev.status,
                access_level=ev.access_level,
                required_mag_id=ev.required_mag_id,
                visibility_mode=ev.visibility_mode,
                restricted_message=ev.restricted_message,
                created_by_user_id=ev.created_by_user_id,
            )
            s.add(one_off)
            s.flush()
            copy_assignments(s, ev.id, one_off.id)
            kept += 1
    record_event(
        s,
        actor=user,
        action="event.delete",
        entity_type="Event",
        entity_id=str(ev.id),
        metadata={"title": ev.title, "kept_past_occurrences": kept},
    )
    clear_assignments(s, ev.id)
    s.delete(ev)
    return kept
