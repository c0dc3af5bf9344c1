"""
Resources, participants and their assignment to events, plus the conflict check
run before booking: an occurrence conflicts when it overlaps the requested
window and shares a participant or an exclusive resource.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from app.cms.audit import record_event
from app.cms.modules.events.models import Event, EventParticipant, EventResource, Participant, Resource
from app.cms.modules.events.recurrence import expand_events
from app.cms.modules.events.service import MAX_RANGE_DAYS
from app.cms.modules.settings.service import resource_type_slugs
from app.cms.utils import clean_str, isoformat

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User

PARTICIPANT_SOURCES = ("crm_contact", "team_member")


# ---------- Resources ----------


def resource_to_dict(r: Resource) -> dict[str, Any]:
    return {
        "id": r.id,
        "name": r.name,
        "resource_type": r.resource_type,
        "metadata": r.details,
        "is_exclusive": r.is_exclusive,
        "created_at": isoformat(r.created_at),
        "updated_at": isoformat(r.updated_at),
    }


def _check_resource_type(s: "Session", value: Any) -> str:
    allowed = resource_type_slugs(s)
    slug = clean_str(value)
    if not slug or slug not in allowed:
        raise ValueError(f"resource_type must be one of: {', '.join(allowed)}")
    return slug


def _check_metadata(value: Any) -> dict | None:
    if value is not None and not isinstance(value, dict):
        raise ValueError("metadata must be an object.")
    return value


def create_resource(s: "Session", payload: dict, user: "User") -> Resource:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValueError("Name is required.")
    now = datetime.utcnow()
    r = Resource(
        name=name,
        resource_type=_check_resource_type(s, payload.get("resource_type")),
        details=_check_metadata(payload.get("metadata")),
        is_exclusive=payload.get("is_exclusive") if isinstance(payload.get("is_exclusive"), bool) else True,
        created_at=now,
        updated_at=now,
    )
    s.add(r)
    s.flush()
    record_event(s, actor=user, action="resource.create", entity_type="Resource", entity_id=str(r.id), metadata={"name": r.name})
    return r


def update_resource(s: "Session", r: Resource, payload: dict, user: "User") -> Resource:
    if "name" in payload:
        name = clean_str(payload.get("name"))
        if not name:
            raise ValueError("Name is required.")
        r.name = name
    if "resource_type" in payload:
        r.resource_type = _check_resource_type(s, payload.get("resource_type"))
    if "metadata" in payload:
        r.details = _check_metadata(payload.get("metadata"))
    if "is_exclusive" in payload:
        if not isinstance(payload.get("is_exclusive"), bool):
            raise ValueError("is_exclusive must be true or false.")
        r.is_exclusive = payload["is_exclusive"]
    r.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="resource.update", entity_type="Resource", entity_id=str(r.id))
    return r


def delete_resource(s: "Session", r: Resource, user: "User") -> None:
    s.query(EventResource).filter(EventResource.resource_id == r.id).delete(synchronize_session=False)
    record_event(s, actor=user, action="resource.delete", entity_type="Resource", entity_id=str(r.id), metadata={"name": r.name})
    s.delete(r)


# ---------- Participants ----------


def participant_to_dict(p: Participant) -> dict[str, Any]:
    return {
        "id": p.id,
        "source_type": p.source_type,
        "source_id": p.source_id,
        "display_name": p.display_name,
    }


def _source_display_name(s: "Session", source_type: str, source_id: int) -> str:
    if source_type == "crm_contact":
        from app.cms.modules.crm.models import CrmContact

        contact = s.get(CrmContact, source_id)
        if contact is None or contact.deleted_at is not None:
            raise ValueError("Contact not found.")
        return contact.display_name
    from app.cms.models import User

    user = s.get(User, source_id)
    if user is None or user.is_member or not user.is_active:
        raise ValueError("Team member not found.")
    return user.display_name or user.email


def parse_source(payload: dict) -> tuple[str, int]:
    source_type = clean_str(payload.get("source_type"))
    if source_type not in PARTICIPANT_SOURCES:
        raise ValueError(f"source_type must be one of: {', '.join(PARTICIPANT_SOURCES)}")
    raw = payload.get("source_id")
    if isinstance(raw, bool) or not str(raw or "").strip().isdigit():
        raise ValueError("source_id must be a numeric id.")
    return source_type, int(str(raw).strip())


def ensure_participant(s: "Session", source_type: str, source_id: int) -> tuple[Participant, bool]:
    """The participant row for a contact or team member, created on first use."""
    name = _source_display_name(s, source_type, source_id)
    p = (
        s.query(Participant)
        .filter(Participant.source_type == source_type, Participant.source_id == source_id)
        .one_or_none()
    )
    if p is not None:
        p.display_name = name
        return p, False
    p = Participant(source_type=source_type, source_id=source_id, display_name=name, created_at=datetime.utcnow())
    s.add(p)
    s.flush()
    return p, True


def delete_participant(s: "Session", p: Participant, user: "User") -> None:
    s.query(EventParticipant).filter(EventParticipant.participant_id == p.id).delete(synchronize_session=False)
    record_event(
        s,
        actor=user,
        action="participant.delete",
        entity_type="Participant",
        entity_id=str(p.id),
        metadata={"source_type": p.source_type, "source_id": p.source_id},
    )
    s.delete(p)


# ---------- Assignments ----------


def event_participant_ids(s: "Session", event_id: int) -> list[int]:
    rows = s.query(EventParticipant.participant_id).filter(EventParticipant.event_id == event_id)
    return sorted(pid for (pid,) in rows)


def event_resource_ids(s: "Session", event_id: int) -> list[int]:
    rows = s.query(EventResource.resource_id).filter(EventResource.event_id == event_id)
    return sorted(rid for (rid,) in rows)


def assign_participant(s: "Session", ev: Event, p: Participant, user: "User") -> bool:
    """Idempotent; returns False when the participant was already on the event."""
    exists = (
        s.query(EventParticipant.id)
        .filter(EventParticipant.event_id == ev.id, EventParticipant.participant_id == p.id)
        .first()
    )
    if exists:
        return False
    s.add(EventParticipant(event_id=ev.id, participant_id=p.id))
    record_event(s, actor=user, action="event.participant.assign", entity_type="Event", entity_id=str(ev.id), metadata={"participant_id": p.id})
    return True


def unassign_participant(s: "Session", ev: Event, participant_id: int, user: "User") -> int:
    n = (
        s.query(EventParticipant)
        .filter(EventParticipant.event_id == ev.id, EventParticipant.participant_id == participant_id)
        .delete(synchronize_session=False)
    )
    if n:
        record_event(s, actor=user, action="event.participant.unassign", entity_type="Event", entity_id=str(ev.id), metadata={"participant_id": participant_id})
    return n


def assign_resource(s: "Session", ev: Event, r: Resource, user: "User") -> bool:
    exists = s.query(EventResource.id).filter(EventResource.event_id == ev.id, EventResource.resource_id == r.id).first()
    if exists:
        return False
    s.add(EventResource(event_id=ev.id, resource_id=r.id))
    record_event(s, actor=user, action="event.resource.assign", entity_type="Event", entity_id=str(ev.id), metadata={"resource_id": r.id})
    return True


def unassign_resource(s: "Session", ev: Event, resource_id: int, user: "User") -> int:
    n = (
        s.query(EventResource)
        .filter(EventResource.event_id == ev.id, EventResource.resource_id == resource_id)
        .delete(synchronize_session=False)
    )
    if n:
        record_event(s, actor=user, action="event.resource.unassign", entity_type="Event", entity_id=str(ev.id), metadata={"resource_id": resource_id})
    return n


# ---------- Conflicts ----------


def find_conflicts(
    s: "Session",
    start: datetime,
    end: datetime,
    *,
    participant_ids: list[int] | None = None,
    resource_ids: list[int] | None = None,
    exclude_event_id: int | None = None,
) -> list[dict[str, Any]]:
    """
    Occurrences overlapping [start, end) that share a participant or an exclusive
    resource with the request. Recurring events are expanded; cancelled events
    and ``exclude_event_id`` (the event being edited) are ignored.
    """
    if end <= start:
        raise ValueError("end_at must be after start_at.")
    if end - start > timedelta(days=MAX_RANGE_DAYS):
        raise ValueError(f"The range must not span more than {MAX_RANGE_DAYS} days.")
    wanted_people = set(participant_ids or [])
    wanted_rooms: set[int] = set()
    if resource_ids:
        wanted_rooms = {
            rid for (rid,) in s.query(Resource.id).filter(Resource.id.in_(resource_ids), Resource.is_exclusive.is_(True))
        }
    if not wanted_people and not wanted_rooms:
        return []

    shared: dict[int, tuple[set[int], set[int]]] = {}
    if wanted_people:
        rows = s.query(EventParticipant.event_id, EventParticipant.participant_id).filter(
            EventParticipant.participant_id.in_(wanted_people)
        )
        for event_id, pid in rows:
            shared.setdefault(event_id, (set(), set()))[0].add(pid)
    if wanted_rooms:
        rows = s.query(EventResource.event_id, EventResource.resource_id).filter(EventResource.resource_id.in_(wanted_rooms))
        for event_id, rid in rows:
            shared.setdefault(event_id, (set(), set()))[1].add(rid)
    shared.pop(exclude_event_id, None)
    if not shared:
        return []

    events = (
        s.query(Event)
        .filter(Event.id.in_(shared), Event.status != "cancelled", Event.start_at < end)
        .order_by(Event.start_at.asc())
        .all()
    )
    if not events:
        return []
    # Widen the window so occurrences that began earlier but run into it are expanded too.
    longest = max(ev.end_at - ev.start_at for ev in events)
    conflicts: list[dict[str, Any]] = []
    for o in expand_events(events, start - longest, end):
        if not (o.start_at < end and o.end_at > start):
            continue
        people, rooms = shared[o.event.id]
        conflicts.append(
            {
                "event_id": o.event.id,
                "occurrence_id": o.id,
                "title": o.event.title,
                "start_at": isoformat(o.start_at),
                "end_at": isoformat(o.end_at),
                "participant_ids": sorted(people),
                "resource_ids": sorted(rooms),
            }
        )
    return conflicts
