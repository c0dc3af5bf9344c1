from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.cms.db import db_session
from app.cms.modules.events.models import Event, Participant, Resource
from app.cms.modules.events.recurrence import event_id_for_edit
from app.cms.modules.events.service import (
    create_event,
    delete_event,
    event_to_dict,
    events_in_range,
    occurrence_to_dict,
    parse_range,
    parse_when,
    update_event,
)
from app.cms.modules.events.scheduling import (
    assign_participant,
    assign_resource,
    create_resource,
    delete_participant,
    delete_resource,
    ensure_participant,
    event_participant_ids,
    event_resource_ids,
    find_conflicts,
    parse_source,
    participant_to_dict,
    resource_to_dict,
    unassign_participant,
    unassign_resource,
    update_resource,
)
from app.cms.rbac import require_feature
from app.cms.utils import current_user, json_body, json_error, parse_id_list

bp = Blueprint("events", __name__)


def _get_event(ident: str) -> Event | None:
    """Accepts a real id or a synthetic ``<id>--<epoch-ms>`` occurrence id."""
    raw = event_id_for_edit(ident)
    if not raw.isdigit():
        return None
    return db_session().get(Event, int(raw))


@bp.get("/api/events")
@require_feature("events")
def api_events_list():
    try:
        start, end = parse_range(request.args.get("start"), request.args.get("end"))
    except ValueError as e:
        return json_error(str(e), 400)
    occurrences = events_in_range(db_session(), start, end)
    return jsonify({"events": [occurrence_to_dict(o) for o in occurrences], "start": start.isoformat(), "end": end.isoformat()})


@bp.post("/api/events")
@require_feature("events")
def api_events_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        ev = create_event(s, body, current_user())
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(event_to_dict(ev)), 201


@bp.get("/api/events/<ident>")
@require_feature("events")
def api_events_get(ident: str):
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    return jsonify(event_to_dict(ev))


@bp.put("/api/events/<ident>")
@require_feature("events")
def api_events_update(ident: str):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    try:
        update_event(s, ev, body, current_user())
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(event_to_dict(ev))


@bp.delete("/api/events/<ident>")
@require_feature("events")
def api_events_delete(ident: str):
    s = db_session()
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    keep_past = (request.args.get("keep_past") or "1").strip().lower() not in ("0", "false", "no")
    kept = delete_event(s, ev, current_user(), keep_past=keep_past)
    s.commit()
    return jsonify({"success": True, "kept_past_occurrences": kept})


# ---------- Resources ----------


@bp.get("/api/events/resources")
@require_feature("resources")
def api_resources_list():
    rows = db_session().query(Resource).order_by(Resource.name.asc(), Resource.id.asc()).all()
    return jsonify({"resources": [resource_to_dict(r) for r in rows]})


@bp.post("/api/events/resources")
@require_feature("resources")
def api_resources_create():
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        r = create_resource(s, body, current_user())
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(resource_to_dict(r)), 201


@bp.get("/api/events/resources/<int:resource_id>")
@require_feature("resources")
def api_resources_get(resource_id: int):
    r = db_session().get(Resource, resource_id)
    if r is None:
        return json_error("Resource not found", 404)
    return jsonify(resource_to_dict(r))


@bp.put("/api/events/resources/<int:resource_id>")
@require_feature("resources")
def api_resources_update(resource_id: int):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    r = s.get(Resource, resource_id)
    if r is None:
        return json_error("Resource not found", 404)
    try:
        update_resource(s, r, body, current_user())
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(resource_to_dict(r))


@bp.delete("/api/events/resources/<int:resource_id>")
@require_feature("resources")
def api_resources_delete(resource_id: int):
    s = db_session()
    r = s.get(Resource, resource_id)
    if r is None:
        return json_error("Resource not found", 404)
    delete_resource(s, r, current_user())
    s.commit()
    return jsonify({"success": True})


# ---------- Participants ----------


@bp.get("/api/events/participants")
@require_feature("events")
def api_participants_list():
    rows = db_session().query(Participant).order_by(Participant.display_name.asc(), Participant.id.asc()).all()
    return jsonify({"participants": [participant_to_dict(p) for p in rows]})


@bp.post("/api/events/participants")
@require_feature("events")
def api_participants_ensure():
    """Body: ``{source_type: crm_contact|team_member, source_id}``; returns the existing row when there is one."""
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        p, created = ensure_participant(s, *parse_source(body))
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify(participant_to_dict(p)), 201 if created else 200


@bp.delete("/api/events/participants/<int:participant_id>")
@require_feature("events")
def api_participants_delete(participant_id: int):
    s = db_session()
    p = s.get(Participant, participant_id)
    if p is None:
        return json_error("Participant not found", 404)
    delete_participant(s, p, current_user())
    s.commit()
    return jsonify({"success": True})


# ---------- Assignments ----------


@bp.get("/api/events/<ident>/participants")
@require_feature("events")
def api_event_participants_get(ident: str):
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    return jsonify({"participant_ids": event_participant_ids(db_session(), ev.id)})


@bp.post("/api/events/<ident>/participants")
@require_feature("events")
def api_event_participants_add(ident: str):
    """Body: ``{participant_id}`` or ``{source_type, source_id}``."""
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    raw_id = body.get("participant_id")
    try:
        if raw_id is not None:
            p = s.get(Participant, raw_id) if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None
            if p is None:
                return json_error("Participant not found", 404)
        elif "source_type" in body:
            p, _ = ensure_participant(s, *parse_source(body))
        else:
            return json_error("Body must include participant_id or source_type and source_id", 400)
        added = assign_participant(s, ev, p, current_user())
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"participant_id": p.id, "added": added}), 201 if added else 200


@bp.delete("/api/events/<ident>/participants/<int:participant_id>")
@require_feature("events")
def api_event_participants_remove(ident: str, participant_id: int):
    s = db_session()
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    removed = unassign_participant(s, ev, participant_id, current_user())
    s.commit()
    return jsonify({"success": True, "removed": removed})


@bp.get("/api/events/<ident>/resources")
@require_feature("events")
def api_event_resources_get(ident: str):
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    return jsonify({"resource_ids": event_resource_ids(db_session(), ev.id)})


@bp.post("/api/events/<ident>/resources")
@require_feature("events")
def api_event_resources_add(ident: str):
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    raw_id = body.get("resource_id")
    r = s.get(Resource, raw_id) if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None
    if r is None:
        return json_error("Resource not found", 404)
    added = assign_resource(s, ev, r, current_user())
    s.commit()
    return jsonify({"resource_id": r.id, "added": added}), 201 if added else 200


@bp.delete("/api/events/<ident>/resources/<int:resource_id>")
@require_feature("events")
def api_event_resources_remove(ident: str, resource_id: int):
    s = db_session()
    ev = _get_event(ident)
    if ev is None:
        return json_error("Event not found", 404)
    removed = unassign_resource(s, ev, resource_id, current_user())
    s.commit()
    return jsonify({"success": True, "removed": removed})


# ---------- Conflicts ----------


def _id_list(raw, label: str) -> list[int]:
    if raw is None or raw == []:
        return []
    ids = parse_id_list(raw)
    if ids is None:
        raise ValueError(f"{label} must be a list of ids.")
    return ids


def _exclude_id(raw) -> int | None:
    """The event being edited; synthetic occurrence ids resolve to their series."""
    if raw in (None, ""):
        return None
    ident = event_id_for_edit(str(raw))
    if not ident.isdigit():
        raise ValueError("exclude_event_id must be an event id.")
    return int(ident)


@bp.post("/api/events/check-conflicts")
@require_feature("events")
def api_events_check_conflicts():
    """
    Body: ``{start_at, end_at, participant_ids?, participants?: [{source_type, source_id}],
    resource_ids?, exclude_event_id?}``. Returns the overlapping occurrences that share
    a participant or an exclusive resource.
    """
    body = json_body()
    if body is None:
        return json_error("Invalid request body", 400)
    s = db_session()
    try:
        start = parse_when(body.get("start_at"), "start_at")
        end = parse_when(body.get("end_at"), "end_at")
        if start is None or end is None:
            raise ValueError("start_at and end_at are required.")
        participant_ids = _id_list(body.get("participant_ids"), "participant_ids")
        sources = body.get("participants") or []
        if not isinstance(sources, list):
            raise ValueError("participants must be a list.")
        for source in sources:
            if not isinstance(source, dict):
                raise ValueError("Each participant needs source_type and source_id.")
            p, _ = ensure_participant(s, *parse_source(source))
            participant_ids.append(p.id)
        conflicts = find_conflicts(
            s,
            start,
            end,
            participant_ids=participant_ids,
            resource_ids=_id_list(body.get("resource_ids"), "resource_ids"),
            exclude_event_id=_exclude_id(body.get("exclude_event_id")),
        )
    except ValueError as e:
        s.rollback()
        return json_error(str(e), 400)
    s.commit()
    return jsonify({"conflicts": conflicts, "has_conflicts": bool(conflicts)})
