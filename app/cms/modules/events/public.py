from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.cms.db import db_session
from app.cms.modules.events.service import events_in_range, occurrence_to_dict, parse_range
from app.cms.utils import json_error

bp = Blueprint("events_public", __name__)


@bp.get("/api/public/events")
def list_events():
    """Published, public events only; gated events never appear in the public calendar."""
    try:
        start, end = parse_range(request.args.get("start"), request.args.get("end"))
    except ValueError as e:
        return json_error(str(e), 400)
    occurrences = [
        o for o in events_in_range(db_session(), start, end, published_only=True) if (o.event.access_level or "public") == "public"
    ]
    return jsonify({"events": [occurrence_to_dict(o) for o in occurrences]})
