from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, timezone
from typing import Any

from flask import g, jsonify, request

from app.cms.models import User


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def json_error(message: str, status: int = 400, /, **extra: Any):
    body: dict[str, Any] = {"error": message}
    body.update(extra)
    return jsonify(body), status


def json_body() -> dict | None:
    """Parsed JSON object body, or None when the body is missing or not an object."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def isoformat(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    s = (s or "").strip()
    if not s:
        return None
    return date.fromisoformat(s)


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into a naive UTC datetime (``Z`` suffix accepted)."""
    if value is not None and not isinstance(value, str):
        raise ValueError(f"Expected an ISO-8601 string, got {type(value).__name__}.")
    raw = (value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def slugify(value: str | None, *, sep: str = "-") -> str:
    text = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^a-zA-Z0-9]+", sep, text).strip(sep).lower()
    return re.sub(re.escape(sep) + r"{2,}", sep, text)


def clean_str(value: Any) -> str | None:
    """Trimmed string or None for blanks/non-strings."""
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def parse_id_list(value: Any) -> list[int] | None:
    """Validate a JSON list of integer ids; None when malformed or empty."""
    if not isinstance(value, list) or not value:
        return None
    out: list[int] = []
    for v in value:
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            return None
    return out
