"""Expand RRULE-based recurring events into occurrences within a date range."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from dateutil.rrule import rrulestr

if TYPE_CHECKING:
    from app.cms.modules.events.models import Event

logger = logging.getLogger(__name__)

RECURRENCE_ID_SEP = "--"
MAX_OCCURRENCES = 1000

# Stored datetimes are naive UTC, so a UTC UNTIL is compared as naive too.
_UTC_UNTIL_RE = re.compile(r"(UNTIL=\d{8}T\d{6})Z", re.IGNORECASE)
_FREQ_RE = re.compile(r"FREQ=(\w+)", re.IGNORECASE)
SUB_HOURLY_FREQS = ("SECONDLY", "MINUTELY")


@dataclass(frozen=True)
class Occurrence:
    event: "Event"
    id: str
    start_at: datetime
    end_at: datetime

    @property
    def is_recurring(self) -> bool:
        return RECURRENCE_ID_SEP in self.id


def epoch_ms(dt: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC datetime."""
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)


def synthetic_id(event_id: int, occurrence_start: datetime) -> str:
    return f"{event_id}{RECURRENCE_ID_SEP}{epoch_ms(occurrence_start)}"


def event_id_for_edit(ident: str) -> str:
    """Real event id from a possibly synthetic occurrence id."""
    i = ident.find(RECURRENCE_ID_SEP)
    return ident[:i] if i > 0 else ident


def occurrence_starts(rule_text: str, dtstart: datetime, range_start: datetime, range_end: datetime) -> list[datetime]:
    """
    At most MAX_OCCURRENCES starts in [range_start, range_end], walked lazily so
    a dense rule stops as soon as the cap or the range end is reached. Raises
    ValueError for an RRULE dateutil cannot parse or evaluate.
    """
    starts: list[datetime] = []
    try:
        rule = rrulestr(_UTC_UNTIL_RE.sub(r"\1", rule_text.strip()), dtstart=dtstart, unfold=True)
        for start in rule.xafter(range_start, count=MAX_OCCURRENCES, inc=True):
            if start > range_end:
                break
            starts.append(start)
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid recurrence rule: {e}") from e
    return starts


def validate_rule(rule_text: str | None, dtstart: datetime) -> None:
    if not (rule_text or "").strip():
        return
    freq = _FREQ_RE.search(rule_text or "")
    if freq and freq.group(1).upper() in SUB_HOURLY_FREQS:
        raise ValueError("Recurrence more frequent than hourly is not supported.")
    occurrence_starts(rule_text or "", dtstart, dtstart, dtstart + timedelta(days=1))


def expand_events(events: list["Event"], range_start: datetime, range_end: datetime) -> list[Occurrence]:
    """
    One-off events pass through unchanged. Recurring events yield one occurrence
    per rule instance in [range_start, range_end] with a synthetic ``<id>--<epoch-ms>``
    id. An invalid rule falls back to the stored row.
    """
    out: list[Occurrence] = []
    for ev in events:
        rule_text = (ev.recurrence_rule or "").strip()
        if not rule_text:
            out.append(Occurrence(event=ev, id=str(ev.id), start_at=ev.start_at, end_at=ev.end_at))
            continue
        duration = ev.end_at - ev.start_at
        try:
            starts = occurrence_starts(rule_text, ev.start_at, range_start, range_end)
        except ValueError:
            logger.warning("Event %s has an invalid recurrence rule %r; showing it as a one-off", ev.id, rule_text)
            out.append(Occurrence(event=ev, id=str(ev.id), start_at=ev.start_at, end_at=ev.end_at))
            continue
        for start in starts:
            out.append(Occurrence(event=ev, id=synthetic_id(ev.id, start), start_at=start, end_at=start + duration))
    out.sort(key=lambda o: o.start_at)
    return out
