from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from app.cms.audit import record_event
from app.cms.modules.crm.models import CrmCustomField
from app.cms.modules.crm.service import (
    DuplicateContactError,
    add_note,
    create_contact,
    find_live_contact_by_email,
    normalize_email,
    set_custom_value,
    update_contact,
    validate_contact_payload,
)
from app.cms.utils import clean_str

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.models import User

IMPORT_MAX_ROWS = 5_000
IMPORT_SOURCE = "import"
DUPLICATE_MODES = ("skip", "update")
MAX_REPORTED_ERRORS = 20

# Core fields a CSV column may fill; status always starts at "new".
IMPORTABLE_FIELDS = (
    "email",
    "phone",
    "first_name",
    "last_name",
    "full_name",
    "company",
    "address",
    "city",
    "state",
    "postal_code",
    "country",
    "message",
    "source",
)

# Common header spellings beyond the field name itself.
_HEADER_ALIASES = {
    "e_mail": "email",
    "email_address": "email",
    "phone_number": "phone",
    "mobile": "phone",
    "first": "first_name",
    "firstname": "first_name",
    "given_name": "first_name",
    "last": "last_name",
    "lastname": "last_name",
    "surname": "last_name",
    "name": "full_name",
    "fullname": "full_name",
    "organization": "company",
    "organisation": "company",
    "street": "address",
    "address1": "address",
    "province": "state",
    "zip": "postal_code",
    "zip_code": "postal_code",
    "postcode": "postal_code",
    "notes": "message",
}


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    total: int = 0
    errors: list[CsvRowError] = field(default_factory=list)
    columns: dict[str, str] = field(default_factory=dict)
    ignored_columns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": len(self.errors),
            "total": self.total,
            "errors": [{"row": e.row_number, "message": e.message} for e in self.errors[:MAX_REPORTED_ERRORS]],
            "columns": self.columns,
            "ignored_columns": self.ignored_columns,
        }


def _header_key(header: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", (header or "").strip().lower()).strip("_")


def map_headers(headers: list[str], custom_fields: dict[str, CrmCustomField], explicit: dict[str, str] | None = None) -> dict[str, str]:
    """
    Header -> target key (a core field or ``custom:<name>``). An explicit mapping
    wins; otherwise headers match field names, common aliases, or custom field
    names/labels. Unknown headers are left out.
    """
    explicit = explicit or {}
    labels = {_header_key(cf.label): name for name, cf in custom_fields.items()}
    mapped: dict[str, str] = {}
    for header in headers:
        if header in explicit:
            target = str(explicit[header] or "").strip()
            if not target:
                continue
            if target in IMPORTABLE_FIELDS or (target.startswith("custom:") and target[len("custom:"):] in custom_fields):
                mapped[header] = target
                continue
            raise ValueError(f"Unknown import field for column {header!r}: {target}")
        key = _header_key(header)
        if key.startswith("custom_") and key[len("custom_"):] in custom_fields:
            mapped[header] = f"custom:{key[len('custom_'):]}"
        elif key in IMPORTABLE_FIELDS:
            mapped[header] = key
        elif key in _HEADER_ALIASES:
            mapped[header] = _HEADER_ALIASES[key]
        elif key in custom_fields:
            mapped[header] = f"custom:{key}"
        elif key in labels:
            mapped[header] = f"custom:{labels[key]}"
    if len(set(mapped.values())) != len(mapped):
        seen: set[str] = set()
        for header, target in mapped.items():
            if target in seen:
                raise ValueError(f"More than one column maps to {target}.")
            seen.add(target)
    return mapped


def read_csv(file_bytes: bytes) -> tuple[list[str], list[tuple[int, dict[str, str]]]]:
    """Header row plus (line number, row) pairs; fully empty rows are dropped."""
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("CSV has no header row.")
    rows: list[tuple[int, dict[str, str]]] = []
    for raw in reader:
        if not raw or all((v or "").strip() == "" for v in raw.values() if isinstance(v, str)):
            continue
        rows.append((reader.line_num, raw))
        if len(rows) > IMPORT_MAX_ROWS:
            raise ValueError(f"Import is limited to {IMPORT_MAX_ROWS} rows.")
    return [h for h in reader.fieldnames if h is not None], rows


def import_contacts_csv(
    s: "Session",
    file_bytes: bytes,
    user: "User",
    *,
    mapping: dict[str, str] | None = None,
    on_duplicate: str = "skip",
    filename: str | None = None,
) -> ImportResult:
    """
    Create one contact per CSV row. A row whose email matches a live contact is
    skipped, or (``on_duplicate="update"``) fills that contact's non-empty columns.
    Each row runs in a savepoint so a bad row never undoes the good ones.
    """
    if on_duplicate not in DUPLICATE_MODES:
        raise ValueError(f"on_duplicate must be one of: {', '.join(DUPLICATE_MODES)}")
    headers, rows = read_csv(file_bytes)
    custom_fields = {f.name: f for f in s.query(CrmCustomField).all()}
    columns = map_headers(headers, custom_fields, mapping)
    if not columns:
        raise ValueError("No CSV column matches a contact field.")

    result = ImportResult(
        total=len(rows),
        columns=columns,
        ignored_columns=[h for h in headers if h not in columns],
    )
    for line, raw in rows:
        core: dict[str, Any] = {}
        custom: dict[str, str] = {}
        for header, target in columns.items():
            value = clean_str(raw.get(header))
            if value is None:
                continue
            if target.startswith("custom:"):
                custom[target[len("custom:"):]] = value
            else:
                core[target] = value

        errors = validate_contact_payload(core)
        if errors:
            result.errors.append(CsvRowError(line, " ".join(errors)))
            continue

        existing = find_live_contact_by_email(s, normalize_email(core.get("email")))
        if existing is not None and on_duplicate == "skip":
            result.skipped += 1
            continue

        sp = s.begin_nested()
        try:
            if existing is not None:
                core.pop("source", None)
                contact = update_contact(s, existing, core, user)
            else:
                contact = create_contact(s, {**core, "status": "new"}, user, source=IMPORT_SOURCE)
                add_note(s, contact, "Imported", user, note_type="import")
            for name, value in custom.items():
                set_custom_value(s, contact, custom_fields[name], value)
            s.flush()
        except (ValueError, DuplicateContactError) as e:
            sp.rollback()
            result.errors.append(CsvRowError(line, str(e)))
            continue
        sp.commit()
        if existing is not None:
            result.updated += 1
        else:
            result.created += 1

    record_event(
        s,
        actor=user,
        action="crm.contact.import",
        entity_type="CrmContact",
        entity_id="bulk",
        metadata={
            "filename": filename,
            "rows_processed": result.total,
            "rows_created": result.created,
            "rows_updated": result.updated,
            "rows_skipped": result.skipped,
            "rows_errors": len(result.errors),
        },
    )
    return result
