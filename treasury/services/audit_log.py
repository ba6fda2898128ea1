"""
Audit log appender.

One entry per accepted mutation, appended to the record's own log. The
entry shares the mutation's transaction so both land or neither does.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from treasury.models.audit import AuditEntry
from treasury.models.domain import Reimbursement, User

# (field, label) pairs compared when a record is edited
REIMBURSEMENT_TRACKED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("title", "Title"),
    ("total_amount", "Amount"),
    ("date_of_purchase", "Date"),
    ("payment_method", "Payment method"),
    ("department", "Department"),
    ("business_purpose", "Business purpose"),
    ("additional_info", "Additional info"),
    ("location", "Location"),
    ("vendor", "Vendor"),
    ("line_item_count", "Line items"),
)

DEPOSIT_TRACKED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("title", "Title"),
    ("amount", "Amount"),
    ("deposit_date", "Date"),
    ("deposit_method", "Method"),
    ("other_deposit_method", "Other method"),
    ("purpose", "Purpose"),
    ("description", "Description"),
    ("reference_number", "Reference"),
    ("is_ieee_deposit", "IEEE Deposit"),
    ("ieee_deposit_source", "IEEE Source"),
)


def _jsonable(value: Any) -> Any:
    """Snapshot values must survive a JSON column."""
    if isinstance(value, Decimal):
        return str(value.quantize(Decimal("0.01")))
    if isinstance(value, date):
        return value.isoformat()
    return getattr(value, "value", value)


MONEY_FIELDS = {"total_amount", "amount"}
QUOTED_FIELDS = {
    "title", "payment_method", "business_purpose", "additional_info", "location", "vendor",
    "other_deposit_method", "purpose", "description", "reference_number",
}


def _display(field: str, value: Any) -> str:
    if value is None or value == "":
        return "None"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if field in MONEY_FIELDS:
        return f"${value}"
    if field in QUOTED_FIELDS:
        return f'"{value}"'
    return str(value)


def snapshot(record, fields: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """JSON-safe copy of the tracked fields of a record."""
    data = {}
    for field, _label in fields:
        if field == "line_item_count":
            data[field] = len(record.line_items)
        else:
            data[field] = _jsonable(getattr(record, field))
    return data


def tracked_fields(record) -> Tuple[Tuple[str, str], ...]:
    if isinstance(record, Reimbursement):
        return REIMBURSEMENT_TRACKED_FIELDS
    return DEPOSIT_TRACKED_FIELDS


def diff_fields(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    fields: Iterable[Tuple[str, str]]
) -> List[str]:
    """One human-readable line per tracked field whose value changed."""
    lines = []
    for field, label in fields:
        old, new = before.get(field), after.get(field)
        if old != new:
            lines.append(f"{label}: {_display(field, old)} → {_display(field, new)}")
    return lines


def edit_note(changes: List[str]) -> str:
    if not changes:
        return "No significant changes made"
    return f"Changes: {'; '.join(changes)}"


def append_entry(
    record,
    action: str,
    actor: User,
    note: Optional[str] = None,
    previous: Optional[Dict[str, Any]] = None,
    new: Optional[Dict[str, Any]] = None
) -> AuditEntry:
    """
    Append one entry to the record's log.

    The caller commits. created_at is filled in by the database on flush.
    """
    log = record.audit_log
    entry = AuditEntry(
        sequence=len(log) + 1,
        action=action,
        actor_id=actor.id,
        actor_name=actor.display_name,
        note=note,
        previous_data=previous,
        new_data=new,
    )
    log.append(entry)
    return entry

