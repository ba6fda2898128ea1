"""
View projection over a set of records.

Pure folds: given the records a caller can see, narrow them by search text
and status, then summarize. Nothing is cached; each request recomputes.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from treasury.models.enums import RecordKind
from treasury.services.transitions import SETTLED_STATUS, statuses

SEARCH_FIELDS = {
    RecordKind.REIMBURSEMENT: ("title", "business_purpose", "additional_info", "vendor", "location"),
    RecordKind.DEPOSIT: ("title", "purpose", "description", "reference_number"),
}


@dataclass
class RecordStats:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    settled_status: str = ""
    settled_amount: Decimal = Decimal("0.00")


def _status(record) -> str:
    return getattr(record.status, "value", record.status)


def matches_search(record, kind: RecordKind, search: str) -> bool:
    needle = search.lower()
    for name in SEARCH_FIELDS[kind]:
        value = getattr(record, name, None)
        if value and needle in str(value).lower():
            return True
    return False


def filter_records(
    records: Iterable,
    kind: RecordKind,
    search: Optional[str] = None,
    status: Optional[str] = None
) -> List:
    """Records matching the search text (any text field, case-insensitive) and status."""
    filtered = list(records)
    if search and search.strip():
        filtered = [r for r in filtered if matches_search(r, kind, search.strip())]
    if status and status != "all":
        status = getattr(status, "value", status)
        filtered = [r for r in filtered if _status(r) == status]
    return filtered


def compute_stats(records: Iterable, kind: RecordKind) -> RecordStats:
    """
    Count per status and the amount sum over the settled status.

    Every status of the kind appears in by_status, zero when absent.
    """
    settled = SETTLED_STATUS[kind]
    stats = RecordStats(
        by_status={s: 0 for s in statuses(kind)},
        settled_status=settled,
    )
    for record in records:
        status = _status(record)
        stats.total += 1
        stats.by_status[status] = stats.by_status.get(status, 0) + 1
        if status == settled:
            stats.settled_amount += Decimal(str(record.amount))
    stats.settled_amount = stats.settled_amount.quantize(Decimal("0.01"))
    return stats
