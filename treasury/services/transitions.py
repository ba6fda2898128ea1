"""
Status transition table.

Pure functions of (kind, current status, role, is_submitter). Every
permission question the services ask is answered here, so the rules can be
tested without a database.
"""
from typing import Dict, FrozenSet, Optional

from treasury.models.enums import DepositStatus, RecordKind, ReimbursementStatus, Role
from treasury.services.errors import PermissionDeniedError

R = ReimbursementStatus
D = DepositStatus

TRANSITIONS: Dict[RecordKind, Dict[str, FrozenSet[str]]] = {
    RecordKind.REIMBURSEMENT: {
        R.SUBMITTED.value: frozenset({
            R.UNDER_REVIEW.value, R.APPROVED.value, R.DECLINED.value, R.PAID.value,
        }),
        R.UNDER_REVIEW.value: frozenset({R.APPROVED.value, R.DECLINED.value, R.PAID.value}),
        R.APPROVED.value: frozenset({R.PAID.value}),
        R.DECLINED.value: frozenset(),
        R.PAID.value: frozenset(),
    },
    RecordKind.DEPOSIT: {
        D.PENDING.value: frozenset({D.VERIFIED.value, D.REJECTED.value}),
        D.VERIFIED.value: frozenset(),
        D.REJECTED.value: frozenset(),
    },
}

INITIAL_STATUS: Dict[RecordKind, str] = {
    RecordKind.REIMBURSEMENT: R.SUBMITTED.value,
    RecordKind.DEPOSIT: D.PENDING.value,
}

# Status whose amounts count as money actually moved
SETTLED_STATUS: Dict[RecordKind, str] = {
    RecordKind.REIMBURSEMENT: R.PAID.value,
    RecordKind.DEPOSIT: D.VERIFIED.value,
}

REVIEWER_ROLES: Dict[RecordKind, FrozenSet[Role]] = {
    RecordKind.REIMBURSEMENT: frozenset({Role.EXECUTIVE_OFFICER, Role.ADMINISTRATOR}),
    RecordKind.DEPOSIT: frozenset({Role.ADMINISTRATOR}),
}


def _value(status) -> str:
    return getattr(status, "value", status)


def statuses(kind: RecordKind) -> list:
    """All statuses of a kind, in lifecycle order."""
    return list(TRANSITIONS[kind].keys())


def is_terminal(kind: RecordKind, status) -> bool:
    return not TRANSITIONS[kind][_value(status)]


def is_reviewer(kind: RecordKind, role: Role) -> bool:
    return role in REVIEWER_ROLES[kind]


def allowed_transitions(
    kind: RecordKind,
    current,
    role: Role,
    is_submitter: bool
) -> FrozenSet[str]:
    """
    Statuses the caller may move the record to from `current`.

    Empty for non-reviewers and for the record's own submitter, whatever
    their role.
    """
    if is_submitter or not is_reviewer(kind, role):
        return frozenset()
    return TRANSITIONS[kind][_value(current)]


def check_transition(
    kind: RecordKind,
    current,
    requested,
    role: Role,
    is_submitter: bool
) -> None:
    """Raise PermissionDeniedError unless current → requested is allowed for the caller."""
    current, requested = _value(current), _value(requested)
    details = {"kind": kind.value, "from": current, "to": requested, "role": _value(role)}

    if requested not in TRANSITIONS[kind]:
        raise PermissionDeniedError(f"REFUSAL: Unknown {kind.value} status '{requested}'.", details)

    if is_submitter:
        raise PermissionDeniedError(
            f"REFUSAL: You cannot change the status of your own {kind.value}.", details
        )

    if not is_reviewer(kind, role):
        raise PermissionDeniedError(
            f"REFUSAL: Role '{_value(role)}' cannot review {kind.value}s.", details
        )

    if requested not in TRANSITIONS[kind][current]:
        if is_terminal(kind, current):
            message = f"REFUSAL: This {kind.value} is already {current}; no further changes are allowed."
        else:
            message = f"REFUSAL: Cannot move a {kind.value} from {current} to {requested}."
        raise PermissionDeniedError(message, details)


def can_edit(kind: RecordKind, status, role: Role, is_submitter: bool) -> bool:
    """Submitters edit while the record is still in its initial status; reviewers always."""
    if is_reviewer(kind, role):
        return True
    return is_submitter and _value(status) == INITIAL_STATUS[kind]


def can_delete(kind: RecordKind, role: Role) -> bool:
    return is_reviewer(kind, role)


def can_view(kind: RecordKind, role: Role, is_submitter: bool) -> bool:
    return is_submitter or is_reviewer(kind, role)


def check_edit(kind: RecordKind, status, role: Role, is_submitter: bool,
               action: Optional[str] = "edit") -> None:
    if not can_edit(kind, status, role, is_submitter):
        raise PermissionDeniedError(
            f"REFUSAL: You cannot {action} this {kind.value} while it is {_value(status)}.",
            {"kind": kind.value, "status": _value(status), "role": _value(role)}
        )
