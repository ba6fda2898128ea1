"""
State machine for reimbursements and fund deposits.

This is the only place records are written. Every mutation:
1. is checked against the transition table before anything is written,
2. lands together with exactly one audit entry in a single transaction,
3. guards against concurrent writers with an expected-status precondition.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from treasury.logging_config import logger
from treasury.models.audit import AuditAction, AuditEntry
from treasury.models.domain import Attachment, FundDeposit, LineItem, Reimbursement, User
from treasury.models.enums import (
    AttachmentCategory,
    DepositMethod,
    DepositStatus,
    RecordKind,
    ReimbursementStatus,
)
from treasury.services.audit_log import append_entry, diff_fields, edit_note, snapshot, tracked_fields
from treasury.services.errors import ConflictError, PermissionDeniedError, ValidationError
from treasury.services.storage import LocalBlobStore, StoragePath, StoragePathError
from treasury.services.transitions import (
    can_delete,
    check_edit,
    check_transition,
    is_reviewer,
)

Record = Union[Reimbursement, FundDeposit]

STATUS_ENUM = {
    RecordKind.REIMBURSEMENT: ReimbursementStatus,
    RecordKind.DEPOSIT: DepositStatus,
}

REIMBURSEMENT_EDITABLE = {
    "title", "date_of_purchase", "payment_method", "department",
    "business_purpose", "additional_info", "location", "vendor", "line_items",
}
DEPOSIT_EDITABLE = {
    "title", "amount", "deposit_date", "deposit_method", "other_deposit_method",
    "purpose", "description", "reference_number", "is_ieee_deposit", "ieee_deposit_source",
}


def _value(status) -> str:
    return getattr(status, "value", status)


def _money(value: Any, field: str) -> Decimal:
    """Parse a currency amount; must be a finite number greater than zero."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", {"field": field})
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be greater than zero", {"field": field})
    return amount.quantize(Decimal("0.01"))


def _required(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", {"field": field})
    return str(value).strip()


def _present(value, field: str):
    if value is None:
        raise ValidationError(f"{field} is required", {"field": field})
    return value


class StateMachine:
    """Enforces transition rules and writes the audit trail."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def submit_reimbursement(
        self,
        submitter: User,
        title: str,
        date_of_purchase,
        payment_method: str,
        department,
        business_purpose: str,
        line_items: List[Dict[str, Any]],
        additional_info: Optional[str] = None,
        location: Optional[str] = None,
        vendor: Optional[str] = None
    ) -> Reimbursement:
        """Create a reimbursement in `submitted`. The total is the sum of its line items."""
        items = self._build_line_items(line_items)
        reimbursement = Reimbursement(
            title=_required(title, "title"),
            total_amount=sum((item.amount for item in items), Decimal("0.00")),
            date_of_purchase=_present(date_of_purchase, "date_of_purchase"),
            payment_method=_required(payment_method, "payment_method"),
            department=_present(department, "department"),
            business_purpose=_required(business_purpose, "business_purpose"),
            additional_info=additional_info,
            location=location,
            vendor=vendor,
            status=ReimbursementStatus.SUBMITTED,
            submitted_by=submitter.id,
            line_items=items,
        )
        self.db.add(reimbursement)
        append_entry(
            reimbursement,
            AuditAction.SUBMITTED,
            submitter,
            note="Reimbursement submitted for review",
            new={"status": ReimbursementStatus.SUBMITTED.value,
                 "total_amount": str(reimbursement.total_amount)},
        )
        self._commit()
        self.db.refresh(reimbursement)

        logger.info(
            f"Reimbursement {reimbursement.id} submitted by {submitter.id} "
            f"for {reimbursement.total_amount}"
        )
        return reimbursement

    def submit_deposit(
        self,
        depositor: User,
        title: str,
        amount,
        deposit_date,
        deposit_method,
        purpose: str,
        description: Optional[str] = None,
        other_deposit_method: Optional[str] = None,
        reference_number: Optional[str] = None,
        is_ieee_deposit: bool = False,
        ieee_deposit_source=None
    ) -> FundDeposit:
        """Create a fund deposit in `pending`."""
        _present(deposit_method, "deposit_method")
        self._check_deposit_method(deposit_method, other_deposit_method)
        deposit = FundDeposit(
            title=_required(title, "title"),
            amount=_money(amount, "amount"),
            deposit_date=_present(deposit_date, "deposit_date"),
            deposit_method=deposit_method,
            other_deposit_method=other_deposit_method if _value(deposit_method) == DepositMethod.OTHER.value else None,
            purpose=_required(purpose, "purpose"),
            description=description,
            reference_number=reference_number,
            is_ieee_deposit=bool(is_ieee_deposit),
            ieee_deposit_source=ieee_deposit_source if is_ieee_deposit else None,
            status=DepositStatus.PENDING,
            deposited_by=depositor.id,
        )
        self.db.add(deposit)
        append_entry(
            deposit,
            AuditAction.SUBMITTED,
            depositor,
            note="Deposit submitted for review",
            new={"status": DepositStatus.PENDING.value, "amount": str(deposit.amount)},
        )
        self._commit()
        self.db.refresh(deposit)

        logger.info(f"Deposit {deposit.id} submitted by {depositor.id} for {deposit.amount}")
        return deposit

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def change_status(
        self,
        record: Record,
        new_status,
        actor: User,
        note: Optional[str] = None,
        expected_status=None,
        rejection_reason: Optional[str] = None,
        payment_confirmation: Optional[str] = None
    ) -> AuditEntry:
        """
        Move a record to `new_status`.

        Refusal invariants:
        - The transition must be in the table for the actor's role
        - The submitter can never change their own record's status
        - Rejecting a deposit requires a reason
        - `under_review` is reached only through request_audit

        Concurrency: the write only applies if the stored status still equals
        `expected_status` (default: the status this record was read with).
        Otherwise ConflictError, and nothing is written.
        """
        kind = record.kind
        new_value = _value(new_status)
        if kind == RecordKind.REIMBURSEMENT and new_value == ReimbursementStatus.UNDER_REVIEW.value:
            logger.warning(f"{kind.value} {record.id}: under_review set directly by {actor.id}")
            raise PermissionDeniedError(
                "REFUSAL: A reimbursement goes under review only through an audit request naming the auditor",
                {"status": new_value, "use": "request_audit"},
            )
        if kind == RecordKind.DEPOSIT and new_value == DepositStatus.REJECTED.value:
            rejection_reason = _required(rejection_reason, "rejection_reason")

        values: Dict[str, Any] = {}
        if kind == RecordKind.DEPOSIT:
            values.update(reviewed_by=actor.id, reviewed_at=func.now())
            if rejection_reason:
                values["rejection_reason"] = rejection_reason
            if note:
                values["review_note"] = note
        elif new_value == ReimbursementStatus.PAID.value and payment_confirmation:
            values["payment_confirmation"] = payment_confirmation

        new_data: Dict[str, Any] = {"status": new_value}
        if payment_confirmation and "payment_confirmation" in values:
            new_data["payment_confirmation"] = payment_confirmation

        return self._transition(
            record,
            new_value,
            actor,
            action=new_value,
            note=rejection_reason or note or f"Status changed to {new_value}",
            expected_status=expected_status,
            values=values,
            new_data=new_data,
        )

    def request_audit(
        self,
        reimbursement: Reimbursement,
        actor: User,
        auditor: User,
        note: Optional[str] = None,
        expected_status=None
    ) -> AuditEntry:
        """Hand a reimbursement to another reviewer for a second look (→ under_review)."""
        kind = RecordKind.REIMBURSEMENT
        if not is_reviewer(kind, auditor.role):
            raise ValidationError(
                f"{auditor.display_name} cannot audit reimbursements",
                {"auditor_id": auditor.id, "role": _value(auditor.role)},
            )
        if auditor.id in (actor.id, reimbursement.submitted_by):
            raise ValidationError(
                "The auditor must be someone other than the requester and the submitter",
                {"auditor_id": auditor.id},
            )

        return self._transition(
            reimbursement,
            ReimbursementStatus.UNDER_REVIEW.value,
            actor,
            action=AuditAction.AUDIT_REQUESTED,
            note=note or f"Audit requested from {auditor.display_name}",
            expected_status=expected_status,
            values={"requested_auditor_id": auditor.id},
            new_data={"status": ReimbursementStatus.UNDER_REVIEW.value, "auditor_id": auditor.id},
        )

    def _transition(
        self,
        record: Record,
        new_value: str,
        actor: User,
        action: str,
        note: str,
        expected_status,
        values: Dict[str, Any],
        new_data: Dict[str, Any]
    ) -> AuditEntry:
        kind = record.kind
        current = _value(record.status)
        expected = _value(expected_status) if expected_status is not None else current

        try:
            check_transition(kind, current, new_value, actor.role, actor.id == record.owner_id)
        except PermissionDeniedError as e:
            logger.warning(f"{kind.value} {record.id}: {e.message} (actor {actor.id})")
            raise

        if expected != current:
            raise ConflictError(
                f"This {kind.value} is {current}, not {expected}. Reload and try again.",
                {"id": record.id, "expected": expected, "actual": current},
            )

        status_enum = STATUS_ENUM[kind]
        self._guarded_update(record, status_enum(expected), {
            "status": status_enum(new_value),
            "updated_at": func.now(),
            **values,
        })

        entry = append_entry(
            record,
            action,
            actor,
            note=note,
            previous={"status": current},
            new=new_data,
        )
        self._commit()
        self.db.refresh(record)

        logger.info(f"{kind.value} {record.id}: {current} → {new_value} by {actor.id}")
        return entry

    # ------------------------------------------------------------------
    # Notes and edits
    # ------------------------------------------------------------------

    def add_note(self, record: Record, actor: User, note: str) -> AuditEntry:
        """Reviewer comment that does not change status."""
        kind = record.kind
        if not is_reviewer(kind, actor.role):
            raise PermissionDeniedError(
                f"REFUSAL: Role '{_value(actor.role)}' cannot review {kind.value}s.",
                {"kind": kind.value, "role": _value(actor.role)},
            )
        entry = append_entry(record, AuditAction.NOTE_ADDED, actor, note=_required(note, "note"))
        self._commit()
        self.db.refresh(record)

        logger.info(f"{kind.value} {record.id}: note added by {actor.id}")
        return entry

    def edit_reimbursement(
        self,
        reimbursement: Reimbursement,
        actor: User,
        changes: Dict[str, Any]
    ) -> AuditEntry:
        """Edit fields; replacing line_items recomputes the total."""
        self._check_editable_fields(RecordKind.REIMBURSEMENT, changes, REIMBURSEMENT_EDITABLE)

        def apply():
            for field, value in changes.items():
                if field == "line_items":
                    items = self._build_line_items(value)
                    reimbursement.line_items = items
                    reimbursement.total_amount = sum((i.amount for i in items), Decimal("0.00"))
                elif field in ("title", "payment_method", "business_purpose"):
                    setattr(reimbursement, field, _required(value, field))
                elif field in ("date_of_purchase", "department"):
                    setattr(reimbursement, field, _present(value, field))
                else:
                    setattr(reimbursement, field, value)

        return self._edit(reimbursement, actor, apply)

    def edit_deposit(self, deposit: FundDeposit, actor: User, changes: Dict[str, Any]) -> AuditEntry:
        self._check_editable_fields(RecordKind.DEPOSIT, changes, DEPOSIT_EDITABLE)

        def apply():
            for field, value in changes.items():
                if field == "amount":
                    deposit.amount = _money(value, "amount")
                elif field in ("title", "purpose"):
                    setattr(deposit, field, _required(value, field))
                elif field in ("deposit_date", "deposit_method"):
                    setattr(deposit, field, _present(value, field))
                else:
                    setattr(deposit, field, value)
            self._check_deposit_method(deposit.deposit_method, deposit.other_deposit_method)
            if not deposit.is_ieee_deposit:
                deposit.ieee_deposit_source = None

        return self._edit(deposit, actor, apply)

    def _edit(self, record: Record, actor: User, apply) -> AuditEntry:
        kind = record.kind
        current = _value(record.status)
        check_edit(kind, current, actor.role, actor.id == record.owner_id)

        fields = tracked_fields(record)
        before = snapshot(record, fields)
        try:
            apply()
        except ValidationError:
            self.db.rollback()
            raise
        after = snapshot(record, fields)

        # The edit permission was granted for `current`; it must still hold.
        self._guarded_update(record, STATUS_ENUM[kind](current), {"updated_at": func.now()})

        entry = append_entry(
            record,
            AuditAction.EDITED,
            actor,
            note=edit_note(diff_fields(before, after, fields)),
            previous=before,
            new=after,
        )
        self._commit()
        self.db.refresh(record)

        logger.info(f"{kind.value} {record.id} edited by {actor.id}")
        return entry

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def add_attachment(
        self,
        record: Record,
        actor: User,
        category: AttachmentCategory,
        filename: str,
        data: bytes,
        blob_store: LocalBlobStore,
        line_item_position: Optional[int] = None
    ) -> Attachment:
        """Upload a file for a record, optionally as the receipt of one line item."""
        kind = record.kind
        check_edit(kind, record.status, actor.role, actor.id == record.owner_id, action="attach files to")
        if not data:
            raise ValidationError("File is empty", {"field": "file"})

        line_item = None
        if line_item_position is not None:
            if kind != RecordKind.REIMBURSEMENT:
                raise ValidationError("Only reimbursements have line items", {"field": "line_item"})
            line_item = next((i for i in record.line_items if i.position == line_item_position), None)
            if line_item is None:
                raise ValidationError(
                    f"No line item at position {line_item_position}", {"field": "line_item"}
                )

        try:
            path = StoragePath.build(kind, record.id, category, filename)
        except StoragePathError as e:
            raise ValidationError(str(e), {"field": "filename"})
        blob_store.upload(path, data)

        attachment = Attachment(category=category, path=str(path), filename=filename)
        record.attachments.append(attachment)
        if line_item is not None:
            line_item.receipt = str(path)
        append_entry(
            record,
            AuditAction.ATTACHMENT_ADDED,
            actor,
            note=f"Added {_value(category).replace('_', ' ')} file {path.filename}",
            new={"path": str(path), "category": _value(category), "line_item": line_item_position},
        )
        try:
            self._commit()
        except Exception:
            # The record did not change, so the blob would be orphaned
            self.db.rollback()
            blob_store.delete(path)
            raise
        self.db.refresh(attachment)

        logger.info(f"{kind.value} {record.id}: attachment {path} added by {actor.id}")
        return attachment

    def remove_attachment(
        self,
        attachment: Attachment,
        actor: User,
        blob_store: LocalBlobStore
    ) -> AuditEntry:
        record = attachment.record
        kind = record.kind
        check_edit(kind, record.status, actor.role, actor.id == record.owner_id, action="remove files from")

        path = attachment.path
        if kind == RecordKind.REIMBURSEMENT:
            for item in record.line_items:
                if item.receipt == path:
                    item.receipt = None
        record.attachments.remove(attachment)
        entry = append_entry(
            record,
            AuditAction.ATTACHMENT_REMOVED,
            actor,
            note=f"Removed file {attachment.filename}",
            previous={"path": path, "category": _value(attachment.category)},
        )
        self._commit()
        self._delete_blobs(blob_store, [path])
        self.db.refresh(record)

        logger.info(f"{kind.value} {record.id}: attachment {path} removed by {actor.id}")
        return entry

    # ------------------------------------------------------------------
    # Administrative delete
    # ------------------------------------------------------------------

    def delete_record(self, record: Record, actor: User, blob_store: LocalBlobStore) -> int:
        """
        Hard-delete a record with its log, then remove its now-orphaned files.

        Returns the number of files removed from the blob store.
        """
        kind = record.kind
        if not can_delete(kind, actor.role):
            logger.warning(f"{kind.value} {record.id}: delete refused for {actor.id}")
            raise PermissionDeniedError(
                f"REFUSAL: Role '{_value(actor.role)}' cannot delete {kind.value}s.",
                {"kind": kind.value, "role": _value(actor.role)},
            )

        paths = {a.path for a in record.attachments}
        if kind == RecordKind.REIMBURSEMENT:
            paths.update(i.receipt for i in record.line_items if i.receipt)

        record_id = record.id
        self.db.delete(record)
        self._commit()
        removed = self._delete_blobs(blob_store, sorted(paths))

        logger.info(f"{kind.value} {record_id} deleted by {actor.id} ({removed} files removed)")
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _guarded_update(self, record: Record, expected, values: Dict[str, Any]) -> None:
        """UPDATE ... WHERE id = :id AND status = :expected, or ConflictError."""
        model = type(record)
        updated = (
            self.db.query(model)
            .filter(model.id == record.id, model.status == expected)
            .update(values, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            logger.warning(
                f"{record.kind.value} {record.id}: concurrent update detected "
                f"(expected status {_value(expected)})"
            )
            raise ConflictError(
                f"This {record.kind.value} was changed by someone else. Reload and try again.",
                {"id": record.id, "expected": _value(expected)},
            )

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Commit rejected: {e.orig}")
            raise ConflictError("The record was changed by someone else. Reload and try again.")

    def _build_line_items(self, line_items: Iterable[Dict[str, Any]]) -> List[LineItem]:
        items = []
        for position, item in enumerate(line_items or [], start=1):
            receipt = item.get("receipt")
            if receipt and not StoragePath.is_valid(receipt):
                raise ValidationError(
                    f"Line item {position}: receipt is not a stored file", {"field": "receipt"}
                )
            items.append(LineItem(
                position=position,
                description=_required(item.get("description"), f"line item {position} description"),
                category=_required(item.get("category"), f"line item {position} category"),
                amount=_money(item.get("amount"), f"line item {position} amount"),
                receipt=receipt,
            ))
        if not items:
            raise ValidationError("At least one line item is required", {"field": "line_items"})
        return items

    @staticmethod
    def _check_deposit_method(deposit_method, other_deposit_method: Optional[str]) -> None:
        if _value(deposit_method) == DepositMethod.OTHER.value and not (other_deposit_method or "").strip():
            raise ValidationError(
                'Please specify the deposit method when "Other" is selected',
                {"field": "other_deposit_method"},
            )

    @staticmethod
    def _check_editable_fields(kind: RecordKind, changes: Dict[str, Any], editable: set) -> None:
        forbidden = sorted(set(changes) - editable)
        if forbidden:
            raise ValidationError(
                f"IMMUTABILITY VIOLATION: cannot edit {', '.join(forbidden)} on a {kind.value}",
                {"fields": forbidden},
            )

    @staticmethod
    def _delete_blobs(blob_store: LocalBlobStore, paths: Iterable[str]) -> int:
        removed = 0
        for path in paths:
            try:
                if blob_store.delete(path):
                    removed += 1
            except Exception as e:
                logger.warning(f"Failed to delete file {path}: {e}")
        return removed
