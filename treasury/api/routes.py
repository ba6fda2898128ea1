"""API routes for reimbursements, fund deposits and their review workflow."""
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Query, UploadFile, status
from sqlalchemy.orm import Session

from treasury.api.dependencies import get_blob_store, get_current_user, get_notifier, get_optional_user
from treasury.api.schemas import (
    AttachmentResponse,
    AuditEntryResponse,
    AuditRequestCreate,
    DepositCreate,
    DepositResponse,
    DepositStatusChange,
    DepositUpdate,
    ErrorResponse,
    MigrationItemResponse,
    MigrationResultResponse,
    NoteCreate,
    ReimbursementCreate,
    ReimbursementResponse,
    ReimbursementStatusChange,
    ReimbursementUpdate,
    StatsResponse,
    UserCreate,
    UserResponse,
)
from treasury.database import get_db
from treasury.models.domain import Attachment, FundDeposit, Reimbursement, User
from treasury.models.enums import AttachmentCategory, RecordKind, Role
from treasury.services.errors import (
    ConflictError,
    PermissionDeniedError,
    RecordNotFoundError,
    StorageError,
    TreasuryError,
    ValidationError,
)
from treasury.services.migration import MigrationService
from treasury.services.notifier import EmailNotifier, NotificationType
from treasury.services.projection import compute_stats, filter_records
from treasury.services.state_machine import StateMachine
from treasury.services.storage import LocalBlobStore
from treasury.services.transitions import can_view, is_reviewer

router = APIRouter()

ERROR_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    ConflictError: status.HTTP_409_CONFLICT,
    RecordNotFoundError: status.HTTP_404_NOT_FOUND,
    StorageError: status.HTTP_502_BAD_GATEWAY,
}

REFUSALS = {
    403: {"model": ErrorResponse, "description": "Refusal - role or transition not allowed"},
    409: {"model": ErrorResponse, "description": "Conflict - the record changed, reload and retry"},
}


def _http_error(e: TreasuryError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(type(e), status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=e.to_dict(),
    )


def _load(db: Session, model, record_id: str, user: User):
    """Fetch a record the caller may see, or raise the matching HTTP error."""
    record = db.query(model).filter(model.id == record_id).first()
    if not record:
        raise _http_error(RecordNotFoundError(model.kind.value.capitalize(), record_id))
    if not can_view(model.kind, user.role, user.id == record.owner_id):
        raise _http_error(PermissionDeniedError(
            f"REFUSAL: You cannot view this {model.kind.value}.", {"id": record_id}
        ))
    return record


def _visible(db: Session, model, user: User):
    query = db.query(model)
    if not is_reviewer(model.kind, user.role):
        owner_column = model.submitted_by if model is Reimbursement else model.deposited_by
        query = query.filter(owner_column == user.id)
    return query.order_by(model.created_at.desc()).all()


def _require_admin(user: User) -> None:
    if user.role != Role.ADMINISTRATOR:
        raise _http_error(PermissionDeniedError(
            "REFUSAL: Only administrators can do this.", {"role": user.role.value}
        ))


# User endpoints
@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def create_user(
    user_data: UserCreate,
    db: Session = Depends(get_db),
    current_user: Optional[User] = Depends(get_optional_user)
):
    """
    Create a user profile.

    The first profile bootstraps the system and must be an Administrator;
    after that only administrators may create profiles.
    """
    if db.query(User).count() == 0:
        if user_data.role != Role.ADMINISTRATOR:
            raise _http_error(ValidationError("The first user must be an Administrator"))
    elif current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHENTICATED", "message": "Sign in required", "details": {}},
        )
    else:
        _require_admin(current_user)

    if db.query(User).filter(User.email == user_data.email).first():
        raise _http_error(ConflictError("A user with this email already exists", {"email": user_data.email}))
    user = User(name=user_data.name, email=user_data.email, role=user_data.role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@router.get("/users/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    return current_user


# Reimbursement endpoints
@router.post("/reimbursements", response_model=ReimbursementResponse, status_code=status.HTTP_201_CREATED)
def create_reimbursement(
    data: ReimbursementCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: EmailNotifier = Depends(get_notifier)
):
    """Submit a reimbursement request. Its total is the sum of its line items."""
    sm = StateMachine(db)
    try:
        reimbursement = sm.submit_reimbursement(
            current_user,
            title=data.title,
            date_of_purchase=data.date_of_purchase,
            payment_method=data.payment_method,
            department=data.department,
            business_purpose=data.business_purpose,
            line_items=[item.model_dump() for item in data.line_items],
            additional_info=data.additional_info,
            location=data.location,
            vendor=data.vendor,
        )
    except TreasuryError as e:
        raise _http_error(e)
    background_tasks.add_task(notifier.notify, NotificationType.SUBMISSION, reimbursement.id)
    return reimbursement


@router.get("/reimbursements", response_model=List[ReimbursementResponse])
def list_reimbursements(
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Reimbursements the caller can see, newest first."""
    records = _visible(db, Reimbursement, current_user)
    return filter_records(records, RecordKind.REIMBURSEMENT, search=search, status=status_filter)


@router.get("/reimbursements/stats", response_model=StatsResponse)
def reimbursement_stats(
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Counts per status and the paid total over the same view as the list."""
    records = filter_records(
        _visible(db, Reimbursement, current_user),
        RecordKind.REIMBURSEMENT,
        search=search,
        status=status_filter,
    )
    return compute_stats(records, RecordKind.REIMBURSEMENT)


@router.get("/reimbursements/{reimbursement_id}", response_model=ReimbursementResponse)
def get_reimbursement(
    reimbursement_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return _load(db, Reimbursement, reimbursement_id, current_user)


@router.patch("/reimbursements/{reimbursement_id}", response_model=ReimbursementResponse, responses=REFUSALS)
def edit_reimbursement(
    reimbursement_id: str,
    data: ReimbursementUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Edit a reimbursement.

    WILL REFUSE if the caller is the submitter and it is no longer submitted.
    """
    reimbursement = _load(db, Reimbursement, reimbursement_id, current_user)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("line_items") is not None:
        changes["line_items"] = [item.model_dump() for item in data.line_items]

    sm = StateMachine(db)
    try:
        sm.edit_reimbursement(reimbursement, current_user, changes)
    except TreasuryError as e:
        raise _http_error(e)
    return reimbursement


@router.post("/reimbursements/{reimbursement_id}/status", response_model=ReimbursementResponse, responses=REFUSALS)
def change_reimbursement_status(
    reimbursement_id: str,
    data: ReimbursementStatusChange,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: EmailNotifier = Depends(get_notifier)
):
    """
    Move a reimbursement along its lifecycle.

    WILL REFUSE if:
    - The caller submitted it
    - The caller's role does not review reimbursements
    - The transition is not in the table
    - Someone else changed it since `expected_status` was read (409)
    """
    reimbursement = _load(db, Reimbursement, reimbursement_id, current_user)
    previous = reimbursement.status.value

    sm = StateMachine(db)
    try:
        sm.change_status(
            reimbursement,
            data.status,
            current_user,
            note=data.note,
            expected_status=data.expected_status,
            payment_confirmation=data.payment_confirmation,
        )
    except TreasuryError as e:
        raise _http_error(e)
    background_tasks.add_task(
        notifier.notify,
        NotificationType.STATUS_CHANGE,
        reimbursement.id,
        previousStatus=previous,
        newStatus=data.status.value,
        changedByUserId=current_user.id,
    )
    return reimbursement


@router.post("/reimbursements/{reimbursement_id}/audit-request", response_model=ReimbursementResponse, responses=REFUSALS)
def request_reimbursement_audit(
    reimbursement_id: str,
    data: AuditRequestCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: EmailNotifier = Depends(get_notifier)
):
    """Put a reimbursement under review by another officer."""
    reimbursement = _load(db, Reimbursement, reimbursement_id, current_user)
    auditor = db.query(User).filter(User.id == data.auditor_id).first()
    if not auditor:
        raise _http_error(RecordNotFoundError("User", data.auditor_id))

    sm = StateMachine(db)
    try:
        sm.request_audit(
            reimbursement, current_user, auditor,
            note=data.note, expected_status=data.expected_status,
        )
    except TreasuryError as e:
        raise _http_error(e)
    background_tasks.add_task(
        notifier.notify,
        NotificationType.AUDIT_REQUEST,
        reimbursement.id,
        auditorId=auditor.id,
        requestedByUserId=current_user.id,
    )
    return reimbursement


@router.post("/reimbursements/{reimbursement_id}/notes", response_model=AuditEntryResponse,
             status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def add_reimbursement_note(
    reimbursement_id: str,
    data: NoteCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: EmailNotifier = Depends(get_notifier)
):
    reimbursement = _load(db, Reimbursement, reimbursement_id, current_user)
    sm = StateMachine(db)
    try:
        entry = sm.add_note(reimbursement, current_user, data.note)
    except TreasuryError as e:
        raise _http_error(e)
    background_tasks.add_task(
        notifier.notify, NotificationType.COMMENT, reimbursement.id, commentByUserId=current_user.id,
    )
    return entry


@router.delete("/reimbursements/{reimbursement_id}", status_code=status.HTTP_204_NO_CONTENT, responses=REFUSALS)
def delete_reimbursement(
    reimbursement_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    blob_store: LocalBlobStore = Depends(get_blob_store)
):
    """Administrative delete. Removes the record, its log and its files."""
    reimbursement = _load(db, Reimbursement, reimbursement_id, current_user)
    sm = StateMachine(db)
    try:
        sm.delete_record(reimbursement, current_user, blob_store)
    except TreasuryError as e:
        raise _http_error(e)


# Fund deposit endpoints
@router.post("/deposits", response_model=DepositResponse, status_code=status.HTTP_201_CREATED)
def create_deposit(
    data: DepositCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: EmailNotifier = Depends(get_notifier)
):
    """Record a fund deposit, pending verification."""
    sm = StateMachine(db)
    try:
        deposit = sm.submit_deposit(current_user, **data.model_dump())
    except TreasuryError as e:
        raise _http_error(e)
    background_tasks.add_task(notifier.notify, NotificationType.DEPOSIT_SUBMISSION, deposit.id)
    return deposit


@router.get("/deposits", response_model=List[DepositResponse])
def list_deposits(
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    records = _visible(db, FundDeposit, current_user)
    return filter_records(records, RecordKind.DEPOSIT, search=search, status=status_filter)


@router.get("/deposits/stats", response_model=StatsResponse)
def deposit_stats(
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Counts per status and the verified total over the same view as the list."""
    records = filter_records(
        _visible(db, FundDeposit, current_user),
        RecordKind.DEPOSIT,
        search=search,
        status=status_filter,
    )
    return compute_stats(records, RecordKind.DEPOSIT)


@router.get("/deposits/{deposit_id}", response_model=DepositResponse)
def get_deposit(
    deposit_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return _load(db, FundDeposit, deposit_id, current_user)


@router.patch("/deposits/{deposit_id}", response_model=DepositResponse, responses=REFUSALS)
def edit_deposit(
    deposit_id: str,
    data: DepositUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    deposit = _load(db, FundDeposit, deposit_id, current_user)
    sm = StateMachine(db)
    try:
        sm.edit_deposit(deposit, current_user, data.model_dump(exclude_unset=True))
    except TreasuryError as e:
        raise _http_error(e)
    return deposit


@router.post("/deposits/{deposit_id}/status", response_model=DepositResponse, responses=REFUSALS)
def change_deposit_status(
    deposit_id: str,
    data: DepositStatusChange,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: EmailNotifier = Depends(get_notifier)
):
    """
    Verify or reject a deposit.

    WILL REFUSE if:
    - The caller deposited it
    - The caller is not an administrator
    - The deposit is no longer pending
    - Rejecting without a reason (422)
    """
    deposit = _load(db, FundDeposit, deposit_id, current_user)
    previous = deposit.status.value

    sm = StateMachine(db)
    try:
        sm.change_status(
            deposit,
            data.status,
            current_user,
            note=data.note,
            expected_status=data.expected_status,
            rejection_reason=data.rejection_reason,
        )
    except TreasuryError as e:
        raise _http_error(e)
    background_tasks.add_task(
        notifier.notify,
        NotificationType.DEPOSIT_STATUS_CHANGE,
        deposit.id,
        previousStatus=previous,
        newStatus=data.status.value,
        changedByUserId=current_user.id,
    )
    return deposit


@router.post("/deposits/{deposit_id}/notes", response_model=AuditEntryResponse,
             status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def add_deposit_note(
    deposit_id: str,
    data: NoteCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    deposit = _load(db, FundDeposit, deposit_id, current_user)
    sm = StateMachine(db)
    try:
        return sm.add_note(deposit, current_user, data.note)
    except TreasuryError as e:
        raise _http_error(e)


@router.delete("/deposits/{deposit_id}", status_code=status.HTTP_204_NO_CONTENT, responses=REFUSALS)
def delete_deposit(
    deposit_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    blob_store: LocalBlobStore = Depends(get_blob_store)
):
    deposit = _load(db, FundDeposit, deposit_id, current_user)
    sm = StateMachine(db)
    try:
        sm.delete_record(deposit, current_user, blob_store)
    except TreasuryError as e:
        raise _http_error(e)


# Attachment endpoints
def _upload(db, model, record_id, current_user, file, category, line_item, blob_store):
    record = _load(db, model, record_id, current_user)
    data = file.file.read()

    sm = StateMachine(db)
    try:
        return sm.add_attachment(
            record, current_user, category, file.filename or "upload", data, blob_store,
            line_item_position=line_item,
        )
    except TreasuryError as e:
        raise _http_error(e)


@router.post("/reimbursements/{reimbursement_id}/attachments", response_model=AttachmentResponse,
             status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def upload_reimbursement_attachment(
    reimbursement_id: str,
    file: UploadFile = File(...),
    category: AttachmentCategory = Form(AttachmentCategory.RECEIPT),
    line_item: Optional[int] = Form(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    blob_store: LocalBlobStore = Depends(get_blob_store)
):
    """
    Attach a file to a reimbursement.

    Pass `line_item` (1-based position) to make the file that line's receipt.
    """
    return _upload(db, Reimbursement, reimbursement_id, current_user, file, category, line_item, blob_store)


@router.post("/deposits/{deposit_id}/attachments", response_model=AttachmentResponse,
             status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def upload_deposit_attachment(
    deposit_id: str,
    file: UploadFile = File(...),
    category: AttachmentCategory = Form(AttachmentCategory.OTHER),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    blob_store: LocalBlobStore = Depends(get_blob_store)
):
    return _upload(db, FundDeposit, deposit_id, current_user, file, category, None, blob_store)


@router.delete("/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT, responses=REFUSALS)
def delete_attachment(
    attachment_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    blob_store: LocalBlobStore = Depends(get_blob_store)
):
    attachment = db.query(Attachment).filter(Attachment.id == attachment_id).first()
    if not attachment:
        raise _http_error(RecordNotFoundError("Attachment", attachment_id))
    record = attachment.record
    _load(db, type(record), record.id, current_user)

    sm = StateMachine(db)
    try:
        sm.remove_attachment(attachment, current_user, blob_store)
    except TreasuryError as e:
        raise _http_error(e)


# Migration endpoints
@router.post("/migration/preview", response_model=List[MigrationItemResponse])
def preview_migration(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    blob_store: LocalBlobStore = Depends(get_blob_store)
):
    """Legacy file references and the paths they would move to. Nothing is changed."""
    _require_admin(current_user)
    return MigrationService(db, blob_store).preview()


@router.post("/migration/migrate", response_model=MigrationResultResponse)
def run_migration(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    blob_store: LocalBlobStore = Depends(get_blob_store)
):
    _require_admin(current_user)
    return MigrationService(db, blob_store).migrate().to_dict()
