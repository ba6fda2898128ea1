"""Domain models - user profiles, reimbursements, fund deposits and their attachments."""
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from treasury.database import Base
from treasury.models.enums import (
    AttachmentCategory,
    Department,
    DepositMethod,
    DepositStatus,
    IeeeDepositSource,
    RecordKind,
    ReimbursementStatus,
    Role,
)


def generate_id() -> str:
    """Opaque store-generated identifier."""
    return uuid.uuid4().hex


class User(Base):
    """Per-user profile consulted for identity and role."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    role = Column(SQLEnum(Role), nullable=False, default=Role.MEMBER)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    @property
    def display_name(self) -> str:
        return self.name or self.email or "Unknown User"


class Reimbursement(Base):
    """
    A request to be paid back for purchases made on the branch's behalf.

    Invariants:
    - submitted_by never changes after creation
    - total_amount always equals the sum of line item amounts
    - status only moves forward along the transition table
    """
    __tablename__ = "reimbursements"
    kind = RecordKind.REIMBURSEMENT

    id = Column(String, primary_key=True, default=generate_id)
    title = Column(String, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    date_of_purchase = Column(Date, nullable=False)
    payment_method = Column(String, nullable=False)
    department = Column(SQLEnum(Department), nullable=False)
    business_purpose = Column(Text, nullable=False)
    additional_info = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    status = Column(SQLEnum(ReimbursementStatus), nullable=False, default=ReimbursementStatus.SUBMITTED)

    submitted_by = Column(String, ForeignKey("users.id"), nullable=False)
    requested_auditor_id = Column(String, ForeignKey("users.id"), nullable=True)
    payment_confirmation = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    submitter = relationship("User", foreign_keys=[submitted_by])
    line_items = relationship(
        "LineItem",
        back_populates="reimbursement",
        order_by="LineItem.position",
        cascade="all, delete-orphan",
    )
    attachments = relationship(
        "Attachment",
        back_populates="reimbursement",
        order_by="Attachment.id",
        cascade="all, delete-orphan",
    )
    audit_log = relationship(
        "AuditEntry",
        back_populates="reimbursement",
        order_by="AuditEntry.sequence",
        cascade="all, delete-orphan",
    )

    @property
    def owner_id(self) -> str:
        return self.submitted_by

    @property
    def amount(self):
        return self.total_amount


class LineItem(Base):
    """One expense on a reimbursement, optionally backed by a receipt file."""
    __tablename__ = "line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reimbursement_id = Column(String, ForeignKey("reimbursements.id"), nullable=False)
    position = Column(Integer, nullable=False)
    description = Column(String, nullable=False)
    category = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    receipt = Column(String, nullable=True)  # Storage path

    reimbursement = relationship("Reimbursement", back_populates="line_items")


class FundDeposit(Base):
    """
    Money deposited into the branch account, waiting on verification.

    Invariants:
    - deposited_by never changes after creation
    - rejection_reason is set whenever status is rejected
    """
    __tablename__ = "fund_deposits"
    kind = RecordKind.DEPOSIT

    id = Column(String, primary_key=True, default=generate_id)
    title = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    deposit_date = Column(Date, nullable=False)
    deposit_method = Column(SQLEnum(DepositMethod), nullable=False)
    other_deposit_method = Column(String, nullable=True)
    purpose = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    reference_number = Column(String, nullable=True)
    is_ieee_deposit = Column(Boolean, nullable=False, default=False)
    ieee_deposit_source = Column(SQLEnum(IeeeDepositSource), nullable=True)
    status = Column(SQLEnum(DepositStatus), nullable=False, default=DepositStatus.PENDING)

    deposited_by = Column(String, ForeignKey("users.id"), nullable=False)
    reviewed_by = Column(String, ForeignKey("users.id"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    review_note = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    depositor = relationship("User", foreign_keys=[deposited_by])
    attachments = relationship(
        "Attachment",
        back_populates="deposit",
        order_by="Attachment.id",
        cascade="all, delete-orphan",
    )
    audit_log = relationship(
        "AuditEntry",
        back_populates="deposit",
        order_by="AuditEntry.sequence",
        cascade="all, delete-orphan",
    )

    @property
    def owner_id(self) -> str:
        return self.deposited_by


class Attachment(Base):
    """A file in the blob store referenced by a record."""
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reimbursement_id = Column(String, ForeignKey("reimbursements.id"), nullable=True)
    deposit_id = Column(String, ForeignKey("fund_deposits.id"), nullable=True)
    category = Column(SQLEnum(AttachmentCategory), nullable=False)
    path = Column(String, nullable=False)
    filename = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    reimbursement = relationship("Reimbursement", back_populates="attachments")
    deposit = relationship("FundDeposit", back_populates="attachments")

    @property
    def record(self):
        return self.reimbursement if self.reimbursement is not None else self.deposit
