"""
Audit log embedded in every reimbursement and fund deposit.

Entries are append-only: once flushed they are never edited. Deleting a
record through the administrative delete action removes its log with it.
"""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint, event, func
from sqlalchemy.orm import relationship

from treasury.database import Base


class AuditEntry(Base):
    """
    Immutable history entry for one accepted mutation.

    Invariants:
    - Exactly one of reimbursement_id / deposit_id is set
    - sequence is the append position within its record's log
    - created_at is assigned by the database clock, never the client
    """
    __tablename__ = "audit_entries"
    __table_args__ = (
        UniqueConstraint("reimbursement_id", "sequence"),
        UniqueConstraint("deposit_id", "sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    reimbursement_id = Column(String, ForeignKey("reimbursements.id"), nullable=True, index=True)
    deposit_id = Column(String, ForeignKey("fund_deposits.id"), nullable=True, index=True)
    sequence = Column(Integer, nullable=False)

    action = Column(String, nullable=False)
    actor_id = Column(String, nullable=False)
    actor_name = Column(String, nullable=True)
    note = Column(Text, nullable=True)
    previous_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    reimbursement = relationship("Reimbursement", back_populates="audit_log")
    deposit = relationship("FundDeposit", back_populates="audit_log")


@event.listens_for(AuditEntry, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError(
        f"IMMUTABILITY VIOLATION: audit entry {target.id} cannot be modified"
    )


class AuditAction:
    """Action names written to the audit log."""
    SUBMITTED = "submitted"
    EDITED = "edited"
    NOTE_ADDED = "note_added"
    AUDIT_REQUESTED = "audit_requested"
    ATTACHMENT_ADDED = "attachment_added"
    ATTACHMENT_REMOVED = "attachment_removed"
    # Status changes are logged under the new status value
    # (approved, declined, paid, under_review, verified, rejected).
