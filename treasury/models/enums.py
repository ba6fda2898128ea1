"""Enums for the treasury - these define the valid values for roles, statuses and categories."""
from enum import Enum


class Role(str, Enum):
    """Member roles as stored on the user profile."""
    MEMBER = "Member"
    GENERAL_OFFICER = "General Officer"
    EXECUTIVE_OFFICER = "Executive Officer"
    MEMBER_AT_LARGE = "Member at Large"
    PAST_OFFICER = "Past Officer"
    SPONSOR = "Sponsor"
    ADMINISTRATOR = "Administrator"


class RecordKind(str, Enum):
    """The two kinds of money-moving requests."""
    REIMBURSEMENT = "reimbursement"
    DEPOSIT = "deposit"


class ReimbursementStatus(str, Enum):
    """
    submitted → under_review → approved → paid
         └──────────┴──→ declined / paid
    """
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    DECLINED = "declined"
    PAID = "paid"


class DepositStatus(str, Enum):
    """pending → verified | rejected"""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class Department(str, Enum):
    GENERAL = "general"
    INTERNAL = "internal"
    EXTERNAL = "external"
    PROJECTS = "projects"
    EVENTS = "events"
    OTHER = "other"


class DepositMethod(str, Enum):
    CASH = "cash"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class IeeeDepositSource(str, Enum):
    """Where an IEEE-originated deposit came from."""
    UPP = "upp"
    SECTION = "section"
    REGION = "region"
    GLOBAL = "global"
    SOCIETY = "society"
    OTHER = "other"


class AttachmentCategory(str, Enum):
    RECEIPT = "receipt"
    BANK_TRANSFER = "bank_transfer"
    PAYMENT_PROOF = "payment_proof"
    OTHER = "other"
