"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from treasury.models.enums import (
    AttachmentCategory,
    Department,
    DepositMethod,
    DepositStatus,
    IeeeDepositSource,
    ReimbursementStatus,
    Role,
)


# User schemas
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    role: Role = Role.MEMBER


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: Role
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Shared record schemas
class AuditEntryResponse(BaseModel):
    sequence: int
    action: str
    actor_id: str
    actor_name: Optional[str]
    note: Optional[str]
    previous_data: Optional[Dict[str, Any]]
    new_data: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AttachmentResponse(BaseModel):
    id: int
    category: AttachmentCategory
    path: str
    filename: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NoteCreate(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)


class StatsResponse(BaseModel):
    """Counts per status and the settled amount for the records in view."""
    total: int
    by_status: Dict[str, int]
    settled_status: str
    settled_amount: Decimal


# Reimbursement schemas
class LineItemIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    category: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    receipt: Optional[str] = None


class LineItemResponse(BaseModel):
    id: int
    position: int
    description: str
    category: str
    amount: Decimal
    receipt: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class ReimbursementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    date_of_purchase: date
    payment_method: str = Field(..., min_length=1, max_length=100)
    department: Department
    business_purpose: str = Field(..., min_length=1)
    line_items: List[LineItemIn] = Field(..., min_length=1)
    additional_info: Optional[str] = None
    location: Optional[str] = None
    vendor: Optional[str] = None


class ReimbursementUpdate(BaseModel):
    """Only the fields present in the request body are changed."""
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    date_of_purchase: Optional[date] = None
    payment_method: Optional[str] = Field(None, min_length=1, max_length=100)
    department: Optional[Department] = None
    business_purpose: Optional[str] = Field(None, min_length=1)
    line_items: Optional[List[LineItemIn]] = Field(None, min_length=1)
    additional_info: Optional[str] = None
    location: Optional[str] = None
    vendor: Optional[str] = None


class ReimbursementResponse(BaseModel):
    id: str
    title: str
    total_amount: Decimal
    date_of_purchase: date
    payment_method: str
    department: Department
    business_purpose: str
    additional_info: Optional[str]
    location: Optional[str]
    vendor: Optional[str]
    status: ReimbursementStatus
    submitted_by: str
    requested_auditor_id: Optional[str]
    payment_confirmation: Optional[str]
    created_at: datetime
    updated_at: datetime
    line_items: List[LineItemResponse] = []
    attachments: List[AttachmentResponse] = []
    audit_log: List[AuditEntryResponse] = []

    model_config = ConfigDict(from_attributes=True)


class ReimbursementStatusChange(BaseModel):
    status: ReimbursementStatus
    note: Optional[str] = Field(None, max_length=2000)
    expected_status: Optional[ReimbursementStatus] = None
    payment_confirmation: Optional[str] = Field(None, max_length=200)


class AuditRequestCreate(BaseModel):
    auditor_id: str
    note: Optional[str] = Field(None, max_length=2000)
    expected_status: Optional[ReimbursementStatus] = None


# Fund deposit schemas
class DepositCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    deposit_date: date
    deposit_method: DepositMethod
    purpose: str = Field(..., min_length=1)
    description: Optional[str] = None
    other_deposit_method: Optional[str] = None
    reference_number: Optional[str] = None
    is_ieee_deposit: bool = False
    ieee_deposit_source: Optional[IeeeDepositSource] = None


class DepositUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    deposit_date: Optional[date] = None
    deposit_method: Optional[DepositMethod] = None
    purpose: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    other_deposit_method: Optional[str] = None
    reference_number: Optional[str] = None
    is_ieee_deposit: Optional[bool] = None
    ieee_deposit_source: Optional[IeeeDepositSource] = None


class DepositResponse(BaseModel):
    id: str
    title: str
    amount: Decimal
    deposit_date: date
    deposit_method: DepositMethod
    other_deposit_method: Optional[str]
    purpose: str
    description: Optional[str]
    reference_number: Optional[str]
    is_ieee_deposit: bool
    ieee_deposit_source: Optional[IeeeDepositSource]
    status: DepositStatus
    deposited_by: str
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]
    rejection_reason: Optional[str]
    review_note: Optional[str]
    created_at: datetime
    updated_at: datetime
    attachments: List[AttachmentResponse] = []
    audit_log: List[AuditEntryResponse] = []

    model_config = ConfigDict(from_attributes=True)


class DepositStatusChange(BaseModel):
    status: DepositStatus
    note: Optional[str] = Field(None, max_length=2000)
    expected_status: Optional[DepositStatus] = None
    rejection_reason: Optional[str] = Field(None, max_length=2000)


# Migration schemas
class MigrationItemResponse(BaseModel):
    kind: str
    record_id: str
    category: str
    field: str
    old_path: str
    new_path: str
    attachment_id: Optional[int] = None
    line_item_id: Optional[int] = None


class MigrationResultResponse(BaseModel):
    success: bool
    migrated_files: int
    skipped_files: int
    updated_records: int
    errors: List[str] = []


# Error response
class ErrorResponse(BaseModel):
    """Body of every refused or failed request (under `detail`)."""
    code: str
    message: str
    details: Dict[str, Any] = {}
