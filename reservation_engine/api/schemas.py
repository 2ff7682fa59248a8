"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from reservation_engine.models.enums import (
    ApprovalRequestType,
    ApprovalStatus,
    AuditAction,
    ConfirmationPendingAction,
    IssueSeverity,
    IssueType,
    LateCheckoutFeeType,
    ReservationStatus,
    TransitionOriginKind,
)


# Transition schemas
class TransitionRequest(BaseModel):
    status: ReservationStatus
    reason: Optional[str] = Field(None, max_length=500)


class BulkTransitionRequest(BaseModel):
    reservation_ids: List[int] = Field(..., min_length=1)
    status: ReservationStatus
    reason: Optional[str] = Field(None, max_length=500)


class TransitionResponse(BaseModel):
    reservation_id: int
    previous_status: ReservationStatus
    new_status: ReservationStatus
    changed: bool
    changed_at: Optional[datetime]
    history_entry_id: Optional[int]

    model_config = ConfigDict(from_attributes=True)


class BulkTransitionResponse(BaseModel):
    updated: int
    results: List[TransitionResponse]


class StatusResponse(BaseModel):
    reservation_id: int
    property_id: str
    status: ReservationStatus
    status_updated_at: datetime
    status_updated_by: Optional[str]
    status_change_reason: Optional[str]
    version: int

    model_config = ConfigDict(from_attributes=True)


# Ledger schemas
class StatusHistoryResponse(BaseModel):
    id: int
    reservation_id: int
    previous_status: Optional[ReservationStatus]
    new_status: ReservationStatus
    changed_by: Optional[str]
    change_reason: Optional[str]
    changed_at: datetime
    is_automatic: bool
    origin: TransitionOriginKind
    approval_request_id: Optional[int]

    model_config = ConfigDict(from_attributes=True)


class AuditLogResponse(BaseModel):
    id: int
    reservation_id: int
    action: AuditAction
    field_name: Optional[str]
    old_value: Optional[str]
    new_value: Optional[str]
    description: Optional[str]
    changed_by: Optional[str]
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_json")
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaginatedStatusHistory(BaseModel):
    items: List[StatusHistoryResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class PaginatedAuditLog(BaseModel):
    items: List[AuditLogResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


# Note schemas
class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)
    note_type: str = "INTERNAL"
    important: bool = False


class NoteUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=5000)


class NoteResponse(BaseModel):
    note_id: int
    reservation_id: int
    content: str
    author: Optional[str]
    created_at: datetime
    updated_at: datetime
    edited_by: Optional[str]
    edit_count: int
    note_type: str
    important: bool

    model_config = ConfigDict(from_attributes=True)


# Approval schemas
class ApprovalCreate(BaseModel):
    reservation_id: int
    request_type: ApprovalRequestType
    reason: str = Field(..., min_length=1, max_length=500)
    metadata: Optional[Dict[str, Any]] = None


class ApprovalDecision(BaseModel):
    decision: ApprovalStatus
    notes: Optional[str] = Field(None, max_length=1000)


class ApprovalResponse(BaseModel):
    id: int
    reservation_id: int
    property_id: str
    request_type: ApprovalRequestType
    request_reason: str
    requested_by: str
    requested_at: datetime
    status: ApprovalStatus
    approved_by: Optional[str]
    approved_at: Optional[datetime]
    approval_notes: Optional[str]
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_json")

    model_config = ConfigDict(from_attributes=True)


class DecisionResponse(BaseModel):
    request: ApprovalResponse
    transition: Optional[TransitionResponse] = None
    transition_error: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(from_attributes=True)


class PaginatedApprovals(BaseModel):
    items: List[ApprovalResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


# Day boundary schemas
class DayBoundaryIssueResponse(BaseModel):
    type: IssueType
    severity: IssueSeverity
    reservation_id: int
    guest_name: str
    room_id: str
    check_out: datetime
    message: str
    suggested_action: str

    model_config = ConfigDict(from_attributes=True)


class DayBoundaryResponse(BaseModel):
    property_id: str
    can_transition: bool
    issues: List[DayBoundaryIssueResponse]
    timestamp: datetime
    operational_date: Optional[date] = None
    critical_count: int
    warning_count: int

    model_config = ConfigDict(from_attributes=True)


# Automation settings schemas
class AutomationSettingsUpdate(BaseModel):
    """Partial update: only the fields sent are changed."""
    timezone: Optional[str] = None
    check_in_time: Optional[str] = None
    check_out_time: Optional[str] = None
    no_show_grace_hours: Optional[int] = None
    no_show_lookback_days: Optional[int] = None
    enable_no_show_detection: Optional[bool] = None
    late_checkout_grace_hours: Optional[int] = None
    late_checkout_lookback_days: Optional[int] = None
    late_checkout_fee: Optional[float] = None
    late_checkout_fee_type: Optional[LateCheckoutFeeType] = None
    enable_late_checkout_detection: Optional[bool] = None
    confirmation_pending_timeout_hours: Optional[int] = None
    confirmation_pending_action: Optional[ConfirmationPendingAction] = None
    enable_confirmation_expiry: Optional[bool] = None
    audit_log_retention_days: Optional[int] = None

    model_config = ConfigDict(extra="forbid")


# Scheduler schemas
class JobResultResponse(BaseModel):
    job: str
    examined: int
    transitioned: int
    failed: int
    skipped: int
    errors: List[str]
    reservation_ids: List[int]


class ScanReportResponse(BaseModel):
    property_id: str
    started_at: datetime
    dry_run: bool
    skipped: bool
    total_failed: int
    jobs: List[JobResultResponse]


# Error schema
class ErrorDetail(BaseModel):
    """Refusal code and message; refusal-specific keys sit alongside them."""
    code: str
    message: str

    model_config = ConfigDict(extra="allow")


class ErrorResponse(BaseModel):
    detail: ErrorDetail
