"""API routes for the reservation lifecycle engine."""
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from reservation_engine.api.deps import (
    get_approval_service,
    get_scheduler,
    get_scope,
    get_transition_service,
    to_http_error,
)
from reservation_engine.api.schemas import (
    ApprovalCreate,
    ApprovalDecision,
    ApprovalResponse,
    AuditLogResponse,
    AutomationSettingsUpdate,
    BulkTransitionRequest,
    BulkTransitionResponse,
    DayBoundaryResponse,
    DecisionResponse,
    ErrorResponse,
    NoteCreate,
    NoteResponse,
    NoteUpdate,
    PaginatedApprovals,
    PaginatedAuditLog,
    PaginatedStatusHistory,
    ScanReportResponse,
    StatusHistoryResponse,
    StatusResponse,
    TransitionRequest,
    TransitionResponse,
)
from reservation_engine.database import get_db
from reservation_engine.models.domain import Reservation
from reservation_engine.models.enums import ApprovalStatus
from reservation_engine.services.approvals import ApprovalService
from reservation_engine.services.audit_ledger import AuditLedger
from reservation_engine.services.automation_settings import AutomationSettingsData, AutomationSettingsService
from reservation_engine.services.collaborators import PropertyScope
from reservation_engine.services.day_boundary import DayBoundaryValidator
from reservation_engine.services.errors import (
    ForbiddenError,
    NotFoundError,
    ReservationEngineError,
)
from reservation_engine.services.scheduler import AutomationScheduler
from reservation_engine.services.state_machine import Manual, StatusTransitionService
from reservation_engine.settings import get_settings

router = APIRouter()

REFUSALS = {
    403: {"model": ErrorResponse, "description": "Scope or role refusal"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "Illegal transition, decided request or lost race"},
}


def _reservation_in_scope(db: Session, scope: PropertyScope, reservation_id: int) -> Reservation:
    reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
    if not reservation:
        raise to_http_error(NotFoundError("Reservation not found", {"reservation_id": reservation_id}))
    if reservation.property_id != scope.property_id:
        raise to_http_error(ForbiddenError("Reservation belongs to another property"))
    return reservation


def _require_manager(scope: PropertyScope) -> None:
    if not scope.is_manager:
        raise to_http_error(ForbiddenError("Manager role required", {"role": scope.role.value}))


def _require_actor(scope: PropertyScope) -> str:
    if not scope.actor_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Actor-Id header is required")
    return scope.actor_id


# Status endpoints
@router.post("/reservations/{reservation_id}/status", response_model=TransitionResponse, responses=REFUSALS)
def transition_status(
    reservation_id: int,
    data: TransitionRequest,
    scope: PropertyScope = Depends(get_scope),
    engine: StatusTransitionService = Depends(get_transition_service)
):
    """
    Change a reservation's status.

    Same-status requests succeed with changed=false. A lost race returns 409
    CONCURRENT_MODIFICATION; the caller reloads and retries.
    """
    actor = _require_actor(scope)
    try:
        return engine.transition(scope, reservation_id, data.status, Manual(actor), data.reason)
    except ReservationEngineError as e:
        raise to_http_error(e)


@router.post("/reservations/status/bulk", response_model=BulkTransitionResponse, responses=REFUSALS)
def bulk_transition_status(
    data: BulkTransitionRequest,
    scope: PropertyScope = Depends(get_scope),
    engine: StatusTransitionService = Depends(get_transition_service)
):
    """Change many reservations at once. Nothing is written unless every one is valid."""
    actor = _require_actor(scope)
    try:
        results = engine.bulk_transition(scope, data.reservation_ids, data.status, Manual(actor), data.reason)
    except ReservationEngineError as e:
        raise to_http_error(e)
    return BulkTransitionResponse(
        updated=sum(1 for r in results if r.changed),
        results=[TransitionResponse.model_validate(r) for r in results]
    )


@router.get("/reservations/{reservation_id}/status", response_model=StatusResponse, responses=REFUSALS)
def get_status(
    reservation_id: int,
    scope: PropertyScope = Depends(get_scope),
    engine: StatusTransitionService = Depends(get_transition_service)
):
    try:
        return engine.get_status(scope, reservation_id)
    except ReservationEngineError as e:
        raise to_http_error(e)


@router.get("/reservations/{reservation_id}/history", response_model=PaginatedStatusHistory, responses=REFUSALS)
def get_status_history(
    reservation_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    include_automatic: bool = True,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    """Status history, newest first."""
    _reservation_in_scope(db, scope, reservation_id)
    page = AuditLedger(db).get_status_history(reservation_id, limit, offset, include_automatic)
    return PaginatedStatusHistory(
        items=[StatusHistoryResponse.model_validate(e) for e in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more
    )


@router.get("/reservations/{reservation_id}/audit-log", response_model=PaginatedAuditLog, responses=REFUSALS)
def get_audit_log(
    reservation_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    _reservation_in_scope(db, scope, reservation_id)
    page = AuditLedger(db).get_audit_log(reservation_id, limit, offset)
    return PaginatedAuditLog(
        items=[AuditLogResponse.model_validate(e) for e in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more
    )


# Note endpoints
@router.get("/reservations/{reservation_id}/notes", response_model=List[NoteResponse], responses=REFUSALS)
def list_notes(
    reservation_id: int,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    _reservation_in_scope(db, scope, reservation_id)
    return AuditLedger(db).current_notes(reservation_id)


@router.post(
    "/reservations/{reservation_id}/notes",
    response_model=NoteResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS
)
def add_note(
    reservation_id: int,
    data: NoteCreate,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    reservation = _reservation_in_scope(db, scope, reservation_id)
    ledger = AuditLedger(db)
    try:
        entry = ledger.add_note(reservation, data.content, _require_actor(scope), data.note_type, data.important)
    except ReservationEngineError as e:
        raise to_http_error(e)
    return _note_view(ledger, reservation_id, entry.id)


@router.put("/reservations/{reservation_id}/notes/{note_id}", response_model=NoteResponse, responses=REFUSALS)
def edit_note(
    reservation_id: int,
    note_id: int,
    data: NoteUpdate,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    """Edit a note. The previous text stays in the audit log."""
    reservation = _reservation_in_scope(db, scope, reservation_id)
    ledger = AuditLedger(db)
    try:
        ledger.edit_note(reservation, note_id, data.content, _require_actor(scope))
    except ReservationEngineError as e:
        raise to_http_error(e)
    return _note_view(ledger, reservation_id, note_id)


@router.delete(
    "/reservations/{reservation_id}/notes/{note_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=REFUSALS
)
def delete_note(
    reservation_id: int,
    note_id: int,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    reservation = _reservation_in_scope(db, scope, reservation_id)
    try:
        AuditLedger(db).delete_note(reservation, note_id, _require_actor(scope))
    except ReservationEngineError as e:
        raise to_http_error(e)


@router.get(
    "/reservations/{reservation_id}/notes/{note_id}/history",
    response_model=List[AuditLogResponse],
    responses=REFUSALS
)
def get_note_history(
    reservation_id: int,
    note_id: int,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    _reservation_in_scope(db, scope, reservation_id)
    try:
        return [AuditLogResponse.model_validate(e) for e in AuditLedger(db).note_history(reservation_id, note_id)]
    except ReservationEngineError as e:
        raise to_http_error(e)


def _note_view(ledger: AuditLedger, reservation_id: int, note_id: int):
    for note in ledger.current_notes(reservation_id):
        if note.note_id == note_id:
            return note
    raise to_http_error(NotFoundError("Note not found", {"note_id": note_id}))


# Approval endpoints
@router.post(
    "/approvals",
    response_model=ApprovalResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS
)
def request_approval(
    data: ApprovalCreate,
    scope: PropertyScope = Depends(get_scope),
    approvals: ApprovalService = Depends(get_approval_service)
):
    """Ask a manager to approve a sensitive transition. The reservation is not changed."""
    try:
        return approvals.request_approval(
            scope, data.reservation_id, data.request_type, data.reason, data.metadata
        )
    except ReservationEngineError as e:
        raise to_http_error(e)


@router.get("/approvals", response_model=PaginatedApprovals, responses=REFUSALS)
def list_approvals(
    status_filter: Optional[ApprovalStatus] = Query(ApprovalStatus.PENDING, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    scope: PropertyScope = Depends(get_scope),
    approvals: ApprovalService = Depends(get_approval_service)
):
    try:
        page = approvals.list_requests(scope, status_filter, limit, offset)
    except ReservationEngineError as e:
        raise to_http_error(e)
    return PaginatedApprovals(
        items=[ApprovalResponse.model_validate(r) for r in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more
    )


@router.post("/approvals/{request_id}/decision", response_model=DecisionResponse, responses=REFUSALS)
def decide_approval(
    request_id: int,
    data: ApprovalDecision,
    scope: PropertyScope = Depends(get_scope),
    approvals: ApprovalService = Depends(get_approval_service)
):
    """
    Approve or reject a pending request.

    An approved early check-in is applied immediately. If applying it fails the
    approval stands and the failure is returned in transition_error.
    """
    try:
        result = approvals.decide(scope, request_id, data.decision, data.notes)
    except ReservationEngineError as e:
        raise to_http_error(e)
    return DecisionResponse.model_validate(result)


# Day boundary endpoints
@router.get("/day-boundary", response_model=DayBoundaryResponse, responses=REFUSALS)
def validate_day_boundary(
    timezone: Optional[str] = None,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    """Issues that block or complicate advancing the property's operational day."""
    timezone = timezone or AutomationSettingsService(db).get(scope.property_id).timezone
    validator = DayBoundaryValidator(db, start_hour=get_settings().operational_day_start_hour)
    try:
        return validator.validate_day_boundary(scope.property_id, timezone)
    except ReservationEngineError as e:
        raise to_http_error(e)


@router.get("/day-boundary/{operational_date}", response_model=DayBoundaryResponse, responses=REFUSALS)
def issues_for_date(
    operational_date: date,
    timezone: Optional[str] = None,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    timezone = timezone or AutomationSettingsService(db).get(scope.property_id).timezone
    validator = DayBoundaryValidator(db, start_hour=get_settings().operational_day_start_hour)
    try:
        return validator.issues_for_date(scope.property_id, operational_date, timezone)
    except ReservationEngineError as e:
        raise to_http_error(e)


# Automation endpoints
@router.get("/automation/settings", response_model=AutomationSettingsData)
def get_automation_settings(
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    return AutomationSettingsService(db).get(scope.property_id)


@router.put("/automation/settings", response_model=AutomationSettingsData, responses=REFUSALS)
def update_automation_settings(
    data: AutomationSettingsUpdate,
    scope: PropertyScope = Depends(get_scope),
    db: Session = Depends(get_db)
):
    """Partially update the property's automation rules. Managers only."""
    _require_manager(scope)
    try:
        return AutomationSettingsService(db).upsert(scope.property_id, data.model_dump(exclude_unset=True))
    except ReservationEngineError as e:
        raise to_http_error(e)


@router.post("/automation/scan", response_model=ScanReportResponse, responses=REFUSALS)
def trigger_scan(
    dry_run: bool = False,
    scope: PropertyScope = Depends(get_scope),
    scheduler: AutomationScheduler = Depends(get_scheduler)
):
    """Run the automatic transition jobs for the caller's property now."""
    _require_manager(scope)
    return scheduler.run_scan(scope.property_id, dry_run=dry_run).to_dict()
