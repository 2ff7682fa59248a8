"""
Approval gate for sensitive transitions.

A request is persisted as PENDING and never touches the reservation status.
Deciding it is a single conditional update, so two managers deciding the same
request at once cannot both win. An approved early check-in is then applied
through the transition engine; if that fails the approval still stands.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from reservation_engine.models.domain import ApprovalRequest, Reservation
from reservation_engine.models.enums import (
    ApprovalRequestType,
    ApprovalStatus,
    AuditAction,
    ReservationStatus,
)
from reservation_engine.services.audit_ledger import AuditLedger, Page, validate_page
from reservation_engine.services.collaborators import PropertyScope
from reservation_engine.services.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ReservationEngineError,
    ValidationError,
)
from reservation_engine.services.state_machine import (
    MAX_REASON_LENGTH,
    ApprovalGranted,
    StatusTransitionService,
    TransitionResult,
)
from reservation_engine.timeutils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_EARLY_CHECKIN_STATUS = ReservationStatus.IN_HOUSE


@dataclass
class DecisionResult:
    request: ApprovalRequest
    transition: Optional[TransitionResult] = None
    transition_error: Optional[Dict[str, Any]] = None


class ApprovalService:
    """Creates, lists and decides approval requests."""

    def __init__(self, db: Session, engine: StatusTransitionService):
        self.db = db
        self.engine = engine
        self.ledger = AuditLedger(db)

    def request_approval(
        self,
        scope: PropertyScope,
        reservation_id: int,
        request_type: Union[ApprovalRequestType, str],
        reason: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ApprovalRequest:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to request approval")
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
        if not scope.actor_id:
            raise ValidationError("Approval requests need a requesting user")
        try:
            request_type = ApprovalRequestType(request_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown approval request type: {request_type}") from exc

        metadata = dict(metadata or {})
        if metadata.get("newStatus") is not None:
            try:
                metadata["newStatus"] = ReservationStatus(metadata["newStatus"]).value
            except ValueError as exc:
                raise ValidationError(
                    f"Unknown reservation status in metadata: {metadata['newStatus']}"
                ) from exc

        reservation = self._load_reservation(scope, reservation_id)

        request = ApprovalRequest(
            reservation_id=reservation.id,
            property_id=reservation.property_id,
            request_type=request_type,
            request_reason=reason,
            requested_by=scope.actor_id,
            requested_at=utcnow(),
            status=ApprovalStatus.PENDING,
            metadata_json=metadata or None
        )
        self.db.add(request)
        self.db.flush()
        self.ledger.record(
            reservation.id,
            reservation.property_id,
            AuditAction.APPROVAL_REQUESTED,
            description=f"{request_type.value} approval requested: {reason}",
            changed_by=scope.actor_id,
            metadata={"approval_request_id": request.id, "request_type": request_type.value}
        )
        self.db.commit()
        logger.info(
            "Approval request %s (%s) created for reservation %s",
            request.id, request_type.value, reservation.id
        )
        return request

    def decide(
        self,
        scope: PropertyScope,
        request_id: int,
        decision: Union[ApprovalStatus, str],
        notes: Optional[str] = None
    ) -> DecisionResult:
        """
        Approve or reject a pending request.

        The decision commits before any downstream transition runs; a failure
        there is logged and reported in ``transition_error``.
        """
        if not scope.is_manager:
            raise ForbiddenError("Only managers can decide approval requests", {"role": scope.role.value})
        if not scope.actor_id:
            raise ValidationError("Approval decisions need a deciding user")
        try:
            decision = ApprovalStatus(decision)
        except ValueError as exc:
            raise ValidationError(f"Unknown decision: {decision}") from exc
        if decision == ApprovalStatus.PENDING:
            raise ValidationError("Decision must be APPROVED or REJECTED")

        request = self.db.get(ApprovalRequest, request_id)
        if request is None:
            raise NotFoundError("Approval request not found", {"request_id": request_id})
        if request.property_id != scope.property_id:
            raise ForbiddenError("Approval request belongs to another property", {"request_id": request_id})

        decided_at = utcnow()
        updated = self.db.query(ApprovalRequest).filter(
            ApprovalRequest.id == request_id,
            ApprovalRequest.status == ApprovalStatus.PENDING
        ).update(
            {
                ApprovalRequest.status: decision,
                ApprovalRequest.approved_by: scope.actor_id,
                ApprovalRequest.approved_at: decided_at,
                ApprovalRequest.approval_notes: notes,
            },
            synchronize_session=False
        )
        if updated == 0:
            self.db.rollback()
            current = self.db.get(ApprovalRequest, request_id)
            raise InvalidStateError(
                "Approval request has already been decided",
                {"request_id": request_id, "status": current.status.value if current else None}
            )

        self.ledger.record(
            request.reservation_id,
            request.property_id,
            AuditAction.APPROVAL_DECIDED,
            description=f"{request.request_type.value} request {decision.value.lower()}",
            new_value=decision,
            changed_by=scope.actor_id,
            metadata={"approval_request_id": request_id, "notes": notes},
            changed_at=decided_at
        )
        self.db.commit()
        self.db.refresh(request)
        logger.info(
            "Approval request %s %s by %s",
            request_id, decision.value, scope.actor_id
        )

        result = DecisionResult(request=request)
        if decision == ApprovalStatus.APPROVED and request.request_type == ApprovalRequestType.EARLY_CHECKIN:
            self._apply_early_checkin(scope, request, result)
        return result

    def list_requests(
        self,
        scope: PropertyScope,
        status: Optional[Union[ApprovalStatus, str]] = ApprovalStatus.PENDING,
        limit: int = 50,
        offset: int = 0
    ) -> Page[ApprovalRequest]:
        if not scope.is_manager:
            raise ForbiddenError("Only managers can list approval requests", {"role": scope.role.value})
        validate_page(limit, offset)
        query = self.db.query(ApprovalRequest).filter(ApprovalRequest.property_id == scope.property_id)
        if status is not None:
            try:
                query = query.filter(ApprovalRequest.status == ApprovalStatus(status))
            except ValueError as exc:
                raise ValidationError(f"Unknown approval status: {status}") from exc
        total = query.count()
        items = query.order_by(
            ApprovalRequest.requested_at.desc(),
            ApprovalRequest.id.desc()
        ).offset(offset).limit(limit).all()
        return Page(items=items, total=total, limit=limit, offset=offset)

    def _apply_early_checkin(
        self,
        scope: PropertyScope,
        request: ApprovalRequest,
        result: DecisionResult
    ) -> None:
        metadata = request.metadata_json or {}
        target = metadata.get("newStatus") or DEFAULT_EARLY_CHECKIN_STATUS
        reason = metadata.get("reason") or f"Early check-in approved by {scope.actor_id}"
        try:
            result.transition = self.engine.transition(
                scope,
                request.reservation_id,
                target,
                ApprovalGranted(approval_id=request.id, approver_id=scope.actor_id),
                reason
            )
        except ReservationEngineError as exc:
            logger.error(
                "Approved request %s could not be applied to reservation %s: %s",
                request.id, request.reservation_id, exc.message
            )
            result.transition_error = exc.to_dict()
        except Exception as exc:
            logger.exception(
                "Approved request %s could not be applied to reservation %s",
                request.id, request.reservation_id
            )
            result.transition_error = {"code": "INTERNAL_ERROR", "message": str(exc)}

    def _load_reservation(self, scope: PropertyScope, reservation_id: int) -> Reservation:
        reservation = self.db.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found", {"reservation_id": reservation_id})
        if reservation.property_id != scope.property_id:
            raise ForbiddenError("Reservation belongs to another property", {"reservation_id": reservation_id})
        return reservation
