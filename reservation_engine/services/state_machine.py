"""
Status transition engine for reservations.

This is the only writer of Reservation.status - every status change MUST go
through StatusTransitionService.transition (or bulk_transition), which writes
the status snapshot, one StatusHistoryEntry and one AuditLogEntry in a single
transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from reservation_engine.models.domain import Reservation, StatusHistoryEntry
from reservation_engine.models.enums import ReservationStatus, TransitionOriginKind, UserRole
from reservation_engine.services.audit_ledger import AuditLedger
from reservation_engine.services.cache import StatusCache, StatusSnapshot
from reservation_engine.services.collaborators import (
    PropertyScope,
    ReservationStatusChanged,
    StatusChangeNotifier,
    publish_safely,
)
from reservation_engine.services.errors import (
    ConcurrentModificationError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from reservation_engine.timeutils import utcnow

logger = logging.getLogger(__name__)

S = ReservationStatus

ALLOWED_TRANSITIONS: Dict[ReservationStatus, FrozenSet[ReservationStatus]] = {
    S.CONFIRMATION_PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.CHECKIN_DUE, S.IN_HOUSE, S.NO_SHOW, S.CANCELLED}),
    S.CHECKIN_DUE: frozenset({S.IN_HOUSE, S.NO_SHOW, S.CANCELLED}),
    S.IN_HOUSE: frozenset({S.CHECKOUT_DUE, S.CHECKED_OUT}),
    S.CHECKOUT_DUE: frozenset({S.CHECKED_OUT}),
    S.CHECKED_OUT: frozenset(),
    S.NO_SHOW: frozenset(),
    S.CANCELLED: frozenset(),
}

# Edges that skip a required gate; only an approved request may take them
GATED_TRANSITIONS: FrozenSet[Tuple[ReservationStatus, ReservationStatus]] = frozenset({
    (S.CONFIRMATION_PENDING, S.IN_HOUSE),
    (S.CONFIRMATION_PENDING, S.CHECKIN_DUE),
})

ROLE_RESTRICTED_TARGETS: Dict[UserRole, FrozenSet[ReservationStatus]] = {
    UserRole.HOUSEKEEPING: frozenset({S.CANCELLED}),
}

REASON_REQUIRED_TARGETS = frozenset({S.CANCELLED, S.NO_SHOW})
MAX_REASON_LENGTH = 500


@dataclass(frozen=True)
class Manual:
    """A user pressed the button."""
    actor_id: str

    kind = TransitionOriginKind.MANUAL

    @property
    def changed_by(self) -> Optional[str]:
        return self.actor_id


@dataclass(frozen=True)
class Automatic:
    """The scheduler decided; nobody is credited."""

    kind = TransitionOriginKind.AUTOMATIC

    @property
    def changed_by(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class ApprovalGranted:
    """A manager approved a pending request; the approver is credited."""
    approval_id: int
    approver_id: str

    kind = TransitionOriginKind.APPROVAL_GRANTED

    @property
    def changed_by(self) -> Optional[str]:
        return self.approver_id


TransitionOrigin = Union[Manual, Automatic, ApprovalGranted]


@dataclass
class TransitionResult:
    reservation_id: int
    previous_status: ReservationStatus
    new_status: ReservationStatus
    changed: bool
    changed_at: Optional[datetime] = None
    history_entry_id: Optional[int] = None


def allowed_next_statuses(status: ReservationStatus) -> FrozenSet[ReservationStatus]:
    return ALLOWED_TRANSITIONS[ReservationStatus(status)]


def is_final_status(status: ReservationStatus) -> bool:
    return not ALLOWED_TRANSITIONS[ReservationStatus(status)]


class StatusTransitionService:
    """Validates and executes reservation status changes."""

    def __init__(
        self,
        db: Session,
        notifier: Optional[StatusChangeNotifier] = None,
        cache: Optional[StatusCache] = None,
        clock: Callable[[], datetime] = utcnow,
        bulk_limit: int = 100
    ):
        self.db = db
        self.notifier = notifier
        self.cache = cache
        self.clock = clock
        self.bulk_limit = bulk_limit
        self.ledger = AuditLedger(db)

    def validate_transition(
        self,
        current: ReservationStatus,
        target: ReservationStatus,
        origin: TransitionOrigin
    ) -> None:
        """
        Raise InvalidTransitionError unless current -> target is a legal edge.

        Gated edges are legal only for an ApprovalGranted origin.
        """
        if target in ALLOWED_TRANSITIONS[current]:
            return
        if (current, target) in GATED_TRANSITIONS:
            if isinstance(origin, ApprovalGranted):
                return
            raise InvalidTransitionError(
                f"Cannot transition from {current.value} to {target.value} "
                f"without an approved early check-in request",
                {"current_status": current.value, "target_status": target.value}
            )
        if is_final_status(current):
            message = f"{current.value} is a final status; no further transitions are allowed"
        else:
            message = f"Cannot transition from {current.value} to {target.value}"
        raise InvalidTransitionError(
            message,
            {"current_status": current.value, "target_status": target.value}
        )

    def transition(
        self,
        scope: PropertyScope,
        reservation_id: int,
        target_status: Union[ReservationStatus, str],
        origin: TransitionOrigin,
        reason: Optional[str] = None
    ) -> TransitionResult:
        """
        Move a reservation to target_status.

        Same-status requests are a no-op: nothing is written and no error is
        raised. On success the status snapshot, one history row and one audit
        row commit together; a lost optimistic race raises
        ConcurrentModificationError and writes nothing.
        """
        target = self._coerce_status(target_status)
        reason = self._clean_reason(reason, target, origin)
        self._check_origin(scope, origin, target)

        reservation = self._load(scope, reservation_id)
        previous = reservation.status

        if previous == target:
            logger.debug("Reservation %s already %s; nothing to do", reservation_id, target.value)
            return TransitionResult(reservation.id, previous, target, changed=False)

        try:
            self.validate_transition(previous, target, origin)
        except InvalidTransitionError:
            logger.info(
                "Refused transition of reservation %s: %s -> %s",
                reservation_id, previous.value, target.value
            )
            raise

        try:
            history = self._apply(reservation, previous, target, origin, reason)
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            self._invalidate(reservation_id)
            logger.warning(
                "Concurrent modification of reservation %s while moving to %s",
                reservation_id, target.value
            )
            raise ConcurrentModificationError(
                "Reservation status changed while this update was in progress; reload and retry",
                {"reservation_id": reservation_id, "target_status": target.value}
            ) from exc
        except Exception:
            self.db.rollback()
            raise

        result = TransitionResult(
            reservation_id=reservation.id,
            previous_status=previous,
            new_status=target,
            changed=True,
            changed_at=history.changed_at,
            history_entry_id=history.id
        )
        self._after_commit(reservation, result, origin, reason)
        return result

    def bulk_transition(
        self,
        scope: PropertyScope,
        reservation_ids: Iterable[int],
        target_status: Union[ReservationStatus, str],
        origin: TransitionOrigin,
        reason: Optional[str] = None
    ) -> List[TransitionResult]:
        """
        Move many reservations at once, all or nothing.

        Every reservation is validated before anything is written; any missing,
        foreign or illegal one fails the whole call with per-id details.
        """
        ids = list(dict.fromkeys(reservation_ids))
        if not ids:
            raise ValidationError("reservation_ids must not be empty")
        if len(ids) > self.bulk_limit:
            raise ValidationError(f"Cannot update more than {self.bulk_limit} reservations at once")

        target = self._coerce_status(target_status)
        reason = self._clean_reason(reason or "Bulk status update", target, origin)
        self._check_origin(scope, origin, target)

        reservations = self.db.query(Reservation).filter(Reservation.id.in_(ids)).all()
        found = {r.id: r for r in reservations}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError("Some reservations were not found", {"missing_ids": missing})
        foreign = [r.id for r in reservations if r.property_id != scope.property_id]
        if foreign:
            raise ForbiddenError("Some reservations belong to another property", {"reservation_ids": foreign})

        invalid = []
        for reservation_id in ids:
            current = found[reservation_id].status
            if current == target:
                continue
            try:
                self.validate_transition(current, target, origin)
            except InvalidTransitionError as exc:
                invalid.append({
                    "reservation_id": reservation_id,
                    "current_status": current.value,
                    "reason": exc.message,
                })
        if invalid:
            raise InvalidTransitionError(
                "Some status transitions are not allowed",
                {"invalid_transitions": invalid}
            )

        results = []
        applied = []
        try:
            for reservation_id in ids:
                reservation = found[reservation_id]
                previous = reservation.status
                if previous == target:
                    results.append(TransitionResult(reservation_id, previous, target, changed=False))
                    continue
                history = self._apply(reservation, previous, target, origin, reason)
                result = TransitionResult(
                    reservation_id, previous, target, changed=True,
                    changed_at=history.changed_at, history_entry_id=history.id
                )
                results.append(result)
                applied.append((reservation, result))
            self.db.commit()
        except StaleDataError as exc:
            self.db.rollback()
            for reservation_id in ids:
                self._invalidate(reservation_id)
            raise ConcurrentModificationError(
                "One or more reservations changed during the bulk update; reload and retry",
                {"reservation_ids": ids}
            ) from exc
        except Exception:
            self.db.rollback()
            raise

        for reservation, result in applied:
            self._after_commit(reservation, result, origin, reason)
        logger.info(
            "Bulk transition to %s: %s updated, %s unchanged",
            target.value, len(applied), len(results) - len(applied)
        )
        return results

    def get_status(self, scope: PropertyScope, reservation_id: int) -> StatusSnapshot:
        """Current status snapshot, read through the status cache."""
        if self.cache is not None:
            cached = self.cache.get(reservation_id)
            if cached is not None:
                if cached.property_id != scope.property_id:
                    raise ForbiddenError("Reservation belongs to another property")
                return cached
            token = self.cache.token()
        reservation = self._load(scope, reservation_id)
        snapshot = StatusSnapshot(
            reservation_id=reservation.id,
            property_id=reservation.property_id,
            status=reservation.status,
            status_updated_at=reservation.status_updated_at,
            status_updated_by=reservation.status_updated_by,
            status_change_reason=reservation.status_change_reason,
            version=reservation.version
        )
        if self.cache is not None:
            # Dropped if a write invalidated this reservation during the read
            self.cache.put(snapshot, token)
        return snapshot

    def _apply(
        self,
        reservation: Reservation,
        previous: ReservationStatus,
        target: ReservationStatus,
        origin: TransitionOrigin,
        reason: Optional[str]
    ) -> StatusHistoryEntry:
        """Stage the status write and both ledger rows; the caller commits."""
        changed_at = self._next_changed_at(reservation.id)
        approval_id = origin.approval_id if isinstance(origin, ApprovalGranted) else None

        reservation.status = target
        reservation.status_updated_by = origin.changed_by
        reservation.status_updated_at = changed_at
        reservation.status_change_reason = reason
        if target == S.IN_HOUSE and reservation.checked_in_at is None:
            reservation.checked_in_at = changed_at
        if target == S.CHECKED_OUT:
            reservation.checked_out_at = changed_at

        history = StatusHistoryEntry(
            reservation_id=reservation.id,
            property_id=reservation.property_id,
            previous_status=previous,
            new_status=target,
            changed_by=origin.changed_by,
            change_reason=reason,
            changed_at=changed_at,
            is_automatic=isinstance(origin, Automatic),
            origin=origin.kind,
            approval_request_id=approval_id
        )
        self.db.add(history)

        # Flushes the reservation UPDATE too; a stale version raises here
        self.ledger.log_status_change(
            reservation,
            previous,
            target,
            changed_by=origin.changed_by,
            reason=reason,
            origin=origin.kind,
            changed_at=changed_at,
            approval_request_id=approval_id
        )
        return history

    def _next_changed_at(self, reservation_id: int) -> datetime:
        # History must be strictly ordered per reservation, even under a frozen clock
        now = self.clock()
        latest = self.db.query(func.max(StatusHistoryEntry.changed_at)).filter(
            StatusHistoryEntry.reservation_id == reservation_id
        ).scalar()
        if latest is not None and now <= latest:
            return latest + timedelta(microseconds=1)
        return now

    def _after_commit(
        self,
        reservation: Reservation,
        result: TransitionResult,
        origin: TransitionOrigin,
        reason: Optional[str]
    ) -> None:
        self._invalidate(result.reservation_id)
        logger.info(
            "Reservation %s: %s -> %s (%s)",
            result.reservation_id, result.previous_status.value,
            result.new_status.value, origin.kind.value
        )
        publish_safely(self.notifier, ReservationStatusChanged(
            reservation_id=result.reservation_id,
            property_id=reservation.property_id,
            previous_status=result.previous_status,
            new_status=result.new_status,
            changed_by=origin.changed_by,
            reason=reason,
            is_automatic=isinstance(origin, Automatic),
            changed_at=result.changed_at
        ))

    def _invalidate(self, reservation_id: int) -> None:
        if self.cache is not None:
            self.cache.invalidate(reservation_id)

    def _load(self, scope: PropertyScope, reservation_id: int) -> Reservation:
        reservation = self.db.query(Reservation).filter(Reservation.id == reservation_id).first()
        if reservation is None:
            raise NotFoundError("Reservation not found", {"reservation_id": reservation_id})
        if reservation.property_id != scope.property_id:
            raise ForbiddenError(
                "Reservation belongs to another property",
                {"reservation_id": reservation_id}
            )
        return reservation

    @staticmethod
    def _coerce_status(value: Union[ReservationStatus, str]) -> ReservationStatus:
        try:
            return ReservationStatus(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown reservation status: {value}") from exc

    @staticmethod
    def _clean_reason(
        reason: Optional[str],
        target: ReservationStatus,
        origin: TransitionOrigin
    ) -> Optional[str]:
        reason = reason.strip() if reason else None
        if reason and len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason must be at most {MAX_REASON_LENGTH} characters")
        if not reason and isinstance(origin, Manual) and target in REASON_REQUIRED_TARGETS:
            raise ValidationError(f"A reason is required to mark a reservation {target.value}")
        return reason

    @staticmethod
    def _check_origin(scope: PropertyScope, origin: TransitionOrigin, target: ReservationStatus) -> None:
        if isinstance(origin, Automatic) and scope.role != UserRole.SYSTEM:
            raise ForbiddenError("Automatic transitions are reserved for the scheduler")
        if isinstance(origin, ApprovalGranted) and not (scope.is_manager or scope.role == UserRole.SYSTEM):
            raise ForbiddenError("Only a manager can apply an approved request")
        if isinstance(origin, Manual) and not origin.actor_id:
            raise ValidationError("Manual transitions need an actor")
        if target in ROLE_RESTRICTED_TARGETS.get(scope.role, frozenset()):
            raise ForbiddenError(
                f"Role {scope.role.value} may not move reservations to {target.value}",
                {"role": scope.role.value, "target_status": target.value}
            )
