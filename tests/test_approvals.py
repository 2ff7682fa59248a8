"""
Tests that prove the approval gate invariants.
"""
import pytest

from reservation_engine.models.audit import AuditLogEntry
from reservation_engine.models.domain import ApprovalRequest, Reservation, StatusHistoryEntry
from reservation_engine.models.enums import (
    ApprovalRequestType,
    ApprovalStatus,
    AuditAction,
    ReservationStatus,
    TransitionOriginKind,
    UserRole,
)
from reservation_engine.services.approvals import ApprovalService
from reservation_engine.services.collaborators import PropertyScope
from reservation_engine.services.errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from reservation_engine.services.state_machine import StatusTransitionService

S = ReservationStatus


@pytest.fixture
def approvals(db_session, transition_service):
    return ApprovalService(db_session, transition_service)


def _history(db, reservation_id):
    return db.query(StatusHistoryEntry).filter(StatusHistoryEntry.reservation_id == reservation_id).all()


class TestRequestApproval:
    """Requests are persisted without touching the reservation."""

    def test_request_is_pending_and_status_untouched(self, db_session, approvals, front_desk, make_reservation):
        reservation = make_reservation(status=S.CONFIRMATION_PENDING)

        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN,
            "Guest arrived at 9am", {"newStatus": "IN_HOUSE"}
        )

        db_session.refresh(reservation)
        assert request.status == ApprovalStatus.PENDING
        assert request.requested_by == "desk-1"
        assert reservation.status == S.CONFIRMATION_PENDING
        assert _history(db_session, reservation.id) == []
        logged = db_session.query(AuditLogEntry).filter(
            AuditLogEntry.action == AuditAction.APPROVAL_REQUESTED
        ).all()
        assert len(logged) == 1

    def test_reason_required(self, approvals, front_desk, make_reservation):
        reservation = make_reservation()

        with pytest.raises(ValidationError):
            approvals.request_approval(front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN, "  ")

    def test_invalid_target_status_rejected(self, approvals, front_desk, make_reservation):
        reservation = make_reservation()

        with pytest.raises(ValidationError):
            approvals.request_approval(
                front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN,
                "Early", {"newStatus": "UPGRADED"}
            )

    def test_missing_reservation(self, approvals, front_desk):
        with pytest.raises(NotFoundError):
            approvals.request_approval(front_desk, 999, ApprovalRequestType.EARLY_CHECKIN, "Early")


class TestDecide:
    """Deciding is manager-only, happens once, and applies early check-ins."""

    def test_approved_early_checkin_moves_guest_in_house(
        self, db_session, approvals, front_desk, manager, make_reservation
    ):
        """
        INVARIANT: Approving EARLY_CHECKIN sets APPROVED and moves the reservation to
        IN_HOUSE with the approver recorded as changed_by.
        """
        reservation = make_reservation(status=S.CONFIRMATION_PENDING)
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN,
            "Guest arrived at 9am", {"newStatus": "IN_HOUSE"}
        )

        result = approvals.decide(manager, request.id, ApprovalStatus.APPROVED, "Room is ready")

        db_session.refresh(reservation)
        history = _history(db_session, reservation.id)
        assert result.request.status == ApprovalStatus.APPROVED
        assert result.request.approved_by == "mgr-1"
        assert result.request.approved_at is not None
        assert result.transition_error is None
        assert reservation.status == S.IN_HOUSE
        assert len(history) == 1
        assert history[0].changed_by == "mgr-1"
        assert history[0].change_reason == "Early check-in approved by mgr-1"
        assert history[0].origin == TransitionOriginKind.APPROVAL_GRANTED
        assert history[0].approval_request_id == request.id

    def test_metadata_reason_used_when_present(self, db_session, approvals, front_desk, manager, make_reservation):
        reservation = make_reservation(status=S.CONFIRMED)
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN,
            "Flight landed early", {"newStatus": "IN_HOUSE", "reason": "VIP early arrival"}
        )

        approvals.decide(manager, request.id, ApprovalStatus.APPROVED)

        assert _history(db_session, reservation.id)[0].change_reason == "VIP early arrival"

    def test_rejection_leaves_reservation_alone(self, db_session, approvals, front_desk, manager, make_reservation):
        reservation = make_reservation(status=S.CONFIRMATION_PENDING)
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN, "Early"
        )

        result = approvals.decide(manager, request.id, ApprovalStatus.REJECTED, "Room not ready")

        db_session.refresh(reservation)
        assert result.request.status == ApprovalStatus.REJECTED
        assert result.transition is None
        assert reservation.status == S.CONFIRMATION_PENDING

    def test_second_decision_is_invalid_state(self, approvals, front_desk, manager, make_reservation):
        """
        INVARIANT: A decided request cannot be decided again.
        """
        reservation = make_reservation(status=S.CONFIRMED)
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.LATE_CHECKOUT, "Flight at 6pm"
        )
        approvals.decide(manager, request.id, ApprovalStatus.APPROVED)

        with pytest.raises(InvalidStateError):
            approvals.decide(manager, request.id, ApprovalStatus.REJECTED)

    def test_simultaneous_deciders_only_one_wins(
        self, session_factory, approvals, front_desk, make_reservation, fixed_now
    ):
        reservation = make_reservation(status=S.CONFIRMED)
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.STATUS_OVERRIDE, "Override"
        )
        first_manager = PropertyScope("prop-1", "mgr-1", UserRole.PROPERTY_MGR)
        second_manager = PropertyScope("prop-1", "mgr-2", UserRole.ORG_ADMIN)
        session_a = session_factory()
        session_b = session_factory()
        try:
            gate_a = ApprovalService(session_a, StatusTransitionService(session_a, clock=lambda: fixed_now))
            gate_b = ApprovalService(session_b, StatusTransitionService(session_b, clock=lambda: fixed_now))
            # Both see the request as PENDING before either decides
            session_a.get(ApprovalRequest, request.id)
            session_b.get(ApprovalRequest, request.id)

            gate_a.decide(first_manager, request.id, ApprovalStatus.APPROVED)
            with pytest.raises(InvalidStateError):
                gate_b.decide(second_manager, request.id, ApprovalStatus.REJECTED)
        finally:
            session_a.close()
            session_b.close()

        check = session_factory()
        try:
            stored = check.get(ApprovalRequest, request.id)
            assert stored.status == ApprovalStatus.APPROVED
            assert stored.approved_by == "mgr-1"
            decided = check.query(AuditLogEntry).filter(
                AuditLogEntry.action == AuditAction.APPROVAL_DECIDED
            ).count()
            assert decided == 1
        finally:
            check.close()

    def test_downstream_failure_keeps_approval(self, db_session, approvals, front_desk, manager, make_reservation):
        """
        INVARIANT: If applying the approved transition fails, the approval still stands.
        """
        reservation = make_reservation(status=S.CONFIRMED)
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN, "Early", {"newStatus": "IN_HOUSE"}
        )
        # Guest cancels before the manager gets to it
        reservation.status = S.CANCELLED
        db_session.commit()

        result = approvals.decide(manager, request.id, ApprovalStatus.APPROVED)

        db_session.refresh(reservation)
        stored = db_session.get(ApprovalRequest, request.id)
        assert stored.status == ApprovalStatus.APPROVED
        assert result.transition is None
        assert result.transition_error["code"] == "INVALID_TRANSITION"
        assert reservation.status == S.CANCELLED

    def test_non_manager_cannot_decide(self, approvals, front_desk, make_reservation):
        reservation = make_reservation()
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN, "Early"
        )

        with pytest.raises(ForbiddenError):
            approvals.decide(front_desk, request.id, ApprovalStatus.APPROVED)

    def test_pending_is_not_a_decision(self, approvals, front_desk, manager, make_reservation):
        reservation = make_reservation()
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN, "Early"
        )

        with pytest.raises(ValidationError):
            approvals.decide(manager, request.id, ApprovalStatus.PENDING)

    def test_other_property_forbidden(self, approvals, front_desk, make_reservation):
        reservation = make_reservation()
        request = approvals.request_approval(
            front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN, "Early"
        )
        outsider = PropertyScope("prop-2", "mgr-9", UserRole.PROPERTY_MGR)

        with pytest.raises(ForbiddenError):
            approvals.decide(outsider, request.id, ApprovalStatus.APPROVED)


class TestListRequests:
    def test_pending_requests_newest_first(self, approvals, front_desk, manager, make_reservation):
        reservation = make_reservation()
        first = approvals.request_approval(front_desk, reservation.id, ApprovalRequestType.EARLY_CHECKIN, "One")
        second = approvals.request_approval(front_desk, reservation.id, ApprovalRequestType.LATE_CHECKOUT, "Two")
        decided = approvals.request_approval(front_desk, reservation.id, ApprovalRequestType.STATUS_OVERRIDE, "Three")
        approvals.decide(manager, decided.id, ApprovalStatus.REJECTED)

        page = approvals.list_requests(manager)

        assert page.total == 2
        assert [r.id for r in page.items] == [second.id, first.id]

    def test_front_desk_cannot_list(self, approvals, front_desk):
        with pytest.raises(ForbiddenError):
            approvals.list_requests(front_desk)
