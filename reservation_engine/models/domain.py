"""Domain models - reservations, their status history, approval requests and automation settings."""
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
)
from sqlalchemy.orm import relationship, validates

from reservation_engine.database import Base
from reservation_engine.models.enums import (
    ApprovalRequestType,
    ApprovalStatus,
    ConfirmationPendingAction,
    LateCheckoutFeeType,
    PaymentStatus,
    ReservationStatus,
    TransitionOriginKind,
)
from reservation_engine.timeutils import utcnow


class Reservation(Base):
    """
    One guest stay for one room at one property.

    Invariants enforced here:
    - status is never null and always one of the ReservationStatus values
    - check_out > check_in
    - version is bumped on every flush; a stale writer fails instead of clobbering

    status is written only by StatusTransitionService.
    """
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("check_out > check_in", name="ck_reservations_stay_window"),
        Index("ix_reservations_property_status", "property_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    property_id = Column(String, nullable=False, index=True)
    room_id = Column(String, nullable=False)
    guest_name = Column(String, nullable=True)

    # Stay window, naive UTC
    check_in = Column(DateTime, nullable=False)
    check_out = Column(DateTime, nullable=False)

    status = Column(
        SQLEnum(ReservationStatus),
        nullable=False,
        default=ReservationStatus.CONFIRMATION_PENDING
    )
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.UNPAID)

    # Inputs for percentage-based late fees
    room_rate_cents = Column(Integer, nullable=False, default=0)
    total_amount_cents = Column(Integer, nullable=False, default=0)

    # Denormalized snapshot of the last transition
    status_updated_by = Column(String, nullable=True)
    status_updated_at = Column(DateTime, nullable=False, default=utcnow)
    status_change_reason = Column(String, nullable=True)

    checked_in_at = Column(DateTime, nullable=True)
    checked_out_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    status_history = relationship(
        "StatusHistoryEntry",
        back_populates="reservation",
        order_by="StatusHistoryEntry.changed_at.desc()"
    )
    approval_requests = relationship("ApprovalRequest", back_populates="reservation")

    @validates("check_in", "check_out")
    def _validate_stay_window(self, key, value):
        other = self.check_out if key == "check_in" else self.check_in
        if value is not None and other is not None:
            check_in, check_out = (value, other) if key == "check_in" else (other, value)
            if check_out <= check_in:
                raise ValueError("check_out must be after check_in")
        return value

    @validates("status")
    def _validate_status(self, key, value):
        if value is None:
            raise ValueError("Reservation status cannot be null")
        return ReservationStatus(value)

    def __repr__(self) -> str:
        return f"<Reservation id={self.id} property={self.property_id!r} status={self.status}>"


class StatusHistoryEntry(Base):
    """
    One row per status transition.

    Invariants:
    - Created only as a side effect of a successful transition
    - Never updated or deleted
    - changed_by is null for automatic transitions
    """
    __tablename__ = "reservation_status_history"
    __table_args__ = (
        Index("ix_status_history_reservation_changed", "reservation_id", "changed_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False)
    property_id = Column(String, nullable=False)

    previous_status = Column(SQLEnum(ReservationStatus), nullable=True)
    new_status = Column(SQLEnum(ReservationStatus), nullable=False)

    changed_by = Column(String, nullable=True)
    change_reason = Column(String, nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utcnow)

    is_automatic = Column(Boolean, nullable=False, default=False)
    origin = Column(SQLEnum(TransitionOriginKind), nullable=False)
    approval_request_id = Column(Integer, ForeignKey("approval_requests.id"), nullable=True)

    reservation = relationship("Reservation", back_populates="status_history")


class ApprovalRequest(Base):
    """
    A sensitive transition waiting for a manager.

    Invariants:
    - PENDING -> APPROVED | REJECTED, both terminal
    - approved_by / approved_at are set exactly when the request leaves PENDING
    - metadata carries the target status and reason applied on approval
    """
    __tablename__ = "approval_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    property_id = Column(String, nullable=False, index=True)

    request_type = Column(SQLEnum(ApprovalRequestType), nullable=False)
    request_reason = Column(String, nullable=False)
    requested_by = Column(String, nullable=False)
    requested_at = Column(DateTime, nullable=False, default=utcnow)

    status = Column(SQLEnum(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING)
    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approval_notes = Column(String, nullable=True)

    metadata_json = Column("metadata", JSON, nullable=True)

    reservation = relationship("Reservation", back_populates="approval_requests")


class PropertyAutomationSettings(Base):
    """Per-property overrides of the automation defaults."""
    __tablename__ = "property_automation_settings"

    property_id = Column(String, primary_key=True)
    timezone = Column(String, nullable=False, default="UTC")

    check_in_time = Column(String, nullable=False, default="15:00")
    check_out_time = Column(String, nullable=False, default="11:00")

    no_show_grace_hours = Column(Integer, nullable=False, default=6)
    no_show_lookback_days = Column(Integer, nullable=False, default=3)
    enable_no_show_detection = Column(Boolean, nullable=False, default=True)

    late_checkout_grace_hours = Column(Integer, nullable=False, default=1)
    late_checkout_lookback_days = Column(Integer, nullable=False, default=2)
    # Cents for FLAT_RATE / HOURLY, percent for the PERCENTAGE_* types
    late_checkout_fee = Column(Float, nullable=False, default=0)
    late_checkout_fee_type = Column(
        SQLEnum(LateCheckoutFeeType),
        nullable=False,
        default=LateCheckoutFeeType.FLAT_RATE
    )
    enable_late_checkout_detection = Column(Boolean, nullable=False, default=True)

    confirmation_pending_timeout_hours = Column(Integer, nullable=False, default=6)
    confirmation_pending_action = Column(
        SQLEnum(ConfirmationPendingAction),
        nullable=False,
        default=ConfirmationPendingAction.CANCEL
    )
    enable_confirmation_expiry = Column(Boolean, nullable=False, default=True)

    audit_log_retention_days = Column(Integer, nullable=False, default=90)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
