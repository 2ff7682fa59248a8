"""Enums for the reservation lifecycle - these define the valid values for states and actions."""
from enum import Enum


class ReservationStatus(str, Enum):
    """The eight states a Reservation can be in, ordered by typical lifecycle."""
    CONFIRMATION_PENDING = "CONFIRMATION_PENDING"
    CONFIRMED = "CONFIRMED"
    CHECKIN_DUE = "CHECKIN_DUE"
    IN_HOUSE = "IN_HOUSE"
    CHECKOUT_DUE = "CHECKOUT_DUE"
    CHECKED_OUT = "CHECKED_OUT"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Owned by the payment collaborator; read-only here."""
    UNPAID = "UNPAID"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class TransitionOriginKind(str, Enum):
    MANUAL = "MANUAL"
    AUTOMATIC = "AUTOMATIC"
    APPROVAL_GRANTED = "APPROVAL_GRANTED"


class AuditAction(str, Enum):
    """Ledger entry kinds."""
    CREATED = "CREATED"
    FIELD_UPDATED = "FIELD_UPDATED"
    NOTE_ADDED = "NOTE_ADDED"
    NOTE_EDITED = "NOTE_EDITED"
    NOTE_DELETED = "NOTE_DELETED"
    PAYMENT_MADE = "PAYMENT_MADE"
    ADDON_ADDED = "ADDON_ADDED"
    ADDON_REMOVED = "ADDON_REMOVED"
    LATE_FEE_ASSESSED = "LATE_FEE_ASSESSED"
    CONFIRMATION_EXPIRED = "CONFIRMATION_EXPIRED"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    APPROVAL_DECIDED = "APPROVAL_DECIDED"


class ApprovalRequestType(str, Enum):
    EARLY_CHECKIN = "EARLY_CHECKIN"
    LATE_CHECKOUT = "LATE_CHECKOUT"
    STATUS_OVERRIDE = "STATUS_OVERRIDE"


class ApprovalStatus(str, Enum):
    """PENDING is the only non-terminal state."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class LateCheckoutFeeType(str, Enum):
    FLAT_RATE = "FLAT_RATE"
    HOURLY = "HOURLY"
    PERCENTAGE_OF_ROOM_RATE = "PERCENTAGE_OF_ROOM_RATE"
    PERCENTAGE_OF_TOTAL_BILL = "PERCENTAGE_OF_TOTAL_BILL"


class ConfirmationPendingAction(str, Enum):
    """What the scheduler does with an expired CONFIRMATION_PENDING reservation."""
    CANCEL = "CANCEL"
    FLAG = "FLAG"


class UserRole(str, Enum):
    """Roles handed to the core by the tenant context."""
    SUPER_ADMIN = "SUPER_ADMIN"
    ORG_ADMIN = "ORG_ADMIN"
    PROPERTY_MGR = "PROPERTY_MGR"
    FRONT_DESK = "FRONT_DESK"
    HOUSEKEEPING = "HOUSEKEEPING"
    SYSTEM = "SYSTEM"


class IssueType(str, Enum):
    PARTIAL_PAYMENT = "PARTIAL_PAYMENT"
    CHECKOUT_DUE_NOT_COMPLETED = "CHECKOUT_DUE_NOT_COMPLETED"
    CHECKOUT_DUE_TODAY = "CHECKOUT_DUE_TODAY"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
