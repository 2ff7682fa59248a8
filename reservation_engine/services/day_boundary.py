"""
Day-boundary validator.

Before a property's operational day advances, report the reservations that
would be left in an inconsistent state. Read-only: nothing here writes.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from reservation_engine.models.domain import Reservation
from reservation_engine.models.enums import IssueSeverity, IssueType, PaymentStatus, ReservationStatus
from reservation_engine.services.errors import ValidationError
from reservation_engine.timeutils import (
    current_and_previous_windows,
    operational_day_window,
    resolve_timezone,
    utcnow,
)

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {IssueSeverity.CRITICAL: 0, IssueSeverity.WARNING: 1}


@dataclass
class DayBoundaryIssue:
    type: IssueType
    severity: IssueSeverity
    reservation_id: int
    guest_name: str
    room_id: str
    check_out: datetime
    message: str
    suggested_action: str


@dataclass
class DayBoundaryResult:
    property_id: str
    can_transition: bool
    issues: List[DayBoundaryIssue]
    timestamp: datetime
    operational_date: Optional[date] = None
    critical_count: int = field(init=False)
    warning_count: int = field(init=False)

    def __post_init__(self):
        self.critical_count = sum(1 for i in self.issues if i.severity == IssueSeverity.CRITICAL)
        self.warning_count = len(self.issues) - self.critical_count


def _sort_key(issue: DayBoundaryIssue):
    return (SEVERITY_ORDER[issue.severity], (issue.guest_name or "").casefold(), issue.reservation_id)


class DayBoundaryValidator:
    """Finds reservations that block or complicate the next operational day."""

    def __init__(self, db: Session, start_hour: int = 6):
        self.db = db
        self.start_hour = start_hour

    def validate_day_boundary(
        self,
        property_id: str,
        timezone: str,
        now: Optional[datetime] = None
    ) -> DayBoundaryResult:
        """
        Scan the current and previous operational days of a property.

        Any issue, warning or critical, means the day cannot advance yet.
        """
        now = now or utcnow()
        self._check_timezone(timezone)
        today, yesterday = current_and_previous_windows(now, timezone, self.start_hour)

        issues = self._scan(property_id, today, yesterday)
        issues.sort(key=_sort_key)
        result = DayBoundaryResult(
            property_id=property_id,
            can_transition=not issues,
            issues=issues,
            timestamp=now
        )
        logger.info(
            "Day boundary check for property %s: %s critical, %s warnings",
            property_id, result.critical_count, result.warning_count
        )
        return result

    def issues_for_date(
        self,
        property_id: str,
        operational_date: date,
        timezone: str
    ) -> DayBoundaryResult:
        """The same scan, anchored on a given operational date instead of now."""
        self._check_timezone(timezone)
        today = operational_day_window(operational_date, timezone, self.start_hour)
        yesterday = operational_day_window(operational_date - timedelta(days=1), timezone, self.start_hour)
        issues = self._scan(property_id, today, yesterday)
        issues.sort(key=_sort_key)
        return DayBoundaryResult(
            property_id=property_id,
            can_transition=not issues,
            issues=issues,
            timestamp=utcnow(),
            operational_date=operational_date
        )

    def _scan(
        self,
        property_id: str,
        today: Tuple[datetime, datetime],
        yesterday: Tuple[datetime, datetime]
    ) -> List[DayBoundaryIssue]:
        issues = []

        partially_paid = self._checking_out(property_id, ReservationStatus.IN_HOUSE, yesterday).filter(
            Reservation.payment_status == PaymentStatus.PARTIALLY_PAID
        ).all()
        for reservation in partially_paid:
            issues.append(self._issue(
                reservation,
                IssueType.PARTIAL_PAYMENT,
                IssueSeverity.WARNING,
                "Guest was due out yesterday and the stay is only partially paid",
                "Collect the remaining balance or record the payment"
            ))

        overdue = self._checking_out(property_id, ReservationStatus.CHECKOUT_DUE, yesterday).all()
        for reservation in overdue:
            issues.append(self._issue(
                reservation,
                IssueType.CHECKOUT_DUE_NOT_COMPLETED,
                IssueSeverity.CRITICAL,
                "Checkout was due yesterday but has not been completed",
                "Complete the checkout before advancing the day"
            ))

        due_today = self._checking_out(property_id, ReservationStatus.CHECKOUT_DUE, today).all()
        for reservation in due_today:
            issues.append(self._issue(
                reservation,
                IssueType.CHECKOUT_DUE_TODAY,
                IssueSeverity.WARNING,
                "Checkout is due today",
                "Follow up with the guest about checkout"
            ))

        return issues

    def _checking_out(
        self,
        property_id: str,
        status: ReservationStatus,
        window: Tuple[datetime, datetime]
    ):
        start, end = window
        return self.db.query(Reservation).filter(
            Reservation.property_id == property_id,
            Reservation.status == status,
            Reservation.check_out >= start,
            Reservation.check_out < end
        )

    @staticmethod
    def _issue(reservation, issue_type, severity, message, suggested_action) -> DayBoundaryIssue:
        return DayBoundaryIssue(
            type=issue_type,
            severity=severity,
            reservation_id=reservation.id,
            guest_name=reservation.guest_name or "Guest",
            room_id=reservation.room_id,
            check_out=reservation.check_out,
            message=message,
            suggested_action=suggested_action
        )

    @staticmethod
    def _check_timezone(timezone: str) -> None:
        try:
            resolve_timezone(timezone)
        except ValueError as exc:
            raise ValidationError(str(exc), {"timezone": timezone}) from exc
