"""
Narrow interfaces to the collaborators that live outside the core.

The tenant context hands us a trusted PropertyScope. Notification and pricing
are plugged in through small protocols with in-process defaults.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

from reservation_engine.models.domain import Reservation
from reservation_engine.models.enums import LateCheckoutFeeType, ReservationStatus, UserRole

logger = logging.getLogger(__name__)

MANAGER_ROLES = frozenset({UserRole.SUPER_ADMIN, UserRole.ORG_ADMIN, UserRole.PROPERTY_MGR})


@dataclass(frozen=True)
class PropertyScope:
    """The (property, actor, role) triple resolved by the tenant context."""
    property_id: str
    actor_id: Optional[str]
    role: UserRole

    @classmethod
    def system(cls, property_id: str) -> "PropertyScope":
        return cls(property_id=property_id, actor_id=None, role=UserRole.SYSTEM)

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES


@dataclass(frozen=True)
class ReservationStatusChanged:
    reservation_id: int
    property_id: str
    previous_status: ReservationStatus
    new_status: ReservationStatus
    changed_by: Optional[str]
    reason: Optional[str]
    is_automatic: bool
    changed_at: datetime


@dataclass(frozen=True)
class LateCheckoutFeeAssessed:
    reservation_id: int
    property_id: str
    fee_type: LateCheckoutFeeType
    amount_cents: int
    assessed_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)


class StatusChangeNotifier(Protocol):
    def publish(self, event: Any) -> None:
        ...


class LoggingNotifier:
    """Default notifier: writes the event to the log and nothing else."""

    def publish(self, event: Any) -> None:
        logger.info("Outbound event %s: %s", type(event).__name__, event)


class RecordingNotifier:
    """Keeps published events in memory; handy for wiring tests and local runs."""

    def __init__(self):
        self.events = []

    def publish(self, event: Any) -> None:
        self.events.append(event)


def publish_safely(notifier: Optional[StatusChangeNotifier], event: Any) -> None:
    """
    Fire-and-forget publish after commit.

    A failing notifier must never undo or fail a committed transition.
    """
    if notifier is None:
        return
    try:
        notifier.publish(event)
    except Exception:
        logger.exception("Failed to publish %s", type(event).__name__)


class PricingCollaborator(Protocol):
    def late_checkout_fee(
        self,
        reservation: Reservation,
        fee_type: LateCheckoutFeeType,
        fee: float,
        now: datetime,
        grace_hours: int
    ) -> int:
        ...


class StandardPricing:
    """
    Late checkout fee calculation in cents.

    - FLAT_RATE: ``fee`` cents
    - HOURLY: ``fee`` cents per started hour past the grace window (minimum one)
    - PERCENTAGE_OF_ROOM_RATE / PERCENTAGE_OF_TOTAL_BILL: ``fee`` percent of the base
    """

    def late_checkout_fee(
        self,
        reservation: Reservation,
        fee_type: LateCheckoutFeeType,
        fee: float,
        now: datetime,
        grace_hours: int
    ) -> int:
        if fee <= 0:
            return 0

        if fee_type == LateCheckoutFeeType.FLAT_RATE:
            return int(round(fee))

        if fee_type == LateCheckoutFeeType.HOURLY:
            grace_end = reservation.check_out + timedelta(hours=grace_hours)
            overage = (now - grace_end).total_seconds() / 3600
            return int(round(fee * max(1, math.ceil(overage))))

        if fee_type == LateCheckoutFeeType.PERCENTAGE_OF_ROOM_RATE:
            return int(round((reservation.room_rate_cents or 0) * fee / 100))

        if fee_type == LateCheckoutFeeType.PERCENTAGE_OF_TOTAL_BILL:
            return int(round((reservation.total_amount_cents or 0) * fee / 100))

        raise ValueError(f"Unsupported late checkout fee type: {fee_type}")
