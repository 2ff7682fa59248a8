"""
Automatic transition scheduler.

Scans each property on a fixed interval and moves reservations the clock has
overtaken: no-shows, late checkouts and confirmations left pending too long.
Every write goes through StatusTransitionService with an Automatic origin, so
a scan can be repeated at any time without effect.

Invariants:
- One scan per property at a time; an overlapping scan is skipped, not queued
- One reservation failing never stops the rest of the scan
- A late checkout fee is assessed only when the status actually changed
"""
import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import distinct
from sqlalchemy.orm import Session

from reservation_engine.models.audit import AuditLogEntry
from reservation_engine.models.domain import PropertyAutomationSettings, Reservation
from reservation_engine.models.enums import (
    AuditAction,
    ConfirmationPendingAction,
    ReservationStatus,
)
from reservation_engine.services.audit_ledger import AuditLedger
from reservation_engine.services.automation_settings import (
    AutomationSettingsData,
    AutomationSettingsService,
)
from reservation_engine.services.cache import StatusCache
from reservation_engine.services.collaborators import (
    LateCheckoutFeeAssessed,
    PricingCollaborator,
    PropertyScope,
    StandardPricing,
    StatusChangeNotifier,
    publish_safely,
)
from reservation_engine.services.errors import ConcurrentModificationError, ReservationEngineError
from reservation_engine.services.state_machine import Automatic, StatusTransitionService
from reservation_engine.timeutils import utcnow

logger = logging.getLogger(__name__)

AUTOMATION_OPT_OUT_MARKERS = ("automation-disabled", "manual-override")

NO_SHOW_JOB = "no_show"
LATE_CHECKOUT_JOB = "late_checkout"
CONFIRMATION_EXPIRY_JOB = "confirmation_expiry"
AUDIT_RETENTION_JOB = "audit_retention"


@dataclass
class JobResult:
    job: str
    examined: int = 0
    transitioned: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    reservation_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "examined": self.examined,
            "transitioned": self.transitioned,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "reservation_ids": list(self.reservation_ids),
        }


@dataclass
class ScanReport:
    property_id: str
    started_at: datetime
    dry_run: bool = False
    skipped: bool = False
    jobs: List[JobResult] = field(default_factory=list)

    @property
    def total_failed(self) -> int:
        return sum(job.failed for job in self.jobs)

    @property
    def total_transitioned(self) -> int:
        return sum(job.transitioned for job in self.jobs)

    def job(self, name: str) -> Optional[JobResult]:
        for result in self.jobs:
            if result.job == name:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            "property_id": self.property_id,
            "started_at": self.started_at.isoformat(),
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "total_failed": self.total_failed,
            "jobs": [job.to_dict() for job in self.jobs],
        }


def _opted_out(reservation: Reservation) -> bool:
    reason = (reservation.status_change_reason or "").lower()
    return any(marker in reason for marker in AUTOMATION_OPT_OUT_MARKERS)


class AutomationScheduler:
    """Runs the automatic transition jobs for one or all properties."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Optional[StatusChangeNotifier] = None,
        pricing: Optional[PricingCollaborator] = None,
        cache: Optional[StatusCache] = None,
        max_retries: int = 1,
        interval_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.pricing = pricing or StandardPricing()
        self.cache = cache
        self.max_retries = max_retries
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, property_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(property_id, threading.Lock())

    def run_scan(
        self,
        property_id: str,
        now: Optional[datetime] = None,
        dry_run: bool = False
    ) -> ScanReport:
        """Run every enabled job for one property."""
        now = now or self.clock()
        report = ScanReport(property_id=property_id, started_at=now, dry_run=dry_run)

        lock = self._lock_for(property_id)
        if not lock.acquire(blocking=False):
            logger.info("Scan for property %s already running; skipping", property_id)
            report.skipped = True
            return report

        db = self.session_factory()
        try:
            settings = AutomationSettingsService(db).get(property_id)
            engine = StatusTransitionService(
                db, notifier=self.notifier, cache=self.cache, clock=lambda: now
            )
            if settings.enable_no_show_detection:
                report.jobs.append(self._detect_no_shows(db, engine, property_id, settings, now, dry_run))
            if settings.enable_late_checkout_detection:
                report.jobs.append(self._detect_late_checkouts(db, engine, property_id, settings, now, dry_run))
            if settings.enable_confirmation_expiry:
                report.jobs.append(self._expire_pending_confirmations(db, engine, property_id, settings, now, dry_run))
            if not dry_run:
                report.jobs.append(self._purge_audit_log(db, property_id, settings, now))
        finally:
            db.close()
            lock.release()

        for job in report.jobs:
            logger.info(
                "Property %s %s: examined=%s transitioned=%s failed=%s skipped=%s",
                property_id, job.job, job.examined, job.transitioned, job.failed, job.skipped
            )
        if report.total_failed:
            logger.warning(
                "Scan for property %s finished with %s failures",
                property_id, report.total_failed
            )
        return report

    def run_all(
        self,
        now: Optional[datetime] = None,
        dry_run: bool = False,
        stop_event: Optional[asyncio.Event] = None
    ) -> List[ScanReport]:
        """
        Scan every property that has reservations or stored settings.

        When stop_event is set the cycle ends after the property in progress.
        """
        now = now or self.clock()
        reports = []
        for property_id in self._property_ids():
            if stop_event is not None and stop_event.is_set():
                logger.info("Stop requested; ending scan cycle before property %s", property_id)
                break
            try:
                reports.append(self.run_scan(property_id, now=now, dry_run=dry_run))
            except Exception:
                logger.exception("Scan for property %s failed", property_id)
        return reports

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Scan all properties every interval until stop_event is set."""
        logger.info("Automation scheduler started (interval %ss)", self.interval_seconds)
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.run_all, stop_event=stop_event)
            except Exception:
                logger.exception("Automation scan cycle failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Automation scheduler stopped")

    def _property_ids(self) -> List[str]:
        db = self.session_factory()
        try:
            ids = {row[0] for row in db.query(distinct(Reservation.property_id)).all()}
            ids.update(row[0] for row in db.query(PropertyAutomationSettings.property_id).all())
        finally:
            db.close()
        return sorted(ids)

    # Jobs

    def _detect_no_shows(
        self,
        db: Session,
        engine: StatusTransitionService,
        property_id: str,
        settings: AutomationSettingsData,
        now: datetime,
        dry_run: bool
    ) -> JobResult:
        """CONFIRMED / CHECKIN_DUE guests whose check-in plus grace has passed."""
        result = JobResult(job=NO_SHOW_JOB)
        cutoff = now - timedelta(hours=settings.no_show_grace_hours)
        lookback = now - timedelta(days=settings.no_show_lookback_days)
        candidates = db.query(Reservation).filter(
            Reservation.property_id == property_id,
            Reservation.status.in_([ReservationStatus.CONFIRMED, ReservationStatus.CHECKIN_DUE]),
            Reservation.check_in >= lookback,
            Reservation.check_in <= cutoff
        ).order_by(Reservation.check_in.asc(), Reservation.id.asc()).all()

        for reservation in candidates:
            reason = (
                f"Automatically marked as no-show: no check-in within "
                f"{settings.no_show_grace_hours}h of scheduled arrival"
            )
            self._apply(engine, result, reservation, ReservationStatus.NO_SHOW, reason, dry_run)
        return result

    def _detect_late_checkouts(
        self,
        db: Session,
        engine: StatusTransitionService,
        property_id: str,
        settings: AutomationSettingsData,
        now: datetime,
        dry_run: bool
    ) -> JobResult:
        """IN_HOUSE guests still in the room after check-out plus grace."""
        result = JobResult(job=LATE_CHECKOUT_JOB)
        cutoff = now - timedelta(hours=settings.late_checkout_grace_hours)
        lookback = now - timedelta(days=settings.late_checkout_lookback_days)
        candidates = db.query(Reservation).filter(
            Reservation.property_id == property_id,
            Reservation.status == ReservationStatus.IN_HOUSE,
            Reservation.check_out >= lookback,
            Reservation.check_out <= cutoff
        ).order_by(Reservation.check_out.asc(), Reservation.id.asc()).all()

        for reservation in candidates:
            reason = (
                f"Automatically marked checkout due: guest past check-out by more than "
                f"{settings.late_checkout_grace_hours}h"
            )
            changed = self._apply(engine, result, reservation, ReservationStatus.CHECKOUT_DUE, reason, dry_run)
            if changed and settings.late_checkout_fee > 0:
                self._assess_late_fee(db, reservation, settings, now)
        return result

    def _expire_pending_confirmations(
        self,
        db: Session,
        engine: StatusTransitionService,
        property_id: str,
        settings: AutomationSettingsData,
        now: datetime,
        dry_run: bool
    ) -> JobResult:
        """Reservations left in CONFIRMATION_PENDING beyond the timeout."""
        result = JobResult(job=CONFIRMATION_EXPIRY_JOB)
        cutoff = now - timedelta(hours=settings.confirmation_pending_timeout_hours)
        candidates = db.query(Reservation).filter(
            Reservation.property_id == property_id,
            Reservation.status == ReservationStatus.CONFIRMATION_PENDING,
            Reservation.status_updated_at <= cutoff
        ).order_by(Reservation.status_updated_at.asc(), Reservation.id.asc()).all()

        reason = (
            f"Confirmation not received within "
            f"{settings.confirmation_pending_timeout_hours}h"
        )
        if settings.confirmation_pending_action == ConfirmationPendingAction.CANCEL:
            for reservation in candidates:
                self._apply(
                    engine, result, reservation, ReservationStatus.CANCELLED,
                    f"Automatically cancelled: {reason}", dry_run
                )
            return result

        ledger = AuditLedger(db)
        for reservation in candidates:
            result.examined += 1
            if _opted_out(reservation) or self._already_flagged(db, reservation.id):
                result.skipped += 1
                continue
            result.reservation_ids.append(reservation.id)
            if dry_run:
                continue
            try:
                ledger.record(
                    reservation.id,
                    reservation.property_id,
                    AuditAction.CONFIRMATION_EXPIRED,
                    description=f"Flagged for follow-up: {reason}",
                    metadata={
                        "timeout_hours": settings.confirmation_pending_timeout_hours,
                        "status_updated_at": reservation.status_updated_at.isoformat(),
                    },
                    changed_at=now
                )
                db.commit()
                result.transitioned += 1
            except Exception as exc:
                db.rollback()
                result.failed += 1
                result.errors.append(f"Reservation {reservation.id}: {exc}")
                logger.warning("Failed to flag reservation %s: %s", reservation.id, exc)
        return result

    def _purge_audit_log(
        self,
        db: Session,
        property_id: str,
        settings: AutomationSettingsData,
        now: datetime
    ) -> JobResult:
        result = JobResult(job=AUDIT_RETENTION_JOB)
        try:
            result.transitioned = AuditLedger(db).purge_expired(
                property_id, settings.audit_log_retention_days, now
            )
        except Exception as exc:
            db.rollback()
            result.failed += 1
            result.errors.append(str(exc))
            logger.warning("Audit retention failed for property %s: %s", property_id, exc)
        return result

    # Helpers

    def _apply(
        self,
        engine: StatusTransitionService,
        result: JobResult,
        reservation: Reservation,
        target: ReservationStatus,
        reason: str,
        dry_run: bool
    ) -> bool:
        """Transition one candidate, retrying lost races. Returns True if status changed."""
        result.examined += 1
        if _opted_out(reservation):
            result.skipped += 1
            return False
        if dry_run:
            result.reservation_ids.append(reservation.id)
            return False

        scope = PropertyScope.system(reservation.property_id)
        reservation_id = reservation.id
        attempt = 0
        while True:
            try:
                outcome = engine.transition(scope, reservation_id, target, Automatic(), reason)
            except ConcurrentModificationError as exc:
                # transition() rolled back, so the next read is fresh
                if attempt < self.max_retries:
                    attempt += 1
                    continue
                self._record_failure(result, reservation_id, exc)
                return False
            except ReservationEngineError as exc:
                self._record_failure(result, reservation_id, exc)
                return False
            except Exception as exc:
                logger.exception("Unexpected error transitioning reservation %s", reservation_id)
                self._record_failure(result, reservation_id, exc)
                return False

            if outcome.changed:
                result.transitioned += 1
                result.reservation_ids.append(reservation_id)
            else:
                result.skipped += 1
            return outcome.changed

    @staticmethod
    def _record_failure(result: JobResult, reservation_id: int, exc: Exception) -> None:
        result.failed += 1
        result.errors.append(f"Reservation {reservation_id}: {exc}")
        logger.warning("Automatic transition of reservation %s failed: %s", reservation_id, exc)

    @staticmethod
    def _already_flagged(db: Session, reservation_id: int) -> bool:
        return db.query(AuditLogEntry.id).filter(
            AuditLogEntry.reservation_id == reservation_id,
            AuditLogEntry.action == AuditAction.CONFIRMATION_EXPIRED
        ).first() is not None

    def _assess_late_fee(
        self,
        db: Session,
        reservation: Reservation,
        settings: AutomationSettingsData,
        now: datetime
    ) -> None:
        try:
            amount = self.pricing.late_checkout_fee(
                reservation,
                settings.late_checkout_fee_type,
                settings.late_checkout_fee,
                now,
                settings.late_checkout_grace_hours
            )
        except Exception:
            logger.exception("Late checkout fee calculation failed for reservation %s", reservation.id)
            return
        if amount <= 0:
            return

        details = {
            "fee_type": settings.late_checkout_fee_type.value,
            "configured_fee": settings.late_checkout_fee,
            "amount_cents": amount,
            "check_out": reservation.check_out.isoformat(),
        }
        try:
            AuditLedger(db).record(
                reservation.id,
                reservation.property_id,
                AuditAction.LATE_FEE_ASSESSED,
                description=f"Late checkout fee of {amount} assessed ({settings.late_checkout_fee_type.value})",
                new_value=amount,
                metadata=details,
                changed_at=now
            )
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to record late checkout fee for reservation %s", reservation.id)
            return

        publish_safely(self.notifier, LateCheckoutFeeAssessed(
            reservation_id=reservation.id,
            property_id=reservation.property_id,
            fee_type=settings.late_checkout_fee_type,
            amount_cents=amount,
            assessed_at=now,
            details=details
        ))
