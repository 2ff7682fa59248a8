"""
Tests that prove the automatic transition scheduler is safe to run repeatedly.
"""
import asyncio
from datetime import timedelta

import pytest

from reservation_engine.models.audit import AuditLogEntry
from reservation_engine.models.domain import Reservation, StatusHistoryEntry
from reservation_engine.models.enums import (
    AuditAction,
    ConfirmationPendingAction,
    LateCheckoutFeeType,
    ReservationStatus,
)
from reservation_engine.services.automation_settings import AutomationSettingsService
from reservation_engine.services.collaborators import LateCheckoutFeeAssessed, ReservationStatusChanged
from reservation_engine.services.errors import ConcurrentModificationError
from reservation_engine.services.scheduler import (
    CONFIRMATION_EXPIRY_JOB,
    LATE_CHECKOUT_JOB,
    NO_SHOW_JOB,
    AutomationScheduler,
)
from reservation_engine.services.state_machine import StatusTransitionService

S = ReservationStatus


@pytest.fixture
def scheduler(session_factory, notifier):
    return AutomationScheduler(session_factory, notifier=notifier, max_retries=1)


def _reload(db, reservation):
    db.expire_all()
    return db.get(Reservation, reservation.id)


def _history(db, reservation_id):
    return db.query(StatusHistoryEntry).filter(StatusHistoryEntry.reservation_id == reservation_id).all()


def _audit(db, reservation_id, action):
    return db.query(AuditLogEntry).filter(
        AuditLogEntry.reservation_id == reservation_id,
        AuditLogEntry.action == action
    ).all()


class TestNoShowDetection:
    """Guests who never arrived are marked NO_SHOW."""

    def test_past_grace_becomes_no_show(self, db_session, scheduler, make_reservation, fixed_now):
        """
        INVARIANT: check_in = now - 8h, CONFIRMED, grace 6h -> NO_SHOW, automatic, one history row.
        """
        reservation = make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))

        report = scheduler.run_scan("prop-1", now=fixed_now)

        stored = _reload(db_session, reservation)
        history = _history(db_session, reservation.id)
        assert stored.status == S.NO_SHOW
        assert len(history) == 1
        assert history[0].previous_status == S.CONFIRMED
        assert history[0].new_status == S.NO_SHOW
        assert history[0].is_automatic is True
        assert history[0].changed_by is None
        assert report.job(NO_SHOW_JOB).transitioned == 1
        assert report.job(NO_SHOW_JOB).reservation_ids == [reservation.id]

    def test_within_grace_untouched(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(status=S.CHECKIN_DUE, check_in=fixed_now - timedelta(hours=5))

        scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CHECKIN_DUE

    def test_outside_lookback_untouched(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(days=4))

        scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CONFIRMED

    def test_other_property_untouched(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(
            status=S.CONFIRMED, property_id="prop-2", check_in=fixed_now - timedelta(hours=8)
        )

        scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CONFIRMED

    def test_opted_out_reservation_skipped(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(
            status=S.CONFIRMED,
            check_in=fixed_now - timedelta(hours=8),
            status_change_reason="Guest delayed, manual-override by front desk"
        )

        report = scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CONFIRMED
        assert report.job(NO_SHOW_JOB).skipped == 1

    def test_disabled_job_does_not_run(self, db_session, scheduler, make_reservation, fixed_now):
        AutomationSettingsService(db_session).upsert("prop-1", {"enable_no_show_detection": False})
        reservation = make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))

        report = scheduler.run_scan("prop-1", now=fixed_now)

        assert report.job(NO_SHOW_JOB) is None
        assert _reload(db_session, reservation).status == S.CONFIRMED


class TestScanIdempotence:
    """Running a scan twice equals running it once."""

    def test_double_scan_no_duplicates(self, db_session, scheduler, make_reservation, fixed_now, notifier):
        """
        INVARIANT: A second immediate scan produces no new transitions, history or events.
        """
        no_show = make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))
        late = make_reservation(
            status=S.IN_HOUSE,
            room_id="102",
            check_in=fixed_now - timedelta(days=2),
            check_out=fixed_now - timedelta(hours=3)
        )

        first = scheduler.run_scan("prop-1", now=fixed_now)
        events_after_first = len(notifier.events)
        second = scheduler.run_scan("prop-1", now=fixed_now)

        assert first.total_transitioned == 2
        assert second.job(NO_SHOW_JOB).transitioned == 0
        assert second.job(LATE_CHECKOUT_JOB).transitioned == 0
        assert len(_history(db_session, no_show.id)) == 1
        assert len(_history(db_session, late.id)) == 1
        assert len(notifier.events) == events_after_first

    def test_dry_run_writes_nothing(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))

        report = scheduler.run_scan("prop-1", now=fixed_now, dry_run=True)

        assert report.dry_run is True
        assert report.job(NO_SHOW_JOB).reservation_ids == [reservation.id]
        assert report.job(NO_SHOW_JOB).transitioned == 0
        assert _reload(db_session, reservation).status == S.CONFIRMED
        assert _history(db_session, reservation.id) == []


class TestLateCheckout:
    """In-house guests past check-out become CHECKOUT_DUE and are charged once."""

    def test_late_fee_assessed_once(self, db_session, scheduler, make_reservation, fixed_now, notifier):
        """
        INVARIANT: The late fee is assessed only when the status actually changed.
        """
        AutomationSettingsService(db_session).upsert("prop-1", {
            "late_checkout_fee": 5000,
            "late_checkout_fee_type": LateCheckoutFeeType.FLAT_RATE,
        })
        reservation = make_reservation(
            status=S.IN_HOUSE,
            check_in=fixed_now - timedelta(days=2),
            check_out=fixed_now - timedelta(hours=3)
        )

        scheduler.run_scan("prop-1", now=fixed_now)
        scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CHECKOUT_DUE
        fees = _audit(db_session, reservation.id, AuditAction.LATE_FEE_ASSESSED)
        assert len(fees) == 1
        assert fees[0].new_value == "5000"
        fee_events = [e for e in notifier.events if isinstance(e, LateCheckoutFeeAssessed)]
        assert len(fee_events) == 1
        assert fee_events[0].amount_cents == 5000

    def test_hourly_fee_counts_started_hours(self, db_session, scheduler, make_reservation, fixed_now):
        AutomationSettingsService(db_session).upsert("prop-1", {
            "late_checkout_fee": 1000,
            "late_checkout_fee_type": LateCheckoutFeeType.HOURLY,
            "late_checkout_grace_hours": 1,
        })
        # 3.5h past check-out, 2.5h past grace -> 3 started hours
        reservation = make_reservation(
            status=S.IN_HOUSE,
            check_in=fixed_now - timedelta(days=2),
            check_out=fixed_now - timedelta(hours=3, minutes=30)
        )

        scheduler.run_scan("prop-1", now=fixed_now)

        fees = _audit(db_session, reservation.id, AuditAction.LATE_FEE_ASSESSED)
        assert fees[0].metadata_json["amount_cents"] == 3000

    def test_no_fee_when_not_configured(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(
            status=S.IN_HOUSE,
            check_in=fixed_now - timedelta(days=2),
            check_out=fixed_now - timedelta(hours=3)
        )

        scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CHECKOUT_DUE
        assert _audit(db_session, reservation.id, AuditAction.LATE_FEE_ASSESSED) == []

    def test_within_grace_untouched(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(
            status=S.IN_HOUSE,
            check_in=fixed_now - timedelta(days=2),
            check_out=fixed_now - timedelta(minutes=30)
        )

        scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.IN_HOUSE


class TestConfirmationExpiry:
    """Reservations left in CONFIRMATION_PENDING too long are cancelled or flagged."""

    def test_cancel_action(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(
            status=S.CONFIRMATION_PENDING,
            check_in=fixed_now + timedelta(days=5),
            status_updated_at=fixed_now - timedelta(hours=7)
        )

        report = scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CANCELLED
        assert report.job(CONFIRMATION_EXPIRY_JOB).transitioned == 1

    def test_flag_action_written_once(self, db_session, scheduler, make_reservation, fixed_now):
        """
        INVARIANT: FLAG writes a single CONFIRMATION_EXPIRED entry and leaves the status alone.
        """
        AutomationSettingsService(db_session).upsert(
            "prop-1", {"confirmation_pending_action": ConfirmationPendingAction.FLAG}
        )
        reservation = make_reservation(
            status=S.CONFIRMATION_PENDING,
            check_in=fixed_now + timedelta(days=5),
            status_updated_at=fixed_now - timedelta(hours=7)
        )

        scheduler.run_scan("prop-1", now=fixed_now)
        second = scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CONFIRMATION_PENDING
        assert len(_audit(db_session, reservation.id, AuditAction.CONFIRMATION_EXPIRED)) == 1
        assert second.job(CONFIRMATION_EXPIRY_JOB).skipped == 1

    def test_recent_pending_untouched(self, db_session, scheduler, make_reservation, fixed_now):
        reservation = make_reservation(
            status=S.CONFIRMATION_PENDING,
            check_in=fixed_now + timedelta(days=5),
            status_updated_at=fixed_now - timedelta(hours=2)
        )

        scheduler.run_scan("prop-1", now=fixed_now)

        assert _reload(db_session, reservation).status == S.CONFIRMATION_PENDING


class TestFailurePolicy:
    """One reservation failing never stops the scan."""

    def test_persistent_race_counted_and_scan_continues(
        self, db_session, session_factory, make_reservation, fixed_now, monkeypatch
    ):
        failing = make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=9))
        healthy = make_reservation(status=S.CONFIRMED, room_id="102", check_in=fixed_now - timedelta(hours=8))
        failing_id = failing.id
        original = StatusTransitionService.transition
        attempts = []

        def flaky(self, scope, reservation_id, *args, **kwargs):
            if reservation_id == failing_id:
                attempts.append(reservation_id)
                raise ConcurrentModificationError("lost race")
            return original(self, scope, reservation_id, *args, **kwargs)

        monkeypatch.setattr(StatusTransitionService, "transition", flaky)
        scheduler = AutomationScheduler(session_factory, max_retries=2)

        report = scheduler.run_scan("prop-1", now=fixed_now)

        job = report.job(NO_SHOW_JOB)
        assert len(attempts) == 3
        assert job.failed == 1
        assert job.transitioned == 1
        assert report.total_failed == 1
        assert _reload(db_session, healthy).status == S.NO_SHOW
        assert _reload(db_session, failing).status == S.CONFIRMED

    def test_race_retried_then_succeeds(self, db_session, session_factory, make_reservation, fixed_now, monkeypatch):
        reservation = make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))
        original = StatusTransitionService.transition
        calls = []

        def lose_once(self, *args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrentModificationError("lost race")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(StatusTransitionService, "transition", lose_once)
        scheduler = AutomationScheduler(session_factory, max_retries=1)

        report = scheduler.run_scan("prop-1", now=fixed_now)

        assert report.job(NO_SHOW_JOB).transitioned == 1
        assert report.total_failed == 0
        assert _reload(db_session, reservation).status == S.NO_SHOW

    def test_overlapping_scan_skipped(self, scheduler, fixed_now):
        lock = scheduler._lock_for("prop-1")
        lock.acquire()
        try:
            report = scheduler.run_scan("prop-1", now=fixed_now)
        finally:
            lock.release()

        assert report.skipped is True
        assert report.jobs == []


class TestSchedulerLoop:
    """run_all and run_forever."""

    def test_run_all_covers_every_property(self, db_session, scheduler, make_reservation, fixed_now):
        make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))
        make_reservation(status=S.CONFIRMED, property_id="prop-2", check_in=fixed_now - timedelta(hours=8))

        reports = scheduler.run_all(now=fixed_now)

        assert sorted(r.property_id for r in reports) == ["prop-1", "prop-2"]
        assert all(r.total_transitioned == 1 for r in reports)

    def test_run_all_stops_between_properties(self, scheduler, make_reservation, fixed_now, monkeypatch):
        """
        INVARIANT: A stop request ends the cycle after the property being scanned.
        """
        make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))
        make_reservation(status=S.CONFIRMED, property_id="prop-2", check_in=fixed_now - timedelta(hours=8))
        stop_event = asyncio.Event()
        scan = scheduler.run_scan

        def scan_then_stop(property_id, **kwargs):
            report = scan(property_id, **kwargs)
            stop_event.set()
            return report

        monkeypatch.setattr(scheduler, "run_scan", scan_then_stop)

        reports = scheduler.run_all(now=fixed_now, stop_event=stop_event)

        assert [r.property_id for r in reports] == ["prop-1"]

    def test_run_forever_stops_on_event(self, session_factory):
        scheduler = AutomationScheduler(session_factory, interval_seconds=60)
        runs = []
        scheduler.run_all = lambda *args, **kwargs: runs.append(1) or []

        async def scenario():
            stop_event = asyncio.Event()
            task = asyncio.create_task(scheduler.run_forever(stop_event))
            await asyncio.sleep(0.05)
            stop_event.set()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(scenario())

        assert runs == [1]

    def test_events_published_for_automatic_transitions(self, scheduler, make_reservation, fixed_now, notifier):
        make_reservation(status=S.CONFIRMED, check_in=fixed_now - timedelta(hours=8))

        scheduler.run_scan("prop-1", now=fixed_now)

        changes = [e for e in notifier.events if isinstance(e, ReservationStatusChanged)]
        assert len(changes) == 1
        assert changes[0].is_automatic is True
