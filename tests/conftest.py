"""Pytest configuration and shared fixtures."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reservation_engine.database import Base
# Import models to register them with SQLAlchemy Base
from reservation_engine.models import audit, domain  # noqa: F401
from reservation_engine.models.domain import Reservation
from reservation_engine.models.enums import PaymentStatus, ReservationStatus, UserRole
from reservation_engine.services.cache import StatusCache
from reservation_engine.services.collaborators import PropertyScope, RecordingNotifier
from reservation_engine.services.state_machine import StatusTransitionService

PROPERTY_ID = "prop-1"
OTHER_PROPERTY_ID = "prop-2"


@pytest.fixture
def engine():
    """A fresh in-memory database per test, shared by every session of that test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fixed_now():
    return datetime(2024, 1, 15, 12, 0, 0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def cache(fixed_now):
    return StatusCache(max_size=100, ttl_seconds=30, clock=lambda: fixed_now)


@pytest.fixture
def transition_service(db_session, notifier, cache, fixed_now):
    return StatusTransitionService(db_session, notifier=notifier, cache=cache, clock=lambda: fixed_now)


@pytest.fixture
def front_desk():
    return PropertyScope(property_id=PROPERTY_ID, actor_id="desk-1", role=UserRole.FRONT_DESK)


@pytest.fixture
def manager():
    return PropertyScope(property_id=PROPERTY_ID, actor_id="mgr-1", role=UserRole.PROPERTY_MGR)


@pytest.fixture
def system_scope():
    return PropertyScope.system(PROPERTY_ID)


@pytest.fixture
def make_reservation(db_session, fixed_now):
    """Factory for reservations seeded directly in a given status."""
    def _make(
        status=ReservationStatus.CONFIRMED,
        property_id=PROPERTY_ID,
        check_in=None,
        check_out=None,
        guest_name="Jane Guest",
        room_id="101",
        payment_status=PaymentStatus.UNPAID,
        status_updated_at=None,
        status_change_reason=None,
        room_rate_cents=20000,
        total_amount_cents=40000
    ):
        check_in = check_in or fixed_now - timedelta(hours=2)
        check_out = check_out or check_in + timedelta(days=2)
        reservation = Reservation(
            property_id=property_id,
            room_id=room_id,
            guest_name=guest_name,
            check_in=check_in,
            check_out=check_out,
            status=status,
            payment_status=payment_status,
            status_updated_at=status_updated_at or fixed_now - timedelta(days=1),
            status_change_reason=status_change_reason,
            room_rate_cents=room_rate_cents,
            total_amount_cents=total_amount_cents
        )
        db_session.add(reservation)
        db_session.commit()
        db_session.refresh(reservation)
        return reservation
    return _make
