"""
Pytest configuration and fixtures.

Points the service at an isolated SQLite file before anything imports
``bookings_service.database``, and recreates the schema for every test.
"""

import fnmatch
import os
import sys
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

TEST_DB_DIR = tempfile.mkdtemp(prefix="hostel_bookings_")
TEST_DB_PATH = os.path.join(TEST_DB_DIR, "bookings_test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["TESTING"] = "1"
os.environ.pop("REDIS_URL", None)
os.environ.pop("NOTIFICATIONS_SERVICE_URL", None)

import pytest

from bookings_service import models
from bookings_service.database import Base, SessionLocal, engine
from bookings_service.lifecycle import BookingLifecycleEngine
from bookings_service.notifications import NotificationDispatcher
from common import cache

LANDLORD_ID = 100
OTHER_LANDLORD_ID = 200
STUDENT_A = 1
STUDENT_B = 2
ADMIN_ID = 999


class FakeClock:
    """Controllable naive-UTC clock for the engine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        super().__init__(base_url=None)
        self.sent = []

    def notify(self, user_id, title, message, type="booking"):
        self.sent.append({"user_id": user_id, "title": title, "message": message})
        return True

    def titles_for(self, user_id):
        return [n["title"] for n in self.sent if n["user_id"] == user_id]


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2030, 12, 1, 9, 0, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lifecycle(clock, notifier):
    return BookingLifecycleEngine(
        SessionLocal,
        expiry_window=timedelta(hours=24),
        notifier=notifier,
        clock=clock,
    )


# ---------- Factories ----------


@pytest.fixture
def make_hostel(db_session):
    def _make_hostel(
        landlord_id=LANDLORD_ID,
        name="Sunrise Hostel",
        verification_status=models.VerificationStatus.APPROVED,
    ):
        hostel = models.Hostel(
            landlord_id=landlord_id,
            name=name,
            verification_status=verification_status,
        )
        db_session.add(hostel)
        db_session.commit()
        return hostel

    return _make_hostel


@pytest.fixture
def make_room(db_session, make_hostel):
    counter = {"n": 0}

    def _make_room(
        hostel=None,
        capacity=1,
        current_occupancy=0,
        price_amount=Decimal("3000.00"),
        is_available=True,
        is_active=True,
    ):
        if hostel is None:
            hostel = make_hostel()
        counter["n"] += 1
        room = models.Room(
            hostel_id=hostel.id,
            room_number=f"A{counter['n']}",
            capacity=capacity,
            current_occupancy=current_occupancy,
            price_amount=price_amount,
            currency="KES",
            is_available=is_available,
            is_active=is_active,
        )
        db_session.add(room)
        db_session.commit()
        return room

    return _make_room


@pytest.fixture
def fetch(db_session):
    """Re-read a row from the database, bypassing the session cache."""

    def _fetch(model, pk):
        db_session.expire_all()
        obj = db_session.get(model, pk)
        # end the read transaction; SQLite holds the write lock while it is open
        db_session.commit()
        return obj

    return _fetch


class InMemoryRedis:
    """Dict-backed stand-in for the few Redis calls common.cache makes."""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl_seconds, value):
        self.store[key] = value

    def scan_iter(self, match="*", count=None):
        return [key for key in list(self.store) if fnmatch.fnmatchcase(key, match)]

    def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)


@pytest.fixture
def memory_cache(monkeypatch):
    fake = InMemoryRedis()
    monkeypatch.setattr(cache, "_redis_client", fake)
    return fake
