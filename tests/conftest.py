import os

# Must be set before the application modules read their configuration
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["CLINIC_TIMEZONE"] = "Asia/Colombo"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CACHE_ENABLED"] = "false"

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dental_scheduling import models  # noqa: F401 - register tables on Base
from dental_scheduling.database import Base, enable_sqlite_savepoints, get_db, get_session_factory
from dental_scheduling.domain.scheduling.appointment_service import AppointmentLifecycle
from dental_scheduling.domain.scheduling.clock import FixedClock, get_clock
from dental_scheduling.domain.scheduling.repository import SchedulingRepository
from dental_scheduling.services.directory_service import StaticDirectory, get_directory
from dental_scheduling.services.notification_service import NotificationError, get_notifier

# Monday
MONDAY = datetime(2026, 3, 2, 7, 0)

DENTISTS = {
    "DEN-1": {
        "active": True,
        "availability_schedule": {
            "Monday": "09:00-12:00",
            "Tuesday": {"startTime": "09:00", "endTime": "12:00", "isWorking": True},
            "Wednesday": "Not Available",
        },
    },
    "DEN-2": {
        "active": True,
        "availability_schedule": {
            "Monday": "14:00-16:00",
            "Tuesday": "14:00-16:00",
        },
    },
    "DEN-OFF": {
        "active": False,
        "availability_schedule": {"Monday": "09:00-17:00", "Tuesday": "09:00-17:00"},
    },
}


class RecordingNotifier:
    """Keeps every announcement in memory"""

    def __init__(self):
        self.sent = []

    def announce(self, kind, recipient_code, payload):
        self.sent.append((kind, recipient_code, payload))

    def kinds(self):
        return [kind for kind, _, _ in self.sent]


class FailingNotifier:
    def announce(self, kind, recipient_code, payload):
        raise NotificationError("gateway down")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(MONDAY)


@pytest.fixture
def directory():
    return StaticDirectory(DENTISTS)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def lifecycle(db, directory, notifier, clock):
    return AppointmentLifecycle(db, directory, notifier, clock)


@pytest.fixture
def client(db, directory, notifier, clock):
    """TestClient sharing the test session; lifespan is not run"""
    from dental_scheduling.main import app

    def override_get_db():
        yield db

    def override_session_factory():
        return lambda: db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_session_factory
    app.dependency_overrides[get_directory] = lambda: directory
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def booking():
    """Build an AppointmentCreate for a registered patient"""
    from dental_scheduling.domain.scheduling.schemas import AppointmentCreate

    def build(dentist_code="DEN-1", at=None, patient_code="PAT-1", **extra):
        return AppointmentCreate(
            dentistCode=dentist_code,
            appointmentAt=at,
            patient={"kind": "registered", "patientCode": patient_code},
            **extra,
        )

    return build


LOCK_RANK = {"appointment": 0, "queue_entry": 1, "dentist_day": 2}


@pytest.fixture
def lock_log(monkeypatch):
    """Record which kind of row each locking repository call takes, in order"""
    log = []

    def recording(kind, original):
        def wrapper(*args, **kwargs):
            log.append(kind)
            return original(*args, **kwargs)

        return staticmethod(wrapper)

    for name, kind in (
        ("get_appointment_for_update", "appointment"),
        ("get_queue_entry_for_update", "queue_entry"),
        ("lock_dentist_day", "dentist_day"),
    ):
        monkeypatch.setattr(SchedulingRepository, name, recording(kind, getattr(SchedulingRepository, name)))
    return log


def assert_lock_order(log):
    assert log, "no row locks were taken"
    assert log == sorted(log, key=LOCK_RANK.get)
