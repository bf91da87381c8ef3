from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from checkin.modules.attendance_store import MemoryAttendanceStore
from checkin.modules.attendance_validator import AttendanceValidator
from checkin.modules.database_manager import DatabaseManager
from checkin.modules.session_generator import SessionGenerator


def at(seconds):
    """Aware UTC datetime for an epoch offset in seconds."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(at(1000))


@pytest.fixture
def memory_store():
    return MemoryAttendanceStore()


@pytest.fixture
def db_store():
    store = DatabaseManager(':memory:')
    yield store
    store.close_all_connections()


@pytest.fixture
def generator(memory_store, clock):
    return SessionGenerator(store=memory_store, clock=clock)


@pytest.fixture
def validator(memory_store, clock):
    return AttendanceValidator(memory_store, grace_minutes=15, clock=clock)


@pytest.fixture
def flask_app(clock):
    return create_app('testing', clock=clock)


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()
