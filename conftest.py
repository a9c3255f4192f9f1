"""Pytest configuration and fixtures for the parking API tests."""
import os
import sys
from datetime import datetime, timedelta

import mongomock
import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from database import get_db
from main import app
from notifications import NotificationCenter
from points import PointsLedger
from sessions import SessionLedger
from spots import SpotLifecycle
from users import UserDirectory


class Clock:
    """A settable clock; call it to read the time."""

    def __init__(self, start=datetime(2024, 5, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Stack:
    def __init__(self, db, clock, atomic=True, uploader=None, prefetch_factor=2):
        self.db = db
        self.clock = clock
        self.notifications = NotificationCenter(db, clock=clock)
        self.users = UserDirectory(db, clock=clock)
        self.points = PointsLedger(db, self.notifications, clock=clock, atomic=atomic)
        extra = {"uploader": uploader} if uploader else {}
        self.spots = SpotLifecycle(db, self.points, self.notifications, clock=clock,
                                   atomic=atomic, prefetch_factor=prefetch_factor, **extra)
        self.sessions = SessionLedger(db, self.spots, self.users, self.notifications,
                                      clock=clock, atomic=atomic)


@pytest.fixture
def db():
    return mongomock.MongoClient().db


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def stack(db, clock):
    return Stack(db, clock)


@pytest.fixture
def legacy_stack(db, clock):
    return Stack(db, clock, atomic=False)


@pytest.fixture
def make_stack(db, clock):
    def build(**kwargs):
        return Stack(db, clock, **kwargs)
    return build


@pytest.fixture
def sample_report():
    """A free street spot a little north of Times Square."""
    return {
        "location": {"latitude": 40.7580, "longitude": -73.9855, "address": "W 45th St"},
        "expires_at": datetime(2024, 5, 1, 11, 0, 0),
        "type": "street",
        "cost": None,
        "time_limit": 60,
    }


@pytest.fixture
def client(db):
    """Create a test client bound to an in-memory store."""
    from fastapi.testclient import TestClient

    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
