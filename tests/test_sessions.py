"""Tests for parking sessions."""
from datetime import datetime, timedelta

import pytest
from pymongo.errors import PyMongoError

import sessions
from database import SESSIONS, ensure_indexes
from errors import (
    ActiveSessionExists,
    AlreadyEnded,
    NotFound,
    SpotUnavailable,
    Unauthorized,
    UpstreamFailure,
    ValidationError,
)
from schemas import SpotTakenNotification, TimeExpiringNotification
from sessions import SessionLedger, elapsed_minutes

CIVIC = {"make": "Honda", "model": "Civic", "year": 2020, "license_plate": "ABC123"}


@pytest.fixture
def spot_id(stack, sample_report):
    reporter = stack.users.register("alice", "alice@example.com", "Alice")
    return stack.spots.report(sample_report, reporter)


@pytest.fixture
def vehicle_id(stack):
    stack.users.register("bob", "bob@example.com", "Bob")
    return stack.users.add_vehicle("bob", CIVIC).id


class TestElapsedMinutes:

    def test_rounds_half_up(self):
        start = datetime(2024, 5, 1, 9, 0)
        assert elapsed_minutes(start, start + timedelta(minutes=44, seconds=30)) == 45
        assert elapsed_minutes(start, start + timedelta(minutes=44, seconds=29)) == 44
        assert elapsed_minutes(start, start) == 0


class TestStartAndEnd:
    """SessionLedger.start / SessionLedger.end"""

    def test_duration_and_spot_transitions(self, stack, clock, spot_id, vehicle_id):
        assert stack.spots.get(spot_id).status == "available"

        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        assert stack.spots.get(spot_id).status == "taken"
        assert stack.sessions.active_for("bob").id == session_id

        clock.advance(minutes=45)
        session = stack.sessions.end(session_id)

        assert session.duration == 45
        assert session.is_active is False
        assert session.end_time == clock.now
        assert stack.spots.get(spot_id).status == "expired"
        assert stack.sessions.active_for("bob") is None

    def test_end_twice(self, stack, spot_id, vehicle_id):
        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        stack.sessions.end(session_id)
        with pytest.raises(AlreadyEnded):
            stack.sessions.end(session_id)

    def test_end_unknown(self, stack):
        with pytest.raises(NotFound):
            stack.sessions.end("000000000000000000000000")
        with pytest.raises(NotFound):
            stack.sessions.end("nope")

    def test_end_after_spot_deleted(self, stack, spot_id, vehicle_id):
        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        stack.spots.delete(spot_id, "alice")
        assert stack.sessions.end(session_id).is_active is False

    def test_vehicle_required(self, stack, spot_id, vehicle_id):
        with pytest.raises(ValidationError):
            stack.sessions.start("bob", spot_id, "")

    def test_vehicle_must_belong_to_user(self, stack, spot_id, vehicle_id):
        stack.users.register("carol", "carol@example.com")
        with pytest.raises(ValidationError):
            stack.sessions.start("carol", spot_id, vehicle_id)
        assert stack.spots.get(spot_id).status == "available"

    def test_unknown_spot(self, stack, vehicle_id):
        with pytest.raises(NotFound):
            stack.sessions.start("bob", "000000000000000000000000", vehicle_id)

    def test_taken_spot_rejected(self, stack, spot_id, vehicle_id):
        stack.users.register("carol", "carol@example.com")
        carol_car = stack.users.add_vehicle("carol", dict(CIVIC, license_plate="XYZ789")).id
        stack.sessions.start("bob", spot_id, vehicle_id)
        with pytest.raises(SpotUnavailable):
            stack.sessions.start("carol", spot_id, carol_car)

    def test_one_active_session_per_user(self, stack, sample_report, spot_id, vehicle_id):
        other_spot = stack.spots.report(sample_report, stack.users.get("alice"))
        stack.sessions.start("bob", spot_id, vehicle_id)

        with pytest.raises(ActiveSessionExists):
            stack.sessions.start("bob", other_spot, vehicle_id)
        assert stack.spots.get(other_spot).status == "available"

    def test_legacy_mode_allows_second_session(self, legacy_stack, sample_report):
        reporter = legacy_stack.users.register("alice", "alice@example.com", "Alice")
        first = legacy_stack.spots.report(sample_report, reporter)
        second = legacy_stack.spots.report(sample_report, reporter)
        legacy_stack.users.register("bob", "bob@example.com")
        car = legacy_stack.users.add_vehicle("bob", CIVIC).id

        legacy_stack.sessions.start("bob", first, car)
        legacy_stack.sessions.start("bob", second, car)
        assert len(legacy_stack.sessions.history_for("bob")) == 2

    def test_reporter_told_spot_was_taken(self, stack, spot_id, vehicle_id):
        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        inbox = stack.notifications.list_for("alice")
        taken = [n for n in inbox if isinstance(n, SpotTakenNotification)]
        assert len(taken) == 1
        assert taken[0].data.session_id == session_id


class TestHistoryAndDelete:

    def test_history_newest_first(self, stack, clock, sample_report, spot_id, vehicle_id):
        first = stack.sessions.start("bob", spot_id, vehicle_id)
        clock.advance(minutes=30)
        stack.sessions.end(first)

        clock.advance(minutes=5)
        second_spot = stack.spots.report(sample_report, stack.users.get("alice"))
        second = stack.sessions.start("bob", second_spot, vehicle_id)

        assert [s.id for s in stack.sessions.history_for("bob")] == [second, first]
        assert [s.id for s in stack.sessions.history_for("bob", limit=1)] == [second]

    def test_only_owner_deletes(self, stack, spot_id, vehicle_id):
        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        with pytest.raises(Unauthorized):
            stack.sessions.delete(session_id, "alice")
        stack.sessions.delete(session_id, "bob")
        with pytest.raises(NotFound):
            stack.sessions.get(session_id)


class TestReminders:

    def test_set_and_cancel(self, stack, clock, spot_id, vehicle_id):
        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        stack.sessions.set_reminder(session_id, clock.now + timedelta(minutes=30))
        session = stack.sessions.get(session_id)
        assert session.reminder_set is True
        assert session.reminder_time == clock.now + timedelta(minutes=30)

        stack.sessions.cancel_reminder(session_id)
        session = stack.sessions.get(session_id)
        assert session.reminder_set is False
        assert session.reminder_time is None

    def test_reminder_unknown_session(self, stack):
        with pytest.raises(NotFound):
            stack.sessions.set_reminder("000000000000000000000000", datetime(2024, 5, 1, 10, 0))

    def test_due_reminders_sent_once(self, stack, clock, spot_id, vehicle_id):
        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        stack.sessions.set_reminder(session_id, clock.now + timedelta(minutes=30))

        clock.advance(minutes=20)
        assert stack.sessions.send_due_reminders() == 0

        clock.advance(minutes=10)
        assert stack.sessions.send_due_reminders() == 1
        assert stack.sessions.send_due_reminders() == 0

        notices = [n for n in stack.notifications.list_for("bob") if isinstance(n, TimeExpiringNotification)]
        assert len(notices) == 1
        # time_limit is 60 minutes and 30 have elapsed
        assert notices[0].data.minutes_remaining == 30
        assert stack.sessions.get(session_id).reminder_set is False

    def test_reminder_dropped_without_preferences(self, stack, clock, db, spot_id, vehicle_id):
        session_id = stack.sessions.start("bob", spot_id, vehicle_id)
        stack.sessions.set_reminder(session_id, clock.now + timedelta(minutes=10))
        db["userpreferences"].delete_one({"_id": "bob"})

        clock.advance(minutes=10)
        assert stack.sessions.send_due_reminders() == 0
        assert stack.sessions.get(session_id).reminder_set is False


class RacingSpots:
    """Spot service that lets a competing start land right after the spot is taken."""

    def __init__(self, spots, db, user_id, vehicle_id):
        self.spots = spots
        self.db = db
        self.user_id = user_id
        self.vehicle_id = vehicle_id

    def get(self, spot_id):
        return self.spots.get(spot_id)

    def mark_taken(self, spot_id):
        self.spots.mark_taken(spot_id)
        self.db[SESSIONS].insert_one({
            "user_id": self.user_id,
            "spot_id": "elsewhere",
            "vehicle_id": self.vehicle_id,
            "start_time": datetime(2024, 5, 1, 9, 0),
            "is_active": True,
        })


class TestStartFailures:
    """A start that fails part-way leaves the spot available."""

    def test_unregistered_user_cannot_start(self, stack, spot_id):
        with pytest.raises(ValidationError):
            stack.sessions.start("ghost", spot_id, "made-up-vehicle")
        assert stack.spots.get(spot_id).status == "available"
        assert stack.sessions.active_for("ghost") is None

    def test_failed_insert_releases_spot(self, stack, spot_id, vehicle_id, monkeypatch):
        def broken(*args, **kwargs):
            raise PyMongoError("primary stepped down")

        monkeypatch.setattr(sessions, "create_document", broken)
        with pytest.raises(UpstreamFailure):
            stack.sessions.start("bob", spot_id, vehicle_id)
        assert stack.spots.get(spot_id).status == "available"

    def test_unique_index_catches_concurrent_start(self, stack, db, clock, spot_id, vehicle_id):
        ensure_indexes(db, atomic=True)
        racing = SessionLedger(db, RacingSpots(stack.spots, db, "bob", vehicle_id), stack.users,
                               clock=clock, atomic=True)

        with pytest.raises(ActiveSessionExists):
            racing.start("bob", spot_id, vehicle_id)
        assert stack.spots.get(spot_id).status == "available"
        assert db[SESSIONS].count_documents({"user_id": "bob", "is_active": True}) == 1
