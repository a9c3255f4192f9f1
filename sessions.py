import logging
import math
from datetime import datetime
from typing import Callable, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Config
from database import SESSIONS, SPOTS, create_document, get_documents, object_id, to_model, to_store_time, utcnow
from errors import (
    ActiveSessionExists,
    AlreadyEnded,
    NotFound,
    ParkingError,
    Unauthorized,
    ValidationError,
    upstream_guard,
)
from schemas import ParkingSession

logger = logging.getLogger(__name__)


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, halves rounded up."""
    ms = (end - start).total_seconds() * 1000
    return int(math.floor(ms / 60000 + 0.5))


class SessionLedger:
    """Parking sessions: active -> ended, keeping the spot status in step."""

    def __init__(self, database: Database, spots, users=None, notifications=None,
                 clock: Callable = utcnow, atomic: Optional[bool] = None):
        self.db = database
        self.spots = spots
        self.users = users
        self.notifications = notifications
        self.clock = clock
        self.atomic = Config.ATOMIC_WRITES if atomic is None else atomic

    @property
    def collection(self):
        return self.db[SESSIONS]

    def _load(self, session_id: str) -> dict:
        doc = self.collection.find_one({"_id": object_id(session_id, "Session")})
        if doc is None:
            raise NotFound("Session not found")
        return doc

    def _release(self, spot_id: str):
        """Put a spot taken by a failed start back to available."""
        self.db[SPOTS].update_one(
            {"_id": object_id(spot_id), "status": "taken"},
            {"$set": {"status": "available", "updated_at": utcnow()}},
        )

    @upstream_guard
    def start(self, user_id: str, spot_id: str, vehicle_id: str) -> str:
        if not vehicle_id:
            raise ValidationError("A vehicle must be selected to start parking")
        if self.users is not None and not self.users.owns_vehicle(user_id, vehicle_id):
            raise ValidationError("Vehicle is not registered to this user")
        spot = self.spots.get(spot_id)

        session = ParkingSession(
            user_id=user_id,
            spot_id=spot_id,
            vehicle_id=vehicle_id,
            start_time=to_store_time(self.clock()),
        )

        if self.atomic:
            if self.collection.find_one({"user_id": user_id, "is_active": True}) is not None:
                raise ActiveSessionExists()
            self.spots.mark_taken(spot_id)
            try:
                session_id = create_document(self.db, SESSIONS, session)
            except DuplicateKeyError:
                self._release(spot_id)
                raise ActiveSessionExists()
            except PyMongoError:
                self._release(spot_id)
                raise
        else:
            session_id = create_document(self.db, SESSIONS, session)
            self.spots.mark_taken(spot_id)

        logger.info(f"Session {session_id} started by {user_id} at spot {spot_id}")

        if self.notifications is not None and spot.reporter_id != user_id:
            try:
                self.notifications.send_spot_taken(spot.reporter_id, spot_id, session_id)
            except ParkingError as e:
                logger.warning(f"Could not notify reporter of spot {spot_id}: {e}")

        return session_id

    @upstream_guard
    def end(self, session_id: str) -> ParkingSession:
        doc = self._load(session_id)
        if not doc.get("is_active"):
            raise AlreadyEnded()

        end_time = to_store_time(self.clock())
        changes = {
            "end_time": end_time,
            "duration": elapsed_minutes(doc["start_time"], end_time),
            "is_active": False,
            "updated_at": utcnow(),
        }
        key = {"_id": doc["_id"]}
        if self.atomic:
            key["is_active"] = True
        result = self.collection.update_one(key, {"$set": changes})
        if not result.matched_count:
            raise AlreadyEnded()
        doc.update(changes)
        logger.info(f"Session {session_id} ended after {changes['duration']} minutes")

        try:
            self.spots.mark_expired(doc["spot_id"])
        except NotFound:
            logger.warning(f"Spot {doc['spot_id']} vanished before session {session_id} ended")

        return to_model(ParkingSession, doc)

    @upstream_guard
    def get(self, session_id: str) -> ParkingSession:
        return to_model(ParkingSession, self._load(session_id))

    @upstream_guard
    def active_for(self, user_id: str) -> Optional[ParkingSession]:
        doc = self.collection.find_one(
            {"user_id": user_id, "is_active": True},
            sort=[("start_time", DESCENDING)],
        )
        return to_model(ParkingSession, doc) if doc else None

    @upstream_guard
    def history_for(self, user_id: str, limit: int = 10) -> List[ParkingSession]:
        docs = get_documents(self.db, SESSIONS, {"user_id": user_id}, sort=[("start_time", DESCENDING)], limit=limit)
        return [to_model(ParkingSession, doc) for doc in docs]

    @upstream_guard
    def set_reminder(self, session_id: str, reminder_time: datetime):
        result = self.collection.update_one(
            {"_id": object_id(session_id, "Session")},
            {"$set": {"reminder_set": True, "reminder_time": to_store_time(reminder_time)}},
        )
        if not result.matched_count:
            raise NotFound("Session not found")

    @upstream_guard
    def cancel_reminder(self, session_id: str):
        result = self.collection.update_one(
            {"_id": object_id(session_id, "Session")},
            {"$set": {"reminder_set": False, "reminder_time": None}},
        )
        if not result.matched_count:
            raise NotFound("Session not found")

    @upstream_guard
    def delete(self, session_id: str, requester_id: str):
        doc = self._load(session_id)
        if doc["user_id"] != requester_id:
            raise Unauthorized("Not authorized to delete this session")
        self.collection.delete_one({"_id": doc["_id"]})

    @upstream_guard
    def send_due_reminders(self, now=None) -> int:
        """Send time_expiring notices for active sessions whose reminder is due."""
        now = to_store_time(now or self.clock())
        due = list(self.collection.find({
            "is_active": True,
            "reminder_set": True,
            "reminder_time": {"$lte": now},
        }))

        sent = 0
        for doc in due:
            session_id = str(doc["_id"])
            remaining = 0
            spot = self.db[SPOTS].find_one({"_id": object_id(doc["spot_id"])})
            if spot and spot.get("time_limit"):
                remaining = max(0, spot["time_limit"] - elapsed_minutes(doc["start_time"], now))

            if self.notifications is not None:
                try:
                    self.notifications.send_expiry(doc["user_id"], session_id, remaining)
                    sent += 1
                except NotFound as e:
                    logger.warning(f"Dropping reminder for session {session_id}: {e}")
                except ParkingError as e:
                    logger.error(f"Reminder for session {session_id} failed: {e}")
                    continue

            self.collection.update_one(
                {"_id": doc["_id"], "reminder_time": doc["reminder_time"]},
                {"$set": {"reminder_set": False, "reminder_time": None}},
            )
        return sent
