import logging
from typing import Callable, List

from pymongo import DESCENDING
from pymongo.database import Database

from database import NOTIFICATIONS, PREFERENCES, create_document, object_id, to_store_time, utcnow
from errors import NotFound, Unauthorized, upstream_guard
from schemas import (
    Notification,
    NotificationData,
    ParkingSpot,
    RewardEarnedData,
    SpotFoundData,
    SpotTakenData,
    TimeExpiringData,
    notification_adapter,
)

logger = logging.getLogger(__name__)


class NotificationCenter:
    """In-app notifications; delivery to devices is out of scope."""

    def __init__(self, database: Database, clock: Callable = utcnow):
        self.db = database
        self.clock = clock

    @upstream_guard
    def send(self, user_id: str, data: NotificationData, title: str, message: str) -> str:
        """Store a notification, or return "" if the user switched them off."""
        prefs = self.db[PREFERENCES].find_one({"_id": user_id})
        if prefs is None:
            raise NotFound("User preferences not found")
        if not prefs.get("notifications_enabled", True):
            logger.info(f"Notifications disabled for {user_id}, skipping {data.notification_type}")
            return ""

        notification_id = create_document(self.db, NOTIFICATIONS, {
            "user_id": user_id,
            "type": data.notification_type,
            "title": title,
            "message": message,
            "timestamp": to_store_time(self.clock()),
            "read": False,
            "data": data.model_dump(),
        })
        logger.info(f"Notification {notification_id} ({data.notification_type}) sent to {user_id}")
        return notification_id

    @upstream_guard
    def list_for(self, user_id: str, limit: int = 20) -> List[Notification]:
        cursor = (
            self.db[NOTIFICATIONS]
            .find({"user_id": user_id})
            .sort("timestamp", DESCENDING)
            .limit(limit)
        )
        results = []
        for doc in cursor:
            doc["id"] = str(doc.pop("_id"))
            results.append(notification_adapter.validate_python(doc))
        return results

    def _owned(self, notification_id: str, user_id: str) -> dict:
        doc = self.db[NOTIFICATIONS].find_one({"_id": object_id(notification_id, "Notification")})
        if doc is None:
            raise NotFound("Notification not found")
        if doc["user_id"] != user_id:
            raise Unauthorized("Not authorized to modify this notification")
        return doc

    @upstream_guard
    def mark_read(self, notification_id: str, user_id: str):
        doc = self._owned(notification_id, user_id)
        self.db[NOTIFICATIONS].update_one({"_id": doc["_id"]}, {"$set": {"read": True}})

    @upstream_guard
    def mark_all_read(self, user_id: str) -> int:
        result = self.db[NOTIFICATIONS].update_many(
            {"user_id": user_id, "read": False}, {"$set": {"read": True}}
        )
        return result.modified_count

    @upstream_guard
    def delete(self, notification_id: str, user_id: str):
        doc = self._owned(notification_id, user_id)
        self.db[NOTIFICATIONS].delete_one({"_id": doc["_id"]})

    @upstream_guard
    def notify_nearby_users(self, spot: ParkingSpot) -> int:
        """Tell every interested user (other than the reporter) about a new spot.

        Interest is the user's preferred spot types and cost ceiling; user
        locations are not tracked, so the fan-out is not distance-limited.
        """
        query = {
            "_id": {"$ne": spot.reporter_id},
            "notifications_enabled": True,
            "preferred_parking_types": spot.type,
        }
        if spot.cost is not None:
            query["$or"] = [
                {"max_parking_cost": None},
                {"max_parking_cost": {"$gte": spot.cost}},
            ]

        payload = SpotFoundData(
            spot_id=spot.id,
            latitude=spot.location.latitude,
            longitude=spot.location.longitude,
            spot_type=spot.type,
            cost=spot.cost,
        )
        sent = 0
        for prefs in self.db[PREFERENCES].find(query):
            notification_id = self.send(
                prefs["_id"],
                payload,
                "Parking Spot Available!",
                f"A new {spot.type} parking spot was just reported nearby",
            )
            if notification_id:
                sent += 1
        return sent

    def send_expiry(self, user_id: str, session_id: str, minutes_remaining: int) -> str:
        return self.send(
            user_id,
            TimeExpiringData(session_id=session_id, minutes_remaining=minutes_remaining),
            "Parking Time Expiring",
            f"Your parking time will expire in {minutes_remaining} minutes",
        )

    def send_reward(self, user_id: str, points_earned: int, description: str) -> str:
        return self.send(
            user_id,
            RewardEarnedData(points_earned=points_earned, description=description),
            "You Earned Points!",
            f"You earned {points_earned} points: {description}",
        )

    def send_spot_taken(self, reporter_id: str, spot_id: str, session_id: str) -> str:
        return self.send(
            reporter_id,
            SpotTakenData(spot_id=spot_id, session_id=session_id),
            "Your Spot Was Taken",
            "Someone just started parking at a spot you reported",
        )
