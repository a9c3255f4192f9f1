import logging
from typing import Callable, List, Optional

from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Config
from database import (
    REWARDS,
    USERS,
    compare_and_set,
    create_document,
    get_documents,
    object_id,
    to_model,
    to_store_time,
    utcnow,
)
from errors import AlreadyClaimed, NotFound, Unauthorized, upstream_guard
from schemas import Reward

logger = logging.getLogger(__name__)


class LeaderboardEntry(BaseModel):
    id: str
    display_name: str
    points: int


def default_description(delta: int) -> str:
    if delta > 0:
        return f"Earned {delta} points for contributing to the community"
    return f"Used {abs(delta)} points"


class PointsLedger:
    """User balances plus the append-only reward log that explains them.

    A balance change and its reward record are two writes; the reward append is
    best-effort and a failure there leaves the new balance in place.
    """

    def __init__(self, database: Database, notifications=None, clock: Callable = utcnow,
                 atomic: Optional[bool] = None):
        self.db = database
        self.notifications = notifications
        self.clock = clock
        self.atomic = Config.ATOMIC_WRITES if atomic is None else atomic

    def _adjust_balance(self, user_id: str, delta: int) -> int:
        users = self.db[USERS]
        if self.atomic:
            updated = compare_and_set(
                users, {"_id": user_id}, lambda doc: {"points": (doc.get("points") or 0) + delta}
            )
            if updated is None:
                raise NotFound("User not found")
            return updated["points"]

        doc = users.find_one({"_id": user_id})
        if doc is None:
            raise NotFound("User not found")
        points = (doc.get("points") or 0) + delta
        users.update_one({"_id": user_id}, {"$set": {"points": points, "updated_at": utcnow()}})
        return points

    @upstream_guard
    def grant(self, user_id: str, delta: int, description: Optional[str] = None) -> int:
        """Apply a signed points delta and log it; returns the new balance."""
        balance = self._adjust_balance(user_id, delta)
        logger.info(f"Points {delta:+d} for {user_id}, balance now {balance}")

        try:
            create_document(self.db, REWARDS, Reward(
                user_id=user_id,
                type="points",
                points_earned=delta,
                description=description or default_description(delta),
                timestamp=to_store_time(self.clock()),
                claimed=True,
            ))
        except PyMongoError:
            logger.exception(f"Reward record for {user_id} ({delta:+d}) was not written; balance kept")
        return balance

    @upstream_guard
    def balance(self, user_id: str) -> int:
        doc = self.db[USERS].find_one({"_id": user_id}, {"points": 1})
        if doc is None:
            raise NotFound("User not found")
        return doc.get("points") or 0

    @upstream_guard
    def rewards_for(self, user_id: str, limit: int = 20) -> List[Reward]:
        docs = get_documents(self.db, REWARDS, {"user_id": user_id}, sort=[("timestamp", DESCENDING)], limit=limit)
        return [to_model(Reward, doc) for doc in docs]

    @upstream_guard
    def reward(self, user_id: str, points: int, description: str) -> str:
        """Offer points as an unclaimed reward and tell the user about it."""
        reward_id = create_document(self.db, REWARDS, Reward(
            user_id=user_id,
            type="points",
            points_earned=points,
            description=description,
            timestamp=to_store_time(self.clock()),
            claimed=False,
        ))
        if self.notifications is not None:
            self.notifications.send_reward(user_id, points, description)
        return reward_id

    @upstream_guard
    def claim(self, reward_id: str, requester_id: Optional[str] = None) -> int:
        """Mark a reward claimed and add its points; returns the new balance."""
        rewards = self.db[REWARDS]
        doc = rewards.find_one({"_id": object_id(reward_id, "Reward")})
        if doc is None:
            raise NotFound("Reward not found")
        if requester_id is not None and doc["user_id"] != requester_id:
            raise Unauthorized("Not authorized to claim this reward")
        if doc.get("claimed"):
            raise AlreadyClaimed()

        if self.atomic:
            result = rewards.update_one({"_id": doc["_id"], "claimed": False}, {"$set": {"claimed": True}})
            if not result.matched_count:
                raise AlreadyClaimed()
        else:
            rewards.update_one({"_id": doc["_id"]}, {"$set": {"claimed": True}})

        return self._adjust_balance(doc["user_id"], doc["points_earned"])

    @upstream_guard
    def ranking(self, user_id: str) -> int:
        """1-based position on the points table, or -1 for an unknown user."""
        cursor = self.db[USERS].find({}, {"_id": 1}).sort("points", DESCENDING)
        for position, doc in enumerate(cursor, start=1):
            if doc["_id"] == user_id:
                return position
        return -1

    @upstream_guard
    def leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        cursor = self.db[USERS].find({}).sort("points", DESCENDING).limit(limit)
        return [
            LeaderboardEntry(
                id=str(doc["_id"]),
                display_name=doc.get("display_name") or "Anonymous",
                points=doc.get("points") or 0,
            )
            for doc in cursor
        ]
