import logging
from typing import Callable, List, Optional

import pydantic
from bson import ObjectId
from pymongo.database import Database

from config import Config
from database import PREFERENCES, USERS, to_model, to_store_time, utcnow
from errors import NotFound, ValidationError, upstream_guard
from schemas import User, UserPreferences, Vehicle

logger = logging.getLogger(__name__)


class UserDirectory:
    """Profiles, vehicles and notification preferences.

    Users are keyed by the identity provider's uid, so ``_id`` is that string
    rather than an ObjectId.
    """

    def __init__(self, database: Database, clock: Callable = utcnow):
        self.db = database
        self.clock = clock

    @upstream_guard
    def register(self, user_id: str, email: str, display_name: Optional[str] = None,
                 photo_url: Optional[str] = None) -> User:
        existing = self.db[USERS].find_one({"_id": user_id})
        if existing is not None:
            return to_model(User, existing)

        user = User(
            email=email,
            display_name=display_name,
            photo_url=photo_url,
            created_at=to_store_time(self.clock()),
            points=Config.STARTING_POINTS,
        )
        self.db[USERS].insert_one(dict(user.model_dump(exclude={"id"}), _id=user_id))
        prefs = UserPreferences(user_id=user_id)
        self.db[PREFERENCES].insert_one(dict(prefs.model_dump(), _id=user_id))
        logger.info(f"Registered user {user_id} with {user.points} starting points")
        return user.model_copy(update={"id": user_id})

    @upstream_guard
    def get(self, user_id: str) -> User:
        doc = self.db[USERS].find_one({"_id": user_id})
        if doc is None:
            raise NotFound("User not found")
        return to_model(User, doc)

    def vehicles(self, user_id: str) -> List[Vehicle]:
        return self.get(user_id).vehicles

    @upstream_guard
    def add_vehicle(self, user_id: str, data: dict) -> Vehicle:
        try:
            vehicle = Vehicle.model_validate(dict(data, id=str(ObjectId()), user_id=user_id))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid vehicle: {e}") from e
        result = self.db[USERS].update_one({"_id": user_id}, {"$push": {"vehicles": vehicle.model_dump()}})
        if not result.matched_count:
            raise NotFound("User not found")
        return vehicle

    @upstream_guard
    def remove_vehicle(self, user_id: str, vehicle_id: str):
        result = self.db[USERS].update_one(
            {"_id": user_id, "vehicles.id": vehicle_id},
            {"$pull": {"vehicles": {"id": vehicle_id}}},
        )
        if not result.matched_count:
            raise NotFound("Vehicle not found")

    @upstream_guard
    def owns_vehicle(self, user_id: str, vehicle_id: str) -> Optional[bool]:
        """None when the user has no profile, else whether the vehicle is theirs."""
        doc = self.db[USERS].find_one({"_id": user_id}, {"vehicles": 1})
        if doc is None:
            return None
        return any(v.get("id") == vehicle_id for v in doc.get("vehicles", []))

    @upstream_guard
    def preferences(self, user_id: str) -> UserPreferences:
        doc = self.db[PREFERENCES].find_one({"_id": user_id})
        if doc is None:
            raise NotFound("User preferences not found")
        doc.pop("_id")
        return UserPreferences.model_validate(doc)

    @upstream_guard
    def update_preferences(self, user_id: str, changes: dict) -> UserPreferences:
        current = self.preferences(user_id)
        try:
            updated = UserPreferences.model_validate(
                {**current.model_dump(), **changes, "user_id": user_id}
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid preferences: {e}") from e
        self.db[PREFERENCES].update_one({"_id": user_id}, {"$set": updated.model_dump()})
        return updated
