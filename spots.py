import logging
from typing import Callable, List, Optional, Tuple, Union

import pydantic
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

import geo
from config import Config
from database import (
    RATINGS,
    SPOTS,
    compare_and_set,
    create_document,
    object_id,
    to_model,
    to_store_time,
    utcnow,
)
from errors import (
    NotFound,
    ParkingError,
    SpotUnavailable,
    Unauthorized,
    UpstreamFailure,
    ValidationError,
    upstream_guard,
)
from schemas import Location, NearbySpot, ParkingSpot, SpotRating, SpotReport, User
from uploads import upload_photo

logger = logging.getLogger(__name__)

# (filename, content, content_type)
Photo = Tuple[str, bytes, str]

_DEFAULT = object()


class SpotLifecycle:
    """Reported spots: available -> taken -> expired.

    Deletion is open to the reporter at any time and to anyone once the spot
    has expired. Verification counts toward a trust threshold.
    """

    def __init__(self, database: Database, points=None, notifications=None,
                 uploader: Callable = upload_photo, clock: Callable = utcnow,
                 atomic: Optional[bool] = None, prefetch_factor: Optional[int] = None):
        self.db = database
        self.points = points
        self.notifications = notifications
        self.uploader = uploader
        self.clock = clock
        self.atomic = Config.ATOMIC_WRITES if atomic is None else atomic
        self.prefetch_factor = (
            Config.NEARBY_PREFETCH_FACTOR if prefetch_factor is None else prefetch_factor
        )

    @property
    def collection(self):
        return self.db[SPOTS]

    def _load(self, spot_id: str) -> dict:
        doc = self.collection.find_one({"_id": object_id(spot_id, "Spot")})
        if doc is None:
            raise NotFound("Spot not found")
        return doc

    def _grant(self, user_id: str, delta: int, description: str):
        if self.points is None:
            return
        try:
            self.points.grant(user_id, delta, description)
        except ParkingError as e:
            logger.error(f"Failed to grant {delta} points to {user_id} (primary write kept): {e}")

    @upstream_guard
    def report(self, data: Union[SpotReport, dict], reporter: User, photo: Optional[Photo] = None) -> str:
        try:
            report = SpotReport.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid spot report: {e}") from e

        photos = []
        if photo is not None:
            try:
                photos.append(self.uploader(*photo))
            except UpstreamFailure as e:
                logger.warning(f"Photo upload failed, continuing without photo: {e}")

        spot = ParkingSpot(
            **report.model_dump(exclude={"expires_at"}),
            expires_at=to_store_time(report.expires_at),
            reporter_id=reporter.id,
            reporter_name=reporter.display_name or "Anonymous",
            timestamp=to_store_time(self.clock()),
            photos=photos,
        )
        spot_id = create_document(self.db, SPOTS, spot)
        logger.info(f"Spot {spot_id} reported by {reporter.id}")

        self._grant(reporter.id, Config.POINTS_FOR_REPORTING, "Reported a parking spot")

        if self.notifications is not None:
            try:
                sent = self.notifications.notify_nearby_users(spot.model_copy(update={"id": spot_id}))
                logger.info(f"Spot {spot_id} announced to {sent} users")
            except ParkingError as e:
                logger.warning(f"Could not announce spot {spot_id}: {e}")

        return spot_id

    @upstream_guard
    def get(self, spot_id: str) -> ParkingSpot:
        return to_model(ParkingSpot, self._load(spot_id))

    def _band_candidates(self, box: geo.BoundingBox, limit: Optional[int]):
        cursor = self.collection.find({
            "location.latitude": {"$gte": box.min_lat, "$lte": box.max_lat},
            "status": "available",
        }).sort([("location.latitude", ASCENDING), ("timestamp", DESCENDING)])
        if limit:
            cursor = cursor.limit(limit)
        for doc in cursor:
            yield to_model(ParkingSpot, doc)

    @upstream_guard
    def find_nearby(self, center: Union[Location, dict], radius_km: float = 1.0,
                    max_results: int = 20, prefetch_limit=_DEFAULT) -> List[NearbySpot]:
        try:
            center = Location.model_validate(center)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid location: {e}") from e
        if radius_km <= 0:
            raise ValidationError("radius_km must be positive")
        if max_results <= 0:
            raise ValidationError("max_results must be positive")

        if prefetch_limit is _DEFAULT:
            prefetch_limit = geo.prefetch_limit_for(max_results, self.prefetch_factor)
        return geo.find_nearby(center, radius_km, max_results, self._band_candidates, prefetch_limit)

    @upstream_guard
    def verify(self, spot_id: str, user_id: str) -> ParkingSpot:
        """Count one more confirmation; the same user may verify repeatedly."""
        threshold = Config.VERIFICATION_THRESHOLD

        def bump(doc):
            count = (doc.get("verified_count") or 0) + 1
            return {"verified_count": count, "verified": count >= threshold}

        key = {"_id": object_id(spot_id, "Spot")}
        if self.atomic:
            doc = compare_and_set(self.collection, key, bump)
            if doc is None:
                raise NotFound("Spot not found")
        else:
            doc = self._load(spot_id)
            changes = dict(bump(doc), updated_at=utcnow())
            self.collection.update_one(key, {"$set": changes})
            doc.update(changes)

        logger.info(f"Spot {spot_id} verified by {user_id} ({doc['verified_count']} total)")
        self._grant(user_id, Config.POINTS_FOR_VERIFYING, "Verified a parking spot")
        return to_model(ParkingSpot, doc)

    @upstream_guard
    def mark_taken(self, spot_id: str):
        key = {"_id": object_id(spot_id, "Spot")}
        update = {"$set": {"status": "taken", "updated_at": utcnow()}}
        if self.atomic:
            result = self.collection.update_one(dict(key, status="available"), update)
            if not result.matched_count:
                self._load(spot_id)
                raise SpotUnavailable()
        else:
            result = self.collection.update_one(key, update)
            if not result.matched_count:
                raise NotFound("Spot not found")

    @upstream_guard
    def mark_expired(self, spot_id: str):
        result = self.collection.update_one(
            {"_id": object_id(spot_id, "Spot")},
            {"$set": {"status": "expired", "updated_at": utcnow()}},
        )
        if not result.matched_count:
            raise NotFound("Spot not found")

    @upstream_guard
    def delete(self, spot_id: str, requester_id: str):
        doc = self._load(spot_id)
        if doc["reporter_id"] != requester_id and doc["status"] != "expired":
            raise Unauthorized("Not authorized to delete this spot")
        self.collection.delete_one({"_id": doc["_id"]})
        logger.info(f"Spot {spot_id} deleted by {requester_id}")

    @upstream_guard
    def rate(self, spot_id: str, user_id: str, rating: int, comment: Optional[str] = None) -> ParkingSpot:
        try:
            entry = SpotRating(spot_id=spot_id, user_id=user_id, rating=rating,
                               comment=comment, timestamp=to_store_time(self.clock()))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid rating: {e}") from e

        def fold(doc):
            count = doc.get("rating_count") or 0
            average = ((doc.get("rating") or 0) * count + rating) / (count + 1)
            return {"rating": round(average, 2), "rating_count": count + 1}

        key = {"_id": object_id(spot_id, "Spot")}
        if self.atomic:
            doc = compare_and_set(self.collection, key, fold)
            if doc is None:
                raise NotFound("Spot not found")
        else:
            doc = self._load(spot_id)
            changes = fold(doc)
            self.collection.update_one(key, {"$set": changes})
            doc.update(changes)

        create_document(self.db, RATINGS, entry)
        return to_model(ParkingSpot, doc)

    @upstream_guard
    def expire_stale(self, now=None) -> int:
        """Expire available spots whose estimated expiry has passed."""
        now = to_store_time(now or self.clock())
        result = self.collection.update_many(
            {"status": "available", "expires_at": {"$lte": now}},
            {"$set": {"status": "expired", "updated_at": utcnow()}},
        )
        if result.modified_count:
            logger.info(f"Expired {result.modified_count} stale spots")
        return result.modified_count
