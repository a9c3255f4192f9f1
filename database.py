"""
MongoDB access for the parking API.

Collections are named after the lowercased schema class ("parkingspot",
"parkingsession", "user", ...). Datetimes are stored as naive UTC with
millisecond precision, which is what the server hands back on read.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from config import Config
from errors import NotFound, UpstreamFailure

logger = logging.getLogger(__name__)

SPOTS = "parkingspot"
SESSIONS = "parkingsession"
USERS = "user"
PREFERENCES = "userpreferences"
REWARDS = "reward"
NOTIFICATIONS = "notification"
RATINGS = "spotrating"

M = TypeVar("M", bound=BaseModel)

db: Optional[Database] = None
if Config.DATABASE_URL and Config.DATABASE_NAME:
    client = MongoClient(Config.DATABASE_URL)
    db = client[Config.DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise UpstreamFailure("Database not configured")
    return db


def to_store_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utcnow() -> datetime:
    return to_store_time(datetime.now(timezone.utc))


def object_id(value: str, label: str = "Record") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def to_model(model_cls: Type[M], doc: Dict[str, Any]) -> M:
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return model_cls.model_validate(data)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude={"id"})
    else:
        data_dict = dict(data)
    data_dict.setdefault("updated_at", utcnow())
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def compare_and_set(
    collection: Collection,
    key: dict,
    mutate: Callable[[dict], dict],
    retries: Optional[int] = None,
) -> Optional[dict]:
    """Read a document, compute new field values, write them only if unchanged.

    ``mutate`` receives the current document and returns the fields to set.
    The write is guarded on every one of those fields still holding the value
    that was read, so a concurrent writer forces a re-read instead of a lost
    update. Returns the updated document, or None when ``key`` matches nothing.
    """
    attempts = retries or Config.CAS_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        current = collection.find_one(key)
        if current is None:
            return None
        changes = mutate(current)
        guard = {"_id": current["_id"]}
        for field in changes:
            guard[field] = current.get(field)
        update = dict(changes, updated_at=utcnow())
        result = collection.update_one(guard, {"$set": update})
        if result.matched_count:
            current.update(update)
            return current
        logger.info(f"Write conflict on {collection.name} {current['_id']} (attempt {attempt})")
    raise UpstreamFailure(f"Too much contention updating {collection.name}")


def ensure_indexes(database: Database, atomic: Optional[bool] = None):
    if atomic is None:
        atomic = Config.ATOMIC_WRITES
    database[SPOTS].create_index([("location.latitude", ASCENDING), ("status", ASCENDING)])
    database[SPOTS].create_index([("status", ASCENDING), ("expires_at", ASCENDING)])
    database[SESSIONS].create_index([("user_id", ASCENDING), ("start_time", DESCENDING)])
    if atomic:
        database[SESSIONS].create_index(
            [("user_id", ASCENDING)],
            unique=True,
            partialFilterExpression={"is_active": True},
            name="one_active_session_per_user",
        )
    database[NOTIFICATIONS].create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
    database[REWARDS].create_index([("user_id", ASCENDING), ("timestamp", DESCENDING)])
    database[USERS].create_index([("points", DESCENDING)])
    logger.info("Indexes ensured")
