from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING

from zemi import config
from zemi.realtime import INSERT, UPDATE, ChangeEvent, feed

_client: AsyncIOMotorClient | None = None
_db = None


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes, keep ours comparable
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db():
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(config.DATABASE_URL)
        _db = _client[config.DATABASE_NAME]
    return _db


def use_database(db):
    """Point the helpers at an already opened database (tests, scripts)."""
    global _db
    _db = db


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


async def ensure_indexes():
    db = await get_db()
    await db["user"].create_index("email", unique=True)
    await db["profile"].create_index("user_id", unique=True)
    await db["rating"].create_index([("booking_id", ASCENDING), ("rater_id", ASCENDING)], unique=True)
    await db["message"].create_index([("booking_id", ASCENDING), ("created_at", ASCENDING)])
    await db["trip"].create_index([("status", ASCENDING), ("departure_time", ASCENDING)])


async def create_document(collection_name: str, data: dict | BaseModel):
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude={"id"})
    db = await get_db()
    now = utcnow()
    if data.get("created_at") is None:
        data["created_at"] = now
    data["updated_at"] = now
    res = await db[collection_name].insert_one(data)
    data["_id"] = res.inserted_id
    feed.publish(ChangeEvent(collection_name, INSERT, new=serialize(data)))
    return data


async def get_document(collection_name: str, doc_id: Any):
    """Fetch one document by id; malformed ids behave like missing ones."""
    _oid = to_object_id(doc_id)
    if _oid is None:
        return None
    db = await get_db()
    return await db[collection_name].find_one({"_id": _oid})


async def get_documents(
    collection_name: str,
    filter_dict: dict | None = None,
    limit: int | None = None,
    sort: List[Tuple[str, int]] | None = None,
):
    db = await get_db()
    cursor = db[collection_name].find(filter_dict or {}).sort(sort or [("created_at", DESCENDING)])
    if limit:
        cursor = cursor.limit(limit)
    return [doc async for doc in cursor]


async def update_document(collection_name: str, filter_dict: dict, updates: dict):
    """Apply ``$set`` to the first matching document and publish the change.

    Returns the updated document, or None when nothing matched.
    """
    db = await get_db()
    old = await db[collection_name].find_one(filter_dict)
    if not old:
        return None
    updates = dict(updates, updated_at=utcnow())
    await db[collection_name].update_one({"_id": old["_id"]}, {"$set": updates})
    new = await db[collection_name].find_one({"_id": old["_id"]})
    feed.publish(ChangeEvent(collection_name, UPDATE, new=serialize(new), old=serialize(old)))
    return new


async def update_documents(collection_name: str, ids: Iterable[ObjectId], updates: dict) -> int:
    ids = list(ids)
    if not ids:
        return 0
    db = await get_db()
    updates = dict(updates, updated_at=utcnow())
    res = await db[collection_name].update_many({"_id": {"$in": ids}}, {"$set": updates})
    return res.modified_count
