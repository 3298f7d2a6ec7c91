from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from .config import get_settings
from .errors import InvalidIdError

logger = logging.getLogger(__name__)

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db


def close_db() -> None:
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


def utcnow() -> datetime:
    # Mongo hands back naive UTC, so everything stored or compared stays naive.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise InvalidIdError(str(value))


def serialize_document(doc: Any) -> Any:
    """Make a Mongo document JSON friendly: ``_id`` becomes ``id`` and every
    ObjectId becomes its hex string."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize_document(v) for v in doc]
    if isinstance(doc, dict):
        out = {}
        for key, value in doc.items():
            if key == "_id":
                out["id"] = str(value)
            else:
                out[key] = serialize_document(value)
        return out
    return doc


async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    now = utcnow()
    data_with_meta = {**data, "createdAt": now, "updatedAt": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return inserted or {**data_with_meta, "_id": result.inserted_id}


async def find_document(db: AsyncIOMotorDatabase, collection_name: str, doc_id: Any) -> Optional[dict[str, Any]]:
    return await db[collection_name].find_one({"_id": to_object_id(doc_id)})


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    skip: int = 0,
    sort: list[tuple[str, int]] | None = None,
) -> list[dict[str, Any]]:
    # limit=0 means no limit
    cursor = db[collection_name].find(filter_dict or {}, sort=sort, skip=skip, limit=limit)
    docs = []
    async for d in cursor:
        docs.append(d)
    return docs


async def update_document(db: AsyncIOMotorDatabase, collection_name: str, doc_id: Any, fields: dict[str, Any]) -> bool:
    """Set ``fields`` on one document. True when the document exists, even if
    nothing actually changed."""
    result = await db[collection_name].update_one(
        {"_id": to_object_id(doc_id)},
        {"$set": {**fields, "updatedAt": utcnow()}},
    )
    return result.matched_count > 0


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db["orders"].create_index([("orderId", ASCENDING)], unique=True)
    await db["orders"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    await db["coupons"].create_index([("code", ASCENDING)], unique=True)
    await db["stock_adjustments"].create_index([("status", ASCENDING)])
    logger.info("Database indexes ensured")
