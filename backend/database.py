from __future__ import annotations
from typing import Any, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone

from config import get_settings
from errors import InvalidInput

settings = get_settings()

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db

def set_db(db: Optional[AsyncIOMotorDatabase]) -> None:
    """Point the module at an already-built database (tests, scripts)."""
    global _db
    _db = db

async def ensure_indexes() -> None:
    db = await get_db()
    await db["coupon"].create_index("coupon_code", unique=True)
    await db["cart"].create_index("owner", unique=True)
    await db["order"].create_index("payment_id")
    await db["order"].create_index("customer")

def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes, keep everything comparable with them
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise InvalidInput(f"Invalid {label}")

def to_client(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d

async def create_document(collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    db = await get_db()
    now = utcnow()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    return to_client(inserted) or {}

async def get_documents(collection_name: str, filter_dict: dict[str, Any] | None = None, limit: int = 100) -> list[dict[str, Any]]:
    db = await get_db()
    cursor = db[collection_name].find(filter_dict or {}).limit(limit)
    docs = []
    async for d in cursor:
        docs.append(to_client(d))
    return docs

async def paginate(
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    page: int = 1,
    limit: int = 10,
    docs_label: str = "docs",
    total_label: str = "total_docs",
) -> dict[str, Any]:
    db = await get_db()
    page = max(page, 1)
    limit = max(limit, 1)
    filter_dict = filter_dict or {}

    total = await db[collection_name].count_documents(filter_dict)
    cursor = (
        db[collection_name]
        .find(filter_dict)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    docs = [to_client(d) async for d in cursor]
    total_pages = max((total + limit - 1) // limit, 1)
    return {
        docs_label: docs,
        total_label: total,
        "limit": limit,
        "page": page,
        "total_pages": total_pages,
        "serial_number_start_from": (page - 1) * limit + 1,
        "has_prev_page": page > 1,
        "has_next_page": page < total_pages,
        "prev_page": page - 1 if page > 1 else None,
        "next_page": page + 1 if page < total_pages else None,
    }
