from __future__ import annotations
import re
import uuid
from typing import Any, Optional

import structlog
from pymongo import UpdateOne

from database import get_db, get_documents, to_object_id, utcnow
from errors import InsufficientStock, NotFound

logger = structlog.get_logger(__name__)


async def list_products(q: Optional[str] = None, category: Optional[str] = None, limit: int = 200) -> list[dict[str, Any]]:
    filter_dict: dict[str, Any] = {}
    if q:
        # Simple case-insensitive name search
        filter_dict["name"] = {"$regex": re.escape(q), "$options": "i"}
    if category:
        filter_dict["category"] = to_object_id(category, "category id")
    return await get_documents("product", filter_dict, limit=limit)


async def get_product(product_id) -> dict[str, Any]:
    db = await get_db()
    product = await db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFound("Product does not exist")
    return product


def stock_error(product: dict[str, Any], quantity: int) -> InsufficientStock:
    stock = product.get("stock", 0)
    if stock > 0:
        return InsufficientStock(f"Only {stock} products are remaining. But you are adding {quantity}")
    return InsufficientStock("Product is out of stock")


async def ensure_in_stock(items: list[dict[str, Any]]) -> None:
    """Best-effort availability check; the authoritative one is decrement_stock."""
    db = await get_db()
    ids = [item["product_id"] for item in items]
    products = {p["_id"]: p async for p in db["product"].find({"_id": {"$in": ids}})}
    for item in items:
        product = products.get(item["product_id"])
        if product is None:
            raise NotFound("Product does not exist")
        if item["quantity"] > product.get("stock", 0):
            raise stock_error(product, item["quantity"])


async def decrement_stock(items: list[dict[str, Any]]) -> None:
    """
    Take ``quantity`` units of every line out of stock, all or nothing.

    All lines go out in one unordered bulk write. Each is a conditional
    ``$inc`` that only matches while enough stock is left, so concurrent
    orders can never push stock below zero. Matched products are tagged with
    a hold id so a partial write can be told apart and put back, after which
    ``InsufficientStock`` is raised.
    """
    if not items:
        return
    db = await get_db()
    hold = uuid.uuid4().hex
    now = utcnow()
    result = await db["product"].bulk_write(
        [
            UpdateOne(
                {"_id": item["product_id"], "stock": {"$gte": item["quantity"]}},
                {
                    "$inc": {"stock": -item["quantity"]},
                    "$set": {"updated_at": now},
                    "$addToSet": {"stock_holds": hold},
                },
            )
            for item in items
        ],
        ordered=False,
    )
    ids = [item["product_id"] for item in items]
    if result.modified_count == len(items):
        await db["product"].update_many({"_id": {"$in": ids}}, {"$pull": {"stock_holds": hold}})
        return

    taken = {p["_id"] async for p in db["product"].find({"_id": {"$in": ids}, "stock_holds": hold}, {"_id": 1})}
    if taken:
        await db["product"].bulk_write(
            [
                UpdateOne({"_id": item["product_id"]}, {"$inc": {"stock": item["quantity"]}, "$pull": {"stock_holds": hold}})
                for item in items
                if item["product_id"] in taken
            ],
            ordered=False,
        )

    short = next(item for item in items if item["product_id"] not in taken)
    logger.warning("stock_shortfall", product_id=str(short["product_id"]), requested=short["quantity"])
    product = await db["product"].find_one({"_id": short["product_id"]})
    if product is None:
        raise NotFound("Product does not exist")
    raise stock_error(product, short["quantity"])
