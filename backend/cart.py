from __future__ import annotations
from datetime import datetime
from typing import Any, Optional

from pymongo import ReturnDocument

from catalog import get_product, stock_error
from database import get_db, to_client, to_object_id, utcnow
from errors import InvalidInput, NotFound


def coupon_is_live(coupon: Optional[dict[str, Any]], now: Optional[datetime] = None) -> bool:
    if not coupon or not coupon.get("is_active"):
        return False
    now = now or utcnow()
    start, expiry = coupon.get("start_date"), coupon.get("expiry_date")
    if start is not None and start > now:
        return False
    return expiry is not None and now < expiry


def empty_cart(cart_id=None) -> dict[str, Any]:
    return {
        "id": str(cart_id) if cart_id else None,
        "items": [],
        "cart_total": 0,
        "discounted_total": 0,
        "coupon": None,
    }


# Totals are never stored, every read joins live product prices and the coupon
async def get_cart(owner) -> dict[str, Any]:
    db = await get_db()
    cart = await db["cart"].find_one({"owner": owner})
    if not cart or not cart.get("items"):
        return empty_cart(cart["_id"] if cart else None)

    ids = [line["product_id"] for line in cart["items"]]
    products = {p["_id"]: p async for p in db["product"].find({"_id": {"$in": ids}})}

    items = []
    cart_total = 0.0
    for line in cart["items"]:
        product = products.get(line["product_id"])
        # product deleted after it was added
        if product is None:
            continue
        items.append({"product": to_client(product), "quantity": line["quantity"]})
        cart_total += float(product.get("price", 0)) * line["quantity"]

    coupon = None
    if cart.get("coupon"):
        coupon = await db["coupon"].find_one({"_id": cart["coupon"]})
        if not coupon_is_live(coupon):
            coupon = None

    discounted_total = cart_total - coupon["discount_value"] if coupon else cart_total
    return {
        "id": str(cart["_id"]),
        "items": items,
        "cart_total": round(cart_total, 2),
        "discounted_total": round(max(discounted_total, 0.0), 2),
        "coupon": to_client(coupon),
    }


async def upsert_item(owner, product_id: str, quantity: int = 1) -> dict[str, Any]:
    if quantity < 1:
        raise InvalidInput("Quantity can not be less than 1")

    product = await get_product(product_id)
    if quantity > product.get("stock", 0):
        raise stock_error(product, quantity)

    db = await get_db()
    pid = product["_id"]
    now = utcnow()
    await db["cart"].update_one(
        {"owner": owner},
        {"$setOnInsert": {"items": [], "coupon": None, "created_at": now}},
        upsert=True,
    )

    for _ in range(2):
        # The client always sends the absolute quantity. Changing an existing
        # line drops the coupon so the minimum cart value can't be gamed.
        result = await db["cart"].update_one(
            {"owner": owner, "items.product_id": pid},
            {"$set": {"items.$.quantity": quantity, "coupon": None, "updated_at": now}},
        )
        if result.matched_count:
            break
        result = await db["cart"].update_one(
            {"owner": owner, "items.product_id": {"$ne": pid}},
            {"$push": {"items": {"product_id": pid, "quantity": quantity}}, "$set": {"updated_at": now}},
        )
        if result.matched_count:
            break

    return await get_cart(owner)


async def remove_item(owner, product_id: str) -> dict[str, Any]:
    pid = to_object_id(product_id, "product id")
    db = await get_db()

    cart = await db["cart"].find_one_and_update(
        {"owner": owner, "items.product_id": pid},
        {"$pull": {"items": {"product_id": pid}}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if cart is None:
        if not await db["cart"].find_one({"owner": owner}):
            raise NotFound("Cart does not exist")
        raise NotFound("Product is not in the cart")

    summary = await get_cart(owner)

    coupon_id = cart.get("coupon")
    if coupon_id:
        coupon = await db["coupon"].find_one({"_id": coupon_id})
        if coupon is None or summary["cart_total"] < coupon.get("minimum_cart_value", 0):
            await db["cart"].update_one(
                {"_id": cart["_id"], "coupon": coupon_id},
                {"$set": {"coupon": None, "updated_at": utcnow()}},
            )
            summary = await get_cart(owner)

    return summary


async def clear_cart(owner) -> dict[str, Any]:
    db = await get_db()
    await db["cart"].update_one(
        {"owner": owner},
        {"$set": {"items": [], "coupon": None, "updated_at": utcnow()}},
    )
    return await get_cart(owner)
