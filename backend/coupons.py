from __future__ import annotations
from typing import Any

import structlog
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from cart import get_cart
from config import get_settings
from database import create_document, get_db, paginate, to_client, to_object_id, utcnow
from errors import BelowMinimum, InvalidCoupon, InvalidInput, NotFound
from schemas import Coupon, CouponUpdate

logger = structlog.get_logger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def live_coupon_filter() -> dict[str, Any]:
    now = utcnow()
    return {
        "is_active": True,
        "start_date": {"$lte": now},
        "expiry_date": {"$gt": now},
    }


def _check_discount(discount_value: float, minimum_cart_value: float) -> None:
    # A discount larger than the threshold could push a qualifying cart below zero
    if minimum_cart_value < discount_value:
        raise InvalidInput("Minimum cart value must be greater than or equal to the discount value")


async def _coupon_or_404(coupon_id: str) -> dict[str, Any]:
    db = await get_db()
    coupon = await db["coupon"].find_one({"_id": to_object_id(coupon_id, "coupon id")})
    if not coupon:
        raise NotFound("Coupon does not exist")
    return coupon


async def create_coupon(payload: Coupon, owner=None) -> dict[str, Any]:
    db = await get_db()
    duplicate = await db["coupon"].find_one({"coupon_code": payload.coupon_code})
    if duplicate:
        raise InvalidInput(f"Coupon with code {duplicate['coupon_code']} already exists")

    _check_discount(payload.discount_value, payload.minimum_cart_value)

    data = payload.model_dump()
    data["type"] = payload.type.value
    data["start_date"] = payload.start_date or utcnow()
    data["owner"] = owner
    try:
        return await create_document("coupon", data)
    except DuplicateKeyError:
        raise InvalidInput(f"Coupon with code {payload.coupon_code} already exists")


async def update_coupon(coupon_id: str, payload: CouponUpdate) -> dict[str, Any]:
    existing = await _coupon_or_404(coupon_id)
    updates = payload.model_dump(exclude_none=True)
    if "type" in updates:
        updates["type"] = payload.type.value

    db = await get_db()
    if "coupon_code" in updates:
        duplicate = await db["coupon"].find_one({"coupon_code": updates["coupon_code"], "_id": {"$ne": existing["_id"]}})
        if duplicate:
            raise InvalidInput(f"Coupon with code {duplicate['coupon_code']} already exists")

    _check_discount(
        updates.get("discount_value", existing["discount_value"]),
        updates.get("minimum_cart_value", existing.get("minimum_cart_value", 0)),
    )

    start = updates.get("start_date", existing.get("start_date"))
    expiry = updates.get("expiry_date", existing.get("expiry_date"))
    if start and expiry and start >= expiry:
        raise InvalidInput("Expiry date must be after the start date")

    updates["updated_at"] = utcnow()
    try:
        coupon = await db["coupon"].find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise InvalidInput(f"Coupon with code {updates['coupon_code']} already exists")
    return to_client(coupon)


async def set_coupon_active(coupon_id: str, is_active: bool) -> dict[str, Any]:
    db = await get_db()
    coupon = await db["coupon"].find_one_and_update(
        {"_id": to_object_id(coupon_id, "coupon id")},
        {"$set": {"is_active": is_active, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not coupon:
        raise NotFound("Coupon does not exist")
    return to_client(coupon)


async def get_coupon(coupon_id: str) -> dict[str, Any]:
    return to_client(await _coupon_or_404(coupon_id))


async def delete_coupon(coupon_id: str) -> dict[str, Any]:
    db = await get_db()
    coupon = await db["coupon"].find_one_and_delete({"_id": to_object_id(coupon_id, "coupon id")})
    if not coupon:
        raise NotFound("Coupon does not exist")
    await db["cart"].update_many({"coupon": coupon["_id"]}, {"$set": {"coupon": None}})
    return to_client(coupon)


async def list_coupons(page: int = 1, limit: int = 10) -> dict[str, Any]:
    return await paginate("coupon", {}, page, limit, docs_label="coupons", total_label="total_coupons")


async def list_available_coupons(owner, page: int = 1, limit: int = 10) -> dict[str, Any]:
    summary = await get_cart(owner)
    filter_dict = {**live_coupon_filter(), "minimum_cart_value": {"$lte": summary["cart_total"]}}
    return await paginate("coupon", filter_dict, page, limit, docs_label="coupons", total_label="total_coupons")


async def apply_coupon(owner, coupon_code: str) -> dict[str, Any]:
    db = await get_db()
    code = normalize_code(coupon_code)
    coupon = await db["coupon"].find_one({"coupon_code": code, **live_coupon_filter()})
    if not coupon:
        raise InvalidCoupon()

    summary = await get_cart(owner)
    minimum = coupon.get("minimum_cart_value", 0)
    if summary["cart_total"] < minimum:
        shortfall = round(minimum - summary["cart_total"], 2)
        raise BelowMinimum(
            f"Add items worth {get_settings().CURRENCY} {shortfall:.2f} /- or more to apply this coupon"
        )

    # Only the reference is stored, the discount is recomputed on every read
    result = await db["cart"].update_one(
        {"owner": owner},
        {"$set": {"coupon": coupon["_id"], "updated_at": utcnow()}},
    )
    if not result.matched_count:
        raise NotFound("Cart does not exist")
    logger.info("coupon_applied", owner=str(owner), coupon_code=code)
    return await get_cart(owner)


async def remove_coupon(owner) -> dict[str, Any]:
    db = await get_db()
    await db["cart"].update_one({"owner": owner}, {"$set": {"coupon": None, "updated_at": utcnow()}})
    return await get_cart(owner)
