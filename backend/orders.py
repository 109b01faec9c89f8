from __future__ import annotations
import uuid
from typing import Any, Optional

import structlog
from fastapi import BackgroundTasks
from pymongo import ReturnDocument

from cart import clear_cart, get_cart
from catalog import decrement_stock, ensure_in_stock
from config import get_settings
from database import create_document, get_db, paginate, to_client, to_object_id, utcnow
from errors import (
    AlreadyDelivered,
    InsufficientStock,
    InvalidInput,
    InvalidSignature,
    NotFound,
    PaymentProviderError,
)
from mail import order_confirmation_content, send_email
from payments import PaymentProvider, PaypalProvider, RazorpayProvider
from schemas import OrderStatus, RazorpayVerification, UserRole
from users import get_user_address

logger = structlog.get_logger(__name__)


async def initiate_checkout(user: dict[str, Any], address_id: str, provider: PaymentProvider) -> dict[str, Any]:
    owner = user["_id"]
    address = await get_user_address(address_id, owner)

    summary = await get_cart(owner)
    if not summary["items"]:
        raise InvalidInput("Cart is empty")

    # Later cart changes must not leak into this order
    items = [
        {
            "product_id": to_object_id(line["product"]["id"]),
            "name": line["product"].get("name"),
            "price": float(line["product"].get("price", 0)),
            "quantity": line["quantity"],
        }
        for line in summary["items"]
    ]
    await ensure_in_stock(items)

    amount = summary["discounted_total"]
    if amount <= 0:
        raise InvalidInput("Order amount must be greater than zero")

    session = await provider.create_session(amount, get_settings().CURRENCY, uuid.uuid4().hex)

    coupon = summary["coupon"]
    order = await create_document("order", {
        "customer": owner,
        "address": address,
        "items": items,
        "order_price": summary["cart_total"],
        "discounted_order_price": summary["discounted_total"],
        "coupon": to_object_id(coupon["id"]) if coupon else None,
        "status": OrderStatus.PENDING.value,
        "payment_provider": provider.name.value,
        "payment_id": session.id,
        "is_payment_done": False,
        "paid_at": None,
        "fulfillment_error": None,
        "needs_refund": False,
    })
    logger.info("checkout_initiated", order_id=order["id"], provider=provider.name.value, payment_id=session.id)
    return {"order": order, "payment": session.payload}


async def verify_razorpay_payment(
    user: dict[str, Any],
    provider: RazorpayProvider,
    payload: RazorpayVerification,
    background_tasks: Optional[BackgroundTasks] = None,
) -> dict[str, Any]:
    if not provider.verify_signature(payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature):
        logger.warning("invalid_payment_signature", payment_id=payload.razorpay_order_id)
        raise InvalidSignature("Invalid razorpay signature")
    return await fulfill_order(payload.razorpay_order_id, user, background_tasks)


async def verify_paypal_payment(
    user: dict[str, Any],
    provider: PaypalProvider,
    order_id: str,
    background_tasks: Optional[BackgroundTasks] = None,
) -> dict[str, Any]:
    capture = await provider.capture(order_id)
    if capture.get("status") != "COMPLETED":
        logger.warning("paypal_capture_incomplete", payment_id=order_id, status=capture.get("status"))
        raise PaymentProviderError("Something went wrong with the paypal payment")
    return await fulfill_order(capture.get("id") or order_id, user, background_tasks)


async def fulfill_order(
    payment_id: str,
    user: Optional[dict[str, Any]] = None,
    background_tasks: Optional[BackgroundTasks] = None,
) -> dict[str, Any]:
    """
    Run the post-payment side effects for the order paid under ``payment_id``.

    Flipping ``is_payment_done`` from false to true is the claim: only the
    call that wins it decrements stock, sends the confirmation and clears the
    cart. Repeated callbacks for the same payment get the order back untouched,
    unless stock ran out for it, in which case they get the same error again.

    With ``background_tasks`` the confirmation email goes out after the
    response instead of inside the request.
    """
    db = await get_db()
    filter_dict: dict[str, Any] = {"payment_id": payment_id}
    if user is not None:
        filter_dict["customer"] = user["_id"]

    now = utcnow()
    order = await db["order"].find_one_and_update(
        {**filter_dict, "is_payment_done": False},
        {"$set": {"is_payment_done": True, "paid_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = await db["order"].find_one(filter_dict)
        if not existing:
            raise NotFound("Order does not exist")
        if existing.get("fulfillment_error"):
            raise InsufficientStock(existing["fulfillment_error"])
        logger.info("order_already_fulfilled", payment_id=payment_id)
        return to_client(existing)

    try:
        await decrement_stock(order["items"])
    except (InsufficientStock, NotFound) as exc:
        # Paid but not shippable: cancel it and flag the payment for a refund
        await db["order"].update_one(
            {"_id": order["_id"]},
            {"$set": {
                "status": OrderStatus.CANCELLED.value,
                "fulfillment_error": exc.message,
                "needs_refund": True,
                "updated_at": utcnow(),
            }},
        )
        logger.error("order_fulfillment_failed", order_id=str(order["_id"]), payment_id=payment_id, reason=exc.message)
        raise

    customer = await db["user"].find_one({"_id": order["customer"]})
    if customer and customer.get("email"):
        # Send the discounted price, that is what the user paid
        content = order_confirmation_content(customer.get("username", ""), order["items"], order["discounted_order_price"])
        if background_tasks is not None:
            background_tasks.add_task(send_email, customer["email"], "Order confirmed", content)
        else:
            await send_email(customer["email"], "Order confirmed", content)

    await clear_cart(order["customer"])
    logger.info("order_fulfilled", order_id=str(order["_id"]), payment_id=payment_id)
    return to_client(order)


async def update_order_status(order_id: str, status: OrderStatus) -> dict[str, Any]:
    db = await get_db()
    oid = to_object_id(order_id, "order id")
    while True:
        order = await db["order"].find_one({"_id": oid})
        if not order:
            raise NotFound("Order does not exist")
        if order["status"] == OrderStatus.DELIVERED.value:
            raise AlreadyDelivered()
        if order["status"] == OrderStatus.CANCELLED.value:
            raise InvalidInput("Order is already cancelled")

        updated = await db["order"].find_one_and_update(
            {"_id": oid, "status": order["status"]},
            {"$set": {"status": status.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        # someone else moved the order in between, re-check against the new status
        if updated is not None:
            return {"status": updated["status"]}


async def get_order(order_id: str, user: dict[str, Any]) -> dict[str, Any]:
    db = await get_db()
    order = await db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order or (user.get("role") != UserRole.ADMIN.value and order["customer"] != user["_id"]):
        raise NotFound("Order does not exist")

    ids = [item["product_id"] for item in order["items"]]
    products = {p["_id"]: p async for p in db["product"].find({"_id": {"$in": ids}})}
    order["items"] = [
        {**item, "product": to_client(products.get(item["product_id"]))}
        for item in order["items"]
    ]

    customer = await db["user"].find_one({"_id": order["customer"]}, {"username": 1, "email": 1})
    order["customer"] = to_client(customer)
    if order.get("coupon"):
        coupon = await db["coupon"].find_one({"_id": order["coupon"]}, {"name": 1, "coupon_code": 1})
        order["coupon"] = to_client(coupon)
    return to_client(order)


async def list_orders(status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict[str, Any]:
    filter_dict: dict[str, Any] = {}
    if status and status.upper() in OrderStatus.__members__:
        filter_dict["status"] = status.upper()
    return await paginate("order", filter_dict, page, limit, docs_label="orders", total_label="total_orders")


async def list_customer_orders(user: dict[str, Any], page: int = 1, limit: int = 10) -> dict[str, Any]:
    return await paginate("order", {"customer": user["_id"]}, page, limit, docs_label="orders", total_label="total_orders")
