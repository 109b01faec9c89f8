from __future__ import annotations
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware

import cart
import catalog
import coupons
import orders
from config import configure_logging, get_settings
from database import ensure_indexes, to_client
from errors import api_response, register_exception_handlers
from payments import PaypalProvider, RazorpayProvider, get_paypal, get_razorpay
from schemas import (
    ApplyCoupon,
    CartItemQuantity,
    CheckoutRequest,
    Coupon,
    CouponStatus,
    CouponUpdate,
    OrderStatusChange,
    PaypalVerification,
    RazorpayVerification,
)
from users import get_current_user, require_admin

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings)
    await ensure_indexes()
    yield


app = FastAPI(title=f"{settings.APP_NAME} API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

CurrentUser = Depends(get_current_user)
Admin = Depends(require_admin)


@app.get("/healthcheck")
async def healthcheck():
    return api_response(200, "OK", "Health check passed")


# Catalog

@app.get("/products")
async def list_products(q: Optional[str] = Query(None), category: Optional[str] = Query(None)):
    products = await catalog.list_products(q=q, category=category)
    return api_response(200, products, "Products fetched successfully")


@app.get("/products/{product_id}")
async def get_product(product_id: str):
    product = await catalog.get_product(product_id)
    return api_response(200, to_client(product), "Product fetched successfully")


# Cart

@app.get("/cart")
async def get_user_cart(user: dict[str, Any] = CurrentUser):
    return api_response(200, await cart.get_cart(user["_id"]), "Cart fetched successfully")


@app.post("/cart/item/{product_id}")
async def add_item_or_update_quantity(product_id: str, payload: CartItemQuantity, user: dict[str, Any] = CurrentUser):
    summary = await cart.upsert_item(user["_id"], product_id, payload.quantity)
    return api_response(200, summary, "Item added to cart successfully")


@app.delete("/cart/item/{product_id}")
async def remove_item_from_cart(product_id: str, user: dict[str, Any] = CurrentUser):
    summary = await cart.remove_item(user["_id"], product_id)
    return api_response(200, summary, "Item removed from cart successfully")


@app.delete("/cart/clear")
async def clear_cart(user: dict[str, Any] = CurrentUser):
    return api_response(200, await cart.clear_cart(user["_id"]), "Cart cleared successfully")


# Coupons

@app.post("/coupons/c/apply")
async def apply_coupon(payload: ApplyCoupon, user: dict[str, Any] = CurrentUser):
    summary = await coupons.apply_coupon(user["_id"], payload.coupon_code)
    return api_response(200, summary, "Coupon applied successfully")


@app.delete("/coupons/c/remove")
async def remove_coupon_from_cart(user: dict[str, Any] = CurrentUser):
    summary = await coupons.remove_coupon(user["_id"])
    return api_response(200, summary, "Coupon removed from cart successfully")


@app.get("/coupons/customer/available")
async def get_valid_coupons_for_customer(page: int = 1, limit: int = 10, user: dict[str, Any] = CurrentUser):
    result = await coupons.list_available_coupons(user["_id"], page, limit)
    return api_response(200, result, "Customer coupons fetched successfully")


@app.get("/coupons")
async def get_all_coupons(page: int = 1, limit: int = 10, admin: dict[str, Any] = Admin):
    return api_response(200, await coupons.list_coupons(page, limit), "Coupons fetched successfully")


@app.post("/coupons")
async def create_coupon(payload: Coupon, admin: dict[str, Any] = Admin):
    coupon = await coupons.create_coupon(payload, owner=admin["_id"])
    return api_response(201, coupon, "Coupon created successfully")


@app.get("/coupons/{coupon_id}")
async def get_coupon_by_id(coupon_id: str, admin: dict[str, Any] = Admin):
    return api_response(200, await coupons.get_coupon(coupon_id), "Coupon fetched successfully")


@app.patch("/coupons/{coupon_id}")
async def update_coupon(coupon_id: str, payload: CouponUpdate, admin: dict[str, Any] = Admin):
    return api_response(200, await coupons.update_coupon(coupon_id, payload), "Coupon updated successfully")


@app.delete("/coupons/{coupon_id}")
async def delete_coupon(coupon_id: str, admin: dict[str, Any] = Admin):
    deleted = await coupons.delete_coupon(coupon_id)
    return api_response(200, {"deleted_coupon": deleted}, "Coupon deleted successfully")


@app.patch("/coupons/status/{coupon_id}")
async def update_coupon_active_status(coupon_id: str, payload: CouponStatus, admin: dict[str, Any] = Admin):
    coupon = await coupons.set_coupon_active(coupon_id, payload.is_active)
    return api_response(200, coupon, f"Coupon is {'active' if coupon['is_active'] else 'inactive'}")


# Orders

@app.post("/orders/provider/razorpay")
async def generate_razorpay_order(
    payload: CheckoutRequest,
    user: dict[str, Any] = CurrentUser,
    provider: RazorpayProvider = Depends(get_razorpay),
):
    result = await orders.initiate_checkout(user, payload.address_id, provider)
    return api_response(201, result, "Razorpay order generated")


@app.post("/orders/provider/razorpay/verify-payment")
async def verify_razorpay_payment(
    payload: RazorpayVerification,
    background_tasks: BackgroundTasks,
    user: dict[str, Any] = CurrentUser,
    provider: RazorpayProvider = Depends(get_razorpay),
):
    order = await orders.verify_razorpay_payment(user, provider, payload, background_tasks)
    return api_response(201, order, "Order placed successfully")


@app.post("/orders/provider/paypal")
async def generate_paypal_order(
    payload: CheckoutRequest,
    user: dict[str, Any] = CurrentUser,
    provider: PaypalProvider = Depends(get_paypal),
):
    result = await orders.initiate_checkout(user, payload.address_id, provider)
    return api_response(201, result, "Paypal order generated successfully")


@app.post("/orders/provider/paypal/verify-payment")
async def verify_paypal_payment(
    payload: PaypalVerification,
    background_tasks: BackgroundTasks,
    user: dict[str, Any] = CurrentUser,
    provider: PaypalProvider = Depends(get_paypal),
):
    order = await orders.verify_paypal_payment(user, provider, payload.order_id, background_tasks)
    return api_response(200, order, "Order placed successfully")


@app.get("/orders/my-orders")
async def get_my_orders(page: int = 1, limit: int = 10, user: dict[str, Any] = CurrentUser):
    return api_response(200, await orders.list_customer_orders(user, page, limit), "Orders fetched successfully")


@app.get("/orders/list/admin")
async def get_order_list_admin(
    status: Optional[str] = None, page: int = 1, limit: int = 10, admin: dict[str, Any] = Admin
):
    return api_response(200, await orders.list_orders(status, page, limit), "Orders fetched successfully")


@app.get("/orders/{order_id}")
async def get_order_by_id(order_id: str, user: dict[str, Any] = CurrentUser):
    return api_response(200, await orders.get_order(order_id, user), "Order fetched successfully")


@app.patch("/orders/status/{order_id}")
async def update_order_status(order_id: str, payload: OrderStatusChange, admin: dict[str, Any] = Admin):
    result = await orders.update_order_status(order_id, payload.status)
    return api_response(200, result, "Order status updated successfully")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
