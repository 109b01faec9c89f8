from datetime import timedelta

import pytest

from cart import get_cart, upsert_item
from coupons import (
    apply_coupon,
    create_coupon,
    delete_coupon,
    list_available_coupons,
    remove_coupon,
    set_coupon_active,
    update_coupon,
)
from database import utcnow
from errors import BelowMinimum, InvalidCoupon, InvalidInput, NotFound
from schemas import Coupon, CouponUpdate


def coupon_payload(**overrides):
    data = {
        "name": "Ten off",
        "coupon_code": "save10",
        "discount_value": 10,
        "minimum_cart_value": 100,
        "expiry_date": utcnow() + timedelta(days=3),
    }
    data.update(overrides)
    return Coupon(**data)


async def test_create_coupon_stores_upper_cased_code(admin):
    coupon = await create_coupon(coupon_payload(coupon_code="  save10 "), owner=admin["_id"])
    assert coupon["coupon_code"] == "SAVE10"
    assert coupon["type"] == "FLAT"
    assert coupon["is_active"] is True
    assert coupon["start_date"] <= utcnow()


async def test_create_coupon_discount_above_minimum(db):
    with pytest.raises(InvalidInput):
        await create_coupon(coupon_payload(discount_value=300, minimum_cart_value=100))


async def test_create_coupon_duplicate_code_any_case(db):
    await create_coupon(coupon_payload(coupon_code="SAVE10"))
    with pytest.raises(InvalidInput, match="already exists"):
        await create_coupon(coupon_payload(coupon_code="Save10"))


async def test_update_coupon_checks_changed_discount(db):
    coupon = await create_coupon(coupon_payload(discount_value=10, minimum_cart_value=100))
    with pytest.raises(InvalidInput):
        await update_coupon(coupon["id"], CouponUpdate(discount_value=150))

    updated = await update_coupon(coupon["id"], CouponUpdate(discount_value=80))
    assert updated["discount_value"] == 80
    assert updated["minimum_cart_value"] == 100


async def test_update_coupon_checks_changed_minimum(db):
    coupon = await create_coupon(coupon_payload(discount_value=50, minimum_cart_value=100))
    with pytest.raises(InvalidInput):
        await update_coupon(coupon["id"], CouponUpdate(minimum_cart_value=20))


async def test_update_coupon_duplicate_code(db):
    await create_coupon(coupon_payload(coupon_code="FIRST"))
    second = await create_coupon(coupon_payload(coupon_code="SECOND"))
    with pytest.raises(InvalidInput, match="already exists"):
        await update_coupon(second["id"], CouponUpdate(coupon_code="first"))

    # renaming to its own code is not a duplicate
    same = await update_coupon(second["id"], CouponUpdate(coupon_code="second", name="Second"))
    assert same["name"] == "Second"


async def test_update_missing_coupon(db):
    with pytest.raises(NotFound):
        await update_coupon("64b7f0f0f0f0f0f0f0f0f0f0", CouponUpdate(name="x"))


async def test_apply_normalizes_code(user, make_product, make_coupon):
    product = await make_product(price=100, stock=5)
    await make_coupon("SAVE10", discount_value=10, minimum_cart_value=100)
    await upsert_item(user["_id"], product, 1)

    cart = await apply_coupon(user["_id"], "  save10 ")
    assert cart["coupon"]["coupon_code"] == "SAVE10"
    assert cart["discounted_total"] == 90


async def test_apply_unknown_code(user):
    with pytest.raises(InvalidCoupon):
        await apply_coupon(user["_id"], "NOPE")


@pytest.mark.parametrize(
    "overrides",
    [
        {"is_active": False},
        {"starts_in": timedelta(days=1)},
        {"expires_in": timedelta(seconds=-1)},
    ],
)
async def test_apply_outside_validity(user, make_product, make_coupon, overrides):
    product = await make_product(price=500, stock=5)
    await upsert_item(user["_id"], product, 1)
    await make_coupon("WINDOW", discount_value=10, minimum_cart_value=10, **overrides)
    with pytest.raises(InvalidCoupon):
        await apply_coupon(user["_id"], "window")


async def test_apply_below_minimum_reports_shortfall(user, make_product, make_coupon):
    product = await make_product(price=100, stock=5)
    await make_coupon("FLAT50", discount_value=50, minimum_cart_value=150)
    await upsert_item(user["_id"], product, 1)

    with pytest.raises(BelowMinimum, match="50.00"):
        await apply_coupon(user["_id"], "FLAT50")


async def test_discount_follows_coupon_changes(db, user, make_product, make_coupon):
    product = await make_product(price=200, stock=5)
    coupon = await make_coupon("FLAT50", discount_value=50, minimum_cart_value=150)
    await upsert_item(user["_id"], product, 1)
    await apply_coupon(user["_id"], "FLAT50")

    await update_coupon(coupon["id"], CouponUpdate(discount_value=70))
    cart = await get_cart(user["_id"])
    assert cart["discounted_total"] == 130


async def test_remove_coupon(user, make_product, make_coupon):
    product = await make_product(price=200, stock=5)
    await make_coupon("FLAT50", discount_value=50, minimum_cart_value=150)
    await upsert_item(user["_id"], product, 1)
    await apply_coupon(user["_id"], "FLAT50")

    cart = await remove_coupon(user["_id"])
    assert cart["coupon"] is None
    assert cart["discounted_total"] == 200


async def test_available_coupons_respect_cart_total(user, make_product, make_coupon):
    product = await make_product(price=100, stock=5)
    await upsert_item(user["_id"], product, 2)
    await make_coupon("CHEAP", discount_value=10, minimum_cart_value=100)
    await make_coupon("PRICEY", discount_value=100, minimum_cart_value=1000)
    await make_coupon("OFF", discount_value=10, minimum_cart_value=10, is_active=False)

    result = await list_available_coupons(user["_id"])
    assert [c["coupon_code"] for c in result["coupons"]] == ["CHEAP"]
    assert result["total_coupons"] == 1


async def test_deactivate_and_delete(user, make_product, make_coupon):
    product = await make_product(price=200, stock=5)
    coupon = await make_coupon("FLAT50", discount_value=50, minimum_cart_value=150)
    await upsert_item(user["_id"], product, 1)
    await apply_coupon(user["_id"], "FLAT50")

    toggled = await set_coupon_active(coupon["id"], False)
    assert toggled["is_active"] is False

    await delete_coupon(coupon["id"])
    with pytest.raises(NotFound):
        await delete_coupon(coupon["id"])
