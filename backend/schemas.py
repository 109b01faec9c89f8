from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional

# Records are stored one collection per class, lowercased name


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class CouponType(str, Enum):
    FLAT = "FLAT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CANCELLED = "CANCELLED"
    DELIVERED = "DELIVERED"


class PaymentProvider(str, Enum):
    UNKNOWN = "UNKNOWN"
    RAZORPAY = "RAZORPAY"
    PAYPAL = "PAYPAL"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class User(BaseModel):
    username: str = Field(..., min_length=3)
    email: str
    role: UserRole = UserRole.USER

    @field_validator("username", "email")
    @classmethod
    def lower(cls, v: str) -> str:
        return v.strip().lower()


class Profile(BaseModel):
    first_name: str = ""
    last_name: str = ""
    country_code: str = ""
    phone_number: str = ""


class Address(BaseModel):
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    country: str
    pincode: str


# Request bodies

class CartItemQuantity(BaseModel):
    quantity: int = Field(ge=1, default=1)


class Coupon(BaseModel):
    name: str
    coupon_code: str = Field(..., min_length=1)
    type: CouponType = CouponType.FLAT
    discount_value: float = Field(gt=0)
    minimum_cart_value: float = Field(ge=0, default=0)
    start_date: Optional[datetime] = None
    expiry_date: datetime
    is_active: bool = True

    @field_validator("coupon_code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("start_date", "expiry_date")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "Coupon":
        if self.start_date and self.start_date >= self.expiry_date:
            raise ValueError("Expiry date must be after the start date")
        return self


class CouponUpdate(BaseModel):
    name: Optional[str] = None
    coupon_code: Optional[str] = None
    type: Optional[CouponType] = None
    discount_value: Optional[float] = Field(default=None, gt=0)
    minimum_cart_value: Optional[float] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None

    @field_validator("coupon_code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v is not None else v

    @field_validator("start_date", "expiry_date")
    @classmethod
    def to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _naive_utc(v)


class CouponStatus(BaseModel):
    is_active: bool


class ApplyCoupon(BaseModel):
    coupon_code: str = Field(..., min_length=1)


class CheckoutRequest(BaseModel):
    address_id: str


class RazorpayVerification(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaypalVerification(BaseModel):
    order_id: str


class OrderStatusChange(BaseModel):
    status: OrderStatus
