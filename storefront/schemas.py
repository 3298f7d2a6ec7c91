from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Documents are stored with the same camelCase keys the API speaks.
# Collections: products, orders, coupons, users, admins, stock_adjustments


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True, validate_default=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="python")


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    SHIPPING = "shipping"


class VariantType(str, Enum):
    COLOR = "color"
    MODEL = "model"


# Products

class SizeStock(CamelModel):
    size: str
    stock: int = Field(ge=0, default=0)


class ProductVariant(CamelModel):
    id: str
    name: str
    type: VariantType = VariantType.COLOR
    price: Optional[float] = Field(default=None, ge=0)
    offer_price: Optional[float] = Field(default=None, ge=0)


class Product(CamelModel):
    name: str
    description: str = ""
    price: float = Field(ge=0)
    offer_price: Optional[float] = Field(default=None, ge=0)
    images: list[str] = []
    sizes: list[str] = []
    stock: int = Field(ge=0, default=0)
    size_stocks: list[SizeStock] = []
    variants: list[ProductVariant] = []
    is_active: bool = True


# Orders

class Address(CamelModel):
    name: str
    phone: str
    address: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str


class OrderItem(CamelModel):
    product_id: str
    name: str = ""
    price: float = Field(ge=0, default=0)
    quantity: int = Field(ge=1, default=1)
    size: Optional[str] = None
    image: str = ""
    variant_id: Optional[str] = None
    variant_name: Optional[str] = None
    variant_type: Optional[VariantType] = None


class OrderCreate(CamelModel):
    # items and address are optional here so the service can answer with a
    # field specific message instead of a generic validation error.
    items: Optional[list[OrderItem]] = None
    shipping_address: Optional[Address] = None
    payment_method: PaymentMethod = PaymentMethod.COD
    coupon_code: Optional[str] = None
    subtotal: Optional[float] = Field(default=None, ge=0)
    shipping: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = Field(default=None, ge=0)
    total: Optional[float] = Field(default=None, ge=0)


class StatusUpdate(CamelModel):
    status: Optional[OrderStatus] = None
    force: bool = False
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class PaymentStatusUpdate(CamelModel):
    payment_status: Optional[PaymentStatus] = None


class TrackingUpdate(CamelModel):
    tracking_number: Optional[str] = None


class NotesUpdate(CamelModel):
    notes: Optional[str] = None


class CancelPayment(CamelModel):
    reason: str = "Payment failed"


class PaymentVerification(CamelModel):
    order_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None


# Coupons

class CouponValidateRequest(CamelModel):
    code: Optional[str] = None
    subtotal: Optional[float] = None


class Coupon(CamelModel):
    code: str
    description: str = ""
    type: CouponType
    value: float = Field(ge=0)
    min_amount: float = Field(ge=0, default=0)
    max_discount: Optional[float] = Field(default=None, gt=0)
    max_amount: Optional[float] = Field(default=None, gt=0)
    usage_limit: Optional[int] = Field(default=None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
