from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List
from datetime import datetime
from storefront.db.models import CustomerType, DiscountType, OrderStatus, PaymentStatus, ShipmentMethod

# --- orders ---
class LineItemIn(BaseModel):
    product_id: int
    title: str
    unit_price_cents: int = Field(ge=0)
    qty: int = Field(ge=1)
    size: str = ""

class AddressIn(BaseModel):
    address: str
    city: str
    postcode: str = ""
    phone: str = ""
    notes: str = ""

class CheckoutPayload(BaseModel):
    shopper_id: Optional[str] = None
    cart_id: Optional[str] = None
    items: List[LineItemIn] = Field(min_length=1)
    address: AddressIn
    shipment_method: ShipmentMethod
    payment_method: str = "paystack"
    amount_cents: int = Field(ge=0)
    customer_email: EmailStr
    customer_phone: str = ""
    coupon_code: Optional[str] = None

class CheckoutResponse(BaseModel):
    order_id: int
    redirect_url: str
    reference: str
    original_cents: int
    discount_cents: int
    total_cents: int
    currency: str

class ConfirmPayload(BaseModel):
    order_id: int
    reference: str

class ConfirmResponse(BaseModel):
    order_id: int
    payment_status: PaymentStatus
    order_status: OrderStatus
    stock_shortfall: bool = False
    message: str = ""

class OrderItemRead(BaseModel):
    product_id: int
    title_snapshot: str
    unit_price_cents: int
    size: str
    qty: int
    class Config: from_attributes = True

class BillingRead(BaseModel):
    payment_method: str
    payment_status: PaymentStatus
    original_cents: int
    discount_cents: int
    total_cents: int
    currency: str
    gateway_reference: Optional[str] = None
    coupon_code: Optional[str] = None
    payment_orphaned: bool = False

class OrderRead(BaseModel):
    id: int
    shopper_id: Optional[str] = None
    customer_email: str
    address: str
    city: str
    postcode: str
    shipment_method: ShipmentMethod
    order_status: OrderStatus
    billing: BillingRead
    stock_shortfall: bool
    items: List[OrderItemRead] = []
    created_at: datetime
    updated_at: datetime

class StatusUpdate(BaseModel):
    order_status: OrderStatus

class AbandonPayload(BaseModel):
    older_than_minutes: int = Field(default=60, ge=1)

# --- coupons ---
class CouponItemIn(BaseModel):
    product_id: int

class CouponValidatePayload(BaseModel):
    code: str = Field(min_length=1)
    shopper_id: Optional[str] = None
    order_amount_cents: int = Field(ge=0)
    items: List[CouponItemIn] = []

class CouponRead(BaseModel):
    code: str
    name: str
    description: str
    discount_type: DiscountType
    value: int
    customer_type: CustomerType
    minimum_order_cents: int
    valid_until: datetime
    class Config: from_attributes = True

class CouponQuoteRead(BaseModel):
    coupon: CouponRead
    original_cents: int
    discount_cents: int
    final_cents: int

# --- cart ---
class CartItemAdd(BaseModel):
    product_id: int
    qty: int = Field(ge=1)
    size: str = ""

class CartItemUpdate(BaseModel):
    qty: int = Field(ge=0)
    size: str = ""

class CartItemRead(BaseModel):
    product_id: int
    size: str
    qty: int

class CartRead(BaseModel):
    cart_id: Optional[str] = None
    items: List[CartItemRead] = []
