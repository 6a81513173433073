
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, Boolean, DateTime, ForeignKey, BigInteger, JSON, CheckConstraint, UniqueConstraint, Enum as SAEnum
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from storefront.db.session import Base

def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _enum(cls):
    # persist the human-readable value ("Next-Day"), not the member name
    return SAEnum(cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32)

class PaymentStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    ABANDONED = "Abandoned"

class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"
    FAILED = "Failed"

class ShipmentMethod(str, Enum):
    STANDARD = "Standard"
    EXPRESS = "Express"
    NEXT_DAY = "Next-Day"
    IN_STORE_PICKUP = "In-Store Pickup"

class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"

class CustomerType(str, Enum):
    TOP_BUYER = "top_buyer"
    SUBSCRIBER = "subscriber"
    NEW_CUSTOMER = "new_customer"
    GENERAL = "general"

class Product(Base):
    """Inventory facet of a catalog product."""
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_nonnegative"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(240), nullable=False)
    category: Mapped[str] = mapped_column(String(120), default="")
    price_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)

class StockMovement(Base):
    """One decrement per (order, product); the unique pair makes commits replay-safe."""
    __tablename__ = "stock_movements"
    __table_args__ = (UniqueConstraint("order_id", "product_id", name="uq_stock_movement_order_product"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    qty: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    shopper_id: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    cart_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(255))
    customer_phone: Mapped[str] = mapped_column(String(64), default="")

    # shipping snapshot
    address: Mapped[str] = mapped_column(String(255))
    city: Mapped[str] = mapped_column(String(120))
    postcode: Mapped[str] = mapped_column(String(32), default="")
    phone: Mapped[str] = mapped_column(String(64), default="")
    notes: Mapped[str] = mapped_column(Text, default="")
    shipment_method: Mapped[ShipmentMethod] = mapped_column(_enum(ShipmentMethod))

    order_status: Mapped[OrderStatus] = mapped_column(_enum(OrderStatus), default=OrderStatus.PENDING)

    # billing
    payment_method: Mapped[str] = mapped_column(String(32))
    payment_status: Mapped[PaymentStatus] = mapped_column(_enum(PaymentStatus), default=PaymentStatus.PENDING, index=True)
    original_cents: Mapped[int] = mapped_column(BigInteger)
    discount_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    total_cents: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3))
    gateway_reference: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    redirect_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    authorization_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    coupon_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # confirmation arbitration
    confirm_claim: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    inventory_committed: Mapped[bool] = mapped_column(Boolean, default=False)
    stock_shortfall: Mapped[bool] = mapped_column(Boolean, default=False)
    # paid after being abandoned; awaiting manual refund or reinstatement
    payment_orphaned: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")

class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"))
    product_id: Mapped[int] = mapped_column(Integer)
    title_snapshot: Mapped[str] = mapped_column(String(255))
    unit_price_cents: Mapped[int] = mapped_column(BigInteger)
    size: Mapped[str] = mapped_column(String(32), default="")
    qty: Mapped[int] = mapped_column(Integer)

    order = relationship("Order", back_populates="items")

class Coupon(Base):
    __tablename__ = "coupons"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120))
    description: Mapped[str] = mapped_column(Text, default="")
    discount_type: Mapped[DiscountType] = mapped_column(_enum(DiscountType), default=DiscountType.PERCENTAGE)
    value: Mapped[int] = mapped_column(BigInteger)  # percent points, or minor units when fixed
    customer_type: Mapped[CustomerType] = mapped_column(_enum(CustomerType), default=CustomerType.GENERAL)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    per_user_limit: Mapped[int] = mapped_column(Integer, default=1)
    minimum_order_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    valid_from: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
    valid_until: Mapped[datetime] = mapped_column(DateTime())
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    applicable_categories: Mapped[list] = mapped_column(JSON, default=list)
    excluded_categories: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)

    usages = relationship("CouponUsage", back_populates="coupon", cascade="all, delete-orphan")

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or now_utc()
        return self.enabled and self.valid_from <= now <= self.valid_until

    def is_usable(self, now: datetime | None = None) -> bool:
        return self.is_active(now) and (self.usage_limit is None or self.used_count < self.usage_limit)

class CouponUsage(Base):
    """Append-only usage ledger; source of truth for both usage limits."""
    __tablename__ = "coupon_usages"
    __table_args__ = (UniqueConstraint("coupon_id", "order_id", name="uq_coupon_usage_order"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    coupon_id: Mapped[int] = mapped_column(ForeignKey("coupons.id", ondelete="CASCADE"), index=True)
    shopper_id: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"))
    discount_cents: Mapped[int] = mapped_column(BigInteger)
    used_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)

    coupon = relationship("Coupon", back_populates="usages")

class NewsletterSubscription(Base):
    __tablename__ = "newsletter_subscriptions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
