"""Coupon ledger: validation, discount calculation and usage recording.

Eligibility is always recomputed from order history at call time; nothing
about a shopper's standing is cached on the coupon or the shopper.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from loguru import logger
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from storefront.db.models import (
    Coupon, CouponUsage, CustomerType, DiscountType, NewsletterSubscription,
    Order, PaymentStatus, Product, now_utc,
)
from storefront.errors import CouponError, ValidationError


@dataclass
class CouponQuote:
    coupon: Coupon
    original_cents: int
    discount_cents: int

    @property
    def final_cents(self) -> int:
        return self.original_cents - self.discount_cents


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def get_coupon(db: Session, code: str) -> Optional[Coupon]:
    return db.execute(select(Coupon).where(Coupon.code == normalize_code(code))).scalar_one_or_none()


def calculate_discount(coupon: Coupon, order_cents: int) -> int:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        raw = (Decimal(order_cents) * Decimal(coupon.value) / Decimal(100)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return min(int(raw), order_cents)
    return min(int(coupon.value), order_cents)


def shopper_usage_count(db: Session, coupon_id: int, shopper_id: str) -> int:
    stmt = select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id, CouponUsage.shopper_id == shopper_id)
    return db.execute(stmt).scalar_one()


# --- customer standing -------------------------------------------------------

def successful_order_count(db: Session, shopper_id: str) -> int:
    stmt = select(func.count(Order.id)).where(Order.shopper_id == shopper_id, Order.payment_status == PaymentStatus.SUCCESS)
    return db.execute(stmt).scalar_one()


def is_subscriber(db: Session, email: Optional[str]) -> bool:
    if not email:
        return False
    stmt = select(NewsletterSubscription.id).where(
        func.lower(NewsletterSubscription.email) == email.strip().lower(),
        NewsletterSubscription.is_active.is_(True),
    )
    return db.execute(stmt).first() is not None


def current_top_buyer(db: Session) -> Optional[str]:
    """The single shopper leading by successful order count, then total spent."""
    order_count = func.count(Order.id)
    total_spent = func.sum(Order.total_cents)
    stmt = (
        select(Order.shopper_id)
        .where(Order.payment_status == PaymentStatus.SUCCESS, Order.shopper_id.is_not(None))
        .group_by(Order.shopper_id)
        .order_by(order_count.desc(), total_spent.desc(), Order.shopper_id.asc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def is_customer_eligible(db: Session, customer_type: CustomerType, shopper_id: Optional[str], email: Optional[str]) -> bool:
    if customer_type == CustomerType.GENERAL:
        return True
    if customer_type == CustomerType.SUBSCRIBER:
        return is_subscriber(db, email)
    if shopper_id is None:
        # guests have no order history to judge by
        return False
    if customer_type == CustomerType.NEW_CUSTOMER:
        return successful_order_count(db, shopper_id) == 0
    if customer_type == CustomerType.TOP_BUYER:
        return current_top_buyer(db) == shopper_id
    return False


def _line_item_categories(db: Session, product_ids: Iterable[int]) -> set[str]:
    ids = {int(pid) for pid in product_ids}
    if not ids:
        return set()
    rows = db.execute(select(Product.category).where(Product.id.in_(ids))).scalars()
    return {c.strip().lower() for c in rows if c}


# --- operations --------------------------------------------------------------

def validate(db: Session, code: str, shopper_id: Optional[str], order_cents: int, line_items,
             customer_email: Optional[str] = None, now: Optional[datetime] = None) -> CouponQuote:
    """Check every rule for ``code`` against this shopper and cart.

    ``line_items`` is any iterable of objects or dicts exposing ``product_id``.
    Raises CouponError with a distinct ``coupon_reason`` per failed rule.
    """
    if not normalize_code(code):
        raise ValidationError("Coupon code is required")
    now = now or now_utc()

    coupon = get_coupon(db, code)
    if coupon is None or not coupon.enabled:
        raise CouponError(CouponError.NOT_FOUND, "Invalid coupon code")
    if now < coupon.valid_from:
        raise CouponError(CouponError.NOT_STARTED, "This coupon is not valid yet")
    if now > coupon.valid_until:
        raise CouponError(CouponError.EXPIRED, "This coupon has expired")
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise CouponError(CouponError.USAGE_LIMIT_REACHED, "This coupon has reached its usage limit")
    if order_cents < coupon.minimum_order_cents:
        raise CouponError(CouponError.MINIMUM_NOT_MET, f"Minimum order amount of {coupon.minimum_order_cents} required")
    if shopper_id is not None and shopper_usage_count(db, coupon.id, shopper_id) >= coupon.per_user_limit:
        raise CouponError(CouponError.PER_USER_LIMIT_REACHED, "You have already used this coupon")
    if not is_customer_eligible(db, coupon.customer_type, shopper_id, customer_email):
        raise CouponError(CouponError.INELIGIBLE_CUSTOMER, "You are not eligible for this coupon")

    applicable = {c.lower() for c in coupon.applicable_categories or []}
    excluded = {c.lower() for c in coupon.excluded_categories or []}
    if applicable or excluded:
        product_ids = [item["product_id"] if isinstance(item, dict) else item.product_id for item in line_items]
        categories = _line_item_categories(db, product_ids)
        if applicable and not categories & applicable:
            raise CouponError(CouponError.CATEGORY_NOT_APPLICABLE, "This coupon is not applicable to items in your cart")
        if excluded and categories & excluded:
            raise CouponError(CouponError.CATEGORY_EXCLUDED, "This coupon cannot be applied to some items in your cart")

    return CouponQuote(coupon=coupon, original_cents=order_cents, discount_cents=calculate_discount(coupon, order_cents))


def commit_usage(db: Session, coupon: Coupon, shopper_id: Optional[str], order_id: int, discount_cents: int) -> CouponUsage:
    """Spend one use of ``coupon`` on ``order_id`` inside the caller's transaction.

    The counter increment is conditional on the global limit, and the row it
    locks serializes concurrent spenders of the same coupon, so the per-shopper
    recount below sees every committed usage. The caller commits or rolls back.
    """
    result = db.execute(
        update(Coupon)
        .where(Coupon.id == coupon.id, or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit))
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CouponError(CouponError.USAGE_LIMIT_REACHED, "This coupon has reached its usage limit")
    if shopper_id is not None and shopper_usage_count(db, coupon.id, shopper_id) >= coupon.per_user_limit:
        raise CouponError(CouponError.PER_USER_LIMIT_REACHED, "You have already used this coupon")

    usage = CouponUsage(coupon_id=coupon.id, shopper_id=shopper_id, order_id=order_id, discount_cents=discount_cents, used_at=now_utc())
    db.add(usage)
    db.flush()
    logger.info(f"coupon {coupon.code} spent on order {order_id} (discount {discount_cents})")
    return usage


def available_coupons(db: Session, shopper_id: str, customer_email: Optional[str] = None,
                      now: Optional[datetime] = None) -> list[Coupon]:
    now = now or now_utc()
    stmt = select(Coupon).where(
        Coupon.enabled.is_(True),
        Coupon.valid_from <= now,
        Coupon.valid_until >= now,
        or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
    ).order_by(Coupon.valid_until)
    available = []
    for coupon in db.execute(stmt).scalars():
        if shopper_usage_count(db, coupon.id, shopper_id) >= coupon.per_user_limit:
            continue
        if is_customer_eligible(db, coupon.customer_type, shopper_id, customer_email):
            available.append(coupon)
    return available
