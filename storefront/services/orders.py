"""Order lifecycle: checkout, payment confirmation and status progression.

Confirmation may be requested any number of times, concurrently, by the
shopper's browser returning from the gateway and by the gateway's webhook.
Exactly one caller wins an atomic claim on the order row and performs the side
effects (verification, stock commit, cart teardown); everyone else observes the
terminal state it records. No lock or transaction is held while the gateway,
Redis, or another caller is being waited on.
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from sqlalchemy import case, literal, or_, select, update
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.db.models import Order, OrderItem, OrderStatus, PaymentStatus, ShipmentMethod, now_utc
from storefront.errors import (
    GatewayError, InsufficientStock, InvalidTransition, OrderNotFound,
    ValidationError, VerificationFailed,
)
from storefront.gateway.port import PaymentGateway, Verification
from storefront.kafka import producer
from storefront.services import coupons, inventory
from storefront.store import cart_store


@dataclass
class LineItem:
    product_id: int
    title: str
    unit_price_cents: int
    qty: int
    size: str = ""


@dataclass
class ShippingAddress:
    address: str
    city: str
    postcode: str = ""
    phone: str = ""
    notes: str = ""


@dataclass
class Checkout:
    items: list[LineItem]
    address: ShippingAddress
    shipment_method: ShipmentMethod
    payment_method: str
    amount_cents: int
    customer_email: str
    shopper_id: Optional[str] = None
    cart_id: Optional[str] = None
    customer_phone: str = ""
    coupon_code: Optional[str] = None
    # verified account email; the only email subscriber coupons are checked against
    account_email: Optional[str] = None


@dataclass
class CheckoutResult:
    order_id: int
    redirect_url: str
    reference: str
    original_cents: int
    discount_cents: int
    total_cents: int
    currency: str


@dataclass
class ConfirmationOutcome:
    order_id: int
    payment_status: PaymentStatus
    order_status: OrderStatus
    changed: bool = False
    stock_shortfall: bool = False
    message: str = ""

    @property
    def in_progress(self) -> bool:
        return self.payment_status == PaymentStatus.PENDING


TERMINAL_ORDER_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REJECTED, OrderStatus.FAILED}

# closed by an administrator; a payment landing on these needs a refund, not fulfilment
CLOSED_BY_ADMIN = {OrderStatus.CANCELLED, OrderStatus.REJECTED}

# administrative shipping progression; cancellation/rejection is open to any non-terminal status
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
}


def callback_url() -> str:
    return f"{settings.CALLBACK_BASE_URL.rstrip('/')}/shop/paystack-return"


# --- checkout ----------------------------------------------------------------

def _validate_checkout(checkout: Checkout):
    if not checkout.items:
        raise ValidationError("Order must contain at least one line item")
    for item in checkout.items:
        if item.qty <= 0:
            raise ValidationError(f"Quantity for product {item.product_id} must be positive")
        if item.unit_price_cents < 0:
            raise ValidationError(f"Price for product {item.product_id} must not be negative")
    computed = sum(item.unit_price_cents * item.qty for item in checkout.items)
    if computed != checkout.amount_cents:
        raise ValidationError(f"Order amount {checkout.amount_cents} does not match line items total {computed}")
    if not checkout.customer_email:
        raise ValidationError("Customer email is required")


def create_order(db: Session, checkout: Checkout, gateway: PaymentGateway) -> CheckoutResult:
    """Place a Pending order and open a gateway session for it.

    Coupon problems abort before anything is written. Once the order row
    exists, a gateway failure marks it Failed and re-raises; the cart is left
    alone so the shopper can check out again.
    """
    _validate_checkout(checkout)
    quote = None
    if checkout.coupon_code:
        quote = coupons.validate(
            db, checkout.coupon_code, checkout.shopper_id, checkout.amount_cents,
            checkout.items, customer_email=checkout.account_email,
        )

    order = Order(
        shopper_id=checkout.shopper_id,
        cart_id=checkout.cart_id,
        customer_email=checkout.customer_email,
        customer_phone=checkout.customer_phone,
        address=checkout.address.address,
        city=checkout.address.city,
        postcode=checkout.address.postcode,
        phone=checkout.address.phone,
        notes=checkout.address.notes,
        shipment_method=checkout.shipment_method,
        order_status=OrderStatus.PENDING,
        payment_method=checkout.payment_method,
        payment_status=PaymentStatus.PENDING,
        original_cents=checkout.amount_cents,
        discount_cents=0,
        total_cents=checkout.amount_cents,
        currency=settings.CURRENCY,
    )
    for item in checkout.items:
        order.items.append(OrderItem(
            product_id=item.product_id,
            title_snapshot=item.title,
            unit_price_cents=item.unit_price_cents,
            size=item.size,
            qty=item.qty,
        ))
    try:
        db.add(order)
        db.flush()
        if quote is not None:
            coupons.commit_usage(db, quote.coupon, checkout.shopper_id, order.id, quote.discount_cents)
            order.coupon_code = quote.coupon.code
            order.discount_cents = quote.discount_cents
            order.total_cents = checkout.amount_cents - quote.discount_cents
        order_id, total, discount, currency = order.id, order.total_cents, order.discount_cents, order.currency
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"order {order_id} created for {checkout.shopper_id or 'guest'}: total {total} {currency}")

    try:
        session = gateway.initialize_session(order_id, total, currency, checkout.customer_email, callback_url())
    except GatewayError as exc:
        logger.warning(f"gateway session for order {order_id} failed: {exc.message}")
        db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == PaymentStatus.PENDING)
            .values(payment_status=PaymentStatus.FAILED, order_status=OrderStatus.FAILED, updated_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        raise

    order = db.get(Order, order_id)
    order.gateway_reference = session.reference
    order.redirect_url = session.redirect_url
    order.updated_at = now_utc()
    db.commit()

    producer.order_event(
        "order.created", order_id,
        shopper_id=checkout.shopper_id,
        customer_email=checkout.customer_email,
        amount_cents=total,
        currency=currency,
        items=[{"product_id": i.product_id, "qty": i.qty, "unit_price_cents": i.unit_price_cents} for i in checkout.items],
    )
    return CheckoutResult(
        order_id=order_id,
        redirect_url=session.redirect_url,
        reference=session.reference,
        original_cents=checkout.amount_cents,
        discount_cents=discount,
        total_cents=total,
        currency=currency,
    )


# --- confirmation ------------------------------------------------------------

def _outcome(order: Order, changed: bool = False, message: str = "") -> ConfirmationOutcome:
    return ConfirmationOutcome(
        order_id=order.id,
        payment_status=order.payment_status,
        order_status=order.order_status,
        changed=changed,
        stock_shortfall=order.stock_shortfall,
        message=message,
    )


def _claim(db: Session, order_id: int, token: str) -> bool:
    now = now_utc()
    stale = now - timedelta(seconds=settings.CLAIM_LEASE_SECONDS)
    result = db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status == PaymentStatus.PENDING,
            or_(Order.confirm_claim.is_(None), Order.claimed_at < stale),
        )
        .values(confirm_claim=token, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _release(db: Session, order_id: int, token: str):
    db.rollback()
    db.execute(
        update(Order)
        .where(Order.id == order_id, Order.confirm_claim == token)
        .values(confirm_claim=None, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info(f"confirmation claim on order {order_id} released")


def _if_still_pending(status: OrderStatus):
    """Order status expression that only moves an order out of Pending."""
    return case(
        (Order.order_status == OrderStatus.PENDING, literal(status, Order.__table__.c.order_status.type)),
        else_=Order.order_status,
    )


def _finalize(db: Session, order_id: int, token: str, **values) -> bool:
    if "order_status" in values:
        values["order_status"] = _if_still_pending(values["order_status"])
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.confirm_claim == token, Order.payment_status == PaymentStatus.PENDING)
        .values(confirm_claim=None, claimed_at=None, updated_at=now_utc(), **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _load(db: Session, order_id: int) -> Order:
    db.expire_all()
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def _await_terminal(db: Session, order_id: int) -> ConfirmationOutcome:
    """Wait for the claim holder to record a terminal payment status."""
    deadline = time.monotonic() + settings.CONFIRM_WAIT_SECONDS
    while True:
        order = _load(db, order_id)
        outcome = _outcome(order)
        db.commit()  # end the read; nothing is held while sleeping
        if not outcome.in_progress or time.monotonic() >= deadline:
            if outcome.in_progress:
                outcome.message = "Payment confirmation is in progress"
            return outcome
        time.sleep(settings.CONFIRM_POLL_INTERVAL)


def check_verification(verification: Verification, expected_cents: int, currency: str):
    if not verification.succeeded:
        raise VerificationFailed(f"Gateway reports payment status '{verification.status or 'failed'}'")
    if verification.amount_paid != expected_cents:
        raise VerificationFailed(f"Amount paid {verification.amount_paid} does not match order total {expected_cents}")
    if verification.currency != currency.upper():
        raise VerificationFailed(f"Paid in {verification.currency}, order is in {currency}")


def _current_order_status(db: Session, order_id: int) -> OrderStatus:
    status = db.execute(select(Order.order_status).where(Order.id == order_id)).scalar_one()
    db.commit()
    return status


def _reconcile_abandoned(db: Session, order: Order, gateway: PaymentGateway, source: str) -> ConfirmationOutcome:
    """Check whether an abandoned order was paid after all, and flag it once if so.

    The order is not revived: its stock was never committed and the shopper
    may have checked out again. A late payment is raised for manual refund or
    reinstatement instead.
    """
    order_id, reference = order.id, order.gateway_reference
    expected, currency, customer_email = order.total_cents, order.currency, order.customer_email
    if not reference or order.payment_orphaned:
        outcome = _outcome(order, message="Payment already resolved")
        db.commit()
        return outcome
    db.commit()

    verification = gateway.verify(reference)
    try:
        check_verification(verification, expected, currency)
    except VerificationFailed as exc:
        logger.info(f"{source}: abandoned order {order_id} has no usable payment: {exc.message}")
        return _outcome(_load(db, order_id), message="Payment already resolved")

    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.payment_status == PaymentStatus.ABANDONED, Order.payment_orphaned.is_(False))
        .values(payment_orphaned=True, authorization_token=verification.authorization_token, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        return _outcome(_load(db, order_id), message="Payment already resolved")

    logger.error(f"ALERT {source}: order {order_id} was paid after it was abandoned; refund or reinstate it manually")
    producer.order_event(
        "payment.orphaned", order_id,
        reference=reference, amount_cents=expected, currency=currency, customer_email=customer_email,
    )
    return _outcome(_load(db, order_id), changed=True, message="Payment received for an abandoned order; flagged for reconciliation")


def confirm_payment(db: Session, order_id: int, gateway: PaymentGateway,
                    reference: Optional[str] = None, source: str = "return") -> ConfirmationOutcome:
    """Confirm payment for ``order_id``; safe to call any number of times.

    Raises OrderNotFound, ValidationError on a reference mismatch, and
    GatewayUnavailable when verification could not be obtained (the claim is
    released first so a later retry can proceed).
    """
    order = _load(db, order_id)
    if reference and order.gateway_reference and reference != order.gateway_reference:
        raise ValidationError("Payment reference does not match this order")
    if order.payment_status == PaymentStatus.ABANDONED:
        return _reconcile_abandoned(db, order, gateway, source)
    if order.payment_status != PaymentStatus.PENDING:
        outcome = _outcome(order, message="Payment already resolved")
        db.commit()
        return outcome
    if not order.gateway_reference:
        raise ValidationError("Order has no payment session yet")

    gateway_reference = order.gateway_reference
    expected, currency, cart_id = order.total_cents, order.currency, order.cart_id
    items = [{"product_id": i.product_id, "qty": i.qty} for i in order.items]
    shopper_id, customer_email = order.shopper_id, order.customer_email

    token = uuid.uuid4().hex
    if not _claim(db, order_id, token):
        logger.info(f"{source}: order {order_id} is being confirmed elsewhere")
        return _await_terminal(db, order_id)
    logger.info(f"{source}: claimed confirmation of order {order_id}")

    try:
        verification = gateway.verify(gateway_reference)
        try:
            check_verification(verification, expected, currency)
        except VerificationFailed as exc:
            logger.warning(f"{source}: payment for order {order_id} not verified: {exc.message}")
            _finalize(db, order_id, token, payment_status=PaymentStatus.FAILED, order_status=OrderStatus.FAILED)
            producer.order_event("payment.failed", order_id, reason=exc.message, customer_email=customer_email)
            return _outcome(_load(db, order_id), changed=True, message=exc.message)

        shortfall = None
        low_stock = []
        if _current_order_status(db, order_id) in CLOSED_BY_ADMIN:
            # money was captured for an order nobody will ship: record it, touch nothing else
            recorded = _finalize(
                db, order_id, token,
                payment_status=PaymentStatus.SUCCESS,
                authorization_token=verification.authorization_token,
            )
        else:
            try:
                committed = inventory.commit_reservation(db, order_id, items)
                low_stock = committed.low_stock
            except InsufficientStock as exc:
                shortfall = exc
                logger.error(f"ALERT order {order_id} paid but stock is short: {exc.message}")

            if cart_id and not cart_store.delete_cart(cart_id):
                logger.info(f"cart {cart_id} of order {order_id} was already gone")

            recorded = _finalize(
                db, order_id, token,
                payment_status=PaymentStatus.SUCCESS,
                order_status=OrderStatus.PENDING if shortfall else OrderStatus.PROCESSING,
                authorization_token=verification.authorization_token,
                inventory_committed=shortfall is None,
                stock_shortfall=shortfall is not None,
            )
    except Exception:
        _release(db, order_id, token)
        raise

    if not recorded:
        # our lease lapsed and another caller took over; its result stands
        logger.warning(f"{source}: lost claim on order {order_id} before finalizing")
        return _await_terminal(db, order_id)

    order = _load(db, order_id)
    closed_as = order.order_status if order.order_status in CLOSED_BY_ADMIN else None
    outcome = _outcome(order, changed=True, message=shortfall.message if shortfall else "Payment confirmed")
    inventory_committed = order.inventory_committed
    db.commit()

    if closed_as is not None:
        # also catches a cancellation that landed while stock was being committed
        outcome.message = f"Payment received for a {closed_as.value.lower()} order; refund required"
        logger.error(f"ALERT {source}: order {order_id}: {outcome.message}")
        producer.order_event(
            "payment.refund_required", order_id,
            reason=f"order {closed_as.value}", reference=gateway_reference,
            amount_cents=expected, currency=currency, customer_email=customer_email,
            inventory_committed=inventory_committed,
        )
        return outcome

    logger.info(f"{source}: payment for order {order_id} confirmed")
    _publish_success(order_id, shopper_id, customer_email, expected, currency, shortfall, low_stock)
    return outcome


def _publish_success(order_id, shopper_id, customer_email, amount, currency, shortfall, low_stock):
    producer.order_event(
        "payment.succeeded", order_id,
        shopper_id=shopper_id, customer_email=customer_email, amount_cents=amount, currency=currency,
    )
    if settings.ADMIN_ORDER_ALERTS_ENABLED:
        producer.order_event("order.paid_admin_alert", order_id, amount_cents=amount, currency=currency)
    if shortfall is not None:
        producer.inventory_event(
            "inventory.shortfall", str(order_id), order_id=order_id,
            product_id=shortfall.product_id, requested=shortfall.requested, available=shortfall.available,
        )
    if settings.LOW_STOCK_ALERTS_ENABLED:
        for product in low_stock:
            producer.inventory_event("inventory.low_stock", str(product["product_id"]), **product)


def process_webhook_event(db: Session, gateway: PaymentGateway, event: dict) -> Optional[ConfirmationOutcome]:
    """Route a verified gateway event. Returns None when there is nothing to do."""
    if event.get("event") != "charge.success":
        logger.debug(f"webhook: ignoring event {event.get('event')}")
        return None
    reference = (event.get("data") or {}).get("reference")
    if not reference:
        logger.warning("webhook: charge.success without a reference")
        return None
    order_id = db.execute(select(Order.id).where(Order.gateway_reference == reference)).scalar_one_or_none()
    db.commit()
    if order_id is None:
        logger.warning(f"webhook: no order for reference {reference}")
        return None
    return confirm_payment(db, order_id, gateway, reference=reference, source="webhook")


# --- administration ----------------------------------------------------------

def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


def list_orders_for_shopper(db: Session, shopper_id: str) -> list[Order]:
    stmt = select(Order).where(Order.shopper_id == shopper_id).order_by(Order.created_at.desc(), Order.id.desc())
    return list(db.execute(stmt).scalars())


def update_order_status(db: Session, order_id: int, new_status: OrderStatus) -> Order:
    order = get_order(db, order_id)
    current = order.order_status
    if current in TERMINAL_ORDER_STATUSES:
        raise InvalidTransition(f"Order {order_id} is already {current.value}")
    allowed = ORDER_TRANSITIONS.get(current, set()) | {OrderStatus.CANCELLED, OrderStatus.REJECTED}
    if new_status not in allowed:
        raise InvalidTransition(f"Cannot move order {order_id} from {current.value} to {new_status.value}")
    if new_status == OrderStatus.PROCESSING and order.payment_status != PaymentStatus.SUCCESS:
        raise InvalidTransition(f"Order {order_id} has not been paid")

    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.order_status == current)
        .values(order_status=new_status, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        raise InvalidTransition(f"Order {order_id} changed concurrently, reload and retry")

    order = _load(db, order_id)
    logger.info(f"order {order_id}: {current.value} -> {new_status.value}")
    producer.order_event(
        "order.status_changed", order_id,
        status=new_status.value, previous=current.value, customer_email=order.customer_email,
    )
    return order


def abandon_stale_orders(db: Session, older_than: timedelta, now: Optional[datetime] = None) -> int:
    """Mark unclaimed Pending orders created before ``now - older_than`` as Abandoned."""
    cutoff = (now or now_utc()) - older_than
    result = db.execute(
        update(Order)
        .where(
            Order.payment_status == PaymentStatus.PENDING,
            Order.confirm_claim.is_(None),
            Order.created_at < cutoff,
        )
        .values(payment_status=PaymentStatus.ABANDONED, order_status=OrderStatus.CANCELLED, updated_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(f"abandoned {result.rowcount} stale pending orders")
    return result.rowcount
