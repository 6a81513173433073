"""Tests for checkout: order placement, coupons and gateway session failures."""

import pytest

from fakes import FakeGateway, event_types
from storefront.db.models import (
    Coupon, CouponUsage, CustomerType, NewsletterSubscription, Order, OrderStatus, PaymentStatus, ShipmentMethod,
)
from storefront.errors import CouponError, GatewayRejected, GatewayUnavailable, ValidationError
from storefront.services import orders
from storefront.store import cart_store


def _checkout(items=None, amount=None, coupon_code=None, shopper_id="shopper-1", cart_id=None, account_email=None):
    items = items or [orders.LineItem(product_id=1, title="Linen Shirt", unit_price_cents=1000, qty=2)]
    return orders.Checkout(
        items=items,
        address=orders.ShippingAddress(address="1 Moi Avenue", city="Nairobi", postcode="00100"),
        shipment_method=ShipmentMethod.EXPRESS,
        payment_method="paystack",
        amount_cents=amount if amount is not None else sum(i.unit_price_cents * i.qty for i in items),
        customer_email="shopper@example.com",
        shopper_id=shopper_id,
        cart_id=cart_id,
        coupon_code=coupon_code,
        account_email=account_email,
    )


class TestCreateOrder:
    def test_creates_pending_order_with_gateway_session(self, db, gateway, events):
        result = orders.create_order(db, _checkout(), gateway)

        order = db.get(Order, result.order_id)
        assert order.payment_status == PaymentStatus.PENDING
        assert order.order_status == OrderStatus.PENDING
        assert order.total_cents == 2000
        assert order.discount_cents == 0
        assert order.gateway_reference == result.reference == f"FAKE-{result.order_id}"
        assert order.redirect_url == result.redirect_url
        assert [(i.product_id, i.qty, i.unit_price_cents) for i in order.items] == [(1, 2, 1000)]
        assert gateway.sessions[result.reference]["amount"] == 2000
        assert gateway.sessions[result.reference]["callback_url"].endswith("/shop/paystack-return")
        assert event_types(events) == ["order.created"]

    def test_amount_must_match_line_items(self, db, gateway):
        with pytest.raises(ValidationError):
            orders.create_order(db, _checkout(amount=1999), gateway)
        assert db.query(Order).count() == 0

    def test_coupon_discount_is_applied_and_spent(self, db, gateway, make_coupon):
        coupon_id = make_coupon("SAVE10", value=10)

        result = orders.create_order(db, _checkout(coupon_code="save10"), gateway)

        assert (result.original_cents, result.discount_cents, result.total_cents) == (2000, 200, 1800)
        order = db.get(Order, result.order_id)
        assert order.coupon_code == "SAVE10"
        assert order.total_cents == order.original_cents - order.discount_cents
        assert gateway.sessions[result.reference]["amount"] == 1800
        coupon = db.get(Coupon, coupon_id)
        db.refresh(coupon)
        assert coupon.used_count == 1
        assert db.query(CouponUsage).filter_by(order_id=result.order_id).count() == 1

    def test_invalid_coupon_aborts_before_any_write(self, db, gateway, make_coupon):
        make_coupon("BIG", minimum_order_cents=5000)

        with pytest.raises(CouponError) as excinfo:
            orders.create_order(db, _checkout(coupon_code="BIG"), gateway)

        assert excinfo.value.coupon_reason == CouponError.MINIMUM_NOT_MET
        assert db.query(Order).count() == 0
        assert gateway.sessions == {}

    def test_second_use_by_same_shopper_is_rejected(self, db, gateway, make_coupon):
        make_coupon("ONCE")
        orders.create_order(db, _checkout(coupon_code="ONCE"), gateway)

        with pytest.raises(CouponError) as excinfo:
            orders.create_order(db, _checkout(coupon_code="ONCE"), gateway)
        assert excinfo.value.coupon_reason == CouponError.PER_USER_LIMIT_REACHED

    def test_subscriber_coupon_ignores_the_contact_email(self, db, gateway, make_coupon):
        make_coupon("NEWS", customer_type=CustomerType.SUBSCRIBER)
        db.add(NewsletterSubscription(email="shopper@example.com"))
        db.commit()

        # the contact email on the order is the subscribed one, but nothing vouches for it
        with pytest.raises(CouponError) as excinfo:
            orders.create_order(db, _checkout(coupon_code="NEWS"), gateway)
        assert excinfo.value.coupon_reason == CouponError.INELIGIBLE_CUSTOMER

        result = orders.create_order(db, _checkout(coupon_code="NEWS", account_email="shopper@example.com"), gateway)
        assert result.discount_cents == 200

    @pytest.mark.parametrize("failure, error", [("unavailable", GatewayUnavailable), ("rejected", GatewayRejected)])
    def test_gateway_failure_marks_order_failed_and_keeps_cart(self, db, events, failure, error):
        cart_id = cart_store.add_item("shopper-1", 1, 2)

        with pytest.raises(error):
            orders.create_order(db, _checkout(cart_id=cart_id), FakeGateway(fail_initialize=failure))

        order = db.query(Order).one()
        assert order.payment_status == PaymentStatus.FAILED
        assert order.order_status == OrderStatus.FAILED
        assert order.gateway_reference is None
        assert cart_store.get_cart("shopper-1")["items"] == [{"product_id": 1, "size": "", "qty": 2}]
        assert events == []

    def test_guest_checkout(self, db, gateway):
        result = orders.create_order(db, _checkout(shopper_id=None), gateway)
        assert db.get(Order, result.order_id).shopper_id is None
