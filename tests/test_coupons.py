"""Tests for coupon validation, discount maths and usage recording."""

from datetime import timedelta

import pytest

from storefront.db.models import (
    Coupon, CouponUsage, CustomerType, DiscountType, NewsletterSubscription, PaymentStatus, now_utc,
)
from storefront.errors import CouponError, ValidationError
from storefront.services import coupons


def _reason(excinfo):
    return excinfo.value.coupon_reason


class TestCalculateDiscount:
    def test_percentage_is_rounded_half_up(self):
        coupon = Coupon(code="TEN", discount_type=DiscountType.PERCENTAGE, value=10)
        assert coupons.calculate_discount(coupon, 1005) == 101

    def test_percentage_above_hundred_is_capped_at_order_amount(self):
        coupon = Coupon(code="HUGE", discount_type=DiscountType.PERCENTAGE, value=150)
        assert coupons.calculate_discount(coupon, 500) == 500

    def test_fixed_is_capped_at_order_amount(self):
        coupon = Coupon(code="FLAT", discount_type=DiscountType.FIXED, value=800)
        assert coupons.calculate_discount(coupon, 500) == 500
        assert coupons.calculate_discount(coupon, 5000) == 800


class TestValidate:
    def test_minimum_order_boundary(self, db, make_coupon):
        make_coupon("MIN1000", minimum_order_cents=1000)
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "MIN1000", "shopper-1", 999, [])
        assert _reason(excinfo) == CouponError.MINIMUM_NOT_MET

        quote = coupons.validate(db, "MIN1000", "shopper-1", 1000, [])
        assert quote.discount_cents == 100
        assert quote.final_cents == 900

    def test_code_is_case_insensitive_and_trimmed(self, db, make_coupon):
        make_coupon("WELCOME")
        quote = coupons.validate(db, "  welcome ", None, 2000, [])
        assert quote.coupon.code == "WELCOME"

    def test_empty_code_is_a_validation_error(self, db):
        with pytest.raises(ValidationError):
            coupons.validate(db, "   ", None, 2000, [])

    def test_unknown_and_disabled_codes_are_not_found(self, db, make_coupon):
        make_coupon("OFF", enabled=False)
        for code in ("NOPE", "OFF"):
            with pytest.raises(CouponError) as excinfo:
                coupons.validate(db, code, None, 2000, [])
            assert _reason(excinfo) == CouponError.NOT_FOUND

    def test_validity_window(self, db, make_coupon):
        now = now_utc()
        make_coupon("LATER", valid_from=now + timedelta(days=1), valid_until=now + timedelta(days=2))
        make_coupon("GONE", valid_from=now - timedelta(days=5), valid_until=now - timedelta(days=1))
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "LATER", None, 2000, [])
        assert _reason(excinfo) == CouponError.NOT_STARTED
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "GONE", None, 2000, [])
        assert _reason(excinfo) == CouponError.EXPIRED

    def test_global_usage_limit(self, db, make_coupon):
        make_coupon("LIMITED", usage_limit=5, used_count=5)
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "LIMITED", None, 2000, [])
        assert _reason(excinfo) == CouponError.USAGE_LIMIT_REACHED

    def test_per_user_limit_counts_the_ledger(self, db, make_coupon, make_order):
        coupon_id = make_coupon("ONCE")
        order_id = make_order(shopper_id="shopper-1")
        coupons.commit_usage(db, db.get(Coupon, coupon_id), "shopper-1", order_id, 200)
        db.commit()

        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "ONCE", "shopper-1", 2000, [])
        assert _reason(excinfo) == CouponError.PER_USER_LIMIT_REACHED
        # other shoppers are unaffected
        assert coupons.validate(db, "ONCE", "shopper-2", 2000, []).discount_cents == 200

    def test_new_customer_only_before_first_paid_order(self, db, make_coupon, make_order):
        make_coupon("FIRST", customer_type=CustomerType.NEW_CUSTOMER)
        assert coupons.validate(db, "FIRST", "shopper-1", 2000, []).discount_cents == 200

        make_order(shopper_id="shopper-1", payment_status=PaymentStatus.SUCCESS)
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "FIRST", "shopper-1", 2000, [])
        assert _reason(excinfo) == CouponError.INELIGIBLE_CUSTOMER

    def test_new_customer_ignores_unpaid_orders(self, db, make_coupon, make_order):
        make_coupon("FIRST", customer_type=CustomerType.NEW_CUSTOMER)
        make_order(shopper_id="shopper-1", payment_status=PaymentStatus.FAILED)
        make_order(shopper_id="shopper-1", payment_status=PaymentStatus.PENDING)
        assert coupons.validate(db, "FIRST", "shopper-1", 2000, []).discount_cents == 200

    def test_top_buyer_is_recomputed_from_history(self, db, make_coupon, make_order):
        make_coupon("VIP", customer_type=CustomerType.TOP_BUYER)
        make_order(shopper_id="alice", payment_status=PaymentStatus.SUCCESS)
        make_order(shopper_id="alice", payment_status=PaymentStatus.SUCCESS)
        make_order(shopper_id="bob", payment_status=PaymentStatus.SUCCESS)

        assert coupons.current_top_buyer(db) == "alice"
        assert coupons.validate(db, "VIP", "alice", 2000, []).discount_cents == 200
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "VIP", "bob", 2000, [])
        assert _reason(excinfo) == CouponError.INELIGIBLE_CUSTOMER

        make_order(shopper_id="bob", payment_status=PaymentStatus.SUCCESS)
        make_order(shopper_id="bob", payment_status=PaymentStatus.SUCCESS)
        assert coupons.current_top_buyer(db) == "bob"

    def test_top_buyer_tie_breaks_on_amount_spent(self, db, make_order):
        make_order(shopper_id="alice", items=((1, 1, 500),), payment_status=PaymentStatus.SUCCESS)
        make_order(shopper_id="bob", items=((1, 1, 900),), payment_status=PaymentStatus.SUCCESS)
        assert coupons.current_top_buyer(db) == "bob"

    def test_subscriber_matches_email_case_insensitively(self, db, make_coupon):
        make_coupon("NEWS", customer_type=CustomerType.SUBSCRIBER)
        db.add(NewsletterSubscription(email="Reader@Example.com"))
        db.commit()

        quote = coupons.validate(db, "NEWS", None, 2000, [], customer_email="reader@example.COM")
        assert quote.discount_cents == 200
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "NEWS", None, 2000, [], customer_email="someone@example.com")
        assert _reason(excinfo) == CouponError.INELIGIBLE_CUSTOMER

    def test_guests_cannot_use_history_based_coupons(self, db, make_coupon):
        make_coupon("FIRST", customer_type=CustomerType.NEW_CUSTOMER)
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "FIRST", None, 2000, [])
        assert _reason(excinfo) == CouponError.INELIGIBLE_CUSTOMER

    def test_applicable_categories(self, db, make_coupon, make_product):
        shoe = make_product(title="Runner", category="Shoes")
        shirt = make_product(title="Tee", category="apparel")
        make_coupon("SHOES", applicable_categories=["shoes"])

        assert coupons.validate(db, "SHOES", None, 2000, [{"product_id": shoe}, {"product_id": shirt}]).discount_cents == 200
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "SHOES", None, 2000, [{"product_id": shirt}])
        assert _reason(excinfo) == CouponError.CATEGORY_NOT_APPLICABLE

    def test_excluded_categories(self, db, make_coupon, make_product):
        sale = make_product(title="Clearance Jacket", category="sale")
        shirt = make_product(title="Tee", category="apparel")
        make_coupon("NOSALE", excluded_categories=["Sale"])

        assert coupons.validate(db, "NOSALE", None, 2000, [{"product_id": shirt}]).discount_cents == 200
        with pytest.raises(CouponError) as excinfo:
            coupons.validate(db, "NOSALE", None, 2000, [{"product_id": shirt}, {"product_id": sale}])
        assert _reason(excinfo) == CouponError.CATEGORY_EXCLUDED


class TestCommitUsage:
    def test_appends_ledger_and_increments_counter(self, db, make_coupon, make_order):
        coupon_id = make_coupon("TRACK", usage_limit=3)
        order_id = make_order()
        coupons.commit_usage(db, db.get(Coupon, coupon_id), "shopper-1", order_id, 150)
        db.commit()

        coupon = db.get(Coupon, coupon_id)
        db.refresh(coupon)
        assert coupon.used_count == 1
        usages = db.query(CouponUsage).filter_by(coupon_id=coupon_id).all()
        assert [(u.shopper_id, u.order_id, u.discount_cents) for u in usages] == [("shopper-1", order_id, 150)]

    def test_never_exceeds_usage_limit(self, db, make_coupon, make_order):
        coupon_id = make_coupon("LAST", usage_limit=1, per_user_limit=5)
        first, second = make_order(shopper_id="a"), make_order(shopper_id="b")
        coupons.commit_usage(db, db.get(Coupon, coupon_id), "a", first, 100)
        db.commit()

        with pytest.raises(CouponError) as excinfo:
            coupons.commit_usage(db, db.get(Coupon, coupon_id), "b", second, 100)
        db.rollback()
        assert _reason(excinfo) == CouponError.USAGE_LIMIT_REACHED

        coupon = db.get(Coupon, coupon_id)
        db.refresh(coupon)
        assert coupon.used_count == 1
        assert db.query(CouponUsage).count() == 1


class TestAvailableCoupons:
    def test_lists_only_usable_and_eligible(self, db, make_coupon, make_order):
        now = now_utc()
        make_coupon("GENERAL")
        make_coupon("FIRST", customer_type=CustomerType.NEW_CUSTOMER)
        make_coupon("EXPIRED", valid_from=now - timedelta(days=3), valid_until=now - timedelta(days=1))
        make_coupon("USEDUP", usage_limit=1, used_count=1)
        make_order(shopper_id="shopper-1", payment_status=PaymentStatus.SUCCESS)

        codes = [c.code for c in coupons.available_coupons(db, "shopper-1")]
        assert codes == ["GENERAL"]

    def test_hides_coupons_the_shopper_already_spent(self, db, make_coupon, make_order):
        coupon_id = make_coupon("ONCE")
        order_id = make_order()
        coupons.commit_usage(db, db.get(Coupon, coupon_id), "shopper-1", order_id, 100)
        db.commit()

        assert coupons.available_coupons(db, "shopper-1") == []
        assert [c.code for c in coupons.available_coupons(db, "shopper-2")] == ["ONCE"]
