"""Error taxonomy for the order pipeline.

Every error carries a machine-readable ``reason`` and the HTTP status the API
layer renders it with.
"""


class StorefrontError(Exception):
    reason = "error"
    status_code = 400

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_detail(self) -> dict:
        return {"reason": self.reason, "message": self.message, **self.extra}


class ValidationError(StorefrontError):
    """Malformed or inconsistent request; no state was changed."""

    reason = "validation_error"
    status_code = 422


class CouponError(StorefrontError):
    """Coupon rejected. ``coupon_reason`` tells the caller which rule failed."""

    reason = "coupon_invalid"
    status_code = 400

    NOT_FOUND = "not_found"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    MINIMUM_NOT_MET = "minimum_not_met"
    PER_USER_LIMIT_REACHED = "per_user_limit_reached"
    INELIGIBLE_CUSTOMER = "ineligible_customer"
    CATEGORY_NOT_APPLICABLE = "category_not_applicable"
    CATEGORY_EXCLUDED = "category_excluded"

    def __init__(self, coupon_reason: str, message: str):
        super().__init__(message, coupon_reason=coupon_reason)
        self.coupon_reason = coupon_reason


class GatewayError(StorefrontError):
    reason = "gateway_error"
    status_code = 502


class GatewayUnavailable(GatewayError):
    """Transport error, timeout or 5xx from the payment provider."""

    reason = "gateway_unavailable"
    status_code = 503


class GatewayRejected(GatewayError):
    """The provider answered but refused the request."""

    reason = "gateway_rejected"
    status_code = 502


class VerificationFailed(StorefrontError):
    reason = "verification_failed"
    status_code = 402


class InsufficientStock(StorefrontError):
    reason = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Not enough stock for product {product_id}: requested {requested}, available {available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class OrderNotFound(StorefrontError):
    reason = "order_not_found"
    status_code = 404

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found")


class InvalidTransition(StorefrontError):
    reason = "invalid_transition"
    status_code = 409
