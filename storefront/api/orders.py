import json
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from loguru import logger
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from storefront.api.deps import get_db, get_gateway
from storefront.api.schemas import (
    AbandonPayload, BillingRead, CheckoutPayload, CheckoutResponse, ConfirmPayload,
    ConfirmResponse, OrderItemRead, OrderRead, StatusUpdate,
)
from storefront.core.auth import get_current_identity, get_optional_identity, require_admin
from storefront.db.models import Order
from storefront.errors import GatewayUnavailable, StorefrontError
from storefront.gateway.port import PaymentGateway
from storefront.services import orders
from storefront.store import cart_store

router = APIRouter()

SIGNATURE_HEADER = "x-paystack-signature"

def _order_read(order: Order) -> OrderRead:
    return OrderRead(
        id=order.id,
        shopper_id=order.shopper_id,
        customer_email=order.customer_email,
        address=order.address,
        city=order.city,
        postcode=order.postcode,
        shipment_method=order.shipment_method,
        order_status=order.order_status,
        billing=BillingRead(
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            original_cents=order.original_cents,
            discount_cents=order.discount_cents,
            total_cents=order.total_cents,
            currency=order.currency,
            gateway_reference=order.gateway_reference,
            coupon_code=order.coupon_code,
            payment_orphaned=order.payment_orphaned,
        ),
        stock_shortfall=order.stock_shortfall,
        items=[OrderItemRead.model_validate(it) for it in order.items],
        created_at=order.created_at,
        updated_at=order.updated_at,
    )

def _confirm_response(outcome: orders.ConfirmationOutcome) -> ConfirmResponse:
    return ConfirmResponse(
        order_id=outcome.order_id,
        payment_status=outcome.payment_status,
        order_status=outcome.order_status,
        stock_shortfall=outcome.stock_shortfall,
        message=outcome.message,
    )

def _can_read(identity: dict, shopper_id: str | None) -> bool:
    return identity.get("role") == "admin" or (shopper_id is not None and identity.get("sub") == shopper_id)

@router.post("", response_model=CheckoutResponse, status_code=201)
def create_order(payload: CheckoutPayload, identity: dict | None = Depends(get_optional_identity),
                 db: Session = Depends(get_db), gateway: PaymentGateway = Depends(get_gateway)):
    if identity is not None:
        if payload.shopper_id and payload.shopper_id != identity.get("sub"):
            raise HTTPException(status_code=403, detail="Cannot check out for another shopper")
        shopper_id = identity.get("sub")
    elif payload.shopper_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    else:
        shopper_id = None

    cart_id = payload.cart_id or (cart_store.get_cart_id(shopper_id) if shopper_id else None)
    checkout = orders.Checkout(
        items=[orders.LineItem(**it.model_dump()) for it in payload.items],
        address=orders.ShippingAddress(**payload.address.model_dump()),
        shipment_method=payload.shipment_method,
        payment_method=payload.payment_method,
        amount_cents=payload.amount_cents,
        customer_email=str(payload.customer_email),
        customer_phone=payload.customer_phone,
        shopper_id=shopper_id,
        cart_id=cart_id,
        coupon_code=payload.coupon_code,
        account_email=identity.get("email") if identity else None,
    )
    result = orders.create_order(db, checkout, gateway)
    return CheckoutResponse(**result.__dict__)

@router.post("/confirm", response_model=ConfirmResponse)
def confirm(payload: ConfirmPayload, response: Response, db: Session = Depends(get_db),
            gateway: PaymentGateway = Depends(get_gateway)):
    try:
        outcome = orders.confirm_payment(db, payload.order_id, gateway, reference=payload.reference, source="return")
    except (OperationalError, RedisConnectionError) as exc:
        logger.warning(f"confirm: order {payload.order_id} hit a transient failure: {exc}")
        raise HTTPException(status_code=503, detail="Temporarily unavailable")
    if outcome.in_progress:
        response.status_code = 202
    return _confirm_response(outcome)

def _process_webhook(db: Session, gateway: PaymentGateway, event: dict) -> dict:
    try:
        outcome = orders.process_webhook_event(db, gateway, event)
    except (GatewayUnavailable, OperationalError, RedisConnectionError) as exc:
        # transient: let the provider redeliver
        logger.warning(f"webhook: transient failure, asking for redelivery: {exc}")
        raise HTTPException(status_code=503, detail="Temporarily unavailable")
    except StorefrontError as exc:
        logger.warning(f"webhook: event not applicable: {exc.message}")
        return {"status": "ignored", "reason": exc.reason}
    if outcome is None:
        return {"status": "ignored"}
    return {"status": "processed", "order_id": outcome.order_id, "payment_status": outcome.payment_status.value}

@router.post("/webhook")
async def webhook(request: Request, db: Session = Depends(get_db), gateway: PaymentGateway = Depends(get_gateway)):
    raw = await request.body()
    if not gateway.verify_webhook_signature(raw, request.headers.get(SIGNATURE_HEADER)):
        raise HTTPException(status_code=400, detail="Invalid signature")
    try:
        event = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Malformed payload")
    return await run_in_threadpool(_process_webhook, db, gateway, event)

@router.get("/shopper/{shopper_id}", response_model=List[OrderRead])
def list_orders(shopper_id: str, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    if not _can_read(identity, shopper_id):
        raise HTTPException(status_code=403, detail="Forbidden")
    return [_order_read(o) for o in orders.list_orders_for_shopper(db, shopper_id)]

@router.post("/abandon-stale")
def abandon_stale(payload: AbandonPayload, _=Depends(require_admin), db: Session = Depends(get_db)):
    count = orders.abandon_stale_orders(db, timedelta(minutes=payload.older_than_minutes))
    return {"abandoned": count}

@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    order = orders.get_order(db, order_id)
    if not _can_read(identity, order.shopper_id):
        raise HTTPException(status_code=403, detail="Forbidden")
    return _order_read(order)

@router.patch("/{order_id}/status", response_model=OrderRead)
def update_status(order_id: int, payload: StatusUpdate, _=Depends(require_admin), db: Session = Depends(get_db)):
    return _order_read(orders.update_order_status(db, order_id, payload.order_status))
