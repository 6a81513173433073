from fastapi import APIRouter, Depends, HTTPException
from typing import List, Optional
from sqlalchemy.orm import Session
from storefront.api.deps import get_db
from storefront.api.schemas import CouponQuoteRead, CouponRead, CouponValidatePayload
from storefront.core.auth import get_current_identity, get_optional_identity
from storefront.services import coupons

router = APIRouter()

def _account_email(identity: Optional[dict], shopper_id: Optional[str]) -> Optional[str]:
    # subscriber eligibility only trusts the email the token was issued for
    if identity is None or identity.get("sub") != shopper_id:
        return None
    return identity.get("email")

@router.post("/validate", response_model=CouponQuoteRead)
def validate_coupon(payload: CouponValidatePayload, identity: Optional[dict] = Depends(get_optional_identity),
                    db: Session = Depends(get_db)):
    if identity is None:
        if payload.shopper_id:
            raise HTTPException(status_code=401, detail="Not authenticated")
        shopper_id = None
    else:
        shopper_id = payload.shopper_id or identity.get("sub")
        if shopper_id != identity.get("sub") and identity.get("role") != "admin":
            raise HTTPException(status_code=403, detail="Forbidden")
    quote = coupons.validate(
        db, payload.code, shopper_id, payload.order_amount_cents, payload.items,
        customer_email=_account_email(identity, shopper_id),
    )
    return CouponQuoteRead(
        coupon=CouponRead.model_validate(quote.coupon),
        original_cents=quote.original_cents,
        discount_cents=quote.discount_cents,
        final_cents=quote.final_cents,
    )

@router.get("/available/{shopper_id}", response_model=List[CouponRead])
def available(shopper_id: str, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    if identity.get("sub") != shopper_id and identity.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    return coupons.available_coupons(db, shopper_id, customer_email=_account_email(identity, shopper_id))
