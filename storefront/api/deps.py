from fastapi import HTTPException
from storefront.db.session import SessionLocal
from storefront.errors import GatewayUnavailable
from storefront.gateway.paystack import build_gateway
from storefront.gateway.port import PaymentGateway

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_gateway() -> PaymentGateway:
    try:
        return build_gateway()
    except GatewayUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.to_detail())
