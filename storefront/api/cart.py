
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from storefront.api.deps import get_db
from storefront.api.schemas import CartItemAdd, CartItemUpdate, CartRead
from storefront.core.auth import get_current_identity
from storefront.db.models import Product
from storefront.store import cart_store

router = APIRouter()

@router.get("", response_model=CartRead)
def get_my_cart(identity: dict = Depends(get_current_identity)):
    return cart_store.get_cart(identity.get("sub"))

@router.post("/items", response_model=CartRead, status_code=201)
def add_item(payload: CartItemAdd, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    owner = identity.get("sub")
    if not db.get(Product, payload.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    cart_store.add_item(owner, payload.product_id, payload.qty, payload.size)
    return cart_store.get_cart(owner)

@router.patch("/items/{product_id}", response_model=CartRead)
def update_item(product_id: int, payload: CartItemUpdate, identity: dict = Depends(get_current_identity)):
    owner = identity.get("sub")
    if not cart_store.set_quantity(owner, product_id, payload.size, payload.qty) and payload.qty > 0:
        raise HTTPException(status_code=404, detail="Item not in cart")
    return cart_store.get_cart(owner)

@router.delete("/items/{product_id}", response_model=CartRead)
def remove_item(product_id: int, size: str = "", identity: dict = Depends(get_current_identity)):
    owner = identity.get("sub")
    cart_store.remove_item(owner, product_id, size)
    return cart_store.get_cart(owner)

@router.post("/clear", response_model=CartRead)
def clear(identity: dict = Depends(get_current_identity)):
    owner = identity.get("sub")
    cart_store.clear_cart(owner)
    return cart_store.get_cart(owner)
