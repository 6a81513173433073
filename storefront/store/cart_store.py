
import uuid
from typing import Dict, Any, Optional
from redis import Redis
from storefront.core.config import settings

# cart:<cart_id>              hash  "<product_id>:<size>" -> qty
# cart:<cart_id>:owner        str   owner id
# cart:owner:<owner_id>       str   id of the owner's live cart

def get_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)

def cart_key(cart_id: str) -> str:
    return f"cart:{cart_id}"

def cart_owner_key(cart_id: str) -> str:
    return f"cart:{cart_id}:owner"

def owner_key(owner_id: str) -> str:
    return f"cart:owner:{owner_id}"

def item_field(product_id: int, size: str) -> str:
    return f"{product_id}:{size}"

def _parse_field(field: str) -> tuple[int, str]:
    pid, _, size = field.partition(":")
    return int(pid), size

def get_cart_id(owner_id: str) -> Optional[str]:
    return get_client().get(owner_key(owner_id))

def _get_or_create_cart_id(r: Redis, owner_id: str) -> str:
    candidate = uuid.uuid4().hex
    if r.set(owner_key(owner_id), candidate, nx=True):
        r.set(cart_owner_key(candidate), owner_id)
        return candidate
    return r.get(owner_key(owner_id))

def get_cart(owner_id: str) -> Dict[str, Any]:
    r = get_client()
    cart_id = r.get(owner_key(owner_id))
    items = []
    if cart_id:
        for field, qty in sorted(r.hgetall(cart_key(cart_id)).items()):
            pid, size = _parse_field(field)
            items.append({"product_id": pid, "size": size, "qty": int(qty)})
    return {"cart_id": cart_id, "owner_id": owner_id, "items": items}

def add_item(owner_id: str, product_id: int, qty: int, size: str = "") -> str:
    """Add qty of product+size, merging with an existing line. Returns the cart id."""
    r = get_client()
    cart_id = _get_or_create_cart_id(r, owner_id)
    r.hincrby(cart_key(cart_id), item_field(product_id, size), qty)
    return cart_id

def set_quantity(owner_id: str, product_id: int, size: str, qty: int) -> bool:
    r = get_client()
    cart_id = r.get(owner_key(owner_id))
    if not cart_id:
        return False
    field = item_field(product_id, size)
    if qty == 0:
        return bool(r.hdel(cart_key(cart_id), field))
    if not r.hexists(cart_key(cart_id), field):
        return False
    r.hset(cart_key(cart_id), field, qty)
    return True

def remove_item(owner_id: str, product_id: int, size: str = ""):
    r = get_client()
    cart_id = r.get(owner_key(owner_id))
    if cart_id:
        r.hdel(cart_key(cart_id), item_field(product_id, size))

def clear_cart(owner_id: str):
    r = get_client()
    cart_id = r.get(owner_key(owner_id))
    if cart_id:
        r.delete(cart_key(cart_id))

def delete_cart(cart_id: str) -> bool:
    """Destroy a cart. Returns False when it was already gone.

    The owner pointer is dropped only while it still names this cart, so a
    fresh cart the shopper started after checkout survives.
    """
    r = get_client()
    owner_id = r.get(cart_owner_key(cart_id))
    watched = [owner_key(owner_id)] if owner_id else []

    def _tx(pipe):
        pointer = pipe.get(owner_key(owner_id)) if owner_id else None
        pipe.multi()
        pipe.delete(cart_key(cart_id), cart_owner_key(cart_id))
        if pointer == cart_id:
            pipe.delete(owner_key(owner_id))

    results = r.transaction(_tx, *watched)
    return bool(results and results[0])
