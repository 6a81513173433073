"""Stock commitment for paid orders, with per-product low stock reporting."""
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.db.models import Product, StockMovement
from storefront.errors import InsufficientStock


@dataclass
class InventoryCommit:
    order_id: int
    already_committed: bool = False
    low_stock: list[dict] = field(default_factory=list)


def _quantities(line_items: Iterable) -> dict[int, int]:
    # sizes of one product draw on the same stock count
    wanted: dict[int, int] = defaultdict(int)
    for item in line_items:
        pid, qty = (item["product_id"], item["qty"]) if isinstance(item, dict) else (item.product_id, item.qty)
        wanted[int(pid)] += int(qty)
    return dict(wanted)


def is_committed(db: Session, order_id: int) -> bool:
    stmt = select(func.count(StockMovement.id)).where(StockMovement.order_id == order_id)
    return db.execute(stmt).scalar_one() > 0


def commit_reservation(db: Session, order_id: int, line_items: Iterable) -> InventoryCommit:
    """Decrement stock for every line item of ``order_id``, all or nothing.

    Each product is one conditional ``stock = stock - q WHERE stock >= q``
    update; a miss rolls the whole commit back and raises InsufficientStock.
    Replays are no-ops: the stock movement rows written alongside the
    decrements are unique per (order, product).
    """
    wanted = _quantities(line_items)
    if is_committed(db, order_id):
        db.commit()
        logger.info(f"inventory for order {order_id} already committed")
        return InventoryCommit(order_id=order_id, already_committed=True)

    try:
        # fixed product order keeps row locks acquired in the same sequence
        for product_id, qty in sorted(wanted.items()):
            result = db.execute(
                update(Product)
                .where(Product.id == product_id, Product.stock >= qty)
                .values(stock=Product.stock - qty)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientStock(product_id, qty, _available(db, product_id))
            db.add(StockMovement(order_id=order_id, product_id=product_id, qty=qty))
        db.flush()
        db.commit()
    except InsufficientStock:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        logger.info(f"inventory for order {order_id} committed concurrently")
        return InventoryCommit(order_id=order_id, already_committed=True)

    low = db.execute(
        select(Product.id, Product.title, Product.stock)
        .where(Product.id.in_(list(wanted)), Product.stock <= settings.LOW_STOCK_THRESHOLD)
    ).all()
    db.commit()
    logger.info(f"inventory committed for order {order_id}: {wanted}")
    return InventoryCommit(
        order_id=order_id,
        low_stock=[{"product_id": pid, "title": title, "stock": stock} for pid, title, stock in low],
    )


def _available(db: Session, product_id: int) -> int:
    stock = db.execute(select(Product.stock).where(Product.id == product_id)).scalar_one_or_none()
    return stock or 0
