"""
Orders.

Placing an order takes each item's stock out through the inventory ledger, so
every sale shows up as a `remove` record; cancelling books it back with `add`
records. Nothing here touches a product's quantity directly.
"""
import logging
import random
import time
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import create_document, utcnow
from errors import InvalidOperationError, ProductNotFoundError, StoreError
from inventory import InventoryLedger, to_object_id
from ratings import effective_price
from schemas import CANCELLABLE_STATUSES, Order, OrderItem

logger = logging.getLogger(__name__)


def generate_order_number() -> str:
    return f"BH{int(time.time() * 1000)}{random.randint(0, 999):03d}"


def _restock(ledger: InventoryLedger, booked: List[Tuple[ObjectId, int]], operator_id, note: str) -> None:
    for product_id, quantity in booked:
        try:
            ledger.add_stock(product_id, quantity, operator_id, note=note)
        except (StoreError, PyMongoError):
            logger.critical("Could not give back %s units of product %s (%s); reconcile manually",
                            quantity, product_id, note)


def place_order(db, user_id, items: Iterable[Tuple[str, int]], payment_method: str, contact_info,
                note: Optional[str] = None, ledger: Optional[InventoryLedger] = None) -> dict:
    items = list(items)
    if not items:
        raise InvalidOperationError("An order needs at least one item")
    ledger = ledger or InventoryLedger(db)
    order_number = generate_order_number()

    order_items = []
    booked = []
    try:
        for product_id, quantity in items:
            oid = to_object_id(product_id)
            product = db["product"].find_one({"_id": oid}, {"name": 1, "price": 1, "discount": 1})
            if not product:
                raise ProductNotFoundError(product_id)

            ledger.remove_stock(oid, quantity, user_id, note=f"Order {order_number}")
            booked.append((oid, quantity))
            order_items.append(OrderItem(
                product=str(oid),
                name=product["name"],
                price=effective_price(product.get("price", 0), product.get("discount")),
                quantity=quantity,
            ))

        order = Order(
            order_number=order_number,
            user=str(user_id),
            items=order_items,
            total_amount=round(sum(i.price * i.quantity for i in order_items), 2),
            payment_method=payment_method,
            contact_info=contact_info,
            note=note,
        )
        order_id = create_document("order", order, database=db)
    except (StoreError, PyMongoError):
        if booked:
            logger.info("Order %s failed; giving back stock of %d item(s)", order_number, len(booked))
            _restock(ledger, booked, user_id, f"Order {order_number} rolled back")
        raise

    logger.info("Placed order %s for user %s: %d item(s), total %.2f",
                order_number, user_id, len(order_items), order.total_amount)
    return db["order"].find_one({"_id": ObjectId(order_id)})


def cancel_order(db, order: dict, operator_id, ledger: Optional[InventoryLedger] = None) -> dict:
    """Cancel a pending or paid order and book its stock back."""
    ledger = ledger or InventoryLedger(db)
    now = utcnow()
    # Claiming the status change first means a second cancel can't restock twice.
    cancelled = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": {"status": "cancelled", "cancelled_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if cancelled is None:
        raise InvalidOperationError("Only pending or paid orders can be cancelled")

    note = f"Order {cancelled['order_number']} cancelled"
    for item in cancelled["items"]:
        try:
            ledger.add_stock(item["product"], item["quantity"], operator_id, note=note)
        except ProductNotFoundError:
            logger.warning("Product %s of order %s no longer exists; stock not restored",
                           item["product"], cancelled["order_number"])
        except (StoreError, PyMongoError):
            logger.error("Order %s is cancelled but restocking product %s failed",
                         cancelled["order_number"], item["product"])
            raise
    return cancelled


def update_order_status(db, order: dict, status: str, operator_id, ledger: Optional[InventoryLedger] = None) -> dict:
    if status == "cancelled":
        return cancel_order(db, order, operator_id, ledger)
    if order.get("status") == "cancelled":
        raise InvalidOperationError("A cancelled order cannot change status")
    return db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
