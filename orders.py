"""
Orders

Order creation, lookup and the admin/customer status operations. Status
writes are compare-and-set updates filtered on the status the transition
table allows the move from.
"""

import logging
import re
import time
from datetime import datetime
from typing import List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import catalog
import inventory
from database import create_document, now, object_id_or_none
from errors import (
    InvalidStatusTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentRequiredError,
)
from order_status import CANCELLABLE, OrderStatus, PaymentStatus, transition
from schemas import Address, Order, OrderItem

logger = logging.getLogger("koseli.orders")

ORDER_NUMBER_ATTEMPTS = 3


def generate_order_number(db: Database) -> str:
    """KM + last six digits of the millisecond clock + zero-padded order count.

    Read-then-format: two concurrent creations can compute the same number.
    The unique index on order_number rejects the second insert.
    """
    count = db["order"].count_documents({})
    timestamp = str(int(time.time() * 1000))[-6:]
    return f"KM{timestamp}{count + 1:04d}"


def create_order(db: Database, user_id: str, items: List[OrderItem], shipping_address: Address,
                 billing_address: Address, subtotal: float, shipping_cost: float = 0, tax_amount: float = 0,
                 discount_amount: float = 0, payment_method: str = "stripe",
                 payment_intent_id: Optional[str] = None, notes: Optional[str] = None, session=None) -> dict:
    total = round(subtotal + shipping_cost + tax_amount - discount_amount, 2)
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order = Order(
            order_number=generate_order_number(db),
            user_id=user_id,
            items=items,
            shipping_address=shipping_address,
            billing_address=billing_address,
            subtotal=round(subtotal, 2),
            shipping_cost=shipping_cost,
            tax_amount=tax_amount,
            discount_amount=discount_amount,
            total=total,
            payment_method=payment_method,
            payment_intent_id=payment_intent_id,
            notes=notes,
        )
        try:
            oid = create_document(db, "order", order, session=session)
        except DuplicateKeyError:
            if attempt == ORDER_NUMBER_ATTEMPTS:
                raise
            logger.warning("Order number %s already taken, retrying", order.order_number)
            continue
        return db["order"].find_one({"_id": object_id_or_none(oid)}, session=session)


def get_order(db: Database, order_id, session=None) -> dict:
    oid = object_id_or_none(order_id)
    order = db["order"].find_one({"_id": oid}, session=session) if oid else None
    if not order:
        raise OrderNotFoundError()
    return order


def get_user_order(db: Database, user_id: str, order_id: str) -> dict:
    oid = object_id_or_none(order_id)
    order = db["order"].find_one({"_id": oid, "user_id": user_id}) if oid else None
    if not order:
        raise OrderNotFoundError()
    return order


def populate_items(db: Database, order: dict) -> dict:
    """Attach current product name/slug/images to each line, keeping the snapshot."""
    products = catalog.load_products(db, [i["product_id"] for i in order.get("items", [])])
    out = dict(order)
    out["items"] = []
    for item in order.get("items", []):
        line = dict(item)
        product = products.get(item["product_id"])
        if product:
            line["product"] = {
                "_id": product["_id"],
                "name": product.get("name"),
                "slug": product.get("slug"),
                "images": product.get("images", []),
            }
        out["items"].append(line)
    out["total_items"] = sum(i["quantity"] for i in order.get("items", []))
    return out


def list_user_orders(db: Database, user_id: str, status: Optional[str] = None,
                     page: int = 1, limit: int = 10) -> Tuple[List[dict], int]:
    query = {"user_id": user_id}
    if status:
        query["status"] = status
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return [populate_items(db, o) for o in cursor], total


def list_all_orders(db: Database, status: Optional[str] = None, payment_status: Optional[str] = None,
                    start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                    search: Optional[str] = None, page: int = 1, limit: int = 20) -> Tuple[List[dict], int]:
    query = {}
    if status:
        query["status"] = status
    if payment_status:
        query["payment_status"] = payment_status
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = start_date
        if end_date:
            query["created_at"]["$lte"] = end_date
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [
            {"order_number": pattern},
            {"shipping_address.first_name": pattern},
            {"shipping_address.last_name": pattern},
        ]
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    orders = []
    for order in cursor:
        user = db["user"].find_one({"_id": object_id_or_none(order["user_id"])}, {"name": 1, "email": 1})
        order["user"] = user
        orders.append(order)
    return orders, total


def _apply_status(db: Database, order: dict, new_status: OrderStatus, extra: Optional[dict] = None) -> dict:
    current = order["status"]
    new_status = transition(current, new_status)
    update = {"status": new_status.value, "updated_at": now()}
    if new_status == OrderStatus.SHIPPED and not order.get("shipped_at"):
        update["shipped_at"] = now()
    elif new_status == OrderStatus.DELIVERED and not order.get("delivered_at"):
        update["delivered_at"] = now()
    update.update(extra or {})

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = get_order(db, order["_id"])
        raise InvalidStatusTransitionError(latest["status"], new_status.value)

    if new_status == OrderStatus.CANCELLED:
        inventory.release_stock(db, updated["_id"])
        updated = get_order(db, updated["_id"])
    logger.info("Order %s: %s -> %s", updated.get("order_number"), current, new_status.value)
    return updated


def update_status(db: Database, order_id: str, new_status: OrderStatus, notes: Optional[str] = None) -> dict:
    """Admin status change, validated against the transition table.

    Stripe orders are confirmed by their payment, never by hand.
    """
    order = get_order(db, order_id)
    if (OrderStatus(new_status) == OrderStatus.CONFIRMED and order.get("payment_method") == "stripe"
            and order.get("payment_status") != PaymentStatus.PAID.value):
        raise PaymentRequiredError(order.get("payment_status"))
    extra = {"admin_notes": notes} if notes else None
    return _apply_status(db, order, new_status, extra)


def cancel_order(db: Database, user_id: str, order_id: str) -> dict:
    """Customer cancellation; only pending or confirmed orders qualify."""
    order = get_user_order(db, user_id, order_id)
    if OrderStatus(order["status"]) not in CANCELLABLE:
        raise OrderNotCancellableError(order["status"])
    return _apply_status(db, order, OrderStatus.CANCELLED)


def update_tracking(db: Database, order_id: str, tracking_number: str, carrier: str,
                    estimated_delivery: Optional[datetime] = None) -> dict:
    order = get_order(db, order_id)
    update = {"tracking_number": tracking_number, "carrier": carrier, "updated_at": now()}
    if estimated_delivery:
        update["estimated_delivery"] = estimated_delivery
    return db["order"].find_one_and_update(
        {"_id": order["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
