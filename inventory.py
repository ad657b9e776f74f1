"""
Inventory

Availability checks used at cart and checkout time, and the stock
decrement / release routines run once an order is paid or cancelled.

Stock is never reserved: cart and checkout only check it. Decrements are
applied per product with their own atomic update and each applied decrement
is appended to the order's ``inventory_log`` as it happens, so the log always
says exactly which products were touched and can be replayed in reverse.
"""

import logging
from typing import Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import now, object_id_or_none

logger = logging.getLogger("koseli.inventory")

NO_LONGER_AVAILABLE = "no_longer_available"
INSUFFICIENT_STOCK = "insufficient_stock"
NOT_FOUND = "not_found"
STORE_ERROR = "store_error"


def is_active(product: Optional[dict]) -> bool:
    return bool(product) and product.get("status") == "active" and bool(product.get("is_active"))


def tracks_inventory(product: dict) -> bool:
    return (product.get("stock") or {}).get("track_inventory", True)


def available_quantity(product: dict) -> int:
    return (product.get("stock") or {}).get("quantity", 0)


def check_line(product: Optional[dict], quantity: int) -> Optional[dict]:
    """Return why ``quantity`` of ``product`` can't be bought right now, or None."""
    if not is_active(product):
        return {"reason": NO_LONGER_AVAILABLE}
    if tracks_inventory(product) and available_quantity(product) < quantity:
        return {"reason": INSUFFICIENT_STOCK, "available_stock": available_quantity(product)}
    return None


def find_unavailable(items: List[dict], products: Dict[str, dict]) -> List[dict]:
    """Check every line against current product state and collect all violations."""
    unavailable = []
    for item in items:
        product = products.get(item["product_id"])
        problem = check_line(product, item["quantity"])
        if problem is None:
            continue
        unavailable.append({
            "product_id": item["product_id"],
            "name": product.get("name") if product else "Unknown Product",
            **problem,
        })
    return unavailable


def deduct_stock(db: Database, order: dict, session=None) -> List[dict]:
    """Decrement stock and bump sales for every line of ``order``.

    Lines are handled independently. A line that can't be decremented is
    logged and skipped; the failures are returned so the caller can record
    them on the order.
    """
    failures = []
    for item in order["items"]:
        product_id, quantity = item["product_id"], item["quantity"]
        try:
            oid = object_id_or_none(product_id)
            product = db["product"].find_one({"_id": oid}, session=session) if oid else None
            if product is None:
                logger.warning("Order %s: product %s no longer exists, stock not deducted",
                               order.get("order_number"), product_id)
                failures.append({"product_id": product_id, "quantity": quantity, "reason": NOT_FOUND})
                continue

            tracked = tracks_inventory(product)
            if tracked:
                result = db["product"].update_one(
                    {"_id": oid, "stock.quantity": {"$gte": quantity}},
                    {"$inc": {"stock.quantity": -quantity, "sales_count": quantity},
                     "$set": {"updated_at": now()}},
                    session=session,
                )
                if result.matched_count == 0:
                    logger.warning("Order %s: insufficient stock for product %s (wanted %d)",
                                   order.get("order_number"), product_id, quantity)
                    failures.append({"product_id": product_id, "quantity": quantity, "reason": INSUFFICIENT_STOCK})
                    continue
            else:
                db["product"].update_one(
                    {"_id": oid}, {"$inc": {"sales_count": quantity}, "$set": {"updated_at": now()}},
                    session=session,
                )

            db["order"].update_one(
                {"_id": order["_id"]},
                {"$push": {"inventory_log": {"product_id": product_id, "quantity": quantity, "tracked": tracked}}},
                session=session,
            )
        except PyMongoError:
            logger.exception("Order %s: error updating stock for product %s", order.get("order_number"), product_id)
            failures.append({"product_id": product_id, "quantity": quantity, "reason": STORE_ERROR})
    return failures


def release_stock(db: Database, order_id, session=None) -> bool:
    """Undo the decrements recorded in an order's inventory log.

    Claims the order by moving ``inventory_status`` to ``released`` first, so
    the log is replayed at most once. An order stuck in ``deducting`` after a
    failed fulfilment is released too; its log holds only applied decrements.
    """
    order = db["order"].find_one_and_update(
        {"_id": order_id, "inventory_status": {"$in": ["deducting", "deducted"]}},
        {"$set": {"inventory_status": "released", "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if order is None:
        return False
    for entry in order.get("inventory_log") or []:
        inc = {"sales_count": -entry["quantity"]}
        if entry.get("tracked", True):
            inc["stock.quantity"] = entry["quantity"]
        try:
            db["product"].update_one(
                {"_id": object_id_or_none(entry["product_id"])},
                {"$inc": inc, "$set": {"updated_at": now()}},
                session=session,
            )
        except PyMongoError:
            logger.exception("Order %s: error restoring stock for product %s",
                             order.get("order_number"), entry["product_id"])
    logger.info("Order %s: released stock for %d line(s)", order.get("order_number"),
                len(order.get("inventory_log") or []))
    return True
