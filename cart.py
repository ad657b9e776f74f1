"""
Shopping cart

One cart document per user holding line items with a price snapshot. Every
mutation re-checks the product's current availability and stock; nothing is
reserved.
"""

import logging
from typing import Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

import catalog
import inventory
from database import now
from errors import (
    CartItemNotFoundError,
    CartNotFoundError,
    InsufficientStockError,
    ProductUnavailableError,
    ValidationError,
)
from schemas import CartItem, GuestCartItem

logger = logging.getLogger("koseli.cart")

MAX_LINE_QUANTITY = 100


def total_items(cart: Optional[dict]) -> int:
    return sum(i["quantity"] for i in (cart or {}).get("items", []))


def total_price(cart: Optional[dict]) -> float:
    return round(sum(i["price"] * i["quantity"] for i in (cart or {}).get("items", [])), 2)


def _find_line(cart: dict, product_id: str) -> Optional[dict]:
    return next((i for i in cart.get("items", []) if i["product_id"] == product_id), None)


def _ensure_available(product: dict, quantity: int, current_quantity: Optional[int] = None) -> None:
    problem = inventory.check_line(product, quantity)
    if problem is None:
        return
    if problem["reason"] == inventory.NO_LONGER_AVAILABLE:
        raise ProductUnavailableError(str(product["_id"]))
    raise InsufficientStockError(problem["available_stock"], current_quantity=current_quantity)


class CartService:
    def __init__(self, db: Database):
        self.db = db
        self.carts = db["cart"]

    def get_cart(self, user_id: str, session=None) -> Optional[dict]:
        return self.carts.find_one({"user_id": user_id}, session=session)

    def get_or_create(self, user_id: str) -> dict:
        stamp = now()
        return self.carts.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": {"items": [], "created_at": stamp, "updated_at": stamp}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def _save_items(self, cart: dict, items: List[dict]) -> dict:
        return self.carts.find_one_and_update(
            {"_id": cart["_id"]},
            {"$set": {"items": items, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )

    def view(self, user_id: str) -> dict:
        """The cart with product details, dropping lines that can no longer be bought."""
        cart = self.get_cart(user_id)
        if not cart:
            return {"items": [], "total_items": 0, "total_price": 0}
        products = catalog.load_products(self.db, [i["product_id"] for i in cart["items"]])
        valid = []
        for item in cart["items"]:
            product = products.get(item["product_id"])
            if not inventory.is_active(product):
                continue
            if inventory.tracks_inventory(product) and inventory.available_quantity(product) <= 0:
                continue
            valid.append(item)
        if len(valid) != len(cart["items"]):
            logger.info("Dropping %d unavailable line(s) from cart of user %s",
                        len(cart["items"]) - len(valid), user_id)
            cart = self._save_items(cart, valid)
        return self.populate(cart, products)

    def populate(self, cart: dict, products: Optional[dict] = None) -> dict:
        if products is None:
            products = catalog.load_products(self.db, [i["product_id"] for i in cart["items"]])
        out = dict(cart)
        out["items"] = []
        for item in cart["items"]:
            line = dict(item)
            product = products.get(item["product_id"])
            if product:
                line["product"] = {
                    "_id": product["_id"],
                    "name": product.get("name"),
                    "slug": product.get("slug"),
                    "price": product.get("price"),
                    "primary_image": catalog.primary_image(product),
                    "stock_status": catalog.stock_status(product),
                }
            out["items"].append(line)
        out["total_items"] = total_items(cart)
        out["total_price"] = total_price(cart)
        return out

    def add(self, user_id: str, product_id: str, quantity: int) -> dict:
        product = catalog.find_product(self.db, product_id)
        _ensure_available(product, quantity)

        cart = self.get_or_create(user_id)
        items = list(cart["items"])
        line = _find_line(cart, product_id)
        if line:
            new_quantity = line["quantity"] + quantity
            if new_quantity > MAX_LINE_QUANTITY:
                raise ValidationError(f"At most {MAX_LINE_QUANTITY} of one product per cart")
            _ensure_available(product, new_quantity, current_quantity=line["quantity"])
            line["quantity"] = new_quantity
            line["price"] = product["price"]
        else:
            items.append(CartItem(product_id=product_id, quantity=quantity,
                                  price=product["price"], added_at=now()).model_dump())
        return self.populate(self._save_items(cart, items))

    def update_quantity(self, user_id: str, product_id: str, quantity: int) -> dict:
        cart = self.get_cart(user_id)
        if not cart:
            raise CartNotFoundError()
        line = _find_line(cart, product_id)
        if line is None:
            raise CartItemNotFoundError(product_id)
        if quantity == 0:
            items = [i for i in cart["items"] if i is not line]
        else:
            product = catalog.find_product(self.db, product_id)
            _ensure_available(product, quantity)
            line["quantity"] = quantity
            line["price"] = product["price"]
            items = cart["items"]
        return self.populate(self._save_items(cart, items))

    def remove(self, user_id: str, product_id: str) -> dict:
        cart = self.get_cart(user_id)
        if not cart:
            raise CartNotFoundError()
        if _find_line(cart, product_id) is None:
            raise CartItemNotFoundError(product_id)
        items = [i for i in cart["items"] if i["product_id"] != product_id]
        return self.populate(self._save_items(cart, items))

    def clear(self, user_id: str, session=None) -> bool:
        """Empty the user's cart, keeping the record. False if they have none."""
        result = self.carts.update_one(
            {"user_id": user_id}, {"$set": {"items": [], "updated_at": now()}}, session=session
        )
        return result.matched_count > 0

    def merge(self, user_id: str, guest_items: Iterable[GuestCartItem]) -> dict:
        """Fold a guest cart into the user's cart, skipping lines that can't be bought.

        A line merged onto an existing one is capped at the per-line maximum
        and at the tracked stock.
        """
        cart = self.get_or_create(user_id)
        items = list(cart["items"])
        for guest in guest_items:
            products = catalog.load_products(self.db, [guest.product_id])
            product = products.get(guest.product_id)
            if inventory.check_line(product, guest.quantity) is not None:
                continue
            line = next((i for i in items if i["product_id"] == guest.product_id), None)
            quantity = guest.quantity + (line["quantity"] if line else 0)
            quantity = min(quantity, MAX_LINE_QUANTITY)
            if inventory.tracks_inventory(product):
                quantity = min(quantity, inventory.available_quantity(product))
            merged = CartItem(product_id=guest.product_id, quantity=quantity, price=product["price"],
                              added_at=line.get("added_at") if line else now()).model_dump()
            if line:
                items[items.index(line)] = merged
            else:
                items.append(merged)
        return self.populate(self._save_items(cart, items))

    def count(self, user_id: str) -> int:
        return total_items(self.get_cart(user_id))
