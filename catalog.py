"""
Catalog

Products and categories: lookups used by the cart and checkout, the public
listing endpoints, and admin CRUD.
"""

import logging
import math
import re
from typing import List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, now, object_id_or_none
from errors import (
    CategoryNotFoundError,
    DuplicateError,
    InsufficientStockError,
    ProductNotFoundError,
    ValidationError,
)
from schemas import CategoryCreate, CategoryUpdate, ProductCreate, ProductUpdate

logger = logging.getLogger("koseli.catalog")


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9 -]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def primary_image(product: dict) -> Optional[str]:
    images = product.get("images") or []
    if not images:
        return None
    img = next((i for i in images if i.get("is_primary")), images[0])
    return img.get("url_medium") or img.get("url")


def stock_status(product: dict) -> str:
    stock = product.get("stock") or {}
    if not stock.get("track_inventory", True):
        return "unlimited"
    quantity = stock.get("quantity", 0)
    if quantity <= 0:
        return "out_of_stock"
    if quantity <= stock.get("low_stock_threshold", 10):
        return "low_stock"
    return "in_stock"


def discount_percentage(product: dict) -> int:
    compare = product.get("compare_price")
    price = product.get("price", 0)
    if compare and compare > price:
        return round((compare - price) / compare * 100)
    return 0


def decorate(product: dict) -> dict:
    """Attach the derived display fields to a product document."""
    out = dict(product)
    out["primary_image"] = primary_image(product)
    out["stock_status"] = stock_status(product)
    out["discount_percentage"] = discount_percentage(product)
    return out


# -------------------- Products --------------------

def find_product(db: Database, product_id: str, session=None) -> dict:
    oid = object_id_or_none(product_id)
    product = db["product"].find_one({"_id": oid}, session=session) if oid else None
    if not product:
        raise ProductNotFoundError(product_id)
    return product


def find_product_by_id_or_slug(db: Database, key: str) -> dict:
    oid = object_id_or_none(key)
    query = {"$or": [{"_id": oid}, {"slug": key}]} if oid else {"slug": key}
    product = db["product"].find_one({**query, "status": "active", "is_active": True})
    if not product:
        raise ProductNotFoundError(key)
    return product


def load_products(db: Database, product_ids: List[str], session=None) -> dict:
    """Map of product id string -> product document for the ids that exist."""
    oids = [oid for oid in (object_id_or_none(pid) for pid in product_ids) if oid]
    if not oids:
        return {}
    return {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": oids}}, session=session)}


def list_products(db: Database, q: Optional[str] = None, category: Optional[str] = None,
                  featured: Optional[bool] = None, page: int = 1, limit: int = 12) -> Tuple[List[dict], int]:
    query = {"status": "active", "is_active": True}
    if q:
        query["$or"] = [
            {"name": {"$regex": re.escape(q), "$options": "i"}},
            {"tags": {"$regex": re.escape(q), "$options": "i"}},
        ]
    if category:
        cat = db["category"].find_one({"slug": category}) or db["category"].find_one({"_id": object_id_or_none(category)})
        if not cat:
            return [], 0
        query["category"] = str(cat["_id"])
    if featured is not None:
        query["is_featured"] = featured
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return [decorate(p) for p in cursor], total


def _check_category(db: Database, category_id: Optional[str]) -> None:
    if category_id is None:
        return
    oid = object_id_or_none(category_id)
    if not oid or not db["category"].find_one({"_id": oid}):
        raise CategoryNotFoundError(category_id)


def _check_slug(db: Database, collection: str, slug: str, exclude=None) -> None:
    query = {"slug": slug}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    if db[collection].find_one(query):
        raise DuplicateError("Slug already in use")


def create_product(db: Database, payload: ProductCreate) -> dict:
    data = payload.model_dump()
    data["slug"] = data.get("slug") or slugify(payload.name)
    _check_slug(db, "product", data["slug"])
    _check_category(db, payload.category)
    data["sales_count"] = 0
    pid = create_document(db, "product", data)
    return db["product"].find_one({"_id": object_id_or_none(pid)})


def update_product(db: Database, product_id: str, payload: ProductUpdate) -> dict:
    product = find_product(db, product_id)
    update = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "slug" in update:
        _check_slug(db, "product", update["slug"], exclude=product["_id"])
    if "category" in update:
        _check_category(db, update["category"])
    update["updated_at"] = now()
    return db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )


def delete_product(db: Database, product_id: str) -> None:
    product = find_product(db, product_id)
    db["product"].delete_one({"_id": product["_id"]})


def adjust_stock(db: Database, product_id: str, quantity: int, operation: str) -> dict:
    """Admin stock correction: ``set``, ``add`` or ``subtract`` ``quantity`` units.

    Subtract is a conditional decrement and never takes stock below zero.
    """
    product = find_product(db, product_id)
    stamp = now()
    if operation == "set":
        update = {"$set": {"stock.quantity": quantity, "updated_at": stamp}}
        query = {"_id": product["_id"]}
    elif operation == "add":
        update = {"$inc": {"stock.quantity": quantity}, "$set": {"updated_at": stamp}}
        query = {"_id": product["_id"]}
    elif operation == "subtract":
        update = {"$inc": {"stock.quantity": -quantity}, "$set": {"updated_at": stamp}}
        query = {"_id": product["_id"], "stock.quantity": {"$gte": quantity}}
    else:
        raise ValidationError("Operation must be set, add, or subtract")

    updated = db["product"].find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
    if updated is None:
        current = find_product(db, product_id)
        raise InsufficientStockError((current.get("stock") or {}).get("quantity", 0))
    logger.info("Stock of product %s: %s %d -> %d", updated.get("slug"), operation, quantity,
                updated["stock"]["quantity"])
    return updated


# -------------------- Categories --------------------

def list_categories(db: Database, include_inactive: bool = False) -> List[dict]:
    query = {} if include_inactive else {"is_active": True}
    categories = []
    for cat in db["category"].find(query).sort("name"):
        cat["product_count"] = db["product"].count_documents(
            {"category": str(cat["_id"]), "status": "active", "is_active": True}
        )
        categories.append(cat)
    return categories


def find_category(db: Database, category_id: str) -> dict:
    oid = object_id_or_none(category_id)
    category = db["category"].find_one({"_id": oid}) if oid else None
    if not category:
        raise CategoryNotFoundError(category_id)
    return category


def find_category_by_id_or_slug(db: Database, key: str) -> dict:
    oid = object_id_or_none(key)
    query = {"$or": [{"_id": oid}, {"slug": key}]} if oid else {"slug": key}
    category = db["category"].find_one(query)
    if not category:
        raise CategoryNotFoundError(key)
    return category


def toggle_category(db: Database, category_id: str) -> dict:
    category = find_category(db, category_id)
    return db["category"].find_one_and_update(
        {"_id": category["_id"]},
        {"$set": {"is_active": not category.get("is_active", True), "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )


def create_category(db: Database, payload: CategoryCreate) -> dict:
    data = payload.model_dump()
    data["slug"] = data.get("slug") or slugify(payload.name)
    _check_slug(db, "category", data["slug"])
    cid = create_document(db, "category", data)
    return db["category"].find_one({"_id": object_id_or_none(cid)})


def update_category(db: Database, category_id: str, payload: CategoryUpdate) -> dict:
    category = find_category(db, category_id)
    update = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "name" in update and "slug" not in update:
        update["slug"] = slugify(update["name"])
    if "slug" in update:
        _check_slug(db, "category", update["slug"], exclude=category["_id"])
    update["updated_at"] = now()
    return db["category"].find_one_and_update(
        {"_id": category["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )


def delete_category(db: Database, category_id: str) -> None:
    category = find_category(db, category_id)
    if db["product"].count_documents({"category": str(category["_id"])}):
        raise ValidationError("Category still has products")
    db["category"].delete_one({"_id": category["_id"]})


def pagination(page: int, limit: int, total: int) -> dict:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }
