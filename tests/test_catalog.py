"""Tests for admin stock corrections and category lookups."""

import pytest
from bson import ObjectId

import catalog
from errors import CategoryNotFoundError, InsufficientStockError, ValidationError
from schemas import CategoryCreate


class TestAdjustStock:
    def test_set_add_subtract(self, db, make_product, product_doc):
        pid = make_product(quantity=10)

        assert catalog.adjust_stock(db, pid, 4, "set")["stock"]["quantity"] == 4
        assert catalog.adjust_stock(db, pid, 6, "add")["stock"]["quantity"] == 10
        assert catalog.adjust_stock(db, pid, 10, "subtract")["stock"]["quantity"] == 0
        assert product_doc(pid)["stock"]["quantity"] == 0

    def test_subtract_below_zero_rejected(self, db, make_product, product_doc):
        pid = make_product(quantity=3)
        with pytest.raises(InsufficientStockError) as exc_info:
            catalog.adjust_stock(db, pid, 5, "subtract")
        assert exc_info.value.available_stock == 3
        assert product_doc(pid)["stock"]["quantity"] == 3

    def test_unknown_operation(self, db, make_product):
        with pytest.raises(ValidationError):
            catalog.adjust_stock(db, make_product(), 1, "multiply")


class TestCategories:
    def test_lookup_by_id_or_slug(self, db):
        category = catalog.create_category(db, CategoryCreate(name="Handicrafts"))

        assert catalog.find_category_by_id_or_slug(db, "handicrafts")["_id"] == category["_id"]
        assert catalog.find_category_by_id_or_slug(db, str(category["_id"]))["name"] == "Handicrafts"
        with pytest.raises(CategoryNotFoundError):
            catalog.find_category_by_id_or_slug(db, str(ObjectId()))

    def test_toggle(self, db):
        category = catalog.create_category(db, CategoryCreate(name="Tea"))
        cid = str(category["_id"])

        assert catalog.toggle_category(db, cid)["is_active"] is False
        # hidden from the storefront list, still reachable directly
        assert catalog.list_categories(db) == []
        assert catalog.find_category_by_id_or_slug(db, "tea")["is_active"] is False
        assert catalog.toggle_category(db, cid)["is_active"] is True
