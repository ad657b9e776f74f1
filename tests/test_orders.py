"""Tests for order creation, status changes and cancellation."""

import re

import pytest
from bson import ObjectId

import inventory
import orders
from errors import (
    InvalidStatusTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentRequiredError,
)
from order_status import OrderStatus
from schemas import OrderItem


@pytest.fixture
def make_order(db, user_id, address):
    def _make(items=None, owner=None, paid=False):
        items = items or [OrderItem(product_id=str(ObjectId()), quantity=1, price=5.0, name="Dhaka Topi")]
        order = orders.create_order(
            db, owner or user_id, items, address, address,
            subtotal=sum(i.price * i.quantity for i in items), shipping_cost=2.0,
        )
        if paid:
            db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_status": "paid"}})
        return order

    return _make


@pytest.fixture
def paid_order(checkout, carts, gateway, make_product, user_id, address):
    """A confirmed, paid order for 3 units of a product with 10 in stock."""
    pid = make_product(quantity=10)
    carts.add(user_id, pid, 3)
    result = checkout.create_payment_intent(user_id, address, address)
    gateway.succeed("pi_1")
    order = checkout.confirm_payment(user_id, "pi_1", result["order_id"])
    return pid, order


class TestCreateOrder:
    def test_order_number_format(self, make_order):
        order = make_order()
        assert re.match(r"^KM\d{10}$", order["order_number"])
        assert order["order_number"].endswith("0001")

    def test_count_suffix_increments(self, make_order):
        make_order()
        assert make_order()["order_number"].endswith("0002")

    def test_totals(self, make_order):
        order = make_order(items=[OrderItem(product_id=str(ObjectId()), quantity=3, price=2.5)])
        assert order["subtotal"] == 7.5
        assert order["total"] == 9.5
        assert order["status"] == "pending"
        assert order["payment_status"] == "pending"
        assert order["inventory_status"] == "pending"

    def test_order_number_collision_retried(self, make_order, monkeypatch):
        first = make_order()
        numbers = iter([first["order_number"], "KM9999990099"])
        monkeypatch.setattr(orders, "generate_order_number", lambda db: next(numbers))
        assert make_order()["order_number"] == "KM9999990099"


class TestStatusChanges:
    def test_admin_walks_forward(self, db, make_order):
        oid = str(make_order(paid=True)["_id"])
        orders.update_status(db, oid, OrderStatus.CONFIRMED)
        orders.update_status(db, oid, OrderStatus.PROCESSING, notes="packed")
        order = orders.update_status(db, oid, OrderStatus.SHIPPED)

        assert order["status"] == "shipped"
        assert order["admin_notes"] == "packed"
        assert order["shipped_at"] is not None
        assert "delivered_at" not in order

        order = orders.update_status(db, oid, OrderStatus.DELIVERED)
        assert order["delivered_at"] is not None

    def test_illegal_transition(self, db, make_order):
        oid = str(make_order()["_id"])
        with pytest.raises(InvalidStatusTransitionError) as exc_info:
            orders.update_status(db, oid, OrderStatus.DELIVERED)
        assert exc_info.value.from_status == "pending"
        assert orders.get_order(db, oid)["status"] == "pending"

    def test_unknown_order(self, db):
        with pytest.raises(OrderNotFoundError):
            orders.update_status(db, str(ObjectId()), OrderStatus.CONFIRMED)
        with pytest.raises(OrderNotFoundError):
            orders.update_status(db, "nope", OrderStatus.CONFIRMED)

    def test_unpaid_stripe_order_cannot_be_confirmed(self, db, make_order):
        oid = str(make_order()["_id"])
        with pytest.raises(PaymentRequiredError) as exc_info:
            orders.update_status(db, oid, OrderStatus.CONFIRMED)
        assert exc_info.value.payment_status == "pending"
        assert orders.get_order(db, oid)["status"] == "pending"

    def test_admin_cancel_releases_stock(self, db, paid_order, product_doc):
        pid, order = paid_order
        assert product_doc(pid)["stock"]["quantity"] == 7

        cancelled = orders.update_status(db, str(order["_id"]), OrderStatus.CANCELLED)

        assert cancelled["status"] == "cancelled"
        assert cancelled["inventory_status"] == "released"
        assert product_doc(pid)["stock"]["quantity"] == 10
        assert product_doc(pid)["sales_count"] == 0

    def test_tracking(self, db, make_order):
        oid = str(make_order()["_id"])
        order = orders.update_tracking(db, oid, "NP123456", "Nepal Post")
        assert order["tracking_number"] == "NP123456"
        assert order["carrier"] == "Nepal Post"


class TestCancelOrder:
    def test_pending_order_cancelled(self, db, make_order, user_id):
        oid = str(make_order()["_id"])
        order = orders.cancel_order(db, user_id, oid)
        assert order["status"] == "cancelled"
        # nothing was deducted, so nothing is released
        assert order["inventory_status"] == "pending"

    def test_shipped_order_not_cancellable(self, db, make_order, user_id):
        oid = str(make_order(paid=True)["_id"])
        for status in (OrderStatus.CONFIRMED, OrderStatus.SHIPPED):
            orders.update_status(db, oid, status)

        with pytest.raises(OrderNotCancellableError) as exc_info:
            orders.cancel_order(db, user_id, oid)

        assert exc_info.value.current_status == "shipped"
        assert orders.get_order(db, oid)["status"] == "shipped"

    def test_confirmed_order_releases_stock_once(self, db, paid_order, user_id, product_doc):
        pid, order = paid_order
        orders.cancel_order(db, user_id, str(order["_id"]))
        assert product_doc(pid)["stock"]["quantity"] == 10

        with pytest.raises(OrderNotCancellableError):
            orders.cancel_order(db, user_id, str(order["_id"]))
        assert product_doc(pid)["stock"]["quantity"] == 10

    def test_interrupted_fulfilment_released_on_cancel(self, db, checkout, carts, gateway, make_product,
                                                      user_id, address, product_doc, monkeypatch):
        a = make_product(name="Pashmina", quantity=10)
        b = make_product(name="Singing Bowl", quantity=10)
        carts.add(user_id, a, 2)
        carts.add(user_id, b, 1)
        result = checkout.create_payment_intent(user_id, address, address)
        gateway.succeed("pi_1")

        real_deduct = inventory.deduct_stock

        def deduct_then_crash(db, order, session=None):
            real_deduct(db, order, session=session)
            raise RuntimeError("worker died")

        monkeypatch.setattr(inventory, "deduct_stock", deduct_then_crash)
        with pytest.raises(RuntimeError):
            checkout.confirm_payment(user_id, "pi_1", result["order_id"])
        stuck = orders.get_order(db, result["order_id"])
        assert stuck["inventory_status"] == "deducting"
        assert product_doc(a)["stock"]["quantity"] == 8

        order = orders.cancel_order(db, user_id, result["order_id"])

        assert order["inventory_status"] == "released"
        assert product_doc(a)["stock"]["quantity"] == 10
        assert product_doc(b)["stock"]["quantity"] == 10

    def test_other_users_order(self, db, make_order):
        oid = str(make_order()["_id"])
        with pytest.raises(OrderNotFoundError):
            orders.cancel_order(db, str(ObjectId()), oid)


class TestListings:
    def test_user_orders_paginated(self, db, make_order, user_id):
        for _ in range(3):
            make_order()
        make_order(owner=str(ObjectId()))

        page, total = orders.list_user_orders(db, user_id, page=1, limit=2)
        assert total == 3
        assert len(page) == 2
        assert page[0]["total_items"] == 1

    def test_admin_search(self, db, make_order):
        order = make_order()
        make_order()

        found, total = orders.list_all_orders(db, search=order["order_number"])
        assert total == 1
        assert found[0]["_id"] == order["_id"]

        found, total = orders.list_all_orders(db, search="sita")
        assert total == 2
