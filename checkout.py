"""
Checkout

Turns a cart into a pending order plus a Stripe payment intent, and turns a
succeeded payment into a confirmed, paid order.

Payment success can be reported twice, by the client (confirm_payment) and by
Stripe (webhook), in either order. Both paths record the payment with a
compare-and-set on the pending payment status, confirm the order if it is
still pending, and then run the same fulfilment step
(stock decrement + cart clear). Fulfilment is claimed atomically through
``inventory_status`` so it runs exactly once whichever path gets there first.
"""

import logging
from typing import Callable, Optional, TypeVar

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import catalog
import inventory
import orders
from cart import CartService
from config import Settings
from database import now, object_id_or_none
from errors import (
    EmptyCartError,
    OrderNotFoundError,
    PaymentNotSucceededError,
    UnavailableProductsError,
)
from order_status import OrderStatus, PaymentStatus, sources_for
from payments import StripeGateway, to_minor_units
from schemas import Address, OrderItem

logger = logging.getLogger("koseli.checkout")

T = TypeVar("T")

ALREADY_PROCESSED = "Order not found or already processed"


class CheckoutService:
    def __init__(self, db: Database, gateway: StripeGateway, settings: Settings,
                 carts: Optional[CartService] = None):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.carts = carts or CartService(db)

    def _in_transaction(self, work: Callable[[object], T]) -> T:
        if not self.settings.mongo_transactions:
            return work(None)
        with self.db.client.start_session() as session:
            return session.with_transaction(work)

    # -------------------- Intent --------------------

    def create_payment_intent(self, user_id: str, shipping_address: Address, billing_address: Address,
                              shipping_cost: float = 0, tax_amount: float = 0,
                              notes: Optional[str] = None) -> dict:
        cart = self.carts.get_cart(user_id)
        if not cart or not cart.get("items"):
            raise EmptyCartError()

        items = cart["items"]
        products = catalog.load_products(self.db, [i["product_id"] for i in items])
        unavailable = inventory.find_unavailable(items, products)
        if unavailable:
            logger.info("Checkout for user %s blocked: %d unavailable line(s)", user_id, len(unavailable))
            raise UnavailableProductsError(unavailable)

        # price snapshot from the cart, not the live product price
        subtotal = round(sum(i["price"] * i["quantity"] for i in items), 2)
        total = round(subtotal + shipping_cost + tax_amount, 2)

        intent = self.gateway.create_intent(
            to_minor_units(total),
            metadata={"user_id": user_id, "cart_id": str(cart["_id"])},
        )

        order_items = [
            OrderItem(
                product_id=i["product_id"],
                quantity=i["quantity"],
                price=i["price"],
                name=products[i["product_id"]].get("name"),
                image=catalog.primary_image(products[i["product_id"]]),
            )
            for i in items
        ]
        order = orders.create_order(
            self.db,
            user_id=user_id,
            items=order_items,
            shipping_address=shipping_address,
            billing_address=billing_address,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            tax_amount=tax_amount,
            payment_method="stripe",
            payment_intent_id=intent.id,
            notes=notes,
        )
        logger.info("Order %s created pending payment intent %s (total %.2f)",
                    order["order_number"], intent.id, total)
        return {"client_secret": intent.client_secret, "order_id": str(order["_id"]), "total": total}

    # -------------------- Confirmation --------------------

    def _mark_paid(self, query: dict, charge_id: Optional[str], session=None) -> Optional[dict]:
        """Record a succeeded payment and confirm the order if it is still pending.

        The payment is recorded with a compare-and-set on ``payment_status``
        alone, whatever the order status. A cancelled order stays cancelled
        with a paid payment so it can be refunded. Returns None when the
        payment was already recorded or no order matches.
        """
        update = {"payment_status": PaymentStatus.PAID.value, "updated_at": now()}
        if charge_id:
            update["charge_id"] = charge_id
        order = self.db["order"].find_one_and_update(
            {**query, "payment_status": {"$in": sources_for(PaymentStatus.PAID, PaymentStatus)}},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if order is None:
            return None

        confirmed = self.db["order"].find_one_and_update(
            {"_id": order["_id"], "status": {"$in": sources_for(OrderStatus.CONFIRMED)}},
            {"$set": {"status": OrderStatus.CONFIRMED.value, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if confirmed is not None:
            return confirmed
        order = self.db["order"].find_one({"_id": order["_id"]}, session=session)
        if order["status"] == OrderStatus.CANCELLED.value:
            logger.warning("Payment recorded for cancelled order %s; refund required", order["order_number"])
        return order

    def _fulfil(self, order_id, session=None) -> bool:
        """Deduct stock and clear the buyer's cart, once per paid order."""
        order = self.db["order"].find_one_and_update(
            {
                "_id": order_id,
                "payment_status": PaymentStatus.PAID.value,
                "status": {"$ne": OrderStatus.CANCELLED.value},
                "inventory_status": "pending",
            },
            {"$set": {"inventory_status": "deducting", "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if order is None:
            return False

        failures = inventory.deduct_stock(self.db, order, session=session)
        self.db["order"].update_one(
            {"_id": order_id},
            {"$set": {"inventory_status": "deducted", "inventory_failures": failures, "updated_at": now()}},
            session=session,
        )
        self.carts.clear(order["user_id"], session=session)
        logger.info("Order %s fulfilled (%d stock failure(s))", order["order_number"], len(failures))
        return True

    def confirm_payment(self, user_id: str, payment_intent_id: str, order_id: str) -> dict:
        oid = object_id_or_none(order_id)
        order = self.db["order"].find_one({
            "_id": oid,
            "user_id": user_id,
            "payment_intent_id": payment_intent_id,
            "status": OrderStatus.PENDING.value,
        }) if oid else None
        if not order:
            raise OrderNotFoundError(ALREADY_PROCESSED)

        intent = self.gateway.retrieve_intent(payment_intent_id)
        if intent.status != "succeeded":
            raise PaymentNotSucceededError(intent.status)

        def work(session):
            confirmed = self._mark_paid({"_id": order["_id"], "user_id": user_id}, intent.charge_id, session)
            if confirmed is None:
                raise OrderNotFoundError(ALREADY_PROCESSED)
            self._fulfil(confirmed["_id"], session)
            return confirmed

        self._in_transaction(work)
        logger.info("Order %s confirmed by client", order["order_number"])
        return orders.populate_items(self.db, orders.get_order(self.db, order["_id"]))

    # -------------------- Webhook --------------------

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        event = self.gateway.construct_event(payload, signature)
        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}
        intent_id = intent.get("id")

        try:
            if event_type == "payment_intent.succeeded":
                logger.info("PaymentIntent succeeded: %s", intent_id)
                self._in_transaction(lambda session: self._payment_succeeded(intent_id, intent, session))
            elif event_type == "payment_intent.payment_failed":
                logger.info("PaymentIntent failed: %s", intent_id)
                self._payment_failed(intent_id)
            else:
                logger.info("Unhandled event type %s", event_type)
        except PyMongoError:
            logger.exception("Error updating order from webhook event %s", event.get("id"))
        return {"received": True}

    def _payment_succeeded(self, intent_id: str, intent: dict, session=None) -> None:
        charge = intent.get("latest_charge")
        if isinstance(charge, dict):
            charge = charge.get("id")
        self._mark_paid({"payment_intent_id": intent_id}, charge, session)
        order = self.db["order"].find_one({"payment_intent_id": intent_id}, session=session)
        if order is None:
            logger.warning("No order for payment intent %s", intent_id)
            return
        if order["payment_status"] == PaymentStatus.PAID.value:
            self._fulfil(order["_id"], session)

    def _payment_failed(self, intent_id: str) -> None:
        order = self.db["order"].find_one_and_update(
            {
                "payment_intent_id": intent_id,
                "payment_status": {"$in": sources_for(PaymentStatus.FAILED, PaymentStatus)},
            },
            {"$set": {"payment_status": PaymentStatus.FAILED.value, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if order is None:
            logger.info("Payment failure for %s matched no pending payment", intent_id)
            return
        # only an order still waiting on its payment is cancelled
        self.db["order"].update_one(
            {"_id": order["_id"], "status": OrderStatus.PENDING.value},
            {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": now()}},
        )
