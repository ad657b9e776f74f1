"""Pytest fixtures for Koseli Mart tests."""

import hashlib
import hmac
import time

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import catalog
import database
from cart import CartService
from checkout import CheckoutService
from config import Settings, get_settings
from payments import PaymentIntent, StripeGateway
from schemas import Address, ProductCreate, Stock

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """Stripe adapter with the two network calls replaced; signature checks stay real."""

    def __init__(self):
        super().__init__("sk_test_123", WEBHOOK_SECRET)
        self.created = []
        self.statuses = {}

    def create_intent(self, amount, metadata=None):
        n = len(self.created) + 1
        intent = PaymentIntent(id=f"pi_{n}", status="requires_payment_method",
                               client_secret=f"pi_{n}_secret_abc", amount=amount)
        self.created.append(intent)
        self.statuses[intent.id] = intent.status
        return intent

    def retrieve_intent(self, intent_id):
        return PaymentIntent(id=intent_id, status=self.statuses.get(intent_id, "requires_payment_method"),
                             charge_id=f"ch_{intent_id}")

    def succeed(self, intent_id):
        self.statuses[intent_id] = "succeeded"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def db():
    """Fresh in-memory database with the production indexes."""
    client = mongomock.MongoClient()
    test_db = client["koseli_test"]
    database.ensure_indexes(test_db)
    return test_db


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def carts(db):
    return CartService(db)


@pytest.fixture
def checkout(db, gateway, settings, carts):
    return CheckoutService(db, gateway, settings, carts)


@pytest.fixture
def user_id():
    return str(ObjectId())


@pytest.fixture
def address():
    return Address(
        first_name="Sita",
        last_name="Rai",
        street="12 Durbar Marg",
        city="Kathmandu",
        state="Bagmati",
        zip_code="44600",
        country="Nepal",
    )


@pytest.fixture
def make_product(db):
    """Factory creating a product and returning its id."""

    def _make(name="Dhaka Topi", price=5.0, quantity=10, track_inventory=True, **fields):
        payload = ProductCreate(
            name=name,
            description=f"{name} from Koseli",
            price=price,
            stock=Stock(quantity=quantity, track_inventory=track_inventory),
            **fields,
        )
        return str(catalog.create_product(db, payload)["_id"])

    return _make


@pytest.fixture
def product_doc(db):
    def _get(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})

    return _get


@pytest.fixture
def client(db, settings, gateway):
    from main import app, get_gateway

    app.dependency_overrides[database.get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def register_user(client, db):
    """Register and log in a user through the API; returns (user_id, headers)."""

    def _register(email="buyer@example.com", password="secret123", role="user"):
        response = client.post("/api/auth/register", json={"name": "Test Buyer", "email": email, "password": password})
        assert response.status_code == 201
        user_id = response.json()["id"]
        if role != "user":
            db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"role": role}})
        token = client.post("/api/auth/login", json={"email": email, "password": password}).json()["access_token"]
        return user_id, {"Authorization": f"Bearer {token}"}

    return _register
