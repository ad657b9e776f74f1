"""Tests for the Stripe gateway adapter."""

import json
import time
from types import SimpleNamespace

import pytest
import stripe

from conftest import WEBHOOK_SECRET, sign_payload
from errors import SignatureVerificationError
from payments import StripeGateway, to_minor_units

EVENT = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded",
                    "data": {"object": {"id": "pi_1"}}}).encode()


@pytest.fixture
def stripe_gateway():
    return StripeGateway("sk_test_123", WEBHOOK_SECRET, currency="npr")


def test_to_minor_units():
    assert to_minor_units(14) == 1400
    assert to_minor_units(19.99) == 1999
    assert to_minor_units(0.1 + 0.2) == 30


class TestConstructEvent:
    def test_valid_signature(self, stripe_gateway):
        event = stripe_gateway.construct_event(EVENT, sign_payload(EVENT))
        assert event["type"] == "payment_intent.succeeded"
        assert event["data"]["object"]["id"] == "pi_1"

    def test_wrong_secret(self, stripe_gateway):
        with pytest.raises(SignatureVerificationError) as exc_info:
            stripe_gateway.construct_event(EVENT, sign_payload(EVENT, secret="whsec_other"))
        assert exc_info.value.message.startswith("Webhook Error:")

    def test_tampered_body(self, stripe_gateway):
        header = sign_payload(EVENT)
        with pytest.raises(SignatureVerificationError):
            stripe_gateway.construct_event(EVENT.replace(b"pi_1", b"pi_2"), header)

    def test_stale_timestamp(self, stripe_gateway):
        header = sign_payload(EVENT, timestamp=int(time.time()) - 3600)
        with pytest.raises(SignatureVerificationError):
            stripe_gateway.construct_event(EVENT, header)

    def test_missing_header(self, stripe_gateway):
        with pytest.raises(SignatureVerificationError):
            stripe_gateway.construct_event(EVENT, None)

    def test_missing_secret_fails_closed(self):
        gateway = StripeGateway("sk_test_123", None)
        with pytest.raises(SignatureVerificationError) as exc_info:
            gateway.construct_event(EVENT, sign_payload(EVENT))
        assert "not configured" in exc_info.value.reason

    def test_signed_garbage(self, stripe_gateway):
        payload = b"not json"
        with pytest.raises(SignatureVerificationError) as exc_info:
            stripe_gateway.construct_event(payload, sign_payload(payload))
        assert exc_info.value.reason == "invalid payload"


class TestIntents:
    def test_create_intent(self, stripe_gateway, monkeypatch):
        calls = []

        def fake_create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="pi_9", status="requires_payment_method",
                                   client_secret="pi_9_secret", amount=kwargs["amount"])

        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
        intent = stripe_gateway.create_intent(1400, metadata={"user_id": "u1"})

        assert intent.id == "pi_9"
        assert intent.client_secret == "pi_9_secret"
        assert intent.charge_id is None
        assert calls == [{"amount": 1400, "currency": "npr", "metadata": {"user_id": "u1"},
                          "api_key": "sk_test_123"}]

    def test_retrieve_intent_reads_latest_charge(self, stripe_gateway, monkeypatch):
        def fake_retrieve(intent_id, **kwargs):
            assert kwargs == {"api_key": "sk_test_123"}
            return SimpleNamespace(id=intent_id, status="succeeded", latest_charge=SimpleNamespace(id="ch_7"))

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
        intent = stripe_gateway.retrieve_intent("pi_9")

        assert intent.status == "succeeded"
        assert intent.charge_id == "ch_7"
